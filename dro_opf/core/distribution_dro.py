"""
Receding-horizon DRO scheduling of a PV-rich distribution feeder
================================================================

This module implements the distribution study: at every decision epoch a
finite-horizon program chooses PV curtailment, inverter reactive power and
battery charging so that operating cost is traded off against the worst-case
CVaR of overvoltage over a Wasserstein ball around the empirical PV
forecast-error distribution. Only the first step is applied; the battery state
after it is carried to the next epoch (model predictive control).

Mathematical Formulation
------------------------
Decision variables (per look-ahead step h):
    a_rh in [0, 1]  curtailment fraction of inverter r
    Q_rh            reactive power of inverter r
    PB_bh           charging power of battery b (negative = discharge)
    B_bh            state of charge of battery b

Linearised voltage of PQ node j in scenario i:
    v_jih = |Vnom_j| + G_j ((1 - a_h) * p_ih - p_l - PB_h) + H_j (Q_h - q_l)

Objective (averaged over the N PV scenarios p_ih):
    sum_h [ f sum_r a_rh p_ihr + c sum_j max(0, net_jih) + d sum_j max(0, -net_jih)
            + e sum_r |Q_rh| ]
    + sum_{j,h} [ (1/N) sum_i s_jhi + epsilon lambda_jh ]       (DRO voltage upper bound)

Constraints (activated per epoch by the schedule):
    DRO CVaR counterpart of v_jih <= Vmax
    sample-mean voltage upper bound
    (1/N) sum_i max(0, y + Vmin - v_jih) <= y * tol_v             (voltage lower CVaR)
    (1/N) sum_i max(0, x + ((1 - a) p)^2 + Q^2 - p^2) <= x * nu   (inverter rating CVaR)
    |Q_rh| <= pf_ratio (1 - a_rh) mean_i p_ihr                    (power factor)
    battery: B_0 = carried SOC, B_{h+1} = B_h + PB_h dt/60, SOC and power limits

Key Features
------------
- Scenario windows from ``FeederScenarioEngine`` with the zero-error edge policy
- Battery state carried only after an optimal solve
- Horizon 1 collapses storage: PB fixed to 0 and B fixed to the carried SOC
- Optional SDP voltage recovery and Monte Carlo verification per epoch
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from pyomo.environ import (
    ConcreteModel,
    Constraint,
    Expression,
    NonNegativeReals,
    Objective,
    RangeSet,
    Reals,
    Var,
    minimize,
    quicksum,
    value,
)

from .config import (
    INVERTER_CAPACITY_CVAR,
    POWER_FACTOR,
    VOLTAGE_LOWER_CVAR,
    VOLTAGE_UPPER_DRO,
    VOLTAGE_UPPER_NOMINAL,
    DistributionConfig,
    window_summary,
)
from .data_loader import FeederNetwork
from .flow_recovery import RecoveryResult, SDPVoltageRecovery
from .results import ResultStore
from .risk import RiskConstraintBuilder, add_cvar_chance_constraint
from .scenarios import FeederScenarioEngine
from .schedule import ActivationSchedule
from .solver import SolveOutcome, SolveStatus, SolverOracle

logger = logging.getLogger(__name__)

_COEF_TOL = 1e-12


class DistributionDRO:
    """
    MPC orchestrator for the feeder overvoltage study.

    Parameters
    ----------
    feeder : FeederNetwork
        Per-unit feeder with inverter and battery locations
    scenarios : FeederScenarioEngine
        PV output scenarios (per unit) for every epoch
    load_p, load_q : np.ndarray
        Nodal loads ``[epoch, node]`` in per unit; indices wrap around
    config : DistributionConfig
    schedule : ActivationSchedule, optional
        Defaults to the windows in ``config.activation_windows``
    oracle : SolverOracle, optional
        Defaults to ``SolverOracle(config.solver)``
    recovery : SDPVoltageRecovery, optional
        When given, first-step setpoints are checked with the AC relaxation
    monte_carlo : np.ndarray, optional
        Out-of-sample PV realisations ``[sample, epoch]`` (per unit)
    """

    def __init__(
        self,
        feeder: FeederNetwork,
        scenarios: FeederScenarioEngine,
        load_p: np.ndarray,
        load_q: np.ndarray,
        config: Optional[DistributionConfig] = None,
        schedule: Optional[ActivationSchedule] = None,
        oracle: Optional[SolverOracle] = None,
        recovery: Optional[SDPVoltageRecovery] = None,
        monte_carlo: Optional[np.ndarray] = None,
    ):
        self.feeder = feeder
        self.engine = scenarios
        self.config = config or DistributionConfig()
        self.config.validate()
        self.schedule = schedule or ActivationSchedule(self.config.activation_windows)
        self.oracle = oracle or SolverOracle(self.config.solver)
        self.recovery = recovery
        self.monte_carlo = monte_carlo

        if len(scenarios.capacities) != len(feeder.pv_nodes):
            raise ValueError("Scenario engine and feeder disagree on the number of inverters")
        self.load_p = np.atleast_2d(np.asarray(load_p, dtype=float))
        self.load_q = np.atleast_2d(np.asarray(load_q, dtype=float))
        if self.load_p.shape != self.load_q.shape or self.load_p.shape[1] != feeder.n_nodes:
            raise ValueError(f"Loads must be [epoch, {feeder.n_nodes}] arrays of equal shape")

        self.vnom, self.G, self.H = feeder.sensitivities(self.config.v_pcc)
        self.vnom_abs = np.abs(self.vnom)
        self.inv_idx = [k - 1 for k in feeder.pv_nodes]
        self.bat_idx = [k - 1 for k in feeder.battery_nodes]

        self.model = None
        self.builder: Optional[RiskConstraintBuilder] = None
        self.outcome: Optional[SolveOutcome] = None
        self.rho = None
        self.epoch = None
        self.active_kinds = frozenset()

    def _loads_at(self, epoch: int) -> Tuple[np.ndarray, np.ndarray]:
        t = epoch % self.load_p.shape[0]
        return self.load_p[t, 1:], self.load_q[t, 1:]

    def initial_soc(self) -> np.ndarray:
        return self.config.initial_soc_fraction * self.feeder.battery_capacity

    def _voltage_const(self, pv: np.ndarray, p_l: np.ndarray, q_l: np.ndarray) -> np.ndarray:
        """Decision-independent part of the linearised voltages for PV rows ``pv`` (..., R)."""
        gr = self.G[:, self.inv_idx]
        return self.vnom_abs + pv @ gr.T - self.G @ p_l - self.H @ q_l

    def _voltage(self, m, j: int, h: int, const: float, pv_row: np.ndarray):
        gr = self.G[j, self.inv_idx]
        hr = self.H[j, self.inv_idx]
        gb = self.G[j, self.bat_idx]
        return (
            float(const)
            - quicksum(float(gr[r] * pv_row[r]) * m.a[r, h] for r in m.inverters if abs(gr[r] * pv_row[r]) > _COEF_TOL)
            + quicksum(float(hr[r]) * m.Q[r, h] for r in m.inverters if abs(hr[r]) > _COEF_TOL)
            - quicksum(float(gb[b]) * m.PB[b, h] for b in m.batteries if abs(gb[b]) > _COEF_TOL)
        )

    def build_model(self, rho: float, epoch: int, soc: Optional[np.ndarray] = None) -> ConcreteModel:
        """
        Build the look-ahead program of one decision epoch.

        Parameters
        ----------
        rho : float
            Risk weight of the overvoltage CVaR
        epoch : int
            0-based decision epoch
        soc : np.ndarray, optional
            Battery state of charge carried from the previous epoch
        """
        t0 = time.perf_counter()
        cfg = self.config
        feeder = self.feeder
        horizon = cfg.horizon
        pv = self.engine.realized_output(epoch, horizon)
        n_s = pv.shape[0]
        pv_mean = pv.mean(axis=0)
        soc = self.initial_soc() if soc is None else np.asarray(soc, dtype=float)
        if soc.shape != (len(feeder.battery_nodes),):
            raise ValueError(f"SOC must have one entry per battery, got shape {soc.shape}")

        self.rho, self.epoch = rho, epoch
        self.outcome = None
        self.active_kinds = self.schedule(epoch)
        kinds = self.active_kinds

        m = ConcreteModel(name="DRO-MPC-Feeder")
        self.model = m
        m.steps = RangeSet(0, horizon - 1)
        m.inverters = RangeSet(0, len(feeder.pv_nodes) - 1)
        m.batteries = RangeSet(0, len(feeder.battery_nodes) - 1)
        m.scenarios = RangeSet(0, n_s - 1)
        m.pq_nodes = RangeSet(0, feeder.n_nodes - 2)

        m.a = Var(m.inverters, m.steps, bounds=(0.0, 1.0), doc="Curtailment fraction")
        m.Q = Var(m.inverters, m.steps, domain=Reals, doc="Inverter reactive power")
        m.PB = Var(m.batteries, m.steps, domain=Reals, doc="Battery charging power")
        m.B = Var(m.batteries, m.steps, domain=Reals, doc="Battery state of charge")

        loads = [self._loads_at(epoch + h) for h in range(horizon)]
        const = np.stack(
            [self._voltage_const(pv[:, h, :], loads[h][0], loads[h][1]) for h in range(horizon)], axis=1
        )

        self._add_cost(m, pv, pv_mean, loads)
        self._add_battery(m, soc)

        self.builder = RiskConstraintBuilder(
            n_scenarios=n_s,
            rho=rho,
            alpha=cfg.voltage_tolerance,
            epsilon=cfg.epsilon,
            norm=cfg.wasserstein_norm,
        )
        node_ids = feeder.node_ids[1:]
        gr = self.G[:, self.inv_idx]

        if VOLTAGE_UPPER_DRO in kinds:
            for j in m.pq_nodes:
                for h in m.steps:
                    violations = [
                        self._voltage(m, j, h, const[i, h, j], pv[i, h]) - cfg.v_max for i in m.scenarios
                    ]
                    gradients = [float(gr[j, r]) * (1 - m.a[r, h]) for r in m.inverters]
                    self.builder.add(m, f"vmax_n{node_ids[j]}_h{h}", violations, gradients,
                                     kind=VOLTAGE_UPPER_DRO)

        if VOLTAGE_UPPER_NOMINAL in kinds:
            const_mean = np.stack(
                [self._voltage_const(pv_mean[h], loads[h][0], loads[h][1]) for h in range(horizon)]
            )
            m.vmax_nominal = Constraint(
                m.pq_nodes, m.steps,
                rule=lambda m, j, h: self._voltage(m, j, h, const_mean[h, j], pv_mean[h]) <= cfg.v_max,
            )

        if VOLTAGE_LOWER_CVAR in kinds:
            for j in m.pq_nodes:
                for h in m.steps:
                    exprs = [cfg.v_min - self._voltage(m, j, h, const[i, h, j], pv[i, h]) for i in m.scenarios]
                    add_cvar_chance_constraint(m, f"vmin_n{node_ids[j]}_h{h}", exprs, cfg.voltage_tolerance)

        if INVERTER_CAPACITY_CVAR in kinds:
            for r in m.inverters:
                for h in m.steps:
                    exprs = [
                        float(pv[i, h, r]) ** 2 * (1 - m.a[r, h]) ** 2 + m.Q[r, h] ** 2 - float(pv[i, h, r]) ** 2
                        for i in m.scenarios
                    ]
                    add_cvar_chance_constraint(
                        m, f"inverter_n{feeder.node_ids[feeder.pv_nodes[r]]}_h{h}", exprs, cfg.inverter_tolerance
                    )

        if POWER_FACTOR in kinds:
            ratio = cfg.power_factor_ratio
            m.pf_upper = Constraint(
                m.inverters, m.steps,
                rule=lambda m, r, h: m.Q[r, h] <= ratio * float(pv_mean[h, r]) * (1 - m.a[r, h]),
            )
            m.pf_lower = Constraint(
                m.inverters, m.steps,
                rule=lambda m, r, h: -m.Q[r, h] <= ratio * float(pv_mean[h, r]) * (1 - m.a[r, h]),
            )

        m.risk = Expression(expr=self.builder.objective_term())
        m.obj = Objective(expr=m.operating_cost + m.risk, sense=minimize)

        logger.debug("Epoch %d: active kinds %s, %d risk terms, built in %.2fs",
                     epoch, sorted(kinds), len(self.builder.terms), time.perf_counter() - t0)
        return m

    def _add_cost(self, m, pv, pv_mean, loads) -> None:
        cfg = self.config
        feeder = self.feeder
        n_s = pv.shape[0]
        inv_of = {k - 1: r for r, k in enumerate(feeder.pv_nodes)}
        bat_of = {k - 1: b for b, k in enumerate(feeder.battery_nodes)}
        p_l_any = np.any(np.abs(np.stack([p for p, _ in loads])) > 0, axis=0)
        nodes = [j for j in range(feeder.n_nodes - 1) if p_l_any[j] or j in inv_of or j in bat_of]
        m.metered = RangeSet(0, len(nodes) - 1)

        def net_load(m, k, h, i):
            j = nodes[k]
            expr = float(loads[h][0][j])
            if j in bat_of:
                expr = expr + m.PB[bat_of[j], h]
            if j in inv_of:
                r = inv_of[j]
                expr = expr - float(pv[i, h, r]) * (1 - m.a[r, h])
            return expr

        m.imports = Var(m.metered, m.steps, m.scenarios, domain=NonNegativeReals)
        m.exports = Var(m.metered, m.steps, m.scenarios, domain=NonNegativeReals)
        m.import_def = Constraint(
            m.metered, m.steps, m.scenarios,
            rule=lambda m, k, h, i: m.imports[k, h, i] >= net_load(m, k, h, i),
        )
        m.export_def = Constraint(
            m.metered, m.steps, m.scenarios,
            rule=lambda m, k, h, i: m.exports[k, h, i] >= -net_load(m, k, h, i),
        )
        m.q_abs = Var(m.inverters, m.steps, domain=NonNegativeReals)
        m.q_abs_upper = Constraint(m.inverters, m.steps, rule=lambda m, r, h: m.q_abs[r, h] >= m.Q[r, h])
        m.q_abs_lower = Constraint(m.inverters, m.steps, rule=lambda m, r, h: m.q_abs[r, h] >= -m.Q[r, h])

        curtail = quicksum(
            cfg.curtailment_cost * float(pv_mean[h, r]) * m.a[r, h] for r in m.inverters for h in m.steps
        )
        energy = quicksum(
            cfg.import_cost * m.imports[k, h, i] + cfg.feed_in_cost * m.exports[k, h, i]
            for k in m.metered for h in m.steps for i in m.scenarios
        ) / n_s
        reactive = quicksum(cfg.reactive_cost * m.q_abs[r, h] for r in m.inverters for h in m.steps)
        m.operating_cost = Expression(expr=curtail + energy + reactive)

    def _add_battery(self, m, soc: np.ndarray) -> None:
        cfg = self.config
        horizon = cfg.horizon
        bmax = self.feeder.battery_capacity
        dt = cfg.interval_minutes / 60.0

        if horizon == 1:
            for b in m.batteries:
                m.PB[b, 0].fix(0.0)
                m.B[b, 0].fix(float(soc[b]))
            return

        m.soc_init = Constraint(m.batteries, rule=lambda m, b: m.B[b, 0] == float(soc[b]))
        m.soc_bounds = Constraint(
            m.batteries, m.steps,
            rule=lambda m, b, h: (0.0, m.B[b, h], float(bmax[b])) if h > 0 else Constraint.Skip,
        )
        m.battery_dynamics = Constraint(
            m.batteries, m.steps,
            rule=lambda m, b, h: (
                m.B[b, h + 1] == m.B[b, h] + m.PB[b, h] * dt if h < horizon - 1 else Constraint.Skip
            ),
        )
        m.discharge_limit = Constraint(
            m.batteries, m.steps,
            rule=lambda m, b, h: -cfg.discharge_efficiency * m.B[b, h] <= m.PB[b, h] * dt,
        )
        m.charge_limit = Constraint(
            m.batteries, m.steps,
            rule=lambda m, b, h: m.PB[b, h] * dt <= cfg.charge_efficiency * (float(bmax[b]) - m.B[b, h]),
        )
        m.power_limit = Constraint(
            m.batteries, m.steps,
            rule=lambda m, b, h: m.PB[b, h] <= cfg.battery_power_fraction * float(bmax[b]),
        )

    def solve(self) -> SolveOutcome:
        if self.model is None:
            raise RuntimeError("build_model() must be called before solve()")
        self.outcome = self.oracle.solve(self.model)
        return self.outcome

    def next_soc(self, soc: np.ndarray) -> np.ndarray:
        """State of charge after applying the first step (the carried state)."""
        if self.config.horizon == 1:
            return np.asarray(soc, dtype=float).copy()
        return np.array([value(self.model.B[b, 1]) for b in self.model.batteries])

    def setpoints(self) -> Dict[str, np.ndarray]:
        """First-step decisions of the solved model."""
        m = self.model
        return {
            'curtailment': np.array([value(m.a[r, 0]) for r in m.inverters]),
            'reactive_power': np.array([value(m.Q[r, 0]) for r in m.inverters]),
            'battery_power': np.array([value(m.PB[b, 0]) for b in m.batteries]),
            'soc': np.array([value(m.B[b, 0]) for b in m.batteries]),
        }

    def injections(self, setpoints: Dict[str, np.ndarray], pv: np.ndarray, epoch: int) -> Tuple[np.ndarray, np.ndarray]:
        """Net PQ-node injections (p, q) for first-step setpoints and PV output ``pv`` (R,)."""
        p_l, q_l = self._loads_at(epoch)
        p = -p_l.copy()
        q = -q_l.copy()
        p[self.inv_idx] += (1.0 - setpoints['curtailment']) * pv
        q[self.inv_idx] += setpoints['reactive_power']
        p[self.bat_idx] -= setpoints['battery_power']
        return p, q

    def linear_voltages(self, setpoints: Dict[str, np.ndarray], pv: np.ndarray, epoch: int) -> np.ndarray:
        """Linearised voltage profile including the substation node."""
        p, q = self.injections(setpoints, pv, epoch)
        v = self.vnom_abs + self.G @ p + self.H @ q
        return np.concatenate([[self.config.v_pcc], v])

    def verify(self, setpoints: Dict[str, np.ndarray], epoch: int) -> List[RecoveryResult]:
        """Recover voltages for every Monte Carlo PV realisation of ``epoch``."""
        if self.recovery is None or self.monte_carlo is None:
            return []
        pv_samples = self.engine.monte_carlo_output(self.monte_carlo, epoch)

        def recover_one(pv_row):
            return self.recovery.recover(*self.injections(setpoints, pv_row, epoch))

        workers = self.config.monte_carlo_workers
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(recover_one, pv_samples))
        else:
            results = [recover_one(row) for row in pv_samples]
        n_ok = sum(r.success for r in results)
        logger.info("Monte Carlo at epoch %d: %d/%d samples recovered", epoch, n_ok, len(results))
        return results

    def get_results(self) -> Optional[dict]:
        """Archive record of the current epoch."""
        if self.model is None or self.outcome is None:
            return None
        outcome = self.outcome
        record = {
            'status': outcome.status,
            'objective': outcome.objective,
            'solve_time': outcome.solve_time,
            'active_kinds': ",".join(sorted(self.active_kinds)),
        }
        if not outcome.ok:
            record.update({'operating_cost': np.nan, 'cvar': np.nan, 'violation': np.nan})
            return record

        cvar = self.builder.total_cvar() if self.builder.terms else 0.0
        setpoints = self.setpoints()
        pv_nominal = self.engine.nominal_output(self.epoch)
        record.update({
            'operating_cost': value(self.model.operating_cost),
            'cvar': cvar,
            'violation': max(0.0, cvar),
            'linear_voltage': self.linear_voltages(setpoints, pv_nominal, self.epoch),
        })
        record.update(setpoints)

        if self.recovery is not None:
            sdp = self.recovery.recover(*self.injections(setpoints, pv_nominal, self.epoch))
            record['sdp_success'] = sdp.success
            record['substation_power'] = sdp.substation_power
            if sdp.success:
                record['sdp_voltage'] = sdp.voltages

        mc = self.verify(setpoints, self.epoch)
        if mc:
            n_nodes = self.feeder.n_nodes
            record['mc_success'] = np.array([r.success for r in mc])
            record['mc_success_rate'] = float(np.mean(record['mc_success']))
            record['mc_voltages'] = np.array(
                [r.voltages if r.success else np.full(n_nodes, np.nan) for r in mc]
            )
            record['mc_substation_power'] = np.array(
                [np.nan if r.substation_power is None else r.substation_power for r in mc]
            )
        return record

    def run_epoch(self, rho: float, epoch: int, soc: np.ndarray) -> Tuple[dict, Optional[np.ndarray]]:
        """
        Build, solve and report one epoch.

        Returns the archive record and the state to carry, or None when the
        solve was not optimal and the previous state must be kept. Inaccurate
        solutions are archived but never handed to the next epoch.
        """
        wall = time.perf_counter()
        self.build_model(rho, epoch, soc)
        outcome = self.solve()
        record = self.get_results()
        record['wall_time'] = time.perf_counter() - wall
        if outcome.status is not SolveStatus.OPTIMAL:
            logger.warning("Epoch %d (rho=%g): %s, battery state not advanced", epoch, rho, outcome.status.value)
            return record, None
        return record, self.next_soc(soc)

    def epochs(self) -> Iterable[int]:
        end = self.config.end_epoch if self.config.end_epoch is not None else self.config.epochs_per_day
        return range(self.config.start_epoch, end)

    def run(self, store: Optional[ResultStore] = None) -> ResultStore:
        """Receding-horizon sweep over every risk weight and decision epoch."""
        store = store if store is not None else ResultStore(key_names=("rho", "epoch"))
        logger.info("Activation windows: %s", window_summary(self.schedule.windows))
        for rho in self.config.rho_values:
            soc = self.initial_soc()
            logger.info("Weight factor %g, Wasserstein radius %g", rho, self.config.epsilon)
            for epoch in self.epochs():
                record, carried = self.run_epoch(rho, epoch, soc)
                store.append((rho, epoch), record)
                if carried is not None:
                    soc = carried
                logger.info("rho=%g epoch=%d %s cost=%.4f cvar=%.4g", rho, epoch,
                            record['status'].value, record['operating_cost'], record['cvar'])
        return store

    def print_summary(self) -> None:
        results = self.get_results()
        if results is None:
            print("No results available - solve the model first")
            return
        print("\n" + "=" * 60)
        print(f"FEEDER DRO-MPC EPOCH {self.epoch} (rho = {self.rho})")
        print("=" * 60)
        print(f"Solver status:        {results['status'].value}")
        print(f"Active constraints:   {results['active_kinds'] or 'none'}")
        if self.outcome.ok:
            print(f"Operating cost:       {results['operating_cost']:.6f}")
            print(f"Voltage CVaR:         {results['cvar']:.6g}")
            v = results['linear_voltage']
            print(f"Linearised voltage:   min {v.min():.4f}  max {v.max():.4f} p.u.")
            print(f"Mean curtailment:     {results['curtailment'].mean():.3f}")
            if 'sdp_success' in results:
                print(f"SDP recovery:         {'rank 1' if results['sdp_success'] else 'failed'}")
            if 'mc_success_rate' in results:
                print(f"Monte Carlo success:  {results['mc_success_rate'] * 100:.1f}%")
        print("=" * 60)

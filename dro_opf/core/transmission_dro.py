"""
Distributionally robust N-1 secure DC dispatch
==============================================

This module implements the transmission study: a DC optimal power flow in
which generators follow an affine reserve policy that reacts to wind forecast
errors, line flows on a set of monitored lines are limited in the worst-case
CVaR sense over a Wasserstein ball around the empirical error distribution,
and every single-element outage (load, generator or line) must be survivable
with a linear recourse dispatch.

Mathematical Formulation
------------------------
Decision variables:
    e_g      >= 0   scheduled output of generator g (MW)
    D_gk            participation of generator g in the error of wind farm k
    r^c_g           recourse of generator g in contingency c

Generator output in scenario i:
    p_gi = e_g + sum_k D_gk xi_ik

Objective:
    min  (1/N) sum_i sum_g (c2_g p_gi^2 + c1_g p_gi + c0_g)
         + sum_{m in monitored} [ (1/N) sum_i s_mi + epsilon lambda_m ]

Constraints:
    sum_g D_gk = -1                                  (each wind error is fully balanced)
    sum_g e_g + sum_k Pw_k = sum_b Pd_b               (nominal balance)
    CVaR/DRO counterpart of  dir_m * f_m(xi) <= Fmax_m  for each monitored line
    -Fmax <= Gamma^c (injection^c) <= Fmax           for each contingency c,
                                                     evaluated at the mean error

Contingency recourse:
    lost load b        r = -Pd_b d,  sum_g d_g = 1
    lost generator j   r_j = 0,      sum_g r_g = e_j
    lost line l        flow mapping rebuilt without l; if l islands elements,
                       r = 0 at lost units and sum_g r_g = lost generation
                       + lost wind - lost load

Key Features
------------
- Flow mapping per outage from ``network.flow_mapping`` (cached, pure)
- Islanding outage table derived once with networkx, overridable in config
- Parametric sweep over (epsilon, rho) archived in a ``ResultStore``
- Solver outcomes (optimal / infeasible / inaccurate / failed) never abort a sweep

Usage Example
-------------
>>> from dro_opf.core.data_loader import TransmissionDataLoader
>>> from dro_opf.core.config import TransmissionConfig
>>> loader = TransmissionDataLoader('data/ieee118')
>>> model = TransmissionDRO(loader.build_network(), wind_errors, TransmissionConfig())
>>> model.build_model(rho=30, epsilon=0.02)
>>> outcome = model.solve()
>>> model.print_summary()
"""
from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Tuple

import numpy as np
from pyomo.environ import (
    Block,
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

from .config import TransmissionConfig
from .flow_recovery import DCFlowRecovery
from .network import DCNetwork, OutageEffect
from .results import ResultStore
from .risk import RiskConstraintBuilder
from .scenarios import ScenarioSet
from .solver import SolveOutcome, SolverOracle, SolveStatus

logger = logging.getLogger(__name__)

_COEF_TOL = 1e-10

LOAD_OUTAGE = "load"
GENERATOR_OUTAGE = "generator"
LINE_OUTAGE = "line"


def _linear(coefs: np.ndarray, exprs: List, const: float = 0.0):
    return float(const) + quicksum(float(c) * x for c, x in zip(coefs, exprs) if abs(c) > _COEF_TOL)


class TransmissionDRO:
    """
    N-1 secure dispatch with a Wasserstein-robust CVaR penalty on line flows.

    Parameters
    ----------
    network : DCNetwork
        Transmission grid with generators, loads and wind farms
    wind_errors : ScenarioSet
        Empirical wind forecast errors, one column per wind farm (MW)
    config : TransmissionConfig
        Study settings; ``config.n_scenarios`` samples are used per solve
    oracle : SolverOracle, optional
        Defaults to ``SolverOracle(config.solver)``
    """

    def __init__(
        self,
        network: DCNetwork,
        wind_errors: ScenarioSet,
        config: Optional[TransmissionConfig] = None,
        oracle: Optional[SolverOracle] = None,
    ):
        self.network = network
        self.config = config or TransmissionConfig()
        self.config.validate()
        if wind_errors.dimension != network.n_wind:
            raise ValueError(
                f"Wind errors have {wind_errors.dimension} columns but the network has "
                f"{network.n_wind} wind farms"
            )
        self.scenarios = wind_errors.head(self.config.n_scenarios)
        self.oracle = oracle or SolverOracle(self.config.solver)
        self.outages: Dict[int, OutageEffect] = network.outage_table(self.config.outage_table)

        for line in self.config.monitored_lines:
            network.line_position(line.line_id)

        self.model = None
        self.builder: Optional[RiskConstraintBuilder] = None
        self.outcome: Optional[SolveOutcome] = None
        self.contingencies: List[Tuple[str, int]] = []
        self.static_violations: List[Tuple[str, int]] = []
        self.rho = None
        self.epsilon = None

    def build_model(self, rho: float, epsilon: float) -> ConcreteModel:
        """Build the DRO dispatch model for one (rho, epsilon) pair."""
        t0 = time.perf_counter()
        net = self.network
        xi = self.scenarios.samples
        n_s, n_k = xi.shape
        n_g = net.n_gen

        self.rho, self.epsilon = rho, epsilon
        self.outcome = None
        self.contingencies = []
        self.static_violations = []
        m = ConcreteModel(name="DRO-N1-DCOPF")
        self.model = m

        m.gens = RangeSet(0, n_g - 1)
        m.farms = RangeSet(0, n_k - 1)
        m.scenarios = RangeSet(0, n_s - 1)
        m.e = Var(m.gens, domain=NonNegativeReals, doc="Scheduled generator output (MW)")
        m.D = Var(m.gens, m.farms, domain=Reals, doc="Affine reserve policy")

        m.reserve_sum = Constraint(m.farms, rule=lambda m, k: sum(m.D[g, k] for g in m.gens) == -1)

        pd_mw = net.demand()
        pw_nominal = net.wind_nominal()
        m.balance = Constraint(expr=sum(m.e[g] for g in m.gens) + float(pw_nominal.sum()) == float(pd_mw.sum()))

        m.output = Expression(
            m.gens, m.scenarios,
            rule=lambda m, g, i: m.e[g] + quicksum(float(xi[i, k]) * m.D[g, k] for k in m.farms),
        )

        gens = net.generators
        c2 = gens["c2"].to_numpy(dtype=float)
        c1 = gens["c1"].to_numpy(dtype=float)
        c0 = gens["c0"].to_numpy(dtype=float)

        def scenario_cost(g, i):
            p = m.output[g, i]
            cost = float(c1[g]) * p + float(c0[g])
            if c2[g] != 0:
                cost = cost + float(c2[g]) * p * p
            return cost

        m.operating_cost = Expression(
            expr=sum(scenario_cost(g, i) for g in m.gens for i in m.scenarios) / n_s
        )

        if self.config.enforce_generator_limits:
            pmin = gens["pmin_mw"].to_numpy(dtype=float)
            pmax = gens["pmax_mw"].to_numpy(dtype=float)
            m.gen_limits = Constraint(
                m.gens, m.scenarios,
                rule=lambda m, g, i: (float(pmin[g]), m.output[g, i], float(pmax[g])),
            )

        self._add_risk_constraints(m, rho, epsilon, pd_mw, pw_nominal)

        m.risk = Expression(expr=self.builder.objective_term())
        m.obj = Objective(expr=m.operating_cost + m.risk, sense=minimize)

        xi_bar = self.scenarios.mean()
        m.mean_output = Expression(
            m.gens, rule=lambda m, g: m.e[g] + quicksum(float(xi_bar[k]) * m.D[g, k] for k in m.farms)
        )
        self._add_contingencies(m, pd_mw, pw_nominal, xi_bar)

        logger.info(
            "Built DRO-N1 model (rho=%g, epsilon=%g): %d monitored lines, %d contingencies in %.1fs",
            rho, epsilon, len(self.builder.terms), len(self.contingencies), time.perf_counter() - t0,
        )
        return m

    def _add_risk_constraints(self, m, rho, epsilon, pd_mw, pw_nominal) -> None:
        net = self.network
        xi = self.scenarios.samples
        gamma, _ = net.ptdf()
        gen_sens = gamma @ net.gen_incidence()
        wind_sens = gamma @ net.wind_incidence()
        base_flow = gamma @ (net.wind_incidence() @ pw_nominal - pd_mw)
        limits = net.line_limits()

        self.builder = RiskConstraintBuilder(
            n_scenarios=self.scenarios.n_samples,
            rho=rho,
            alpha=self.config.alpha,
            epsilon=epsilon,
            norm=self.config.wasserstein_norm,
        )
        for line in self.config.monitored_lines:
            pos = net.line_position(line.line_id)
            limit = line.limit_mw if line.limit_mw is not None else limits[pos]
            d = line.direction
            violations = [
                d * _linear(
                    gen_sens[pos],
                    [m.output[g, i] for g in m.gens],
                    base_flow[pos] + wind_sens[pos] @ xi[i],
                ) - limit
                for i in m.scenarios
            ]
            gradients = [
                d * _linear(gen_sens[pos], [m.D[g, k] for g in m.gens], wind_sens[pos, k])
                for k in m.farms
            ]
            self.builder.add(m, f"cvar_line_{line.line_id}", violations, gradients, kind="line_flow")

    def _add_flow_limits(self, blk, gamma, limits, injection, cg, gen_exprs) -> None:
        gen_sens = gamma @ cg
        const = gamma @ injection
        blk.lines = RangeSet(0, len(limits) - 1)

        def flow_limit_rule(b, l):
            if np.all(np.abs(gen_sens[l]) <= _COEF_TOL):
                # flow does not depend on dispatch
                if abs(const[l]) > limits[l]:
                    self.static_violations.append((b.local_name, l))
                return Constraint.Skip
            return (-float(limits[l]), _linear(gen_sens[l], gen_exprs, const[l]), float(limits[l]))

        blk.flow_limit = Constraint(blk.lines, rule=flow_limit_rule)

    def _add_contingencies(self, m, pd_mw, pw_nominal, xi_bar) -> None:
        net = self.network
        cfg = self.config
        cw = net.wind_incidence()
        gamma, _ = net.ptdf()
        limits = net.line_limits()
        mean_out = [m.mean_output[g] for g in m.gens]
        wind_mean = cw @ (pw_nominal + xi_bar)

        if cfg.include_load_contingencies:
            for bus in net.load_buses():
                p_lost = float(pd_mw[net.bus_index[bus]])
                blk = Block()
                m.add_component(f"n1_load_{bus}", blk)
                blk.share = Var(m.gens, domain=Reals, doc="Recourse shares of the lost load")
                blk.share_sum = Constraint(expr=sum(blk.share[g] for g in m.gens) == 1)
                exprs = [mean_out[g] - p_lost * blk.share[g] for g in m.gens]
                injection = wind_mean - net.demand(exclude_loads=[bus])
                self._add_flow_limits(blk, gamma, limits, injection, net.gen_incidence(), exprs)
                self.contingencies.append((LOAD_OUTAGE, bus))

        if cfg.include_generator_contingencies:
            injection = wind_mean - pd_mw
            for j, gen_id in enumerate(net.generators["gen_id"]):
                gen_id = int(gen_id)
                blk = Block()
                m.add_component(f"n1_gen_{gen_id}", blk)
                blk.recourse = Var(m.gens, domain=Reals)
                blk.recourse[j].fix(0.0)
                blk.recourse_sum = Constraint(expr=sum(blk.recourse[g] for g in m.gens) == m.e[j])
                exprs = [mean_out[g] + blk.recourse[g] for g in m.gens]
                self._add_flow_limits(blk, gamma, limits, injection, net.gen_incidence(exclude=[gen_id]), exprs)
                self.contingencies.append((GENERATOR_OUTAGE, gen_id))

        if cfg.include_line_contingencies:
            gen_pos = {int(g): j for j, g in enumerate(net.generators["gen_id"])}
            farm_pos = {int(f): k for k, f in enumerate(net.wind["farm_id"])}
            for lid in net.line_ids:
                gamma_n1, _ = net.ptdf(exclude_line=lid)
                limits_n1 = net.line_limits(exclude_line=lid)
                effect = self.outages.get(lid)
                blk = Block()
                m.add_component(f"n1_line_{lid}", blk)

                if effect is None or effect.is_empty:
                    injection = wind_mean - pd_mw
                    self._add_flow_limits(blk, gamma_n1, limits_n1, injection, net.gen_incidence(), mean_out)
                else:
                    lost_gens = [gen_pos[g] for g in effect.generators]
                    lost_farms = [farm_pos[w] for w in effect.wind]
                    cw_n1 = net.wind_incidence(exclude=effect.wind)
                    injection = cw_n1 @ (pw_nominal + xi_bar) - net.demand(exclude_loads=effect.loads)
                    lost_supply = float(sum(pw_nominal[k] + xi_bar[k] for k in lost_farms))
                    lost_demand = float(sum(pd_mw[net.bus_index[b]] for b in effect.loads))

                    blk.recourse = Var(m.gens, domain=Reals)
                    for j in lost_gens:
                        blk.recourse[j].fix(0.0)
                    blk.recourse_sum = Constraint(
                        expr=sum(blk.recourse[g] for g in m.gens)
                        == sum(m.e[j] for j in lost_gens) + lost_supply - lost_demand
                    )
                    exprs = [mean_out[g] + blk.recourse[g] for g in m.gens]
                    cg_n1 = net.gen_incidence(exclude=effect.generators)
                    self._add_flow_limits(blk, gamma_n1, limits_n1, injection, cg_n1, exprs)
                self.contingencies.append((LINE_OUTAGE, lid))

    def solve(self) -> SolveOutcome:
        """Solve the current model; the outcome is kept on ``self.outcome``."""
        if self.model is None:
            raise RuntimeError("build_model() must be called before solve()")
        if self.static_violations:
            where = ", ".join(f"{name}[{row}]" for name, row in self.static_violations[:5])
            logger.warning("Dispatch-independent flows exceed limits: %s", where)
            self.outcome = SolveOutcome(SolveStatus.INFEASIBLE, message=f"fixed overloads: {where}")
            return self.outcome
        self.outcome = self.oracle.solve(self.model)
        logger.info("rho=%g epsilon=%g: %s in %.2fs", self.rho, self.epsilon,
                    self.outcome.status.value, self.outcome.solve_time)
        return self.outcome

    def recourse(self, family: str, element: int) -> np.ndarray:
        """Solved recourse vector of one contingency (MW per generator)."""
        m = self.model
        if family == LOAD_OUTAGE:
            blk = m.component(f"n1_load_{element}")
            p_lost = float(self.network.demand()[self.network.bus_index[element]])
            return np.array([-p_lost * value(blk.share[g]) for g in m.gens])
        name = f"n1_gen_{element}" if family == GENERATOR_OUTAGE else f"n1_line_{element}"
        blk = m.component(name)
        if blk is None or not hasattr(blk, "recourse"):
            return np.zeros(self.network.n_gen)
        return np.array([value(blk.recourse[g]) for g in m.gens])

    def dispatch(self) -> Tuple[np.ndarray, np.ndarray]:
        """Solved schedule ``e`` (G,) and reserve policy ``D`` (G, K)."""
        m = self.model
        e = np.array([value(m.e[g]) for g in m.gens])
        d = np.array([[value(m.D[g, k]) for k in m.farms] for g in m.gens])
        return e, d

    def get_results(self) -> Optional[dict]:
        """Archive record of the current solve."""
        if self.model is None or self.outcome is None:
            return None
        outcome = self.outcome
        record = {
            'status': outcome.status,
            'objective': outcome.objective,
            'solve_time': outcome.solve_time,
        }
        if not outcome.ok:
            record.update({'operating_cost': np.nan, 'cvar': np.nan, 'violation': np.nan})
            return record

        net = self.network
        e, d = self.dispatch()
        injection = net.gen_incidence() @ e + net.wind_incidence() @ net.wind_nominal() - net.demand()
        flows = DCFlowRecovery(net).recover(injection)

        cvar = self.builder.total_cvar()
        record.update({
            'operating_cost': value(self.model.operating_cost),
            'cvar': cvar,
            'violation': max(0.0, cvar),
            'cvar_by_line': {
                name.replace('cvar_', ''): val for name, val in self.builder.cvar_by_constraint().items()
            },
            'var_by_line': {
                term.name.replace('cvar_', ''): term.var_proxy() for term in self.builder.terms
            },
            'dispatch': e,
            'reserve_policy': d,
            'line_flows': flows.flows,
            'flows_within_limits': flows.success,
        })
        return record

    def out_of_sample_violation(self, samples: ScenarioSet) -> Dict[int, float]:
        """Empirical violation probability of each monitored line under unseen wind errors."""
        if self.outcome is None or not self.outcome.ok:
            raise RuntimeError("No solved dispatch to evaluate")
        net = self.network
        e, d = self.dispatch()
        xi = samples.samples
        gamma, _ = net.ptdf()
        cg, cw = net.gen_incidence(), net.wind_incidence()
        injections = (
            (cg @ (e[:, None] + d @ xi.T))
            + (cw @ (net.wind_nominal()[:, None] + xi.T))
            - net.demand()[:, None]
        )
        flows = gamma @ injections
        limits = net.line_limits()
        out = {}
        for line in self.config.monitored_lines:
            pos = net.line_position(line.line_id)
            limit = line.limit_mw if line.limit_mw is not None else limits[pos]
            out[line.line_id] = float(np.mean(line.direction * flows[pos] > limit))
        return out

    def run_sweep(self, store: Optional[ResultStore] = None) -> ResultStore:
        """Solve every (epsilon, rho) pair of the configuration."""
        store = store if store is not None else ResultStore(key_names=("epsilon", "rho"))
        for epsilon in self.config.epsilon_values:
            for rho in self.config.rho_values:
                logger.info("Wasserstein radius %g, weight factor %g", epsilon, rho)
                self.build_model(rho, epsilon)
                self.solve()
                store.append((epsilon, rho), self.get_results())
        return store

    def print_summary(self) -> None:
        """Print a formatted summary of the current solve."""
        results = self.get_results()
        if results is None:
            print("No results available - solve the model first")
            return

        print("\n" + "=" * 60)
        print("DRO N-1 DISPATCH RESULTS SUMMARY")
        print("=" * 60)
        print(f"Weight factor rho:        {self.rho}")
        print(f"Wasserstein radius:       {self.epsilon}")
        print(f"Solver status:            {results['status'].value}")
        if results['status'] in (SolveStatus.OPTIMAL, SolveStatus.INACCURATE):
            print(f"Objective:                {results['objective']:,.2f}")
            print(f"Operating cost:           {results['operating_cost']:,.2f}")
            print(f"Total CVaR:               {results['cvar']:.4f}")
            for name, val in results['cvar_by_line'].items():
                print(f"  {name:12s}: CVaR {val:10.4f}  VaR proxy {results['var_by_line'][name]:10.4f}")
            print(f"Total scheduled output:   {results['dispatch'].sum():.2f} MW")
            print(f"Contingencies enforced:   {len(self.contingencies)}")
        print("=" * 60)

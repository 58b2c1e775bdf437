import numpy as np
import pytest
from pyomo.environ import value

from dro_opf.core.config import (
    INVERTER_CAPACITY_CVAR,
    POWER_FACTOR,
    VOLTAGE_LOWER_CVAR,
    VOLTAGE_UPPER_DRO,
    VOLTAGE_UPPER_NOMINAL,
    DistributionConfig,
)
from dro_opf.core.distribution_dro import DistributionDRO
from dro_opf.core.results import ResultStore
from dro_opf.core.schedule import ActivationSchedule
from dro_opf.core.solver import SolveStatus, SolverOracle

LINEAR_KINDS = [VOLTAGE_UPPER_DRO, VOLTAGE_LOWER_CVAR, POWER_FACTOR]


def _study(feeder, engine, loads, solver="appsi_highs", kinds=LINEAR_KINDS, oracle=None, **kwargs):
    settings = dict(
        horizon=3,
        n_scenarios=5,
        rho_values=[1.0, 10.0],
        epsilon=0.01,
        start_epoch=0,
        end_epoch=3,
        solver=solver,
        initial_soc_fraction=0.5,
    )
    settings.update(kwargs)
    cfg = DistributionConfig(**settings)
    return DistributionDRO(
        feeder, engine, loads[0], loads[1], config=cfg,
        schedule=ActivationSchedule.always(kinds), oracle=oracle,
    )


def test_inputs_are_checked(feeder, pv_engine, feeder_loads):
    with pytest.raises(ValueError):
        DistributionDRO(feeder, pv_engine, feeder_loads[0][:, :2], feeder_loads[1][:, :2])
    with pytest.raises(ValueError):
        _study(feeder, pv_engine, feeder_loads).build_model(1.0, 0, soc=np.zeros(3))


def test_model_follows_schedule(feeder, pv_engine, feeder_loads):
    study = _study(feeder, pv_engine, feeder_loads)
    m = study.build_model(rho=1.0, epoch=0)
    # one DRO term per PQ node and step
    assert len(study.builder.terms) == 3 * 3
    assert m.component("vmin_n703_h2") is not None
    assert m.component("pf_upper") is not None
    assert m.component("vmax_nominal") is None
    assert m.component("inverter_n702_h0") is None

    study = _study(feeder, pv_engine, feeder_loads, kinds=[VOLTAGE_UPPER_NOMINAL, INVERTER_CAPACITY_CVAR])
    m = study.build_model(rho=1.0, epoch=0)
    assert len(study.builder.terms) == 0
    assert m.component("vmax_nominal") is not None
    assert m.component("inverter_n702_h0") is not None


def test_horizon_one_freezes_storage(feeder, pv_engine, feeder_loads):
    study = _study(feeder, pv_engine, feeder_loads, horizon=1)
    m = study.build_model(rho=1.0, epoch=0, soc=np.array([0.3]))
    assert m.component("battery_dynamics") is None
    assert m.component("soc_init") is None
    assert m.PB[0, 0].fixed and value(m.PB[0, 0]) == 0.0
    assert m.B[0, 0].fixed and value(m.B[0, 0]) == pytest.approx(0.3)
    assert study.next_soc(np.array([0.3])) == pytest.approx([0.3])


def test_horizon_one_solves_and_keeps_state(feeder, pv_engine, feeder_loads, lp_solver):
    study = _study(feeder, pv_engine, feeder_loads, solver=lp_solver, horizon=1)
    record, carried = study.run_epoch(1.0, 0, np.array([0.3]))
    assert record["status"].has_solution
    assert carried == pytest.approx([0.3])
    assert record["battery_power"] == pytest.approx([0.0])


def test_single_epoch_is_idempotent(feeder, pv_engine, feeder_loads, lp_solver):
    study = _study(feeder, pv_engine, feeder_loads, solver=lp_solver)
    soc = np.array([0.4])
    first, carried_first = study.run_epoch(10.0, 1, soc)
    second, carried_second = study.run_epoch(10.0, 1, soc)
    assert first["status"] is second["status"] is SolveStatus.OPTIMAL
    assert first["objective"] == pytest.approx(second["objective"], rel=1e-9, abs=1e-9)
    assert carried_first == pytest.approx(carried_second, abs=1e-7)
    assert first["curtailment"] == pytest.approx(second["curtailment"], abs=1e-7)


def test_record_contents(feeder, pv_engine, feeder_loads, lp_solver):
    study = _study(feeder, pv_engine, feeder_loads, solver=lp_solver)
    record, _ = study.run_epoch(10.0, 0, study.initial_soc())
    assert record["objective"] == pytest.approx(record["operating_cost"] + 10.0 * record["cvar"], rel=1e-6, abs=1e-8)
    assert record["violation"] == max(0.0, record["cvar"])
    assert record["linear_voltage"].shape == (4,)
    assert record["linear_voltage"][0] == pytest.approx(1.02)
    assert np.all((record["curtailment"] >= -1e-9) & (record["curtailment"] <= 1 + 1e-9))
    assert record["soc"] == pytest.approx([0.5])
    # power-factor limit at the mean PV output
    pv_mean = pv_engine.realized_output(0, 3).mean(axis=0)[0]
    assert np.all(np.abs(record["reactive_power"]) <= 0.44 * (1 - record["curtailment"]) * pv_mean + 1e-6)
    study.print_summary()


def test_state_is_carried_between_epochs(feeder, pv_engine, feeder_loads, lp_solver):
    study = _study(feeder, pv_engine, feeder_loads, solver=lp_solver, rho_values=[10.0])
    store = study.run()
    assert len(store) == 3
    dt = 5 / 60.0
    for epoch in (1, 2):
        prev = store.get((10.0, epoch - 1))
        cur = store.get((10.0, epoch))
        assert cur["soc"] == pytest.approx(prev["soc"] + prev["battery_power"] * dt, abs=1e-6)


def test_rho_trade_off(feeder, pv_engine, feeder_loads, lp_solver):
    rhos = [1.0, 100.0, 10000.0]
    study = _study(feeder, pv_engine, feeder_loads, solver=lp_solver, rho_values=rhos, end_epoch=1)
    store = study.run()
    costs = [r for _, r in store.series("operating_cost", epoch=0)]
    cvars = [r for _, r in store.series("cvar", epoch=0)]
    assert np.all(np.diff(costs) >= -1e-6 * max(1.0, max(np.abs(costs))))
    assert np.all(np.diff(cvars) <= 1e-7)


def test_failed_solves_keep_state_and_do_not_stop_the_sweep(feeder, pv_engine, feeder_loads):
    study = _study(feeder, pv_engine, feeder_loads, oracle=SolverOracle("no_such_solver"))
    store = ResultStore(("rho", "epoch"))
    study.run(store)
    assert len(store) == 6
    for _, record in store.items():
        assert record["status"] is SolveStatus.FAILED
        assert np.isnan(record["operating_cost"])
    record, carried = study.run_epoch(1.0, 5, np.array([0.2]))
    assert carried is None


def test_monte_carlo_verification_records_every_sample(feeder, pv_engine, feeder_loads, lp_solver):
    from dro_opf.core.flow_recovery import SDPVoltageRecovery

    study = _study(feeder, pv_engine, feeder_loads, solver=lp_solver, monte_carlo_workers=2)
    study.recovery = SDPVoltageRecovery(feeder.y_net, 1.02)
    study.monte_carlo = np.full((3, 6), 0.2)
    record, _ = study.run_epoch(1.0, 0, study.initial_soc())
    assert record["mc_success"].shape == (3,)
    assert record["mc_voltages"].shape == (3, 4)
    assert 0.0 <= record["mc_success_rate"] <= 1.0
    assert "sdp_success" in record


class _InaccurateOracle(SolverOracle):
    """Solves normally but reports every solution as uncertified."""

    def solve(self, model, objective=None):
        outcome = super().solve(model, objective)
        if outcome.ok:
            outcome.status = SolveStatus.INACCURATE
        return outcome


def test_inaccurate_solves_are_archived_but_do_not_advance_state(feeder, pv_engine, feeder_loads, lp_solver):
    study = _study(feeder, pv_engine, feeder_loads, oracle=_InaccurateOracle(lp_solver), rho_values=[10.0])
    record, carried = study.run_epoch(10.0, 0, np.array([0.5]))
    assert record["status"] is SolveStatus.INACCURATE
    assert carried is None
    assert np.isfinite(record["operating_cost"])

    store = study.run()
    for epoch in (0, 1, 2):
        assert store.get((10.0, epoch))["soc"] == pytest.approx([0.5])

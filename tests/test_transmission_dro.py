import numpy as np
import pandas as pd
import pytest
from pyomo.environ import value

from dro_opf.core.config import MonitoredLine, TransmissionConfig
from dro_opf.core.network import DCNetwork
from dro_opf.core.scenarios import ScenarioSet
from dro_opf.core.solver import SolveStatus, SolverOracle
from dro_opf.core.transmission_dro import (
    GENERATOR_OUTAGE,
    LINE_OUTAGE,
    LOAD_OUTAGE,
    TransmissionDRO,
)


def _config(solver="appsi_highs", **kwargs):
    defaults = dict(
        n_scenarios=5,
        alpha=0.2,
        rho_values=[1.0],
        epsilon_values=[0.0],
        monitored_lines=[MonitoredLine(1, limit_mw=30.0), MonitoredLine(5, direction=-1)],
        enforce_generator_limits=True,
        solver=solver,
    )
    defaults.update(kwargs)
    return TransmissionConfig(**defaults)


def test_constructor_validates_inputs(mesh_network, wind_errors):
    with pytest.raises(ValueError):
        TransmissionDRO(mesh_network, ScenarioSet(np.zeros((5, 2))), _config())
    with pytest.raises(KeyError):
        TransmissionDRO(mesh_network, wind_errors, _config(monitored_lines=[MonitoredLine(99)]))
    with pytest.raises(ValueError):
        TransmissionDRO(mesh_network, wind_errors, _config(n_scenarios=10))


def test_model_structure(mesh_network, wind_errors):
    study = TransmissionDRO(mesh_network, wind_errors, _config())
    m = study.build_model(rho=10.0, epsilon=0.02)
    assert m.component("cvar_line_1") is not None
    assert m.component("cvar_line_5") is not None
    families = {family for family, _ in study.contingencies}
    assert families == {LOAD_OUTAGE, GENERATOR_OUTAGE, LINE_OUTAGE}
    assert len(study.contingencies) == 4 + 3 + 6
    # the spur outage drops generator 3 from the recourse
    assert m.n1_line_6.recourse[2].fixed
    assert not hasattr(m.n1_line_1, "recourse")
    assert m.n1_gen_2.recourse[1].fixed and value(m.n1_gen_2.recourse[1]) == 0.0


def test_contingency_families_can_be_switched_off(mesh_network, wind_errors):
    cfg = _config(include_load_contingencies=False, include_line_contingencies=False)
    study = TransmissionDRO(mesh_network, wind_errors, cfg)
    study.build_model(rho=1.0, epsilon=0.0)
    assert [family for family, _ in study.contingencies] == [GENERATOR_OUTAGE] * 3


def test_generator_contingency_recourse_covers_lost_output(mesh_network, wind_errors, lp_solver):
    study = TransmissionDRO(mesh_network, wind_errors, _config(lp_solver))
    study.build_model(rho=10.0, epsilon=0.01)
    outcome = study.solve()
    assert outcome.ok
    e, d = study.dispatch()
    assert d.sum(axis=0) == pytest.approx([-1.0], abs=1e-6)
    assert e.sum() + 50.0 == pytest.approx(190.0, abs=1e-6)
    for j, gen_id in enumerate(mesh_network.generators["gen_id"]):
        recourse = study.recourse(GENERATOR_OUTAGE, int(gen_id))
        assert recourse.sum() == pytest.approx(e[j], abs=1e-5)
        assert recourse[j] == 0.0
    # islanding outage: generator 3 and its 10 MW load leave together
    spur = study.recourse(LINE_OUTAGE, 6)
    assert spur.sum() == pytest.approx(e[2] - 10.0, abs=1e-5)


def test_lost_load_recourse_shares_sum_to_one(two_gen_network, wind_errors, lp_solver):
    cfg = _config(lp_solver, monitored_lines=[MonitoredLine(1)])
    study = TransmissionDRO(two_gen_network, wind_errors, cfg)
    study.build_model(rho=1.0, epsilon=0.0)
    assert study.solve().ok
    recourse = study.recourse(LOAD_OUTAGE, 3)
    shares = np.array([value(study.model.n1_load_3.share[g]) for g in study.model.gens])
    assert shares.sum() == pytest.approx(1.0, abs=1e-6)
    assert -recourse.sum() == pytest.approx(10.0, abs=1e-6)


def test_results_record(mesh_network, wind_errors, lp_solver):
    study = TransmissionDRO(mesh_network, wind_errors, _config(lp_solver))
    study.build_model(rho=10.0, epsilon=0.0)
    study.solve()
    record = study.get_results()
    assert record["status"] is SolveStatus.OPTIMAL
    assert set(record["cvar_by_line"]) == {"line_1", "line_5"}
    assert record["cvar"] == pytest.approx(sum(record["cvar_by_line"].values()))
    assert record["violation"] == max(0.0, record["cvar"])
    assert record["objective"] == pytest.approx(record["operating_cost"] + 10.0 * record["cvar"], rel=1e-6)
    assert record["line_flows"].shape == (6,)
    assert record["reserve_policy"].shape == (3, 1)
    assert record["flows_within_limits"]
    study.print_summary()


def test_rho_sweep_traces_trade_off(mesh_network, wind_errors, lp_solver):
    cfg = _config(
        lp_solver,
        rho_values=[1.0, 10.0, 100.0, 1000.0],
        epsilon_values=[0.0, 0.05],
        monitored_lines=[MonitoredLine(1, limit_mw=5.0)],
    )
    store = TransmissionDRO(mesh_network, wind_errors, cfg).run_sweep()
    assert len(store) == 8
    for eps in cfg.epsilon_values:
        costs = [r for _, r in store.series("operating_cost", epsilon=eps)]
        cvars = [r for _, r in store.series("cvar", epsilon=eps)]
        assert np.all(np.diff(costs) >= -1e-6 * max(np.abs(costs)))
        assert np.all(np.diff(cvars) <= 1e-6)


def test_out_of_sample_violation(mesh_network, wind_errors, lp_solver):
    study = TransmissionDRO(mesh_network, wind_errors, _config(lp_solver))
    with pytest.raises(RuntimeError):
        study.out_of_sample_violation(wind_errors)
    study.build_model(rho=10.0, epsilon=0.0)
    study.solve()
    rates = study.out_of_sample_violation(ScenarioSet(np.linspace(-10, 10, 21)))
    assert set(rates) == {1, 5}
    assert all(0.0 <= p <= 1.0 for p in rates.values())


def test_dispatch_independent_overload_is_infeasible_without_solver():
    buses = pd.DataFrame({"bus_id": [1, 2, 3], "type": [3, 1, 1], "pd_mw": [0.0, 0.0, 100.0]}).set_index("bus_id")
    branches = pd.DataFrame({
        "line_id": [1, 2, 3], "from_bus": [1, 2, 1], "to_bus": [2, 3, 3],
        "x": [0.1, 0.1, 0.1], "rate_a_mw": [10.0, 10.0, 10.0],
    })
    # every unit sits at the reference bus, so no flow depends on the dispatch
    gens = pd.DataFrame({"gen_id": [1, 2], "bus_id": [1, 1], "c2": [0.0, 0.0], "c1": [1.0, 2.0], "c0": [0.0, 0.0]})
    wind = pd.DataFrame({"farm_id": [1], "bus_id": [1], "nominal_mw": [0.0]})
    net = DCNetwork(buses, branches, gens, wind)
    cfg = _config("no_such_solver", monitored_lines=[MonitoredLine(1)], enforce_generator_limits=False,
                  rho_values=[1.0, 5.0])
    study = TransmissionDRO(net, ScenarioSet(np.zeros((5, 1))), cfg, oracle=SolverOracle("no_such_solver"))
    store = study.run_sweep()
    assert len(store) == 2
    for _, record in store.items():
        assert record["status"] is SolveStatus.INFEASIBLE
        assert np.isnan(record["cvar"])
    assert study.static_violations


def test_missing_solver_is_reported_as_failure(mesh_network, wind_errors):
    study = TransmissionDRO(mesh_network, wind_errors, _config("no_such_solver"))
    study.build_model(rho=1.0, epsilon=0.0)
    outcome = study.solve()
    assert outcome.status is SolveStatus.FAILED
    assert study.get_results()["status"] is SolveStatus.FAILED


def test_solver_infeasibility_is_archived_without_stopping_the_sweep(mesh_network, wind_errors, lp_solver):
    # 1 MW lines cannot carry the 10 MW bus 2 deficit after any load outage
    mesh_network.branches["rate_a_mw"] = 1.0
    cfg = _config(
        lp_solver,
        rho_values=[1.0, 10.0],
        epsilon_values=[0.0, 0.02],
        include_generator_contingencies=False,
        include_line_contingencies=False,
    )
    study = TransmissionDRO(mesh_network, wind_errors, cfg)
    store = study.run_sweep()
    assert len(store) == 4
    assert not study.static_violations
    for _, record in store.items():
        assert record["status"] is SolveStatus.INFEASIBLE
        assert np.isnan(record["cvar"])

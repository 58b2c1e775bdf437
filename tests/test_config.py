import json
from pathlib import Path

import numpy as np
import pytest

from dro_opf.core.config import (
    INVERTER_CAPACITY_CVAR,
    POWER_FACTOR,
    VOLTAGE_LOWER_CVAR,
    VOLTAGE_UPPER_DRO,
    VOLTAGE_UPPER_NOMINAL,
    ActivationWindow,
    DistributionConfig,
    MonitoredLine,
    TransmissionConfig,
    config_from_dict,
    load_config,
    window_summary,
)
from dro_opf.core.results import ResultStore
from dro_opf.core.schedule import ActivationSchedule
from dro_opf.core.solver import SolveStatus


def test_distribution_defaults():
    cfg = load_config(None, DistributionConfig)
    assert cfg.epochs_per_day == 288
    assert cfg.s_base == pytest.approx(4800.0 ** 2)
    assert cfg.rho_values == [1, 5, 10, 15, 20, 30, 35, 40, 100, 200]
    assert (cfg.import_cost, cfg.feed_in_cost, cfg.reactive_cost, cfg.curtailment_cost) == (10, 3, 3, 6)


def test_transmission_defaults():
    cfg = TransmissionConfig()
    assert cfg.rho_values[:3] == [1, 10, 30] and cfg.rho_values[-1] == 900
    assert [ln.line_id for ln in cfg.monitored_lines] == [7, 37, 38, 54, 96]
    assert cfg.monitored_lines[0].direction == -1


def test_json_config_with_nested_objects(tmp_path):
    path = tmp_path / "study.json"
    path.write_text(json.dumps({
        "rho_values": [5, 50],
        "monitored_lines": [{"line_id": 3, "direction": -1, "limit_mw": 80.0}],
        "outage_table": {"9": {"generators": [4]}},
    }))
    cfg = load_config(str(path), TransmissionConfig)
    assert cfg.rho_values == [5, 50]
    assert cfg.monitored_lines == [MonitoredLine(3, -1, 80.0)]
    assert cfg.outage_table == {9: {"generators": [4]}}


@pytest.mark.parametrize(
    "data",
    [
        {"horizon": 0},
        {"rho_values": [1, -2]},
        {"epsilon": -0.1},
        {"voltage_tolerance": 1.5},
        {"wasserstein_norm": "l2"},
        {"not_a_field": 1},
        {"start_epoch": 10, "end_epoch": 5},
        {"initial_soc_fraction": 2.0},
    ],
)
def test_invalid_distribution_configs_raise(data):
    with pytest.raises(ValueError):
        config_from_dict(data, DistributionConfig)


def test_invalid_transmission_configs_raise():
    with pytest.raises(ValueError):
        config_from_dict({"alpha": 0.0}, TransmissionConfig)
    with pytest.raises(ValueError):
        config_from_dict({"monitored_lines": [{"line_id": 1, "direction": 2}]}, TransmissionConfig)
    with pytest.raises(ValueError):
        config_from_dict({"epsilon_values": [0.0, -1.0]}, TransmissionConfig)


def test_default_schedule_windows():
    schedule = ActivationSchedule.daytime(5)
    # 06:00 itself is outside the daytime window
    assert schedule(72) == frozenset()
    assert schedule(73) == {VOLTAGE_UPPER_DRO, VOLTAGE_LOWER_CVAR, INVERTER_CAPACITY_CVAR, POWER_FACTOR}
    assert VOLTAGE_UPPER_NOMINAL in schedule(200)
    assert VOLTAGE_UPPER_DRO in schedule(200)
    assert schedule(216) == {VOLTAGE_UPPER_NOMINAL, VOLTAGE_LOWER_CVAR, INVERTER_CAPACITY_CVAR, POWER_FACTOR}


def test_schedule_rejects_unknown_kinds_and_summarises():
    with pytest.raises(ValueError):
        ActivationSchedule([ActivationWindow(0, None, ["frequency"])])
    schedule = ActivationSchedule.always([POWER_FACTOR])
    assert schedule(10_000) == {POWER_FACTOR}
    assert window_summary(schedule.windows) == [(0, None, [POWER_FACTOR])]


def test_result_store_is_append_only():
    store = ResultStore(("rho", "epoch"))
    store.append((1.0, 0), {"status": SolveStatus.OPTIMAL, "cvar": 0.1})
    with pytest.raises(ValueError):
        store.append((1.0, 0), {"status": SolveStatus.OPTIMAL})
    with pytest.raises(ValueError):
        store.append((1.0,), {})
    assert (1.0, 0) in store and len(store) == 1


def test_result_store_frame_and_series(tmp_path):
    store = ResultStore(("epsilon", "rho"))
    store.append((0.0, 1), {
        "status": SolveStatus.OPTIMAL,
        "cvar": 0.5,
        "cvar_by_line": {"line_7": 0.2, "line_37": 0.3},
        "dispatch": np.array([10.0, 20.0]),
        "reserve_policy": np.eye(2),
    })
    store.append((0.0, 10), {"status": SolveStatus.INFEASIBLE, "cvar": np.nan})
    store.append((0.02, 1), {"status": SolveStatus.OPTIMAL, "cvar": 0.7})

    frame = store.to_frame()
    assert list(frame["status"]) == ["optimal", "infeasible", "optimal"]
    assert frame.loc[0, "cvar_by_line_line_37"] == pytest.approx(0.3)
    assert frame.loc[0, "dispatch_1"] == pytest.approx(20.0)
    assert not any(c.startswith("reserve_policy") for c in frame.columns)
    assert [v for _, v in store.series("cvar", epsilon=0.02)] == [0.7]

    path = tmp_path / "out.csv"
    store.to_csv(str(path))
    assert path.read_text().splitlines()[0].startswith("epsilon,rho,status")


def test_shipped_generation_n1_config():
    path = Path(__file__).resolve().parents[1] / "configs" / "ieee118_generation_n1.json"
    cfg = load_config(str(path), TransmissionConfig)
    assert cfg.include_load_contingencies and cfg.include_generator_contingencies
    assert not cfg.include_line_contingencies
    assert cfg.epsilon_values == [0.0, 0.02, 0.04]
    assert [ln.line_id for ln in cfg.monitored_lines] == [7, 37, 38, 54, 96]

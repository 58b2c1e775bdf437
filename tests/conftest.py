import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from dro_opf.core.admittance import form_admittance
from dro_opf.core.data_loader import FeederNetwork
from dro_opf.core.network import DCNetwork
from dro_opf.core.scenarios import FeederScenarioEngine, ScenarioSet
from dro_opf.core.solver import SolverOracle

LP_SOLVERS = ("appsi_highs", "gurobi_direct", "gurobi", "glpk", "cbc")


def _first_available(names):
    for name in names:
        if SolverOracle(name).available():
            return name
    return None


@pytest.fixture(scope="session")
def lp_solver():
    name = _first_available(LP_SOLVERS)
    if name is None:
        pytest.skip("no LP solver available to Pyomo")
    return name


@pytest.fixture
def feeder():
    """Four-node chain: substation, a battery node and two PV nodes."""
    lines = [(0, 1, 0.01 + 0.02j, 0.0), (1, 2, 0.01 + 0.02j, 0.0), (2, 3, 0.01 + 0.02j, 0.0)]
    return FeederNetwork(
        node_ids=[799, 701, 702, 703],
        y_net=form_admittance(4, lines),
        p_load=np.array([0.0, 0.1, 0.1, 0.1]),
        q_load=np.array([0.0, 0.05, 0.05, 0.05]),
        pv_nodes=[2, 3],
        pv_capacity=np.array([2.0, 2.0]),
        battery_nodes=[1],
        battery_capacity=np.array([1.0]),
    )


@pytest.fixture
def pv_engine():
    """Six epochs of a flat 1.5 p.u. forecast with five error scenarios."""
    rng = np.random.default_rng(7)
    forecast = np.full(6, 1.5)
    errors = rng.normal(scale=0.2, size=(6, 4, 5))
    errors[:, 0, :] = 0.0
    return FeederScenarioEngine(forecast, errors, capacities=np.array([2.0, 2.0]), n_scenarios=5)


@pytest.fixture
def feeder_loads(feeder):
    return feeder.p_load[None, :], feeder.q_load[None, :]


def _frame(rows, columns, index=None):
    df = pd.DataFrame(rows, columns=columns)
    if index:
        df = df.set_index(index)
    return df


@pytest.fixture
def mesh_network():
    """
    Four-bus ring with a chord plus a radial spur to bus 5.

    Line 6 is the only connection of bus 5, which hosts a load and generator 3.
    """
    buses = _frame(
        [(1, 3, 0.0), (2, 1, 60.0), (3, 1, 80.0), (4, 1, 40.0), (5, 1, 10.0)],
        ["bus_id", "type", "pd_mw"], "bus_id",
    )
    branches = _frame(
        [
            (1, 1, 2, 0.1, 500.0),
            (2, 2, 3, 0.1, 500.0),
            (3, 3, 4, 0.1, 500.0),
            (4, 4, 1, 0.1, 500.0),
            (5, 1, 3, 0.2, 500.0),
            (6, 4, 5, 0.1, 500.0),
        ],
        ["line_id", "from_bus", "to_bus", "x", "rate_a_mw"],
    )
    generators = _frame(
        [
            (1, 1, 300.0, 0.0, 0.0, 10.0, 0.0),
            (2, 3, 300.0, 0.0, 0.0, 20.0, 0.0),
            (3, 5, 50.0, 0.0, 0.0, 15.0, 0.0),
        ],
        ["gen_id", "bus_id", "pmax_mw", "pmin_mw", "c2", "c1", "c0"],
    )
    wind = _frame([(1, 2, 50.0)], ["farm_id", "bus_id", "nominal_mw"])
    return DCNetwork(buses, branches, generators, wind)


@pytest.fixture
def two_gen_network():
    """Three-bus triangle, generators at buses 1 and 2, a 10 MW load at bus 3."""
    buses = _frame([(1, 3, 0.0), (2, 1, 0.0), (3, 1, 10.0)], ["bus_id", "type", "pd_mw"], "bus_id")
    branches = _frame(
        [(1, 1, 2, 0.1, 100.0), (2, 2, 3, 0.1, 100.0), (3, 1, 3, 0.1, 100.0)],
        ["line_id", "from_bus", "to_bus", "x", "rate_a_mw"],
    )
    generators = _frame(
        [(1, 1, 50.0, 0.0, 0.0, 10.0, 0.0), (2, 2, 50.0, 0.0, 0.0, 12.0, 0.0)],
        ["gen_id", "bus_id", "pmax_mw", "pmin_mw", "c2", "c1", "c0"],
    )
    wind = _frame([(1, 1, 2.0)], ["farm_id", "bus_id", "nominal_mw"])
    return DCNetwork(buses, branches, generators, wind)


@pytest.fixture
def wind_errors():
    return ScenarioSet(np.array([[-4.0], [-1.5], [0.5], [2.0], [3.0]]))

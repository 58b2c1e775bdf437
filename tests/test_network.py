import numpy as np
import pandas as pd
import pytest

from dro_opf.core.flow_recovery import DCFlowRecovery
from dro_opf.core.network import DCNetwork, OutageEffect, connection_matrices, flow_mapping


def test_connection_matrices_build_laplacian():
    cft, bf, bbus = connection_matrices([0, 1], [1, 2], [10.0, 5.0], 3)
    assert cft.tolist() == [[1.0, -1.0, 0.0], [0.0, 1.0, -1.0]]
    assert bbus.tolist() == [[10.0, -10.0, 0.0], [-10.0, 15.0, -5.0], [0.0, -5.0, 5.0]]
    assert bf[1].tolist() == [0.0, 5.0, -5.0]


def test_flow_mapping_satisfies_kirchhoff(mesh_network):
    gamma, kept = mesh_network.ptdf()
    assert gamma.shape == (6, 5)
    assert kept == [1, 2, 3, 4, 5, 6]
    injection = np.array([140.0, -10.0, -80.0, -40.0, -10.0])
    flows = gamma @ injection
    cft, _, _ = connection_matrices(
        [mesh_network.bus_index[b] for b in mesh_network.branches["from_bus"]],
        [mesh_network.bus_index[b] for b in mesh_network.branches["to_bus"]],
        mesh_network.susceptances(),
        mesh_network.n_bus,
    )
    # net outflow at every bus equals its injection
    assert cft.T @ flows == pytest.approx(injection)
    # the spur carries exactly the load behind it
    assert flows[5] == pytest.approx(10.0)


def test_reference_bus_column_is_zero(mesh_network):
    gamma, _ = mesh_network.ptdf()
    assert mesh_network.reference_bus == 1
    assert np.all(gamma[:, mesh_network.bus_index[1]] == 0.0)


def test_flow_mapping_is_cached_and_read_only():
    edges = [(0, 1, 10.0), (1, 2, 10.0), (0, 2, 10.0)]
    first = flow_mapping(edges, 3)
    second = flow_mapping(list(edges), 3)
    assert first is second
    assert not first.flags.writeable
    with pytest.raises(ValueError):
        flow_mapping(edges, 3, ref_index=5)


def test_outage_keeps_bus_numbering_and_zeroes_islanded_columns(mesh_network):
    gamma, kept = mesh_network.ptdf(exclude_line=6)
    assert gamma.shape == (5, 5)
    assert 6 not in kept
    assert np.all(gamma[:, mesh_network.bus_index[5]] == 0.0)
    assert mesh_network.line_limits(exclude_line=6).shape == (5,)
    with pytest.raises(KeyError):
        mesh_network.ptdf(exclude_line=99)


def test_derived_outage_table_finds_spur(mesh_network):
    table = mesh_network.outage_table()
    assert list(table) == [6]
    assert table[6] == OutageEffect(generators=[3], loads=[5], wind=[])
    assert mesh_network.islanded_buses(1) == []
    assert mesh_network.islanded_buses(6) == [5]
    # derived once
    assert mesh_network.outage_table() is table


def test_outage_table_override(mesh_network, caplog):
    with caplog.at_level("WARNING", logger="dro_opf.core.network"):
        table = mesh_network.outage_table({"6": {"loads": [5]}})
    assert table[6].loads == [5] and table[6].generators == []
    # generator 3 sits on the islanded bus but the override leaves it out
    assert any("line 6" in rec.getMessage() and rec.levelname == "WARNING" for rec in caplog.records)
    assert mesh_network.missing_outage_elements(table) == {6: {"generators": [3]}}
    with pytest.raises(ValueError):
        mesh_network.outage_table({42: {"loads": [5]}})


def test_complete_outage_table_override_is_silent(mesh_network, caplog):
    with caplog.at_level("WARNING", logger="dro_opf.core.network"):
        mesh_network.outage_table({6: {"generators": [3], "loads": [5]}})
    assert not [rec for rec in caplog.records if rec.levelname == "WARNING"]
    assert mesh_network.missing_outage_elements({}) == {6: {"generators": [3], "loads": [5]}}


def test_parallel_lines_do_not_island():
    buses = pd.DataFrame({"bus_id": [1, 2], "type": [3, 1], "pd_mw": [0.0, 5.0]}).set_index("bus_id")
    branches = pd.DataFrame({
        "line_id": [1, 2], "from_bus": [1, 1], "to_bus": [2, 2], "x": [0.1, 0.1], "rate_a_mw": [10.0, 10.0],
    })
    gens = pd.DataFrame({"gen_id": [1], "bus_id": [1], "c2": [0.0], "c1": [1.0], "c0": [0.0]})
    net = DCNetwork(buses, branches, gens)
    assert net.outage_table() == {}
    gamma, _ = net.ptdf(exclude_line=1)
    assert (gamma @ np.array([5.0, -5.0]))[0] == pytest.approx(5.0)


def test_out_of_service_branch_carries_no_flow(mesh_network):
    branches = mesh_network.branches.copy()
    branches["status"] = 1
    branches.loc[branches["line_id"] == 5, "status"] = 0
    net = DCNetwork(mesh_network.buses, branches, mesh_network.generators, mesh_network.wind)
    gamma, _ = net.ptdf()
    assert np.all(gamma[4] == 0.0)


def test_incidence_and_demand_helpers(mesh_network):
    cg = mesh_network.gen_incidence(exclude=[2])
    assert cg.shape == (5, 3)
    assert cg[:, 1].sum() == 0.0
    assert cg[mesh_network.bus_index[5], 2] == 1.0
    assert mesh_network.wind_incidence()[mesh_network.bus_index[2], 0] == 1.0
    assert mesh_network.demand(exclude_loads=[3]).sum() == pytest.approx(110.0)
    assert mesh_network.load_buses() == [2, 3, 4, 5]
    with pytest.raises(KeyError):
        mesh_network.line_position(77)


def test_network_rejects_unknown_buses(mesh_network):
    branches = mesh_network.branches.copy()
    branches.loc[0, "to_bus"] = 42
    with pytest.raises(ValueError):
        DCNetwork(mesh_network.buses, branches, mesh_network.generators)
    with pytest.raises(ValueError):
        DCNetwork(mesh_network.buses, mesh_network.branches, mesh_network.generators, reference_bus=9)


def test_dc_flow_recovery_flags_overloads(mesh_network):
    recovery = DCFlowRecovery(mesh_network)
    ok = recovery.recover(np.array([140.0, -10.0, -80.0, -40.0, -10.0]))
    assert ok.success and ok.status == "ok"
    overload = recovery.recover(np.array([2000.0, -1000.0, -1000.0, 0.0, 0.0]))
    assert not overload.success and overload.status == "overload"

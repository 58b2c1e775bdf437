"""
DC network model for meshed transmission grids
==============================================

This module provides the linear power-flow services used by the N-1 secure
dispatch model:

- connection matrices (``Cft``, ``Bf``, ``Bbus``) built from the branch table
- ``flow_mapping``: the injection-to-flow (PTDF) matrix for an arbitrary set of
  in-service branches, computed from the reference-bus reduced Laplacian of the
  island that contains the reference bus
- islanding analysis with ``networkx``: which generators, loads and wind farms
  lose their connection to the reference island when a single line trips

Bus numbering never changes when a line is removed: the flow mapping of a
reduced branch set still has one column per bus of the full network, and
buses cut off from the reference island get zero columns.

Usage Example
-------------
>>> from dro_opf.core.data_loader import TransmissionDataLoader
>>> net = TransmissionDataLoader('data/ieee118').build_network()
>>> gamma, kept = net.ptdf(exclude_line=9)
>>> gamma.shape
(185, 118)
>>> net.outage_table()[9].generators
[4]
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import networkx as nx
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


@dataclass
class OutageEffect:
    """Elements disconnected from the reference island by one line outage."""
    generators: List[int] = field(default_factory=list)
    loads: List[int] = field(default_factory=list)
    wind: List[int] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.generators or self.loads or self.wind)

    @classmethod
    def from_dict(cls, data: dict) -> "OutageEffect":
        return cls(
            generators=[int(g) for g in data.get("generators", [])],
            loads=[int(b) for b in data.get("loads", [])],
            wind=[int(w) for w in data.get("wind", [])],
        )


def connection_matrices(
    from_idx: Sequence[int], to_idx: Sequence[int], susceptance: Sequence[float], n_bus: int
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Branch-bus incidence ``Cft``, branch flow matrix ``Bf`` and nodal ``Bbus``.

    Parameters
    ----------
    from_idx, to_idx : sequence of int
        0-based bus positions of each branch end
    susceptance : sequence of float
        Series susceptance ``status / (x * tap)`` of each branch
    n_bus : int
        Number of buses in the full network
    """
    n_lines = len(from_idx)
    rows = np.arange(n_lines)
    cft = np.zeros((n_lines, n_bus))
    cft[rows, np.asarray(from_idx, dtype=int)] = 1.0
    cft[rows, np.asarray(to_idx, dtype=int)] = -1.0
    bf = np.asarray(susceptance, dtype=float)[:, None] * cft
    bbus = cft.T @ bf
    return cft, bf, bbus


@lru_cache(maxsize=512)
def _flow_mapping(edges: Tuple[Tuple[int, int, float], ...], n_bus: int, ref_index: int) -> np.ndarray:
    from_idx = [f for f, _, _ in edges]
    to_idx = [t for _, t, _ in edges]
    b = [s for _, _, s in edges]
    _, bf, bbus = connection_matrices(from_idx, to_idx, b, n_bus)

    graph = nx.Graph()
    graph.add_nodes_from(range(n_bus))
    graph.add_edges_from((f, t) for f, t, s in edges if s != 0.0)
    island = sorted(nx.node_connected_component(graph, ref_index))
    others = [k for k in island if k != ref_index]

    gamma = np.zeros((len(edges), n_bus))
    if others:
        reduced = bbus[np.ix_(others, others)]
        gamma[:, others] = bf[:, others] @ np.linalg.inv(reduced)
    gamma.setflags(write=False)
    return gamma


def flow_mapping(edges: Iterable[Tuple[int, int, float]], n_bus: int, ref_index: int = 0) -> np.ndarray:
    """
    Injection-to-flow matrix for the given in-service branch set.

    ``flows = flow_mapping(...) @ injections`` with injections in MW at every
    bus; the reference bus absorbs any imbalance. The result is cached by the
    exact branch set and must be treated as read-only.

    Parameters
    ----------
    edges : iterable of (from_index, to_index, susceptance)
        In-service branches with 0-based bus positions
    n_bus : int
        Bus count of the full network
    ref_index : int
        0-based position of the reference bus
    """
    key = tuple((int(f), int(t), float(s)) for f, t, s in edges)
    if not 0 <= ref_index < n_bus:
        raise ValueError(f"Reference bus index {ref_index} outside 0..{n_bus - 1}")
    return _flow_mapping(key, n_bus, ref_index)


class DCNetwork:
    """
    Meshed transmission grid under the DC approximation.

    Attributes
    ----------
    buses : pd.DataFrame
        Indexed by bus id, with at least ``pd_mw``
    branches : pd.DataFrame
        One row per line with ``line_id, from_bus, to_bus, x, tap, status, rate_a_mw``
    generators : pd.DataFrame
        One row per unit with ``gen_id, bus_id`` and quadratic cost ``c2, c1, c0``
    wind : pd.DataFrame
        One row per farm with ``farm_id, bus_id, nominal_mw``
    reference_bus : int
        Bus id used as angle reference and slack of the flow mapping
    """

    def __init__(
        self,
        buses: pd.DataFrame,
        branches: pd.DataFrame,
        generators: pd.DataFrame,
        wind: Optional[pd.DataFrame] = None,
        reference_bus: Optional[int] = None,
    ):
        self.buses = buses
        self.branches = branches.reset_index(drop=True)
        self.generators = generators.reset_index(drop=True)
        self.wind = (
            wind.reset_index(drop=True)
            if wind is not None
            else pd.DataFrame(columns=["farm_id", "bus_id", "nominal_mw"])
        )

        self.bus_ids: List[int] = [int(b) for b in buses.index]
        self.bus_index: Dict[int, int] = {b: k for k, b in enumerate(self.bus_ids)}
        self.line_ids: List[int] = [int(lid) for lid in self.branches["line_id"]]
        if len(set(self.line_ids)) != len(self.line_ids):
            raise ValueError("Duplicate line ids in branch table")

        for col in ("from_bus", "to_bus"):
            missing = set(int(b) for b in self.branches[col]) - set(self.bus_ids)
            if missing:
                raise ValueError(f"Branches reference unknown buses: {sorted(missing)}")

        if reference_bus is None:
            if "type" in buses.columns and (buses["type"] == 3).any():
                reference_bus = int(buses.index[buses["type"] == 3][0])
            else:
                reference_bus = self.bus_ids[0]
        if reference_bus not in self.bus_index:
            raise ValueError(f"Reference bus {reference_bus} is not a network bus")
        self.reference_bus = int(reference_bus)

        self._outage_table: Optional[Dict[int, OutageEffect]] = None

    @property
    def n_bus(self) -> int:
        return len(self.bus_ids)

    @property
    def n_lines(self) -> int:
        return len(self.line_ids)

    @property
    def n_gen(self) -> int:
        return len(self.generators)

    @property
    def n_wind(self) -> int:
        return len(self.wind)

    def susceptances(self) -> np.ndarray:
        tap = self.branches["tap"].replace(0, 1.0).fillna(1.0) if "tap" in self.branches else 1.0
        status = self.branches["status"] if "status" in self.branches else 1.0
        return np.asarray(status / (self.branches["x"] * tap), dtype=float)

    def _edges(self, exclude_line: Optional[int] = None) -> Tuple[List[Tuple[int, int, float]], List[int]]:
        b = self.susceptances()
        edges, kept = [], []
        for k, row in self.branches.iterrows():
            lid = int(row["line_id"])
            if lid == exclude_line:
                continue
            edges.append((self.bus_index[int(row["from_bus"])], self.bus_index[int(row["to_bus"])], b[k]))
            kept.append(lid)
        return edges, kept

    def ptdf(self, exclude_line: Optional[int] = None) -> Tuple[np.ndarray, List[int]]:
        """Flow mapping with one line removed (or none) and the surviving line ids in row order."""
        if exclude_line is not None and exclude_line not in self.line_ids:
            raise KeyError(f"Unknown line id {exclude_line}")
        edges, kept = self._edges(exclude_line)
        return flow_mapping(edges, self.n_bus, self.bus_index[self.reference_bus]), kept

    def line_limits(self, exclude_line: Optional[int] = None) -> np.ndarray:
        """Thermal limits aligned with the rows of ``ptdf(exclude_line)``."""
        limits = self.branches["rate_a_mw"].to_numpy(dtype=float)
        if exclude_line is None:
            return limits
        keep = [k for k, lid in enumerate(self.line_ids) if lid != exclude_line]
        return limits[keep]

    def line_position(self, line_id: int) -> int:
        try:
            return self.line_ids.index(line_id)
        except ValueError:
            raise KeyError(f"Unknown line id {line_id}") from None

    def gen_incidence(self, exclude: Iterable[int] = ()) -> np.ndarray:
        """Bus-by-generator incidence ``Cg``; excluded generators get zero columns."""
        excluded = set(exclude)
        cg = np.zeros((self.n_bus, self.n_gen))
        for j, row in self.generators.iterrows():
            if int(row["gen_id"]) in excluded:
                continue
            cg[self.bus_index[int(row["bus_id"])], j] = 1.0
        return cg

    def wind_incidence(self, exclude: Iterable[int] = ()) -> np.ndarray:
        """Bus-by-farm incidence of wind injections."""
        excluded = set(exclude)
        cw = np.zeros((self.n_bus, self.n_wind))
        for k, row in self.wind.iterrows():
            if int(row["farm_id"]) in excluded:
                continue
            cw[self.bus_index[int(row["bus_id"])], k] = 1.0
        return cw

    def demand(self, exclude_loads: Iterable[int] = ()) -> np.ndarray:
        pd_mw = self.buses["pd_mw"].to_numpy(dtype=float).copy()
        for bus in exclude_loads:
            pd_mw[self.bus_index[bus]] = 0.0
        return pd_mw

    def load_buses(self) -> List[int]:
        return [b for b, p in zip(self.bus_ids, self.buses["pd_mw"]) if p > 0]

    def wind_nominal(self) -> np.ndarray:
        return self.wind["nominal_mw"].to_numpy(dtype=float)

    def graph(self, exclude_line: Optional[int] = None) -> nx.MultiGraph:
        """Bus graph of in-service branches (parallel lines kept as separate edges)."""
        g = nx.MultiGraph()
        g.add_nodes_from(self.bus_ids)
        b = self.susceptances()
        for k, row in self.branches.iterrows():
            if int(row["line_id"]) == exclude_line or b[k] == 0:
                continue
            g.add_edge(int(row["from_bus"]), int(row["to_bus"]), key=int(row["line_id"]))
        return g

    def islanded_buses(self, line_id: int) -> List[int]:
        """Buses that lose their path to the reference bus when ``line_id`` trips."""
        g = self.graph(exclude_line=line_id)
        connected = nx.node_connected_component(g, self.reference_bus)
        return sorted(set(self.bus_ids) - connected)

    def derive_outage_table(self) -> Dict[int, OutageEffect]:
        """Map every islanding line to the generators, loads and wind farms it disconnects."""
        bridges = set()
        for u, v in nx.bridges(nx.Graph(self.graph())):
            bridges.add(frozenset((u, v)))

        table: Dict[int, OutageEffect] = {}
        for _, row in self.branches.iterrows():
            lid = int(row["line_id"])
            if frozenset((int(row["from_bus"]), int(row["to_bus"]))) not in bridges:
                continue
            lost = set(self.islanded_buses(lid))
            if not lost:
                continue
            effect = OutageEffect(
                generators=[int(r.gen_id) for r in self.generators.itertuples() if int(r.bus_id) in lost],
                loads=[b for b in sorted(lost) if self.buses.at[b, "pd_mw"] > 0],
                wind=[int(r.farm_id) for r in self.wind.itertuples() if int(r.bus_id) in lost],
            )
            if not effect.is_empty:
                table[lid] = effect
        logger.info("Derived outage table: %d islanding lines with lost elements", len(table))
        return table

    def outage_table(self, override: Optional[Dict[int, dict]] = None) -> Dict[int, OutageEffect]:
        """
        Islanding outage table, derived once per network.

        An explicit ``override`` (line id -> {"generators", "loads", "wind"})
        replaces the derived table entirely; islanded elements it leaves out
        are logged as warnings.
        """
        if self._outage_table is None:
            self._outage_table = self.derive_outage_table()
        if override is None:
            return self._outage_table

        table = {int(lid): OutageEffect.from_dict(v) for lid, v in override.items()}
        unknown = set(table) - set(self.line_ids)
        if unknown:
            raise ValueError(f"Outage table references unknown lines: {sorted(unknown)}")
        for lid, omitted in self.missing_outage_elements(table).items():
            logger.warning("Outage of line %d islands %s, missing from the outage table", lid, omitted)
        return table

    def missing_outage_elements(self, table: Dict[int, OutageEffect]) -> Dict[int, Dict[str, List[int]]]:
        """Islanded elements per line that ``table`` does not account for."""
        missing = {}
        for lid, derived in self.outage_table().items():
            given = table.get(lid, OutageEffect())
            omitted = {
                kind: sorted(set(getattr(derived, kind)) - set(getattr(given, kind)))
                for kind in ("generators", "loads", "wind")
            }
            omitted = {kind: ids for kind, ids in omitted.items() if ids}
            if omitted:
                missing[lid] = omitted
        return missing

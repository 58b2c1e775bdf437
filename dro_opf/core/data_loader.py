"""Network data loaders for the transmission case and the distribution feeder."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .admittance import form_admittance, voltage_sensitivities
from .network import DCNetwork

logger = logging.getLogger(__name__)

FEET_PER_MILE = 5280.0


def _resolve(data_dir: str) -> str:
    """Resolve a relative data directory against the project root when it exists there."""
    if os.path.isabs(data_dir):
        return data_dir
    project_root = Path(__file__).resolve().parents[2]
    data_path = project_root / data_dir
    if data_path.exists():
        return str(data_path)
    return data_dir


def _read(data_dir: str, name: str, key_columns: Tuple[str, ...] = ()) -> pd.DataFrame:
    path = os.path.join(data_dir, name)
    if not os.path.exists(path):
        raise FileNotFoundError(f"Data file not found: {path}")
    df = pd.read_csv(path)
    # a stray line break splits a row into two half rows with empty identifiers
    missing = [col for col in key_columns if col not in df or df[col].isna().any()]
    if missing:
        raise ValueError(f"{path}: missing or empty identifier column(s) {missing}")
    return df


class TransmissionDataLoader:
    """
    Loader for a MATPOWER-style transmission case stored as CSV files.

    Expected files in ``data_dir``: ``bus.csv``, ``branch.csv``, ``gen.csv`` and
    optionally ``wind.csv``. Generators are numbered 1..G in file order.
    """

    def __init__(self, data_dir: str = 'data/ieee118', base_mva: float = 100.0):
        self.data_dir = _resolve(data_dir)
        self.base_mva = base_mva
        self.buses = None
        self.branches = None
        self.generators = None
        self.wind = None
        self.load_data()

    def load_data(self) -> None:
        """Load all CSV data files into pandas DataFrames."""
        self.buses = _read(self.data_dir, 'bus.csv', ('bus_id',))
        self.buses.set_index('bus_id', inplace=True)

        self.branches = _read(self.data_dir, 'branch.csv', ('line_id', 'from_bus', 'to_bus'))
        for col, default in (('tap', 0.0), ('status', 1)):
            if col not in self.branches:
                self.branches[col] = default

        self.generators = _read(self.data_dir, 'gen.csv', ('bus_id',))
        if 'gen_id' not in self.generators:
            self.generators.insert(0, 'gen_id', np.arange(1, len(self.generators) + 1))
        for col in ('c2', 'c1', 'c0'):
            if col not in self.generators:
                self.generators[col] = 0.0

        wind_file = os.path.join(self.data_dir, 'wind.csv')
        if os.path.exists(wind_file):
            self.wind = pd.read_csv(wind_file)
        else:
            self.wind = pd.DataFrame(columns=['farm_id', 'bus_id', 'nominal_mw'])

        logger.info("Loaded %d buses, %d branches, %d generators, %d wind farms",
                    len(self.buses), len(self.branches), len(self.generators), len(self.wind))

    def get_bus_data(self) -> pd.DataFrame:
        return self.buses

    def get_branch_data(self) -> pd.DataFrame:
        return self.branches

    def get_generator_data(self) -> pd.DataFrame:
        return self.generators

    def get_wind_data(self) -> pd.DataFrame:
        return self.wind

    def get_load_by_bus(self) -> Dict[int, float]:
        """Get active power load at each bus."""
        return self.buses['pd_mw'].to_dict()

    def build_network(self, reference_bus: Optional[int] = None) -> DCNetwork:
        return DCNetwork(self.buses, self.branches, self.generators, self.wind, reference_bus)

    def get_system_summary(self) -> Dict[str, Any]:
        return {
            'n_buses': len(self.buses),
            'n_branches': len(self.branches),
            'n_generators': len(self.generators),
            'n_wind_farms': len(self.wind),
            'total_load': self.buses['pd_mw'].sum(),
            'total_wind': self.wind['nominal_mw'].sum() if len(self.wind) else 0.0,
            'base_mva': self.base_mva,
        }


@dataclass
class FeederNetwork:
    """
    Single-phase radial feeder in per unit.

    Node position 0 is the substation. ``pv_nodes`` and ``battery_nodes`` hold
    node positions (1..n-1); capacities are aligned with them.
    """
    node_ids: List[int]
    y_net: np.ndarray
    p_load: np.ndarray
    q_load: np.ndarray
    pv_nodes: List[int]
    pv_capacity: np.ndarray
    battery_nodes: List[int]
    battery_capacity: np.ndarray
    s_base: float = 1.0

    def __post_init__(self):
        n = len(self.node_ids)
        if self.y_net.shape != (n, n):
            raise ValueError(f"Admittance matrix must be {n}x{n}, got {self.y_net.shape}")
        for name, nodes in (('pv_nodes', self.pv_nodes), ('battery_nodes', self.battery_nodes)):
            if any(k <= 0 or k >= n for k in nodes):
                raise ValueError(f"{name} must be PQ node positions in 1..{n - 1}")
        if len(self.pv_capacity) != len(self.pv_nodes):
            raise ValueError("pv_capacity must align with pv_nodes")
        if len(self.battery_capacity) != len(self.battery_nodes):
            raise ValueError("battery_capacity must align with battery_nodes")
        self._sensitivities: Dict[float, Tuple[np.ndarray, np.ndarray, np.ndarray]] = {}

    @property
    def n_nodes(self) -> int:
        return len(self.node_ids)

    def sensitivities(self, v_pcc: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Cached ``(vnom, G, H)`` around the no-load profile."""
        if v_pcc not in self._sensitivities:
            self._sensitivities[v_pcc] = voltage_sensitivities(self.y_net, v_pcc)
        return self._sensitivities[v_pcc]

    def kw_to_pu(self, values) -> np.ndarray:
        return np.asarray(values, dtype=float) * 1000.0 / self.s_base


class FeederDataLoader:
    """
    Loader for a radial feeder stored as CSV files.

    Expected files in ``data_dir``:

    - ``nodes.csv``: node_id, p_load_kw, q_load_kvar, pv_kva, battery_kwh
      (the first row is the substation)
    - ``lines.csv``: from_node, to_node, config, length_ft
    - ``line_configs.csv``: config, r_ohm_per_mile, x_ohm_per_mile, b_us_per_mile
    """

    def __init__(self, data_dir: str = 'data/ieee37', v_base: float = 4800.0, z_base: float = 1.0):
        self.data_dir = _resolve(data_dir)
        self.v_base = v_base
        self.z_base = z_base
        self.s_base = v_base ** 2 / z_base
        self.nodes = None
        self.lines = None
        self.line_configs = None
        self.load_data()

    def load_data(self) -> None:
        self.nodes = _read(self.data_dir, 'nodes.csv', ('node_id',))
        self.lines = _read(self.data_dir, 'lines.csv', ('from_node', 'to_node'))
        self.line_configs = _read(self.data_dir, 'line_configs.csv').set_index('config')
        unknown = set(self.lines['config']) - set(self.line_configs.index)
        if unknown:
            raise ValueError(f"Lines reference unknown configurations: {sorted(unknown)}")
        logger.info("Loaded feeder with %d nodes and %d lines", len(self.nodes), len(self.lines))

    def line_impedances(self) -> List[Tuple[int, int, complex, float]]:
        """Per-unit (from, to, z, b) tuples with node positions."""
        position = {int(n): k for k, n in enumerate(self.nodes['node_id'])}
        out = []
        for _, line in self.lines.iterrows():
            cfg = self.line_configs.loc[line['config']]
            miles = line['length_ft'] / FEET_PER_MILE
            z = complex(cfg['r_ohm_per_mile'], cfg['x_ohm_per_mile']) * miles / self.z_base
            b = cfg['b_us_per_mile'] * 1e-6 * miles * self.z_base
            out.append((position[int(line['from_node'])], position[int(line['to_node'])], z, b))
        return out

    def build_feeder(self) -> FeederNetwork:
        node_ids = [int(n) for n in self.nodes['node_id']]
        y_net = form_admittance(len(node_ids), self.line_impedances())
        to_pu = 1000.0 / self.s_base

        pv_mask = self.nodes['pv_kva'].to_numpy(dtype=float) > 0
        bat_mask = self.nodes['battery_kwh'].to_numpy(dtype=float) > 0
        pv_mask[0] = bat_mask[0] = False
        return FeederNetwork(
            node_ids=node_ids,
            y_net=y_net,
            p_load=self.nodes['p_load_kw'].to_numpy(dtype=float) * to_pu,
            q_load=self.nodes['q_load_kvar'].to_numpy(dtype=float) * to_pu,
            pv_nodes=[int(k) for k in np.flatnonzero(pv_mask)],
            pv_capacity=self.nodes['pv_kva'].to_numpy(dtype=float)[pv_mask] * to_pu,
            battery_nodes=[int(k) for k in np.flatnonzero(bat_mask)],
            battery_capacity=self.nodes['battery_kwh'].to_numpy(dtype=float)[bat_mask] * to_pu,
            s_base=self.s_base,
        )

    def get_system_summary(self) -> Dict[str, Any]:
        return {
            'n_nodes': len(self.nodes),
            'n_lines': len(self.lines),
            'n_inverters': int((self.nodes['pv_kva'] > 0).sum()),
            'n_batteries': int((self.nodes['battery_kwh'] > 0).sum()),
            'total_load_kw': self.nodes['p_load_kw'].sum(),
            'total_pv_kva': self.nodes['pv_kva'].sum(),
            's_base': self.s_base,
        }

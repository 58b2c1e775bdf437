"""
Historical time series for the data-driven ambiguity sets
=========================================================

This module loads the pre-shaped numeric arrays consumed by the scenario
engine and the two study orchestrators:

- PV forecast per decision epoch (kW), one profile shared by all inverters or
  one column per inverter
- PV forecast-error cube ``[epoch, horizon_offset, scenario]`` (kW)
- nodal active/reactive load time series, or a scaling profile applied to the
  feeder base loads
- out-of-sample PV realisations for Monte Carlo verification ``[sample, epoch]``
- wind-farm forecast-error samples ``[sample, farm]`` (MW)

Arrays are stored as ``.npy`` or ``.csv`` files inside one directory; every
file is optional except the ones a study actually needs. Values in kW are
converted to per unit with the feeder power base.

Usage Example
-------------
>>> from dro_opf.core.timeseries_loader import TimeseriesLoader
>>> ts = TimeseriesLoader(data_dir='data/ieee37/timeseries')
>>> forecast = ts.load_pv_forecast()
>>> errors = ts.load_pv_errors()
>>> errors.shape
(288, 4, 30)
"""
import logging
import os
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from .scenarios import ScenarioSet

logger = logging.getLogger(__name__)


class TimeseriesLoader:
    """
    Load forecast, forecast-error and load time series from a directory.

    Attributes
    ----------
    data_dir : str
        Directory holding the arrays; relative paths are resolved against the
        project root when they exist there
    """

    def __init__(self, data_dir='data/ieee37/timeseries'):
        if not os.path.isabs(data_dir):
            project_root = Path(__file__).resolve().parents[2]
            data_path = project_root / data_dir
            self.data_dir = str(data_path) if data_path.exists() else data_dir
        else:
            self.data_dir = data_dir

    def _path(self, stem: str) -> Optional[str]:
        for ext in ('.npy', '.csv'):
            path = os.path.join(self.data_dir, stem + ext)
            if os.path.exists(path):
                return path
        return None

    def _load_array(self, stem: str, required: bool = True) -> Optional[np.ndarray]:
        path = self._path(stem)
        if path is None:
            if required:
                raise FileNotFoundError(f"No {stem}.npy or {stem}.csv in {self.data_dir}")
            return None
        if path.endswith('.npy'):
            arr = np.load(path)
        else:
            arr = pd.read_csv(path).select_dtypes(include=[np.number]).to_numpy(dtype=float)
        logger.debug("Loaded %s with shape %s", path, arr.shape)
        return arr

    def load_pv_forecast(self) -> np.ndarray:
        """PV forecast ``[epoch]`` or ``[epoch, inverter]`` in kW."""
        arr = self._load_array('pv_forecast')
        if arr.ndim == 2 and arr.shape[1] == 1:
            arr = arr[:, 0]
        return arr

    def load_pv_errors(self) -> np.ndarray:
        """
        PV forecast errors ``[epoch, horizon_offset, scenario]`` in kW.

        CSV storage is long format with columns ``epoch, offset, scenario, error_kw``.
        """
        path = self._path('pv_errors')
        if path is None:
            raise FileNotFoundError(f"No pv_errors.npy or pv_errors.csv in {self.data_dir}")
        if path.endswith('.npy'):
            arr = np.load(path)
        else:
            df = pd.read_csv(path)
            shape = tuple(int(df[c].max()) + 1 for c in ('epoch', 'offset', 'scenario'))
            arr = np.zeros(shape)
            arr[df['epoch'], df['offset'], df['scenario']] = df['error_kw']
        if arr.ndim not in (3, 4):
            raise ValueError(f"PV error cube must be 3-D or 4-D, got shape {arr.shape}")
        return arr

    def load_nodal_loads(self, base_p: np.ndarray, base_q: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Nodal loads ``[epoch, node]`` in the units of ``base_p``/``base_q``.

        Uses ``load_p``/``load_q`` arrays when present, otherwise scales the
        base loads with ``load_profile`` (one multiplier per epoch), otherwise
        returns a single epoch of base loads. Explicit arrays must already be
        in the units of the base loads.
        """
        load_p = self._load_array('load_p', required=False)
        load_q = self._load_array('load_q', required=False)
        if load_p is not None:
            if load_q is None:
                raise FileNotFoundError("load_p given without load_q")
            if load_p.shape != load_q.shape or load_p.shape[1] != len(base_p):
                raise ValueError(f"Nodal load arrays must be [epoch, {len(base_p)}]")
            return load_p, load_q

        profile = self._load_array('load_profile', required=False)
        if profile is None:
            return np.asarray(base_p)[None, :], np.asarray(base_q)[None, :]
        scale = np.asarray(profile, dtype=float).reshape(-1)
        return scale[:, None] * base_p[None, :], scale[:, None] * base_q[None, :]

    def load_monte_carlo(self) -> Optional[np.ndarray]:
        """Out-of-sample PV realisations ``[sample, epoch]`` in kW, or None."""
        return self._load_array('pv_monte_carlo', required=False)

    def load_wind_errors(self, n_samples: Optional[int] = None) -> ScenarioSet:
        """Wind-farm forecast-error samples in MW, one column per farm."""
        path = self._path('wind_errors')
        if path is None:
            raise FileNotFoundError(f"No wind_errors.npy or wind_errors.csv in {self.data_dir}")
        if path.endswith('.csv'):
            df = pd.read_csv(path)
            scenarios = ScenarioSet(df.to_numpy(dtype=float), labels=list(df.columns))
        else:
            scenarios = ScenarioSet(np.load(path))
        if n_samples is not None:
            scenarios = scenarios.head(n_samples)
        logger.info("Loaded %d wind error samples for %d farms", scenarios.n_samples, scenarios.dimension)
        return scenarios


def synthetic_pv_day(
    peak_kw: float,
    epochs_per_day: int = 288,
    horizon: int = 3,
    n_scenarios: int = 30,
    n_monte_carlo: int = 92,
    error_std: float = 0.1,
    seed: int = 0,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Clear-sky style PV day with Gaussian forecast errors.

    Returns the forecast ``[epoch]``, the error cube
    ``[epoch, horizon + 1, scenario]`` (offset 0 is error free) and Monte Carlo
    realisations ``[sample, epoch]``, all in kW.
    """
    rng = np.random.default_rng(seed)
    hours = np.arange(epochs_per_day) * 24.0 / epochs_per_day
    forecast = peak_kw * np.clip(np.sin(np.pi * (hours - 6.0) / 12.0), 0.0, None)

    scale = error_std * forecast[:, None, None]
    errors = rng.normal(size=(epochs_per_day, horizon + 1, n_scenarios)) * scale
    errors[:, 0, :] = 0.0

    mc = forecast[None, :] * (1.0 + error_std * rng.normal(size=(n_monte_carlo, epochs_per_day)))
    return forecast, errors, np.clip(mc, 0.0, None)


def synthetic_wind_errors(nominal_mw, n_samples: int = 30, rel_std: float = 0.1, seed: int = 0) -> ScenarioSet:
    """Zero-mean Gaussian wind forecast errors scaled by each farm's nominal injection."""
    rng = np.random.default_rng(seed)
    nominal = np.asarray(nominal_mw, dtype=float)
    samples = rng.normal(size=(n_samples, len(nominal))) * rel_std * nominal[None, :]
    return ScenarioSet(samples)

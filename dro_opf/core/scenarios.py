"""
Empirical scenario sets for the data-driven ambiguity sets
==========================================================

The Wasserstein ball of every solve is centred on the empirical distribution
of N forecast-error samples. This module turns the raw historical arrays into
those samples:

- ``FeederScenarioEngine`` windows a rolling PV forecast-error cube per decision
  epoch and returns the realised (clipped) PV output of every inverter for every
  scenario and look-ahead step.
- ``ScenarioSet`` holds a static sample (e.g. wind-farm forecast errors) that is
  loaded once and shared by all risk constraints of a solve.

Axis conventions
----------------
- forecast : ``[epoch]`` or ``[epoch, resource]``
- errors   : ``[epoch, horizon_offset, scenario]`` or
  ``[epoch, horizon_offset, scenario, resource]``
- output   : ``[scenario, horizon_offset, resource]``

Edge policy
-----------
Epochs or offsets outside the historical error window receive zero error (the
forecast becomes deterministic there); forecast indices past the end of the
profile wrap around to the start of the day.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)


def clip_to_capacity(values: np.ndarray, capacity: np.ndarray) -> np.ndarray:
    """Clip resource output into ``[0, capacity]`` along the last axis; NaN becomes 0."""
    values = np.nan_to_num(np.asarray(values, dtype=float), nan=0.0, posinf=np.inf, neginf=0.0)
    capacity = np.asarray(capacity, dtype=float)
    return np.clip(values, 0.0, capacity)


@dataclass
class ScenarioSet:
    """
    Ordered collection of N i.i.d. samples of an uncertain vector.

    Attributes
    ----------
    samples : np.ndarray
        Array of shape (N, d); row i is scenario i
    labels : list[str], optional
        Names of the d uncertain components
    """
    samples: np.ndarray
    labels: Optional[list] = None

    def __post_init__(self):
        samples = np.asarray(self.samples, dtype=float)
        if samples.ndim == 1:
            samples = samples[:, None]
        if samples.ndim != 2 or samples.shape[0] == 0:
            raise ValueError(f"Scenario samples must be a non-empty (N, d) array, got {samples.shape}")
        if not np.all(np.isfinite(samples)):
            raise ValueError("Scenario samples contain NaN or infinite values")
        self.samples = samples
        if self.labels is not None and len(self.labels) != samples.shape[1]:
            raise ValueError("labels must match the number of uncertain components")

    @property
    def n_samples(self) -> int:
        return self.samples.shape[0]

    @property
    def dimension(self) -> int:
        return self.samples.shape[1]

    def mean(self) -> np.ndarray:
        return self.samples.mean(axis=0)

    def head(self, n: int) -> "ScenarioSet":
        """First ``n`` samples (the empirical set used by a solve)."""
        if n > self.n_samples:
            raise ValueError(f"Requested {n} scenarios but only {self.n_samples} are available")
        return ScenarioSet(self.samples[:n], self.labels)


class FeederScenarioEngine:
    """Builds per-epoch PV output scenarios for the inverters of a feeder."""

    def __init__(
        self,
        forecast: np.ndarray,
        errors: np.ndarray,
        capacities: np.ndarray,
        n_scenarios: Optional[int] = None,
    ):
        self.capacities = np.asarray(capacities, dtype=float).ravel()
        n_res = len(self.capacities)

        forecast = np.asarray(forecast, dtype=float)
        if forecast.ndim == 1:
            forecast = np.repeat(forecast[:, None], n_res, axis=1)
        if forecast.ndim != 2 or forecast.shape[1] != n_res:
            raise ValueError(
                f"forecast must be [epoch] or [epoch, {n_res}], got {forecast.shape}"
            )
        self.forecast = forecast

        errors = np.asarray(errors, dtype=float)
        if errors.ndim == 3:
            errors = np.repeat(errors[..., None], n_res, axis=3)
        if errors.ndim != 4 or errors.shape[3] != n_res:
            raise ValueError(
                f"errors must be [epoch, offset, scenario] or [epoch, offset, scenario, {n_res}], "
                f"got {errors.shape}"
            )
        if n_scenarios is not None:
            if n_scenarios > errors.shape[2]:
                raise ValueError(
                    f"Requested {n_scenarios} scenarios but the error data holds {errors.shape[2]}"
                )
            errors = errors[:, :, :n_scenarios, :]
        self.errors = np.nan_to_num(errors, nan=0.0)

    @property
    def n_scenarios(self) -> int:
        return self.errors.shape[2]

    @property
    def n_epochs(self) -> int:
        return self.forecast.shape[0]

    def _forecast_at(self, epoch: int) -> np.ndarray:
        return self.forecast[epoch % self.n_epochs]

    def _error_at(self, epoch: int, offset: int) -> np.ndarray:
        """Error samples (N, R) for one epoch/offset, zero outside the historical window."""
        n_err_epochs, n_offsets = self.errors.shape[:2]
        if epoch < 0 or epoch >= n_err_epochs or offset >= n_offsets:
            return np.zeros((self.n_scenarios, len(self.capacities)))
        return self.errors[epoch, offset]

    def realized_output(self, epoch: int, horizon: int) -> np.ndarray:
        """
        Feasible PV output for every scenario and look-ahead step.

        Returns
        -------
        np.ndarray
            Shape (N, horizon, R); every entry lies in ``[0, capacity_r]``
        """
        if horizon < 1:
            raise ValueError(f"horizon must be >= 1, got {horizon}")
        out = np.empty((self.n_scenarios, horizon, len(self.capacities)))
        for k in range(horizon):
            out[:, k, :] = self._forecast_at(epoch + k)[None, :] + self._error_at(epoch, k)
        return clip_to_capacity(out, self.capacities)

    def nominal_output(self, epoch: int) -> np.ndarray:
        """Zero-error PV output (R,) at one epoch."""
        return clip_to_capacity(self._forecast_at(epoch), self.capacities)

    def monte_carlo_output(self, samples: np.ndarray, epoch: int) -> np.ndarray:
        """
        Clip out-of-sample realisations for one epoch.

        Parameters
        ----------
        samples : np.ndarray
            ``[sample, epoch]`` or ``[sample, epoch, resource]`` realisations
        """
        samples = np.asarray(samples, dtype=float)
        if samples.ndim == 2:
            at_epoch = np.repeat(samples[:, epoch % samples.shape[1]][:, None], len(self.capacities), axis=1)
        elif samples.ndim == 3:
            at_epoch = samples[:, epoch % samples.shape[1], :]
        else:
            raise ValueError(f"Monte Carlo samples must be 2-D or 3-D, got {samples.shape}")
        return clip_to_capacity(at_epoch, self.capacities)

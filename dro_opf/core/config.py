"""
Study configuration for the distribution and transmission DRO models
====================================================================

Both study variants are configured through plain dataclasses. The defaults
reproduce the IEEE 37-node overvoltage study and the IEEE 118-bus N-1 study;
any field can be overridden from a JSON file whose keys mirror the dataclass
fields.

Usage Example
-------------
>>> from dro_opf.core.config import DistributionConfig, load_config
>>> cfg = load_config('studies/feeder.json', DistributionConfig)
>>> cfg.horizon
3
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import Dict, List, Optional, Tuple


# Risk constraint kinds handled by the activation schedule
VOLTAGE_UPPER_DRO = "voltage_upper_dro"
VOLTAGE_UPPER_NOMINAL = "voltage_upper_nominal"
VOLTAGE_LOWER_CVAR = "voltage_lower_cvar"
INVERTER_CAPACITY_CVAR = "inverter_capacity_cvar"
POWER_FACTOR = "power_factor"

CONSTRAINT_KINDS = (
    VOLTAGE_UPPER_DRO,
    VOLTAGE_UPPER_NOMINAL,
    VOLTAGE_LOWER_CVAR,
    INVERTER_CAPACITY_CVAR,
    POWER_FACTOR,
)

WASSERSTEIN_NORMS = ("l1", "linf")


@dataclass
class ActivationWindow:
    """
    Half-open window of epochs during which a set of constraint kinds is active.

    Attributes
    ----------
    start : int
        First epoch of the window (exclusive when ``inclusive_start`` is False)
    end : int, optional
        Last epoch of the window (exclusive). None means open-ended.
    kinds : list[str]
        Constraint kinds enforced inside the window
    inclusive_start : bool
        Whether ``start`` itself belongs to the window
    """
    start: int
    end: Optional[int] = None
    kinds: List[str] = field(default_factory=list)
    inclusive_start: bool = True

    def contains(self, epoch: int) -> bool:
        after_start = epoch >= self.start if self.inclusive_start else epoch > self.start
        before_end = self.end is None or epoch < self.end
        return after_start and before_end


@dataclass
class MonitoredLine:
    """A transmission line whose flow limit is enforced in the CVaR/DRO sense."""
    line_id: int
    direction: int = 1
    limit_mw: Optional[float] = None


def default_activation_windows(interval_minutes: int = 5) -> List[ActivationWindow]:
    """Daytime (06:00-18:00) DRO window plus the late-afternoon nominal window."""
    six_am = 60 * 6 // interval_minutes
    six_pm = 60 * 18 // interval_minutes
    return [
        ActivationWindow(
            start=six_am,
            end=six_pm,
            inclusive_start=False,
            kinds=[VOLTAGE_UPPER_DRO, VOLTAGE_LOWER_CVAR, INVERTER_CAPACITY_CVAR, POWER_FACTOR],
        ),
        ActivationWindow(
            start=200,
            end=None,
            kinds=[VOLTAGE_UPPER_NOMINAL, VOLTAGE_LOWER_CVAR, INVERTER_CAPACITY_CVAR, POWER_FACTOR],
        ),
    ]


@dataclass
class DistributionConfig:
    """Receding-horizon overvoltage study on a radial feeder."""
    interval_minutes: int = 5
    start_epoch: int = 0
    end_epoch: Optional[int] = None
    horizon: int = 3
    n_scenarios: int = 30
    n_monte_carlo: int = 92
    rho_values: List[float] = field(
        default_factory=lambda: [1, 5, 10, 15, 20, 30, 35, 40, 100, 200]
    )
    epsilon: float = 0.0
    wasserstein_norm: str = "l1"

    v_min: float = 0.95
    v_max: float = 1.05
    v_pcc: float = 1.02
    voltage_tolerance: float = 0.01
    inverter_tolerance: float = 0.01
    power_factor_ratio: float = 0.44

    charge_efficiency: float = 0.95
    discharge_efficiency: float = 0.95
    battery_power_fraction: float = 0.1
    initial_soc_fraction: float = 0.0

    import_cost: float = 10.0
    feed_in_cost: float = 3.0
    reactive_cost: float = 3.0
    curtailment_cost: float = 6.0

    v_base: float = 4800.0
    z_base: float = 1.0

    solver: str = "gurobi"
    recovery_solver: Optional[str] = None
    monte_carlo_workers: int = 1
    activation_windows: List[ActivationWindow] = field(
        default_factory=default_activation_windows
    )

    @property
    def s_base(self) -> float:
        return self.v_base ** 2 / self.z_base

    @property
    def epochs_per_day(self) -> int:
        return 1440 // self.interval_minutes

    def validate(self) -> None:
        _check_common(self.rho_values, self.epsilon, self.n_scenarios, self.wasserstein_norm)
        if self.horizon < 1:
            raise ValueError(f"horizon must be >= 1, got {self.horizon}")
        for name in ("voltage_tolerance", "inverter_tolerance"):
            tol = getattr(self, name)
            if not 0.0 < tol < 1.0:
                raise ValueError(f"{name} must lie in (0, 1), got {tol}")
        if self.v_min >= self.v_max:
            raise ValueError("v_min must be below v_max")
        if not 0.0 <= self.initial_soc_fraction <= 1.0:
            raise ValueError(f"initial_soc_fraction must lie in [0, 1], got {self.initial_soc_fraction}")
        if self.end_epoch is not None and self.end_epoch <= self.start_epoch:
            raise ValueError("end_epoch must be after start_epoch")
        if self.monte_carlo_workers < 1:
            raise ValueError("monte_carlo_workers must be >= 1")


@dataclass
class TransmissionConfig:
    """Parametric (epsilon x rho) N-1 secure dispatch study on a meshed grid."""
    n_scenarios: int = 30
    alpha: float = 0.01
    rho_values: List[float] = field(
        default_factory=lambda: [1, 10] + list(range(30, 901, 30))
    )
    epsilon_values: List[float] = field(default_factory=lambda: [0.0, 0.02, 0.04])
    wasserstein_norm: str = "l1"
    monitored_lines: List[MonitoredLine] = field(
        default_factory=lambda: [
            MonitoredLine(7, direction=-1),
            MonitoredLine(37),
            MonitoredLine(38),
            MonitoredLine(54),
            MonitoredLine(96),
        ]
    )
    reference_bus: Optional[int] = None
    include_load_contingencies: bool = True
    include_generator_contingencies: bool = True
    include_line_contingencies: bool = True
    # line_id -> {"generators": [...], "loads": [...], "wind": [...]}
    outage_table: Optional[Dict[int, Dict[str, List[int]]]] = None
    enforce_generator_limits: bool = False
    solver: str = "gurobi"

    def validate(self) -> None:
        _check_common(self.rho_values, None, self.n_scenarios, self.wasserstein_norm)
        if not 0.0 < self.alpha < 1.0:
            raise ValueError(f"alpha must lie in (0, 1), got {self.alpha}")
        for eps in self.epsilon_values:
            if eps < 0:
                raise ValueError(f"Wasserstein radius must be non-negative, got {eps}")
        for line in self.monitored_lines:
            if line.direction not in (1, -1):
                raise ValueError(f"Line {line.line_id}: direction must be +1 or -1")


def _check_common(rho_values, epsilon, n_scenarios, norm) -> None:
    if not rho_values:
        raise ValueError("rho_values is empty")
    if any(r <= 0 for r in rho_values):
        raise ValueError("risk weights must be strictly positive")
    if epsilon is not None and epsilon < 0:
        raise ValueError(f"Wasserstein radius must be non-negative, got {epsilon}")
    if n_scenarios < 1:
        raise ValueError(f"n_scenarios must be >= 1, got {n_scenarios}")
    if norm not in WASSERSTEIN_NORMS:
        raise ValueError(f"wasserstein_norm must be one of {WASSERSTEIN_NORMS}, got {norm!r}")


def config_from_dict(data: dict, cls):
    """Build ``cls`` from a plain dict, converting nested windows and lines."""
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")

    kwargs = dict(data)
    if "activation_windows" in kwargs:
        kwargs["activation_windows"] = [
            w if isinstance(w, ActivationWindow) else ActivationWindow(**w)
            for w in kwargs["activation_windows"]
        ]
    if "monitored_lines" in kwargs:
        kwargs["monitored_lines"] = [
            ln if isinstance(ln, MonitoredLine) else MonitoredLine(**ln)
            for ln in kwargs["monitored_lines"]
        ]
    if kwargs.get("outage_table") is not None:
        # JSON object keys are strings
        kwargs["outage_table"] = {int(k): v for k, v in kwargs["outage_table"].items()}

    cfg = cls(**kwargs)
    cfg.validate()
    return cfg


def load_config(path: Optional[str], cls):
    """Load a JSON config file into ``cls``; ``None`` returns the defaults."""
    if path is None:
        cfg = cls()
        cfg.validate()
        return cfg
    with open(path, "r") as f:
        data = json.load(f)
    return config_from_dict(data, cls)


def window_summary(windows: List[ActivationWindow]) -> List[Tuple[int, Optional[int], List[str]]]:
    return [(w.start, w.end, list(w.kinds)) for w in windows]

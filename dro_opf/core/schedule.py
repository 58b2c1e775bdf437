"""Time-of-day activation schedule for the feeder risk constraints."""

from typing import FrozenSet, Iterable, List

from .config import CONSTRAINT_KINDS, ActivationWindow, default_activation_windows


class ActivationSchedule:
    """Maps a decision epoch to the set of constraint kinds enforced at that epoch."""

    def __init__(self, windows: Iterable[ActivationWindow]):
        self.windows: List[ActivationWindow] = list(windows)
        for w in self.windows:
            unknown = set(w.kinds) - set(CONSTRAINT_KINDS)
            if unknown:
                raise ValueError(f"Unknown constraint kinds in schedule: {sorted(unknown)}")

    @classmethod
    def daytime(cls, interval_minutes: int = 5) -> "ActivationSchedule":
        return cls(default_activation_windows(interval_minutes))

    @classmethod
    def always(cls, kinds: Iterable[str]) -> "ActivationSchedule":
        return cls([ActivationWindow(start=0, end=None, kinds=list(kinds))])

    def active_kinds(self, epoch: int) -> FrozenSet[str]:
        active = set()
        for w in self.windows:
            if w.contains(epoch):
                active.update(w.kinds)
        return frozenset(active)

    def __call__(self, epoch: int) -> FrozenSet[str]:
        return self.active_kinds(epoch)

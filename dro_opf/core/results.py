"""Append-only archive of per-solve records."""

import logging
from enum import Enum
from typing import Dict, Hashable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


class ResultStore:
    """
    Records keyed by a sweep coordinate such as (rho, epoch) or (epsilon, rho).

    A key can be written once; overwriting an archived row raises ``ValueError``.
    One-dimensional array fields are expanded into numbered columns by
    ``to_frame``; matrices are kept in the records but left out of the frame.
    """

    def __init__(self, key_names: Sequence[str] = ("rho", "epoch")):
        self.key_names: Tuple[str, ...] = tuple(key_names)
        self._records: Dict[Tuple[Hashable, ...], dict] = {}

    def append(self, key: Sequence[Hashable], record: dict) -> None:
        key = tuple(key)
        if len(key) != len(self.key_names):
            raise ValueError(f"Key {key} does not match key names {self.key_names}")
        if key in self._records:
            raise ValueError(f"Result for {dict(zip(self.key_names, key))} already archived")
        self._records[key] = dict(record)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key) -> bool:
        return tuple(key) in self._records

    def __iter__(self) -> Iterator[Tuple[Hashable, ...]]:
        return iter(self._records)

    def get(self, key) -> Optional[dict]:
        return self._records.get(tuple(key))

    def items(self):
        return self._records.items()

    def series(self, field: str, **fixed) -> List[Tuple[Tuple[Hashable, ...], object]]:
        """Values of ``field`` for all keys matching the fixed coordinates, in insertion order."""
        positions = {self.key_names.index(k): v for k, v in fixed.items()}
        return [
            (key, rec.get(field))
            for key, rec in self._records.items()
            if all(key[p] == v for p, v in positions.items())
        ]

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for key, rec in self._records.items():
            row = dict(zip(self.key_names, key))
            for name, val in rec.items():
                if isinstance(val, dict):
                    for sub, sval in val.items():
                        row[f"{name}_{sub}"] = sval
                elif isinstance(val, (np.ndarray, list, tuple)):
                    arr = np.asarray(val)
                    if arr.ndim > 1:
                        # matrices stay in the store only
                        continue
                    for k, item in enumerate(arr):
                        row[f"{name}_{k}"] = item
                elif isinstance(val, Enum):
                    row[name] = val.value
                else:
                    row[name] = val
            rows.append(row)
        return pd.DataFrame(rows)

    def to_csv(self, path: str) -> None:
        self.to_frame().to_csv(path, index=False)
        logger.info("Saved %d records to %s", len(self), path)

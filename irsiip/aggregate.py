"""Grouped counts and statistics over join tables and point attributes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .entities import UNKNOWN

__all__ = [
    "DEFAULT_BANDS",
    "DistanceBands",
    "group_counts",
    "group_stats",
    "crosstab_counts",
]

logger = logging.getLogger(__name__)

DEFAULT_BANDS: Tuple[Tuple[float, str], ...] = (
    (1000.0, "<=1 km"),
    (5000.0, "1-5 km"),
    (10000.0, "5-10 km"),
    (20000.0, "10-20 km"),
    (50000.0, "20-50 km"),
)


@dataclass(frozen=True)
class DistanceBands:
    """
    Ordered lookup table of ``(upper_bound, label)`` pairs.

    A distance gets the label of the first band whose upper bound it does
    not exceed; distances beyond the last bound get ``overflow`` and missing
    distances get ``unknown``.
    """

    bands: Tuple[Tuple[float, str], ...] = DEFAULT_BANDS
    overflow: str = ">50 km"
    unknown: str = UNKNOWN

    def __post_init__(self):
        bands = tuple((float(b), str(label)) for b, label in self.bands)
        if not bands:
            raise ValueError("DistanceBands needs at least one band")
        bounds = [b for b, _ in bands]
        if any(hi <= lo for lo, hi in zip(bounds, bounds[1:])):
            raise ValueError(f"band upper bounds must be strictly ascending: {bounds}")
        labels = [label for _, label in bands] + [self.overflow]
        if len(set(labels)) != len(labels) or self.unknown in labels:
            raise ValueError(f"band labels must be unique: {labels}")
        object.__setattr__(self, "bands", bands)

    @classmethod
    def from_pairs(
        cls, pairs: Iterable[Sequence[Any]], *, overflow: Optional[str] = None
    ) -> "DistanceBands":
        bands = tuple((float(p[0]), str(p[1])) for p in pairs)
        if overflow is None:
            overflow = f">{bands[-1][0]:g}" if bands else ">"
        return cls(bands=bands, overflow=overflow)

    @property
    def bounds(self) -> np.ndarray:
        return np.array([b for b, _ in self.bands], dtype=float)

    @property
    def labels(self) -> List[str]:
        return [label for _, label in self.bands] + [self.overflow]

    def label(self, distance: Optional[float]) -> str:
        if distance is None or (isinstance(distance, float) and np.isnan(distance)):
            return self.unknown
        for upper, label in self.bands:
            if distance <= upper:
                return label
        return self.overflow

    def assign(self, distances: Iterable[float]) -> pd.Series:
        """Vectorised :meth:`label`, returned as an ordered categorical."""
        index = distances.index if isinstance(distances, pd.Series) else None
        values = pd.to_numeric(pd.Series(distances, index=index), errors="coerce")
        arr = values.to_numpy(dtype=float)
        pos = np.searchsorted(self.bounds, arr, side="left")
        table = np.array(self.labels + [self.unknown], dtype=object)
        pos = np.where(np.isnan(arr), len(self.labels), pos)
        return pd.Series(
            pd.Categorical(
                table[pos], categories=self.labels + [self.unknown], ordered=True
            ),
            index=values.index,
            name="distance_band",
        )


def _as_key_list(keys: str | Sequence[str]) -> List[str]:
    if isinstance(keys, str):
        return [keys]
    out = list(keys)
    if not out:
        raise ValueError("at least one grouping key is required")
    return out


def _fill_keys(frame: pd.DataFrame, keys: List[str], unknown: str) -> pd.DataFrame:
    """
    Copy of ``frame`` whose key columns have no missing values.

    Absent key columns are created entirely as ``unknown``; columns with
    missing values become string labels with the gaps set to ``unknown``.
    """
    data = frame.copy()
    for key in keys:
        if key not in data.columns:
            logger.warning("aggregate.missing_key key=%s rows=%d", key, len(data))
            data[key] = unknown
            continue
        col = data[key]
        missing = col.isna()
        if missing.any():
            logger.info(
                "aggregate.unknown_bucket key=%s rows=%d", key, int(missing.sum())
            )
            labels = col.astype(object).where(missing, col.astype(str))
            data[key] = labels.where(~missing, unknown)
    return data


def _reference_frame(reference: Any, keys: List[str]) -> pd.DataFrame:
    if isinstance(reference, pd.DataFrame):
        return reference[keys].drop_duplicates().reset_index(drop=True)
    rows = [r if isinstance(r, (tuple, list)) else (r,) for r in reference]
    return pd.DataFrame(rows, columns=keys).drop_duplicates().reset_index(drop=True)


def group_counts(
    frame: pd.DataFrame,
    keys: str | Sequence[str],
    *,
    unknown: str = UNKNOWN,
    reference: Any = None,
    fill_value: int = 0,
    name: str = "count",
) -> pd.DataFrame:
    """
    Count rows per composite key.

    Missing key values are counted under ``unknown`` so the counts always
    sum to ``len(frame)``. Groups with no rows appear only when
    ``reference`` (a DataFrame holding the key columns, or an iterable of
    key tuples) lists them; they are filled with ``fill_value``. Rows are
    sorted by key, so the result does not depend on input order.
    """
    keys = _as_key_list(keys)
    data = _fill_keys(frame, keys, unknown)
    counts = (
        data.groupby(keys, sort=False, observed=True, dropna=False)
        .size()
        .rename(name)
        .reset_index()
    )
    if reference is not None:
        ref = _reference_frame(reference, keys)
        counts = ref.merge(counts, on=keys, how="outer")
        counts[name] = counts[name].fillna(fill_value)
    counts[name] = counts[name].astype(int)
    return counts.sort_values(keys, kind="stable").reset_index(drop=True)


def group_stats(
    frame: pd.DataFrame,
    keys: str | Sequence[str],
    field: str,
    *,
    stats: Sequence[str] = ("count", "mean", "median", "min", "max"),
    unknown: str = UNKNOWN,
) -> pd.DataFrame:
    """Summary statistics of numeric ``field`` per composite key, sorted by key."""
    keys = _as_key_list(keys)
    if field not in frame.columns:
        raise KeyError(f"cannot summarise missing column '{field}'")
    data = _fill_keys(frame, keys, unknown)
    data[field] = pd.to_numeric(data[field], errors="coerce")
    out = (
        data.groupby(keys, sort=False, observed=True, dropna=False)[field]
        .agg(list(stats))
        .reset_index()
    )
    return out.sort_values(keys, kind="stable").reset_index(drop=True)


def crosstab_counts(
    frame: pd.DataFrame,
    index: str,
    columns: str,
    *,
    unknown: str = UNKNOWN,
) -> pd.DataFrame:
    """Wide count table (e.g. province by buffer radius), zero-filled."""
    counts = group_counts(frame, [index, columns], unknown=unknown)
    wide = counts.pivot_table(
        index=index, columns=columns, values="count", fill_value=0, aggfunc="sum",
        observed=True,
    )
    return wide.astype(int).sort_index()

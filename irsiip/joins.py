"""Spatial joins: strict buffer containment and nearest-point distances."""

from __future__ import annotations

import logging
from typing import List, Optional

import geopandas as gpd
import numpy as np
import pandas as pd
from scipy.spatial import cKDTree

from .aggregate import DistanceBands
from .buffers import build_buffers
from .crs import ensure_same_crs, require_planar
from .entities import ATTRIBUTE_COLUMNS, UNKNOWN, GeometrySet, JoinRecord
from .errors import EmptyPointSetError

__all__ = [
    "containment_join",
    "nearest_distance_join",
    "count_within",
    "join_records",
]

logger = logging.getLogger(__name__)


def _site_columns(frame: pd.DataFrame) -> dict[str, str]:
    return {c: f"site_{c}" for c in ATTRIBUTE_COLUMNS if c in frame.columns}


def containment_join(
    candidates: GeometrySet, buffers: gpd.GeoDataFrame
) -> gpd.GeoDataFrame:
    """
    Pair every candidate point with every buffer disk that strictly contains it.

    Uses the ``within`` predicate, so a point lying exactly on a disk
    boundary is not matched. A point inside several tiers or several sites'
    disks yields one row per disk. Columns: ``candidate_id``, ``site_id``,
    ``radius``, the candidate's attributes, and the site's attributes
    prefixed with ``site_``; geometry is the candidate point.
    """
    ensure_same_crs(candidates, buffers)
    require_planar(candidates.crs, what=f"{candidates.source} candidates")

    left = candidates.frame
    left.insert(0, "candidate_id", left.index.to_numpy())
    left.index.name = None
    site_cols = _site_columns(buffers)
    right = buffers[["site_id", "radius", *site_cols, "geometry"]].rename(
        columns=site_cols
    )

    joined = gpd.sjoin(left, right, how="inner", predicate="within")
    joined = joined.drop(columns=["index_right"], errors="ignore")
    joined = joined.sort_values(
        ["candidate_id", "site_id", "radius"], kind="stable"
    ).reset_index(drop=True)
    joined["site_id"] = joined["site_id"].astype(int)

    logger.info(
        "joins.containment candidates=%d disks=%d records=%d",
        len(candidates),
        len(buffers),
        len(joined),
    )
    return joined


def nearest_distance_join(
    a: GeometrySet,
    b: GeometrySet,
    *,
    bands: Optional[DistanceBands] = None,
) -> gpd.GeoDataFrame:
    """
    For each point of ``a``, the Euclidean distance to the nearest point of ``b``.

    Nearest neighbours come from a KD-tree over ``b``, so the join stays
    sub-quadratic for large sets. Adds ``nearest_site_id``, ``distance``,
    the nearest site's ``site_*`` attributes and, when ``bands`` is given,
    a ``distance_band`` label.
    """
    ensure_same_crs(a, b)
    require_planar(a.crs, what=f"{a.source} points")
    if len(b) == 0:
        raise EmptyPointSetError(
            f"cannot measure distances to an empty {b.source} set", stage="joins"
        )

    out = a.frame
    out.insert(0, "candidate_id", out.index.to_numpy())
    out.index.name = None
    if len(a):
        tree = cKDTree(b.xy)
        dist, idx = tree.query(a.xy, k=1)
        dist = np.asarray(dist, dtype=float)
        idx = np.asarray(idx, dtype=int)
    else:
        dist = np.empty(0, dtype=float)
        idx = np.empty(0, dtype=int)
    out["nearest_site_id"] = idx
    out["distance"] = dist

    b_frame = b.frame
    for col, renamed in _site_columns(b_frame).items():
        out[renamed] = b_frame[col].to_numpy()[idx] if len(idx) else []

    if bands is not None:
        out["distance_band"] = bands.assign(out["distance"])

    logger.info(
        "joins.nearest a=%s b=%s rows=%d median=%.1f",
        a.source,
        b.source,
        len(out),
        float(np.median(dist)) if len(dist) else float("nan"),
    )
    return out


def count_within(
    centers: GeometrySet,
    candidates: GeometrySet,
    radius: float,
    *,
    resolution: int = 64,
) -> pd.DataFrame:
    """
    Number of candidates strictly inside each center's ``radius`` disk.

    Every center appears, including those with no candidate nearby
    (``count`` 0), alongside the center's attribute columns.
    """
    buffers = build_buffers(centers, [radius], resolution=resolution)
    joined = containment_join(candidates, buffers)
    counts = joined.groupby("site_id").size()

    base = pd.DataFrame(centers.frame.drop(columns="geometry"))
    for col in ATTRIBUTE_COLUMNS:
        if col in base.columns:
            base[col] = base[col].fillna(UNKNOWN)
    base = base.reset_index()
    base["radius"] = float(radius)
    base["count"] = counts.reindex(base["site_id"], fill_value=0).to_numpy()
    return base.sort_values("site_id", kind="stable").reset_index(drop=True)


def join_records(joined: pd.DataFrame) -> List[JoinRecord]:
    """Convert a containment or nearest-distance join table into JoinRecords."""
    records: List[JoinRecord] = []
    nearest = "nearest_site_id" in joined.columns
    for row in joined.itertuples(index=False):
        if nearest:
            records.append(
                JoinRecord(
                    candidate_id=int(row.candidate_id),
                    site_id=int(row.nearest_site_id),
                    distance=float(row.distance),
                )
            )
        else:
            records.append(
                JoinRecord(
                    candidate_id=int(row.candidate_id),
                    site_id=int(row.site_id),
                    radius=float(row.radius),
                )
            )
    return records

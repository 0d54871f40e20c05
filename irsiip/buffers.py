"""Fixed-radius buffers around reference points."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, Sequence

import geopandas as gpd
import pandas as pd

from .crs import require_planar
from .entities import ATTRIBUTE_COLUMNS, BufferDisk, GeometrySet

__all__ = ["DEFAULT_RADII", "normalize_radii", "build_buffers", "iter_disks"]

# metres: 1, 5, 10, 20 and 50 km
DEFAULT_RADII = (1000.0, 5000.0, 10000.0, 20000.0, 50000.0)

logger = logging.getLogger(__name__)


def normalize_radii(radii: Iterable[float]) -> tuple[float, ...]:
    """Sorted, de-duplicated tuple of positive radii."""
    out = sorted({float(r) for r in radii})
    if not out:
        raise ValueError("at least one buffer radius is required")
    if out[0] <= 0:
        raise ValueError(f"buffer radii must be positive, got {out[0]}")
    return tuple(out)


def build_buffers(
    centers: GeometrySet,
    radii: Sequence[float] = DEFAULT_RADII,
    *,
    resolution: int = 64,
) -> gpd.GeoDataFrame:
    """
    One buffer disk per (center, radius) pair.

    Columns: ``site_id``, ``radius`` and the center's attribute columns, plus
    the disk polygon as geometry. Disks around the same center are separate
    rows, sorted by site then radius. Radii are in the linear unit of the
    set's reference system, which must be planar.
    """
    require_planar(centers.crs, what=f"{centers.source} buffer centers")
    if not centers.is_points:
        raise ValueError(f"{centers.source} buffer centers must be points")
    radii = normalize_radii(radii)

    base = centers.frame
    keep = [c for c in ATTRIBUTE_COLUMNS if c in base.columns]
    pieces = []
    for radius in radii:
        tier = pd.DataFrame(base[keep])
        tier.insert(0, "radius", radius)
        tier.insert(0, "site_id", base.index.to_numpy())
        pieces.append(
            gpd.GeoDataFrame(
                tier,
                geometry=base.geometry.buffer(radius, quad_segs=resolution).values,
                crs=base.crs,
            )
        )

    out = pd.concat(pieces, ignore_index=True)
    out = out.sort_values(["site_id", "radius"], kind="stable").reset_index(drop=True)
    out = gpd.GeoDataFrame(out, geometry="geometry", crs=base.crs)
    logger.info(
        "buffers.built source=%s centers=%d radii=%s disks=%d",
        centers.source,
        len(centers),
        ",".join(f"{r:g}" for r in radii),
        len(out),
    )
    return out


def iter_disks(buffers: gpd.GeoDataFrame) -> Iterator[BufferDisk]:
    for row in buffers.itertuples(index=False):
        yield BufferDisk(
            site_id=int(row.site_id), radius=float(row.radius), polygon=row.geometry
        )

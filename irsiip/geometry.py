"""Point helpers shared by the entities and loaders."""

from __future__ import annotations

from typing import Any, Iterable, Tuple

import numpy as np
import shapely
from shapely.geometry import Point as ShapelyPoint

__all__ = ["point_xy", "xy_array", "looks_like_lonlat", "GeoField"]


def point_xy(pt: Any) -> Tuple[float, float] | None:
    """(x, y) of a Shapely point or a 2-tuple; None for anything else or an empty point."""
    if pt is None:
        return None
    if isinstance(pt, ShapelyPoint):
        if pt.is_empty:
            return None
        return (float(pt.x), float(pt.y))
    if (
        isinstance(pt, (tuple, list))
        and len(pt) == 2
        and all(isinstance(v, (int, float)) for v in pt)
    ):
        return (float(pt[0]), float(pt[1]))
    return None


def xy_array(geoms: Iterable[Any]) -> np.ndarray:
    """
    ``(n, 2)`` float array of point coordinates.

    Raises ValueError if any geometry is missing, empty or not a Point.
    """
    arr = np.asarray(list(geoms), dtype=object)
    if len(arr) == 0:
        return np.empty((0, 2), dtype=float)
    type_ids = shapely.get_type_id(arr)
    bad = (type_ids != 0) | shapely.is_empty(arr)
    if bad.any():
        first = arr[np.flatnonzero(bad)[0]]
        kind = "missing" if first is None else first.geom_type
        raise ValueError(f"expected point geometries, found {kind}")
    return np.column_stack([shapely.get_x(arr), shapely.get_y(arr)]).astype(float)


def looks_like_lonlat(xy: np.ndarray) -> bool:
    """True when every coordinate pair falls inside longitude/latitude bounds."""
    xy = np.asarray(xy, dtype=float).reshape(-1, 2)
    if len(xy) == 0:
        return False
    return bool(np.all((np.abs(xy[:, 0]) <= 180.0) & (np.abs(xy[:, 1]) <= 90.0)))


class GeoField:
    """Descriptor that coerces assigned values (points or (x, y) tuples) into a Shapely point."""

    def __init__(self, name: str):
        self.name = name
        self.private_name = f"_{name}"

    def __set_name__(self, owner, name):
        self.private_name = f"_{name}"

    def __get__(self, obj, objtype=None):
        if obj is None:
            return self
        return getattr(obj, self.private_name, None)

    def __set__(self, obj, value):
        if isinstance(value, ShapelyPoint):
            setattr(obj, self.private_name, value)
            return
        xy = point_xy(value)
        if xy is None:
            raise TypeError(f"Invalid point geometry for {obj.__class__.__name__}")
        setattr(obj, self.private_name, ShapelyPoint(*xy))

"""Domain entities (SitePoint, GeometrySet, BufferDisk, ...) shared by the analysis stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Tuple

import geopandas as gpd
import numpy as np

from .geometry import GeoField, point_xy, xy_array

__all__ = [
    "UNKNOWN",
    "SOURCES",
    "SitePoint",
    "GeometrySet",
    "BufferDisk",
    "JoinRecord",
    "CrossKSample",
]

UNKNOWN = "Unknown"
SOURCES = ("IRS", "IIP")

# Attribute columns every loaded point set carries (missing values -> UNKNOWN).
ATTRIBUTE_COLUMNS = ("name", "category", "status", "province")


def _clean_label(value: Any) -> str:
    if value is None:
        return UNKNOWN
    if isinstance(value, float) and np.isnan(value):
        return UNKNOWN
    text = str(value).strip()
    return text or UNKNOWN


@dataclass(slots=True)
class SitePoint:
    site_id: int
    source: str
    location: Any = field(default=None, repr=False)
    name: str = UNKNOWN
    category: str = UNKNOWN
    status: str = UNKNOWN
    province: str = UNKNOWN

    _point: Any = field(init=False, repr=False, default=None)

    point = GeoField("point")

    def __post_init__(self):
        self.source = str(self.source).upper()
        if self.location is not None:
            self.point = self.location
        self.name = _clean_label(self.name)
        self.category = _clean_label(self.category)
        self.status = _clean_label(self.status)
        self.province = _clean_label(self.province)

    @property
    def coords(self) -> Optional[Tuple[float, float]]:
        return point_xy(self.point)

    def __format__(self, spec: str) -> str:
        if spec == "brief":
            return f"{self.source}#{self.site_id} {self.name} ({self.category}, {self.province})"
        return f"SitePoint<{self.source}#{self.site_id}>"


class GeometrySet:
    """
    Read-only, ordered collection of geometries sharing one reference system.

    The wrapped GeoDataFrame is copied on the way in and on the way out, so a
    set can be handed to several stages without any of them mutating it.
    Row position is the implicit identifier exposed as ``site_id``.
    """

    __slots__ = ("_frame", "source", "_xy")

    def __init__(self, frame: gpd.GeoDataFrame, *, source: str):
        if not isinstance(frame, gpd.GeoDataFrame):
            raise TypeError("GeometrySet expects a GeoDataFrame")
        data = frame.copy()
        data = data.reset_index(drop=True)
        data.index.name = "site_id"
        self._frame = data
        self.source = str(source).upper()
        self._xy = None

    def __len__(self) -> int:
        return len(self._frame)

    def __iter__(self) -> Iterator[SitePoint]:
        return self.points()

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<GeometrySet source={self.source} rows={len(self)} crs={self.crs_name}>"

    @property
    def crs(self):
        return self._frame.crs

    @property
    def crs_name(self) -> str:
        crs = self._frame.crs
        if crs is None:
            return "None"
        return crs.to_string()

    @property
    def frame(self) -> gpd.GeoDataFrame:
        return self._frame.copy()

    @property
    def geom_types(self) -> List[str]:
        return sorted(set(self._frame.geom_type.dropna()))

    @property
    def is_points(self) -> bool:
        return self.geom_types == ["Point"] or len(self) == 0

    @property
    def xy(self) -> np.ndarray:
        """``(n, 2)`` array of point coordinates; read-only."""
        if self._xy is None:
            arr = xy_array(self._frame.geometry)
            arr.setflags(write=False)
            self._xy = arr
        return self._xy

    def with_frame(self, frame: gpd.GeoDataFrame) -> "GeometrySet":
        return GeometrySet(frame, source=self.source)

    def points(self) -> Iterator[SitePoint]:
        columns = self._frame.columns
        for site_id, row in self._frame.iterrows():
            yield SitePoint(
                site_id=int(site_id),
                source=self.source,
                location=row.geometry,
                **{c: row[c] for c in ATTRIBUTE_COLUMNS if c in columns},
            )


@dataclass(frozen=True, slots=True)
class BufferDisk:
    site_id: int
    radius: float
    polygon: Any = field(repr=False)

    @property
    def area(self) -> float:
        return float(self.polygon.area)

    def contains(self, pt: Any) -> bool:
        """Strict containment: points on the boundary are outside."""
        return bool(pt.within(self.polygon))


@dataclass(frozen=True, slots=True)
class JoinRecord:
    candidate_id: int
    site_id: Optional[int] = None
    radius: Optional[float] = None
    distance: Optional[float] = None


@dataclass(frozen=True, slots=True)
class CrossKSample:
    variant: str
    r: Tuple[float, ...]
    k: Tuple[float, ...]

    def __post_init__(self):
        if len(self.r) != len(self.k):
            raise ValueError("CrossKSample needs one K value per distance")
        if any(b < a for a, b in zip(self.r, self.r[1:])):
            raise ValueError("CrossKSample distances must be ascending")

    def __len__(self) -> int:
        return len(self.r)

    def __iter__(self) -> Iterator[Tuple[float, float]]:
        return iter(zip(self.r, self.k))

    def pairs(self) -> List[Tuple[float, float]]:
        return list(zip(self.r, self.k))

"""
Bivariate Ripley's K (cross-K) with border, translation and isotropic edge corrections.

For reference points A and target points B observed in a window W,

    K_AB(r) = |W| / (n_A n_B) * sum_{i in A} sum_{j in B} 1{d_ij <= r} * w_ij

where the weight ``w_ij`` compensates for the part of the neighbourhood that
falls outside W:

- translation: w_ij = |W| / |W ∩ (W + (x_j - x_i))|
- isotropic:   w_ij = 1 / (fraction of the circle of radius d_ij around x_i inside W)
- border:      only reference points at least r from the window edge are
               used, and the count is averaged over those points.

Under complete spatial randomness and independence K_AB(r) = pi r^2, which is
reported as the ``theoretical`` curve. Comparing the estimated curves to it
is left to the caller; no clustering test is made here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import shapely
from shapely import affinity
from shapely.geometry import box
from scipy.interpolate import RectBivariateSpline
from scipy.spatial import cKDTree

from .crs import ensure_same_crs, require_planar
from .entities import CrossKSample, GeometrySet
from .errors import DegenerateWindowError, EmptyPointSetError

__all__ = [
    "VARIANTS",
    "CORRECTIONS",
    "MAX_WEIGHT",
    "Window",
    "r_grid",
    "cross_k",
    "CrossKResult",
]

logger = logging.getLogger(__name__)

CORRECTIONS = ("border", "translation", "isotropic")
VARIANTS = CORRECTIONS + ("theoretical",)

# Edge-correction weights are capped so a pair seen through a sliver of the
# window cannot dominate the estimate.
MAX_WEIGHT = 100.0

# Offsets per axis at which a polygon window's set covariance is measured.
COVARIANCE_GRID = 33


class Window:
    """Observation window: an axis-aligned rectangle or any areal shapely polygon."""

    def __init__(self, polygon: Any, *, is_rectangle: Optional[bool] = None):
        if polygon is None or polygon.is_empty:
            raise DegenerateWindowError("observation window is empty")
        if polygon.geom_type not in ("Polygon", "MultiPolygon"):
            raise DegenerateWindowError(
                f"observation window must be areal, got {polygon.geom_type}"
            )
        if not polygon.area > 0:
            raise DegenerateWindowError(
                f"observation window has zero area (bounds={polygon.bounds})"
            )
        if is_rectangle is None:
            is_rectangle = polygon.equals(box(*polygon.bounds))
        self.polygon = polygon
        self.is_rectangle = bool(is_rectangle)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        kind = "rectangle" if self.is_rectangle else "polygon"
        return f"<Window {kind} area={self.area:.6g} bounds={self.bounds}>"

    @classmethod
    def rectangle(cls, xmin: float, ymin: float, xmax: float, ymax: float) -> "Window":
        if not (xmax > xmin and ymax > ymin):
            raise DegenerateWindowError(
                f"rectangle ({xmin}, {ymin}, {xmax}, {ymax}) has zero area"
            )
        return cls(box(xmin, ymin, xmax, ymax), is_rectangle=True)

    @classmethod
    def bounding(cls, *point_sets: np.ndarray) -> "Window":
        """Bounding box of the union of the given ``(n, 2)`` coordinate arrays."""
        arrays = [np.asarray(p, dtype=float).reshape(-1, 2) for p in point_sets]
        arrays = [a for a in arrays if len(a)]
        if not arrays:
            raise EmptyPointSetError("cannot bound a window around no points")
        allxy = np.vstack(arrays)
        xmin, ymin = allxy.min(axis=0)
        xmax, ymax = allxy.max(axis=0)
        return cls.rectangle(float(xmin), float(ymin), float(xmax), float(ymax))

    @classmethod
    def from_polygon(cls, geom: Any) -> "Window":
        """Window from a polygon, or the dissolved union of a GeoSeries/GeoDataFrame."""
        if hasattr(geom, "geometry") and hasattr(geom, "crs"):
            geom = shapely.union_all(np.asarray(geom.geometry.values))
        elif hasattr(geom, "values") and hasattr(geom, "crs"):
            geom = shapely.union_all(np.asarray(geom.values))
        return cls(geom)

    @property
    def area(self) -> float:
        return float(self.polygon.area)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return tuple(float(v) for v in self.polygon.bounds)

    @property
    def width(self) -> float:
        xmin, _, xmax, _ = self.bounds
        return xmax - xmin

    @property
    def height(self) -> float:
        _, ymin, _, ymax = self.bounds
        return ymax - ymin

    def contains(self, xy: np.ndarray) -> np.ndarray:
        """Boolean mask of points inside the window or on its edge."""
        xy = np.asarray(xy, dtype=float).reshape(-1, 2)
        return shapely.intersects_xy(self.polygon, xy[:, 0], xy[:, 1])

    def boundary_distance(self, xy: np.ndarray) -> np.ndarray:
        xy = np.asarray(xy, dtype=float).reshape(-1, 2)
        if self.is_rectangle:
            xmin, ymin, xmax, ymax = self.bounds
            edges = np.stack(
                [xy[:, 0] - xmin, xy[:, 1] - ymin, xmax - xy[:, 0], ymax - xy[:, 1]]
            )
            return np.clip(edges.min(axis=0), 0.0, None)
        return shapely.distance(self.polygon.boundary, shapely.points(xy))

    def circle_fraction(self, xy: np.ndarray, radius: np.ndarray) -> np.ndarray:
        """Fraction of the circumference of each circle (centre ``xy``, ``radius``) inside the window."""
        xy = np.asarray(xy, dtype=float).reshape(-1, 2)
        radius = np.asarray(radius, dtype=float)
        if self.is_rectangle:
            return self._rect_circle_fraction(xy, radius)

        frac = np.ones(len(xy), dtype=float)
        positive = radius > 0
        if positive.any():
            circles = shapely.buffer(
                shapely.points(xy[positive]), radius[positive], quad_segs=32
            )
            rings = shapely.boundary(circles)
            inside = shapely.length(shapely.intersection(rings, self.polygon))
            frac[positive] = inside / shapely.length(rings)
        return np.clip(frac, 0.0, 1.0)

    def _rect_circle_fraction(self, xy: np.ndarray, radius: np.ndarray) -> np.ndarray:
        # Outside arc = union of the arcs cut off by each edge's half-plane.
        # Each edge removes an arc of half-angle acos(d_edge / r); arcs of
        # adjacent edges overlap by (a1 + a2 - pi/2) once the corner lies
        # inside the circle, opposite edges never overlap.
        xmin, ymin, xmax, ymax = self.bounds
        edges = np.stack(
            [xy[:, 0] - xmin, xy[:, 1] - ymin, xmax - xy[:, 0], ymax - xy[:, 1]]
        )
        edges = np.clip(edges, 0.0, None)
        with np.errstate(divide="ignore", invalid="ignore"):
            ratio = np.where(radius > 0, np.minimum(edges / radius, 1.0), 1.0)
        half = np.arccos(ratio)
        outside = 2.0 * half.sum(axis=0)
        for a, b in ((0, 1), (1, 2), (2, 3), (3, 0)):
            outside -= np.clip(half[a] + half[b] - np.pi / 2.0, 0.0, None)
        return np.clip(1.0 - outside / (2.0 * np.pi), 0.0, 1.0)

    @cached_property
    def set_covariance(self) -> RectBivariateSpline:
        """
        Bicubic spline of |W ∩ (W + (dx, dy))| over offsets within the window extent.

        The intersections are measured once, on a ``COVARIANCE_GRID`` square
        grid spanning ``[-width, width] x [-height, height]``.
        """
        xoffs = np.linspace(-self.width, self.width, COVARIANCE_GRID)
        yoffs = np.linspace(-self.height, self.height, COVARIANCE_GRID)
        table = np.zeros((xoffs.size, yoffs.size))
        for ix, xoff in enumerate(xoffs):
            for iy, yoff in enumerate(yoffs):
                shifted = affinity.translate(self.polygon, xoff=xoff, yoff=yoff)
                table[ix, iy] = self.polygon.intersection(shifted).area
        logger.debug(
            "crossk.set_covariance grid=%dx%d area=%.6g",
            xoffs.size,
            yoffs.size,
            self.area,
        )
        return RectBivariateSpline(xoffs, yoffs, table, kx=3, ky=3)

    def overlap_area(self, dx: np.ndarray, dy: np.ndarray) -> np.ndarray:
        """Area of W ∩ (W shifted by (dx, dy)) for each shift."""
        dx = np.asarray(dx, dtype=float)
        dy = np.asarray(dy, dtype=float)
        if self.is_rectangle:
            return np.clip(self.width - np.abs(dx), 0.0, None) * np.clip(
                self.height - np.abs(dy), 0.0, None
            )
        out = np.zeros(dx.shape, dtype=float)
        inside = (np.abs(dx) < self.width) & (np.abs(dy) < self.height)
        if inside.any():
            out[inside] = self.set_covariance(dx[inside], dy[inside], grid=False)
        return np.clip(out, 0.0, self.area)


def r_grid(window: Window, *, fraction: float = 0.2, n: int = 129) -> np.ndarray:
    """
    Ascending distances from 0 to ``fraction`` of the window's larger side.

    Larger distances let edge effects dominate, so ``fraction`` may not
    exceed one half.
    """
    if not 0 < fraction <= 0.5:
        raise ValueError(f"r fraction must be in (0, 0.5], got {fraction}")
    if n < 2:
        raise ValueError("r grid needs at least two distances")
    rmax = fraction * max(window.width, window.height)
    return np.linspace(0.0, rmax, int(n))


@dataclass(frozen=True)
class CrossKResult:
    samples: Dict[str, CrossKSample]
    n_a: int
    n_b: int
    window_area: float
    meta: Dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, variant: str) -> CrossKSample:
        return self.samples[variant]

    def __contains__(self, variant: str) -> bool:
        return variant in self.samples

    @property
    def variants(self) -> Tuple[str, ...]:
        return tuple(self.samples)

    @property
    def r(self) -> np.ndarray:
        return np.asarray(self.samples["theoretical"].r, dtype=float)

    def k(self, variant: str) -> np.ndarray:
        return np.asarray(self.samples[variant].k, dtype=float)

    def to_frame(self) -> pd.DataFrame:
        data = {"r": self.r}
        for name in VARIANTS:
            if name in self.samples:
                data[name] = self.k(name)
        return pd.DataFrame(data)

    def l_function(self) -> pd.DataFrame:
        """Besag's L(r) = sqrt(K(r) / pi) per variant; equals r under CSR."""
        frame = self.to_frame()
        for name in self.variants:
            frame[name] = np.sqrt(np.clip(frame[name], 0.0, None) / np.pi)
        return frame


def _as_xy(points: Any, label: str) -> np.ndarray:
    if isinstance(points, GeometrySet):
        return np.asarray(points.xy, dtype=float)
    arr = np.asarray(points, dtype=float)
    if arr.size == 0:
        return arr.reshape(0, 2)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError(f"{label} points must be an (n, 2) array, got {arr.shape}")
    return arr


def _check_r(r: Iterable[float]) -> np.ndarray:
    arr = np.asarray(list(r), dtype=float)
    if arr.ndim != 1 or len(arr) == 0:
        raise ValueError("r must be a non-empty sequence of distances")
    if np.any(arr < 0) or np.any(np.diff(arr) < 0):
        raise ValueError("r must be non-negative and ascending")
    return arr


def cross_k(
    a: Any,
    b: Any,
    *,
    window: Optional[Window] = None,
    r: Optional[Sequence[float]] = None,
    fraction: float = 0.2,
    n_r: int = 129,
    corrections: Sequence[str] = CORRECTIONS,
) -> CrossKResult:
    """
    Estimate the cross-K function from reference points ``a`` to targets ``b``.

    ``a`` and ``b`` are ``(n, 2)`` coordinate arrays or GeometrySets in one
    planar reference system. ``window`` defaults to the bounding box of both
    sets; points outside a supplied window are dropped. ``r`` defaults to
    :func:`r_grid`. Returns one CrossKSample per requested correction plus the
    ``theoretical`` pi r^2 curve. The border estimate is NaN at distances where
    no reference point lies far enough inside the window.
    """
    unknown = [c for c in corrections if c not in CORRECTIONS]
    if unknown:
        raise ValueError(f"unknown edge corrections {unknown}; choose from {CORRECTIONS}")
    if isinstance(a, GeometrySet) and isinstance(b, GeometrySet):
        ensure_same_crs(a, b)
        require_planar(a.crs, what="cross-K points")

    a_xy = _as_xy(a, "reference")
    b_xy = _as_xy(b, "target")
    if len(a_xy) == 0:
        raise EmptyPointSetError("reference (A) point set is empty")
    if len(b_xy) == 0:
        raise EmptyPointSetError("target (B) point set is empty")

    if window is None:
        window = Window.bounding(a_xy, b_xy)
    else:
        keep_a = window.contains(a_xy)
        keep_b = window.contains(b_xy)
        dropped = int((~keep_a).sum() + (~keep_b).sum())
        if dropped:
            logger.warning("crossk.outside_window dropped=%d", dropped)
        a_xy, b_xy = a_xy[keep_a], b_xy[keep_b]
        if len(a_xy) == 0:
            raise EmptyPointSetError("no reference (A) points inside the window")
        if len(b_xy) == 0:
            raise EmptyPointSetError("no target (B) points inside the window")

    radii = r_grid(window, fraction=fraction, n=n_r) if r is None else _check_r(r)
    rmax = float(radii[-1])
    n_a, n_b = len(a_xy), len(b_xy)
    area = window.area

    # Only pairs closer than the largest r ever contribute.
    pairs = cKDTree(a_xy).sparse_distance_matrix(
        cKDTree(b_xy), rmax, output_type="ndarray"
    )
    i = pairs["i"].astype(int)
    j = pairs["j"].astype(int)
    d = pairs["v"].astype(float)

    samples: Dict[str, CrossKSample] = {}
    r_tuple = tuple(float(v) for v in radii)

    if "border" in corrections:
        b_dist = window.boundary_distance(a_xy)
        pair_b = b_dist[i]
        values = []
        for rv in radii:
            eligible = int((b_dist >= rv).sum())
            if eligible == 0:
                values.append(float("nan"))
                continue
            hits = int(((d <= rv) & (pair_b >= rv)).sum())
            values.append(area * hits / (n_b * eligible))
        samples["border"] = CrossKSample("border", r_tuple, tuple(values))

    if "translation" in corrections:
        dx = b_xy[j, 0] - a_xy[i, 0]
        dy = b_xy[j, 1] - a_xy[i, 1]
        overlap = window.overlap_area(dx, dy)
        with np.errstate(divide="ignore"):
            w = np.where(overlap > 0, area / overlap, MAX_WEIGHT)
        w = np.minimum(w, MAX_WEIGHT)
        samples["translation"] = CrossKSample(
            "translation", r_tuple, _weighted_curve(d, w, radii, area, n_a, n_b)
        )

    if "isotropic" in corrections:
        frac = window.circle_fraction(a_xy[i], d)
        with np.errstate(divide="ignore"):
            w = np.where(frac > 0, 1.0 / frac, MAX_WEIGHT)
        w = np.minimum(w, MAX_WEIGHT)
        samples["isotropic"] = CrossKSample(
            "isotropic", r_tuple, _weighted_curve(d, w, radii, area, n_a, n_b)
        )

    samples["theoretical"] = CrossKSample(
        "theoretical", r_tuple, tuple(float(np.pi * rv * rv) for rv in radii)
    )

    logger.info(
        "crossk.estimated n_a=%d n_b=%d pairs=%d rmax=%.1f window_area=%.6g corrections=%s",
        n_a,
        n_b,
        len(d),
        rmax,
        area,
        ",".join(corrections),
    )
    return CrossKResult(
        samples=samples,
        n_a=n_a,
        n_b=n_b,
        window_area=area,
        meta={"rectangle": window.is_rectangle, "bounds": window.bounds},
    )


def _weighted_curve(
    d: np.ndarray,
    w: np.ndarray,
    radii: np.ndarray,
    area: float,
    n_a: int,
    n_b: int,
) -> Tuple[float, ...]:
    scale = area / (n_a * n_b)
    return tuple(float(scale * w[d <= rv].sum()) for rv in radii)

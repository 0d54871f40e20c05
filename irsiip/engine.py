"""Analysis engine: normalise the datasets once and derive every table from shared results."""
from __future__ import annotations

import logging
from functools import cached_property
from typing import Any, Dict, List, Optional, Sequence

import geopandas as gpd
import pandas as pd

from .aggregate import DistanceBands, group_counts, group_stats
from .buffers import DEFAULT_RADII, build_buffers, normalize_radii
from .crossk import CORRECTIONS, CrossKResult, Window, cross_k
from .crs import DEFAULT_TARGET_CRS, reproject, require_planar, resolve_crs
from .entities import UNKNOWN, GeometrySet
from .errors import DegenerateWindowError, EmptyPointSetError
from .joins import containment_join, nearest_distance_join

__all__ = ["AnalysisEngine", "WINDOW_CHOICES"]

logger = logging.getLogger(__name__)

WINDOW_CHOICES = ("bbox", "provinces")


class AnalysisEngine:
    """
    Holds the IRS, IIP and (optional) province sets in one planar system.

    Buffers, joins and the cross-K estimate are computed on first use and
    cached, so every table derived from, say, the 10 km tier reuses the same
    join instead of rebuilding it. Inputs are GeometrySets and are never
    modified.
    """

    def __init__(
        self,
        irs: GeometrySet,
        iip: GeometrySet,
        *,
        provinces: Optional[GeometrySet] = None,
        target_crs: Any = DEFAULT_TARGET_CRS,
        radii: Sequence[float] = DEFAULT_RADII,
        bands: Optional[DistanceBands] = None,
        window: str | Window = "bbox",
        r_fraction: float = 0.2,
        n_r: int = 129,
        corrections: Sequence[str] = CORRECTIONS,
        resolution: int = 64,
    ):
        self.target_crs = resolve_crs(target_crs)
        require_planar(self.target_crs, what="target reference system")
        self.irs = reproject(irs, self.target_crs)
        self.iip = reproject(iip, self.target_crs)
        self.provinces = (
            reproject(provinces, self.target_crs) if provinces is not None else None
        )
        for geoset in (self.irs, self.iip):
            if not geoset.is_points:
                raise ValueError(
                    f"{geoset.source} must contain points, found {geoset.geom_types}"
                )
        if isinstance(window, str) and window not in WINDOW_CHOICES:
            raise ValueError(f"window must be one of {WINDOW_CHOICES} or a Window")
        if window == "provinces" and self.provinces is None:
            raise ValueError("window='provinces' needs a provinces dataset")

        self.radii = normalize_radii(radii)
        self.bands = bands or DistanceBands()
        self.window_choice = window
        self.r_fraction = float(r_fraction)
        self.n_r = int(n_r)
        self.corrections = tuple(corrections)
        self.resolution = int(resolution)
        logger.info(
            "engine.ready irs=%d iip=%d provinces=%s crs=%s radii=%s",
            len(self.irs),
            len(self.iip),
            len(self.provinces) if self.provinces is not None else "-",
            self.target_crs.to_string(),
            ",".join(f"{r:g}" for r in self.radii),
        )

    @classmethod
    def from_config(cls, cfg) -> "AnalysisEngine":
        """Load the configured datasets and build an engine (see irsiip_config.Config)."""
        provinces = cfg.load("provinces") if "provinces" in cfg.datasets else None
        return cls(
            cfg.load("irs"),
            cfg.load("iip"),
            provinces=provinces,
            target_crs=cfg.target_crs,
            radii=cfg.radii,
            bands=cfg.distance_bands,
            window=cfg.crossk.window,
            r_fraction=cfg.crossk.r_fraction,
            n_r=cfg.crossk.n_r,
            corrections=cfg.crossk.corrections,
        )

    # ------------------------------------------------------------------
    # Shared derived artifacts
    # ------------------------------------------------------------------
    @cached_property
    def buffers(self) -> gpd.GeoDataFrame:
        return build_buffers(self.irs, self.radii, resolution=self.resolution)

    @cached_property
    def containment(self) -> gpd.GeoDataFrame:
        return containment_join(self.iip, self.buffers)

    @cached_property
    def nearest(self) -> gpd.GeoDataFrame:
        return nearest_distance_join(self.iip, self.irs, bands=self.bands)

    # ------------------------------------------------------------------
    # Buffer-based tables
    # ------------------------------------------------------------------
    def _check_radius(self, radius: float) -> float:
        radius = float(radius)
        if radius not in self.radii:
            raise KeyError(f"radius {radius:g} is not one of the configured tiers {self.radii}")
        return radius

    def projects_within(self, radius: float) -> gpd.GeoDataFrame:
        """IIPs inside at least one IRS disk of ``radius``, one row per project."""
        radius = self._check_radius(radius)
        tier = self.containment[self.containment["radius"] == radius]
        return tier.drop_duplicates("candidate_id").reset_index(drop=True)

    def tier_summary(self) -> pd.DataFrame:
        """Per radius: project/site pairs, distinct projects and distinct sites involved."""
        rows: List[Dict[str, Any]] = []
        joined = self.containment
        for radius in self.radii:
            tier = joined[joined["radius"] == radius]
            projects = int(tier["candidate_id"].nunique())
            rows.append(
                {
                    "radius": radius,
                    "pairs": int(len(tier)),
                    "projects": projects,
                    "sites": int(tier["site_id"].nunique()),
                    "share_of_projects": projects / len(self.iip) if len(self.iip) else 0.0,
                }
            )
        return pd.DataFrame(rows)

    def counts_by(
        self,
        keys: str | Sequence[str],
        *,
        radius: Optional[float] = None,
        distinct_projects: bool = True,
        zero_fill: bool = False,
    ) -> pd.DataFrame:
        """
        Group the containment join by ``keys`` (e.g. ``["radius", "category"]``).

        With ``distinct_projects`` a project counts once per radius even when
        several sites' disks contain it. ``zero_fill`` adds every radius and
        every observed category of each key with a zero count.
        """
        keys = [keys] if isinstance(keys, str) else list(keys)
        joined = self.containment
        if radius is not None:
            joined = joined[joined["radius"] == self._check_radius(radius)]
        if distinct_projects:
            joined = joined.drop_duplicates(["candidate_id", "radius"])
        reference = None
        if zero_fill:
            reference = self._key_grid(keys, joined)
        return group_counts(joined, keys, reference=reference)

    def _key_grid(self, keys: List[str], joined: pd.DataFrame) -> pd.DataFrame:
        grid = None
        for key in keys:
            if key == "radius":
                values = list(self.radii)
            elif key in self.iip.frame.columns:
                values = sorted(self.iip.frame[key].fillna(UNKNOWN).astype(str).unique())
            elif key in joined.columns:
                values = sorted(joined[key].fillna(UNKNOWN).astype(str).unique())
            else:
                values = [UNKNOWN]
            part = pd.DataFrame({key: values})
            grid = part if grid is None else grid.merge(part, how="cross")
        return grid

    def site_counts(self, radius: float) -> pd.DataFrame:
        """
        Number of IIPs inside each IRS site's ``radius`` disk.

        Sites with no project nearby are listed with ``count`` 0.
        """
        radius = self._check_radius(radius)
        tier = self.containment[self.containment["radius"] == radius]
        counts = tier.groupby("site_id").size()
        sites = pd.DataFrame(self.irs.frame.drop(columns="geometry")).reset_index()
        sites["radius"] = radius
        sites["count"] = counts.reindex(sites["site_id"], fill_value=0).to_numpy()
        return sites

    def underserved_sites(self, radius: float, *, max_count: int = 0) -> pd.DataFrame:
        """IRS sites with at most ``max_count`` projects inside ``radius``."""
        counts = self.site_counts(radius)
        return counts[counts["count"] <= max_count].reset_index(drop=True)

    # ------------------------------------------------------------------
    # Distance-based tables
    # ------------------------------------------------------------------
    def band_counts(self, keys: Sequence[str] = ()) -> pd.DataFrame:
        """Projects per distance band to the nearest IRS site, every band listed."""
        keys = ["distance_band", *keys]
        reference = None
        if len(keys) == 1:
            reference = [(label,) for label in self.bands.labels]
        out = group_counts(self.nearest, keys, reference=reference)
        out["distance_band"] = pd.Categorical(
            out["distance_band"].astype(str),
            categories=self.bands.labels + [self.bands.unknown],
            ordered=True,
        )
        return out.sort_values(keys, kind="stable").reset_index(drop=True)

    def distance_stats(self, keys: str | Sequence[str] = "category") -> pd.DataFrame:
        return group_stats(self.nearest, keys, "distance")

    # ------------------------------------------------------------------
    # Cross-K
    # ------------------------------------------------------------------
    def window(self) -> Window:
        if isinstance(self.window_choice, Window):
            return self.window_choice
        if self.window_choice == "provinces":
            return Window.from_polygon(self.provinces.frame)
        return Window.bounding(self.irs.xy, self.iip.xy)

    @cached_property
    def crossk(self) -> CrossKResult:
        """Cross-K from IRS sites (reference) to IIPs (targets)."""
        return cross_k(
            self.irs.xy,
            self.iip.xy,
            window=self.window(),
            fraction=self.r_fraction,
            n_r=self.n_r,
            corrections=self.corrections,
        )

    def run_summary(self) -> Dict[str, Any]:
        """
        Every table as plain records.

        Missing values, such as the border curve where no site is far enough
        inside the window, become ``None`` so the summary is strict JSON.

        A cross-K precondition failure is reported under ``crossk.error``
        without discarding the tables already computed.
        """
        summary: Dict[str, Any] = {
            "crs": self.target_crs.to_string(),
            "counts": {"irs": len(self.irs), "iip": len(self.iip)},
            "tiers": _records(self.tier_summary()),
            "by_category": _records(self.counts_by(["radius", "category"])),
            "by_province": _records(self.counts_by(["radius", "province"])),
            "bands": _records(self.band_counts()),
            "distance_by_category": _records(self.distance_stats("category")),
        }
        try:
            result = self.crossk
        except (EmptyPointSetError, DegenerateWindowError) as e:
            logger.error("engine.crossk_failed error=%s", e)
            summary["crossk"] = {"error": str(e)}
        else:
            summary["crossk"] = {
                "n_a": result.n_a,
                "n_b": result.n_b,
                "window_area": result.window_area,
                "curves": _plain(result.to_frame()).to_dict(orient="list"),
            }
        return summary


def _plain(frame: pd.DataFrame) -> pd.DataFrame:
    out = frame.copy()
    for col in out.columns:
        if isinstance(out[col].dtype, pd.CategoricalDtype):
            out[col] = out[col].astype(str)
    out = out.astype(object)
    return out.where(out.notna(), None)


def _records(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    return _plain(frame).to_dict(orient="records")

# irsiip/__init__.py
from importlib.metadata import PackageNotFoundError, version
import sys

_MINIMUM_PYTHON = (3, 11)
_REQUIRED_DEPENDENCIES = {
    "pandas": "2.1",
    "numpy": "1.26",
    "shapely": "2.0",
    "geopandas": "0.14",
    "pyproj": "3.6",
    "scipy": "1.11",
}

if sys.version_info < _MINIMUM_PYTHON:
    raise RuntimeError(f"Python >= {'.'.join(map(str, _MINIMUM_PYTHON))} is required.")


def _gte(installed: str, required: str) -> bool:
    from packaging import version as pv

    return pv.parse(installed) >= pv.parse(required)


_required_issues: list[str] = []
for pkg, minv in _REQUIRED_DEPENDENCIES.items():
    try:
        v = version(pkg)
    except PackageNotFoundError:
        _required_issues.append(f"{pkg}>={minv} (not installed)")
        continue
    if not _gte(v, minv):
        _required_issues.append(f"{pkg}>={minv} (found {v})")

if _required_issues:
    raise ImportError(
        "irsiip requires the following dependencies: "
        + ", ".join(_required_issues)
    ) from None


try:
    __version__ = version("irsiip")
except PackageNotFoundError:
    __version__ = "0.0.0"

from .errors import (
    DegenerateWindowError,
    EmptyPointSetError,
    IrsIipError,
    MissingDatasetError,
    UnitMismatchError,
    UnknownReferenceSystem,
)
from .entities import BufferDisk, CrossKSample, GeometrySet, JoinRecord, SitePoint
from .crs import DEFAULT_TARGET_CRS, reproject, resolve_crs
from .buffers import DEFAULT_RADII, build_buffers
from .joins import containment_join, count_within, nearest_distance_join
from .aggregate import DistanceBands, group_counts, group_stats
from .crossk import CrossKResult, Window, cross_k
from .engine import AnalysisEngine

__all__ = [
    "AnalysisEngine",
    "BufferDisk",
    "CrossKResult",
    "CrossKSample",
    "DEFAULT_RADII",
    "DEFAULT_TARGET_CRS",
    "DegenerateWindowError",
    "DistanceBands",
    "EmptyPointSetError",
    "GeometrySet",
    "IrsIipError",
    "JoinRecord",
    "MissingDatasetError",
    "SitePoint",
    "UnitMismatchError",
    "UnknownReferenceSystem",
    "Window",
    "build_buffers",
    "containment_join",
    "count_within",
    "cross_k",
    "group_counts",
    "group_stats",
    "nearest_distance_join",
    "reproject",
    "resolve_crs",
    "__version__",
]

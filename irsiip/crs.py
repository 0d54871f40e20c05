"""Coordinate normalisation: resolve reference systems and reproject GeometrySets."""

from __future__ import annotations

import logging
from typing import Any

from pyproj import CRS
from pyproj.exceptions import CRSError

from .entities import GeometrySet
from .errors import UnitMismatchError, UnknownReferenceSystem

__all__ = [
    "DEFAULT_TARGET_CRS",
    "resolve_crs",
    "reproject",
    "require_planar",
    "ensure_same_crs",
]

# NAD83 / Statistics Canada Lambert (conformal conic, metres)
DEFAULT_TARGET_CRS = "EPSG:3347"

logger = logging.getLogger(__name__)


def resolve_crs(identifier: Any) -> CRS:
    """
    Turn an EPSG code, authority string, WKT/PROJ text or ``pyproj.CRS`` into a CRS.

    Raises UnknownReferenceSystem for anything pyproj does not recognise,
    including ``None``; there is no assumed default.
    """
    if identifier is None:
        raise UnknownReferenceSystem("reference system is missing")
    if isinstance(identifier, CRS):
        return identifier
    if isinstance(identifier, str) and not identifier.strip():
        raise UnknownReferenceSystem("reference system is empty")
    try:
        return CRS.from_user_input(identifier)
    except (CRSError, TypeError, ValueError) as e:
        raise UnknownReferenceSystem(
            f"unrecognised reference system {identifier!r}: {e}"
        ) from e


def require_planar(crs: Any, *, what: str = "geometry set") -> float:
    """
    Check that ``crs`` is projected with a linear unit and return metres per unit.

    Distances, buffers and areas are only meaningful in such a system.
    """
    if crs is None:
        raise UnitMismatchError(f"{what} has no reference system; reproject it first")
    crs = resolve_crs(crs)
    if crs.is_geographic or not crs.is_projected:
        raise UnitMismatchError(
            f"{what} is in {crs.to_string()}, which is not planar; "
            "reproject to a projected reference system before measuring distances"
        )
    axis = crs.axis_info[0] if crs.axis_info else None
    factor = getattr(axis, "unit_conversion_factor", None)
    if not factor:
        raise UnitMismatchError(
            f"{what} reference system {crs.to_string()} has no linear unit"
        )
    return float(factor)


def _label(obj: Any) -> str:
    source = getattr(obj, "source", None)
    return source if isinstance(source, str) else type(obj).__name__


def ensure_same_crs(*sets: Any) -> CRS:
    """
    Return the shared CRS of ``sets`` (GeometrySets or GeoDataFrames).

    Raises when any set is untagged or when two sets disagree, so no distance
    is ever measured across reference systems.
    """
    if not sets:
        raise ValueError("ensure_same_crs needs at least one geometry set")
    first = sets[0]
    if first.crs is None:
        raise UnknownReferenceSystem(f"{_label(first)} set has no reference system")
    first_crs = resolve_crs(first.crs)
    for other in sets[1:]:
        if other.crs is None:
            raise UnknownReferenceSystem(
                f"{_label(other)} set has no reference system"
            )
        other_crs = resolve_crs(other.crs)
        if not first_crs.equals(other_crs):
            raise UnitMismatchError(
                f"{_label(first)} is in {first_crs.to_string()} but {_label(other)} "
                f"is in {other_crs.to_string()}; reproject both to one system"
            )
    return first_crs


def reproject(geoset: GeometrySet, target: Any = DEFAULT_TARGET_CRS) -> GeometrySet:
    """
    Return a new GeometrySet with every coordinate transformed into ``target``.

    The input set is left untouched. A set with no reference-system tag is
    rejected rather than assumed to be in any particular system.
    """
    target_crs = resolve_crs(target)
    if geoset.crs is None:
        raise UnknownReferenceSystem(
            f"{geoset.source} set has no reference system tag; cannot reproject"
        )
    source_crs = resolve_crs(geoset.crs)
    frame = geoset.frame
    if source_crs.equals(target_crs):
        out = frame.set_crs(target_crs, allow_override=True)
    else:
        out = frame.to_crs(target_crs)
    logger.info(
        "crs.reprojected source=%s from=%s to=%s rows=%d",
        geoset.source,
        source_crs.to_string(),
        target_crs.to_string(),
        len(out),
    )
    return geoset.with_frame(out)

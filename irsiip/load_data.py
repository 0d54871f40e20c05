"""Read IRS, IIP and region datasets into GeometrySets with normalised attribute columns."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import geopandas as gpd
import pandas as pd

from .crs import resolve_crs
from .entities import ATTRIBUTE_COLUMNS, UNKNOWN, GeometrySet
from .errors import MissingDatasetError, UnknownReferenceSystem
from .geometry import looks_like_lonlat, xy_array

__all__ = [
    "FIELD_ALIASES",
    "find_column",
    "normalize_attributes",
    "read_geometry_set",
]

logger = logging.getLogger(__name__)

# Common spellings across the school, project and boundary sources; extend as needed.
FIELD_ALIASES: Dict[str, List[str]] = {
    "name": [
        "name",
        "Name",
        "NAME",
        "school_name",
        "School Name",
        "project_name",
        "Project Name",
        "community",
        "title",
    ],
    "category": [
        "category",
        "Category",
        "type",
        "Type",
        "project_type",
        "Project Type",
        "infrastructure_type",
        "asset_class",
    ],
    "status": [
        "status",
        "Status",
        "project_status",
        "Project Status",
        "stage",
    ],
    "province": [
        "province",
        "Province",
        "province_territory",
        "Province/Territory",
        "prov",
        "PRENAME",
        "PRNAME",
        "PREABBR",
    ],
}

_LON_ALIASES = ["longitude", "lon", "long", "lng", "x", "Longitude", "LONGITUDE"]
_LAT_ALIASES = ["latitude", "lat", "y", "Latitude", "LATITUDE"]

_VECTOR_EXTS = (".shp", ".geojson", ".json", ".gpkg", ".fgb")
_TABLE_EXTS = (".csv", ".parquet", ".xlsx", ".xls")

_NON_ALNUM = re.compile(r"[^0-9a-z]+")


def _squash(name: Any) -> str:
    return _NON_ALNUM.sub("", str(name).lower())


def find_column(columns: Any, aliases: List[str]) -> Optional[str]:
    """First column matching an alias, exactly or ignoring case and punctuation."""
    cols = list(columns)
    for alias in aliases:
        if alias in cols:
            return alias
    squashed = {_squash(c): c for c in cols}
    for alias in aliases:
        hit = squashed.get(_squash(alias))
        if hit is not None:
            return hit
    return None


def _clean_series(s: pd.Series) -> pd.Series:
    out = s.astype(object).where(s.notna(), None)
    out = out.map(lambda v: v.strip() if isinstance(v, str) else v)
    out = out.map(lambda v: UNKNOWN if v is None or v == "" else str(v))
    return out


def normalize_attributes(
    frame: pd.DataFrame,
    fields: Optional[Mapping[str, str]] = None,
    *,
    source: str = "dataset",
) -> pd.DataFrame:
    """
    Add the ``name``/``category``/``status``/``province`` columns.

    ``fields`` maps a canonical column to the source column holding it;
    otherwise the column is located through FIELD_ALIASES. Values that are
    missing, blank, or whose column cannot be found become ``"Unknown"``,
    so no row is ever dropped for lack of an attribute.
    """
    fields = dict(fields or {})
    out = frame.copy()
    for canonical in ATTRIBUTE_COLUMNS:
        col = fields.get(canonical)
        if col is not None and col not in out.columns:
            raise KeyError(
                f"[{source}] configured column '{col}' for {canonical} not found"
            )
        if col is None:
            col = find_column(out.columns, FIELD_ALIASES[canonical])
        if col is None:
            logger.warning(
                "load_data.field_missing source=%s field=%s rows=%d",
                source,
                canonical,
                len(out),
            )
            out[canonical] = UNKNOWN
            continue
        out[canonical] = _clean_series(out[col])
    return out


def _read_vector(path: Path, crs: Any) -> gpd.GeoDataFrame:
    gdf = gpd.read_file(path)
    if gdf.crs is None:
        if crs is None:
            raise UnknownReferenceSystem(
                f"{path.name} carries no reference system and none was configured",
                stage="load",
            )
        gdf = gdf.set_crs(resolve_crs(crs))
    elif crs is not None and not resolve_crs(crs).equals(gdf.crs):
        logger.warning(
            "load_data.crs_conflict path=%s file=%s configured=%s using=file",
            path,
            gdf.crs.to_string(),
            resolve_crs(crs).to_string(),
        )
    return gdf


def _read_table(
    path: Path,
    crs: Any,
    *,
    lon_col: Optional[str],
    lat_col: Optional[str],
    **reader_kwargs,
) -> gpd.GeoDataFrame:
    if crs is None:
        raise UnknownReferenceSystem(
            f"{path.name} is a table; configure the reference system of its coordinates",
            stage="load",
        )
    ext = path.suffix.lower()
    if ext == ".csv":
        df = pd.read_csv(path, **reader_kwargs)
    elif ext == ".parquet":
        df = pd.read_parquet(path, **reader_kwargs)
    else:
        df = pd.read_excel(path, **reader_kwargs)

    lon_col = lon_col or find_column(df.columns, _LON_ALIASES)
    lat_col = lat_col or find_column(df.columns, _LAT_ALIASES)
    if lon_col is None or lat_col is None:
        raise KeyError(f"{path.name}: could not find longitude/latitude columns")

    x = pd.to_numeric(df[lon_col], errors="coerce")
    y = pd.to_numeric(df[lat_col], errors="coerce")
    geometry = gpd.GeoSeries(gpd.points_from_xy(x, y), index=df.index)
    geometry[x.isna() | y.isna()] = None
    return gpd.GeoDataFrame(df, geometry=geometry, crs=resolve_crs(crs))


def read_geometry_set(
    path: str | Path,
    *,
    source: str,
    crs: Any = None,
    fields: Optional[Mapping[str, str]] = None,
    lon_col: Optional[str] = None,
    lat_col: Optional[str] = None,
    **reader_kwargs,
) -> GeometrySet:
    """
    Load a vector file (shapefile, GeoJSON, GeoPackage) or a coordinate table.

    Vector files must carry their own reference system unless ``crs`` is
    given; tables always need ``crs``. Rows without a usable geometry are
    dropped with a warning, every other row is kept with its attributes
    normalised by :func:`normalize_attributes`.
    """
    p = Path(path)
    if not p.exists():
        raise MissingDatasetError(f"{source} dataset not found: {p}")

    ext = p.suffix.lower()
    if ext in _VECTOR_EXTS:
        gdf = _read_vector(p, crs)
    elif ext in _TABLE_EXTS:
        gdf = _read_table(p, crs, lon_col=lon_col, lat_col=lat_col, **reader_kwargs)
    else:
        raise ValueError(f"Unsupported file extension for loader: {ext} (from '{p.name}')")

    if gdf.geometry.name != "geometry":
        gdf = gdf.rename_geometry("geometry")
    bad = gdf.geometry.isna() | gdf.geometry.is_empty
    if bad.any():
        logger.warning(
            "load_data.dropped_empty_geometry source=%s rows=%d", source, int(bad.sum())
        )
        gdf = gdf.loc[~bad]

    # projected tag on degree-sized coordinates usually means a mislabelled file
    if gdf.crs.is_projected and bool((gdf.geom_type == "Point").all()):
        if looks_like_lonlat(xy_array(gdf.geometry)):
            logger.warning(
                "load_data.suspect_crs source=%s crs=%s coordinates look like lon/lat",
                source,
                gdf.crs.to_string(),
            )

    gdf = normalize_attributes(gdf, fields, source=source)
    logger.info(
        "load_data.read source=%s path=%s rows=%d crs=%s",
        source,
        p,
        len(gdf),
        gdf.crs.to_string(),
    )
    return GeometrySet(gdf, source=source)

import logging
from pathlib import Path

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import Point

from irsiip.errors import MissingDatasetError, UnknownReferenceSystem
from irsiip.load_data import find_column, normalize_attributes, read_geometry_set


def _write_schools(tmp_path: Path) -> Path:
    frame = gpd.GeoDataFrame(
        {
            "School Name": ["Kamloops", "Shubenacadie", "  "],
            "Province": ["BC", "NS", None],
        },
        geometry=[Point(-120.33, 50.67), Point(-63.42, 45.09), Point(-82.34, 46.19)],
        crs="EPSG:4326",
    )
    path = tmp_path / "irs.geojson"
    frame.to_file(path, driver="GeoJSON")
    return path


def _write_projects(tmp_path: Path) -> Path:
    path = tmp_path / "iip.csv"
    pd.DataFrame(
        {
            "Project-Type": ["Water", "Housing", "Roads"],
            "status": ["Complete", None, "Planned"],
            "longitude": [-120.3, -63.4, None],
            "latitude": [50.6, 45.1, 46.0],
        }
    ).to_csv(path, index=False)
    return path


def test_vector_file_is_read_with_normalised_attributes(tmp_path, caplog):
    path = _write_schools(tmp_path)

    with caplog.at_level(logging.WARNING, logger="irsiip.load_data"):
        irs = read_geometry_set(path, source="irs")

    frame = irs.frame
    assert irs.source == "IRS"
    assert irs.crs.to_epsg() == 4326
    assert list(frame["name"]) == ["Kamloops", "Shubenacadie", "Unknown"]
    assert list(frame["province"]) == ["BC", "NS", "Unknown"]
    assert list(frame["category"]) == ["Unknown"] * 3
    assert any(
        "load_data.field_missing" in rec.getMessage() and "category" in rec.getMessage()
        for rec in caplog.records
    )


def test_table_needs_configured_reference_system(tmp_path):
    path = _write_projects(tmp_path)

    with pytest.raises(UnknownReferenceSystem) as excinfo:
        read_geometry_set(path, source="iip")

    assert excinfo.value.stage == "load"


def test_table_rows_without_coordinates_are_dropped(tmp_path, caplog):
    path = _write_projects(tmp_path)

    with caplog.at_level(logging.WARNING, logger="irsiip.load_data"):
        iip = read_geometry_set(path, source="iip", crs="EPSG:4326")

    assert len(iip) == 2
    assert iip.is_points
    assert list(iip.frame["category"]) == ["Water", "Housing"]
    assert list(iip.frame["status"]) == ["Complete", "Unknown"]
    assert iip.xy[0].tolist() == pytest.approx([-120.3, 50.6])
    assert any(
        "load_data.dropped_empty_geometry" in rec.getMessage() for rec in caplog.records
    )


def test_explicit_field_mapping_wins_over_aliases(tmp_path):
    path = _write_projects(tmp_path)

    iip = read_geometry_set(
        path,
        source="iip",
        crs="EPSG:4326",
        fields={"category": "status"},
    )

    assert list(iip.frame["category"]) == ["Complete", "Unknown"]


def test_configured_field_must_exist():
    frame = pd.DataFrame({"name": ["a"]})

    with pytest.raises(KeyError):
        normalize_attributes(frame, {"category": "Asset Class"}, source="IIP")


def test_missing_file_is_reported(tmp_path):
    with pytest.raises(MissingDatasetError):
        read_geometry_set(tmp_path / "absent.shp", source="irs")


def test_unsupported_extension_is_rejected(tmp_path):
    path = tmp_path / "sites.txt"
    path.write_text("x", encoding="utf-8")

    with pytest.raises(ValueError):
        read_geometry_set(path, source="irs", crs="EPSG:4326")


@pytest.mark.parametrize(
    "columns, expected",
    [
        (["NAME", "Type"], "Type"),
        (["Project-Type"], "Project-Type"),
        (["INFRASTRUCTURE TYPE"], "INFRASTRUCTURE TYPE"),
        (["budget"], None),
    ],
)
def test_find_column_matches_aliases(columns, expected):
    from irsiip.load_data import FIELD_ALIASES

    assert find_column(columns, FIELD_ALIASES["category"]) == expected


def test_projected_tag_on_lonlat_values_is_flagged(tmp_path, caplog):
    path = _write_projects(tmp_path)

    with caplog.at_level(logging.WARNING, logger="irsiip.load_data"):
        iip = read_geometry_set(path, source="iip", crs="EPSG:3347")

    assert iip.crs.to_epsg() == 3347
    assert any("load_data.suspect_crs" in rec.getMessage() for rec in caplog.records)

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Point

from irsiip.crs import ensure_same_crs, reproject, require_planar, resolve_crs
from irsiip.entities import GeometrySet
from irsiip.errors import IrsIipError, UnitMismatchError, UnknownReferenceSystem


def _lonlat_set(source="IRS"):
    frame = gpd.GeoDataFrame(
        {"name": ["Kamloops", "Shubenacadie", "Spanish"]},
        geometry=[Point(-120.33, 50.67), Point(-63.42, 45.09), Point(-82.34, 46.19)],
        crs="EPSG:4326",
    )
    return GeometrySet(frame, source=source)


def test_reproject_round_trip_recovers_coordinates():
    original = _lonlat_set()

    planar = reproject(original, "EPSG:3347")
    back = reproject(planar, "EPSG:4326")

    assert planar.crs.to_epsg() == 3347
    assert np.allclose(back.xy, original.xy, atol=1e-6)
    # projected coordinates are in metres, far from degree magnitudes
    assert np.abs(planar.xy).max() > 1e5


def test_reproject_leaves_input_untouched():
    original = _lonlat_set()
    before = original.xy.copy()

    reproject(original, "EPSG:3347")

    assert original.crs.to_epsg() == 4326
    assert np.array_equal(original.xy, before)


def test_reproject_keeps_attributes_and_order():
    planar = reproject(_lonlat_set(), "EPSG:3347")

    assert list(planar.frame["name"]) == ["Kamloops", "Shubenacadie", "Spanish"]
    assert list(planar.frame.index) == [0, 1, 2]


def test_reproject_to_same_system_is_identity():
    planar = reproject(_lonlat_set(), "EPSG:3347")

    again = reproject(planar, "EPSG:3347")

    assert np.array_equal(again.xy, planar.xy)


@pytest.mark.parametrize("identifier", ["EPSG:999999", "not a crs", "", None])
def test_resolve_crs_rejects_unknown_identifiers(identifier):
    with pytest.raises(UnknownReferenceSystem):
        resolve_crs(identifier)


def test_reproject_rejects_untagged_set():
    frame = gpd.GeoDataFrame(geometry=[Point(0, 0)])
    untagged = GeometrySet(frame, source="IIP")

    with pytest.raises(UnknownReferenceSystem) as excinfo:
        reproject(untagged, "EPSG:3347")

    assert "IIP" in str(excinfo.value)
    assert excinfo.value.stage == "crs"


def test_require_planar_rejects_geographic_systems():
    with pytest.raises(UnitMismatchError):
        require_planar("EPSG:4326", what="test points")

    assert require_planar("EPSG:3347") == pytest.approx(1.0)


def test_ensure_same_crs_detects_mismatch():
    lonlat = _lonlat_set("IRS")
    planar = reproject(_lonlat_set("IIP"), "EPSG:3347")

    with pytest.raises(UnitMismatchError) as excinfo:
        ensure_same_crs(lonlat, planar)

    assert "IRS" in str(excinfo.value)
    assert isinstance(excinfo.value, IrsIipError)

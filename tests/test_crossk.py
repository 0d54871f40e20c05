import logging

import geopandas as gpd
import numpy as np
import pytest
from shapely import affinity
from shapely.geometry import Point, Polygon, box

from irsiip.crossk import MAX_WEIGHT, CrossKResult, Window, cross_k, r_grid
from irsiip.entities import GeometrySet
from irsiip.errors import DegenerateWindowError, EmptyPointSetError, UnitMismatchError


def _uniform(n, seed, size=1000.0):
    rng = np.random.default_rng(seed)
    return rng.uniform(0.0, size, size=(n, 2))


def _non_decreasing(values):
    values = np.asarray(values, dtype=float)
    return bool(np.all(np.diff(values) >= -1e-9))


def test_theoretical_curve_is_pi_r_squared():
    result = cross_k(_uniform(20, 1), _uniform(20, 2))

    assert result.r[0] == 0.0
    assert result.k("theoretical") == pytest.approx(np.pi * result.r**2)


def test_default_grid_spans_a_fifth_of_the_window():
    a = np.array([[0.0, 0.0], [1000.0, 400.0]])
    b = np.array([[500.0, 200.0]])

    result = cross_k(a, b, n_r=11)

    assert len(result.r) == 11
    assert result.r[-1] == pytest.approx(200.0)
    assert result.variants == ("border", "translation", "isotropic", "theoretical")


def test_weighted_estimates_are_non_negative_and_non_decreasing():
    result = cross_k(_uniform(60, 3), _uniform(80, 4))

    for variant in ("translation", "isotropic"):
        k = result.k(variant)
        assert np.all(k >= 0)
        assert _non_decreasing(k)


def test_border_estimate_is_monotone_when_reference_points_stay_eligible():
    rng = np.random.default_rng(5)
    a = rng.uniform(400.0, 600.0, size=(15, 2))
    b = _uniform(100, 6)
    window = Window.rectangle(0, 0, 1000, 1000)

    result = cross_k(a, b, window=window, r=np.linspace(0, 300, 31))

    k = result.k("border")
    assert np.all(k >= 0)
    assert _non_decreasing(k)


def test_border_estimate_is_nan_without_eligible_reference_points():
    a = np.array([[0.0, 0.0]])
    b = np.array([[10.0, 10.0], [100.0, 50.0]])

    result = cross_k(a, b, r=[0.0, 5.0, 20.0], corrections=("border",))

    border = result.k("border")
    assert not np.isnan(border[0])
    assert np.isnan(border[1:]).all()
    assert "translation" not in result


def test_independent_uniform_patterns_track_theoretical_curve():
    result = cross_k(_uniform(200, 7), _uniform(200, 8), r=[50.0, 100.0])

    expected = np.pi * np.array([50.0, 100.0]) ** 2
    assert result.k("isotropic") == pytest.approx(expected, rel=0.25)
    assert result.k("translation") == pytest.approx(expected, rel=0.25)


def test_empty_point_sets_are_rejected():
    with pytest.raises(EmptyPointSetError):
        cross_k(np.empty((0, 2)), _uniform(5, 1))
    with pytest.raises(EmptyPointSetError):
        cross_k(_uniform(5, 1), [])


def test_collinear_points_give_degenerate_window():
    a = np.array([[0.0, 5.0], [10.0, 5.0]])
    b = np.array([[4.0, 5.0]])

    with pytest.raises(DegenerateWindowError) as excinfo:
        cross_k(a, b)

    assert excinfo.value.stage == "crossk"


def test_non_areal_windows_are_rejected():
    with pytest.raises(DegenerateWindowError):
        Window(Point(0, 0))
    with pytest.raises(DegenerateWindowError):
        Window.rectangle(0, 0, 0, 10)


def test_unknown_correction_is_rejected():
    with pytest.raises(ValueError):
        cross_k(_uniform(5, 1), _uniform(5, 2), corrections=("ripley",))


def test_points_outside_a_supplied_window_are_dropped(caplog):
    a = np.array([[10.0, 10.0], [50.0, 50.0], [500.0, 500.0]])
    b = np.array([[20.0, 20.0], [-30.0, 40.0]])
    window = Window.rectangle(0, 0, 100, 100)

    with caplog.at_level(logging.WARNING, logger="irsiip.crossk"):
        result = cross_k(a, b, window=window, r=[0.0, 10.0])

    assert (result.n_a, result.n_b) == (2, 1)
    assert result.window_area == pytest.approx(10000.0)
    assert any("crossk.outside_window" in rec.getMessage() for rec in caplog.records)


def test_geographic_geometry_sets_are_rejected():
    frame = gpd.GeoDataFrame(geometry=[Point(-100, 50), Point(-101, 51)], crs="EPSG:4326")
    lonlat = GeometrySet(frame, source="IRS")

    with pytest.raises(UnitMismatchError):
        cross_k(lonlat, lonlat)


@pytest.mark.parametrize(
    "xy, radius, expected",
    [
        ((0.0, 0.0), 10.0, 0.25),
        ((50.0, 50.0), 10.0, 1.0),
        ((0.0, 50.0), 10.0, 0.5),
        ((5.0, 50.0), 10.0, 1.0 - 2.0 * np.arccos(0.5) / (2.0 * np.pi)),
        ((50.0, 50.0), 0.0, 1.0),
    ],
)
def test_rectangle_circle_fraction(xy, radius, expected):
    window = Window.rectangle(0, 0, 100, 100)

    frac = window.circle_fraction(np.array([xy]), np.array([radius]))

    assert frac[0] == pytest.approx(expected)


def test_polygon_circle_fraction_matches_rectangle_formula():
    xy = np.array([[0.0, 0.0], [3.0, 4.0], [50.0, 50.0], [95.0, 2.0]])
    radius = np.array([10.0, 8.0, 10.0, 6.0])
    rect = Window.rectangle(0, 0, 100, 100)
    poly = Window(box(0, 0, 100, 100), is_rectangle=False)

    assert poly.circle_fraction(xy, radius) == pytest.approx(
        rect.circle_fraction(xy, radius), abs=0.01
    )


def test_translation_overlap_area():
    rect = Window.rectangle(0, 0, 100, 50)
    poly = Window(box(0, 0, 100, 50), is_rectangle=False)
    dx = np.array([10.0, -20.0, 150.0])
    dy = np.array([-5.0, 0.0, 0.0])

    expected = [90.0 * 45.0, 80.0 * 50.0, 0.0]
    assert rect.overlap_area(dx, dy) == pytest.approx(expected)
    assert poly.overlap_area(dx, dy) == pytest.approx(expected, rel=0.02)


def test_polygon_overlap_area_tracks_exact_intersection():
    shape = Polygon([(0, 0), (100, 0), (100, 40), (40, 40), (40, 100), (0, 100)])
    window = Window(shape)
    rng = np.random.default_rng(7)
    dx = rng.uniform(-90, 90, 40)
    dy = rng.uniform(-90, 90, 40)

    exact = [
        shape.intersection(affinity.translate(shape, xoff=u, yoff=v)).area
        for u, v in zip(dx, dy)
    ]

    assert not window.is_rectangle
    assert window.overlap_area(dx, dy) == pytest.approx(exact, abs=0.03 * shape.area)
    assert window.overlap_area(np.array([0.0, 120.0]), np.array([0.0, 0.0])) == pytest.approx(
        [shape.area, 0.0], rel=0.01
    )
    assert window.set_covariance is window.set_covariance


def test_polygon_window_agrees_with_rectangle_window():
    a = _uniform(25, 11)
    b = _uniform(25, 12)
    r = np.linspace(0, 150, 7)

    rect = cross_k(a, b, window=Window.rectangle(0, 0, 1000, 1000), r=r)
    poly = cross_k(a, b, window=Window(box(0, 0, 1000, 1000), is_rectangle=False), r=r)

    for variant in ("border", "translation", "isotropic"):
        assert poly.k(variant) == pytest.approx(rect.k(variant), rel=0.02)


def test_window_from_province_polygons_dissolves_them():
    provinces = gpd.GeoDataFrame(
        {"province": ["West", "East"]},
        geometry=[box(0, 0, 50, 100), box(50, 0, 100, 100)],
        crs="EPSG:3347",
    )

    window = Window.from_polygon(provinces)

    assert window.area == pytest.approx(10000.0)
    assert window.is_rectangle
    assert window.contains(np.array([[50.0, 50.0], [150.0, 50.0]])).tolist() == [
        True,
        False,
    ]


def test_edge_weights_are_capped():
    # a pair straddling a thin window sees almost none of its circle inside
    window = Window.rectangle(0, 0, 1000, 0.001)
    a = np.array([[0.0, 0.0]])
    b = np.array([[400.0, 0.0]])

    result = cross_k(a, b, window=window, r=[0.0, 500.0], corrections=("isotropic",))

    assert result.k("isotropic")[-1] == pytest.approx(window.area * MAX_WEIGHT)


def test_r_grid_validates_fraction():
    window = Window.rectangle(0, 0, 10, 10)

    with pytest.raises(ValueError):
        r_grid(window, fraction=0.75)
    assert r_grid(window, fraction=0.5, n=3).tolist() == [0.0, 2.5, 5.0]


def test_result_frame_and_l_function():
    result = cross_k(_uniform(10, 21), _uniform(10, 22), n_r=5)

    frame = result.to_frame()
    assert list(frame.columns) == [
        "r",
        "border",
        "translation",
        "isotropic",
        "theoretical",
    ]
    assert isinstance(result, CrossKResult)
    assert result.l_function()["theoretical"].to_numpy() == pytest.approx(result.r)
    assert result["isotropic"].pairs()[0] == (0.0, result.k("isotropic")[0])

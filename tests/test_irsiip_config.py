import json
from pathlib import Path

import geopandas as gpd
import pytest
from shapely.geometry import Point, box

from irsiip.errors import MissingDatasetError, UnitMismatchError, UnknownReferenceSystem
from irsiip.irsiip_config import Config, load_config, main


def _write_datasets(root: Path) -> None:
    data = root / "data"
    data.mkdir()
    gpd.GeoDataFrame(
        {"name": ["North", "South"], "province": ["MB", "MB"]},
        geometry=[Point(-97.0, 50.0), Point(-97.0, 49.9)],
        crs="EPSG:4326",
    ).to_file(data / "irs.geojson", driver="GeoJSON")
    gpd.GeoDataFrame(
        {"Project Type": ["Water", "Roads", "Housing"]},
        geometry=[Point(-97.01, 50.0), Point(-97.3, 49.95), Point(-96.9, 49.9)],
        crs="EPSG:4326",
    ).to_file(data / "iip.geojson", driver="GeoJSON")
    gpd.GeoDataFrame(
        {"PRENAME": ["Manitoba"]},
        geometry=[box(-98.0, 49.5, -96.0, 50.5)],
        crs="EPSG:4326",
    ).to_file(data / "provinces.geojson", driver="GeoJSON")


_CONFIG = """\
target_crs: EPSG:3347
datasets:
  irs: data/irs.geojson
  iip:
    path: data/iip.geojson
    fields:
      category: Project Type
  provinces: data/provinces.geojson
radii: [5000, 1000]
crossk:
  window: provinces
  n_r: 9
schema:
  irs: geojson
options:
  log_level: WARNING
"""


def _reject_constant(token):
    raise ValueError(f"non-standard JSON constant {token}")


def test_load_config_resolves_paths_relative_to_file(tmp_path):
    cfg_path = tmp_path / "analysis.yaml"
    cfg_path.write_text(_CONFIG, encoding="utf-8")

    cfg = load_config(cfg_path)

    assert Path(cfg.irs.path) == (tmp_path / "data" / "irs.geojson").resolve()
    assert cfg.iip.fields == {"category": "Project Type"}
    assert cfg.radii == (1000.0, 5000.0)
    assert cfg.crossk.window == "provinces"
    assert cfg.crossk.n_r == 9
    assert cfg.distance_bands.labels[-1] == ">50 km"
    assert cfg.log_level == "WARNING"
    assert cfg.missing_files() == [
        f"{name}: {cfg[name].path}" for name in ("irs", "iip", "provinces")
    ]


def test_toml_configs_are_supported(tmp_path):
    cfg_path = tmp_path / "analysis.toml"
    cfg_path.write_text(
        """\
target_crs = "EPSG:3347"
radii = [1000]
distance_bands = [[500, "near"], [2000, "mid"]]
distance_overflow_label = "far"

[datasets]
irs = "sites.shp"

[datasets.iip]
path = "projects.csv"
crs = "EPSG:4326"
lon_col = "lng"
lat_col = "lat"
""",
        encoding="utf-8",
    )

    cfg = load_config(cfg_path)

    assert cfg.iip.crs == "EPSG:4326"
    assert cfg.iip.lon_col == "lng"
    assert cfg.distance_bands.labels == ["near", "mid", "far"]
    assert json.loads(cfg.to_json())["radii"] == [1000.0]


def test_required_datasets_must_be_configured():
    with pytest.raises(MissingDatasetError):
        Config.from_dict({"datasets": {"irs": "sites.shp"}})


def test_provinces_window_needs_provinces_dataset():
    with pytest.raises(MissingDatasetError):
        Config.from_dict(
            {
                "datasets": {"irs": "a.shp", "iip": "b.shp"},
                "crossk": {"window": "provinces"},
            }
        )


@pytest.mark.parametrize(
    "target, error",
    [("EPSG:4326", UnitMismatchError), ("EPSG:123456789", UnknownReferenceSystem)],
)
def test_target_crs_must_be_known_and_planar(target, error):
    with pytest.raises(error):
        Config.from_dict(
            {"target_crs": target, "datasets": {"irs": "a.shp", "iip": "b.shp"}}
        )


@pytest.mark.parametrize(
    "crossk",
    [{"window": "national"}, {"r_fraction": 0.9}, {"n_r": 1}, {"corrections": ["ripley"]}],
)
def test_invalid_crossk_options_are_rejected(crossk):
    with pytest.raises(ValueError):
        Config.from_dict(
            {"datasets": {"irs": "a.shp", "iip": "b.shp"}, "crossk": crossk}
        )


def test_schema_file_types_are_validated():
    with pytest.raises(ValueError) as excinfo:
        Config.from_dict(
            {
                "datasets": {"irs": "sites.csv", "iip": "projects.csv"},
                "schema": {"irs": ["shp", "geojson"]},
            }
        )

    assert "datasets.irs" in str(excinfo.value)


def test_cli_init_writes_loadable_template(tmp_path, capsys):
    out = tmp_path / "starter.yaml"

    main(["irsiip_config.py", "init", str(out)])

    cfg = load_config(out)
    assert cfg.target_crs == "EPSG:3347"
    assert cfg.iip.crs == "EPSG:4326"
    assert "Wrote starter config" in capsys.readouterr().out

    with pytest.raises(SystemExit):
        main(["irsiip_config.py", "init", str(out)])


def test_cli_check_fails_on_missing_files(tmp_path):
    cfg_path = tmp_path / "analysis.yaml"
    cfg_path.write_text(_CONFIG, encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        main(["irsiip_config.py", "check", str(cfg_path)])

    assert excinfo.value.code == 1


def test_cli_run_prints_json_summary(tmp_path, capsys):
    _write_datasets(tmp_path)
    cfg_path = tmp_path / "analysis.yaml"
    cfg_path.write_text(_CONFIG, encoding="utf-8")

    main(["irsiip_config.py", "run", str(cfg_path), "--json"])

    summary = json.loads(capsys.readouterr().out, parse_constant=_reject_constant)
    assert summary["counts"] == {"irs": 2, "iip": 3}
    assert summary["crs"] == "EPSG:3347"
    tiers = {row["radius"]: row["projects"] for row in summary["tiers"]}
    assert tiers[1000.0] == 1
    categories = {
        row["category"] for row in summary["by_category"] if row["radius"] == 1000.0
    }
    assert categories == {"Water"}
    assert len(summary["crossk"]["curves"]["r"]) == 9


def test_cli_rejects_unknown_command():
    with pytest.raises(SystemExit) as excinfo:
        main(["irsiip_config.py", "publish"])

    assert excinfo.value.code == 2

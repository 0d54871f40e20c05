#!/usr/bin/env python3
"""
irsiip_config.py

Config loader + validator + CLI for IRS/IIP proximity runs.

Features:
- YAML/TOML config naming the IRS, IIP and province datasets, the target
  reference system, buffer radii, distance bands and cross-K options
- Fail-fast validation: unknown or non-planar target CRS, missing datasets,
  file extensions that do not match the declared schema
- Relative dataset paths resolved against the config file's directory
- CLI:
    - init <out.yaml>
    - check <cfg>
    - run <cfg> [--json]
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple, List, Sequence, Mapping
from pathlib import Path
import json
import logging
import os
import sys
import tomllib

import yaml

from .aggregate import DEFAULT_BANDS, DistanceBands
from .buffers import DEFAULT_RADII, normalize_radii
from .crossk import CORRECTIONS
from .crs import DEFAULT_TARGET_CRS, require_planar, resolve_crs
from .entities import GeometrySet
from .errors import MissingDatasetError

REQUIRED_DATASETS = ("irs", "iip")
KNOWN_DATASETS = ("irs", "iip", "provinces")

logger = logging.getLogger(__name__)

# ------------------------------
# Loading utilities (YAML/TOML)
# ------------------------------


def _load_yaml(text: str) -> dict:
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError("YAML root must be a mapping (dict).")
    return data


def _load_toml(text: str) -> dict:
    data = tomllib.loads(text)
    if not isinstance(data, dict):
        raise ValueError("TOML root must be a mapping (dict).")
    return data


def _detect_and_load(path: Path) -> dict:
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix in (".yaml", ".yml"):
        return _load_yaml(text)
    if suffix == ".toml":
        return _load_toml(text)
    # Last resort: try YAML first, then TOML
    try:
        return _load_yaml(text)
    except (yaml.YAMLError, ValueError):
        return _load_toml(text)


# ------------------------------
# Helpers
# ------------------------------


def _expand_path(value: str) -> str:
    """Expand ~ and $ENV in a path-like string."""
    return os.path.expandvars(os.path.expanduser(value))


def _rewrite_relative_paths(raw: dict, base_dir: Path) -> dict:
    """Rewrite relative dataset paths to be relative to base_dir."""

    def rewrite(val: Any) -> Any:
        if not isinstance(val, str):
            return val
        path = Path(_expand_path(val))
        if path.is_absolute():
            return str(path)
        return str(base_dir / path)

    datasets = raw.get("datasets")
    if not isinstance(datasets, dict):
        return raw
    out: dict = {}
    for name, entry in datasets.items():
        if isinstance(entry, dict) and "path" in entry:
            entry = dict(entry)
            entry["path"] = rewrite(entry["path"])
            out[name] = entry
        else:
            out[name] = rewrite(entry)
    updated = dict(raw)
    updated["datasets"] = out
    return updated


def _ext(path: str) -> str:
    return Path(path).suffix.lower()


# ------------------------------
# Data model & validation
# ------------------------------


@dataclass
class DatasetSpec:
    """Where one dataset lives and how to read it."""

    name: str
    path: str
    crs: Optional[str] = None
    fields: Dict[str, str] = field(default_factory=dict)
    lon_col: Optional[str] = None
    lat_col: Optional[str] = None

    @staticmethod
    def from_raw(name: str, raw: Any) -> "DatasetSpec":
        if isinstance(raw, str):
            return DatasetSpec(name=name, path=_expand_path(raw))
        if not isinstance(raw, dict):
            raise ValueError(f"[datasets.{name}] must be a path or a mapping")
        if "path" not in raw:
            raise ValueError(f"[datasets.{name}] is missing 'path'")
        fields = raw.get("fields", {}) or {}
        if not isinstance(fields, dict):
            raise ValueError(f"[datasets.{name}.fields] must be a mapping")
        crs = raw.get("crs")
        if crs is not None:
            resolve_crs(crs)
        return DatasetSpec(
            name=name,
            path=_expand_path(str(raw["path"])),
            crs=None if crs is None else str(crs),
            fields={str(k): str(v) for k, v in fields.items()},
            lon_col=raw.get("lon_col"),
            lat_col=raw.get("lat_col"),
        )


_ALLOWED_EXT_GROUPS: Mapping[str, Sequence[str]] = {
    "csv": (".csv",),
    "parquet": (".parquet",),
    "geojson": (".geojson", ".json"),
    "gpkg": (".gpkg",),
    "xlsx": (".xlsx", ".xls"),
    "shp": (".shp",),
    "fgb": (".fgb",),
}


@dataclass
class SchemaHints:
    """
    Expected file types per dataset.

    Example:
      schema:
        irs: ["shp", "geojson"]
        iip: ["csv"]
    """

    datasets: Dict[str, List[str]] = field(default_factory=dict)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "SchemaHints":
        out: Dict[str, List[str]] = {}
        for ds, kinds in (d or {}).items():
            if isinstance(kinds, str):
                kinds = [kinds]
            if not (isinstance(kinds, list) and all(isinstance(k, str) for k in kinds)):
                raise ValueError(f"[schema.{ds}] must be a string or list of strings")
            out[ds] = [k.strip().lower() for k in kinds]
        return SchemaHints(datasets=out)

    def allowed_exts_for(self, dataset: str) -> List[str]:
        """Flat list of allowed extensions; empty means 'no restriction'."""
        exts: List[str] = []
        for k in self.datasets.get(dataset, []):
            for e in _ALLOWED_EXT_GROUPS.get(k, ()):
                if e not in exts:
                    exts.append(e)
        return exts


@dataclass
class CrossKOptions:
    window: str = "bbox"
    r_fraction: float = 0.2
    n_r: int = 129
    corrections: Tuple[str, ...] = CORRECTIONS

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "CrossKOptions":
        if not isinstance(d, dict):
            raise ValueError("[crossk] must be a mapping.")
        opts = CrossKOptions(
            window=str(d.get("window", "bbox")),
            r_fraction=float(d.get("r_fraction", 0.2)),
            n_r=int(d.get("n_r", 129)),
            corrections=tuple(d.get("corrections", CORRECTIONS)),
        )
        if opts.window not in ("bbox", "provinces"):
            raise ValueError("[crossk.window] must be 'bbox' or 'provinces'")
        if not 0 < opts.r_fraction <= 0.5:
            raise ValueError("[crossk.r_fraction] must be in (0, 0.5]")
        if opts.n_r < 2:
            raise ValueError("[crossk.n_r] must be at least 2")
        bad = [c for c in opts.corrections if c not in CORRECTIONS]
        if bad:
            raise ValueError(f"[crossk.corrections] unknown corrections {bad}")
        return opts


# ---------- Config root ----------


@dataclass
class Config:
    datasets: Dict[str, DatasetSpec] = field(default_factory=dict)
    target_crs: str = DEFAULT_TARGET_CRS
    radii: Tuple[float, ...] = DEFAULT_RADII
    distance_bands: DistanceBands = field(default_factory=DistanceBands)
    crossk: CrossKOptions = field(default_factory=CrossKOptions)
    options: Dict[str, Any] = field(default_factory=dict)
    schema: SchemaHints = field(default_factory=SchemaHints)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Config":
        if not isinstance(d, dict):
            raise ValueError("Config must be a mapping at the top level.")

        datasets_raw = d.get("datasets", {})
        options = d.get("options", {}) or {}
        if not isinstance(datasets_raw, dict):
            raise ValueError("[datasets] must be a mapping.")
        if not isinstance(options, dict):
            raise ValueError("[options] must be a mapping.")

        datasets = {
            name: DatasetSpec.from_raw(name, raw) for name, raw in datasets_raw.items()
        }
        for name in datasets:
            if name not in KNOWN_DATASETS:
                logger.warning("config.unknown_dataset name=%s ignored=true", name)
        missing = [name for name in REQUIRED_DATASETS if name not in datasets]
        if missing:
            raise MissingDatasetError(f"config names no dataset for {missing}")

        target_crs = str(d.get("target_crs", DEFAULT_TARGET_CRS))
        require_planar(target_crs, what="[target_crs]")

        radii = normalize_radii(d.get("radii", DEFAULT_RADII))

        bands_raw = d.get("distance_bands")
        if bands_raw is None:
            bands = DistanceBands(bands=DEFAULT_BANDS)
        else:
            if not isinstance(bands_raw, list) or not all(
                isinstance(p, (list, tuple)) and len(p) == 2 for p in bands_raw
            ):
                raise ValueError("[distance_bands] must be a list of [upper_bound, label]")
            bands = DistanceBands.from_pairs(
                bands_raw, overflow=d.get("distance_overflow_label")
            )

        crossk = CrossKOptions.from_dict(d.get("crossk", {}) or {})
        if crossk.window == "provinces" and "provinces" not in datasets:
            raise MissingDatasetError(
                "crossk.window is 'provinces' but no provinces dataset is configured"
            )

        cfg = Config(
            datasets=datasets,
            target_crs=target_crs,
            radii=radii,
            distance_bands=bands,
            crossk=crossk,
            options=options,
            schema=SchemaHints.from_dict(d.get("schema", {}) or {}),
        )
        cfg.validate_file_types()  # fail fast
        return cfg

    # ---------- Sugar ----------
    def __getitem__(self, name: str) -> DatasetSpec:
        if name not in self.datasets:
            raise KeyError(f"config does not contain dataset '{name}'.")
        return self.datasets[name]

    @property
    def irs(self) -> DatasetSpec:
        return self.datasets["irs"]

    @property
    def iip(self) -> DatasetSpec:
        return self.datasets["iip"]

    @property
    def provinces(self) -> Optional[DatasetSpec]:
        return self.datasets.get("provinces")

    @property
    def log_level(self) -> str:
        return str(self.options.get("log_level", "INFO")).upper()

    # ---------- Core APIs ----------
    def load(self, name: str) -> GeometrySet:
        from .load_data import read_geometry_set

        spec = self[name]
        return read_geometry_set(
            spec.path,
            source=name.upper(),
            crs=spec.crs,
            fields=spec.fields,
            lon_col=spec.lon_col,
            lat_col=spec.lat_col,
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "target_crs": self.target_crs,
                "datasets": {
                    k: {
                        "path": v.path,
                        "crs": v.crs,
                        "fields": v.fields,
                    }
                    for k, v in self.datasets.items()
                },
                "radii": list(self.radii),
                "distance_bands": [list(b) for b in self.distance_bands.bands],
                "crossk": {
                    "window": self.crossk.window,
                    "r_fraction": self.crossk.r_fraction,
                    "n_r": self.crossk.n_r,
                    "corrections": list(self.crossk.corrections),
                },
                "options": self.options,
                "schema": self.schema.datasets,
            },
            indent=2,
            sort_keys=True,
        )

    # ---------- Validation ----------
    def validate_file_types(self) -> None:
        problems: List[str] = []
        for name, spec in self.datasets.items():
            allowed = self.schema.allowed_exts_for(name)
            if not allowed:
                continue
            ext = _ext(spec.path)
            if ext not in allowed:
                problems.append(
                    f"[datasets.{name}] '{Path(spec.path).name}' has extension '{ext}', expected one of {allowed}"
                )
        if problems:
            msg = "File-type validation failed:\n  - " + "\n  - ".join(problems)
            raise ValueError(msg)

    def missing_files(self) -> List[str]:
        return [
            f"{name}: {spec.path}"
            for name, spec in self.datasets.items()
            if not Path(spec.path).exists()
        ]


def load_config(path: str | Path) -> Config:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(p)
    raw = _detect_and_load(p)
    raw = _rewrite_relative_paths(raw, p.resolve().parent)
    cfg = Config.from_dict(raw)
    return cfg


# ------------------------------
# CLI helpers
# ------------------------------

_TEMPLATE_YAML = """\
# IRS / IIP proximity analysis configuration (YAML)
# Dataset paths are relative to this file. Tables need an explicit crs.

target_crs: EPSG:3347   # NAD83 / Statistics Canada Lambert, metres

datasets:
  irs: data/irs_locations.shp
  iip:
    path: data/iip_projects.csv
    crs: EPSG:4326
    lon_col: longitude
    lat_col: latitude
    fields:
      category: Project Type
      status: Project Status
  provinces: data/provinces.shp

radii: [1000, 5000, 10000, 20000, 50000]

distance_bands:
  - [1000, "<=1 km"]
  - [5000, "1-5 km"]
  - [10000, "5-10 km"]
  - [20000, "10-20 km"]
  - [50000, "20-50 km"]
distance_overflow_label: ">50 km"

crossk:
  window: bbox          # or 'provinces' to use the dissolved province polygons
  r_fraction: 0.2       # largest r as a fraction of the window's longer side
  n_r: 129

# Declare expected file types to catch mistakes (extensions are validated).
schema:
  irs: ["shp", "geojson", "gpkg"]
  iip: ["csv", "geojson", "gpkg"]
  provinces: ["shp", "geojson", "gpkg"]

options:
  log_level: INFO
"""


def _cmd_init(out_path: str) -> None:
    p = Path(out_path)
    if p.exists():
        print(f"Refusing to overwrite existing file: {p}", file=sys.stderr)
        sys.exit(2)
    p.write_text(_TEMPLATE_YAML, encoding="utf-8")
    print(f"Wrote starter config: {p}")


def _cmd_check(cfg_path: str) -> None:
    cfg = load_config(cfg_path)
    print(cfg.to_json())
    missing = cfg.missing_files()
    if missing:
        print("Missing dataset files:\n  - " + "\n  - ".join(missing), file=sys.stderr)
        sys.exit(1)


def _format_summary(summary: Dict[str, Any]) -> str:
    lines: List[str] = []
    counts = summary["counts"]
    lines.append(f"IRS sites: {counts['irs']}  IIPs: {counts['iip']}  CRS: {summary['crs']}")
    lines.append("")
    lines.append("BUFFER TIERS")
    lines.append("------------")
    for row in summary["tiers"]:
        lines.append(
            f"{row['radius'] / 1000:g} km: {row['projects']} projects "
            f"({row['share_of_projects']:.1%}) near {row['sites']} sites"
        )
    lines.append("")
    lines.append("NEAREST IRS SITE")
    lines.append("----------------")
    for row in summary["bands"]:
        lines.append(f"{row['distance_band']}: {row['count']}")
    lines.append("")
    crossk = summary["crossk"]
    if "error" in crossk:
        lines.append(f"cross-K unavailable: {crossk['error']}")
    else:
        curves = crossk["curves"]
        lines.append(f"cross-K evaluated at {len(curves['r'])} distances up to {curves['r'][-1]:.0f}")
    return "\n".join(lines)


def _cmd_run(cfg_path: str, *, as_json: bool) -> None:
    from .engine import AnalysisEngine

    cfg = load_config(cfg_path)
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    engine = AnalysisEngine.from_config(cfg)
    summary = engine.run_summary()
    if as_json:
        print(json.dumps(summary, indent=2, allow_nan=False))
    else:
        print(_format_summary(summary))


def main(argv: List[str]) -> None:
    if len(argv) >= 2 and argv[1] == "init":
        if len(argv) != 3:
            print("Usage: irsiip_config.py init <output.yaml>", file=sys.stderr)
            sys.exit(2)
        _cmd_init(argv[2])
        return

    if len(argv) >= 2 and argv[1] == "check":
        if len(argv) != 3:
            print("Usage: irsiip_config.py check <config.(yaml|toml)>", file=sys.stderr)
            sys.exit(2)
        _cmd_check(argv[2])
        return

    if len(argv) >= 2 and argv[1] == "run":
        if len(argv) < 3:
            print(
                "Usage: irsiip_config.py run <config.(yaml|toml)> [--json]",
                file=sys.stderr,
            )
            sys.exit(2)
        _cmd_run(argv[2], as_json="--json" in argv)
        return

    print("Usage:", file=sys.stderr)
    print("  irsiip_config.py init <output.yaml>", file=sys.stderr)
    print("  irsiip_config.py check <config.(yaml|toml)>", file=sys.stderr)
    print("  irsiip_config.py run <config.(yaml|toml)> [--json]", file=sys.stderr)
    sys.exit(2)


if __name__ == "__main__":
    main(sys.argv)

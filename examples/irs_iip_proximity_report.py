"""Tabulate infrastructure projects around residential school sites and export a workbook."""

from __future__ import annotations

import sys
from pathlib import Path

import pandas as pd

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from irsiip import AnalysisEngine
from irsiip.aggregate import crosstab_counts
from irsiip.irsiip_config import load_config

DEFAULT_CONFIG = REPO_ROOT / "irsiip.yaml"
OUTPUT_FILENAME = "irs_iip_proximity.xlsx"
FOCUS_RADIUS = 10000.0


def build_sheets(engine: AnalysisEngine) -> dict[str, pd.DataFrame]:
    sheets: dict[str, pd.DataFrame] = {
        "Tiers": engine.tier_summary(),
        "By Category": engine.counts_by(["radius", "category"], zero_fill=True),
        "By Status": engine.counts_by(["radius", "status"]),
        "Province x Radius": crosstab_counts(
            engine.containment.drop_duplicates(["candidate_id", "radius"]),
            "province",
            "radius",
        ).reset_index(),
        "Distance Bands": engine.band_counts(),
        "Bands x Category": engine.band_counts(["category"]),
        "Distance Stats": engine.distance_stats(["category"]),
    }
    if FOCUS_RADIUS in engine.radii:
        sheets["Sites 10 km"] = engine.site_counts(FOCUS_RADIUS)
        sheets["No Projects 10 km"] = engine.underserved_sites(FOCUS_RADIUS)

    try:
        sheets["Cross-K"] = engine.crossk.to_frame()
        sheets["Cross-L"] = engine.crossk.l_function()
    except ValueError as e:
        print(f"Skipping cross-K: {e}")
    return sheets


def export_to_excel(sheets: dict[str, pd.DataFrame], output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        for name, frame in sheets.items():
            out = frame.copy()
            for col in out.columns:
                if isinstance(out[col].dtype, pd.CategoricalDtype):
                    out[col] = out[col].astype(str)
            out.to_excel(writer, index=False, sheet_name=name[:31])


def main(argv: list[str]) -> None:
    cfg_path = Path(argv[1]) if len(argv) > 1 else DEFAULT_CONFIG
    cfg = load_config(cfg_path)
    engine = AnalysisEngine.from_config(cfg)
    sheets = build_sheets(engine)
    output_path = Path(__file__).with_name(OUTPUT_FILENAME)
    export_to_excel(sheets, output_path)
    tiers = sheets["Tiers"]
    for row in tiers.itertuples(index=False):
        print(f"{row.radius / 1000:g} km: {row.projects} projects near {row.sites} sites")
    print(f"Exported {len(sheets)} tables to {output_path}")


if __name__ == "__main__":
    main(sys.argv)

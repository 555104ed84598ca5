"""Compute per-route risk-class proportions and their annual/monthly bands.

This script reads stored movement routes, zone polygons and daily zone status
declarations, and for every movement date:

1. Rasterizes the day's declared zone status onto the study grid.
2. Samples every route of that day against the grid.
3. Normalises each route's tally into low / high / partial / unknown proportions.

Route profiles are then bucketed (annual and per calendar month) and
summarised with percentile bands.

Typical usage:
    Update the CONFIGURATION section (or pass CLI options) and run
    ``python -m scripts.zone_risk_tools.route_risk_pipeline``.

Outputs:
    - route_risk_profiles.csv   one row per sampled route
    - bucket_risk_summary.csv   percentile bands per bucket and category
    - skipped_routes.csv        routes excluded from the summary, with reasons
    - monthly_risk_bands.png    optional plot of the monthly bands
    - grids/status_YYYYMMDD.tif optional daily status rasters
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence

import matplotlib.pyplot as plt
import pandas as pd

from scripts.utils.logging_helper import setup_logging
from scripts.utils.risk_model import (
    ALL_CATEGORIES,
    EmptyInputError,
    GridSpec,
    RouteRiskProfile,
    SkipReport,
    UnsampleableRoute,
)
from scripts.utils.spatial_store import FileSpatialStore
from scripts.zone_risk_tools.proportion_aggregator import (
    assign_buckets,
    build_route_profile,
    profiles_to_frame,
    summarize_buckets,
)
from scripts.zone_risk_tools.route_risk_sampler import align_to_grid, sample_routes
from scripts.zone_risk_tools.zone_status_rasterizer import (
    align_zones,
    build_zone_status_grid,
    resolve_grid_spec,
)

# =============================================================================
# CONFIGURATION
# =============================================================================

ROUTES_GPKG: Path = Path(r"Path\To\Your\routes.gpkg")
ZONES_PATH: Path = Path(r"Path\To\Your\state_vet_areas.shp")
ZONE_ID_FIELD: str = "zone_id"
DECLARATIONS_CSV: Path = Path(r"Path\To\Your\zone_status_declarations.csv")
OUTPUT_DIR: Path = Path(r"Path\To\Your\Output_Folder")
LOG_FILE: Path | None = None

PROFILES_CSV: str = "route_risk_profiles.csv"
SUMMARY_CSV: str = "bucket_risk_summary.csv"
SKIPPED_CSV: str = "skipped_routes.csv"

WRITE_DAILY_GRIDS: bool = False
PLOT_MONTHLY_BANDS: bool = True
PLOT_FILE: str = "monthly_risk_bands.png"
PLOT_DPI: int = 160

CATEGORY_COLOURS: Dict[str, str] = {
    "low": "#4daf4a",
    "high": "#e41a1c",
    "partial": "#ff7f00",
    "unknown": "#999999",
}

LOGGER = logging.getLogger(__name__)

# =============================================================================
# PIPELINE
# =============================================================================


@dataclass
class PipelineResult:
    """Tables produced by one pipeline run."""

    profiles: pd.DataFrame
    summary: pd.DataFrame
    report: SkipReport = field(default_factory=SkipReport)


def run_route_risk_pipeline(
    store: Any,
    spec: GridSpec | None = None,
    grid_dir: Path | None = None,
) -> PipelineResult:
    """Run rasterize → sample → normalise → bucket → summarise over every movement date.

    Args:
        store: Spatial store exposing ``movement_dates()``, ``routes_for_date()``,
            ``zone_polygons()`` and ``declarations_for_date()`` (and
            ``write_grid()`` when *grid_dir* is given).
        spec: Grid definition; defaults to the rasterizer's configured constants.
        grid_dir: If set, each day's status grid is written there as GeoTIFF.

    Raises:
        ConfigurationError: If the grid extent or resolution is not configured.
        EmptyInputError: If the store holds no routes at all.
    """
    spec = spec if spec is not None else resolve_grid_spec()

    days = list(store.movement_dates())
    if not days:
        raise EmptyInputError("The spatial store holds no routes")
    LOGGER.info("Processing %d movement date(s) from %s to %s", len(days), days[0], days[-1])

    zones = align_zones(store.zone_polygons(), spec)
    report = SkipReport()
    profiles: List[RouteRiskProfile] = []

    for day in days:
        routes = align_to_grid(store.routes_for_date(day), spec)
        if routes.empty:
            continue
        grid = build_zone_status_grid(day, zones, store.declarations_for_date(day), spec)
        if grid_dir is not None:
            store.write_grid(grid, Path(grid_dir) / f"status_{day:%Y%m%d}.tif")

        for route_id, n_equines, counts in sample_routes(routes, grid, report):
            try:
                profiles.append(build_route_profile(route_id, day, counts, n_equines))
            except UnsampleableRoute as exc:
                LOGGER.warning("%s: excluding route %s (%s)", day, exc.route_id, exc.reason)
                report.add("sampling", exc.route_id, exc.reason)

    profile_df = profiles_to_frame(profiles)
    summary = summarize_buckets(assign_buckets(profile_df))

    LOGGER.info("Profiled %d route(s)", len(profile_df))
    report.log_summary(LOGGER)
    return PipelineResult(profiles=profile_df, summary=summary, report=report)


def write_outputs(result: PipelineResult, output_dir: Path) -> Dict[str, Path]:
    """Write the profile, summary and skipped-route tables as CSV."""
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = {
        "profiles": output_dir / PROFILES_CSV,
        "summary": output_dir / SUMMARY_CSV,
        "skipped": output_dir / SKIPPED_CSV,
    }
    result.profiles.to_csv(paths["profiles"], index=False)
    result.summary.to_csv(paths["summary"], index=False)
    result.report.to_frame().to_csv(paths["skipped"], index=False)
    for path in paths.values():
        LOGGER.info("Wrote %s", path)
    return paths


def plot_monthly_bands(summary: pd.DataFrame, out_path: Path) -> Path | None:
    """Plot monthly medians with the 2.5–97.5 percentile band for each category.

    Returns the written path, or None if there are no monthly rows to plot.
    """
    monthly = summary.loc[summary["bucket_type"] == "monthly"]
    if monthly.empty:
        LOGGER.info("No monthly buckets to plot")
        return None

    fig, ax = plt.subplots(figsize=(9, 5))
    for cat in ALL_CATEGORIES:
        rows = monthly.loc[monthly["category"] == cat.value].sort_values("bucket_month")
        colour = CATEGORY_COLOURS[cat.value]
        ax.plot(rows["bucket_month"], rows["p50"], marker="o", color=colour, label=cat.value)
        ax.fill_between(rows["bucket_month"], rows["p2_5"], rows["p97_5"], color=colour, alpha=0.2)

    ax.set_xticks(range(1, 13))
    ax.set_xticklabels(["J", "F", "M", "A", "M", "J", "J", "A", "S", "O", "N", "D"])
    ax.set_ylim(0, 1)
    ax.set_xlabel("Month of movement")
    ax.set_ylabel("Proportion of route")
    ax.grid(True, alpha=0.3)
    ax.legend(title="Risk class")
    fig.tight_layout()

    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=PLOT_DPI)
    plt.close(fig)
    LOGGER.info("Wrote plot → %s", out_path)
    return out_path


# =============================================================================
# MAIN
# =============================================================================


def build_argparser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    p = argparse.ArgumentParser(
        description="Route risk-class proportions with annual and monthly percentile bands."
    )
    p.add_argument("-r", "--routes", default=ROUTES_GPKG, type=Path, help="Routes GeoPackage.")
    p.add_argument("-z", "--zones", default=ZONES_PATH, type=Path, help="Zone polygon layer.")
    p.add_argument("--zone-id-field", default=ZONE_ID_FIELD, help="Zone identifier field.")
    p.add_argument(
        "-s", "--declarations", default=DECLARATIONS_CSV, type=Path, help="Status CSV."
    )
    p.add_argument("-d", "--outdir", default=OUTPUT_DIR, type=Path, help="Output folder.")
    p.add_argument(
        "--extent",
        nargs=4,
        type=float,
        default=None,
        metavar=("MINX", "MINY", "MAXX", "MAXY"),
        help="Study extent in grid CRS units (overrides STUDY_EXTENT).",
    )
    p.add_argument("--resolution", type=float, default=None, help="Cell size (grid CRS units).")
    p.add_argument("--crs", default=None, help="Grid CRS (overrides GRID_CRS).")
    p.add_argument("--write-grids", action="store_true", default=WRITE_DAILY_GRIDS)
    p.add_argument("--no-plot", action="store_true", help="Skip the monthly band plot.")
    p.add_argument("--log-file", default=LOG_FILE, type=Path, help="Optional log file.")
    return p


def main(argv: Sequence[str] | None = None) -> int:
    """Top-level workflow controller."""
    args = build_argparser().parse_args(argv)
    setup_logging(log_file=args.log_file)

    try:
        spec = resolve_grid_spec(
            tuple(args.extent) if args.extent else None, args.resolution, args.crs
        )
        store = FileSpatialStore(
            routes_path=args.routes,
            zones_path=args.zones,
            declarations_path=args.declarations,
            zone_id_field=args.zone_id_field,
        )
        grid_dir = args.outdir / "grids" if args.write_grids else None
        result = run_route_risk_pipeline(store, spec, grid_dir=grid_dir)
        write_outputs(result, args.outdir)
        if PLOT_MONTHLY_BANDS and not args.no_plot:
            plot_monthly_bands(result.summary, args.outdir / PLOT_FILE)
        LOGGER.info("Finished successfully")
    except Exception:  # noqa: BLE001
        LOGGER.exception("Route risk pipeline failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

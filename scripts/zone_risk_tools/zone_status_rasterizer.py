"""Rasterize daily zone risk status onto the fixed study-area grid.

For a given calendar day every zone polygon with a status declaration for
that day is burned into a uint8 grid with its category code
(low = 1, high = 2, partial = 3). Cells covered by no zone, and cells of zones
without a declaration for the day, stay ``0`` (absent). The absent value is
kept distinct from every category so the sampler can resolve it explicitly to
"unknown".

Extent, resolution and CRS are process-wide constants (see CONFIGURATION) so
grids of different days are cell-for-cell comparable. A grid is built fresh
for each day and never reused for another day.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Dict, Iterable, Iterator, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio.features import rasterize

from scripts.utils.risk_model import (
    ABSENT_CODE,
    CATEGORY_CODES,
    ConfigurationError,
    Extent,
    GridSpec,
    RiskCategory,
    ZoneStatusGrid,
    parse_declared_category,
)

# =============================================================================
# CONFIGURATION
# =============================================================================

# (minx, miny, maxx, maxy) of the study area in GRID_CRS units. Must be set.
STUDY_EXTENT: Extent | None = None
# Cell edge length in GRID_CRS units (metres for GDA94 / Australian Albers). Must be set.
CELL_RESOLUTION: float | None = None
GRID_CRS: str | None = "EPSG:3577"

# False burns only cells whose centre falls inside a zone (GDAL default).
ALL_TOUCHED: bool = False

LOGGER = logging.getLogger(__name__)

# =============================================================================
# FUNCTIONS
# =============================================================================


def resolve_grid_spec(
    extent: Extent | None = None,
    resolution: float | None = None,
    crs: str | None = None,
) -> GridSpec:
    """Build the grid spec from arguments, falling back to the module constants.

    Raises:
        ConfigurationError: If the extent or resolution is unset or invalid.
    """
    extent = STUDY_EXTENT if extent is None else extent
    resolution = CELL_RESOLUTION if resolution is None else resolution
    crs = GRID_CRS if crs is None else crs

    if extent is None:
        raise ConfigurationError("STUDY_EXTENT is not set")
    if resolution is None:
        raise ConfigurationError("CELL_RESOLUTION is not set")

    try:
        minx, miny, maxx, maxy = (float(v) for v in extent)
        resolution = float(resolution)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid grid extent/resolution: {exc}") from exc

    if not (np.isfinite([minx, miny, maxx, maxy]).all() and maxx > minx and maxy > miny):
        raise ConfigurationError(f"Degenerate study extent: {extent}")
    if not (np.isfinite(resolution) and resolution > 0):
        raise ConfigurationError(f"Cell resolution must be positive, got {resolution}")

    return GridSpec(extent=(minx, miny, maxx, maxy), resolution=resolution, crs=crs)


def align_zones(zones: gpd.GeoDataFrame, spec: GridSpec) -> gpd.GeoDataFrame:
    """Reproject *zones* into the grid CRS when both are known and differ."""
    if spec.crs is None or zones.crs is None or zones.crs.equals(spec.crs):
        return zones
    LOGGER.info("Reprojecting zones %s → %s", zones.crs.to_string(), spec.crs)
    return zones.to_crs(spec.crs)


def declarations_for_day(declarations: pd.DataFrame, day: date) -> Dict[str, RiskCategory]:
    """Map ``zone_id`` → declared category for *day*.

    A zone declared more than once for the same day keeps its last row; a
    warning is logged when the duplicate rows disagree.
    """
    if declarations.empty:
        return {}
    todays = declarations.loc[declarations["declaration_date"] == day]
    out: Dict[str, RiskCategory] = {}
    for zone_id, raw in zip(todays["zone_id"].astype(str), todays["category"]):
        category = parse_declared_category(raw)
        previous = out.get(zone_id)
        if previous is not None and previous != category:
            LOGGER.warning(
                "Conflicting declarations for zone %s on %s (%s vs %s); keeping %s",
                zone_id,
                day,
                previous.value,
                category.value,
                category.value,
            )
        out[zone_id] = category
    return out


def empty_grid(day: date, spec: GridSpec) -> ZoneStatusGrid:
    """All-absent grid for *day*."""
    return ZoneStatusGrid(day=day, spec=spec, values=np.full(spec.shape, ABSENT_CODE, np.uint8))


def build_zone_status_grid(
    day: date,
    zones: gpd.GeoDataFrame,
    declarations: pd.DataFrame,
    spec: GridSpec | None = None,
) -> ZoneStatusGrid:
    """Rasterize the declared status of every zone for *day*.

    Args:
        day: Calendar day the grid is valid for.
        zones: Polygons with a string ``zone_id`` column.
        declarations: Table with ``zone_id``, ``declaration_date`` and
            ``category`` columns (rows for other days are ignored).
        spec: Grid definition; defaults to :func:`resolve_grid_spec`.

    Returns:
        A read-only ``ZoneStatusGrid``. A day without declarations yields an
        all-absent grid.

    Raises:
        ConfigurationError: If no spec is given and the module constants are unset.
    """
    spec = spec if spec is not None else resolve_grid_spec()
    declared = declarations_for_day(declarations, day)
    if not declared:
        LOGGER.info("%s: no status declarations, grid is entirely absent", day)
        return empty_grid(day, spec)

    zones = align_zones(zones, spec)
    zone_ids = zones["zone_id"].astype(str)
    undeclared = sorted(set(zone_ids) - set(declared))
    if undeclared:
        LOGGER.debug("%s: %d zone(s) without declaration left absent", day, len(undeclared))
    unknown_zones = sorted(set(declared) - set(zone_ids))
    if unknown_zones:
        LOGGER.warning(
            "%s: declarations for %d zone(s) with no polygon: %s",
            day,
            len(unknown_zones),
            ", ".join(unknown_zones[:10]),
        )

    shapes = [
        (geom, CATEGORY_CODES[declared[zid]])
        for zid, geom in zip(zone_ids, zones.geometry)
        if zid in declared and geom is not None and not geom.is_empty
    ]
    if not shapes:
        return empty_grid(day, spec)

    values = rasterize(
        shapes,
        out_shape=spec.shape,
        transform=spec.transform,
        fill=ABSENT_CODE,
        all_touched=ALL_TOUCHED,
        dtype="uint8",
    )
    grid = ZoneStatusGrid(day=day, spec=spec, values=values)
    LOGGER.debug("%s: grid cell counts %s", day, grid.cell_counts())
    return grid


def iter_zone_status_grids(
    days: Iterable[date],
    zones: gpd.GeoDataFrame,
    declarations: pd.DataFrame,
    spec: GridSpec | None = None,
) -> Iterator[Tuple[date, ZoneStatusGrid]]:
    """Yield a freshly built grid for each distinct day, in sorted order."""
    spec = spec if spec is not None else resolve_grid_spec()
    zones = align_zones(zones, spec)
    for day in sorted(set(days)):
        yield day, build_zone_status_grid(day, zones, declarations, spec)

"""Sample route geometries against a day's zone-status grid.

Each straight segment of a route is split wherever it crosses a vertical or
horizontal cell boundary, and every piece with positive length is mapped to
the cell containing its midpoint. This walks exactly the cells the route
passes through, including corners clipped by a diagonal segment. Consecutive
pieces in the same cell form one *visit*; each visit adds one tally for that
cell's category. A route that leaves a cell and later re-enters it is tallied
again (no deduplication), and no values are interpolated between cells.

Cells with the absent code, and pieces that fall outside the grid extent,
are tallied as ``unknown``.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Iterator, List, Tuple

import geopandas as gpd
import numpy as np
from shapely.geometry import GeometryCollection, LineString, MultiLineString, MultiPoint, Point
from shapely.geometry.base import BaseGeometry

from scripts.utils.risk_model import (
    GridSpec,
    SkipReport,
    UnsampleableRoute,
    ZoneStatusGrid,
    category_for_code,
)

# =============================================================================
# CONFIGURATION
# =============================================================================

# Pieces shorter than this fraction of a cell are treated as touching a
# boundary or corner only, not as passing through the cell.
MIN_PIECE_FRACTION: float = 1e-9

LOGGER = logging.getLogger(__name__)

# =============================================================================
# FUNCTIONS
# =============================================================================


def align_to_grid(routes: gpd.GeoDataFrame, spec: GridSpec) -> gpd.GeoDataFrame:
    """Reproject a route table into the grid CRS when both CRSs are known and differ."""
    if spec.crs is None or routes.crs is None or routes.crs.equals(spec.crs):
        return routes
    return routes.to_crs(spec.crs)


def _iter_parts(geometry: BaseGeometry) -> Iterator[BaseGeometry]:
    """Yield the point / line parts of *geometry* in traversal order."""
    if isinstance(geometry, (Point, LineString)):
        yield geometry
    elif isinstance(geometry, (MultiPoint, MultiLineString, GeometryCollection)):
        for part in geometry.geoms:
            yield from _iter_parts(part)
    else:
        raise TypeError(geometry.geom_type)


def _finite_coords(part: BaseGeometry) -> np.ndarray:
    """Return an ``(n, 2)`` array of the part's finite vertex coordinates."""
    if part.is_empty:
        return np.empty((0, 2))
    coords = np.asarray(part.coords, dtype=float)[:, :2]
    return coords[np.isfinite(coords).all(axis=1)]


def _boundary_params(start: float, delta: float, origin: float, res: float) -> np.ndarray:
    """Segment parameters ``t`` in [0, 1] where ``start + t * delta`` hits ``origin + k * res``."""
    if delta == 0:
        return np.empty(0)
    lo, hi = sorted(((start - origin) / res, (start + delta - origin) / res))
    ks = np.arange(np.ceil(lo), np.floor(hi) + 1)
    return (origin + ks * res - start) / delta


def segment_pieces(p0: np.ndarray, p1: np.ndarray, spec: GridSpec) -> np.ndarray:
    """Midpoints of the pieces of segment *p0*–*p1* cut at every cell boundary.

    Returns an ``(n, 2)`` array in travel order. A zero-length segment yields
    its single point.
    """
    minx, _, _, maxy = spec.extent
    res = spec.resolution
    delta = p1 - p0
    length = float(np.hypot(delta[0], delta[1]))
    if length == 0:
        return p0.reshape(1, 2)

    # Rows count downward from maxy, so the y boundaries are maxy - k * res.
    t = np.concatenate(
        [
            [0.0, 1.0],
            _boundary_params(p0[0], delta[0], minx, res),
            _boundary_params(-p0[1], -delta[1], -maxy, res),
        ]
    )
    t = np.unique(np.clip(t, 0.0, 1.0))
    keep = np.diff(t) * length > res * MIN_PIECE_FRACTION
    if not keep.any():
        return ((p0 + p1) / 2).reshape(1, 2)
    mids = ((t[:-1] + t[1:]) / 2)[keep]
    return p0 + mids[:, None] * delta


def route_cell_visits(geometry: BaseGeometry, spec: GridSpec) -> List[Tuple[int, int]]:
    """List the ``(row, col)`` cells a route passes through, one entry per visit.

    Cells outside the grid are reported with their out-of-range indices.
    """
    visits: List[Tuple[int, int]] = []
    for part in _iter_parts(geometry):
        coords = _finite_coords(part)
        if len(coords) == 0:
            continue
        if isinstance(part, LineString) and len(coords) > 1:
            points = np.concatenate(
                [segment_pieces(a, b, spec) for a, b in zip(coords[:-1], coords[1:])]
            )
        else:
            points = coords
        rows, cols = spec.cell_index(points[:, 0], points[:, 1])
        if isinstance(part, LineString):
            # Collapse runs of pieces inside the same cell into one visit.
            changed = np.ones(len(rows), dtype=bool)
            changed[1:] = (rows[1:] != rows[:-1]) | (cols[1:] != cols[:-1])
            rows, cols = rows[changed], cols[changed]
        visits.extend(zip(rows.tolist(), cols.tolist()))
    return visits


def sample_route(
    geometry: BaseGeometry | None,
    grid: ZoneStatusGrid,
    route_id: str = "?",
) -> Counter:
    """Tally the categories a route touches on *grid*.

    Args:
        geometry: Route geometry in the grid CRS.
        grid: Zone-status grid for the route's movement date.
        route_id: Identifier used in error messages.

    Returns:
        ``Counter`` mapping ``RiskCategory`` → number of cell visits. Absent
        and off-grid cells are counted as ``RiskCategory.UNKNOWN``.

    Raises:
        UnsampleableRoute: If the geometry is missing, empty, of an
            unsupported type, or has no finite coordinates.
        ValueError: If the grid holds a cell code outside the category table.
    """
    if geometry is None or geometry.is_empty:
        raise UnsampleableRoute(route_id, "empty geometry")
    try:
        visits = route_cell_visits(geometry, grid.spec)
    except TypeError as exc:
        raise UnsampleableRoute(route_id, f"unsupported geometry type {exc}") from exc
    if not visits:
        raise UnsampleableRoute(route_id, "no finite sample points")

    height, width = grid.spec.shape
    tally: Counter = Counter()
    for row, col in visits:
        on_grid = 0 <= row < height and 0 <= col < width
        tally[category_for_code(int(grid.values[row, col]) if on_grid else None)] += 1
    return tally


def sample_routes(
    routes: gpd.GeoDataFrame,
    grid: ZoneStatusGrid,
    report: SkipReport | None = None,
) -> List[Tuple[str, int, Counter]]:
    """Sample every route of one day against that day's grid.

    Returns ``(route_id, equine_count, tally)`` per sampled route, in input
    order; routes without an ``equine_count`` column count as one horse.
    Unsampleable routes are logged, recorded in *report* and left out of the
    result; they never stop the remaining routes from being sampled.
    """
    routes = align_to_grid(routes, grid.spec)
    if "equine_count" in routes.columns:
        counts = routes["equine_count"].astype(int).tolist()
    else:
        counts = [1] * len(routes)

    out: List[Tuple[str, int, Counter]] = []
    for route_id, n_equines, geom in zip(routes["route_id"].astype(str), counts, routes.geometry):
        try:
            out.append((route_id, n_equines, sample_route(geom, grid, route_id)))
        except UnsampleableRoute as exc:
            LOGGER.warning("%s: excluding route %s (%s)", grid.day, exc.route_id, exc.reason)
            if report is not None:
                report.add("sampling", exc.route_id, exc.reason)
    return out

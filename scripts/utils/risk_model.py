"""Shared data types and error taxonomy for the equine movement risk pipeline.

The pipeline stages (route builder, zone-status rasterizer, route risk sampler,
proportion aggregator) exchange the immutable records defined here:

- ``MovementRecord``   one reported transport event (origin, destination, date, headcount)
- ``RouteGeometry``    the road path derived from one movement record
- ``GridSpec``         study-area extent, cell resolution and CRS shared by every grid
- ``ZoneStatusGrid``   one day's categorical risk-status raster
- ``RouteRiskProfile`` one route's category proportions for its movement date

Grid cells are encoded as unsigned bytes. Code ``0`` means *absent* (no zone,
or a zone without a declaration for the day). Absent is deliberately not a
``RiskCategory``; the sampler resolves it to ``unknown`` when tallying.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Mapping, Tuple

import numpy as np
import pandas as pd
from rasterio.transform import Affine, from_origin
from shapely.geometry.base import BaseGeometry

LOGGER = logging.getLogger(__name__)

Coordinate = Tuple[float, float]
Extent = Tuple[float, float, float, float]


# =============================================================================
# CATEGORIES
# =============================================================================


class RiskCategory(str, Enum):
    """Risk class of a location on a given day."""

    LOW = "low"
    HIGH = "high"
    PARTIAL = "partial"
    UNKNOWN = "unknown"


# Categories a zone can be declared with. UNKNOWN is only ever assigned by the sampler.
DECLARED_CATEGORIES: Tuple[RiskCategory, ...] = (
    RiskCategory.LOW,
    RiskCategory.HIGH,
    RiskCategory.PARTIAL,
)
ALL_CATEGORIES: Tuple[RiskCategory, ...] = DECLARED_CATEGORIES + (RiskCategory.UNKNOWN,)

ABSENT_CODE: int = 0
CATEGORY_CODES: Dict[RiskCategory, int] = {
    RiskCategory.LOW: 1,
    RiskCategory.HIGH: 2,
    RiskCategory.PARTIAL: 3,
}
CODE_CATEGORIES: Dict[int, RiskCategory] = {code: cat for cat, code in CATEGORY_CODES.items()}


def category_for_code(code: int | None) -> RiskCategory:
    """Resolve a grid cell code to the category it is tallied as.

    ``None`` (a position off the grid) and ``ABSENT_CODE`` both resolve to
    ``UNKNOWN``.

    Raises:
        ValueError: If *code* is neither absent nor a declared category code.
    """
    if code is None or code == ABSENT_CODE:
        return RiskCategory.UNKNOWN
    try:
        return CODE_CATEGORIES[code]
    except KeyError:
        raise ValueError(f"Unexpected grid cell code {code}") from None


def parse_declared_category(value: Any) -> RiskCategory:
    """Return the declared ``RiskCategory`` for a raw table value.

    Raises:
        ValueError: If *value* is not one of low / high / partial.
    """
    text = str(value).strip().lower()
    try:
        category = RiskCategory(text)
    except ValueError:
        raise ValueError(f"Unrecognised risk category: {value!r}") from None
    if category not in DECLARED_CATEGORIES:
        raise ValueError(f"Category {value!r} cannot be declared for a zone")
    return category


# =============================================================================
# ERRORS
# =============================================================================


class RiskPipelineError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(RiskPipelineError):
    """A required constant (grid extent, resolution, ...) is unset or invalid."""


class EmptyInputError(RiskPipelineError):
    """The run has no input records at all."""


class RoutingError(RiskPipelineError):
    """The routing service could not produce a path for one movement record."""

    def __init__(self, record_id: str, reason: str) -> None:
        super().__init__(f"Routing failed for record {record_id}: {reason}")
        self.record_id = record_id
        self.reason = reason


class UnsampleableRoute(RiskPipelineError):
    """A route yielded no sample points against the status grid."""

    def __init__(self, route_id: str, reason: str) -> None:
        super().__init__(f"Route {route_id} cannot be sampled: {reason}")
        self.route_id = route_id
        self.reason = reason


# =============================================================================
# RECORDS
# =============================================================================


@dataclass(frozen=True)
class MovementRecord:
    """One reported equine transport event."""

    record_id: str
    source: Coordinate  # (lon, lat)
    destination: Coordinate  # (lon, lat)
    movement_date: date
    equine_count: int

    def __post_init__(self) -> None:
        for label, coord in (("source", self.source), ("destination", self.destination)):
            if len(coord) != 2 or not all(math.isfinite(float(v)) for v in coord):
                raise ValueError(f"Record {self.record_id}: invalid {label} coordinate {coord}")
        if isinstance(self.equine_count, bool) or int(self.equine_count) != self.equine_count:
            raise ValueError(f"Record {self.record_id}: equine_count must be an integer")
        if self.equine_count <= 0:
            raise ValueError(f"Record {self.record_id}: equine_count must be positive")


@dataclass(frozen=True)
class RouteGeometry:
    """Road path for a single movement record, carrying its date and headcount."""

    route_id: str
    geometry: BaseGeometry
    movement_date: date
    equine_count: int
    distance_m: float | None = None
    duration_s: float | None = None

    def __post_init__(self) -> None:
        if self.geometry is None or self.geometry.is_empty:
            raise ValueError(f"Route {self.route_id}: geometry has no vertices")


@dataclass(frozen=True)
class GridSpec:
    """Regular grid over the study area.

    Attributes:
        extent: ``(minx, miny, maxx, maxy)`` in ``crs`` units.
        resolution: Square cell edge length in ``crs`` units.
        crs: Anything ``pyproj`` accepts (``"EPSG:3577"``), or None for unreferenced data.
    """

    extent: Extent
    resolution: float
    crs: str | None = None

    @property
    def width(self) -> int:
        minx, _, maxx, _ = self.extent
        return int(math.ceil((maxx - minx) / self.resolution))

    @property
    def height(self) -> int:
        _, miny, _, maxy = self.extent
        return int(math.ceil((maxy - miny) / self.resolution))

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    @property
    def transform(self) -> Affine:
        minx, _, _, maxy = self.extent
        return from_origin(minx, maxy, self.resolution, self.resolution)

    def cell_index(self, xs: np.ndarray, ys: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Return ``(rows, cols)`` of the cells containing each point.

        Points outside the extent get indices outside ``[0, height) x [0, width)``.
        """
        minx, _, _, maxy = self.extent
        cols = np.floor((np.asarray(xs, dtype=float) - minx) / self.resolution).astype(np.int64)
        rows = np.floor((maxy - np.asarray(ys, dtype=float)) / self.resolution).astype(np.int64)
        return rows, cols


@dataclass(frozen=True, eq=False)
class ZoneStatusGrid:
    """Categorical risk-status raster valid for exactly one calendar day."""

    day: date
    spec: GridSpec
    values: np.ndarray

    def __post_init__(self) -> None:
        if self.values.shape != self.spec.shape:
            raise ValueError(
                f"Grid values shape {self.values.shape} does not match spec {self.spec.shape}"
            )
        # Frozen snapshot: samplers may share it but never write to it.
        self.values.setflags(write=False)

    @property
    def is_all_absent(self) -> bool:
        return not bool(np.any(self.values != ABSENT_CODE))

    def cell_counts(self) -> Dict[str, int]:
        """Number of cells per declared category plus ``absent``."""
        codes, counts = np.unique(self.values, return_counts=True)
        out = {"absent": 0, **{cat.value: 0 for cat in DECLARED_CATEGORIES}}
        for code, n in zip(codes.tolist(), counts.tolist()):
            key = "absent" if code == ABSENT_CODE else CODE_CATEGORIES[code].value
            out[key] = int(n)
        return out


@dataclass(frozen=True)
class RouteRiskProfile:
    """Per (route, day) category proportions. Built once, never mutated."""

    route_id: str
    movement_date: date
    equine_count: int
    n_samples: int
    proportions: Mapping[RiskCategory, float]

    def as_record(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "route_id": self.route_id,
            "movement_date": self.movement_date,
            "month": self.movement_date.month,
            "equine_count": self.equine_count,
            "n_samples": self.n_samples,
        }
        for cat in ALL_CATEGORIES:
            row[cat.value] = self.proportions[cat]
        return row


# =============================================================================
# SKIP REPORTING
# =============================================================================


@dataclass
class SkipReport:
    """Collects recoverable per-record / per-route failures for end-of-run reporting."""

    entries: List[Tuple[str, str, str]] = field(default_factory=list)

    def add(self, stage: str, identifier: str, reason: str) -> None:
        self.entries.append((stage, str(identifier), reason))

    def __len__(self) -> int:
        return len(self.entries)

    def reason_counts(self) -> Counter:
        return Counter((stage, reason) for stage, _, reason in self.entries)

    def log_summary(self, logger: logging.Logger = LOGGER) -> None:
        if not self.entries:
            logger.info("No records or routes were skipped.")
            return
        logger.warning("Skipped %d record(s)/route(s) in total:", len(self.entries))
        for (stage, reason), n in sorted(self.reason_counts().items()):
            logger.warning("  %-8s %5d × %s", stage, n, reason)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.entries, columns=["stage", "identifier", "reason"])

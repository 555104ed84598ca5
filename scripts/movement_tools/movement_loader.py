"""Load and validate the tabular inputs of the equine movement study.

Three inputs feed the pipeline:

1.  Movement records (CSV): one row per reported transport with source and
    destination coordinates (WGS84 lon/lat), the movement date and the total
    number of horses moved.
2.  Status declarations (CSV): one row per (zone, date) giving the declared
    risk class of that zone for that day (low / high / partial).
3.  Zone polygons (any vector format GDAL can read): the administrative
    zones ("state vet areas") the declarations refer to.

Structural problems (missing columns, unreadable files) raise immediately.
Individual bad rows are dropped with a logged warning so one malformed line
never aborts a batch.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

import geopandas as gpd
import numpy as np
import pandas as pd

from scripts.utils.risk_model import (
    DECLARED_CATEGORIES,
    EmptyInputError,
    MovementRecord,
)

# =============================================================================
# CONFIGURATION
# =============================================================================

MOVEMENT_COLUMNS: List[str] = [
    "source_lon",
    "source_lat",
    "dest_lon",
    "dest_lat",
    "movement_date",
    "equine_count",
]
DECLARATION_COLUMNS: List[str] = ["zone_id", "declaration_date", "category"]

# ISO (YYYY-MM-DD) dates by default; set to True for day-first (DD/MM/YYYY) permit exports.
DATES_DAYFIRST: bool = False

LOGGER = logging.getLogger(__name__)

# =============================================================================
# FUNCTIONS
# =============================================================================


def _require_columns(df: pd.DataFrame, required: List[str], label: str) -> None:
    """Raise ``ValueError`` naming every required column missing from *df*."""
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns in {label}: {', '.join(missing)}")


def _parse_dates(series: pd.Series) -> pd.Series:
    """Parse a column to ``datetime.date`` values; unparseable entries become NaT."""
    parsed = pd.to_datetime(series, errors="coerce", dayfirst=DATES_DAYFIRST)
    return parsed.dt.date.where(parsed.notna(), None)


def records_from_frame(df: pd.DataFrame) -> List[MovementRecord]:
    """Convert a movement table into validated ``MovementRecord`` objects.

    Args:
        df: Table with the columns listed in ``MOVEMENT_COLUMNS`` and an
            optional ``record_id`` column. Without one, ids are derived from
            the row position (``M00001``, ``M00002``, ...).

    Returns:
        Records for every valid row, in input order.

    Raises:
        ValueError: If a required column is missing.
        EmptyInputError: If no valid rows remain.
    """
    _require_columns(df, MOVEMENT_COLUMNS, "movement table")
    work = df.copy()
    work.columns = [str(c).strip() for c in work.columns]

    if "record_id" in work.columns:
        work["record_id"] = work["record_id"].astype(str).str.strip()
    else:
        work["record_id"] = [f"M{i:05d}" for i in range(1, len(work) + 1)]

    for col in ("source_lon", "source_lat", "dest_lon", "dest_lat", "equine_count"):
        work[col] = pd.to_numeric(work[col], errors="coerce")
    work["movement_date"] = _parse_dates(work["movement_date"])

    coords = work[["source_lon", "source_lat", "dest_lon", "dest_lat"]].to_numpy(dtype=float)
    counts = work["equine_count"].to_numpy(dtype=float)
    valid = (
        np.isfinite(coords).all(axis=1)
        & work["movement_date"].notna().to_numpy()
        & np.isfinite(counts)
        & (counts > 0)
        & (np.mod(np.nan_to_num(counts), 1) == 0)
    )

    dropped = work.loc[~valid, "record_id"].tolist()
    if dropped:
        LOGGER.warning(
            "Dropped %d movement row(s) with invalid coordinates, dates or counts: %s",
            len(dropped),
            ", ".join(dropped[:20]) + (" …" if len(dropped) > 20 else ""),
        )

    records: List[MovementRecord] = []
    for row in work.loc[valid].itertuples(index=False):
        records.append(
            MovementRecord(
                record_id=row.record_id,
                source=(float(row.source_lon), float(row.source_lat)),
                destination=(float(row.dest_lon), float(row.dest_lat)),
                movement_date=row.movement_date,
                equine_count=int(row.equine_count),
            )
        )

    if not records:
        raise EmptyInputError("No valid movement records found in input")

    LOGGER.info("Loaded %d movement record(s)", len(records))
    return records


def load_movement_records(path: Path | str) -> List[MovementRecord]:
    """Read the movement CSV at *path*; see :func:`records_from_frame`."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Movement file not found: {path}")
    LOGGER.info("Reading movements from %s", path)
    return records_from_frame(pd.read_csv(path, dtype={"record_id": str}))


def declarations_from_frame(df: pd.DataFrame) -> pd.DataFrame:
    """Normalise a status-declaration table.

    Returns a frame with ``zone_id`` (str), ``declaration_date`` (date) and
    ``category`` (one of ``low``, ``high``, ``partial``). Rows with an
    unparseable date or an unrecognised category are dropped with a warning;
    the affected zone/day is then treated as having no declaration.
    """
    _require_columns(df, DECLARATION_COLUMNS, "status declarations")
    out = df[DECLARATION_COLUMNS].copy()
    out["zone_id"] = out["zone_id"].astype(str).str.strip()
    out["declaration_date"] = _parse_dates(out["declaration_date"])
    out["category"] = out["category"].astype(str).str.strip().str.lower()

    allowed = {c.value for c in DECLARED_CATEGORIES}
    bad_category = ~out["category"].isin(allowed)
    bad_date = out["declaration_date"].isna()
    if bad_category.any():
        LOGGER.warning(
            "Dropped %d declaration(s) with unrecognised category: %s",
            int(bad_category.sum()),
            sorted(out.loc[bad_category, "category"].unique()),
        )
    if bad_date.any():
        LOGGER.warning("Dropped %d declaration(s) with invalid date", int(bad_date.sum()))

    out = out.loc[~bad_category & ~bad_date].reset_index(drop=True)
    LOGGER.info("Loaded %d status declaration(s) for %d zone(s)", len(out), out["zone_id"].nunique())
    return out


def load_status_declarations(path: Path | str) -> pd.DataFrame:
    """Read the status-declaration CSV at *path*; see :func:`declarations_from_frame`."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Declaration file not found: {path}")
    LOGGER.info("Reading status declarations from %s", path)
    return declarations_from_frame(pd.read_csv(path, dtype={"zone_id": str}))


def load_zone_polygons(path: Path | str, id_field: str = "zone_id") -> gpd.GeoDataFrame:
    """Read zone polygons and expose their identifier as a string ``zone_id`` column.

    Args:
        path: Shapefile, GeoPackage or any other GDAL vector source.
        id_field: Attribute holding the stable zone identifier.

    Raises:
        ValueError: If *id_field* is missing or the layer has no CRS.
    """
    path = Path(path)
    LOGGER.info("Reading zone polygons from %s", path)
    gdf = gpd.read_file(path)
    if id_field not in gdf.columns:
        raise ValueError(f"Zone layer {path.name} has no '{id_field}' field")
    if gdf.crs is None:
        raise ValueError(f"Zone layer {path.name} has no CRS defined")
    return prepare_zones(gdf, id_field)


def prepare_zones(gdf: gpd.GeoDataFrame, id_field: str = "zone_id") -> gpd.GeoDataFrame:
    """Keep ``zone_id`` and geometry; drop features with empty geometry."""
    zones = gdf[[id_field, gdf.geometry.name]].rename(columns={id_field: "zone_id"})
    zones = zones.set_geometry(gdf.geometry.name)
    zones["zone_id"] = zones["zone_id"].astype(str).str.strip()

    empty = zones.geometry.isna() | zones.geometry.is_empty
    if empty.any():
        LOGGER.warning("Dropped %d zone(s) with empty geometry", int(empty.sum()))
        zones = zones.loc[~empty]
    return zones.reset_index(drop=True)

"""Build road-network routes for reported equine movements.

For each movement record the script asks a routing service (OSRM by default)
for the driving path between the source and destination coordinates and
stores the resulting polyline, together with the movement date, headcount,
distance and duration, in the spatial store (a GeoPackage layer).

Records for which no path can be found, or for which the routing service is
unreachable, are skipped and listed at the end of the run; they never abort
the remaining batch.

Typical usage:
    python -m scripts.movement_tools.route_builder --movements movements.csv \
        --routes routes.gpkg

Outputs:
    - GeoPackage layer of route polylines (EPSG:4326)
    - CSV of movements, equines and route distance per calendar month
    - CSV of skipped records and reasons
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Protocol, Sequence

import geopandas as gpd
import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from shapely.geometry import LineString
from urllib3.util.retry import Retry

from scripts.movement_tools.movement_loader import load_movement_records
from scripts.utils.logging_helper import setup_logging
from scripts.utils.risk_model import (
    Coordinate,
    MovementRecord,
    RouteGeometry,
    RoutingError,
    SkipReport,
)
from scripts.utils.spatial_store import ROUTES_CRS, FileSpatialStore

# =============================================================================
# CONFIGURATION
# =============================================================================

MOVEMENTS_CSV: Path = Path(r"Path\To\Your\equine_movements.csv")
ROUTES_GPKG: Path = Path(r"Path\To\Your\routes.gpkg")
OUTPUT_DIR: Path = Path(r"Path\To\Your\Output_Folder")
LOG_FILE: Path | None = None

# Public demo server; point this at a local OSRM instance for full runs.
OSRM_BASE_URL: str = "https://router.project-osrm.org"
OSRM_PROFILE: str = "driving"

REQUEST_TIMEOUT_S: float = 30.0
USER_AGENT: str = "equine-movement-risk/0.1"

# Retry transient network errors (timeouts, resets, 429/502/503/504) with backoff.
DEFAULT_RETRY = Retry(
    total=4,
    backoff_factor=2,
    status_forcelist=[429, 502, 503, 504],
    allowed_methods=["GET", "HEAD", "OPTIONS"],
    raise_on_status=False,
)

MONTHLY_SUMMARY_CSV: str = "movement_monthly_summary.csv"
SKIPPED_CSV: str = "skipped_movements.csv"

LOGGER = logging.getLogger(__name__)

# =============================================================================
# ROUTING COLLABORATOR
# =============================================================================


@dataclass(frozen=True)
class RouteResult:
    """Path returned by a routing service (geometry in lon/lat)."""

    geometry: LineString
    distance_m: float
    duration_s: float


class RoutingClient(Protocol):
    """Anything that can turn an origin/destination pair into a path."""

    def route(self, origin: Coordinate, destination: Coordinate) -> RouteResult: ...


def create_session(retry: Retry | None = None) -> requests.Session:
    """Build a ``requests.Session`` with a retry adapter and the project User-Agent."""
    s = requests.Session()
    adapter = HTTPAdapter(max_retries=retry or DEFAULT_RETRY)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    s.headers["User-Agent"] = USER_AGENT
    return s


class OsrmRoutingClient:
    """Routing client for the OSRM ``route`` HTTP service."""

    def __init__(
        self,
        base_url: str = OSRM_BASE_URL,
        profile: str = OSRM_PROFILE,
        session: requests.Session | None = None,
        timeout: float = REQUEST_TIMEOUT_S,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self.timeout = timeout
        self.session = session or create_session()

    def _url(self, origin: Coordinate, destination: Coordinate) -> str:
        coords = f"{origin[0]:.6f},{origin[1]:.6f};{destination[0]:.6f},{destination[1]:.6f}"
        return f"{self.base_url}/route/v1/{self.profile}/{coords}"

    def route(self, origin: Coordinate, destination: Coordinate) -> RouteResult:
        """Return the fastest road path from *origin* to *destination*.

        Raises:
            RoutingError: On network failure, a non-``Ok`` response code or
                an empty geometry. ``record_id`` is left blank; callers that
                know the record re-raise with it.
        """
        try:
            resp = self.session.get(
                self._url(origin, destination),
                params={"overview": "full", "geometries": "geojson", "steps": "false"},
                timeout=self.timeout,
            )
            payload = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise RoutingError("", f"routing service unreachable ({exc})") from exc

        code = payload.get("code", "")
        if code != "Ok":
            message = payload.get("message") or f"HTTP {resp.status_code}"
            raise RoutingError("", f"{code or 'Error'}: {message}")

        routes = payload.get("routes") or []
        if not routes:
            raise RoutingError("", "NoRoute: empty route list")

        best = routes[0]
        coords = (best.get("geometry") or {}).get("coordinates") or []
        if not coords:
            raise RoutingError("", "route geometry has no vertices")
        # A same-place movement comes back as one repeated vertex.
        if len(coords) == 1:
            coords = [coords[0], coords[0]]

        return RouteResult(
            geometry=LineString(coords),
            distance_m=float(best.get("distance", 0.0)),
            duration_s=float(best.get("duration", 0.0)),
        )


# =============================================================================
# ROUTE BUILDING
# =============================================================================


def build_route(record: MovementRecord, client: RoutingClient) -> RouteGeometry:
    """Route one movement record; the route inherits the record's date and headcount."""
    try:
        result = client.route(record.source, record.destination)
    except RoutingError as exc:
        raise RoutingError(record.record_id, exc.reason) from exc

    try:
        return RouteGeometry(
            route_id=record.record_id,
            geometry=result.geometry,
            movement_date=record.movement_date,
            equine_count=record.equine_count,
            distance_m=result.distance_m,
            duration_s=result.duration_s,
        )
    except ValueError as exc:
        raise RoutingError(record.record_id, str(exc)) from exc


def routes_to_frame(routes: Sequence[RouteGeometry]) -> gpd.GeoDataFrame:
    """Tabulate routes as a GeoDataFrame in ``ROUTES_CRS``."""
    rows = [
        {
            "route_id": r.route_id,
            "movement_date": r.movement_date,
            "equine_count": r.equine_count,
            "distance_m": r.distance_m,
            "duration_s": r.duration_s,
            "geometry": r.geometry,
        }
        for r in routes
    ]
    if not rows:
        return gpd.GeoDataFrame(
            data=None,
            columns=[
                "route_id",
                "movement_date",
                "equine_count",
                "distance_m",
                "duration_s",
                "geometry",
            ],
            geometry=[],
            crs=ROUTES_CRS,
        )
    return gpd.GeoDataFrame(rows, geometry="geometry", crs=ROUTES_CRS)


def build_routes(
    records: Iterable[MovementRecord],
    client: RoutingClient,
    report: SkipReport | None = None,
) -> gpd.GeoDataFrame:
    """Route every record, skipping (and reporting) those the service cannot route.

    Args:
        records: Movement records to route.
        client: Routing collaborator.
        report: Collects skipped records; a fresh one is used if omitted.

    Returns:
        GeoDataFrame with one row per successfully routed record.
    """
    report = report if report is not None else SkipReport()
    routes: List[RouteGeometry] = []
    n_seen = 0
    for record in records:
        n_seen += 1
        try:
            routes.append(build_route(record, client))
        except RoutingError as exc:
            LOGGER.warning("Skipping record %s: %s", exc.record_id, exc.reason)
            report.add("routing", exc.record_id, exc.reason)

    LOGGER.info("Routed %d of %d movement record(s)", len(routes), n_seen)
    return routes_to_frame(routes)


def summarize_routes_by_month(routes: pd.DataFrame) -> pd.DataFrame:
    """Descriptive movement totals per calendar month.

    Returns columns ``month``, ``movements``, ``equines``,
    ``total_distance_km`` and ``median_distance_km``. Months without
    movements are not listed.
    """
    cols = ["month", "movements", "equines", "total_distance_km", "median_distance_km"]
    if routes.empty:
        return pd.DataFrame(columns=cols)

    df = pd.DataFrame(
        {
            "month": pd.to_datetime(routes["movement_date"]).dt.month,
            "equine_count": routes["equine_count"].astype(int),
            "distance_km": pd.to_numeric(routes["distance_m"], errors="coerce") / 1000.0,
        }
    )
    summary = (
        df.groupby("month")
        .agg(
            movements=("equine_count", "size"),
            equines=("equine_count", "sum"),
            total_distance_km=("distance_km", "sum"),
            median_distance_km=("distance_km", "median"),
        )
        .reset_index()
    )
    return summary[cols].round({"total_distance_km": 1, "median_distance_km": 1})


# =============================================================================
# MAIN
# =============================================================================


def build_argparser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    p = argparse.ArgumentParser(description="Route equine movement records via OSRM.")
    p.add_argument("-m", "--movements", default=MOVEMENTS_CSV, type=Path, help="Movement CSV.")
    p.add_argument("-r", "--routes", default=ROUTES_GPKG, type=Path, help="Output GeoPackage.")
    p.add_argument("-d", "--outdir", default=OUTPUT_DIR, type=Path, help="Folder for CSV outputs.")
    p.add_argument("--osrm-url", default=OSRM_BASE_URL, help="OSRM base URL.")
    p.add_argument("--profile", default=OSRM_PROFILE, help="OSRM routing profile.")
    p.add_argument("--log-file", default=LOG_FILE, type=Path, help="Optional log file.")
    return p


def main(argv: Sequence[str] | None = None) -> int:
    """Top-level workflow controller."""
    args = build_argparser().parse_args(argv)
    setup_logging(log_file=args.log_file)

    try:
        records = load_movement_records(args.movements)
        client = OsrmRoutingClient(base_url=args.osrm_url, profile=args.profile)
        report = SkipReport()
        routes = build_routes(records, client, report)

        store = FileSpatialStore(routes_path=args.routes)
        store.write_routes(routes)

        args.outdir.mkdir(parents=True, exist_ok=True)
        summarize_routes_by_month(routes).to_csv(args.outdir / MONTHLY_SUMMARY_CSV, index=False)
        report.to_frame().to_csv(args.outdir / SKIPPED_CSV, index=False)
        report.log_summary(LOGGER)
        LOGGER.info("Finished successfully")
    except Exception:  # noqa: BLE001
        LOGGER.exception("Route building failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

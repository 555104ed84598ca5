"""File-backed spatial store for routes, zones, declarations and daily grids.

Routes are persisted as a GeoPackage layer; zones are read from any vector
source; declarations come from a CSV. The pipeline only needs four reads:

- the distinct movement dates
- all routes for a date
- the zone polygons
- the status declarations for a date

Daily status grids can optionally be written back as single-band GeoTIFFs
(nodata = absent) for inspection in a GIS.
"""

from __future__ import annotations

import logging
from datetime import date
from pathlib import Path
from typing import List

import geopandas as gpd
import pandas as pd
import rasterio

from scripts.movement_tools.movement_loader import load_status_declarations, load_zone_polygons
from scripts.utils.risk_model import ABSENT_CODE, ZoneStatusGrid

ROUTES_CRS: str = "EPSG:4326"
ROUTES_LAYER: str = "routes"

LOGGER = logging.getLogger(__name__)


class FileSpatialStore:
    """Reads and writes the pipeline's spatial inputs from local files."""

    def __init__(
        self,
        routes_path: Path | str,
        zones_path: Path | str | None = None,
        declarations_path: Path | str | None = None,
        zone_id_field: str = "zone_id",
        routes_layer: str = ROUTES_LAYER,
    ) -> None:
        self.routes_path = Path(routes_path)
        self.zones_path = Path(zones_path) if zones_path is not None else None
        self.declarations_path = Path(declarations_path) if declarations_path is not None else None
        self.zone_id_field = zone_id_field
        self.routes_layer = routes_layer
        self._routes: gpd.GeoDataFrame | None = None
        self._zones: gpd.GeoDataFrame | None = None
        self._declarations: pd.DataFrame | None = None

    # ------------------------------------------------------------------ routes

    def write_routes(self, routes: gpd.GeoDataFrame) -> Path:
        """Persist *routes* to the GeoPackage layer, replacing previous contents."""
        self.routes_path.parent.mkdir(parents=True, exist_ok=True)
        out = routes.copy()
        # GeoPackage has no native date type through every driver; store ISO text.
        out["movement_date"] = pd.to_datetime(out["movement_date"]).dt.strftime("%Y-%m-%d")
        out.to_file(self.routes_path, layer=self.routes_layer, driver="GPKG")
        LOGGER.info("Wrote %d route(s) → %s", len(out), self.routes_path)
        self._routes = None
        return self.routes_path

    def routes(self) -> gpd.GeoDataFrame:
        """All stored routes, with ``movement_date`` as ``datetime.date``."""
        if self._routes is None:
            if not self.routes_path.exists():
                raise FileNotFoundError(f"Routes file not found: {self.routes_path}")
            gdf = gpd.read_file(self.routes_path, layer=self.routes_layer)
            gdf["route_id"] = gdf["route_id"].astype(str)
            gdf["movement_date"] = pd.to_datetime(gdf["movement_date"]).dt.date
            self._routes = gdf
            LOGGER.info("Loaded %d route(s) from %s", len(gdf), self.routes_path)
        return self._routes

    def movement_dates(self) -> List[date]:
        return sorted(self.routes()["movement_date"].dropna().unique())

    def routes_for_date(self, day: date) -> gpd.GeoDataFrame:
        routes = self.routes()
        return routes.loc[routes["movement_date"] == day].reset_index(drop=True)

    # ------------------------------------------------------------------- zones

    def zone_polygons(self) -> gpd.GeoDataFrame:
        if self._zones is None:
            if self.zones_path is None:
                raise FileNotFoundError("No zone polygon source configured for the store")
            self._zones = load_zone_polygons(self.zones_path, self.zone_id_field)
        return self._zones

    def declarations(self) -> pd.DataFrame:
        if self._declarations is None:
            if self.declarations_path is None:
                raise FileNotFoundError("No status declaration source configured for the store")
            self._declarations = load_status_declarations(self.declarations_path)
        return self._declarations

    def declarations_for_date(self, day: date) -> pd.DataFrame:
        decl = self.declarations()
        return decl.loc[decl["declaration_date"] == day].reset_index(drop=True)

    # ------------------------------------------------------------------- grids

    def write_grid(self, grid: ZoneStatusGrid, path: Path | str) -> Path:
        """Write a status grid as a single-band uint8 GeoTIFF."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with rasterio.open(
            path,
            "w",
            driver="GTiff",
            height=grid.spec.height,
            width=grid.spec.width,
            count=1,
            dtype="uint8",
            crs=grid.spec.crs,
            transform=grid.spec.transform,
            nodata=ABSENT_CODE,
            compress="lzw",
        ) as dst:
            dst.write(grid.values, 1)
        LOGGER.debug("Wrote status grid for %s → %s", grid.day, path)
        return path

from __future__ import annotations

from datetime import date
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
import rasterio
from shapely.geometry import LineString, box

from scripts.utils.risk_model import GridSpec, ZoneStatusGrid
from scripts.utils.spatial_store import FileSpatialStore

FIXTURES = Path(__file__).parent / "fixtures"


def _routes() -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {
            "route_id": ["M1", "M2", "M3"],
            "movement_date": [date(2007, 8, 25), date(2007, 8, 25), date(2007, 9, 3)],
            "equine_count": [2, 1, 4],
            "distance_m": [1000.0, 2000.0, 3000.0],
            "duration_s": [60.0, 120.0, 180.0],
            "geometry": [
                LineString([(151.0, -33.0), (151.1, -33.1)]),
                LineString([(151.0, -33.0), (151.2, -33.2)]),
                LineString([(150.0, -34.0), (150.5, -34.5)]),
            ],
        },
        crs="EPSG:4326",
    )


def test_routes_round_trip_by_date(tmp_path: Path) -> None:
    store = FileSpatialStore(routes_path=tmp_path / "routes.gpkg")
    store.write_routes(_routes())

    assert store.movement_dates() == [date(2007, 8, 25), date(2007, 9, 3)]
    day_routes = store.routes_for_date(date(2007, 8, 25))
    assert day_routes["route_id"].tolist() == ["M1", "M2"]
    assert day_routes.crs.to_epsg() == 4326
    assert store.routes_for_date(date(2007, 1, 1)).empty


def test_missing_routes_file_raises(tmp_path: Path) -> None:
    store = FileSpatialStore(routes_path=tmp_path / "nope.gpkg")
    with pytest.raises(FileNotFoundError):
        store.movement_dates()


def test_zones_and_declarations_for_date(tmp_path: Path) -> None:
    zones_path = tmp_path / "zones.gpkg"
    gpd.GeoDataFrame(
        {"SVA": ["A", "B"], "geometry": [box(0, 0, 1, 1), box(1, 0, 2, 1)]}, crs="EPSG:3577"
    ).to_file(zones_path, driver="GPKG")

    store = FileSpatialStore(
        routes_path=tmp_path / "routes.gpkg",
        zones_path=zones_path,
        declarations_path=FIXTURES / "zone_status_declarations.csv",
        zone_id_field="SVA",
    )

    zones = store.zone_polygons()
    assert zones["zone_id"].tolist() == ["A", "B"]

    decl = store.declarations_for_date(date(2007, 9, 3))
    assert sorted(zip(decl["zone_id"], decl["category"])) == [("A", "partial"), ("C", "low")]
    assert store.declarations_for_date(date(2007, 1, 1)).empty


def test_write_grid_geotiff(tmp_path: Path) -> None:
    spec = GridSpec(extent=(0.0, 0.0, 3.0, 2.0), resolution=1.0, crs="EPSG:3577")
    values = np.array([[0, 1, 2], [3, 0, 1]], dtype=np.uint8)
    grid = ZoneStatusGrid(day=date(2007, 8, 25), spec=spec, values=values)

    store = FileSpatialStore(routes_path=tmp_path / "routes.gpkg")
    path = store.write_grid(grid, tmp_path / "grids" / "status.tif")

    with rasterio.open(path) as src:
        assert src.nodata == 0
        assert src.transform == spec.transform
        np.testing.assert_array_equal(src.read(1), values)

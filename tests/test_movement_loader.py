from __future__ import annotations

from datetime import date
from pathlib import Path

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import Polygon, box

from scripts.movement_tools import movement_loader
from scripts.utils.risk_model import EmptyInputError, MovementRecord

FIXTURES = Path(__file__).parent / "fixtures"


def test_load_movement_records_drops_invalid_rows() -> None:
    """Rows with a missing coordinate, bad date, zero or fractional count are dropped."""
    records = movement_loader.load_movement_records(FIXTURES / "equine_movements.csv")

    assert [r.record_id for r in records] == ["M001", "M002", "M003", "M008"]
    first = records[0]
    assert isinstance(first, MovementRecord)
    assert first.source == (151.2093, -33.8688)
    assert first.destination == (150.8931, -34.4278)
    assert first.movement_date == date(2007, 8, 25)
    assert first.equine_count == 2


def test_records_from_frame_generates_ids_when_missing() -> None:
    df = pd.DataFrame(
        {
            "source_lon": [150.0, 151.0],
            "source_lat": [-33.0, -34.0],
            "dest_lon": [150.5, 151.5],
            "dest_lat": [-33.5, -34.5],
            "movement_date": ["2007-01-02", "2007-02-03"],
            "equine_count": [1, 3],
        }
    )
    records = movement_loader.records_from_frame(df)
    assert [r.record_id for r in records] == ["M00001", "M00002"]
    assert records[1].equine_count == 3


def test_records_from_frame_missing_column_raises() -> None:
    df = pd.DataFrame({"source_lon": [1.0], "source_lat": [2.0]})
    with pytest.raises(ValueError, match="dest_lon"):
        movement_loader.records_from_frame(df)


def test_records_from_frame_all_invalid_is_empty_input() -> None:
    df = pd.DataFrame(
        {
            "source_lon": [150.0],
            "source_lat": [-33.0],
            "dest_lon": [150.5],
            "dest_lat": [-33.5],
            "movement_date": ["2007-01-02"],
            "equine_count": [-1],
        }
    )
    with pytest.raises(EmptyInputError):
        movement_loader.records_from_frame(df)


def test_load_status_declarations_normalises_categories() -> None:
    decl = movement_loader.load_status_declarations(FIXTURES / "zone_status_declarations.csv")

    assert len(decl) == 4
    assert set(decl["category"]) == {"high", "low", "partial"}
    assert "restricted" not in decl["category"].values
    first = decl.iloc[0]
    assert first["zone_id"] == "A"
    assert first["declaration_date"] == date(2007, 8, 25)
    assert first["category"] == "high"


def test_prepare_zones_renames_id_and_drops_empty_geometry() -> None:
    gdf = gpd.GeoDataFrame(
        {"SVA_CODE": [101, 102], "geometry": [box(0, 0, 1, 1), Polygon()]},
        crs="EPSG:3577",
    )
    zones = movement_loader.prepare_zones(gdf, "SVA_CODE")

    assert list(zones.columns) == ["zone_id", "geometry"]
    assert zones["zone_id"].tolist() == ["101"]


def test_load_zone_polygons_missing_field(tmp_path: Path) -> None:
    path = tmp_path / "zones.geojson"
    gpd.GeoDataFrame({"name": ["A"], "geometry": [box(0, 0, 1, 1)]}, crs="EPSG:4326").to_file(
        path, driver="GeoJSON"
    )
    with pytest.raises(ValueError, match="zone_id"):
        movement_loader.load_zone_polygons(path)


def test_dates_are_iso_by_default_and_day_first_when_configured(monkeypatch) -> None:
    df = pd.DataFrame(
        {
            "source_lon": [151.0],
            "source_lat": [-33.0],
            "dest_lon": [150.0],
            "dest_lat": [-34.0],
            "movement_date": ["03/09/2007"],
            "equine_count": [1],
        }
    )
    assert movement_loader.DATES_DAYFIRST is False
    assert movement_loader.records_from_frame(df)[0].movement_date == date(2007, 3, 9)

    monkeypatch.setattr(movement_loader, "DATES_DAYFIRST", True)
    assert movement_loader.records_from_frame(df)[0].movement_date == date(2007, 9, 3)

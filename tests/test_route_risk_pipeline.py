from __future__ import annotations

from datetime import date
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import LineString, box

from scripts.utils.risk_model import ConfigurationError, EmptyInputError
from scripts.zone_risk_tools import route_risk_pipeline as pipeline
from scripts.zone_risk_tools import zone_status_rasterizer as rasterizer

CRS = "EPSG:3577"
AUG = date(2007, 8, 25)
SEP = date(2007, 9, 3)
OCT = date(2007, 10, 14)


class InMemoryStore:
    """Spatial store double serving fixed tables."""

    def __init__(self, routes: gpd.GeoDataFrame, zones: gpd.GeoDataFrame, decl: pd.DataFrame):
        self.routes = routes
        self.zones = zones
        self.decl = decl
        self.written_grids: list[Path] = []

    def movement_dates(self):
        return sorted(self.routes["movement_date"].unique())

    def routes_for_date(self, day):
        return self.routes.loc[self.routes["movement_date"] == day].reset_index(drop=True)

    def zone_polygons(self):
        return self.zones

    def declarations_for_date(self, day):
        return self.decl.loc[self.decl["declaration_date"] == day].reset_index(drop=True)

    def write_grid(self, grid, path):
        self.written_grids.append(Path(path))
        return path


@pytest.fixture
def spec():
    return rasterizer.resolve_grid_spec((0.0, 0.0, 10.0, 2.0), 1.0, CRS)


@pytest.fixture
def store() -> InMemoryStore:
    zones = gpd.GeoDataFrame(
        {"zone_id": ["A", "B"], "geometry": [box(0, 0, 5, 2), box(5, 0, 10, 2)]}, crs=CRS
    )
    decl = pd.DataFrame(
        [
            ("A", AUG, "low"),
            ("B", AUG, "high"),
            ("A", SEP, "partial"),
            # OCT: no declarations at all.
        ],
        columns=["zone_id", "declaration_date", "category"],
    )
    routes = gpd.GeoDataFrame(
        {
            "route_id": ["R1", "R2", "R3", "R4", "R5"],
            "movement_date": [AUG, AUG, SEP, OCT, SEP],
            "equine_count": [2, 1, 3, 1, 5],
            "geometry": [
                LineString([(0.5, 0.5), (9.5, 0.5)]),  # 5 low + 5 high
                LineString([(0.5, 1.5), (1.5, 1.5)]),  # 2 low
                LineString([(0.5, 0.5), (9.5, 0.5)]),  # 5 partial + 5 absent
                LineString([(2.5, 0.5), (3.5, 0.5)]),  # all absent
                LineString(),  # unsampleable
            ],
        },
        crs=CRS,
    )
    return InMemoryStore(routes, zones, decl)


def test_pipeline_end_to_end(store, spec) -> None:
    result = pipeline.run_route_risk_pipeline(store, spec)
    profiles = result.profiles.set_index("route_id")

    assert sorted(profiles.index) == ["R1", "R2", "R3", "R4"]
    assert profiles.loc["R1", ["low", "high", "partial", "unknown"]].tolist() == [0.5, 0.5, 0, 0]
    assert profiles.loc["R2", "low"] == 1.0
    assert profiles.loc["R3", ["partial", "unknown"]].tolist() == [0.5, 0.5]
    assert profiles.loc["R4", "unknown"] == 1.0
    assert profiles.loc["R3", "equine_count"] == 3

    sums = result.profiles[["low", "high", "partial", "unknown"]].sum(axis=1)
    assert ((sums - 1.0).abs() <= 1e-9).all()


def test_pipeline_excludes_unsampleable_routes(store, spec) -> None:
    result = pipeline.run_route_risk_pipeline(store, spec)

    assert "R5" not in result.profiles["route_id"].values
    assert result.report.entries == [("sampling", "R5", "empty geometry")]

    annual = result.summary.loc[result.summary["bucket"] == "annual"]
    assert set(annual["n_routes"]) == {4}


def test_pipeline_monthly_buckets(store, spec) -> None:
    summary = pipeline.run_route_risk_pipeline(store, spec).summary

    monthly = summary.loc[summary["bucket_type"] == "monthly"]
    n_by_bucket = monthly.groupby("bucket")["n_routes"].first().to_dict()
    assert n_by_bucket == {"Aug": 2, "Sep": 1, "Oct": 1}
    assert sum(n_by_bucket.values()) == 4

    oct_unknown = monthly.loc[(monthly["bucket"] == "Oct") & (monthly["category"] == "unknown")]
    assert oct_unknown[["p2_5", "p50", "p95"]].iloc[0].tolist() == [1.0, 1.0, 1.0]


def test_pipeline_writes_daily_grids(store, spec, tmp_path: Path) -> None:
    pipeline.run_route_risk_pipeline(store, spec, grid_dir=tmp_path)
    assert [p.name for p in store.written_grids] == [
        "status_20070825.tif",
        "status_20070903.tif",
        "status_20071014.tif",
    ]


def test_pipeline_requires_grid_configuration(store, monkeypatch) -> None:
    monkeypatch.setattr(rasterizer, "STUDY_EXTENT", None)
    monkeypatch.setattr(rasterizer, "CELL_RESOLUTION", 1000.0)
    with pytest.raises(ConfigurationError, match="STUDY_EXTENT"):
        pipeline.run_route_risk_pipeline(store)


def test_pipeline_empty_store_is_fatal(store, spec) -> None:
    store.routes = store.routes.iloc[0:0]
    with pytest.raises(EmptyInputError):
        pipeline.run_route_risk_pipeline(store, spec)


def test_write_outputs_and_plot(store, spec, tmp_path: Path) -> None:
    result = pipeline.run_route_risk_pipeline(store, spec)
    paths = pipeline.write_outputs(result, tmp_path / "out")

    assert set(paths) == {"profiles", "summary", "skipped"}
    assert len(pd.read_csv(paths["profiles"])) == 4
    assert pd.read_csv(paths["skipped"])["identifier"].tolist() == ["R5"]

    plot_path = pipeline.plot_monthly_bands(result.summary, tmp_path / "out" / "bands.png")
    assert plot_path is not None and plot_path.exists()


def test_plot_skips_without_monthly_rows(tmp_path: Path) -> None:
    empty = pd.DataFrame(columns=["bucket_type", "category", "bucket_month"])
    assert pipeline.plot_monthly_bands(empty, tmp_path / "x.png") is None


def test_main_runs_from_files(tmp_path: Path) -> None:
    routes_path = tmp_path / "routes.gpkg"
    zones_path = tmp_path / "zones.gpkg"
    decl_path = tmp_path / "declarations.csv"
    out_dir = tmp_path / "out"

    gpd.GeoDataFrame(
        {
            "route_id": ["R1"],
            "movement_date": ["2007-08-25"],
            "equine_count": [2],
            "geometry": [LineString([(0.5, 0.5), (9.5, 0.5)])],
        },
        crs=CRS,
    ).to_file(routes_path, layer="routes", driver="GPKG")
    gpd.GeoDataFrame(
        {"zone_id": ["A", "B"], "geometry": [box(0, 0, 5, 2), box(5, 0, 10, 2)]}, crs=CRS
    ).to_file(zones_path, driver="GPKG")
    decl_path.write_text(
        "zone_id,declaration_date,category\nA,2007-08-25,low\nB,2007-08-25,high\n",
        encoding="utf-8",
    )

    code = pipeline.main(
        [
            "--routes", str(routes_path),
            "--zones", str(zones_path),
            "--declarations", str(decl_path),
            "--outdir", str(out_dir),
            "--extent", "0", "0", "10", "2",
            "--resolution", "1",
            "--crs", CRS,
            "--no-plot",
        ]
    )

    assert code == 0
    profiles = pd.read_csv(out_dir / pipeline.PROFILES_CSV)
    assert profiles.loc[0, "low"] == pytest.approx(0.5)
    assert profiles.loc[0, "high"] == pytest.approx(0.5)
    summary = pd.read_csv(out_dir / pipeline.SUMMARY_CSV)
    assert set(summary["bucket"]) == {"annual", "Aug"}


def test_pipeline_keeps_headcount_of_routes_sharing_an_id(spec) -> None:
    zones = gpd.GeoDataFrame({"zone_id": ["A"], "geometry": [box(0, 0, 10, 2)]}, crs=CRS)
    decl = pd.DataFrame([("A", AUG, "low")], columns=["zone_id", "declaration_date", "category"])
    routes = gpd.GeoDataFrame(
        {
            "route_id": ["R1", "R1"],
            "movement_date": [AUG, AUG],
            "equine_count": [2, 9],
            "geometry": [
                LineString([(0.5, 0.5), (1.5, 0.5)]),
                LineString([(2.5, 0.5), (3.5, 0.5)]),
            ],
        },
        crs=CRS,
    )

    result = pipeline.run_route_risk_pipeline(InMemoryStore(routes, zones, decl), spec)

    assert result.profiles["equine_count"].tolist() == [2, 9]

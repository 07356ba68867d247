#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import rasterio

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from envtrend.errors import UnitFailure
from envtrend.geo.composite import Presence
from envtrend.geo.export import read_raster, write_raster, write_region_stats_table, write_trend_table
from envtrend.geo.trend import TrendResult
from envtrend.pipeline.runner import RegionYearStat
from envtrend.raster import Raster, RasterGrid

GRID = RasterGrid.from_origin(500000, 4100000, 30, 30, 5, 4, crs="EPSG:32633")


def test_raster_round_trip_with_sentinel(tmp_path):
    values = np.arange(20, dtype=float).reshape(4, 5) / 7.0
    values[0, 0] = np.nan
    values[3, 4] = np.nan
    path = write_raster(tmp_path / "a.tif", Raster(values, GRID, "anomaly"), nodata=-9999)

    with rasterio.open(path) as src:
        assert src.nodata == -9999
        raw = src.read(1)
    assert raw[0, 0] == -9999
    assert raw[3, 4] == -9999

    (back,) = read_raster(path)
    assert back.name == "anomaly"
    assert back.grid == GRID
    assert np.array_equal(back.data, values, equal_nan=True)


def test_multi_band_trend_raster(tmp_path):
    slope = Raster(np.full(GRID.shape, 0.5), GRID, "slope")
    intercept = Raster(np.full(GRID.shape, np.nan), GRID, "intercept")
    path = write_raster(tmp_path / "trend.tif", [slope, intercept])
    bands = read_raster(path)
    assert [b.name for b in bands] == ["slope", "intercept"]
    assert np.all(bands[0].data == 0.5)
    assert np.all(np.isnan(bands[1].data))


def test_write_at_coarser_scale(tmp_path):
    values = np.ones(GRID.shape)
    path = write_raster(tmp_path / "coarse.tif", Raster(values, GRID, "v"), scale=60)
    (back,) = read_raster(path)
    assert back.grid.resolution == (60.0, 60.0)
    assert back.grid.shape == (2, 3)
    assert np.nanmax(back.data) == 1.0


def test_trend_table_leaves_undefined_cells_empty(tmp_path):
    trends = [
        TrendResult(0.25, 1.5, 10, "b"),
        TrendResult(None, None, 1, "a"),
    ]
    path = write_trend_table(tmp_path / "trends.csv", trends)
    df = pd.read_csv(path, dtype={"region_id": str})
    assert list(df.columns) == ["region_id", "slope", "intercept", "points_used"]
    assert df["region_id"].tolist() == ["a", "b"]
    assert df["slope"].isna().tolist() == [True, False]
    assert df["points_used"].tolist() == [1, 10]


def test_region_stats_table_records_failures(tmp_path):
    stats = {
        ("b", 2021): RegionYearStat("b", 2021, None, Presence.FALLBACK),
        ("a", 2021): RegionYearStat("a", 2021, 3.5, Presence.DATA),
        ("c", 2021): UnitFailure(("c", 2021), "InvalidGeometryError", "Region 'c': invalid geometry (zero area)"),
    }
    path = write_region_stats_table(tmp_path / "stats.csv", stats)
    df = pd.read_csv(path, dtype={"region_id": str})
    assert df["region_id"].tolist() == ["a", "b", "c"]
    assert df["presence"].tolist()[:2] == ["DATA", "FALLBACK"]
    assert df["value"].tolist()[0] == 3.5
    assert df["value"].isna().tolist() == [False, True, True]
    assert df["error"].notna().tolist() == [False, False, True]
    assert df["error"].iloc[2].startswith("InvalidGeometryError")

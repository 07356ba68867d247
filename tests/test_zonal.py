#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest
from shapely.geometry import LineString, Polygon, box

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from envtrend.errors import InvalidGeometryError
from envtrend.geo.zonal import RegionalAggregator
from envtrend.raster import Raster, RasterGrid
from envtrend.registry.regions import Region

# 10 x 10 grid of 1-unit pixels, x 0..10, y 0..10, no CRS (uniform weights)
GRID = RasterGrid.from_origin(0, 10, 1, 1, 10, 10)


def _raster(values=None):
    if values is None:
        values = np.arange(100, dtype=float).reshape(10, 10)
    return Raster(values, GRID, "v")


def test_mean_over_region():
    region = Region("sw", box(0, 0, 2, 2))
    # rows 8-9, cols 0-1
    expected = np.arange(100).reshape(10, 10)[8:10, 0:2].mean()
    assert RegionalAggregator().aggregate(_raster(), region) == pytest.approx(expected)


def test_region_outside_raster_is_none():
    region = Region("away", box(50, 50, 60, 60))
    assert RegionalAggregator().aggregate(_raster(), region) is None


def test_region_over_masked_pixels_is_none_not_zero():
    values = np.arange(100, dtype=float).reshape(10, 10)
    values[:5, :5] = np.nan
    region = Region("nw", box(0, 5, 5, 10))
    agg = RegionalAggregator()
    assert agg.aggregate(_raster(values), region) is None
    assert agg.aggregate(_raster(values), region, "sum") is None
    assert agg.aggregate(_raster(values), region, "count") is None


def test_masked_pixels_are_ignored():
    values = np.ones((10, 10))
    values[9, 0] = np.nan
    region = Region("sw", box(0, 0, 2, 2))
    agg = RegionalAggregator()
    assert agg.aggregate(_raster(values), region, "count") == 3.0
    assert agg.aggregate(_raster(values), region, "sum") == 3.0


@pytest.mark.parametrize("reducer", ["mean", "sum", "count", "min", "max", "median", "std"])
def test_tile_factor_does_not_change_result(reducer):
    rng = np.random.default_rng(42)
    values = rng.normal(size=(10, 10))
    values[rng.random((10, 10)) < 0.2] = np.nan
    region = Region("poly", Polygon([(0.3, 0.2), (9.1, 1.5), (8.2, 9.7), (1.0, 7.5)]))
    base = RegionalAggregator(tile_factor=1).aggregate(_raster(values), region, reducer)
    for tiles in (2, 3, 7, 50):
        got = RegionalAggregator(tile_factor=tiles).aggregate(_raster(values), region, reducer)
        assert got == pytest.approx(base, rel=1e-9, abs=1e-12)


def test_reducers_match_numpy():
    values = np.arange(100, dtype=float).reshape(10, 10)
    region = Region("block", box(2, 2, 6, 6))
    picked = values[4:8, 2:6]
    agg = RegionalAggregator(tile_factor=3)
    assert agg.aggregate(_raster(values), region, "min") == picked.min()
    assert agg.aggregate(_raster(values), region, "max") == picked.max()
    assert agg.aggregate(_raster(values), region, "median") == np.median(picked)
    assert agg.aggregate(_raster(values), region, "std") == pytest.approx(picked.std())
    assert agg.aggregate(_raster(values), region, "count") == 16.0


def test_stack_returns_one_value_per_raster():
    region = Region("sw", box(0, 0, 2, 2))
    out = RegionalAggregator().aggregate([_raster(np.ones((10, 10))), _raster(np.full((10, 10), np.nan))], region)
    assert out == [1.0, None]


def test_geographic_mean_is_area_weighted():
    grid = RasterGrid.from_origin(0, 80, 10, 40, 1, 2, crs="EPSG:4326")
    # row centres at 60N and 20N
    values = np.array([[1.0], [0.0]])
    region = Region("band", box(-1, 0, 11, 80))
    got = RegionalAggregator().aggregate(Raster(values, grid), region)
    w60, w20 = np.cos(np.radians(60)), np.cos(np.radians(20))
    assert got == pytest.approx(w60 / (w60 + w20))


def test_invalid_geometry_raises():
    agg = RegionalAggregator()
    with pytest.raises(InvalidGeometryError):
        agg.aggregate(_raster(), Region("empty", Polygon()))
    with pytest.raises(InvalidGeometryError):
        agg.aggregate(_raster(), Region("line", LineString([(0, 0), (5, 5)])))


def test_self_intersecting_polygon_is_repaired():
    bowtie = Polygon([(0, 0), (4, 4), (4, 0), (0, 4)])
    got = RegionalAggregator().aggregate(_raster(np.ones((10, 10))), Region("bowtie", bowtie), "mean")
    assert got == 1.0


def test_unknown_reducer_rejected():
    with pytest.raises(ValueError):
        RegionalAggregator().aggregate(_raster(), Region("sw", box(0, 0, 2, 2)), "mode")

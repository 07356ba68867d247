#!/usr/bin/env python3

from __future__ import annotations

import sys
from datetime import date, datetime
from pathlib import Path

import numpy as np
import pytest
import rasterio
from shapely.geometry import box

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from envtrend.errors import SchemaMismatchError
from envtrend.ingest import indices
from envtrend.ingest.sources import GeoTiffDirectorySource, InMemorySource, parse_frame_date
from envtrend.raster import RasterFrame, RasterGrid

GRID = RasterGrid.from_origin(10.0, 50.0, 0.1, 0.1, 3, 2, crs="EPSG:4326")


# -----------------------------------------------------------------------------
# Indices
# -----------------------------------------------------------------------------

def test_ndvi():
    nir = np.array([[0.5, 0.0], [np.nan, 0.3]])
    red = np.array([[0.1, 0.0], [0.2, 0.3]])
    out = indices.ndvi(nir, red)
    assert out[0, 0] == pytest.approx(0.4 / 0.6)
    # zero denominator and masked input stay masked
    assert np.isnan(out[0, 1])
    assert np.isnan(out[1, 0])
    assert out[1, 1] == 0.0


def test_rvi_from_db():
    # equal VV and VH power -> 4 * 0.5 = 2
    assert indices.rvi(np.array([-10.0]), np.array([-10.0]))[0] == pytest.approx(2.0)
    # VH 10 dB below VV -> 4 * 0.1 / 1.1
    assert indices.rvi(np.array([0.0]), np.array([-10.0]))[0] == pytest.approx(0.4 / 1.1)


def test_derive_index_adds_band_and_skips_frames_without_inputs():
    frames = [
        RasterFrame(date(2020, 4, 1), {"B8": np.full(GRID.shape, 0.6), "B4": np.full(GRID.shape, 0.2)}, GRID),
        RasterFrame(date(2020, 5, 1), {"B8": np.full(GRID.shape, 0.6)}, GRID),
    ]
    out = indices.derive_index(frames, "ndvi", ["B8", "B4"], out_band="NDVI")
    assert np.allclose(out[0].bands["NDVI"], 0.5)
    assert "NDVI" not in out[1].bands
    # inputs are never mutated
    assert "NDVI" not in frames[0].bands


def test_derive_index_rejects_unknown():
    with pytest.raises(ValueError):
        indices.derive_index([], "evi", ["B8", "B4"])


# -----------------------------------------------------------------------------
# In-memory source
# -----------------------------------------------------------------------------

def _frames():
    return [
        RasterFrame(date(2020, m, 1), {"pr": np.full(GRID.shape, float(m)), "tas": np.zeros(GRID.shape)}, GRID)
        for m in (1, 4, 8)
    ]


def test_in_memory_query_filters_dates_and_bands():
    src = InMemorySource(_frames())
    assert src.band_names == ("pr", "tas")
    assert src.crs == "EPSG:4326"
    out = src.query(None, (datetime(2020, 3, 1), datetime(2020, 8, 1)), ["pr"])
    assert [f.timestamp.month for f in out] == [4]
    assert out[0].band_names == ("pr",)


def test_in_memory_query_skips_frames_outside_geometry():
    src = InMemorySource(_frames())
    assert src.query(box(0, 0, 1, 1), (datetime(2020, 1, 1), datetime(2021, 1, 1)), ["pr"]) == []
    assert len(src.query(box(10, 49.9, 10.1, 50), (datetime(2020, 1, 1), datetime(2021, 1, 1)), ["pr"])) == 3


def test_in_memory_schema_mismatch():
    with pytest.raises(SchemaMismatchError):
        InMemorySource(_frames()).query(None, (datetime(2020, 1, 1), datetime(2021, 1, 1)), ["ndvi"])


# -----------------------------------------------------------------------------
# GeoTIFF directory source
# -----------------------------------------------------------------------------

@pytest.mark.parametrize(
    "name,expected",
    [
        ("S2_2021-06-17.tif", datetime(2021, 6, 17)),
        ("era5_20210617_daily.tif", datetime(2021, 6, 17)),
        ("frame_2021_06_17.tif", datetime(2021, 6, 17)),
        ("no_date_here.tif", None),
        ("bad_2021-13-40.tif", None),
        ("mixed_2021-06_17.tif", None),
    ],
)
def test_parse_frame_date(name, expected):
    assert parse_frame_date(name) == expected


def _write_tif(path, data, nodata=-9999.0):
    profile = {
        "driver": "GTiff",
        "height": GRID.height,
        "width": GRID.width,
        "count": data.shape[0],
        "dtype": "float32",
        "crs": GRID.crs,
        "transform": GRID.transform,
        "nodata": nodata,
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(data.astype("float32"))


def test_geotiff_directory_source(tmp_path):
    a = np.stack([np.full(GRID.shape, 0.6), np.full(GRID.shape, 0.2)])
    a[1, 0, 0] = -9999.0
    _write_tif(tmp_path / "s2_20200401.tif", a)
    _write_tif(tmp_path / "s2_20200901.tif", a)
    _write_tif(tmp_path / "undated.tif", a)

    src = GeoTiffDirectorySource(tmp_path, bands=["B8", "B4"])
    assert src.band_names == ("B8", "B4")
    assert src.grid == GRID
    frames = src.query(None, (datetime(2020, 3, 1), datetime(2020, 6, 1)), ["B4"])
    assert len(frames) == 1
    assert frames[0].timestamp == datetime(2020, 4, 1)
    b4 = frames[0].bands["B4"]
    assert np.isnan(b4[0, 0])
    assert b4[1, 1] == pytest.approx(0.2)

    with pytest.raises(SchemaMismatchError):
        src.query(None, (datetime(2020, 1, 1), datetime(2021, 1, 1)), ["B11"])


def test_geotiff_directory_band_count_mismatch(tmp_path):
    _write_tif(tmp_path / "s2_20200401.tif", np.ones((1,) + GRID.shape))
    with pytest.raises(SystemExit):
        GeoTiffDirectorySource(tmp_path, bands=["B8", "B4"])


def test_geotiff_directory_without_frames(tmp_path):
    with pytest.raises(SystemExit):
        GeoTiffDirectorySource(tmp_path)

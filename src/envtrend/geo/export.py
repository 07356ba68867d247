#!/usr/bin/env python3
"""export.py

Persist pipeline artifacts.

- Rasters -> GeoTIFF (rasterio; tiled, deflate). Masked pixels are written as the nodata
  sentinel (default -9999) and restored to NaN on read.
- Per-region trends and per-(region, year) statistics -> CSV tables (pandas).

Undefined values (masked pixels, UNDEFINED trends, regions without valid pixels) are never
written as 0: rasters use the sentinel, tables leave the cell empty.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
import rasterio

from envtrend.errors import UnitFailure
from envtrend.raster import Raster, RasterGrid, resample_raster


logger = logging.getLogger(__name__)

DEFAULT_NODATA = -9999.0

TREND_COLUMNS = ["region_id", "slope", "intercept", "points_used"]
REGION_STATS_COLUMNS = ["region_id", "year", "value", "presence", "error"]


def _ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


# -----------------------------------------------------------------------------
# Rasters
# -----------------------------------------------------------------------------

def write_raster(
    path: Path,
    rasters: Union[Raster, Sequence[Raster]],
    nodata: float = DEFAULT_NODATA,
    scale: Optional[float] = None,
    tags: Optional[Mapping[str, Any]] = None,
) -> Path:
    """Write one or more same-grid rasters as the bands of a GeoTIFF.

    Band descriptions are the raster names; `tags` become dataset-level GeoTIFF tags.
    With `scale`, rasters are first resampled to square pixels of that size (CRS units).
    """
    if isinstance(rasters, Raster):
        rasters = [rasters]
    rasters = [resample_raster(r, scale) for r in rasters]
    if not rasters:
        raise ValueError("write_raster needs at least one raster")
    grid = rasters[0].grid
    if any(r.grid != grid for r in rasters[1:]):
        raise ValueError("All bands of one GeoTIFF must share a grid")

    data = np.stack([np.where(np.isnan(r.data), nodata, r.data) for r in rasters], axis=0)

    profile = {
        "driver": "GTiff",
        "height": grid.height,
        "width": grid.width,
        "count": len(rasters),
        "dtype": "float64",
        "crs": grid.crs,
        "transform": grid.transform,
        "nodata": nodata,
        "tiled": True,
        "compress": "deflate",
    }

    _ensure_dir(path.parent)
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(data)
        for i, r in enumerate(rasters, start=1):
            dst.set_band_description(i, r.name)
        if tags:
            dst.update_tags(**{k: str(v) for k, v in tags.items()})

    logger.info("Wrote %d band(s) -> %s", len(rasters), path)
    return path


def read_raster(path: Path) -> List[Raster]:
    """Read every band of a GeoTIFF as a Raster, with nodata restored to NaN."""
    if not path.exists():
        raise FileNotFoundError(f"Raster not found: {path}")
    with rasterio.open(path) as src:
        data = src.read().astype(np.float64)
        grid = RasterGrid(
            transform=src.transform,
            width=src.width,
            height=src.height,
            crs=src.crs.to_string() if src.crs else None,
        )
        nodata = src.nodata
        names = [d or f"band_{i}" for i, d in enumerate(src.descriptions, start=1)]

    if nodata is not None and not np.isnan(nodata):
        data = np.where(data == nodata, np.nan, data)
    return [Raster(band, grid, name) for band, name in zip(data, names)]


# -----------------------------------------------------------------------------
# Tables
# -----------------------------------------------------------------------------

def trend_frame(trends: Iterable[Any]) -> pd.DataFrame:
    """One row per region trend; UNDEFINED slope/intercept become empty cells."""
    rows = [
        {
            "region_id": t.region_id,
            "slope": t.slope,
            "intercept": t.intercept,
            "points_used": int(t.points_used),
        }
        for t in trends
    ]
    df = pd.DataFrame(rows, columns=TREND_COLUMNS)
    return df.sort_values("region_id", kind="stable").reset_index(drop=True)


def region_stats_frame(stats: Mapping[Any, Any]) -> pd.DataFrame:
    """One row per (region_id, year) key; failed units carry their error instead of a value."""
    rows = []
    for (region_id, year), item in sorted(stats.items()):
        if isinstance(item, UnitFailure):
            rows.append({
                "region_id": region_id,
                "year": year,
                "value": None,
                "presence": None,
                "error": f"{item.error_type}: {item.message}",
            })
            continue
        presence = getattr(item, "presence", None)
        rows.append({
            "region_id": region_id,
            "year": year,
            "value": item.value,
            "presence": getattr(presence, "value", presence),
            "error": None,
        })
    return pd.DataFrame(rows, columns=REGION_STATS_COLUMNS)


def write_trend_table(path: Path, trends: Iterable[Any]) -> Path:
    df = trend_frame(trends)
    _ensure_dir(path.parent)
    df.to_csv(path, index=False)
    logger.info("Wrote %d region trends -> %s", len(df), path)
    return path


def write_region_stats_table(path: Path, stats: Mapping[Any, Any]) -> Path:
    df = region_stats_frame(stats)
    _ensure_dir(path.parent)
    df.to_csv(path, index=False)
    logger.info("Wrote %d region-year rows -> %s", len(df), path)
    return path

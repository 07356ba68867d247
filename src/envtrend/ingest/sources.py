#!/usr/bin/env python3
"""sources.py

Raster time series sources: where dated frames come from.

Every source answers the same three questions:
- band_names: which bands the dataset carries at all (its schema)
- crs / grid: where its pixels are
- query(geometry, date_range, band_names): the frames overlapping a geometry in [start, end)

Asking for a band outside the schema raises SchemaMismatchError. A band that is in the
schema but missing from some frames is not an error; compositing tags such years FALLBACK.

Two implementations:
- InMemorySource: frames already in memory (tests, notebooks, upstream code)
- GeoTiffDirectorySource: one GeoTIFF per acquisition, date taken from the filename
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
import rasterio
from shapely.geometry import box

from envtrend.errors import SchemaMismatchError
from envtrend.raster import RasterFrame, RasterGrid


logger = logging.getLogger(__name__)

DateRange = Tuple[datetime, datetime]


class RasterTimeSeriesSource(Protocol):
    @property
    def band_names(self) -> Tuple[str, ...]: ...

    @property
    def crs(self) -> Optional[str]: ...

    @property
    def grid(self) -> Optional[RasterGrid]: ...

    def query(
        self, geometry: Any, date_range: DateRange, band_names: Sequence[str]
    ) -> List[RasterFrame]: ...


def _check_schema(requested: Sequence[str], available: Sequence[str]) -> None:
    for b in requested:
        if b not in available:
            raise SchemaMismatchError(b, available)


def _overlaps(grid: RasterGrid, geometry: Any) -> bool:
    if geometry is None:
        return True
    return box(*grid.bounds).intersects(geometry)


# -----------------------------------------------------------------------------
# In-memory frames
# -----------------------------------------------------------------------------

class InMemorySource:
    def __init__(
        self,
        frames: Sequence[RasterFrame],
        band_names: Optional[Sequence[str]] = None,
        grid: Optional[RasterGrid] = None,
    ):
        self.frames = sorted(frames, key=lambda f: f.timestamp)
        if band_names is None:
            seen: Dict[str, None] = {}
            for f in self.frames:
                seen.update(dict.fromkeys(f.band_names))
            band_names = list(seen)
        self._band_names = tuple(band_names)
        self._grid = grid or (self.frames[0].grid if self.frames else None)

    @property
    def band_names(self) -> Tuple[str, ...]:
        return self._band_names

    @property
    def grid(self) -> Optional[RasterGrid]:
        return self._grid

    @property
    def crs(self) -> Optional[str]:
        return self._grid.crs if self._grid else None

    def query(self, geometry: Any, date_range: DateRange, band_names: Sequence[str]) -> List[RasterFrame]:
        _check_schema(band_names, self._band_names)
        start, end = date_range
        return [
            f.select(band_names)
            for f in self.frames
            if start <= f.timestamp < end and _overlaps(f.grid, geometry)
        ]


# -----------------------------------------------------------------------------
# GeoTIFF directory
# -----------------------------------------------------------------------------

# 2021-06-17, 20210617 or 2021_06_17 anywhere in the file name
_DATE_RE = re.compile(r"(?<!\d)(\d{4})([-_]?)(\d{2})\2(\d{2})(?!\d)")


def parse_frame_date(name: str) -> Optional[datetime]:
    """Acquisition date embedded in a file name, or None when there isn't a valid one."""
    m = _DATE_RE.search(name)
    if not m:
        return None
    try:
        return datetime(int(m.group(1)), int(m.group(3)), int(m.group(4)))
    except ValueError:
        return None


def _grid_of(src: Any) -> RasterGrid:
    return RasterGrid(
        transform=src.transform,
        width=src.width,
        height=src.height,
        crs=src.crs.to_string() if src.crs else None,
    )


class GeoTiffDirectorySource:
    """One GeoTIFF per frame under `root`.

    Band names come from `bands` (in file band order) or else from the files' band
    descriptions. Nodata pixels become NaN. All files must share one grid; frames
    are not co-registered here.
    """

    def __init__(self, root: Path, glob: str = "*.tif", bands: Optional[Sequence[str]] = None):
        self.root = Path(root)
        if not self.root.is_dir():
            raise SystemExit(f"Frame directory not found: {self.root}")

        self.files: List[Tuple[datetime, Path]] = []
        for p in sorted(self.root.glob(glob)):
            ts = parse_frame_date(p.name)
            if ts is None:
                logger.warning("Skipping %s: no YYYY-MM-DD / YYYYMMDD date in file name", p.name)
                continue
            self.files.append((ts, p))
        self.files.sort(key=lambda t: t[0])
        if not self.files:
            raise SystemExit(f"No dated GeoTIFFs matching {glob!r} under {self.root}")

        with rasterio.open(self.files[0][1]) as src:
            self._grid = _grid_of(src)
            descriptions = list(src.descriptions)
            count = src.count

        if bands is not None:
            if len(bands) != count:
                raise SystemExit(
                    f"Config lists {len(bands)} band names but {self.files[0][1].name} has {count} bands"
                )
            self._band_names = tuple(str(b) for b in bands)
        else:
            self._band_names = tuple(d or f"band_{i}" for i, d in enumerate(descriptions, start=1))
        logger.info(
            "Found %d frames under %s (%s .. %s), bands=%s",
            len(self.files), self.root,
            self.files[0][0].date(), self.files[-1][0].date(), list(self._band_names),
        )

    @property
    def band_names(self) -> Tuple[str, ...]:
        return self._band_names

    @property
    def grid(self) -> RasterGrid:
        return self._grid

    @property
    def crs(self) -> Optional[str]:
        return self._grid.crs

    def _read(self, ts: datetime, path: Path, band_names: Sequence[str]) -> RasterFrame:
        indexes = [self._band_names.index(b) + 1 for b in band_names]
        with rasterio.open(path) as src:
            grid = _grid_of(src)
            if grid != self._grid:
                raise ValueError(f"{path.name} is not on the dataset grid; frames must be pre-aligned")
            data = src.read(indexes).astype(np.float64)
            nodata = src.nodata
        if nodata is not None and not np.isnan(nodata):
            data = np.where(data == nodata, np.nan, data)
        bands = {b: arr for b, arr in zip(band_names, data)}
        return RasterFrame(ts, bands, grid, {"path": str(path)})

    def query(self, geometry: Any, date_range: DateRange, band_names: Sequence[str]) -> List[RasterFrame]:
        _check_schema(band_names, self._band_names)
        if not _overlaps(self._grid, geometry):
            return []
        start, end = date_range
        frames = [self._read(ts, p, band_names) for ts, p in self.files if start <= ts < end]
        logger.debug("Read %d frames in [%s, %s)", len(frames), start.date(), end.date())
        return frames


def source_from_config(cfg: Dict[str, Any]) -> GeoTiffDirectorySource:
    """Build the source described by the `source:` block of the pipeline config."""
    kind = cfg.get("type", "geotiff-dir")
    if kind != "geotiff-dir":
        raise SystemExit(f"Unsupported source type: {kind!r} (expected 'geotiff-dir')")
    if not cfg.get("root"):
        raise SystemExit("source.root is required for a geotiff-dir source")
    return GeoTiffDirectorySource(
        Path(cfg["root"]),
        glob=str(cfg.get("glob", "*.tif")),
        bands=cfg.get("bands"),
    )

"""envtrend.raster

In-memory raster value types shared by every stage.

- RasterGrid: where pixels are (affine transform, size, CRS)
- RasterFrame: one dated acquisition, any number of named bands on a grid
- Raster: one named band on a grid; what aggregation and export consume

Pixel values are float64 with NaN marking masked pixels. Arrays are copied on
construction and made read-only, so nothing downstream can mutate a frame or
composite in place; every transformation returns a new object.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np
from rasterio.crs import CRS
from rasterio.features import geometry_mask
from rasterio.transform import Affine, array_bounds, from_origin
from rasterio.warp import Resampling, reproject


BBox = Tuple[float, float, float, float]


def _freeze(values: Any) -> np.ndarray:
    arr = np.array(values, dtype=np.float64, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class RasterGrid:
    transform: Affine
    width: int
    height: int
    crs: Optional[str] = None

    @classmethod
    def from_origin(
        cls,
        west: float,
        north: float,
        xsize: float,
        ysize: float,
        width: int,
        height: int,
        crs: Optional[str] = None,
    ) -> "RasterGrid":
        return cls(from_origin(west, north, xsize, ysize), int(width), int(height), crs)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    @property
    def bounds(self) -> BBox:
        """(xmin, ymin, xmax, ymax) of the grid."""
        west, south, east, north = array_bounds(self.height, self.width, self.transform)
        return (min(west, east), min(south, north), max(west, east), max(south, north))

    @property
    def resolution(self) -> Tuple[float, float]:
        return (abs(self.transform.a), abs(self.transform.e))

    @property
    def is_geographic(self) -> bool:
        if not self.crs:
            return False
        return bool(CRS.from_user_input(self.crs).is_geographic)

    def row_center_ys(self) -> np.ndarray:
        """Y coordinate of each row's pixel centres (north-up grids)."""
        rows = np.arange(self.height, dtype=np.float64) + 0.5
        return self.transform.f + self.transform.e * rows

    def window_for_bounds(self, bounds: BBox) -> Optional[Tuple[int, int, int, int]]:
        """Pixel window (row0, row1, col0, col1) covering bounds, clipped to the grid.

        Returns None when the bounds do not overlap the grid.
        """
        inv = ~self.transform
        xmin, ymin, xmax, ymax = bounds
        cols, rows = zip(*[inv * (x, y) for x, y in ((xmin, ymin), (xmin, ymax), (xmax, ymin), (xmax, ymax))])
        row0 = max(0, int(math.floor(min(rows))))
        row1 = min(self.height, int(math.ceil(max(rows))))
        col0 = max(0, int(math.floor(min(cols))))
        col1 = min(self.width, int(math.ceil(max(cols))))
        if row0 >= row1 or col0 >= col1:
            return None
        return (row0, row1, col0, col1)

    def window_transform(self, row0: int, col0: int) -> Affine:
        return self.transform * Affine.translation(col0, row0)

    def at_scale(self, scale: float) -> "RasterGrid":
        """Grid with the same origin and extent, resampled to square pixels of `scale`."""
        resx, resy = self.resolution
        width = max(1, int(math.ceil(self.width * resx / scale)))
        height = max(1, int(math.ceil(self.height * resy / scale)))
        return RasterGrid.from_origin(self.transform.c, self.transform.f, scale, scale, width, height, self.crs)


@dataclass(frozen=True, eq=False)
class Raster:
    data: np.ndarray
    grid: RasterGrid
    name: str = "value"

    def __post_init__(self) -> None:
        arr = _freeze(self.data)
        if arr.shape != self.grid.shape:
            raise ValueError(f"Raster {self.name!r} shape {arr.shape} != grid shape {self.grid.shape}")
        object.__setattr__(self, "data", arr)

    @property
    def valid_count(self) -> int:
        return int(np.count_nonzero(~np.isnan(self.data)))

    def renamed(self, name: str) -> "Raster":
        return Raster(self.data, self.grid, name)


@dataclass(frozen=True, eq=False)
class RasterFrame:
    timestamp: datetime
    bands: Mapping[str, np.ndarray]
    grid: RasterGrid
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        ts = self.timestamp
        if isinstance(ts, date) and not isinstance(ts, datetime):
            ts = datetime(ts.year, ts.month, ts.day)
        object.__setattr__(self, "timestamp", ts)

        frozen = {}
        for name, values in self.bands.items():
            arr = _freeze(values)
            if arr.shape != self.grid.shape:
                raise ValueError(f"Band {name!r} shape {arr.shape} != grid shape {self.grid.shape}")
            frozen[str(name)] = arr
        object.__setattr__(self, "bands", MappingProxyType(frozen))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def band_names(self) -> Tuple[str, ...]:
        return tuple(self.bands.keys())

    def band(self, name: str) -> Raster:
        return Raster(self.bands[name], self.grid, name)

    def select(self, names: Iterable[str]) -> "RasterFrame":
        """New frame restricted to the named bands that exist on this frame."""
        keep = {n: self.bands[n] for n in names if n in self.bands}
        return RasterFrame(self.timestamp, keep, self.grid, self.metadata)

    def with_band(self, name: str, values: np.ndarray) -> "RasterFrame":
        bands = dict(self.bands)
        bands[name] = values
        return RasterFrame(self.timestamp, bands, self.grid, self.metadata)


def stack_values(rasters: Sequence[Raster]) -> np.ndarray:
    """Stack same-grid rasters into a (n, height, width) array."""
    if not rasters:
        raise ValueError("Cannot stack an empty raster sequence")
    grid = rasters[0].grid
    for r in rasters[1:]:
        if r.grid != grid:
            raise ValueError("All rasters in a stack must share one grid")
    return np.stack([r.data for r in rasters], axis=0)


def resample_raster(raster: Raster, scale: Optional[float]) -> Raster:
    """Resample to square pixels of `scale` CRS units.

    Coarsening averages the valid source pixels; refining uses nearest neighbour.
    A None scale, or one matching the native resolution, returns the raster unchanged.
    """
    if scale is None:
        return raster
    resx, resy = raster.grid.resolution
    if math.isclose(resx, scale, rel_tol=1e-9) and math.isclose(resy, scale, rel_tol=1e-9):
        return raster
    if not raster.grid.crs:
        raise ValueError("Resampling to a nominal scale needs a grid CRS")

    dst_grid = raster.grid.at_scale(scale)
    dst = np.full(dst_grid.shape, np.nan, dtype=np.float64)
    method = Resampling.average if scale > min(resx, resy) else Resampling.nearest
    reproject(
        source=np.array(raster.data),
        destination=dst,
        src_transform=raster.grid.transform,
        src_crs=raster.grid.crs,
        src_nodata=np.nan,
        dst_transform=dst_grid.transform,
        dst_crs=dst_grid.crs,
        dst_nodata=np.nan,
        resampling=method,
    )
    return Raster(dst, dst_grid, raster.name)


def inside_mask(geometry: Any, grid: RasterGrid, transform: Optional[Affine] = None, shape: Optional[Tuple[int, int]] = None) -> np.ndarray:
    """Boolean array, True where a pixel centre falls inside `geometry`.

    `transform`/`shape` describe a sub-window of the grid; they default to the whole grid.
    A None geometry selects every pixel.
    """
    shape = shape or grid.shape
    if geometry is None:
        return np.ones(shape, dtype=bool)
    return geometry_mask(
        [geometry],
        out_shape=shape,
        transform=transform if transform is not None else grid.transform,
        invert=True,
    )

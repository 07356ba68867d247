#!/usr/bin/env python3
"""zonal.py

Per-region reduction of rasters to scalars (zonal statistics).

A pixel belongs to a region when its centre falls inside the polygon. The region's
bounding window is processed in `tile_factor` row strips, one at a time, and the partial
statistics are merged; the result does not depend on the tile factor, only memory does.

A region with zero valid pixels reduces to None. That is a normal outcome (region outside
the data, fully masked year) and must never stop sibling regions or years.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np

from envtrend.geo.composite import CompositeImage
from envtrend.raster import Raster, inside_mask, resample_raster
from envtrend.registry.regions import Region, validate_geometry


REDUCERS = ("mean", "sum", "count", "min", "max", "median", "std")


def _as_raster(obj: Any) -> Raster:
    if isinstance(obj, Raster):
        return obj
    if isinstance(obj, CompositeImage):
        return obj.observed()
    if isinstance(getattr(obj, "raster", None), Raster):
        return obj.raster
    raise TypeError(f"Can't reduce {type(obj).__name__}; expected a Raster-like object")


def _row_strips(row0: int, row1: int, parts: int) -> List[Tuple[int, int]]:
    bounds = np.linspace(row0, row1, num=min(parts, row1 - row0) + 1).round().astype(int)
    return [(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]


@dataclass
class _Accumulator:
    """Mergeable running statistics (Chan et al. parallel variance for std)."""

    reducer: str
    n: int = 0
    weight: float = 0.0
    weighted_sum: float = 0.0
    total: float = 0.0
    mean: float = 0.0
    m2: float = 0.0
    lo: float = math.inf
    hi: float = -math.inf

    def __post_init__(self) -> None:
        self.values: List[np.ndarray] = []

    def add(self, values: np.ndarray, weights: np.ndarray) -> None:
        nb = int(values.size)
        if nb == 0:
            return
        self.weight += float(weights.sum())
        self.weighted_sum += float((values * weights).sum())
        self.total += float(values.sum())
        self.lo = min(self.lo, float(values.min()))
        self.hi = max(self.hi, float(values.max()))

        mean_b = float(values.mean())
        m2_b = float(((values - mean_b) ** 2).sum())
        n = self.n + nb
        delta = mean_b - self.mean
        self.mean += delta * nb / n
        self.m2 += m2_b + delta * delta * self.n * nb / n
        self.n = n

        if self.reducer == "median":
            self.values.append(values)

    def result(self) -> Optional[float]:
        if self.n == 0:
            return None
        if self.reducer == "mean":
            return self.weighted_sum / self.weight
        if self.reducer == "sum":
            return self.total
        if self.reducer == "count":
            return float(self.n)
        if self.reducer == "min":
            return self.lo
        if self.reducer == "max":
            return self.hi
        if self.reducer == "std":
            return math.sqrt(self.m2 / self.n)
        return float(np.median(np.concatenate(self.values)))


class RegionalAggregator:
    def __init__(self, scale: Optional[float] = None, tile_factor: int = 1):
        if tile_factor < 1:
            raise ValueError(f"tile_factor must be >= 1, got {tile_factor}")
        self.scale = scale
        self.tile_factor = int(tile_factor)

    def aggregate(
        self,
        raster_or_stack: Union[Any, Sequence[Any]],
        region: Union[Region, Any],
        reducer: str = "mean",
        scale: Optional[float] = None,
        tile_factor: Optional[int] = None,
    ) -> Union[Optional[float], List[Optional[float]]]:
        """Reduce a raster (or a sequence of rasters) to one scalar per raster over `region`.

        Args:
            raster_or_stack: Raster, CompositeImage, AnomalyRaster, or a sequence of them.
                Fallback composites are reduced as fully masked.
            region: Region (or a bare shapely polygon).
            reducer: one of REDUCERS. 'mean' is area-weighted (cos latitude on geographic grids).
            scale: nominal pixel size (CRS units) to reduce at; defaults to the aggregator's.
            tile_factor: row strips per region window; defaults to the aggregator's.

        Returns:
            A float, or None when the region has no valid pixel; a list for a stack.

        Raises:
            InvalidGeometryError: the region polygon is empty or degenerate.
        """
        if reducer not in REDUCERS:
            raise ValueError(f"Unknown reducer {reducer!r}; expected one of {REDUCERS}")
        if isinstance(region, Region):
            geom = validate_geometry(region.region_id, region.geometry)
        else:
            geom = validate_geometry("<geometry>", region)

        scale = self.scale if scale is None else scale
        tiles = self.tile_factor if tile_factor is None else int(tile_factor)
        if tiles < 1:
            raise ValueError(f"tile_factor must be >= 1, got {tiles}")

        if isinstance(raster_or_stack, (list, tuple)):
            return [self._reduce(_as_raster(r), geom, reducer, scale, tiles) for r in raster_or_stack]
        return self._reduce(_as_raster(raster_or_stack), geom, reducer, scale, tiles)

    def _reduce(self, raster: Raster, geom: Any, reducer: str, scale: Optional[float], tiles: int) -> Optional[float]:
        raster = resample_raster(raster, scale)
        grid = raster.grid
        window = grid.window_for_bounds(geom.bounds)
        if window is None:
            return None
        row0, row1, col0, col1 = window

        row_weights = None
        if grid.is_geographic:
            row_weights = np.cos(np.radians(grid.row_center_ys()))

        acc = _Accumulator(reducer)
        for a, b in _row_strips(row0, row1, tiles):
            block = raster.data[a:b, col0:col1]
            inside = inside_mask(
                geom, grid,
                transform=grid.window_transform(a, col0),
                shape=block.shape,
            )
            selected = inside & ~np.isnan(block)
            if not selected.any():
                continue
            if row_weights is None:
                weights = np.ones(int(selected.sum()))
            else:
                weights = np.broadcast_to(row_weights[a:b, None], block.shape)[selected]
            acc.add(block[selected], weights)
        return acc.result()

#!/usr/bin/env python3
"""trend.py

Ordinary least-squares trend of a yearly value against the year.

Two modes:
- pixel-wise: independent fit per pixel over stacked yearly composites -> slope/intercept rasters
- per-region: each yearly composite reduced to its area-weighted regional mean, then one fit

Null points (masked pixels, None region means, fallback years unless included) are dropped
before fitting. With fewer than 2 points left the slope and intercept are UNDEFINED
(None / NaN), never 0, and points_used still reports how many points there were.

Years are centred before fitting; raw calendar years squared lose precision in float64.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from numbers import Real
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from envtrend.geo.composite import CompositeImage
from envtrend.geo.zonal import RegionalAggregator
from envtrend.raster import Raster, RasterGrid, stack_values
from envtrend.registry.regions import Region


class TrendStatus(str, Enum):
    DEFINED = "DEFINED"
    UNDEFINED = "UNDEFINED"


@dataclass(frozen=True)
class TrendResult:
    slope: Optional[float]
    intercept: Optional[float]
    points_used: int
    region_id: Optional[str] = None

    @property
    def status(self) -> TrendStatus:
        return TrendStatus.UNDEFINED if self.slope is None else TrendStatus.DEFINED


@dataclass(frozen=True, eq=False)
class PixelTrendResult:
    slope: Raster
    intercept: Raster
    points_used: np.ndarray
    years: Tuple[int, ...]

    @property
    def grid(self) -> RasterGrid:
        return self.slope.grid

    @property
    def valid_pixel_count(self) -> int:
        return self.slope.valid_count

    def band(self, name: str) -> Raster:
        if name == "slope":
            return self.slope
        if name == "intercept":
            return self.intercept
        raise KeyError(f"Unknown trend band {name!r} (expected 'slope' or 'intercept')")

    def stack(self) -> List[Raster]:
        """Two-band (slope, intercept) form, for export."""
        return [self.slope, self.intercept]


def _check_years(years: Sequence[int]) -> None:
    if len(set(years)) != len(years):
        raise ValueError(f"Duplicate years in trend series: {list(years)}")


def _ols(x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Vectorised OLS along axis 0 with NaN points excluded.

    x has shape (n,), y has shape (n, ...). Returns (slope, intercept, points) with
    slope/intercept NaN wherever fewer than 2 points exist.
    """
    x0 = float(x.mean())
    xs = (x - x0).reshape((-1,) + (1,) * (y.ndim - 1))
    valid = ~np.isnan(y)
    n = valid.sum(axis=0)
    xv = np.where(valid, xs, 0.0)
    yv = np.where(valid, y, 0.0)
    sx = xv.sum(axis=0)
    sy = yv.sum(axis=0)
    sxx = (xv * xv).sum(axis=0)
    sxy = (xv * yv).sum(axis=0)
    den = n * sxx - sx * sx
    with np.errstate(divide="ignore", invalid="ignore"):
        slope = (n * sxy - sx * sy) / den
        intercept = (sy - slope * sx) / n - slope * x0
    ok = (n >= 2) & (den > 0)
    return np.where(ok, slope, np.nan), np.where(ok, intercept, np.nan), n


class TrendEstimator:
    def __init__(self, include_fallback: bool = False):
        self.include_fallback = include_fallback

    def fit_pixels(
        self,
        series: Sequence[Tuple[int, CompositeImage]],
        include_fallback: Optional[bool] = None,
    ) -> PixelTrendResult:
        """Independent OLS per pixel. `include_fallback` overrides the estimator default."""
        if include_fallback is None:
            include_fallback = self.include_fallback
        if not series:
            raise ValueError("Pixel-wise trend needs at least one yearly composite")
        years = [int(y) for y, _ in series]
        _check_years(years)
        rasters = [c.observed(include_fallback) for _, c in series]
        grid = rasters[0].grid

        slope, intercept, n = _ols(np.asarray(years, dtype=np.float64), stack_values(rasters))
        points = n.astype(np.int32)
        points.setflags(write=False)
        return PixelTrendResult(
            slope=Raster(slope, grid, "slope"),
            intercept=Raster(intercept, grid, "intercept"),
            points_used=points,
            years=tuple(years),
        )

    def fit_scalars(
        self, series: Sequence[Tuple[int, Optional[float]]], region_id: Optional[str] = None
    ) -> TrendResult:
        years = [int(y) for y, _ in series]
        _check_years(years)
        points = [(y, float(v)) for y, v in zip(years, (v for _, v in series)) if v is not None and not np.isnan(v)]
        if len(points) < 2:
            return TrendResult(None, None, len(points), region_id)
        x = np.array([p[0] for p in points], dtype=np.float64)
        y = np.array([p[1] for p in points], dtype=np.float64)
        slope, intercept, _ = _ols(x, y)
        return TrendResult(float(slope), float(intercept), len(points), region_id)

    def fit_region(
        self,
        series: Sequence[Tuple[int, CompositeImage]],
        region: Region,
        aggregator: Optional[RegionalAggregator] = None,
        scale: Optional[float] = None,
        tile_factor: Optional[int] = None,
    ) -> TrendResult:
        """Per-region trend over the region's yearly area-weighted means.

        Raises InvalidGeometryError for a degenerate region polygon.
        """
        aggregator = aggregator or RegionalAggregator()
        values = [
            (year, aggregator.aggregate(
                composite.observed(self.include_fallback), region, "mean",
                scale=scale, tile_factor=tile_factor,
            ))
            for year, composite in series
        ]
        return self.fit_scalars(values, region_id=region.region_id)

    def fit_trend(self, series: Sequence[Tuple[int, Any]]) -> Any:
        """Pixel-wise fit for composites, scalar fit for numbers/None."""
        if series and all(isinstance(v, CompositeImage) for _, v in series):
            return self.fit_pixels(series)
        if all(v is None or isinstance(v, Real) for _, v in series):
            return self.fit_scalars(series)
        raise TypeError("Trend series must hold either CompositeImages or scalars")

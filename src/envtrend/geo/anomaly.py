#!/usr/bin/env python3
"""anomaly.py

Target-year seasonal aggregate minus the multi-year baseline mean, per pixel.

Both operands are converted to output units (unit_scale, e.g. 1000 for m -> mm) before the
subtraction. When the baseline or the target has no data the result is UNDEFINED: fully
masked, with a reason string. It is never a raster of zeros.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Collection, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from envtrend.geo.composite import (
    AggregationOp,
    CompositeImage,
    CompositeStore,
    SeasonalCompositor,
    SeasonalWindow,
)
from envtrend.raster import Raster, RasterFrame, RasterGrid, stack_values


logger = logging.getLogger(__name__)

_MEAN = AggregationOp("mean")


class AnomalyStatus(str, Enum):
    VALID = "VALID"
    UNDEFINED = "UNDEFINED"


@dataclass(frozen=True, eq=False)
class AnomalyRaster:
    raster: Raster
    status: AnomalyStatus
    target_year: int
    baseline_years: Tuple[int, ...]
    unit_scale: float
    reason: Optional[str] = None

    @property
    def data(self) -> np.ndarray:
        return self.raster.data

    @property
    def grid(self) -> RasterGrid:
        return self.raster.grid

    @property
    def is_defined(self) -> bool:
        return self.status is AnomalyStatus.VALID


class BaselineAnomalyEngine:
    def __init__(self, composites: CompositeStore, include_fallback: bool = False):
        self.composites = composites
        self.include_fallback = include_fallback

    @classmethod
    def from_frames(
        cls,
        frames: Sequence[RasterFrame],
        *,
        grid: Optional[RasterGrid] = None,
        geometry: Any = None,
        schema: Optional[Collection[str]] = None,
        fallback_value: float = 0.0,
        include_fallback: bool = False,
    ) -> "BaselineAnomalyEngine":
        store = CompositeStore(
            frames,
            compositor=SeasonalCompositor(fallback_value=fallback_value, grid=grid),
            geometry=geometry,
            schema=schema,
        )
        return cls(store, include_fallback=include_fallback)

    def baseline_mean(
        self,
        baseline_years: Iterable[int],
        window: SeasonalWindow,
        band: str,
        op: AggregationOp,
    ) -> Tuple[Optional[Raster], List[int], List[CompositeImage]]:
        """Per-pixel mean of the baseline composites.

        Returns (mean raster or None, years averaged, every baseline composite).
        """
        series = self.composites.series(baseline_years, window, band, op)
        composites = [c for _, c in series]
        used = [c for c in composites if self.include_fallback or not c.is_fallback]
        if not used:
            return None, [], composites
        mean = _MEAN.reduce(stack_values([c.observed(self.include_fallback) for c in used]))
        return Raster(mean, used[0].grid, band), [c.year for c in used], composites

    def anomaly(
        self,
        baseline_years: Iterable[int],
        window: SeasonalWindow,
        target_year: int,
        band: str,
        op: AggregationOp,
        unit_scale: float = 1.0,
    ) -> AnomalyRaster:
        baseline_years = [int(y) for y in baseline_years]
        target = self.composites.get(target_year, window, band, op)
        grid = target.grid

        reasons = []
        mean: Optional[Raster] = None
        used: List[int] = []
        if not baseline_years:
            reasons.append("no baseline years requested")
        else:
            mean, used, composites = self.baseline_mean(baseline_years, window, band, op)
            if mean is None:
                frames = sum(c.source_frame_count for c in composites)
                reasons.append(
                    f"baseline {baseline_years[0]}-{baseline_years[-1]} has no data "
                    f"({len(composites)} years FALLBACK, {frames} frames)"
                )
        if target.is_fallback and not self.include_fallback:
            reasons.append(f"target year {target_year} has no data ({target.reason.value})")

        if not reasons:
            scale = float(unit_scale)
            target_scaled = target.observed(self.include_fallback).data * scale
            mean_scaled = mean.data * scale
            diff = target_scaled - mean_scaled
            if np.any(~np.isnan(diff)):
                logger.info(
                    "Anomaly %s vs %d baseline years (%s, x%g)",
                    target_year, len(used), op.name, scale,
                )
                return AnomalyRaster(
                    raster=Raster(diff, grid, f"{band}_anomaly"),
                    status=AnomalyStatus.VALID,
                    target_year=int(target_year),
                    baseline_years=tuple(used),
                    unit_scale=scale,
                )
            reasons.append("target and baseline share no valid pixel")

        reason = "; ".join(reasons)
        logger.warning("Anomaly %s UNDEFINED: %s", target_year, reason)
        return AnomalyRaster(
            raster=Raster(np.full(grid.shape, np.nan), grid, f"{band}_anomaly"),
            status=AnomalyStatus.UNDEFINED,
            target_year=int(target_year),
            baseline_years=tuple(used),
            unit_scale=float(unit_scale),
            reason=reason,
        )

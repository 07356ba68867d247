#!/usr/bin/env python3
"""composite.py

Seasonal compositing: reduce the frames of one year's seasonal window to a single raster.

Every requested year produces exactly one CompositeImage. When a year has nothing to offer
(no frames in the window, the band missing from every frame, or no unmasked pixel inside the
study geometry) the composite is a constant fallback raster tagged FALLBACK, so trend and
statistics code always sees a uniform one-per-year sequence and branches on the tag.

Per-unit stages (logged at DEBUG, recorded on the composite):
  RAW_FRAMES_FILTERED -> AGGREGATED -> BAND_PRESENCE_CHECKED -> DATA_PRESENCE_CHECKED -> FINALIZED
"""

from __future__ import annotations

import calendar
import logging
import re
import threading
import warnings
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Any, Collection, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import dask
import numpy as np
from dask import delayed
from dask.delayed import Delayed

from envtrend.errors import SchemaMismatchError
from envtrend.raster import Raster, RasterFrame, RasterGrid, inside_mask, stack_values


logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Seasonal window
# -----------------------------------------------------------------------------

def _clamped_date(year: int, month: int, day: int) -> datetime:
    """datetime for year/month/day, with day clamped to the month length (Feb 29 -> 28)."""
    last = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(day, last))


@dataclass(frozen=True)
class SeasonalWindow:
    """A month/day range reapplied to every calendar year.

    Bounds are [start, end) with the end day excluded, unless inclusive_end is set.
    A window whose end precedes its start runs into the following year.
    """

    start_month: int
    start_day: int
    end_month: int
    end_day: int
    inclusive_end: bool = False

    def __post_init__(self) -> None:
        for month, day in ((self.start_month, self.start_day), (self.end_month, self.end_day)):
            if not 1 <= month <= 12 or not 1 <= day <= 31:
                raise ValueError(f"Invalid seasonal window month/day: {month}/{day}")

    @classmethod
    def from_month_days(
        cls, start: Tuple[int, int], end: Tuple[int, int], inclusive_end: bool = False
    ) -> "SeasonalWindow":
        return cls(start[0], start[1], end[0], end[1], inclusive_end)

    @property
    def wraps_year(self) -> bool:
        return (self.end_month, self.end_day) < (self.start_month, self.start_day)

    def bounds(self, year: int) -> Tuple[datetime, datetime]:
        """(start, end) datetimes for `year`; end is exclusive."""
        start = _clamped_date(year, self.start_month, self.start_day)
        end = _clamped_date(year + 1 if self.wraps_year else year, self.end_month, self.end_day)
        if self.inclusive_end:
            end += timedelta(days=1)
        return start, end

    def contains(self, ts: datetime, year: int) -> bool:
        start, end = self.bounds(year)
        return start <= ts < end

    def date_range(self, years: Iterable[int]) -> Tuple[datetime, datetime]:
        """Overall [start, end) covering the window in every given year."""
        spans = [self.bounds(y) for y in years]
        if not spans:
            raise ValueError("date_range needs at least one year")
        return min(s for s, _ in spans), max(e for _, e in spans)

    def label(self) -> str:
        return f"{self.start_month:02d}-{self.start_day:02d}..{self.end_month:02d}-{self.end_day:02d}"


# -----------------------------------------------------------------------------
# Aggregation operator
# -----------------------------------------------------------------------------

_SIMPLE_OPS = ("sum", "mean", "median", "min", "max")
_PERCENTILE_RE = re.compile(r"^(?:p|percentile[_:]?)(\d+(?:\.\d+)?)$")


@dataclass(frozen=True)
class AggregationOp:
    kind: str
    q: Optional[float] = None

    @classmethod
    def parse(cls, text: str) -> "AggregationOp":
        """Parse 'sum', 'mean', 'median', 'min', 'max' or a percentile like 'p95'."""
        s = text.strip().lower()
        if s in _SIMPLE_OPS:
            return cls(s)
        m = _PERCENTILE_RE.match(s)
        if m:
            q = float(m.group(1))
            if not 0 <= q <= 100:
                raise ValueError(f"Percentile out of range: {text!r}")
            return cls("percentile", q)
        raise ValueError(f"Unknown aggregation operator: {text!r} (expected one of {_SIMPLE_OPS} or pNN)")

    @property
    def name(self) -> str:
        if self.kind == "percentile":
            return f"p{self.q:g}"
        return self.kind

    def reduce(self, stack: np.ndarray) -> np.ndarray:
        """Reduce a (n, h, w) stack along axis 0, ignoring NaN.

        A pixel masked in every layer stays NaN (a nansum of nothing is not 0 here).
        """
        count = np.count_nonzero(~np.isnan(stack), axis=0)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            if self.kind == "sum":
                out = np.nansum(stack, axis=0)
            elif self.kind == "mean":
                out = np.nanmean(stack, axis=0)
            elif self.kind == "median":
                out = np.nanmedian(stack, axis=0)
            elif self.kind == "min":
                out = np.nanmin(stack, axis=0)
            elif self.kind == "max":
                out = np.nanmax(stack, axis=0)
            else:
                out = np.nanpercentile(stack, self.q, axis=0)
        return np.where(count > 0, out, np.nan)

    def __str__(self) -> str:
        return self.name


# -----------------------------------------------------------------------------
# Composite image
# -----------------------------------------------------------------------------

class Presence(str, Enum):
    DATA = "DATA"
    FALLBACK = "FALLBACK"


class FallbackReason(str, Enum):
    NO_FRAMES = "no_frames"
    BAND_MISSING = "band_missing"
    NO_VALID_PIXELS = "no_valid_pixels"


class UnitStage(str, Enum):
    RAW_FRAMES_FILTERED = "RAW_FRAMES_FILTERED"
    AGGREGATED = "AGGREGATED"
    BAND_PRESENCE_CHECKED = "BAND_PRESENCE_CHECKED"
    DATA_PRESENCE_CHECKED = "DATA_PRESENCE_CHECKED"
    FINALIZED = "FINALIZED"


@dataclass(frozen=True, eq=False)
class CompositeImage:
    year: int
    band: str
    op: AggregationOp
    window: SeasonalWindow
    source_frame_count: int
    presence: Presence
    raster: Raster
    reason: Optional[FallbackReason] = None
    stages: Tuple[UnitStage, ...] = ()

    @property
    def data(self) -> np.ndarray:
        return self.raster.data

    @property
    def grid(self) -> RasterGrid:
        return self.raster.grid

    @property
    def is_fallback(self) -> bool:
        return self.presence is Presence.FALLBACK

    def observed(self, include_fallback: bool = False) -> Raster:
        """The raster statistics should see.

        A fallback composite is presented fully masked unless include_fallback is set,
        so its constant sentinel never passes for a measured value.
        """
        if self.is_fallback and not include_fallback:
            return Raster(np.full(self.grid.shape, np.nan), self.grid, self.band)
        return self.raster


# -----------------------------------------------------------------------------
# Compositor
# -----------------------------------------------------------------------------

class SeasonalCompositor:
    def __init__(self, fallback_value: float = 0.0, grid: Optional[RasterGrid] = None):
        self.fallback_value = float(fallback_value)
        self.grid = grid

    @staticmethod
    def filter_frames(frames: Iterable[RasterFrame], year: int, window: SeasonalWindow) -> List[RasterFrame]:
        start, end = window.bounds(year)
        return [f for f in frames if start <= f.timestamp < end]

    def _grid_for(self, frames: Sequence[RasterFrame], geometry: Any = None) -> RasterGrid:
        """Compositing grid: configured, else the first frame's.

        With neither (an empty collection) a single pixel over the geometry bounds, or
        over the unit square without a geometry, carries the FALLBACK composite.
        """
        if self.grid is not None:
            return self.grid
        if frames:
            return frames[0].grid
        if geometry is not None and not geometry.is_empty:
            xmin, ymin, xmax, ymax = geometry.bounds
            logger.warning("No frames and no grid: single-pixel fallback grid over %s", geometry.bounds)
            return RasterGrid.from_origin(xmin, ymax, max(xmax - xmin, 1e-9), max(ymax - ymin, 1e-9), 1, 1)
        logger.warning("No frames, grid or geometry: single-pixel fallback grid")
        return RasterGrid.from_origin(0.0, 1.0, 1.0, 1.0, 1, 1)

    def composite(
        self,
        frames: Sequence[RasterFrame],
        year: int,
        window: SeasonalWindow,
        band: str,
        op: AggregationOp,
        *,
        geometry: Any = None,
        schema: Optional[Collection[str]] = None,
    ) -> CompositeImage:
        """Composite one year's seasonal window.

        Raises SchemaMismatchError when `schema` is given and lacks `band`; every other
        shortfall yields a FALLBACK composite.
        """
        stages: List[UnitStage] = []

        def _advance(stage: UnitStage) -> None:
            stages.append(stage)
            logger.debug("composite %s %s: %s", year, band, stage.value)

        if schema is not None and band not in schema:
            raise SchemaMismatchError(band, schema)

        grid = self._grid_for(frames, geometry)
        in_window = self.filter_frames(frames, year, window)
        _advance(UnitStage.RAW_FRAMES_FILTERED)

        carrying = [f.band(band) for f in in_window if band in f.bands]
        aggregated = op.reduce(stack_values(carrying)) if carrying else None
        _advance(UnitStage.AGGREGATED)

        reason: Optional[FallbackReason] = None
        if not in_window:
            reason = FallbackReason.NO_FRAMES
        elif aggregated is None:
            reason = FallbackReason.BAND_MISSING
        _advance(UnitStage.BAND_PRESENCE_CHECKED)

        inside = inside_mask(geometry, grid)
        clipped = None
        if reason is None:
            clipped = np.where(inside, aggregated, np.nan)
            if not np.any(~np.isnan(clipped)):
                reason = FallbackReason.NO_VALID_PIXELS
        _advance(UnitStage.DATA_PRESENCE_CHECKED)

        if reason is None:
            presence = Presence.DATA
            raster = Raster(clipped, grid, band)
        else:
            presence = Presence.FALLBACK
            raster = Raster(np.where(inside, self.fallback_value, np.nan), grid, band)
        _advance(UnitStage.FINALIZED)

        if presence is Presence.FALLBACK:
            logger.warning(
                "Composite %s %s (%s, %s): FALLBACK (%s), %d frames in window",
                year, band, op.name, window.label(), reason.value, len(in_window),
            )
        else:
            logger.info(
                "Composite %s %s (%s, %s): DATA from %d frames",
                year, band, op.name, window.label(), len(in_window),
            )

        return CompositeImage(
            year=int(year),
            band=band,
            op=op,
            window=window,
            source_frame_count=len(in_window),
            presence=presence,
            raster=raster,
            reason=reason,
            stages=tuple(stages),
        )

    def composite_years(
        self,
        frames: Sequence[RasterFrame],
        years: Iterable[int],
        window: SeasonalWindow,
        band: str,
        op: AggregationOp,
        *,
        geometry: Any = None,
        schema: Optional[Collection[str]] = None,
    ) -> List[CompositeImage]:
        """One composite per requested year, in request order."""
        years = [int(y) for y in years]
        if len(set(years)) != len(years):
            raise ValueError(f"Duplicate years requested: {years}")
        return [
            self.composite(frames, y, window, band, op, geometry=geometry, schema=schema)
            for y in years
        ]


# -----------------------------------------------------------------------------
# Shared, lazily built composites
# -----------------------------------------------------------------------------

CompositeKey = Tuple[int, SeasonalWindow, str, AggregationOp]


class CompositeStore:
    """Yearly composites as dask.delayed nodes keyed by (year, window, band, op).

    Nothing is read or reduced until a composite is pulled. Pulled nodes are persisted
    together with the frames node, so each key is computed once and then shared by every
    consumer (anomaly, trend, regional statistics).
    """

    def __init__(
        self,
        frames: Union[Delayed, Sequence[RasterFrame]],
        *,
        compositor: Optional[SeasonalCompositor] = None,
        geometry: Any = None,
        schema: Optional[Collection[str]] = None,
    ):
        if not isinstance(frames, Delayed):
            frames = delayed(list(frames), traverse=False)
        self._frames: Delayed = frames
        self._frames_loaded = False
        self.compositor = compositor or SeasonalCompositor()
        self.geometry = geometry
        self.schema = schema
        self._nodes: Dict[CompositeKey, Delayed] = {}
        self._values: Dict[CompositeKey, CompositeImage] = {}
        self._lock = threading.RLock()

    def node(self, year: int, window: SeasonalWindow, band: str, op: AggregationOp) -> Delayed:
        """The delayed composite for one key; persisted once it has been pulled."""
        key = (int(year), window, band, op)
        with self._lock:
            node = self._nodes.get(key)
            if node is None:
                task = partial(
                    self.compositor.composite,
                    year=key[0], window=window, band=band, op=op,
                    geometry=self.geometry, schema=self.schema,
                )
                node = delayed(task, pure=False)(self._frames)
                self._nodes[key] = node
        return node

    def _materialize(self, keys: Sequence[CompositeKey]) -> None:
        with self._lock:
            pending = [k for k in dict.fromkeys(keys) if k not in self._values]
            if not pending:
                return
            frames, *nodes = dask.persist(self._frames, *(self.node(*k) for k in pending))
            values = dask.compute(*nodes)
            if not self._frames_loaded:
                self._frames = frames
                self._frames_loaded = True
                # unpulled nodes still point at the unpersisted frames
                self._nodes = {k: n for k, n in self._nodes.items() if k in self._values}
            for key, node, value in zip(pending, nodes, values):
                self._nodes[key] = node
                self._values[key] = value

    def get(self, year: int, window: SeasonalWindow, band: str, op: AggregationOp) -> CompositeImage:
        key = (int(year), window, band, op)
        self._materialize([key])
        return self._values[key]

    def series(
        self, years: Iterable[int], window: SeasonalWindow, band: str, op: AggregationOp
    ) -> List[Tuple[int, CompositeImage]]:
        """Composites for several years, computed in one dask pass."""
        years = [int(y) for y in years]
        if len(set(years)) != len(years):
            raise ValueError(f"Duplicate years requested: {years}")
        keys = [(y, window, band, op) for y in years]
        self._materialize(keys)
        return [(k[0], self._values[k]) for k in keys]

    def frames(self) -> Optional[List[RasterFrame]]:
        """The loaded frames, or None before the first composite is pulled."""
        if not self._frames_loaded:
            return None
        return self._frames.compute()

    def computed(self) -> List[CompositeImage]:
        """Composites that have been pulled successfully so far, sorted by year."""
        with self._lock:
            out = list(self._values.values())
        return sorted(out, key=lambda c: c.year)

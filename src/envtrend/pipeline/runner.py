#!/usr/bin/env python3
"""runner.py

End-to-end orchestration: frames -> yearly composites -> anomalies, trends, regional stats.

Construction only wires the dask graph. Frames are read the first time a composite is
pulled, and every (year, window, band, op) composite is persisted once and shared by all
consumers. Before a batch of units fans out, the composites it needs are computed in one
dask pass; anomalies are kept per target year once computed.

Units of work:
- composite per year
- anomaly per target year
- regional statistic per (region_id, year)
- regional trend per region_id

Units run on a bounded thread pool. Results are dicts sorted by key, so output never
depends on completion order. A fatal unit error (SchemaMismatchError, InvalidGeometryError)
becomes a UnitFailure under that unit's key; sibling units carry on.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Union

from dask import delayed

from envtrend.config import PipelineConfig
from envtrend.errors import EnvtrendError, UnitFailure
from envtrend.geo.anomaly import AnomalyRaster, BaselineAnomalyEngine
from envtrend.geo.composite import CompositeImage, CompositeStore, Presence, SeasonalCompositor
from envtrend.geo.trend import PixelTrendResult, TrendEstimator, TrendResult
from envtrend.geo.zonal import RegionalAggregator
from envtrend.ingest.indices import derive_index
from envtrend.ingest.sources import RasterTimeSeriesSource
from envtrend.raster import RasterFrame
from envtrend.registry.regions import Region, study_area


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegionYearStat:
    region_id: str
    year: int
    value: Optional[float]
    presence: Presence
    reducer: str = "mean"


@dataclass
class RunReport:
    frames_in_range: Optional[int] = None
    composites: Dict[str, int] = field(default_factory=dict)
    valid_trend_pixels: Optional[int] = None
    failed_units: List[UnitFailure] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def lines(self) -> List[str]:
        by_presence = ", ".join(f"{k}={v}" for k, v in sorted(self.composites.items())) or "none"
        out = [
            f"Frames in range: {'n/a' if self.frames_in_range is None else self.frames_in_range}",
            f"Composites: {by_presence}",
            f"Valid trend pixels: {'n/a' if self.valid_trend_pixels is None else self.valid_trend_pixels}",
            f"Failed units: {len(self.failed_units)}",
        ]
        for f in self.failed_units:
            out.append(f"  - {f.key}: {f.error_type}: {f.message}")
        out.append(f"Elapsed: {self.elapsed_seconds:.1f}s")
        return out


UnitResult = Union[Any, UnitFailure]


class AnomalyTrendPipeline:
    def __init__(
        self,
        source: RasterTimeSeriesSource,
        config: PipelineConfig,
        regions: Sequence[Region] = (),
        max_workers: Optional[int] = None,
    ):
        self.source = source
        self.config = config
        self.regions = list(regions)
        self.max_workers = max_workers or config.max_workers
        self.failures: List[UnitFailure] = []
        self._started = time.monotonic()
        self._pixel_trend: Optional[PixelTrendResult] = None
        self._anomalies: Dict[int, Union[AnomalyRaster, UnitFailure]] = {}

        # Frames are clipped to the union of regions; None reads the whole grid
        self.geometry = study_area(self.regions) if self.regions else None

        schema = set(source.band_names)
        if config.index:
            schema.add(config.band)

        self.composites = CompositeStore(
            delayed(self._load_frames, pure=False)(),
            compositor=SeasonalCompositor(fallback_value=config.fallback_value, grid=source.grid),
            geometry=self.geometry,
            schema=schema,
        )
        self.anomaly_engine = BaselineAnomalyEngine(self.composites, include_fallback=config.include_fallback)
        self.trend_estimator = TrendEstimator(include_fallback=config.include_fallback)
        self.aggregator = RegionalAggregator(scale=config.reduce_scale, tile_factor=config.tile_factor)

    # -------------------------------------------------------------------------
    # Frames and composites
    # -------------------------------------------------------------------------

    def _input_bands(self) -> List[str]:
        if self.config.index:
            return [str(b) for b in self.config.index.get("bands", [])]
        return [self.config.band]

    def _load_frames(self) -> List[RasterFrame]:
        cfg = self.config
        date_range = cfg.window.date_range(cfg.all_years)
        frames = self.source.query(self.geometry, date_range, self._input_bands())
        if cfg.index:
            frames = derive_index(frames, str(cfg.index.get("name", "")), self._input_bands(), out_band=cfg.band)
        logger.info(
            "Loaded %d frames in [%s, %s) for %s",
            len(frames), date_range[0].date(), date_range[1].date(), cfg.dataset_id or cfg.band,
        )
        return frames

    def _prefetch(self, years: Iterable[int]) -> None:
        """Compute the composites of `years` in one dask pass before units fan out."""
        cfg = self.config
        years = sorted(set(int(y) for y in years))
        try:
            self.composites.series(years, cfg.window, cfg.band, cfg.op)
        except EnvtrendError as e:
            # each unit pulls its own composite again and records the failure under its key
            logger.warning("Composite prefetch for %d years failed: %s", len(years), e)

    # -------------------------------------------------------------------------
    # Units
    # -------------------------------------------------------------------------

    def _run_units(self, units: Dict[Hashable, Callable[[], Any]]) -> Dict[Hashable, UnitResult]:
        results: Dict[Hashable, UnitResult] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_key = {executor.submit(fn): key for key, fn in units.items()}
            for future in as_completed(future_to_key):
                key = future_to_key[future]
                try:
                    results[key] = future.result()
                except EnvtrendError as e:
                    failure = UnitFailure.from_exception(key, e)
                    logger.warning("Unit %s failed: %s: %s", key, failure.error_type, failure.message)
                    self.failures.append(failure)
                    results[key] = failure
        return dict(sorted(results.items()))

    def yearly_composites(self, years: Optional[Sequence[int]] = None) -> Dict[int, Union[CompositeImage, UnitFailure]]:
        """One composite per year (DATA or FALLBACK), keyed by year."""
        cfg = self.config
        years = [int(y) for y in years] if years is not None else cfg.all_years
        self._prefetch(years)
        units = {y: (lambda y=y: self.composites.get(y, cfg.window, cfg.band, cfg.op)) for y in years}
        return self._run_units(units)

    def anomalies(self, years: Optional[Sequence[int]] = None) -> Dict[int, Union[AnomalyRaster, UnitFailure]]:
        """One anomaly raster per target year, in output units.

        Each year is computed once per pipeline; later calls reuse it.
        """
        cfg = self.config
        years = [int(y) for y in years] if years is not None else list(cfg.target_years)
        pending = [y for y in years if y not in self._anomalies]
        if pending:
            self._prefetch(list(cfg.baseline_years) + pending)
            units = {
                year: (lambda y=year: self.anomaly_engine.anomaly(
                    cfg.baseline_years, cfg.window, y, cfg.band, cfg.op, unit_scale=cfg.unit_scale,
                ))
                for year in pending
            }
            self._anomalies.update(self._run_units(units))
        return {y: self._anomalies[y] for y in sorted(set(years))}

    def pixel_trend(self) -> PixelTrendResult:
        """Pixel-wise slope/intercept over the trend years."""
        cfg = self.config
        series = self.composites.series(cfg.trend_years, cfg.window, cfg.band, cfg.op)
        self._pixel_trend = self.trend_estimator.fit_pixels(series)
        return self._pixel_trend

    def _region_stat(self, region: Region, year: int) -> RegionYearStat:
        cfg = self.config
        composite = self.composites.get(year, cfg.window, cfg.band, cfg.op)
        value = self.aggregator.aggregate(composite.observed(cfg.include_fallback), region, cfg.reducer)
        return RegionYearStat(region.region_id, year, value, composite.presence, cfg.reducer)

    def region_year_stats(self, years: Optional[Sequence[int]] = None) -> Dict[Any, Union[RegionYearStat, UnitFailure]]:
        """Regional statistic of every yearly composite, keyed (region_id, year)."""
        years = [int(y) for y in years] if years is not None else self.config.all_years
        self._prefetch(years)
        units = {
            (r.region_id, y): (lambda r=r, y=y: self._region_stat(r, y))
            for r in self.regions
            for y in years
        }
        return self._run_units(units)

    def _region_trend(self, region: Region) -> TrendResult:
        cfg = self.config
        series = self.composites.series(cfg.trend_years, cfg.window, cfg.band, cfg.op)
        return self.trend_estimator.fit_region(series, region, self.aggregator)

    def region_trends(self) -> Dict[str, Union[TrendResult, UnitFailure]]:
        """Trend of each region's yearly area-weighted mean, keyed by region_id."""
        self._prefetch(self.config.trend_years)
        units = {r.region_id: (lambda r=r: self._region_trend(r)) for r in self.regions}
        return self._run_units(units)

    def _region_anomaly(self, region: Region, anomaly: AnomalyRaster) -> Optional[float]:
        if not anomaly.is_defined:
            return None
        return self.aggregator.aggregate(anomaly.raster, region, self.config.reducer)

    def region_anomalies(self) -> Dict[Any, Union[Optional[float], UnitFailure]]:
        """Regional statistic of each target-year anomaly, keyed (region_id, year).

        A target year whose anomaly failed carries that failure for every region.
        """
        anomalies = self.anomalies()
        results: Dict[Hashable, UnitResult] = {}
        units: Dict[Hashable, Callable[[], Any]] = {}
        for year, anomaly in anomalies.items():
            for r in self.regions:
                key = (r.region_id, year)
                if isinstance(anomaly, UnitFailure):
                    results[key] = UnitFailure(key, anomaly.error_type, anomaly.message)
                else:
                    units[key] = (lambda r=r, a=anomaly: self._region_anomaly(r, a))
        results.update(self._run_units(units))
        return dict(sorted(results.items()))

    # -------------------------------------------------------------------------
    # Report
    # -------------------------------------------------------------------------

    def report(self) -> RunReport:
        frames = self.composites.frames()
        counts: Dict[str, int] = {}
        for c in self.composites.computed():
            counts[c.presence.value] = counts.get(c.presence.value, 0) + 1
        return RunReport(
            frames_in_range=None if frames is None else len(frames),
            composites=counts,
            valid_trend_pixels=self._pixel_trend.valid_pixel_count if self._pixel_trend else None,
            failed_units=list(self.failures),
            elapsed_seconds=time.monotonic() - self._started,
        )

#!/usr/bin/env python3

from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

import numpy as np

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from envtrend.geo.anomaly import AnomalyStatus, BaselineAnomalyEngine
from envtrend.geo.composite import AggregationOp, SeasonalWindow
from envtrend.raster import RasterFrame, RasterGrid

GRID = RasterGrid.from_origin(0, 3, 1, 1, 3, 3)
WINDOW = SeasonalWindow(3, 1, 9, 30)
SUM = AggregationOp.parse("sum")


def _frames(values_by_year, sign=1.0):
    """Two frames per year (Apr 1 and Jul 1), each carrying half the yearly total."""
    frames = []
    for year, total in values_by_year.items():
        for month in (4, 7):
            frames.append(RasterFrame(date(year, month, 1), {"e": np.full(GRID.shape, sign * total / 2.0)}, GRID))
    return frames


def test_anomaly_is_target_minus_baseline_mean():
    engine = BaselineAnomalyEngine.from_frames(_frames({2001: 2.0, 2002: 4.0, 2003: 7.0}), grid=GRID)
    a = engine.anomaly([2001, 2002], WINDOW, 2003, "e", SUM)
    assert a.status is AnomalyStatus.VALID
    assert a.baseline_years == (2001, 2002)
    assert np.allclose(a.data, 4.0)


def test_unit_scale_applies_to_both_operands():
    engine = BaselineAnomalyEngine.from_frames(_frames({2001: 0.002, 2002: 0.004, 2003: 0.007}), grid=GRID)
    a = engine.anomaly([2001, 2002], WINDOW, 2003, "e", SUM, unit_scale=1000.0)
    assert np.allclose(a.data, 4.0)
    assert a.unit_scale == 1000.0


def test_negated_dataset_flips_sign():
    values = {2001: 2.0, 2002: 4.0, 2003: 7.0}
    pos = BaselineAnomalyEngine.from_frames(_frames(values), grid=GRID).anomaly([2001, 2002], WINDOW, 2003, "e", SUM)
    neg = BaselineAnomalyEngine.from_frames(_frames(values, sign=-1.0), grid=GRID).anomaly(
        [2001, 2002], WINDOW, 2003, "e", SUM
    )
    assert np.allclose(neg.data, -pos.data)


def test_long_baseline_sum_in_millimetres():
    # 42 baseline years 1981-2022, yearly sums in metres; target 2023
    totals = {y: 0.300 + 0.001 * (y - 1981) for y in range(1981, 2023)}
    totals[2023] = 0.500
    engine = BaselineAnomalyEngine.from_frames(_frames(totals), grid=GRID)
    a = engine.anomaly(range(1981, 2023), WINDOW, 2023, "e", SUM, unit_scale=1000.0)

    m = np.mean([totals[y] for y in range(1981, 2023)])
    assert len(a.baseline_years) == 42
    assert np.allclose(a.data, 0.500 * 1000.0 - m * 1000.0)


def test_masked_pixel_stays_masked():
    frames = _frames({2001: 2.0, 2003: 5.0})
    hole = np.full(GRID.shape, 2.5)
    hole[1, 1] = np.nan
    frames = [f for f in frames if f.timestamp.year != 2003]
    frames += [RasterFrame(date(2003, 4, 1), {"e": hole}, GRID), RasterFrame(date(2003, 7, 1), {"e": hole}, GRID)]
    a = BaselineAnomalyEngine.from_frames(frames, grid=GRID).anomaly([2001], WINDOW, 2003, "e", SUM)
    assert a.is_defined
    assert np.isnan(a.data[1, 1])
    assert a.data[0, 0] == 3.0


def test_empty_baseline_is_undefined_not_zero():
    engine = BaselineAnomalyEngine.from_frames(_frames({2003: 7.0}), grid=GRID)
    a = engine.anomaly([2001, 2002], WINDOW, 2003, "e", SUM)
    assert a.status is AnomalyStatus.UNDEFINED
    assert "baseline" in a.reason
    assert np.all(np.isnan(a.data))


def test_empty_target_is_undefined():
    engine = BaselineAnomalyEngine.from_frames(_frames({2001: 2.0}), grid=GRID)
    a = engine.anomaly([2001], WINDOW, 2005, "e", SUM)
    assert a.status is AnomalyStatus.UNDEFINED
    assert "target year 2005" in a.reason
    assert "no_frames" in a.reason


def test_empty_collection_without_grid_is_undefined():
    engine = BaselineAnomalyEngine.from_frames([])
    a = engine.anomaly([2001, 2002], WINDOW, 2003, "e", SUM)
    assert a.status is AnomalyStatus.UNDEFINED
    assert "baseline 2001-2002 has no data" in a.reason
    assert "target year 2003" in a.reason
    assert np.all(np.isnan(a.data))


def test_no_baseline_years_requested_is_undefined():
    engine = BaselineAnomalyEngine.from_frames(_frames({2003: 7.0}), grid=GRID)
    a = engine.anomaly([], WINDOW, 2003, "e", SUM)
    assert not a.is_defined


def test_fallback_baseline_years_are_skipped():
    # 2002 has no frames; only 2001 enters the mean
    engine = BaselineAnomalyEngine.from_frames(_frames({2001: 2.0, 2003: 7.0}), grid=GRID)
    a = engine.anomaly([2001, 2002], WINDOW, 2003, "e", SUM)
    assert a.baseline_years == (2001,)
    assert np.allclose(a.data, 5.0)


def test_fallback_included_when_requested():
    engine = BaselineAnomalyEngine.from_frames(_frames({2001: 2.0, 2003: 7.0}), grid=GRID, include_fallback=True)
    a = engine.anomaly([2001, 2002], WINDOW, 2003, "e", SUM)
    assert a.baseline_years == (2001, 2002)
    # mean of 2.0 and the 0.0 sentinel
    assert np.allclose(a.data, 6.0)

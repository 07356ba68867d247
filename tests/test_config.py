#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from envtrend import config as cfgmod
from envtrend.geo.composite import AggregationOp, SeasonalWindow


BASE = {
    "dataset_id": "ECMWF/ERA5_LAND/DAILY_AGGR",
    "band": "total_evaporation_sum",
    "aggregation": "sum",
    "season": {"start": "03-01", "end": "09-30"},
    "baseline": {"start": 1981, "end": 2022},
    "target_years": [2023],
}


def test_parse_month_day_forms():
    assert cfgmod.parse_month_day("03-01") == (3, 1)
    assert cfgmod.parse_month_day("6/17") == (6, 17)
    assert cfgmod.parse_month_day([12, 31]) == (12, 31)
    with pytest.raises(ValueError):
        cfgmod.parse_month_day("13-01")
    with pytest.raises(ValueError):
        cfgmod.parse_month_day("0301")


def test_parse_year_range():
    assert cfgmod.parse_year_range({"start": 2010, "end": 2022}, "baseline") == (2010, 2022)
    assert cfgmod.parse_year_range([2010, 2010], "baseline") == (2010, 2010)
    with pytest.raises(SystemExit):
        cfgmod.parse_year_range({"start": 2022, "end": 2010}, "baseline")
    with pytest.raises(SystemExit):
        cfgmod.parse_year_range({"start": 2022}, "baseline")


def test_config_from_mapping_defaults():
    cfg = cfgmod.PipelineConfig.from_mapping(BASE)
    assert cfg.op == AggregationOp("sum")
    assert cfg.window == SeasonalWindow(3, 1, 9, 30)
    assert len(cfg.baseline_years) == 42
    assert cfg.target_years == (2023,)
    # trend defaults to baseline start .. last target
    assert (cfg.trend_start, cfg.trend_end) == (1981, 2023)
    assert cfg.unit_scale == 1.0
    assert cfg.nodata == -9999.0
    assert cfg.include_fallback is False
    assert cfg.all_years == list(range(1981, 2024))


def test_config_overrides():
    data = dict(
        BASE,
        aggregation="p95",
        season={"start": [12, 1], "end": "02-28", "inclusive_end": True},
        target_years=2024,
        trend_years=[2015, 2024],
        unit_scale=1000,
        export_scale=30,
        tile_factor=4,
        include_fallback=True,
        index={"name": "ndvi", "bands": ["B8", "B4"]},
    )
    cfg = cfgmod.PipelineConfig.from_mapping(data)
    assert cfg.op.name == "p95"
    assert cfg.window.wraps_year and cfg.window.inclusive_end
    assert cfg.target_years == (2024,)
    assert cfg.trend_years[0] == 2015
    assert cfg.unit_scale == 1000.0
    assert cfg.export_scale == 30.0
    assert cfg.reduce_scale is None
    assert cfg.tile_factor == 4
    assert cfg.index["bands"] == ["B8", "B4"]


@pytest.mark.parametrize(
    "patch",
    [
        {"aggregation": "mode"},
        {"season": {"start": "03-01"}},
        {"season": {"start": "03-01", "end": "14-01"}},
        {"target_years": []},
        {"tile_factor": 0},
        {"max_workers": 0},
        {"index": ["ndvi"]},
    ],
)
def test_bad_config_fails_fast(patch):
    with pytest.raises(SystemExit):
        cfgmod.PipelineConfig.from_mapping(dict(BASE, **patch))


def test_missing_required_key():
    data = dict(BASE)
    del data["band"]
    with pytest.raises(SystemExit, match="band"):
        cfgmod.PipelineConfig.from_mapping(data)


def test_load_yaml(tmp_path):
    p = tmp_path / "pipeline.yaml"
    p.write_text("band: pr\naggregation: sum\nseason: {start: '03-01', end: '09-30'}\n"
                 "baseline: {start: 2000, end: 2001}\ntarget_years: [2002]\n", encoding="utf-8")
    cfg = cfgmod.load_pipeline_config(p)
    assert cfg.band == "pr"

    with pytest.raises(SystemExit):
        cfgmod.load_yaml(tmp_path / "missing.yaml")
    bad = tmp_path / "list.yaml"
    bad.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        cfgmod.load_yaml(bad)


def test_example_config_parses():
    cfg = cfgmod.load_pipeline_config(ROOT / "config" / "pipeline.example.yaml")
    assert cfg.band
    assert cfg.target_years

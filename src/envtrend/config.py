#!/usr/bin/env python3
"""envtrend.config

Shared configuration utilities for envtrend CLI subsystems.

This module provides the helpers used across envtrend.registry, envtrend.pipeline, etc.
Centralizing these avoids duplication and ensures consistent behavior.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- PipelineConfig is built once from the YAML mapping and is immutable afterwards.
- Config errors fail fast with SystemExit, like every other CLI entrypoint here.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from envtrend.geo.composite import AggregationOp, SeasonalWindow


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


# -----------------------------------------------------------------------------
# Value coercion
# -----------------------------------------------------------------------------

def parse_month_day(x: Any) -> Tuple[int, int]:
    """Coerce "MM-DD", "MM/DD" or [month, day] into a (month, day) tuple."""
    if isinstance(x, (list, tuple)) and len(x) == 2:
        month, day = int(x[0]), int(x[1])
    elif isinstance(x, str):
        parts = x.replace("/", "-").split("-")
        if len(parts) != 2:
            raise ValueError(f"Expected MM-DD, got {x!r}")
        month, day = int(parts[0]), int(parts[1])
    else:
        raise ValueError(f"Expected MM-DD or [month, day], got {x!r}")
    if not 1 <= month <= 12 or not 1 <= day <= 31:
        raise ValueError(f"Month/day out of range: {x!r}")
    return month, day


def parse_year_range(x: Any, label: str) -> Tuple[int, int]:
    """Coerce {start, end} or [start, end] into an inclusive year range."""
    if isinstance(x, dict):
        start, end = x.get("start"), x.get("end")
    elif isinstance(x, (list, tuple)) and len(x) == 2:
        start, end = x
    else:
        raise SystemExit(f"{label} must be {{start, end}} or [start, end], got {x!r}")
    if start is None or end is None:
        raise SystemExit(f"{label} needs both start and end")
    start, end = int(start), int(end)
    if start > end:
        raise SystemExit(f"{label}: start ({start}) must be <= end ({end})")
    return start, end


# -----------------------------------------------------------------------------
# Pipeline configuration
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineConfig:
    dataset_id: str
    band: str
    op: AggregationOp
    window: SeasonalWindow
    baseline_start: int
    baseline_end: int
    target_years: Tuple[int, ...]
    trend_start: int
    trend_end: int
    unit_scale: float = 1.0
    nodata: float = -9999.0
    export_scale: Optional[float] = None
    reduce_scale: Optional[float] = None
    tile_factor: int = 1
    reducer: str = "mean"
    fallback_value: float = 0.0
    include_fallback: bool = False
    max_workers: int = 4
    index: Optional[Dict[str, Any]] = None
    source: Dict[str, Any] = field(default_factory=dict)
    regions: Dict[str, Any] = field(default_factory=dict)
    output_dir: Path = Path("data/outputs")

    @property
    def baseline_years(self) -> List[int]:
        return list(range(self.baseline_start, self.baseline_end + 1))

    @property
    def trend_years(self) -> List[int]:
        return list(range(self.trend_start, self.trend_end + 1))

    @property
    def all_years(self) -> List[int]:
        """Every year any stage needs, sorted and unique."""
        return sorted(set(self.baseline_years) | set(self.target_years) | set(self.trend_years))

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """Build a config from a parsed YAML mapping.

        Raises SystemExit with a readable message on missing or malformed keys.
        """
        for key in ("band", "aggregation", "season", "baseline", "target_years"):
            if key not in data:
                raise SystemExit(f"Pipeline config missing required key: {key}")

        season = data["season"]
        if not isinstance(season, dict) or "start" not in season or "end" not in season:
            raise SystemExit("season must be a mapping with start and end (MM-DD)")
        try:
            window = SeasonalWindow.from_month_days(
                parse_month_day(season["start"]),
                parse_month_day(season["end"]),
                inclusive_end=bool(season.get("inclusive_end", False)),
            )
            op = AggregationOp.parse(str(data["aggregation"]))
        except ValueError as e:
            raise SystemExit(f"Invalid pipeline config: {e}") from e

        baseline_start, baseline_end = parse_year_range(data["baseline"], "baseline")

        targets = data["target_years"]
        if isinstance(targets, int):
            targets = [targets]
        if not isinstance(targets, list) or not targets:
            raise SystemExit("target_years must be a non-empty list of years")
        target_years = tuple(sorted(set(int(y) for y in targets)))

        if data.get("trend_years") is not None:
            trend_start, trend_end = parse_year_range(data["trend_years"], "trend_years")
        else:
            trend_start, trend_end = baseline_start, max(target_years)

        tile_factor = int(data.get("tile_factor", 1))
        if tile_factor < 1:
            raise SystemExit(f"tile_factor must be >= 1, got {tile_factor}")
        max_workers = int(data.get("max_workers", 4))
        if max_workers < 1:
            raise SystemExit(f"max_workers must be >= 1, got {max_workers}")

        index = data.get("index")
        if index is not None and not isinstance(index, dict):
            raise SystemExit("index must be a mapping like {name: ndvi, bands: [B8, B4]}")

        def _opt_float(key: str) -> Optional[float]:
            v = data.get(key)
            return None if v is None else float(v)

        return cls(
            dataset_id=str(data.get("dataset_id", "")),
            band=str(data["band"]),
            op=op,
            window=window,
            baseline_start=baseline_start,
            baseline_end=baseline_end,
            target_years=target_years,
            trend_start=trend_start,
            trend_end=trend_end,
            unit_scale=float(data.get("unit_scale", 1.0)),
            nodata=float(data.get("nodata", -9999)),
            export_scale=_opt_float("export_scale"),
            reduce_scale=_opt_float("reduce_scale"),
            tile_factor=tile_factor,
            reducer=str(data.get("reducer", "mean")),
            fallback_value=float(data.get("fallback_value", 0.0)),
            include_fallback=bool(data.get("include_fallback", False)),
            max_workers=max_workers,
            index=index,
            source=dict(data.get("source") or {}),
            regions=dict(data.get("regions") or {}),
            output_dir=Path(data.get("output_dir", "data/outputs")),
        )


def load_pipeline_config(path: Path) -> PipelineConfig:
    return PipelineConfig.from_mapping(load_yaml(path))


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_PIPELINE_YAML = Path("config/pipeline.yaml")
DEFAULT_REGIONS_GPKG = Path("data/interim/vectors/regions.gpkg")

#!/usr/bin/env python3
"""envtrend.pipeline

Anomaly / trend / regional statistics CLI for envtrend.

This is one of the envtrend subsystem CLIs:
- envtrend.registry → region definition (prep-regions)
- envtrend.pipeline → compositing, anomalies, trends, regional stats (this file)

Everything is driven by one pipeline YAML (see config/pipeline.example.yaml):
dataset/band, seasonal window, aggregation operator, baseline and target years,
frame source, and region file.

Outputs (under output_dir):
- <band>_<op>_composite_<year>.tif          → one seasonal composite per year (DATA or FALLBACK)
- <band>_<op>_anomaly_<year>.tif            → one anomaly GeoTIFF per target year
- <band>_<op>_trend_<start>_<end>.tif        → two-band slope/intercept GeoTIFF
- <band>_<op>_region_trends.csv             → per-region slope/intercept/points_used
- <band>_<op>_region_stats.csv              → per-(region, year) statistic

Design notes:
- Existing outputs are skipped unless --overwrite
- --dry-run prints the plan and touches nothing
- Every command ends with a run report (frames, composites by presence, failures, time)

Examples:
  python -m envtrend.pipeline --config config/pipeline.yaml run
  python -m envtrend.pipeline --config config/pipeline.yaml composites
  python -m envtrend.pipeline --config config/pipeline.yaml anomaly
  python -m envtrend.pipeline --config config/pipeline.yaml -v trend
  python -m envtrend.pipeline --config config/pipeline.yaml --dry-run region-stats
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from envtrend.config import (
    PipelineConfig,
    load_pipeline_config,
    DEFAULT_PIPELINE_YAML,
)


# -----------------------------------------------------------------------------
# Output paths
# -----------------------------------------------------------------------------

def _prefix(cfg: PipelineConfig) -> str:
    return f"{cfg.band}_{cfg.op.name}"


def composite_path(cfg: PipelineConfig, year: int) -> Path:
    return cfg.output_dir / f"{_prefix(cfg)}_composite_{year}.tif"


def anomaly_path(cfg: PipelineConfig, year: int) -> Path:
    return cfg.output_dir / f"{_prefix(cfg)}_anomaly_{year}.tif"


def trend_raster_path(cfg: PipelineConfig) -> Path:
    return cfg.output_dir / f"{_prefix(cfg)}_trend_{cfg.trend_start}_{cfg.trend_end}.tif"


def trend_table_path(cfg: PipelineConfig) -> Path:
    return cfg.output_dir / f"{_prefix(cfg)}_region_trends.csv"


def region_stats_path(cfg: PipelineConfig) -> Path:
    return cfg.output_dir / f"{_prefix(cfg)}_region_stats.csv"


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for envtrend.pipeline."""
    ap = argparse.ArgumentParser(
        prog="envtrend.pipeline",
        description="Seasonal composites, baseline anomalies, trends and regional statistics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m envtrend.registry  # Region definition
  python -m envtrend.pipeline  # Anomalies, trends, regional stats (this)
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_PIPELINE_YAML,
        help=f"Path to pipeline YAML (default: {DEFAULT_PIPELINE_YAML})",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without reading frames or writing files",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files",
    )
    ap.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging (per-unit stage transitions)",
    )

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Composites, anomalies, trends and regional stats in one pass")
    sub.add_parser("composites", help="One seasonal composite GeoTIFF per year")
    sub.add_parser("anomaly", help="One anomaly GeoTIFF per target year")
    sub.add_parser("trend", help="Pixel-wise trend GeoTIFF and per-region trend CSV")
    sub.add_parser("region-stats", help="Per-(region, year) statistics table")

    return ap


# -----------------------------------------------------------------------------
# Shared setup
# -----------------------------------------------------------------------------

def _print_plan(cfg: PipelineConfig, command: str) -> None:
    print(f"[dry-run] Would run '{command}':")
    print(f"  Dataset/band: {cfg.dataset_id or '-'} / {cfg.band} ({cfg.op.name})")
    print(f"  Season: {cfg.window.label()} (end {'inclusive' if cfg.window.inclusive_end else 'exclusive'})")
    print(f"  Baseline: {cfg.baseline_start}-{cfg.baseline_end}")
    print(f"  Targets: {list(cfg.target_years)}")
    print(f"  Trend years: {cfg.trend_start}-{cfg.trend_end}")
    print(f"  Source: {cfg.source}")
    print(f"  Regions: {cfg.regions.get('path', '-')}")
    print(f"  Output dir: {cfg.output_dir}")


def _build_pipeline(cfg: PipelineConfig):
    # Lazy imports to keep CLI startup fast
    from envtrend.ingest.sources import source_from_config
    from envtrend.pipeline.runner import AnomalyTrendPipeline
    from envtrend.registry.regions import load_regions

    source = source_from_config(cfg.source)

    regions = []
    if cfg.regions.get("path"):
        regions = load_regions(
            Path(cfg.regions["path"]),
            name_property=str(cfg.regions.get("name_property", "Name")),
            id_property=cfg.regions.get("id_property", "id"),
            target_crs=source.crs,
            layer=cfg.regions.get("layer"),
        )
    return AnomalyTrendPipeline(source, cfg, regions)


def _skip(path: Path, overwrite: bool) -> bool:
    if path.exists() and not overwrite:
        print(f"[SKIP] {path} (exists; use --overwrite)")
        return True
    return False


# -----------------------------------------------------------------------------
# Command steps
# -----------------------------------------------------------------------------

def _write_composites(pipeline, cfg: PipelineConfig, overwrite: bool) -> None:
    from envtrend.errors import UnitFailure
    from envtrend.geo.export import write_raster

    pending = [y for y in cfg.all_years if not _skip(composite_path(cfg, y), overwrite)]
    if not pending:
        return
    for year, composite in pipeline.yearly_composites(pending).items():
        if isinstance(composite, UnitFailure):
            print(f"[FAIL] composite {year}: {composite.error_type}: {composite.message}")
            continue
        tags = {
            "year": year,
            "band": composite.band,
            "aggregation": composite.op.name,
            "season": composite.window.label(),
            "presence": composite.presence.value,
            "reason": composite.reason.value if composite.reason else "",
            "source_frames": composite.source_frame_count,
        }
        raster = composite.raster.renamed(f"{_prefix(cfg)}_{year}")
        out = write_raster(composite_path(cfg, year), raster, nodata=cfg.nodata, scale=cfg.export_scale, tags=tags)
        if composite.is_fallback:
            print(f"Wrote composite {year} -> {out} (FALLBACK: {composite.reason.value})")
        else:
            print(f"Wrote composite {year} -> {out} ({composite.source_frame_count} frames)")


def _write_anomalies(pipeline, cfg: PipelineConfig, overwrite: bool) -> None:
    from envtrend.errors import UnitFailure
    from envtrend.geo.export import write_raster

    pending = [y for y in cfg.target_years if not _skip(anomaly_path(cfg, y), overwrite)]
    if not pending:
        return
    for year, result in pipeline.anomalies(pending).items():
        if isinstance(result, UnitFailure):
            print(f"[FAIL] anomaly {year}: {result.error_type}: {result.message}")
            continue
        if not result.is_defined:
            print(f"[UNDEFINED] anomaly {year}: {result.reason}")
            continue
        out = write_raster(anomaly_path(cfg, year), result.raster, nodata=cfg.nodata, scale=cfg.export_scale)
        print(f"Wrote anomaly {year} -> {out}")


def _write_trends(pipeline, cfg: PipelineConfig, overwrite: bool) -> None:
    from envtrend.errors import EnvtrendError, UnitFailure
    from envtrend.geo.export import write_raster, write_trend_table

    raster_out = trend_raster_path(cfg)
    if not _skip(raster_out, overwrite):
        try:
            trend = pipeline.pixel_trend()
        except EnvtrendError as e:
            raise SystemExit(f"Pixel-wise trend failed: {e}") from e
        write_raster(raster_out, trend.stack(), nodata=cfg.nodata, scale=cfg.export_scale)
        print(f"Wrote trend (slope, intercept) -> {raster_out}")
        print(f"  {trend.valid_pixel_count} pixels with a defined slope")

    table_out = trend_table_path(cfg)
    if not pipeline.regions:
        print("No regions configured; skipping per-region trends")
        return
    if _skip(table_out, overwrite):
        return
    results = pipeline.region_trends()
    trends = [r for r in results.values() if not isinstance(r, UnitFailure)]
    write_trend_table(table_out, trends)
    print(f"Wrote {len(trends)} region trends -> {table_out}")
    for t in trends:
        if t.slope is None:
            print(f"  - {t.region_id} | UNDEFINED | points_used={t.points_used}")
        else:
            print(f"  - {t.region_id} | slope={t.slope:.6g} | points_used={t.points_used}")


def _write_region_stats(pipeline, cfg: PipelineConfig, overwrite: bool) -> None:
    from envtrend.geo.export import write_region_stats_table

    out = region_stats_path(cfg)
    if not pipeline.regions:
        print("No regions configured; skipping regional stats")
        return
    if _skip(out, overwrite):
        return
    stats = pipeline.region_year_stats()
    write_region_stats_table(out, stats)
    print(f"Wrote {len(stats)} region-year rows -> {out}")


def _print_report(pipeline) -> None:
    print("--- Run report ---")
    for line in pipeline.report().lines():
        print(line)


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _run_steps(args: argparse.Namespace, steps) -> int:
    cfg = load_pipeline_config(args.config)
    if args.dry_run:
        _print_plan(cfg, args.command)
        return 0

    pipeline = _build_pipeline(cfg)
    for step in steps:
        step(pipeline, cfg, args.overwrite)
    _print_report(pipeline)
    return 1 if pipeline.failures else 0


def _handle_run(args: argparse.Namespace) -> int:
    return _run_steps(args, [_write_composites, _write_anomalies, _write_trends, _write_region_stats])


def _handle_composites(args: argparse.Namespace) -> int:
    return _run_steps(args, [_write_composites])


def _handle_anomaly(args: argparse.Namespace) -> int:
    return _run_steps(args, [_write_anomalies])


def _handle_trend(args: argparse.Namespace) -> int:
    return _run_steps(args, [_write_trends])


def _handle_region_stats(args: argparse.Namespace) -> int:
    return _run_steps(args, [_write_region_stats])


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for envtrend.pipeline CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    handlers = {
        "run": _handle_run,
        "composites": _handle_composites,
        "anomaly": _handle_anomaly,
        "trend": _handle_trend,
        "region-stats": _handle_region_stats,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())

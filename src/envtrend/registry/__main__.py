#!/usr/bin/env python3
"""envtrend.registry

Region definition CLI for envtrend.

This is one of the envtrend subsystem CLIs:
- envtrend.registry → region definition (this file)
- envtrend.pipeline → compositing, anomalies, trends, regional stats

envtrend.registry is the source of truth for the regions statistics are reduced over.
It defines WHAT EXISTS spatially; the pipeline consumes its outputs.

Responsibilities:
- Resolve a stable region_id per feature (name property -> feature id -> row index)
- Repair invalid polygons; drop empty or degenerate ones
- Compute areas in an equal-area CRS
- Emit a canonical GeoPackage (plus optional QA CSV)

Outputs:
- data/interim/vectors/regions.gpkg → canonical geometries with region_id, name, area_km2

Examples:
  # Prepare regions from a GeoJSON with a "Name" column
  python -m envtrend.registry prep-regions --regions data/raw/regions.geojson

  # Use another id column and keep a QA table
  python -m envtrend.registry prep-regions \
    --regions data/raw/fields.shp --name-property FIELD_NAME --id-property FID \
    --qa-csv data/interim/tables/regions_qa.csv
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from envtrend.config import DEFAULT_REGIONS_GPKG


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for envtrend.registry."""
    ap = argparse.ArgumentParser(
        prog="envtrend.registry",
        description="Region definition for envtrend (source of truth for spatial units)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m envtrend.registry  # Region definition (this)
  python -m envtrend.pipeline  # Anomalies, trends, regional stats

Registry outputs:
  data/interim/vectors/regions.gpkg  # Canonical geometries
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without writing files",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files",
    )

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    # --- prep-regions ---
    # Processes a vector file into the canonical registry output
    prep = sub.add_parser(
        "prep-regions",
        help="Prepare regions from a vector file",
        description="""
Process a region vector file (GeoJSON, GeoPackage, Shapefile) into the canonical
registry output.

This command:
1. Resolves a region_id per feature (name property -> feature id -> index)
2. Repairs invalid polygons and drops the ones that can't be repaired
3. Computes areas (km²) in an equal-area CRS
4. Reprojects and writes the GeoPackage
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    prep.add_argument(
        "--regions",
        required=True,
        type=Path,
        help="Path to the region vector file",
    )
    prep.add_argument(
        "--out-gpkg",
        type=Path,
        default=DEFAULT_REGIONS_GPKG,
        help=f"Output GeoPackage path (default: {DEFAULT_REGIONS_GPKG})",
    )
    prep.add_argument(
        "--layer",
        default="regions",
        help="Layer name in output GeoPackage (default: regions)",
    )
    prep.add_argument(
        "--name-property",
        default="Name",
        help="Property holding the region name (default: Name)",
    )
    prep.add_argument(
        "--id-property",
        default="id",
        help="Property used as id when the name is blank (default: id)",
    )
    prep.add_argument(
        "--target-crs",
        default="EPSG:4326",
        help="Output CRS (default: EPSG:4326 / WGS84)",
    )
    prep.add_argument(
        "--area-crs",
        default="EPSG:5070",
        help="CRS for area calculations (default: EPSG:5070 / CONUS Albers)",
    )
    prep.add_argument(
        "--qa-csv",
        type=Path,
        default=None,
        help="Optional CSV of region_id, name, area_km2",
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_prep_regions(args: argparse.Namespace) -> int:
    """Handle the prep-regions subcommand."""
    if not args.regions.exists():
        raise SystemExit(f"Regions file not found: {args.regions}")

    if args.dry_run:
        print("[dry-run] Would prepare regions:")
        print(f"  Input: {args.regions}")
        print(f"  Output GeoPackage: {args.out_gpkg} (layer={args.layer})")
        print(f"  Id chain: {args.name_property} -> {args.id_property} -> row index")
        print(f"  CRS: {args.target_crs} (areas in {args.area_crs})")
        return 0

    if args.out_gpkg.exists() and not args.overwrite:
        print(f"[SKIP] {args.out_gpkg} (exists; use --overwrite)")
        return 0

    # Lazy import to keep CLI startup fast
    from envtrend.registry.regions import prep_regions

    prep_regions(
        regions_path=args.regions,
        out_gpkg=args.out_gpkg,
        layer=args.layer,
        name_property=args.name_property,
        id_property=args.id_property or None,
        target_crs=args.target_crs,
        area_crs=args.area_crs,
        qa_csv=args.qa_csv,
    )
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for envtrend.registry CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "prep-regions": _handle_prep_regions,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())

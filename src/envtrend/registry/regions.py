#!/usr/bin/env python3
"""regions.py

Regions: the named polygons that rasters are reduced over.

This module exposes:
1. resolve_region_id() - the identifier fallback chain (name property -> feature id -> index)
2. validate_geometry() - repair or reject a region polygon
3. load_regions()      - read a vector file into immutable Region objects
4. prep_regions()      - clean a vector file into a canonical GeoPackage (used by
                         `python -m envtrend.registry prep-regions`)

Notes:
- Regions are loaded with their raw geometry. Validation happens per unit of work, so a
  broken polygon fails its own (region, year) units and nothing else.
- Identifiers are resolved once, at load time, by a pure function.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

import geopandas as gpd
from shapely import make_valid
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from envtrend.errors import InvalidGeometryError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Region:
    region_id: str
    geometry: BaseGeometry
    properties: Mapping[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Identifier resolution
# -----------------------------------------------------------------------------

def _is_blank(x: Any) -> bool:
    if x is None:
        return True
    if isinstance(x, float) and math.isnan(x):
        return True
    return str(x).strip() == ""


def _clean_id(x: Any) -> str:
    # 7.0 from a float column should read as "7"
    if isinstance(x, float) and x.is_integer():
        return str(int(x))
    return str(x).strip()


def resolve_region_id(
    properties: Mapping[str, Any],
    feature_id: Any = None,
    index: int = 0,
    name_property: str = "Name",
) -> str:
    """Pick a region identifier: non-blank name property, else feature id, else the index."""
    name = properties.get(name_property) if name_property else None
    if not _is_blank(name):
        return _clean_id(name)
    if not _is_blank(feature_id):
        return _clean_id(feature_id)
    return str(int(index))


# -----------------------------------------------------------------------------
# Geometry validation
# -----------------------------------------------------------------------------

def _polygonal_part(geom: BaseGeometry) -> Optional[BaseGeometry]:
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    parts = [g for g in getattr(geom, "geoms", []) if isinstance(g, (Polygon, MultiPolygon))]
    if not parts:
        return None
    return unary_union(parts)


def validate_geometry(region_id: str, geom: Optional[BaseGeometry]) -> BaseGeometry:
    """Return a usable polygon for `region_id` or raise InvalidGeometryError.

    Invalid (e.g. self-intersecting) polygons are repaired with shapely.make_valid.
    Empty, zero-area and non-polygonal geometries are rejected.
    """
    if geom is None or geom.is_empty:
        raise InvalidGeometryError(region_id, "empty geometry")
    if geom.geom_type not in ("Polygon", "MultiPolygon", "GeometryCollection"):
        raise InvalidGeometryError(region_id, f"not polygonal ({geom.geom_type})")
    if not geom.is_valid:
        geom = make_valid(geom)
    poly = _polygonal_part(geom)
    if poly is None or poly.is_empty:
        raise InvalidGeometryError(region_id, "no polygonal part")
    if not poly.area > 0:
        raise InvalidGeometryError(region_id, "zero area")
    return poly


def study_area(regions: Sequence[Region]) -> Optional[BaseGeometry]:
    """Union of every region that validates; None when none does."""
    valid = []
    for r in regions:
        try:
            valid.append(validate_geometry(r.region_id, r.geometry))
        except InvalidGeometryError as e:
            logger.warning("Excluding from study area: %s", e)
    if not valid:
        return None
    return unary_union(valid)


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------

def regions_from_frame(
    gdf: gpd.GeoDataFrame,
    *,
    name_property: str = "Name",
    id_property: Optional[str] = "id",
) -> List[Region]:
    """Convert a GeoDataFrame into Regions, resolving identifiers row by row.

    Raises ValueError on duplicate identifiers: results are keyed by region id.
    """
    regions: List[Region] = []
    seen = set()
    geom_col = gdf.geometry.name
    prop_cols = [c for c in gdf.columns if c != geom_col]
    for index, (_, row) in enumerate(gdf.iterrows()):
        props = {c: row[c] for c in prop_cols}
        feature_id = props.get(id_property) if id_property else None
        region_id = resolve_region_id(props, feature_id, index, name_property)
        if region_id in seen:
            raise ValueError(
                f"Duplicate region id {region_id!r} (row {index}). "
                f"Make '{name_property}' or '{id_property}' unique."
            )
        seen.add(region_id)
        regions.append(Region(region_id, row[geom_col], props))
    return regions


def load_regions(
    path: Path,
    *,
    name_property: str = "Name",
    id_property: Optional[str] = "id",
    target_crs: Optional[str] = None,
    layer: Optional[str] = None,
) -> List[Region]:
    """Read a vector file (GeoJSON, GeoPackage, Shapefile) into Regions.

    Geometries are reprojected to target_crs (normally the raster CRS) when given.
    """
    if not path.exists():
        raise SystemExit(f"Regions file not found: {path}")
    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    if gdf.empty:
        raise SystemExit(f"Regions file has zero features: {path}")
    if target_crs:
        if gdf.crs is None:
            raise SystemExit(f"Regions file has no CRS; can't reproject to {target_crs}: {path}")
        gdf = gdf.to_crs(target_crs)
    regions = regions_from_frame(gdf, name_property=name_property, id_property=id_property)
    logger.info("Loaded %d regions from %s", len(regions), path)
    return regions


# -----------------------------------------------------------------------------
# Canonical region file
# -----------------------------------------------------------------------------

def _compute_area_km2(gdf: gpd.GeoDataFrame, area_crs: str = "EPSG:5070") -> List[float]:
    """Compute polygon area in km² using an equal-area CRS."""
    if gdf.crs is None:
        raise ValueError("Input geometries have no CRS; can't compute area safely.")
    tmp = gdf.to_crs(area_crs)
    return (tmp.geometry.area / 1_000_000.0).astype(float).tolist()


def prep_regions(
    regions_path: Path,
    out_gpkg: Path,
    *,
    layer: str = "regions",
    name_property: str = "Name",
    id_property: Optional[str] = "id",
    target_crs: str = "EPSG:4326",
    area_crs: str = "EPSG:5070",
    qa_csv: Optional[Path] = None,
) -> gpd.GeoDataFrame:
    """Clean a region vector file into a canonical GeoPackage.

    This:
    1. Resolves a region_id per feature (name property -> feature id -> index)
    2. Repairs invalid polygons and drops the ones that can't be repaired
    3. Computes areas in km² (equal-area CRS)
    4. Reprojects to target CRS
    5. Writes the GeoPackage (and optional QA CSV)

    Returns:
        The processed GeoDataFrame (also written to out_gpkg).

    Raises:
        SystemExit: On missing files, missing CRS, or when no region survives cleaning.
    """
    if not regions_path.exists():
        raise SystemExit(f"Regions file not found: {regions_path}")

    gdf = gpd.read_file(regions_path)
    if gdf.empty:
        raise SystemExit("Loaded regions file but it contains zero features. Wrong file?")
    if gdf.crs is None:
        raise SystemExit(
            "Regions file has no CRS. "
            "Fix that first; everything downstream depends on CRS."
        )

    try:
        regions = regions_from_frame(gdf, name_property=name_property, id_property=id_property)
    except ValueError as e:
        raise SystemExit(str(e)) from e

    # --- Geometry cleanup ---
    rows = []
    dropped = []
    for region in regions:
        try:
            geom = validate_geometry(region.region_id, region.geometry)
        except InvalidGeometryError as e:
            dropped.append(e)
            continue
        name = region.properties.get(name_property, "") if name_property else ""
        rows.append({
            "region_id": region.region_id,
            "name": "" if _is_blank(name) else str(name),
            "geometry": geom,
        })

    for e in dropped:
        print(f"  - dropped: {e}")
    if not rows:
        raise SystemExit("No valid regions left after geometry cleanup.")

    out = gpd.GeoDataFrame(rows, geometry="geometry", crs=gdf.crs)
    out["area_km2"] = _compute_area_km2(out, area_crs=area_crs)
    out = out.to_crs(target_crs)
    out = out[["region_id", "name", "area_km2", "geometry"]].copy()

    # --- Write outputs ---
    out_gpkg.parent.mkdir(parents=True, exist_ok=True)
    out.to_file(out_gpkg, layer=layer, driver="GPKG")

    if qa_csv:
        qa_csv.parent.mkdir(parents=True, exist_ok=True)
        out.drop(columns="geometry").to_csv(qa_csv, index=False)

    print(f"Wrote {len(out)} regions -> {out_gpkg} (layer={layer})")
    for _, row in out.drop(columns="geometry").sort_values(["region_id"]).iterrows():
        print(f"  - {row['region_id']} | area_km2={row['area_km2']:.1f} | {row['name']}")
    print(f"(Dropped {len(dropped)} invalid; output CRS: {target_crs})")

    return out

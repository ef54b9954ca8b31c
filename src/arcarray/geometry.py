"""
Conversion between Esri JSON geometries and shapely geometries.

Esri polygons are a flat list of rings: outer rings run clockwise and
holes run counter-clockwise. Shapely polygons nest holes inside their
shell, so rings are regrouped on the way in and re-oriented on the way out.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence, Union

from shapely.geometry import (
    LinearRing,
    LineString,
    MultiLineString,
    MultiPoint,
    MultiPolygon,
    Point,
    Polygon,
    box,
)
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient

from .errors import ParseError, QueryError
from .types import BoundingBox, SpatialReference

__all__ = [
    "from_esri",
    "to_esri",
    "geometry_type",
    "spatial_relationship",
    "spatial_filter_params",
]

ESRI_GEOMETRY_TYPES = {
    "Point": "esriGeometryPoint",
    "MultiPoint": "esriGeometryMultipoint",
    "LineString": "esriGeometryPolyline",
    "MultiLineString": "esriGeometryPolyline",
    "Polygon": "esriGeometryPolygon",
    "MultiPolygon": "esriGeometryPolygon",
}

SPATIAL_RELATIONSHIPS = {
    "intersects": "esriSpatialRelIntersects",
    "contains": "esriSpatialRelContains",
    "crosses": "esriSpatialRelCrosses",
    "envelope_intersects": "esriSpatialRelEnvelopeIntersects",
    "index_intersects": "esriSpatialRelIndexIntersects",
    "overlaps": "esriSpatialRelOverlaps",
    "touches": "esriSpatialRelTouches",
    "within": "esriSpatialRelWithin",
}


def geometry_type(geom: Union[BaseGeometry, BoundingBox]) -> str:
    """Esri geometry type name for a shapely geometry."""
    if isinstance(geom, BoundingBox):
        return "esriGeometryEnvelope"
    try:
        return ESRI_GEOMETRY_TYPES[geom.geom_type]
    except KeyError as exc:
        raise ValueError(f"Unsupported geometry type for Esri JSON: {geom.geom_type}") from exc


def spatial_relationship(predicate: str) -> str:
    try:
        return SPATIAL_RELATIONSHIPS[predicate.lower()]
    except KeyError as exc:
        valid = ", ".join(sorted(SPATIAL_RELATIONSHIPS))
        raise QueryError(f"Unknown spatial predicate '{predicate}'. Expected one of: {valid}") from exc


# ----------------------------------------------------------------------
# Esri JSON -> shapely
# ----------------------------------------------------------------------
def from_esri(struct: Optional[Dict[str, Any]]) -> Optional[BaseGeometry]:
    """Convert an Esri JSON geometry to shapely; ``None`` for missing geometry."""

    if not struct:
        return None

    if "x" in struct:
        x, y = struct.get("x"), struct.get("y")
        if x is None or y is None or x == "NaN":
            return Point()
        if struct.get("z") is not None:
            return Point(x, y, struct["z"])
        return Point(x, y)

    if "points" in struct:
        return MultiPoint([tuple(p) for p in struct["points"]])

    if "paths" in struct:
        lines = [LineString(path) for path in struct["paths"] if len(path) >= 2]
        if len(lines) == 1:
            return lines[0]
        return MultiLineString(lines)

    if "rings" in struct:
        return _rings_to_polygon(struct["rings"])

    if "xmin" in struct:
        return box(struct["xmin"], struct["ymin"], struct["xmax"], struct["ymax"])

    raise ParseError(f"Unsupported Esri geometry with keys {sorted(struct)}")


def _rings_to_polygon(rings: Sequence[Sequence[Sequence[float]]]) -> BaseGeometry:
    shells: List[List[Any]] = []
    holes: List[List[Any]] = []
    for ring in rings:
        if len(ring) < 4:
            continue
        coords = [tuple(pt) for pt in ring]
        if LinearRing(coords).is_ccw:
            holes.append(coords)
        else:
            shells.append(coords)

    # Some writers emit every ring counter-clockwise; treat them all as shells.
    if not shells:
        shells, holes = holes, []

    grouped: List[List[List[Any]]] = [[] for _ in shells]
    shell_polys = [Polygon(shell) for shell in shells]
    for hole in holes:
        probe = Point(hole[0])
        for idx, shell_poly in enumerate(shell_polys):
            if shell_poly.covers(probe):
                grouped[idx].append(hole)
                break
        else:
            shells.append(hole)
            shell_polys.append(Polygon(hole))
            grouped.append([])

    polygons = [Polygon(shell, interiors) for shell, interiors in zip(shells, grouped)]
    if not polygons:
        return Polygon()
    if len(polygons) == 1:
        return polygons[0]
    return MultiPolygon(polygons)


# ----------------------------------------------------------------------
# shapely -> Esri JSON
# ----------------------------------------------------------------------
def _coords(seq: Any) -> List[List[float]]:
    return [list(pt) for pt in seq]


def _polygon_rings(polygon: Polygon) -> List[List[List[float]]]:
    oriented = orient(polygon, sign=-1.0)
    rings = [_coords(oriented.exterior.coords)]
    rings.extend(_coords(interior.coords) for interior in oriented.interiors)
    return rings


def to_esri(
    geom: Optional[BaseGeometry],
    crs: Optional[SpatialReference] = None,
) -> Optional[Dict[str, Any]]:
    """Convert a shapely geometry to Esri JSON; empty geometries become ``None``."""

    if geom is None or geom.is_empty:
        return None

    kind = geom.geom_type
    if kind == "Point":
        struct: Dict[str, Any] = {"x": geom.x, "y": geom.y}
        if geom.has_z:
            struct["z"] = geom.z
    elif kind == "MultiPoint":
        struct = {"points": [list(p.coords[0]) for p in geom.geoms]}
    elif kind == "LineString":
        struct = {"paths": [_coords(geom.coords)]}
    elif kind == "MultiLineString":
        struct = {"paths": [_coords(line.coords) for line in geom.geoms]}
    elif kind == "Polygon":
        struct = {"rings": _polygon_rings(geom)}
    elif kind == "MultiPolygon":
        struct = {"rings": [ring for poly in geom.geoms for ring in _polygon_rings(poly)]}
    else:
        raise ValueError(f"Unsupported geometry type for Esri JSON: {kind}")

    if crs is not None:
        struct["spatialReference"] = crs.to_esri()
    return struct


def spatial_filter_params(
    filter_geom: Union[BaseGeometry, BoundingBox],
    predicate: str = "intersects",
    crs: Optional[SpatialReference] = None,
) -> Dict[str, str]:
    """Query parameters restricting results to features related to ``filter_geom``."""

    if isinstance(filter_geom, BoundingBox):
        struct: Optional[Dict[str, Any]] = filter_geom.to_esri()
        crs = crs or filter_geom.crs
    else:
        struct = to_esri(filter_geom)
    if struct is None:
        raise QueryError("filter_geom must not be empty")
    struct.pop("spatialReference", None)

    params = {
        "geometry": json.dumps(struct),
        "geometryType": geometry_type(filter_geom),
        "spatialRel": spatial_relationship(predicate),
    }
    if crs is not None:
        params["inSR"] = json.dumps(crs.to_esri())
    return params

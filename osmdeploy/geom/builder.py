"""
Lines and rings from resolved way coordinates.

All builders raise GeometryDefect for input that cannot produce a usable
geometry. Callers catch it per element, so a broken way never aborts a
batch.
"""

from __future__ import annotations

import math

import shapely
from shapely.geometry import LineString, MultiPolygon, Point, Polygon
from shapely.geometry.base import BaseGeometry

from osmdeploy.exceptions import GeometryDefect

Coords = list[tuple[float, float]]


def dedupe(coords: Coords) -> Coords:
    """Drop consecutive duplicate coordinates."""
    result: Coords = []
    for c in coords:
        if not result or result[-1] != c:
            result.append(c)
    return result


def endpoints_close(coords: Coords, tolerance: float) -> bool:
    if len(coords) < 2:
        return False
    (x1, y1), (x2, y2) = coords[0], coords[-1]
    return math.hypot(x2 - x1, y2 - y1) <= tolerance


def build_point(x: float, y: float) -> Point:
    return Point(x, y)


def build_line(coords: Coords) -> LineString:
    coords = dedupe(coords)
    if len(set(coords)) < 2:
        raise GeometryDefect(f"line needs 2 distinct coordinates, got {len(set(coords))}")
    return LineString(coords)


def close_ring(coords: Coords, tolerance: float) -> Coords | None:
    """
    Return ``coords`` as a closed sequence, joining the endpoints when they
    are within ``tolerance``. Returns None when the gap is too wide.
    """
    if len(coords) < 2:
        return None
    if coords[0] == coords[-1]:
        return list(coords)
    if endpoints_close(coords, tolerance):
        return list(coords[:-1]) + [coords[0]]
    return None


def build_ring(coords: Coords, tolerance: float = 0.0) -> Coords:
    """
    Closed, de-duplicated ring coordinates.

    Rings with fewer than 4 points or zero area are degenerate and rejected.
    """
    closed = close_ring(dedupe(coords), tolerance)
    if closed is None:
        raise GeometryDefect("ring is not closed")
    closed = dedupe(closed)
    if len(closed) < 4:
        raise GeometryDefect(f"ring has {len(closed)} points, need at least 4")
    if Polygon(closed).area == 0:
        raise GeometryDefect("ring has zero area")
    return closed


def polygonal_parts(geom: BaseGeometry) -> Polygon | MultiPolygon | None:
    """Keep only the polygons of ``geom``; None when nothing polygonal is left."""
    if geom.is_empty:
        return None
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    polygons = []
    for part in getattr(geom, "geoms", []):
        if isinstance(part, Polygon) and not part.is_empty:
            polygons.append(part)
        elif isinstance(part, MultiPolygon):
            polygons.extend(p for p in part.geoms if not p.is_empty)
    if not polygons:
        return None
    if len(polygons) == 1:
        return polygons[0]
    return MultiPolygon(polygons)


def make_valid_polygon(geom: BaseGeometry) -> Polygon | MultiPolygon:
    """Repair an invalid polygon; raise GeometryDefect when nothing survives."""
    if geom.is_valid:
        return geom
    repaired = polygonal_parts(shapely.make_valid(geom))
    if repaired is None or repaired.area == 0:
        raise GeometryDefect("polygon could not be repaired")
    return repaired


def build_polygon(coords: Coords, tolerance: float = 0.0) -> Polygon | MultiPolygon:
    """Polygon from a closed way. Self-intersecting outlines are repaired."""
    return make_valid_polygon(Polygon(build_ring(coords, tolerance)))

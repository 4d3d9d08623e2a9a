"""
Simplified geometries for the generalized tables.

Every level is simplified from the full-detail geometry with its own
tolerance; levels are never derived from each other.
"""

from __future__ import annotations

import logging

from shapely.geometry import LineString, MultiLineString, MultiPolygon, Point, Polygon
from shapely.geometry.base import BaseGeometry

from osmdeploy.exceptions import GeometryDefect
from osmdeploy.geom.builder import make_valid_polygon

logger = logging.getLogger(__name__)


def generalize(geometry: BaseGeometry, tolerance: float) -> BaseGeometry:
    """
    Simplify ``geometry`` with ``tolerance``.

    Polygons stay valid: invalid results are repaired, and when nothing
    polygonal survives the full-detail geometry is returned. Lines are
    never dropped; a line that would collapse keeps its original shape.
    """
    if tolerance <= 0 or isinstance(geometry, Point):
        return geometry

    simplified = geometry.simplify(tolerance, preserve_topology=True)

    if isinstance(geometry, (Polygon, MultiPolygon)):
        if simplified.is_empty:
            return geometry
        try:
            return make_valid_polygon(simplified)
        except GeometryDefect:
            logger.debug("Simplified polygon could not be repaired, keeping full detail")
            return geometry

    if isinstance(geometry, (LineString, MultiLineString)):
        if simplified.is_empty or simplified.length == 0:
            return geometry
        return simplified

    return simplified

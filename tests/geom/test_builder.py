from __future__ import annotations

import pytest
from shapely.geometry import MultiPolygon, Polygon

from osmdeploy.exceptions import GeometryDefect
from osmdeploy.geom.builder import (
    build_line,
    build_polygon,
    build_ring,
    close_ring,
    dedupe,
    endpoints_close,
)

SQUARE = [(0.0, 0.0), (10.0, 0.0), (10.0, 10.0), (0.0, 10.0), (0.0, 0.0)]


class TestLines:
    def test_build_line(self):
        line = build_line([(0.0, 0.0), (1.0, 1.0), (2.0, 0.0)])
        assert line.length == pytest.approx(2 * 2**0.5)

    def test_consecutive_duplicates_removed(self):
        assert dedupe([(0, 0), (0, 0), (1, 1), (1, 1), (0, 0)]) == [(0, 0), (1, 1), (0, 0)]

    @pytest.mark.parametrize(
        "coords",
        [[], [(1.0, 1.0)], [(1.0, 1.0), (1.0, 1.0)], [(1.0, 1.0), (1.0, 1.0), (1.0, 1.0)]],
    )
    def test_fewer_than_two_distinct_coordinates_is_a_defect(self, coords):
        with pytest.raises(GeometryDefect):
            build_line(coords)


class TestRings:
    def test_closed_ring_unchanged(self):
        assert build_ring(SQUARE) == SQUARE

    def test_gap_within_tolerance_is_closed(self):
        open_square = SQUARE[:-1] + [(0.0, 0.05)]
        ring = build_ring(open_square, tolerance=0.1)
        assert ring[0] == ring[-1] == (0.0, 0.0)
        assert len(ring) == 5

    def test_gap_beyond_tolerance_is_a_defect(self):
        with pytest.raises(GeometryDefect, match="not closed"):
            build_ring(SQUARE[:-1], tolerance=0.1)

    def test_close_ring_returns_none_for_wide_gap(self):
        assert close_ring([(0, 0), (5, 0), (5, 5)], 1.0) is None

    def test_endpoints_close(self):
        assert endpoints_close([(0.0, 0.0), (5.0, 5.0), (0.0, 0.5)], 0.5)
        assert not endpoints_close([(0.0, 0.0), (5.0, 5.0), (0.0, 0.6)], 0.5)
        assert not endpoints_close([(0.0, 0.0)], 10)

    def test_too_few_points_is_a_defect(self):
        with pytest.raises(GeometryDefect, match="need at least 4"):
            build_ring([(0.0, 0.0), (1.0, 0.0), (0.0, 0.0)])

    def test_zero_area_is_a_defect(self):
        with pytest.raises(GeometryDefect, match="zero area"):
            build_ring([(0.0, 0.0), (1.0, 0.0), (2.0, 0.0), (0.0, 0.0)])


class TestPolygons:
    def test_closed_way_polygon(self):
        polygon = build_polygon(SQUARE)
        assert isinstance(polygon, Polygon)
        assert polygon.area == 100.0

    def test_self_intersecting_outline_is_repaired(self):
        bowtie = [(0.0, 0.0), (10.0, 10.0), (10.0, 0.0), (0.0, 10.0), (0.0, 0.0)]
        polygon = build_polygon(bowtie)
        assert polygon.is_valid
        assert isinstance(polygon, MultiPolygon)
        assert polygon.area == pytest.approx(50.0)

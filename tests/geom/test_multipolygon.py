"""
Multipolygon assembly, including the malformed relations found in real data:
split outer rings, single-node members, open rings, unassignable holes and
relations without roles.
"""

from __future__ import annotations

import pytest
from shapely.geometry import MultiPolygon, Polygon

from osmdeploy.geom.multipolygon import MemberLine, MultipolygonBuilder, merge_chains


def square(x0, y0, size):
    return [(x0, y0), (x0 + size, y0), (x0 + size, y0 + size), (x0, y0 + size), (x0, y0)]


@pytest.fixture
def builder():
    return MultipolygonBuilder(gap_tolerance=0.1, role_policy="auto")


class TestMergeChains:
    def test_joins_lines_in_either_direction(self):
        chains = merge_chains(
            [
                (1, [(0, 0), (10, 0), (10, 10)]),
                (2, [(0, 0), (0, 10)]),
                (3, [(0, 10), (10, 10)]),
            ]
        )
        assert len(chains) == 1
        assert chains[0].is_closed
        assert sorted(chains[0].way_ids) == [1, 2, 3]

    def test_closed_lines_pass_through(self):
        chains = merge_chains([(1, square(0, 0, 1)), (2, [(5, 5), (6, 6)])])
        assert [c.way_ids for c in chains] == [[1], [2]]
        assert chains[0].is_closed and not chains[1].is_closed


class TestMultipolygonBuilder:
    def test_outer_with_hole(self, builder):
        result = builder.build(
            1,
            [
                MemberLine(10, "outer", square(0, 0, 10)),
                MemberLine(11, "inner", square(2, 2, 2)),
            ],
        )
        assert result.ok
        assert isinstance(result.geometry, Polygon)
        assert result.geometry.area == pytest.approx(96.0)
        assert result.consumed_ways == {10, 11}
        assert result.outer_ways == {10}

    def test_split_outer_ring(self, builder):
        result = builder.build(
            2,
            [
                MemberLine(20, "outer", [(0, 0), (10, 0), (10, 10)]),
                MemberLine(21, "outer", [(0, 0), (0, 10), (10, 10)]),
            ],
        )
        assert result.ok
        assert result.geometry.area == pytest.approx(100.0)
        assert result.consumed_ways == {20, 21}

    def test_single_node_way_does_not_join_siblings(self, builder):
        # The open outer way can only close through the degenerate way.
        result = builder.build(
            3,
            [
                MemberLine(30, "outer", [(0, 0), (10, 0), (10, 10)]),
                MemberLine(31, "outer", [(10, 10)]),
            ],
        )
        assert not result.ok
        assert result.consumed_ways == set()
        assert any("fewer than 2 distinct" in d for d in result.defects)

    def test_gap_is_closed_within_tolerance(self, builder):
        result = builder.build(
            4,
            [
                MemberLine(40, "outer", [(0, 0), (10, 0), (10, 10)]),
                MemberLine(41, "outer", [(10, 10), (0, 10), (0, 0.05)]),
            ],
        )
        assert result.ok
        assert result.geometry.is_valid

    def test_open_chain_does_not_poison_other_rings(self, builder):
        result = builder.build(
            5,
            [
                MemberLine(50, "outer", square(0, 0, 10)),
                MemberLine(51, "outer", [(20, 20), (30, 20), (30, 30)]),
            ],
        )
        assert result.ok
        assert result.geometry.area == pytest.approx(100.0)
        assert result.consumed_ways == {50}
        assert any("do not form a closed ring" in d for d in result.defects)

    def test_unassignable_inner_is_dropped(self, builder):
        result = builder.build(
            6,
            [
                MemberLine(60, "outer", square(0, 0, 10)),
                MemberLine(61, "inner", square(50, 50, 2)),
            ],
        )
        assert result.ok
        assert result.geometry.area == pytest.approx(100.0)
        assert 61 not in result.consumed_ways

    def test_no_outer_ring(self, builder):
        result = builder.build(7, [MemberLine(70, "outer", [(0, 0), (1, 1)])])
        assert not result.ok
        assert "no valid outer ring" in result.defects

    def test_multiple_outers(self, builder):
        result = builder.build(
            8,
            [
                MemberLine(80, "outer", square(0, 0, 10)),
                MemberLine(81, "outer", square(20, 0, 10)),
            ],
        )
        assert isinstance(result.geometry, MultiPolygon)
        assert len(result.geometry.geoms) == 2

    def test_empty_roles_are_outer_without_inners(self, builder):
        result = builder.build(9, [MemberLine(90, "", square(0, 0, 10))])
        assert result.ok
        assert result.outer_ways == {90}

    def test_empty_role_inside_outer_becomes_hole_in_auto(self, builder):
        result = builder.build(
            10,
            [
                MemberLine(100, "outer", square(0, 0, 10)),
                MemberLine(101, "inner", square(1, 1, 1)),
                MemberLine(102, "", square(5, 5, 2)),
            ],
        )
        assert result.geometry.area == pytest.approx(100 - 1 - 4)

    def test_declared_policy_treats_empty_role_as_outer(self):
        builder = MultipolygonBuilder(gap_tolerance=0.1, role_policy="declared")
        result = builder.build(
            11,
            [
                MemberLine(110, "inner", square(1, 1, 1)),
                MemberLine(111, "", square(0, 0, 10)),
            ],
        )
        assert result.outer_ways == {111}
        assert result.geometry.area == pytest.approx(99.0)

    def test_geometry_policy_uses_nesting(self):
        builder = MultipolygonBuilder(gap_tolerance=0.1, role_policy="geometry")
        result = builder.build(
            12,
            [
                # roles are wrong on purpose
                MemberLine(120, "inner", square(0, 0, 10)),
                MemberLine(121, "outer", square(2, 2, 6)),
                MemberLine(122, "outer", square(4, 4, 2)),
            ],
        )
        # island inside a hole inside the outer ring
        assert isinstance(result.geometry, MultiPolygon)
        assert result.geometry.area == pytest.approx(100 - 36 + 4)
        assert result.outer_ways == {120, 122}

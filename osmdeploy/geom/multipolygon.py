"""
Multipolygon assembly from relation way members.

The builder works on already resolved member coordinates and never looks up
elements itself. It tolerates the usual defects of real-world relations:

  - member ways with fewer than 2 distinct coordinates are skipped
    before merging, so they cannot glue two unrelated ways together;
  - ways sharing endpoints are merged into maximal chains;
  - chains whose endpoints are within ``gap_tolerance`` are closed;
  - chains that stay open are dropped, the other rings are still used;
  - inner rings no outer ring contains are dropped.

Usage:
    builder = MultipolygonBuilder(gap_tolerance=0.1, role_policy="auto")
    result = builder.build(relation.id, [MemberLine(way_id, role, coords), ...])
    if result.geometry is not None:
        ...
    result.consumed_ways  # ways that ended up in the polygon
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import shapely
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry

from osmdeploy.exceptions import GeometryDefect
from osmdeploy.geom.builder import (
    Coords,
    build_ring,
    close_ring,
    dedupe,
    make_valid_polygon,
    polygonal_parts,
)

logger = logging.getLogger(__name__)

OUTER = "outer"
INNER = "inner"
UNKNOWN = ""


@dataclass
class MemberLine:
    """A resolved way member of a relation."""

    way_id: int
    role: str
    coords: Coords


@dataclass
class _Chain:
    way_ids: list[int]
    coords: Coords

    @property
    def start(self) -> tuple[float, float]:
        return self.coords[0]

    @property
    def end(self) -> tuple[float, float]:
        return self.coords[-1]

    @property
    def is_closed(self) -> bool:
        return len(self.coords) > 2 and self.coords[0] == self.coords[-1]


@dataclass
class Ring:
    way_ids: list[int]
    coords: Coords
    polarity: str
    polygon: Polygon = field(init=False, repr=False)

    def __post_init__(self):
        self.polygon = Polygon(self.coords)

    @property
    def area(self) -> float:
        return abs(self.polygon.area)

    def contains(self, other: Ring) -> bool:
        if self.polygon.is_valid and other.polygon.is_valid:
            return self.polygon.contains(other.polygon)
        return self.polygon.buffer(0).covers(other.polygon.representative_point())


@dataclass
class MultipolygonResult:
    relation_id: int
    geometry: Polygon | MultiPolygon | None = None
    consumed_ways: set[int] = field(default_factory=set)
    outer_ways: set[int] = field(default_factory=set)
    defects: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.geometry is not None


def merge_chains(lines: list[tuple[int, Coords]]) -> list[_Chain]:
    """
    Merge lines that share endpoints into maximal chains.

    Lines may be joined in either direction. Closed lines are returned as
    they are.
    """
    chains: dict[int, _Chain] = {}
    endpoints: dict[tuple[float, float], set[int]] = {}

    def register(idx: int, chain: _Chain) -> None:
        endpoints.setdefault(chain.start, set()).add(idx)
        endpoints.setdefault(chain.end, set()).add(idx)

    def unregister(idx: int, chain: _Chain) -> None:
        for point in (chain.start, chain.end):
            ids = endpoints.get(point)
            if ids is not None:
                ids.discard(idx)
                if not ids:
                    del endpoints[point]

    result: list[_Chain] = []
    for idx, (way_id, coords) in enumerate(lines):
        chain = _Chain([way_id], list(coords))
        if chain.is_closed:
            result.append(chain)
        else:
            chains[idx] = chain
            register(idx, chain)

    while chains:
        idx = next(iter(chains))
        current = chains.pop(idx)
        unregister(idx, current)
        while not current.is_closed:
            other_idx = _find_partner(endpoints, current.end)
            if other_idx is not None:
                other = chains.pop(other_idx)
                unregister(other_idx, other)
                coords = other.coords if other.start == current.end else other.coords[::-1]
                current.coords.extend(coords[1:])
                current.way_ids.extend(other.way_ids)
                continue
            other_idx = _find_partner(endpoints, current.start)
            if other_idx is not None:
                other = chains.pop(other_idx)
                unregister(other_idx, other)
                coords = other.coords if other.end == current.start else other.coords[::-1]
                current.coords[:0] = coords[:-1]
                current.way_ids[:0] = other.way_ids
                continue
            break
        result.append(current)
    return result


def _find_partner(endpoints: dict[tuple[float, float], set[int]], point) -> int | None:
    ids = endpoints.get(point)
    if not ids:
        return None
    return min(ids)


class MultipolygonBuilder:
    def __init__(self, gap_tolerance: float = 0.0, role_policy: str = "auto") -> None:
        self.gap_tolerance = gap_tolerance
        self.role_policy = role_policy

    def build(self, relation_id: int, members: list[MemberLine]) -> MultipolygonResult:
        result = MultipolygonResult(relation_id=relation_id)

        usable: list[MemberLine] = []
        for member in members:
            coords = dedupe(member.coords)
            if len(set(coords)) < 2:
                result.defects.append(f"way {member.way_id} has fewer than 2 distinct coordinates")
                continue
            usable.append(MemberLine(member.way_id, member.role, coords))

        rings: list[Ring] = []
        for polarity, group in self._partition(usable).items():
            rings.extend(self._rings(group, polarity, result))

        outers, inners = self._assign_polarity(rings)
        if not outers:
            result.defects.append("no valid outer ring")
            self._log_defects(result)
            return result

        polygons: list[BaseGeometry] = []
        for outer, holes in self._nest(outers, inners, result):
            try:
                polygon = make_valid_polygon(Polygon(outer.coords, [h.coords for h in holes]))
            except GeometryDefect as e:
                result.defects.append(f"outer ring of ways {outer.way_ids}: {e}")
                continue
            polygons.append(polygon)
            result.outer_ways.update(outer.way_ids)
            result.consumed_ways.update(outer.way_ids)
            for hole in holes:
                result.consumed_ways.update(hole.way_ids)

        result.geometry = _combine(polygons)
        if result.geometry is None:
            result.outer_ways.clear()
            result.consumed_ways.clear()
        self._log_defects(result)
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _partition(self, members: list[MemberLine]) -> dict[str, list[MemberLine]]:
        groups: dict[str, list[MemberLine]] = {OUTER: [], INNER: [], UNKNOWN: []}
        if self.role_policy == "geometry":
            groups[UNKNOWN] = list(members)
            return groups

        has_inner = any(m.role == INNER for m in members)
        for member in members:
            if member.role == INNER:
                groups[INNER].append(member)
            elif member.role == OUTER:
                groups[OUTER].append(member)
            elif self.role_policy == "declared" or not has_inner:
                groups[OUTER].append(member)
            else:
                groups[UNKNOWN].append(member)
        return groups

    def _rings(self, members: list[MemberLine], polarity: str, result: MultipolygonResult) -> list[Ring]:
        rings = []
        for chain in merge_chains([(m.way_id, m.coords) for m in members]):
            closed = close_ring(chain.coords, self.gap_tolerance)
            if closed is None:
                result.defects.append(f"ways {chain.way_ids} do not form a closed ring")
                continue
            try:
                coords = build_ring(closed, self.gap_tolerance)
            except GeometryDefect as e:
                result.defects.append(f"ways {chain.way_ids}: {e}")
                continue
            rings.append(Ring(chain.way_ids, coords, polarity))
        return rings

    def _assign_polarity(self, rings: list[Ring]) -> tuple[list[Ring], list[Ring]]:
        """Resolve UNKNOWN rings by nesting depth; return (outers, inners)."""
        known_outers = [r for r in rings if r.polarity == OUTER]
        inners = [r for r in rings if r.polarity == INNER]
        unknown = sorted((r for r in rings if r.polarity == UNKNOWN), key=lambda r: -r.area)

        placed = list(known_outers)
        depth_of = {id(r): 0 for r in known_outers}
        for ring in unknown:
            parent = _smallest_container(ring, placed)
            depth = 0 if parent is None else depth_of[id(parent)] + 1
            ring.polarity = OUTER if depth % 2 == 0 else INNER
            depth_of[id(ring)] = depth
            placed.append(ring)

        outers = [r for r in rings if r.polarity == OUTER]
        inners = inners + [r for r in unknown if r.polarity == INNER]
        return outers, inners

    def _nest(
        self, outers: list[Ring], inners: list[Ring], result: MultipolygonResult
    ) -> list[tuple[Ring, list[Ring]]]:
        holes: dict[int, list[Ring]] = {id(o): [] for o in outers}
        for inner in inners:
            owner = _smallest_container(inner, outers)
            if owner is None:
                result.defects.append(f"inner ring of ways {inner.way_ids} is outside every outer ring")
                continue
            holes[id(owner)].append(inner)
        return [(outer, holes[id(outer)]) for outer in outers]

    @staticmethod
    def _log_defects(result: MultipolygonResult) -> None:
        for defect in result.defects:
            logger.debug("Relation %d: %s", result.relation_id, defect)


def _smallest_container(ring: Ring, candidates: list[Ring]) -> Ring | None:
    best = None
    for candidate in candidates:
        if candidate is ring or candidate.area <= ring.area:
            continue
        if candidate.contains(ring) and (best is None or candidate.area < best.area):
            best = candidate
    return best


def _combine(polygons: list[BaseGeometry]) -> Polygon | MultiPolygon | None:
    if not polygons:
        return None
    if len(polygons) == 1:
        return polygons[0]
    parts: list[Polygon] = []
    for polygon in polygons:
        parts.extend(polygon.geoms if isinstance(polygon, MultiPolygon) else [polygon])
    combined = MultiPolygon(parts)
    if combined.is_valid:
        return combined
    return polygonal_parts(shapely.unary_union(parts))

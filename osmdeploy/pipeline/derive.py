"""
Element -> output rows.

The Deriver combines the classifier, geometry builders, multipolygon
assembler, and generalizer. It reads elements through a *view*, which is
either the ElementStore (full import) or a StoreOverlay (diff), so the same
code derives rows for both.

Geometry defects never escape: an element that cannot be built yields no
rows and is counted in the DefectLog.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from shapely.geometry.base import BaseGeometry

from osmdeploy.config import ImportConfig
from osmdeploy.elements import ElementKind, Node, Relation, Way, row_id
from osmdeploy.exceptions import GeometryDefect
from osmdeploy.geom.builder import build_line, build_point, build_polygon, endpoints_close
from osmdeploy.geom.generalize import generalize
from osmdeploy.geom.multipolygon import MemberLine, MultipolygonBuilder, MultipolygonResult
from osmdeploy.geom.projection import Projector
from osmdeploy.mapping.rules import Classifier, Mapping, Match
from osmdeploy.writer.rows import OutputRow

logger = logging.getLogger(__name__)

AREA_RELATION_TYPES = ("multipolygon", "boundary")

# (table, type) pairs a consumed way must not be emitted into
Suppression = set[tuple[str, str]]


class DefectLog:
    """Thread-safe defect counter keeping a few samples for the stage summary."""

    MAX_SAMPLES = 20

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.count = 0
        self.samples: list[str] = []

    def record(self, kind: ElementKind, id: int, reason: str) -> None:
        logger.debug("Skipping %s %d: %s", kind.value, id, reason)
        with self._lock:
            self.count += 1
            if len(self.samples) < self.MAX_SAMPLES:
                self.samples.append(f"{kind.value} {id}: {reason}")


@dataclass
class RelationOutcome:
    relation_id: int
    rows: list[OutputRow] = field(default_factory=list)
    suppression: dict[int, Suppression] = field(default_factory=dict)


class Deriver:
    def __init__(self, mapping: Mapping, config: ImportConfig, defects: DefectLog | None = None) -> None:
        self.mapping = mapping
        self.classifier = Classifier(mapping)
        self.projector = Projector(config.srid)
        self.gap_tolerance = config.ring_gap_tolerance
        self.inherit_outer_tags = config.inherit_outer_tags
        self.multipolygons = MultipolygonBuilder(config.ring_gap_tolerance, config.role_policy)
        self.defects = defects if defects is not None else DefectLog()

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def node_rows(self, node: Node) -> list[OutputRow]:
        matches = self.classifier.classify(node.tags, ElementKind.NODE)
        if not matches:
            return []
        point = build_point(*self.projector.project_point(node.lon, node.lat))
        return self._rows(ElementKind.NODE, node.id, node.tags, matches, {"point": point})

    # ------------------------------------------------------------------
    # Ways
    # ------------------------------------------------------------------

    def way_rows(self, view, way: Way, suppression: Suppression | None = None) -> list[OutputRow]:
        matches = self.classifier.classify(way.tags, ElementKind.WAY)
        if suppression:
            matches = [m for m in matches if (m.table, m.type) not in suppression]
        if not matches:
            return []

        coords = self._way_coords(view, way)
        if coords is None:
            return []

        geometries: dict[str, BaseGeometry] = {}
        wanted = {self.mapping.table(m.table).geometry for m in matches}
        if "linestring" in wanted:
            try:
                geometries["linestring"] = build_line(coords)
            except GeometryDefect as e:
                self.defects.record(ElementKind.WAY, way.id, str(e))
        if "polygon" in wanted and (way.is_closed or endpoints_close(coords, self.gap_tolerance)):
            try:
                geometries["polygon"] = build_polygon(coords, self.gap_tolerance)
            except GeometryDefect as e:
                self.defects.record(ElementKind.WAY, way.id, str(e))
        return self._rows(ElementKind.WAY, way.id, way.tags, matches, geometries)

    def _way_coords(self, view, way: Way) -> list[tuple[float, float]] | None:
        resolved = view.resolve_way(way)
        if resolved.missing:
            self.defects.record(
                ElementKind.WAY, way.id, f"missing nodes {resolved.missing[:5]}"
            )
            return None
        return self.projector.project(resolved.coords)

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    def relation_outcome(self, view, relation: Relation) -> RelationOutcome:
        outcome = RelationOutcome(relation.id)
        if relation.tags.get("type") not in AREA_RELATION_TYPES:
            return outcome

        matches = self.classifier.classify(relation.tags, ElementKind.RELATION)
        if not matches and not self.inherit_outer_tags:
            return outcome

        lines = self._member_lines(view, relation, visited={relation.id}, role="")
        result = self.multipolygons.build(relation.id, lines)
        if not result.ok:
            self.defects.record(ElementKind.RELATION, relation.id, "; ".join(result.defects[:3]))
            return outcome

        tags = relation.tags
        if not matches:
            tags = self._inherited_tags(view, relation, result)
            matches = self.classifier.classify(tags, ElementKind.RELATION)
            if not matches:
                return outcome

        outcome.rows = self._rows(
            ElementKind.RELATION, relation.id, tags, matches, {"polygon": result.geometry}
        )
        emitted = {(r.table, r.type) for r in outcome.rows if r.level == 0}
        for way_id in result.consumed_ways:
            outcome.suppression[way_id] = set(emitted)
        return outcome

    def _member_lines(self, view, relation: Relation, visited: set[int], role: str) -> list[MemberLine]:
        lines: list[MemberLine] = []
        for member in relation.members:
            member_role = member.role or role
            if member.kind is ElementKind.WAY:
                way = view.get(ElementKind.WAY, member.ref)
                if way is None:
                    self.defects.record(
                        ElementKind.RELATION, relation.id, f"missing way member {member.ref}"
                    )
                    continue
                coords = self._way_coords(view, way)
                if coords is not None:
                    lines.append(MemberLine(way.id, member_role, coords))
            elif member.kind is ElementKind.RELATION:
                if member.ref in visited:
                    self.defects.record(
                        ElementKind.RELATION, relation.id, f"member cycle through relation {member.ref}"
                    )
                    continue
                child = view.get(ElementKind.RELATION, member.ref)
                if child is None:
                    self.defects.record(
                        ElementKind.RELATION, relation.id, f"missing relation member {member.ref}"
                    )
                    continue
                lines.extend(self._member_lines(view, child, visited | {member.ref}, member_role))
        return lines

    @staticmethod
    def _inherited_tags(view, relation: Relation, result: MultipolygonResult) -> dict[str, str]:
        """Tags shared by every outer way, overridden by the relation's own tags."""
        common: dict[str, str] | None = None
        for way_id in sorted(result.outer_ways):
            way = view.get(ElementKind.WAY, way_id)
            if way is None:
                continue
            if common is None:
                common = dict(way.tags)
            else:
                common = {k: v for k, v in common.items() if way.tags.get(k) == v}
        tags = dict(common or {})
        tags.update({k: v for k, v in relation.tags.items() if k != "type"})
        return tags

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    def _rows(
        self,
        kind: ElementKind,
        id: int,
        tags: dict[str, str],
        matches: list[Match],
        geometries: dict[str, BaseGeometry],
    ) -> list[OutputRow]:
        rows: list[OutputRow] = []
        seen: set[tuple[str, str]] = set()
        for match in matches:
            if (match.table, match.type) in seen:
                continue
            seen.add((match.table, match.type))
            table = self.mapping.table(match.table)
            geometry = geometries.get(table.geometry)
            if geometry is None:
                continue
            row_tags = table.row_tags(tags)
            rows.append(OutputRow(table.name, row_id(kind, id), kind, match.type, row_tags, geometry))
            for level, gen in enumerate(self.mapping.generalized_for(table.name), start=1):
                if not gen.includes(match.type):
                    continue
                rows.append(
                    OutputRow(
                        gen.name,
                        row_id(kind, id),
                        kind,
                        match.type,
                        row_tags,
                        generalize(geometry, gen.tolerance),
                        level=level,
                    )
                )
        return rows

"""
Streaming OpenStreetMap readers built on pyosmium.

read_elements turns a full extract (.osm.pbf, .osm, .osm.bz2) into Node,
Way and Relation records for an import. read_changes turns a change file
(.osc, .osc.gz) into ElementChange records for a diff.

pyosmium objects are only valid inside the loop that produced them, so each
one is copied into a plain dataclass before it is yielded.

Usage:
    from osmdeploy.parsers.pbf import read_changes, read_elements

    elements, result = read_elements("illinois-latest.osm.pbf")
    controller.import_(elements)
    print(result.features_parsed, result.features_failed)

    changes, result = read_changes("000123.osc.gz")
    controller.apply_diff(changes)
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import osmium

from osmdeploy.elements import (
    ChangeAction,
    Element,
    ElementChange,
    ElementKind,
    Member,
    Node,
    Relation,
    Way,
)

logger = logging.getLogger(__name__)


@dataclass
class ParseResult:
    """Accumulated metadata from a read."""

    features_parsed: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def features_failed(self) -> int:
        return len(self.failures)

    def count(self, key: str) -> None:
        self.counts[key] = self.counts.get(key, 0) + 1


def read_elements(filepath: str | Path) -> tuple[Iterator[Element], ParseResult]:
    """
    Stream every node, way and relation of an OSM file.

    Returns:
        (element_iterator, result): iterate the elements, then inspect
        result for counts and skipped objects.
    """
    filepath = Path(filepath)
    result = ParseResult()
    return _generate_elements(filepath, result), result


def read_changes(filepath: str | Path) -> tuple[Iterator[ElementChange], ParseResult]:
    """
    Stream the changes of an OsmChange file in file order.

    Deleted objects become delete changes carrying only kind and id. Objects
    at version 1 are reported as creates, everything else as modifies.
    """
    filepath = Path(filepath)
    result = ParseResult()
    return _generate_changes(filepath, result), result


def _generate_elements(filepath: Path, result: ParseResult) -> Iterator[Element]:
    for obj in osmium.FileProcessor(str(filepath)):
        try:
            element = _convert(obj)
        except Exception as e:
            logger.debug("Skipping %s %d: %s", obj.type_str(), obj.id, e)
            result.failures.append({"osm_id": obj.id, "type": obj.type_str(), "error": str(e)})
            continue
        result.features_parsed += 1
        result.count(element.kind.value)
        yield element

    _log_summary(filepath, result)


def _generate_changes(filepath: Path, result: ParseResult) -> Iterator[ElementChange]:
    for obj in osmium.FileProcessor(str(filepath)):
        kind = ElementKind.from_osmium(obj.type_str())
        try:
            if obj.deleted:
                change = ElementChange.delete(kind, obj.id)
            else:
                action = ChangeAction.CREATE if obj.version == 1 else ChangeAction.MODIFY
                change = ElementChange.upsert(_convert(obj), action)
        except Exception as e:
            logger.debug("Skipping change for %s %d: %s", kind.value, obj.id, e)
            result.failures.append({"osm_id": obj.id, "type": kind.value, "error": str(e)})
            continue
        result.features_parsed += 1
        result.count(change.action.value)
        yield change

    _log_summary(filepath, result)


def _convert(obj) -> Element:
    tags = {t.k: t.v for t in obj.tags}
    if obj.is_node():
        if not obj.location.valid():
            raise ValueError("node has no valid location")
        return Node(obj.id, obj.location.lon, obj.location.lat, tags)
    if obj.is_way():
        return Way(obj.id, [n.ref for n in obj.nodes], tags)
    if obj.is_relation():
        members = [Member(ElementKind.from_osmium(m.type), m.ref, m.role) for m in obj.members]
        return Relation(obj.id, members, tags)
    raise ValueError(f"unsupported object type {obj.type_str()!r}")


def _log_summary(filepath: Path, result: ParseResult) -> None:
    logger.info(
        "Read %d objects from %s (%s)",
        result.features_parsed,
        filepath.name,
        ", ".join(f"{k}={v}" for k, v in sorted(result.counts.items())),
    )
    if result.failures:
        logger.warning(
            "Skipped %d objects in %s (first error: %s)",
            result.features_failed,
            filepath.name,
            result.failures[0]["error"],
        )

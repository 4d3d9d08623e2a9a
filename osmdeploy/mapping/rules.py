"""
Tag classification rules.

A mapping declares output tables and, per table, which tag key/value pairs
select an element into it. The rules are compiled into one ordered tuple of
Rule records and evaluated in declared order; every rule that matches
produces one Match, so an element matching two rules yields two rows, even
when both rules target the same table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from osmdeploy.elements import ElementKind

ANY_VALUE = "__any__"
VALID_GEOMETRY_TYPES = ("point", "linestring", "polygon")

# Which element kinds can produce rows for a table geometry type
KINDS_FOR_GEOMETRY = {
    "point": (ElementKind.NODE,),
    "linestring": (ElementKind.WAY,),
    "polygon": (ElementKind.WAY, ElementKind.RELATION),
}


@dataclass
class EnumerateSpec:
    """
    Zero-based rank of a tag value within ``values``, stored as ``column``.

    Values outside the list leave the column unset.
    """

    key: str
    values: list[str]
    column: str = "enum"

    def rank(self, tags: dict[str, str]) -> int | None:
        value = tags.get(self.key)
        if value is None:
            return None
        try:
            return self.values.index(value)
        except ValueError:
            return None


@dataclass
class TableSpec:
    name: str
    geometry: str
    mapping: dict[str, list[str]]
    columns: list[str] = field(default_factory=list)
    enumerate: EnumerateSpec | None = None

    def __post_init__(self):
        if self.geometry not in VALID_GEOMETRY_TYPES:
            raise ValueError(
                f"geometry must be one of {VALID_GEOMETRY_TYPES}, got {self.geometry!r}"
            )
        if not self.mapping:
            raise ValueError(f"table {self.name!r} has an empty mapping")

    def accepts(self, kind: ElementKind) -> bool:
        return kind in KINDS_FOR_GEOMETRY[self.geometry]

    def row_tags(self, tags: dict[str, str]) -> dict[str, Any]:
        """The subset of ``tags`` stored with each row, plus the enumerate rank."""
        subset: dict[str, Any] = {k: tags[k] for k in self.columns if k in tags}
        if self.enumerate is not None:
            rank = self.enumerate.rank(tags)
            if rank is not None:
                subset[self.enumerate.column] = rank
        return subset


@dataclass
class GeneralizedTableSpec:
    name: str
    source: str
    tolerance: float
    types: list[str] | None = None

    def __post_init__(self):
        if self.tolerance < 0:
            raise ValueError(f"tolerance of {self.name!r} must not be negative")

    def includes(self, type_label: str) -> bool:
        return self.types is None or type_label in self.types


@dataclass(frozen=True)
class Rule:
    key: str
    values: frozenset[str] | None
    table: str
    geometry: str

    def match(self, tags: dict[str, str]) -> str | None:
        value = tags.get(self.key)
        if value is None or value == "":
            return None
        if self.values is None or value in self.values:
            return value
        return None


@dataclass(frozen=True)
class Match:
    table: str
    type: str
    key: str


@dataclass
class Mapping:
    tables: list[TableSpec]
    generalized_tables: list[GeneralizedTableSpec] = field(default_factory=list)

    def __post_init__(self):
        names = [t.name for t in self.tables] + [g.name for g in self.generalized_tables]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"duplicate table names: {sorted(duplicates)}")
        known = {t.name for t in self.tables}
        for gen in self.generalized_tables:
            if gen.source not in known:
                raise ValueError(f"generalized table {gen.name!r} has unknown source {gen.source!r}")
        self._by_name = {t.name: t for t in self.tables}

    def table(self, name: str) -> TableSpec:
        return self._by_name[name]

    def generalized_for(self, source: str) -> list[GeneralizedTableSpec]:
        return [g for g in self.generalized_tables if g.source == source]

    @property
    def table_names(self) -> list[str]:
        """Every physical table: base tables followed by generalized tables."""
        return [t.name for t in self.tables] + [g.name for g in self.generalized_tables]

    def tables_for_kind(self, kind: ElementKind) -> list[str]:
        """Base and generalized tables that can hold rows of ``kind``."""
        names = [t.name for t in self.tables if t.accepts(kind)]
        names += [g.name for g in self.generalized_tables if self.table(g.source).accepts(kind)]
        return names


class Classifier:
    """Evaluates the compiled rules of a Mapping against element tags."""

    def __init__(self, mapping: Mapping) -> None:
        self.mapping = mapping
        self.rules: tuple[Rule, ...] = tuple(
            Rule(
                key=key,
                values=None if ANY_VALUE in values else frozenset(values),
                table=table.name,
                geometry=table.geometry,
            )
            for table in mapping.tables
            for key, values in table.mapping.items()
        )

    def classify(self, tags: dict[str, str], kind: ElementKind) -> list[Match]:
        """
        Matches for an element of ``kind`` with ``tags``, in declared order.

        An element with no matching rule yields an empty list.
        """
        if not tags:
            return []
        matches: list[Match] = []
        for rule in self.rules:
            if kind not in KINDS_FOR_GEOMETRY[rule.geometry]:
                continue
            value = rule.match(tags)
            if value is not None:
                matches.append(Match(table=rule.table, type=value, key=rule.key))
        return matches

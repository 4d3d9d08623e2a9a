"""
OSM element model shared by the cache, geometry, and pipeline modules.

Elements are plain dataclasses addressed by an ElementKey, a (kind, id)
tuple. Nothing holds a reference to another element; ways and relations
only carry ids and are resolved through the ElementStore.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union


class ElementKind(str, Enum):
    NODE = "node"
    WAY = "way"
    RELATION = "relation"

    @classmethod
    def from_osmium(cls, type_char: str) -> ElementKind:
        """Map pyosmium member type characters ("n", "w", "r") to a kind."""
        try:
            return _OSMIUM_TYPES[type_char]
        except KeyError:
            raise ValueError(f"Unknown member type {type_char!r}") from None


_OSMIUM_TYPES = {
    "n": ElementKind.NODE,
    "w": ElementKind.WAY,
    "r": ElementKind.RELATION,
}

ElementKey = tuple[ElementKind, int]


@dataclass(frozen=True)
class Member:
    kind: ElementKind
    ref: int
    role: str = ""

    @property
    def key(self) -> ElementKey:
        return (self.kind, self.ref)


@dataclass
class Node:
    id: int
    lon: float
    lat: float
    tags: dict[str, str] = field(default_factory=dict)

    kind = ElementKind.NODE

    @property
    def key(self) -> ElementKey:
        return (ElementKind.NODE, self.id)


@dataclass
class Way:
    id: int
    refs: list[int] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)

    kind = ElementKind.WAY

    @property
    def key(self) -> ElementKey:
        return (ElementKind.WAY, self.id)

    @property
    def is_closed(self) -> bool:
        return len(self.refs) > 2 and self.refs[0] == self.refs[-1]


@dataclass
class Relation:
    id: int
    members: list[Member] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)

    kind = ElementKind.RELATION

    @property
    def key(self) -> ElementKey:
        return (ElementKind.RELATION, self.id)

    def way_members(self) -> list[Member]:
        return [m for m in self.members if m.kind is ElementKind.WAY]


Element = Union[Node, Way, Relation]


class ChangeAction(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


@dataclass
class ElementChange:
    """
    One entry of a diff batch.

    For deletes only ``kind`` and ``id`` are meaningful; ``element`` is None.
    """

    action: ChangeAction
    kind: ElementKind
    id: int
    element: Element | None = None

    @classmethod
    def upsert(cls, element: Element, action: ChangeAction = ChangeAction.MODIFY) -> ElementChange:
        return cls(action=action, kind=element.kind, id=element.id, element=element)

    @classmethod
    def delete(cls, kind: ElementKind, id: int) -> ElementChange:
        return cls(action=ChangeAction.DELETE, kind=kind, id=id)

    @property
    def key(self) -> ElementKey:
        return (self.kind, self.id)


def row_id(kind: ElementKind, id: int) -> int:
    """Relation-derived rows use the negated relation id."""
    if kind is ElementKind.RELATION:
        return -id
    return id

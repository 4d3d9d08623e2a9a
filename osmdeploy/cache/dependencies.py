"""
Reverse dependency index between cached elements.

An edge ``child -> parent`` means the parent's geometry is built from the
child: node -> way, node/way/relation -> relation. The index is consulted
during diffs to find every element whose output has to be re-derived when a
node, way, or relation changes.

Edges are stored twice, once per direction, in id-sharded dicts. Each shard
has its own lock so imports running on many threads only contend when they
touch the same shard.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from osmdeploy.elements import ElementKey


class _EdgeShard:
    __slots__ = ("lock", "edges")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.edges: dict[ElementKey, set[ElementKey]] = {}


class _EdgeMap:
    """One direction of the index: key -> set of keys."""

    def __init__(self, shards: int) -> None:
        self._shards = [_EdgeShard() for _ in range(shards)]

    def _shard(self, key: ElementKey) -> _EdgeShard:
        return self._shards[hash(key) % len(self._shards)]

    def add(self, key: ElementKey, value: ElementKey) -> None:
        shard = self._shard(key)
        with shard.lock:
            shard.edges.setdefault(key, set()).add(value)

    def discard(self, key: ElementKey, value: ElementKey) -> None:
        shard = self._shard(key)
        with shard.lock:
            targets = shard.edges.get(key)
            if targets is None:
                return
            targets.discard(value)
            if not targets:
                del shard.edges[key]

    def get(self, key: ElementKey) -> frozenset[ElementKey]:
        shard = self._shard(key)
        with shard.lock:
            return frozenset(shard.edges.get(key, ()))


class DependencyIndex:
    """
    Reverse map node -> {ways, relations}, way -> {relations},
    relation -> {relations}.

    Inserting or removing the same edge twice has no additional effect.
    """

    def __init__(self, shards: int = 64) -> None:
        self._parents = _EdgeMap(shards)
        self._children = _EdgeMap(shards)

    def add_edge(self, child: ElementKey, parent: ElementKey) -> None:
        self._parents.add(child, parent)
        self._children.add(parent, child)

    def remove_edge(self, child: ElementKey, parent: ElementKey) -> None:
        self._parents.discard(child, parent)
        self._children.discard(parent, child)

    def set_children(self, parent: ElementKey, children: Iterable[ElementKey]) -> None:
        """Replace every outgoing edge of ``parent`` with ``children``."""
        new = set(children)
        old = self._children.get(parent)
        for child in old - new:
            self.remove_edge(child, parent)
        for child in new - old:
            self.add_edge(child, parent)

    def remove_parent(self, parent: ElementKey) -> None:
        """Prune all edges where ``parent`` is the dependent element."""
        for child in self._children.get(parent):
            self.remove_edge(child, parent)

    def parents(self, key: ElementKey) -> frozenset[ElementKey]:
        """Elements built directly from ``key``."""
        return self._parents.get(key)

    def children(self, key: ElementKey) -> frozenset[ElementKey]:
        """Elements ``key`` is built from."""
        return self._children.get(key)

    def dependents(self, key: ElementKey) -> set[ElementKey]:
        """
        Every element whose geometry transitively includes ``key``.

        Relation cycles terminate because each element is visited once.
        ``key`` itself is not part of the result.
        """
        seen: set[ElementKey] = set()
        stack = list(self.parents(key))
        while stack:
            current = stack.pop()
            if current in seen or current == key:
                continue
            seen.add(current)
            stack.extend(self.parents(current))
        return seen

"""
Element store: coordinates, way node lists, and relation member lists keyed
by (kind, id).

Elements live in an in-memory arena split into id shards. Writes to a shard
are serialized by that shard's lock; reads go straight to the dict. Every
``put`` also records the containment edges the element introduces in the
DependencyIndex (way -> its nodes, relation -> its members).

The arena is persisted to an SQLite file in the cache directory so that
diffs applied in a later process see the state left by the import.

Usage:
    store = ElementStore(shards=64)
    store.put(Node(1, 13.4, 52.5))
    store.put(Way(10, refs=[1, 2]))
    resolved = store.resolve_way(store.get(ElementKind.WAY, 10))
    resolved.missing  # [2]

    store.dump(Path("/tmp/cache/elements.sqlite"))
    store = ElementStore.load(Path("/tmp/cache/elements.sqlite"))
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path

from osmdeploy.cache.dependencies import DependencyIndex
from osmdeploy.elements import (
    Element,
    ElementKey,
    ElementKind,
    Member,
    Node,
    Relation,
    Way,
)

logger = logging.getLogger(__name__)

# Schema version - increment when the cache layout changes
CACHE_VERSION = 1

_CACHE_SCHEMA = """
create table if not exists meta (key text primary key, value text);
create table if not exists nodes (id integer primary key, lon real, lat real, tags text);
create table if not exists ways (id integer primary key, refs text, tags text);
create table if not exists relations (id integer primary key, members text, tags text);
"""

_TABLE_FOR_KIND = {
    ElementKind.NODE: "nodes",
    ElementKind.WAY: "ways",
    ElementKind.RELATION: "relations",
}


@dataclass
class ResolvedWay:
    """Coordinates of a way's nodes in member order, and the refs that were not found."""

    coords: list[tuple[float, float]] = field(default_factory=list)
    missing: list[int] = field(default_factory=list)


def element_children(element: Element) -> set[ElementKey]:
    """Keys an element is built from."""
    if isinstance(element, Way):
        return {(ElementKind.NODE, ref) for ref in element.refs}
    if isinstance(element, Relation):
        return {m.key for m in element.members}
    return set()


class _Shard:
    __slots__ = ("lock", "elements")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.elements: dict[ElementKind, dict[int, Element]] = {kind: {} for kind in ElementKind}


class ElementStore:
    def __init__(self, shards: int = 64, index: DependencyIndex | None = None) -> None:
        self._shards = [_Shard() for _ in range(shards)]
        self.index = index if index is not None else DependencyIndex(shards)

    def _shard(self, id: int) -> _Shard:
        return self._shards[id % len(self._shards)]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def put(self, element: Element) -> None:
        """Store ``element``, replacing any previous version wholesale."""
        shard = self._shard(element.id)
        with shard.lock:
            shard.elements[element.kind][element.id] = element
            if element.kind is not ElementKind.NODE:
                self.index.set_children(element.key, element_children(element))

    def get(self, kind: ElementKind, id: int) -> Element | None:
        return self._shard(id).elements[kind].get(id)

    def delete(self, kind: ElementKind, id: int) -> bool:
        """
        Remove an element. Edges to the elements it references are pruned;
        relations that still list it keep their edge to it.
        """
        shard = self._shard(id)
        with shard.lock:
            removed = shard.elements[kind].pop(id, None)
            if removed is not None and kind is not ElementKind.NODE:
                self.index.remove_parent((kind, id))
        return removed is not None

    def ids(self, kind: ElementKind) -> list[int]:
        """Sorted snapshot of all ids of one kind."""
        result: list[int] = []
        for shard in self._shards:
            result.extend(list(shard.elements[kind].keys()))
        result.sort()
        return result

    def count(self, kind: ElementKind) -> int:
        return sum(len(shard.elements[kind]) for shard in self._shards)

    def resolve_way(self, way: Way) -> ResolvedWay:
        return resolve_way(self, way)

    def parents(self, key: ElementKey) -> set[ElementKey]:
        return set(self.index.parents(key))

    def __iter__(self) -> Iterator[Element]:
        for kind in ElementKind:
            for id in self.ids(kind):
                element = self.get(kind, id)
                if element is not None:
                    yield element

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def dump(self, path: Path) -> None:
        """Write the whole store to ``path``, replacing its contents."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with closing(_connect(path)) as conn, conn:
            for table in _TABLE_FOR_KIND.values():
                conn.execute(f"delete from {table}")
            _write_elements(conn, self)
        logger.info(
            "Dumped %d nodes, %d ways, %d relations to %s",
            self.count(ElementKind.NODE),
            self.count(ElementKind.WAY),
            self.count(ElementKind.RELATION),
            path,
        )

    def sync(self, path: Path, keys: Iterable[ElementKey]) -> None:
        """Write the current version of ``keys`` to ``path``; absent keys are deleted."""
        keys = list(keys)
        with closing(_connect(Path(path))) as conn, conn:
            present = []
            for kind, id in keys:
                element = self.get(kind, id)
                if element is None:
                    conn.execute(f"delete from {_TABLE_FOR_KIND[kind]} where id = ?", (id,))
                else:
                    present.append(element)
            _write_elements(conn, present)
        logger.debug("Synced %d cache entries to %s", len(keys), path)

    @classmethod
    def load(cls, path: Path, shards: int = 64) -> ElementStore:
        """Rebuild a store and its dependency index from a cache file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"No element cache at {path}")
        store = cls(shards=shards)
        with closing(_connect(path)) as conn:
            for id, lon, lat, tags in conn.execute("select id, lon, lat, tags from nodes"):
                store.put(Node(id, lon, lat, json.loads(tags)))
            for id, refs, tags in conn.execute("select id, refs, tags from ways"):
                store.put(Way(id, json.loads(refs), json.loads(tags)))
            for id, members, tags in conn.execute("select id, members, tags from relations"):
                store.put(
                    Relation(
                        id,
                        [Member(ElementKind(k), ref, role) for k, ref, role in json.loads(members)],
                        json.loads(tags),
                    )
                )
        logger.info(
            "Loaded %d nodes, %d ways, %d relations from %s",
            store.count(ElementKind.NODE),
            store.count(ElementKind.WAY),
            store.count(ElementKind.RELATION),
            path,
        )
        return store


def resolve_way(store, way: Way) -> ResolvedWay:
    """
    Look up every node of ``way`` through ``store``.

    Missing nodes are reported rather than raised; the geometry builder
    decides whether what is left is still usable.
    """
    resolved = ResolvedWay()
    for ref in way.refs:
        node = store.get(ElementKind.NODE, ref)
        if node is None:
            resolved.missing.append(ref)
        else:
            resolved.coords.append((node.lon, node.lat))
    return resolved


def _connect(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(path))
    conn.executescript(_CACHE_SCHEMA)
    conn.execute(
        "insert or replace into meta (key, value) values ('version', ?)", (str(CACHE_VERSION),)
    )
    return conn


def _write_elements(conn: sqlite3.Connection, elements: Iterable[Element]) -> None:
    nodes, ways, relations = [], [], []
    for element in elements:
        tags = json.dumps(element.tags, sort_keys=True)
        if isinstance(element, Node):
            nodes.append((element.id, element.lon, element.lat, tags))
        elif isinstance(element, Way):
            ways.append((element.id, json.dumps(element.refs), tags))
        else:
            members = [[m.kind.value, m.ref, m.role] for m in element.members]
            relations.append((element.id, json.dumps(members), tags))
    conn.executemany("insert or replace into nodes values (?, ?, ?, ?)", nodes)
    conn.executemany("insert or replace into ways values (?, ?, ?)", ways)
    conn.executemany("insert or replace into relations values (?, ?, ?)", relations)


class StoreOverlay:
    """
    Scratch layer for a diff batch.

    Puts and deletes are buffered; reads fall through to the store. The
    pipeline derives new rows from the overlay, writes them to the database,
    and only then commits the overlay into the store, so a failed batch
    leaves the store untouched.
    """

    def __init__(self, store: ElementStore) -> None:
        self.store = store
        self._pending: dict[ElementKey, Element | None] = {}
        self._pending_parents: dict[ElementKey, set[ElementKey]] | None = None

    def put(self, element: Element) -> None:
        self._pending[element.key] = element
        self._pending_parents = None

    def delete(self, kind: ElementKind, id: int) -> None:
        self._pending[(kind, id)] = None
        self._pending_parents = None

    def get(self, kind: ElementKind, id: int) -> Element | None:
        key = (kind, id)
        if key in self._pending:
            return self._pending[key]
        return self.store.get(kind, id)

    def resolve_way(self, way: Way) -> ResolvedWay:
        return resolve_way(self, way)

    @property
    def changed_keys(self) -> list[ElementKey]:
        return list(self._pending)

    def children(self, key: ElementKey) -> set[ElementKey]:
        if key in self._pending:
            element = self._pending[key]
            return element_children(element) if element is not None else set()
        return set(self.store.index.children(key))

    def parents(self, key: ElementKey) -> set[ElementKey]:
        """Committed parents plus parents introduced by pending elements."""
        if self._pending_parents is None:
            self._pending_parents = {}
            for pending_key, element in self._pending.items():
                if element is None:
                    continue
                for child in element_children(element):
                    self._pending_parents.setdefault(child, set()).add(pending_key)
        return set(self.store.index.parents(key)) | self._pending_parents.get(key, set())

    def dependents(self, key: ElementKey) -> set[ElementKey]:
        """Transitive parents across committed and pending edges."""
        seen: set[ElementKey] = set()
        stack = list(self.parents(key))
        while stack:
            current = stack.pop()
            if current in seen or current == key:
                continue
            seen.add(current)
            stack.extend(self.parents(current))
        return seen

    def commit(self) -> None:
        for (kind, id), element in self._pending.items():
            if element is None:
                self.store.delete(kind, id)
            else:
                self.store.put(element)
        self._pending.clear()
        self._pending_parents = None

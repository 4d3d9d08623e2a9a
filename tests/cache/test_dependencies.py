from __future__ import annotations

import pytest

from osmdeploy.cache.dependencies import DependencyIndex
from osmdeploy.elements import ElementKind

N = ElementKind.NODE
W = ElementKind.WAY
R = ElementKind.RELATION


@pytest.fixture
def index():
    idx = DependencyIndex(shards=4)
    # node 1 -> way 10 -> relation 100 -> relation 200
    idx.set_children((W, 10), [(N, 1), (N, 2)])
    idx.set_children((W, 11), [(N, 2), (N, 3)])
    idx.set_children((R, 100), [(W, 10), (N, 5)])
    idx.set_children((R, 200), [(R, 100)])
    return idx


class TestEdges:
    def test_add_edge_is_idempotent(self):
        idx = DependencyIndex(shards=2)
        idx.add_edge((N, 1), (W, 10))
        idx.add_edge((N, 1), (W, 10))
        assert idx.parents((N, 1)) == {(W, 10)}
        assert idx.children((W, 10)) == {(N, 1)}

    def test_remove_edge_is_idempotent(self):
        idx = DependencyIndex(shards=2)
        idx.add_edge((N, 1), (W, 10))
        idx.remove_edge((N, 1), (W, 10))
        idx.remove_edge((N, 1), (W, 10))
        assert idx.parents((N, 1)) == frozenset()
        assert idx.children((W, 10)) == frozenset()

    def test_set_children_replaces_previous_edges(self, index):
        index.set_children((W, 10), [(N, 2), (N, 4)])
        assert index.parents((N, 1)) == frozenset()
        assert index.parents((N, 4)) == {(W, 10)}
        assert index.parents((N, 2)) == {(W, 10), (W, 11)}

    def test_remove_parent_keeps_incoming_edges(self, index):
        index.remove_parent((W, 10))
        assert index.parents((N, 1)) == frozenset()
        # relation 100 still lists way 10
        assert index.parents((W, 10)) == {(R, 100)}


class TestDependents:
    def test_node_reaches_ways_and_relations(self, index):
        assert index.dependents((N, 1)) == {(W, 10), (R, 100), (R, 200)}

    def test_shared_node_reaches_both_ways(self, index):
        assert index.dependents((N, 2)) == {(W, 10), (W, 11), (R, 100), (R, 200)}

    def test_excludes_the_key_itself(self, index):
        assert (W, 10) not in index.dependents((W, 10))

    def test_unknown_key_has_no_dependents(self, index):
        assert index.dependents((N, 999)) == set()

    def test_relation_cycle_terminates(self):
        idx = DependencyIndex(shards=2)
        idx.set_children((R, 1), [(R, 2)])
        idx.set_children((R, 2), [(R, 1)])
        assert idx.dependents((R, 1)) == {(R, 2)}
        assert idx.dependents((R, 2)) == {(R, 1)}

"""
Unit tests for the dependency graph.
"""
import random

import pytest

from apphost.MODELS.service_definition import DependencyKind
from apphost.RUNNERS.dependency_graph import DependencyGraph
from apphost.errors import CycleError, UnknownServiceError

WAIT = DependencyKind.WAIT_FOR
REF = DependencyKind.REFERENCE


def make_graph(names, edges=()):
    graph = DependencyGraph()
    for name in names:
        graph.add_service(name)
    for source, target, kind in edges:
        graph.add_edge(source, target, kind)
    return graph


class TestEdges:
    """Tests for adding edges."""

    def test_unknown_target(self):
        graph = make_graph(["web"])
        with pytest.raises(UnknownServiceError) as exc:
            graph.add_edge("web", "api", WAIT)
        assert exc.value.name == "api"
        assert exc.value.referenced_by == "web"

    def test_unknown_source(self):
        graph = make_graph(["api"])
        with pytest.raises(UnknownServiceError):
            graph.add_edge("web", "api", REF)

    def test_edges_listed_by_kind(self):
        graph = make_graph(["api", "web"], [("web", "api", WAIT), ("web", "api", REF)])
        kinds = {(e.source, e.target, e.kind) for e in graph.edges()}
        assert kinds == {("web", "api", WAIT), ("web", "api", REF)}
        assert graph.wait_for_targets("web") == ["api"]
        assert graph.reference_targets("web") == ["api"]
        assert graph.dependents("api") == ["web"]

    def test_transitive_dependents(self):
        graph = make_graph(
            ["db", "api", "web", "worker"],
            [("api", "db", WAIT), ("web", "api", WAIT), ("worker", "db", REF)],
        )
        assert graph.transitive_dependents("db") == ["api", "web", "worker"]
        assert graph.transitive_dependents("web") == []


class TestValidate:
    """Tests for cycle detection."""

    def test_two_node_cycle_names_both(self):
        graph = make_graph(["A", "B"], [("A", "B", WAIT), ("B", "A", WAIT)])
        with pytest.raises(CycleError) as exc:
            graph.validate()
        assert set(exc.value.cycle) == {"A", "B"}
        assert "A" in str(exc.value) and "B" in str(exc.value)

    def test_minimal_cycle_reported(self):
        graph = make_graph(
            ["a", "b", "c"],
            [("a", "b", WAIT), ("b", "c", WAIT), ("c", "a", WAIT), ("c", "b", WAIT)],
        )
        with pytest.raises(CycleError) as exc:
            graph.validate()
        assert exc.value.cycle == ["b", "c"]

    def test_cycle_is_in_edge_order(self):
        graph = make_graph(["a", "b", "c"], [("a", "b", WAIT), ("b", "c", WAIT), ("c", "a", WAIT)])
        assert graph.find_cycle() == ["a", "b", "c"]

    def test_self_loop(self):
        graph = make_graph(["a"], [("a", "a", WAIT)])
        with pytest.raises(CycleError) as exc:
            graph.validate()
        assert exc.value.cycle == ["a"]

    def test_reference_cycles_are_legal(self):
        graph = make_graph(["api", "web"], [("web", "api", REF), ("api", "web", REF)])
        graph.validate()
        assert list(graph.topological_order()) == ["api", "web"]


class TestTopologicalOrder:
    """Tests for startup ordering."""

    def test_dependencies_first(self):
        graph = make_graph(["web", "api"], [("web", "api", WAIT)])
        assert list(graph.topological_order()) == ["api", "web"]

    def test_ties_follow_declaration_order(self):
        graph = make_graph(["c", "a", "b", "d"], [("d", "b", WAIT)])
        assert list(graph.topological_order()) == ["c", "a", "b", "d"]

    def test_reference_edges_do_not_order(self):
        graph = make_graph(["web", "api"], [("web", "api", REF)])
        assert list(graph.topological_order()) == ["web", "api"]

    def test_sequence_is_consumed_once(self):
        graph = make_graph(["a", "b"])
        order = graph.topological_order()
        assert list(order) == ["a", "b"]
        assert list(order) == []

    def test_predecessors_precede_dependents(self):
        rng = random.Random(1234)
        for _ in range(50):
            names = [f"svc{i}" for i in range(rng.randint(1, 12))]
            edges = []
            for i, source in enumerate(names):
                for target in names[:i]:
                    if rng.random() < 0.3:
                        edges.append((source, target, WAIT))
            shuffled = names[:]
            rng.shuffle(shuffled)
            graph = make_graph(shuffled, edges)
            graph.validate()

            order = list(graph.topological_order())
            assert sorted(order) == sorted(names)
            index = {name: i for i, name in enumerate(order)}
            for source, target, _ in edges:
                assert index[target] < index[source]

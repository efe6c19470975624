"""Tests for orchestrator/dependency_graph.py - ordering and cycle detection."""

import pytest

from stratus_deploy.orchestrator.dependency_graph import DependencyGraph, Direction
from stratus_deploy.utils.errors import CycleError, ReferenceError


def _make_graph(edges):
    """Build a graph from (node, [dependencies]) pairs in declaration order."""
    graph = DependencyGraph()
    for node_id, dependencies in edges:
        graph.add_node(node_id, dependencies)
    return graph


class TestOrdering:
    """Test topological ordering."""

    def test_dependencies_come_first(self):
        """Should place every node after its dependencies."""
        graph = _make_graph([('C', ['B']), ('B', ['A']), ('A', [])])
        assert graph.order(Direction.FORWARD) == ['A', 'B', 'C']

    def test_ties_broken_by_declaration_order(self):
        """Independent nodes should keep their declaration order."""
        graph = _make_graph([('Z', []), ('M', []), ('A', [])])
        assert graph.order() == ['Z', 'M', 'A']

    def test_ties_after_shared_dependency(self):
        """Nodes released by the same dependency keep declaration order."""
        graph = _make_graph([('Root', []), ('Late', ['Root']), ('Early', []), ('Mid', ['Root'])])
        assert graph.order() == ['Root', 'Late', 'Early', 'Mid']

    def test_reverse_order(self):
        """Should put dependents before dependencies in reverse direction."""
        graph = _make_graph([('A', []), ('B', ['A']), ('C', ['B'])])
        assert graph.order(Direction.REVERSE) == ['C', 'B', 'A']

    def test_order_is_deterministic(self):
        """Should return the same order on every call."""
        graph = _make_graph([('A', []), ('B', []), ('C', ['A', 'B']), ('D', ['A'])])
        assert graph.order() == graph.order() == ['A', 'B', 'C', 'D']

    def test_explicit_positions(self):
        """Should honour positions passed in explicitly."""
        graph = DependencyGraph()
        graph.add_node('B', [], position=5)
        graph.add_node('A', [], position=1)
        assert graph.order() == ['A', 'B']

    def test_waves(self):
        """Should group mutually independent nodes."""
        graph = _make_graph([('A', []), ('B', []), ('C', ['A']), ('D', ['C', 'B'])])
        assert graph.get_waves() == [['A', 'B'], ['C'], ['D']]


class TestRelations:
    """Test dependency lookups."""

    def test_direct_and_transitive(self):
        """Should report direct and transitive relations."""
        graph = _make_graph([('A', []), ('B', ['A']), ('C', ['B']), ('D', [])])
        assert graph.get_dependencies('C') == {'B'}
        assert graph.get_all_dependencies('C') == {'A', 'B'}
        assert graph.get_dependents('A') == {'B'}
        assert graph.get_all_dependents('A') == {'B', 'C'}
        assert graph.get_all_dependents('D') == set()

    def test_dependents_added_before_dependency(self):
        """Should link dependents declared before the node they need."""
        graph = _make_graph([('B', ['A']), ('A', [])])
        assert graph.nodes['A'].dependents == {'B'}

    def test_duplicate_node(self):
        """Should reject adding a node twice."""
        graph = _make_graph([('A', [])])
        with pytest.raises(ValueError):
            graph.add_node('A')


class TestValidation:
    """Test validation of missing nodes and cycles."""

    def test_missing_dependency(self):
        """Should raise ReferenceError for unknown dependencies."""
        graph = _make_graph([('A', ['Ghost'])])
        with pytest.raises(ReferenceError) as exc_info:
            graph.validate()
        assert 'Ghost' in str(exc_info.value)

    def test_two_node_cycle(self):
        """Should name both members of the cycle."""
        graph = _make_graph([('A', ['B']), ('B', ['A'])])
        with pytest.raises(CycleError) as exc_info:
            graph.order()
        assert exc_info.value.cycle == ['A', 'B', 'A']
        assert 'A -> B -> A' in str(exc_info.value)

    def test_reports_shortest_cycle(self):
        """Should report the shortest cycle among overlapping ones."""
        graph = _make_graph([
            ('A', ['D']),
            ('B', ['A']),
            ('C', ['B']),
            ('D', ['C', 'B']),
        ])
        with pytest.raises(CycleError) as exc_info:
            graph.order()
        assert exc_info.value.cycle == ['A', 'B', 'D', 'A']

    def test_nodes_downstream_of_cycle_are_not_members(self):
        """Should not include nodes that only hang off a cycle."""
        graph = _make_graph([('Ok', []), ('A', ['B']), ('B', ['A']), ('Tail', ['A'])])
        assert graph.find_minimal_cycle() == ['A', 'B', 'A']

    def test_acyclic(self):
        """Should find no cycle in a DAG."""
        graph = _make_graph([('A', []), ('B', ['A'])])
        assert graph.find_minimal_cycle() is None

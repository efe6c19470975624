"""Dependency graph builder for resource ordering."""

import heapq
from enum import Enum
from typing import Dict, Iterable, List, Set, Optional
from dataclasses import dataclass, field
from collections import defaultdict, deque

from stratus_deploy.utils.errors import CycleError, ErrorContext, ReferenceError


class Direction(Enum):
    """Traversal direction for ordering."""
    FORWARD = "forward"  # Dependencies before dependents (create/update)
    REVERSE = "reverse"  # Dependents before dependencies (delete)


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    node_id: str
    position: int
    dependencies: Set[str] = field(default_factory=set)  # Node IDs this node depends on
    dependents: Set[str] = field(default_factory=set)  # Node IDs that depend on this node


class DependencyGraph:
    """Directed graph of node dependencies with deterministic ordering.

    Ties between independent nodes are broken by declaration position, so the
    same graph always yields the same order.
    """

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[str, DependencyNode] = {}
        self._adjacency_list: Dict[str, Set[str]] = defaultdict(set)

    def add_node(
        self,
        node_id: str,
        dependencies: Iterable[str] = (),
        position: Optional[int] = None
    ) -> None:
        """Add a node to the dependency graph.

        Args:
            node_id: ID of the node
            dependencies: IDs of nodes this node depends on
            position: Declaration position used to break ties (defaults to insertion order)
        """
        if node_id in self.nodes:
            raise ValueError(f"Node '{node_id}' already in graph")

        if position is None:
            position = len(self.nodes)

        node = DependencyNode(
            node_id=node_id,
            position=position,
            dependencies=set(dependencies),
        )
        self.nodes[node_id] = node

        # Add edges to adjacency list
        for dep_id in node.dependencies:
            self._adjacency_list[dep_id].add(node_id)
            if dep_id in self.nodes:
                self.nodes[dep_id].dependents.add(node_id)

        # Dependents added before this node
        node.dependents = set(self._adjacency_list[node_id])

    def get_dependencies(self, node_id: str) -> Set[str]:
        """Get direct dependencies of a node.

        Args:
            node_id: ID of node

        Returns:
            Set of node IDs that this node depends on
        """
        if node_id not in self.nodes:
            return set()
        return self.nodes[node_id].dependencies.copy()

    def get_dependents(self, node_id: str) -> Set[str]:
        """Get direct dependents of a node.

        Args:
            node_id: ID of node

        Returns:
            Set of node IDs that depend on this node
        """
        return set(self._adjacency_list.get(node_id, ()))

    def get_all_dependencies(self, node_id: str) -> Set[str]:
        """Get all transitive dependencies of a node.

        Args:
            node_id: ID of node

        Returns:
            Set of all node IDs in the dependency chain
        """
        visited = set()
        queue = deque([node_id])

        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue

            visited.add(current_id)

            # Add dependencies to queue
            if current_id in self.nodes:
                for dep_id in self.nodes[current_id].dependencies:
                    if dep_id not in visited:
                        queue.append(dep_id)

        # Remove the node itself from the result
        visited.discard(node_id)
        return visited

    def get_all_dependents(self, node_id: str) -> Set[str]:
        """Get all transitive dependents of a node.

        Args:
            node_id: ID of node

        Returns:
            Set of all node IDs that depend on this node
        """
        visited = set()
        queue = deque([node_id])

        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue

            visited.add(current_id)

            # Add dependents to queue
            for dependent_id in self._adjacency_list.get(current_id, ()):
                if dependent_id not in visited:
                    queue.append(dependent_id)

        # Remove the node itself from the result
        visited.discard(node_id)
        return visited

    def find_minimal_cycle(self) -> Optional[List[str]]:
        """Find the shortest reference cycle in the graph.

        Only nodes that Kahn's algorithm cannot process can be on a cycle;
        a breadth-first search from each of them finds the shortest path
        back to itself.

        Returns:
            Node IDs forming the cycle with the first node repeated at the
            end (e.g. ``[A, B, A]``), or None if the graph is acyclic
        """
        remaining = set(self.nodes) - set(self._kahn(self._edges_forward()))
        if not remaining:
            return None

        best: Optional[List[str]] = None
        for start in sorted(remaining, key=lambda n: self.nodes[n].position):
            parent: Dict[str, str] = {}
            queue = deque([start])
            found = False
            while queue and not found:
                current = queue.popleft()
                for dependent_id in sorted(
                    self._adjacency_list.get(current, ()),
                    key=lambda n: self.nodes[n].position
                ):
                    if dependent_id not in remaining:
                        continue
                    if dependent_id == start:
                        parent[start] = current
                        found = True
                        break
                    if dependent_id not in parent:
                        parent[dependent_id] = current
                        queue.append(dependent_id)
            if not found:
                continue

            # Walk back from start to rebuild the path in edge direction
            path = [start]
            current = parent[start]
            while current != start:
                path.append(current)
                current = parent[current]
            path.append(start)
            path.reverse()

            if best is None or len(path) < len(best):
                best = path
        return best

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            ReferenceError: If a node depends on a node that is not in the graph
            CycleError: If the graph contains a cycle
        """
        # Check for missing dependencies
        for node_id, node in self.nodes.items():
            for dep_id in node.dependencies:
                if dep_id not in self.nodes:
                    raise ReferenceError(
                        f"Resource '{node_id}' depends on '{dep_id}' which does not exist",
                        context=ErrorContext(resource_id=node_id)
                    )

        # Check for circular dependencies
        cycle = self.find_minimal_cycle()
        if cycle:
            raise CycleError(cycle, context=ErrorContext(resource_id=cycle[0]))

    def order(self, direction: Direction = Direction.FORWARD) -> List[str]:
        """Topologically order all nodes.

        Args:
            direction: FORWARD for create/update order, REVERSE for delete order

        Returns:
            List of node IDs

        Raises:
            CycleError: If graph contains cycles
        """
        self.validate()
        result = self._kahn(self._edges_forward())
        if direction == Direction.REVERSE:
            result.reverse()
        return result

    def get_waves(self) -> List[List[str]]:
        """Group nodes into waves of mutually independent nodes.

        Nodes in the same wave have no dependencies on each other and can be
        applied in parallel.

        Returns:
            List of waves, each sorted by declaration position

        Raises:
            CycleError: If graph contains cycles
        """
        self.validate()

        # Use modified Kahn's algorithm to group by levels
        in_degree = {node_id: len(node.dependencies & self.nodes.keys()) for node_id, node in self.nodes.items()}
        current_wave = [node_id for node_id, degree in in_degree.items() if degree == 0]
        waves = []

        while current_wave:
            current_wave.sort(key=lambda n: self.nodes[n].position)
            waves.append(current_wave)
            next_wave = []

            # Process all nodes in current wave
            for node_id in current_wave:
                # Reduce in-degree for all dependents
                for dependent_id in self._adjacency_list.get(node_id, ()):
                    in_degree[dependent_id] -= 1
                    if in_degree[dependent_id] == 0:
                        next_wave.append(dependent_id)

            current_wave = next_wave

        return waves

    def _edges_forward(self) -> Dict[str, Set[str]]:
        return {node_id: self._adjacency_list.get(node_id, set()) for node_id in self.nodes}

    def _kahn(self, adjacency: Dict[str, Set[str]]) -> List[str]:
        """Kahn's algorithm with a position-keyed heap for stable ties."""
        in_degree = {
            node_id: len(node.dependencies & self.nodes.keys())
            for node_id, node in self.nodes.items()
        }
        heap = [
            (self.nodes[node_id].position, node_id)
            for node_id, degree in in_degree.items() if degree == 0
        ]
        heapq.heapify(heap)
        result = []

        while heap:
            _, node_id = heapq.heappop(heap)
            result.append(node_id)

            # Reduce in-degree for all dependents
            for dependent_id in adjacency[node_id]:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    heapq.heappush(heap, (self.nodes[dependent_id].position, dependent_id))

        return result


"""Deployment order computation."""
import heapq
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Sequence, Set

from ..errors import CyclicDependencyError, UnknownSymbolError
from .analysis import collect_edges
from .graph import ResourceGraph
from .models import DependencyEdge, Node

logger = logging.getLogger(__name__)


class DependencyResolver:
    """Computes a total order in which every node follows its dependencies."""

    def resolve(self, graph: ResourceGraph) -> List[Node]:
        """Order the nodes of a single graph.

        Args:
            graph: Loaded resource graph.

        Returns:
            List[Node]: Resources and modules in deployment order.

        Raises:
            CyclicDependencyError: If the graph contains a cycle.
        """
        edges = collect_edges(graph)
        names = [node.name for node in graph.all_nodes()]
        return [graph.get_by_name(name) for name in self.order(names, edges)]

    @staticmethod
    def order(nodes: Sequence[str], edges: Iterable[DependencyEdge]) -> List[str]:
        """Kahn's algorithm with declaration order as the tie-break.

        Args:
            nodes: Node names in declaration order.
            edges: Dependency edges between those names.

        Returns:
            List[str]: Node names in deployment order.
        """
        position = {name: index for index, name in enumerate(nodes)}
        in_degree: Dict[str, int] = {name: 0 for name in nodes}
        dependents: Dict[str, List[str]] = defaultdict(list)
        edge_list: List[DependencyEdge] = []
        seen: Set[tuple] = set()

        for edge in edges:
            for end in (edge.source, edge.target):
                if end not in position:
                    raise UnknownSymbolError(end, edge.source)
            if (edge.source, edge.target) in seen:
                continue
            seen.add((edge.source, edge.target))
            edge_list.append(edge)
            in_degree[edge.source] += 1
            dependents[edge.target].append(edge.source)

        ready = [(position[name], name) for name, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: List[str] = []
        while ready:
            _, name = heapq.heappop(ready)
            ordered.append(name)
            for dependent in dependents[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (position[dependent], dependent))

        if len(ordered) < len(nodes):
            remaining = [name for name in nodes if in_degree[name] > 0]
            members = cycle_members(remaining, edge_list)
            logger.debug("Unresolvable nodes: %s", remaining)
            raise CyclicDependencyError(members)
        return ordered


def cycle_members(nodes: Sequence[str], edges: Iterable[DependencyEdge]) -> List[str]:
    """Return every node that lies on a cycle, in the order given.

    Uses strongly connected components: a node is on a cycle when its
    component has more than one member or it depends on itself.
    """
    members_of = set(nodes)
    successors: Dict[str, List[str]] = {name: [] for name in nodes}
    predecessors: Dict[str, List[str]] = {name: [] for name in nodes}
    self_loops: Set[str] = set()
    for edge in edges:
        if edge.source in members_of and edge.target in members_of:
            successors[edge.source].append(edge.target)
            predecessors[edge.target].append(edge.source)
            if edge.source == edge.target:
                self_loops.add(edge.source)

    visited: Set[str] = set()
    finished: List[str] = []
    for start in nodes:
        if start in visited:
            continue
        visited.add(start)
        stack = [(start, iter(successors[start]))]
        while stack:
            current, children = stack[-1]
            for child in children:
                if child not in visited:
                    visited.add(child)
                    stack.append((child, iter(successors[child])))
                    break
            else:
                stack.pop()
                finished.append(current)

    assigned: Set[str] = set()
    on_cycle: Set[str] = set()
    for start in reversed(finished):
        if start in assigned:
            continue
        assigned.add(start)
        component = [start]
        pending = [start]
        while pending:
            current = pending.pop()
            for parent in predecessors[current]:
                if parent not in assigned:
                    assigned.add(parent)
                    component.append(parent)
                    pending.append(parent)
        if len(component) > 1 or start in self_loops:
            on_cycle.update(component)

    return [name for name in nodes if name in on_cycle]

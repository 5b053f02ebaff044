# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import heapq
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from vpcflow.core.entity import CoreData
from vpcflow.core.errors import CycleError
from vpcflow.core.topology.conventions import TopologyConventions
from vpcflow.core.topology.model import Resource, ResourceKind, Topology, kind_spec

module_logger = logging.getLogger(__name__)


class GraphNode(CoreData):
    def __init__(self, index: int, name: str, kind: ResourceKind, attributes: Dict[str, Any], dependencies: Sequence[int]) -> None:
        self.index = index
        self.name = name
        self.kind = kind
        # declared attributes with conventions applied, references are still symbolic
        self.attributes = attributes
        self.dependencies = sorted(set(dependencies))


def find_cycle(edges: Dict[str, Iterable[str]]) -> Optional[List[str]]:
    """Return the participants of a cycle (first node repeated at the end) or None if the graph is acyclic.

    Edges map a node to the nodes it depends on. Traversal order is deterministic.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color: Dict[str, int] = {node: WHITE for node in edges}
    for root in sorted(edges):
        if color[root] != WHITE:
            continue
        path: List[str] = [root]
        color[root] = GREY
        stack: List[Tuple[str, List[str]]] = [(root, sorted(edges[root]))]
        while stack:
            node, pending = stack[-1]
            if not pending:
                color[node] = BLACK
                stack.pop()
                path.pop()
                continue
            successor = pending.pop(0)
            state = color.get(successor, BLACK)
            if state == GREY:
                return path[path.index(successor) :] + [successor]
            if state == WHITE:
                color[successor] = GREY
                path.append(successor)
                stack.append((successor, sorted(edges[successor])))
    return None


def topological_levels(edges: Dict[str, Iterable[str]]) -> List[List[str]]:
    """Group nodes into levels so that every node comes after all of its dependencies (sorted within a level).

    Raises CycleError if the graph is not acyclic.
    """
    dependencies = {node: set(deps) for node, deps in edges.items()}
    dependents: Dict[str, Set[str]] = {node: set() for node in dependencies}
    for node, deps in dependencies.items():
        for dep in deps:
            dependents[dep].add(node)
    remaining = {node: len(deps) for node, deps in dependencies.items()}
    current = sorted(node for node, count in remaining.items() if count == 0)
    levels: List[List[str]] = []
    visited = 0
    while current:
        levels.append(current)
        visited += len(current)
        following: List[str] = []
        for node in current:
            for dependent in dependents[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    following.append(dependent)
        current = sorted(following)
    if visited != len(dependencies):
        raise CycleError(find_cycle({node: deps for node, deps in dependencies.items() if remaining[node] > 0}) or [])
    return levels


class DependencyGraph:
    """Index-addressed arena of graph nodes. Edges point from a node to the nodes it depends on."""

    def __init__(self, nodes: Sequence[GraphNode], conventions: Optional[TopologyConventions] = None) -> None:
        self._nodes: List[GraphNode] = list(nodes)
        self._index: Dict[str, int] = {node.name: node.index for node in self._nodes}
        self._dependents: List[List[int]] = [[] for _ in self._nodes]
        for node in self._nodes:
            for dependency in node.dependencies:
                self._dependents[dependency].append(node.index)
        self.conventions = conventions if conventions is not None else TopologyConventions()

    @classmethod
    def empty(cls, conventions: Optional[TopologyConventions] = None) -> "DependencyGraph":
        return DependencyGraph([], conventions)

    def __contains__(self, name: str) -> bool:
        return name in self._index

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> List[GraphNode]:
        return list(self._nodes)

    def names(self) -> List[str]:
        return [node.name for node in self._nodes]

    def node(self, name: str) -> GraphNode:
        return self._nodes[self._index[name]]

    def dependencies_of(self, name: str) -> List[str]:
        return sorted(self._nodes[index].name for index in self.node(name).dependencies)

    def dependents_of(self, name: str) -> List[str]:
        return sorted(self._nodes[index].name for index in self._dependents[self._index[name]])

    def edges(self) -> List[Tuple[str, str]]:
        return [(node.name, self._nodes[dep].name) for node in self._nodes for dep in node.dependencies]

    def levels(self) -> List[List[str]]:
        return topological_levels({node.name: self.dependencies_of(node.name) for node in self._nodes})

    def topological_order(self) -> List[str]:
        """Kahn's algorithm, ties broken by logical name so that the order is stable across runs."""
        remaining = [len(node.dependencies) for node in self._nodes]
        ready = [(node.name, node.index) for node in self._nodes if not node.dependencies]
        heapq.heapify(ready)
        order: List[str] = []
        while ready:
            name, index = heapq.heappop(ready)
            order.append(name)
            for dependent in self._dependents[index]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self._nodes[dependent].name, dependent))
        if len(order) != len(self._nodes):
            raise CycleError(find_cycle({node.name: self.dependencies_of(node.name) for node in self._nodes}) or [])
        return order

    def reverse_topological_order(self) -> List[str]:
        return list(reversed(self.topological_order()))


class GraphBuilder:
    def __init__(self, conventions: Optional[TopologyConventions] = None) -> None:
        self._conventions = conventions if conventions is not None else TopologyConventions()

    @property
    def conventions(self) -> TopologyConventions:
        return self._conventions

    def build(self, topology: Topology) -> DependencyGraph:
        topology.validate()

        index: Dict[str, int] = {resource.name: i for i, resource in enumerate(topology)}
        nodes: List[GraphNode] = []
        for resource in topology:
            dependencies = {index[name] for name in self._dependency_names(topology, resource)}
            dependencies.discard(index[resource.name])
            nodes.append(GraphNode(index[resource.name], resource.name, resource.kind, self._conventions.decorate(resource), dependencies))

        cycle = find_cycle({node.name: [nodes[dep].name for dep in node.dependencies] for node in nodes})
        if cycle:
            raise CycleError(cycle)

        graph = DependencyGraph(nodes, self._conventions)
        module_logger.debug(f"Built dependency graph with {len(nodes)} nodes and {len(graph.edges())} edges.")
        return graph

    @staticmethod
    def _dependency_names(topology: Topology, resource: Resource) -> Set[str]:
        names = {reference.target for reference in resource.references()}
        names.update(resource.depends_on)
        implied_kinds = kind_spec(resource.kind).implied_dependencies
        if implied_kinds:
            vpc = topology.owning_vpc(resource)
            for kind in implied_kinds:
                for candidate in topology.of_kind(kind):
                    if topology.owning_vpc(candidate) is vpc:
                        names.add(candidate.name)
        return names

"""Resource dependency graph construction and validation.

This module turns a flat collection of declared resources into an immutable
directed acyclic graph:
1. Edges from every reference found in any attribute value (recursively
   through nested maps and lists) plus explicit depends_on declarations
2. Cycle detection (DFS with recursion-stack tracking) reporting the
   shortest cycle through the offending resources
3. Topological ordering with a stable (kind, name) tie-break so plans are
   deterministic and diffable across runs

The graph is built fresh at the start of each planning cycle and is never
mutated afterwards, so concurrent executor workers can share it freely.
"""

from __future__ import annotations

import heapq
import logging
from collections import deque
from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING

from .models import Resource, ResourceAddress, SchemaViolation

if TYPE_CHECKING:
    from .provider import ProviderRegistry

logger = logging.getLogger(__name__)


class CycleDetected(Exception):
    """Raised when resource references form a cycle.

    Attributes:
        cycle: Addresses along the cycle, first address repeated at the end.
    """

    def __init__(self, cycle: list[ResourceAddress]) -> None:
        self.cycle = cycle
        path = " -> ".join(str(address) for address in cycle)
        super().__init__(f"Circular reference detected: {path}")


class DanglingReference(SchemaViolation):
    """Raised when a resource references or depends on an undeclared resource."""

    pass


class ResourceGraph:
    """Immutable set of resources plus dependency edges.

    Edges point from a resource to the resources it depends on. The
    topological order lists dependencies before dependents.
    """

    def __init__(
        self,
        resources: Mapping[ResourceAddress, Resource],
        dependencies: Mapping[ResourceAddress, frozenset[ResourceAddress]],
        order: tuple[ResourceAddress, ...],
    ) -> None:
        self._resources = MappingProxyType(dict(resources))
        self._dependencies = MappingProxyType(dict(dependencies))
        dependents: dict[ResourceAddress, set[ResourceAddress]] = {a: set() for a in resources}
        for address, deps in dependencies.items():
            for dep in deps:
                dependents[dep].add(address)
        self._dependents = MappingProxyType(
            {address: frozenset(items) for address, items in dependents.items()}
        )
        self._order = order

    def __contains__(self, address: object) -> bool:
        return address in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self) -> Iterator[Resource]:
        return (self._resources[address] for address in self._order)

    @property
    def order(self) -> tuple[ResourceAddress, ...]:
        """Topological order, dependencies first."""
        return self._order

    def resource(self, address: ResourceAddress) -> Resource:
        return self._resources[address]

    def dependencies_of(self, address: ResourceAddress) -> frozenset[ResourceAddress]:
        """Resources the given resource directly depends on."""
        return self._dependencies[address]

    def dependents_of(self, address: ResourceAddress) -> frozenset[ResourceAddress]:
        """Resources that directly depend on the given resource."""
        return self._dependents[address]

    def downstream_of(self, address: ResourceAddress) -> set[ResourceAddress]:
        """All resources that transitively depend on the given resource."""
        seen: set[ResourceAddress] = set()
        queue = deque(self._dependents[address])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self._dependents[current])
        return seen


def build_graph(
    resources: Iterable[Resource],
    registry: ProviderRegistry | None = None,
) -> ResourceGraph:
    """Build a validated dependency graph from declared resources.

    Args:
        resources: Every resource in the configuration.
        registry: If given, reference targets are checked against the
            referenced kind's schema.

    Returns:
        Immutable resource graph.

    Raises:
        SchemaViolation: If two resources share an address or a reference
            targets an attribute the referenced kind does not expose.
        DanglingReference: If a resource references an undeclared resource.
        CycleDetected: If references form a cycle.
    """
    by_address: dict[ResourceAddress, Resource] = {}
    for resource in resources:
        if resource.address in by_address:
            raise SchemaViolation(f"Duplicate declaration of resource '{resource.address}'")
        by_address[resource.address] = resource

    dependencies: dict[ResourceAddress, frozenset[ResourceAddress]] = {}
    for address, resource in by_address.items():
        deps: set[ResourceAddress] = set()

        for ref in resource.references():
            target = ref.address
            if target not in by_address:
                raise DanglingReference(
                    f"Resource '{address}' references undeclared resource '{target}' ({ref})"
                )
            if registry is not None and registry.has_kind(target.kind):
                top_level = ref.attribute.split(".", 1)[0]
                if top_level not in registry.schema_for(target.kind).referenceable():
                    raise SchemaViolation(
                        f"Resource '{address}' references unknown attribute "
                        f"'{ref.attribute}' of '{target}'"
                    )
            deps.add(target)

        for target in resource.depends_on:
            if target not in by_address:
                raise DanglingReference(
                    f"Resource '{address}' depends on undeclared resource '{target}'"
                )
            deps.add(target)

        dependencies[address] = frozenset(deps)

    _check_acyclic(dependencies)
    order = _topological_order(dependencies)

    logger.debug(
        "Built resource graph",
        extra={
            "resource_count": len(order),
            "edge_count": sum(len(d) for d in dependencies.values()),
        },
    )
    return ResourceGraph(by_address, dependencies, order)


def _check_acyclic(dependencies: Mapping[ResourceAddress, frozenset[ResourceAddress]]) -> None:
    """Depth-first search with an explicit recursion stack.

    Raises:
        CycleDetected: With the shortest cycle through the first cycle found.
    """
    visited: set[ResourceAddress] = set()
    on_stack: set[ResourceAddress] = set()

    for root in sorted(dependencies):
        if root in visited:
            continue
        # Each frame is (node, iterator over its sorted dependencies)
        stack: list[tuple[ResourceAddress, Iterator[ResourceAddress]]] = [
            (root, iter(sorted(dependencies[root])))
        ]
        path: list[ResourceAddress] = [root]
        visited.add(root)
        on_stack.add(root)

        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                path.pop()
                on_stack.discard(node)
                continue
            if child in on_stack:
                found = path[path.index(child):]
                raise CycleDetected(_shortest_cycle(dependencies, found))
            if child not in visited:
                visited.add(child)
                on_stack.add(child)
                path.append(child)
                stack.append((child, iter(sorted(dependencies[child]))))


def _shortest_cycle(
    dependencies: Mapping[ResourceAddress, frozenset[ResourceAddress]],
    candidates: list[ResourceAddress],
) -> list[ResourceAddress]:
    """Shortest cycle passing through any of the candidate nodes (BFS from each)."""
    best: list[ResourceAddress] | None = None

    for start in sorted(candidates):
        parents: dict[ResourceAddress, ResourceAddress] = {}
        queue: deque[ResourceAddress] = deque()
        for dep in sorted(dependencies[start]):
            if dep not in parents:
                parents[dep] = start
                queue.append(dep)

        while queue:
            node = queue.popleft()
            if node == start:
                break
            for dep in sorted(dependencies[node]):
                if dep not in parents:
                    parents[dep] = node
                    queue.append(dep)

        if start not in parents:
            continue

        cycle = [start]
        node = parents[start]
        while node != start:
            cycle.append(node)
            node = parents[node]
        cycle.append(start)
        cycle.reverse()

        if best is None or len(cycle) < len(best):
            best = cycle

    return best if best is not None else [*candidates, candidates[0]]


def _topological_order(
    dependencies: Mapping[ResourceAddress, frozenset[ResourceAddress]],
) -> tuple[ResourceAddress, ...]:
    """Kahn's algorithm with a heap for the (kind, name) tie-break."""
    remaining = {address: len(deps) for address, deps in dependencies.items()}
    dependents: dict[ResourceAddress, list[ResourceAddress]] = {a: [] for a in dependencies}
    for address, deps in dependencies.items():
        for dep in deps:
            dependents[dep].append(address)

    ready = [address for address, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    order: list[ResourceAddress] = []

    while ready:
        current = heapq.heappop(ready)
        order.append(current)
        for dependent in dependents[current]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, dependent)

    return tuple(order)


def reverse_order(
    addresses: Iterable[ResourceAddress],
    dependencies: Mapping[ResourceAddress, Iterable[ResourceAddress]],
) -> list[ResourceAddress]:
    """Order addresses dependents-first, using only edges among them.

    Used for deletes, whose edges come from stored state rather than from a
    built graph. Edges to addresses outside the set are ignored.
    """
    members = set(addresses)
    subgraph = {
        address: frozenset(d for d in dependencies.get(address, ()) if d in members)
        for address in members
    }
    _check_acyclic(subgraph)
    return list(reversed(_topological_order(subgraph)))

"""Resource Graph Builder.

Turns an ordered list of resource declarations into a directed acyclic
dependency graph:
1. Explicit dependencies come from ``dependsOn``
2. Implicit dependencies come from ``${type.name.attribute}`` references
3. Every dependency must name a declared resource
4. Cycles fail the build before any planning happens

Topological order is Kahn's algorithm where the ready set is ordered by
declaration index, so the same input always yields the same order.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Callable, Hashable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .errors import ValidationError
from .interpolation import find_references
from .models import ResourceDeclaration, ResourceId, ResourceSpec

logger = logging.getLogger(__name__)

NodeT = TypeVar("NodeT", bound=Hashable)


class CycleError(ValidationError):
    """Raised when declared dependencies form a cycle."""

    def __init__(self, members: list[ResourceId]) -> None:
        self.members = members
        path = " -> ".join(str(m) for m in [*members, members[0]])
        super().__init__(f"Circular dependency detected: {path}")


class UnresolvedReferenceError(ValidationError):
    """Raised when a dependency names a resource that is not declared."""

    def __init__(self, source: ResourceId, missing: ResourceId) -> None:
        self.source = source
        self.missing = missing
        super().__init__(f"{source} depends on undeclared resource {missing}")


class DuplicateResourceError(ValidationError):
    """Raised when the same identity is declared more than once."""

    pass


def topological_sort(
    dependencies: Mapping[NodeT, Iterable[NodeT]],
    rank: Callable[[NodeT], Any],
) -> tuple[list[NodeT], list[NodeT]]:
    """Order nodes so that every node follows its dependencies.

    Dependencies outside ``dependencies`` keys are ignored.

    Args:
        dependencies: Node -> nodes it depends on.
        rank: Sort key used to break ties among ready nodes.

    Returns:
        Tuple of (ordered nodes, nodes left over because of a cycle).
    """
    dependents: dict[NodeT, list[NodeT]] = {node: [] for node in dependencies}
    in_degree: dict[NodeT, int] = {node: 0 for node in dependencies}

    for node, deps in dependencies.items():
        for dep in set(deps):
            if dep in dependents:
                dependents[dep].append(node)
                in_degree[node] += 1

    ready = [(rank(node), node) for node, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: list[NodeT] = []

    while ready:
        _, current = heapq.heappop(ready)
        ordered.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (rank(dependent), dependent))

    leftover = [node for node in dependencies if in_degree[node] > 0]
    return ordered, leftover


def _find_cycle(
    leftover: list[ResourceId],
    dependencies: Mapping[ResourceId, Iterable[ResourceId]],
) -> list[ResourceId]:
    """Extract one concrete cycle from the nodes Kahn's algorithm could not order.

    Every leftover node still has an unordered dependency, so walking
    dependencies inside the leftover set must eventually revisit a node.
    """
    remaining = set(leftover)
    path: list[ResourceId] = []
    seen: dict[ResourceId, int] = {}
    current = leftover[0]
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        current = min(dep for dep in dependencies[current] if dep in remaining)
    return path[seen[current] :]


@dataclass(frozen=True)
class ResourceGraph:
    """Validated set of resource specs with dependency edges.

    Attributes:
        specs: Specs keyed by identity, in declaration order.
        order: Identities in topological order (dependencies first).
    """

    specs: dict[ResourceId, ResourceSpec] = field(default_factory=dict)
    order: tuple[ResourceId, ...] = ()

    def __contains__(self, identity: object) -> bool:
        return identity in self.specs

    def __iter__(self) -> Iterator[ResourceSpec]:
        for identity in self.order:
            yield self.specs[identity]

    def __len__(self) -> int:
        return len(self.specs)

    def get(self, identity: ResourceId) -> ResourceSpec | None:
        return self.specs.get(identity)

    def topological_order(self) -> list[ResourceId]:
        """Return identities with every dependency before its dependents."""
        return list(self.order)

    def dependencies_of(self, identity: ResourceId) -> frozenset[ResourceId]:
        return self.specs[identity].depends_on

    def dependents_of(self, identity: ResourceId) -> list[ResourceId]:
        """Return direct dependents, in topological order."""
        return [other for other in self.order if identity in self.specs[other].depends_on]

    def transitive_dependencies(self, identity: ResourceId) -> set[ResourceId]:
        """Return every resource ``identity`` depends on, directly or not."""
        result: set[ResourceId] = set()
        stack = list(self.specs[identity].depends_on)
        while stack:
            current = stack.pop()
            if current in result:
                continue
            result.add(current)
            stack.extend(self.specs[current].depends_on)
        return result


def build_graph(declarations: Iterable[ResourceDeclaration]) -> ResourceGraph:
    """Build and validate the dependency graph for a set of declarations.

    Args:
        declarations: Declarations in declaration order.

    Returns:
        Validated ResourceGraph.

    Raises:
        DuplicateResourceError: If an identity is declared twice.
        UnresolvedReferenceError: If a dependency is not declared.
        CycleError: If the dependencies contain a cycle.
        ValidationError: If a ``${...}`` reference is malformed.
    """
    specs: dict[ResourceId, ResourceSpec] = {}

    for index, declaration in enumerate(declarations):
        identity = declaration.identity
        if identity in specs:
            raise DuplicateResourceError(f"Resource {identity} is declared more than once")

        try:
            explicit = [ResourceId.parse(dep) for dep in declaration.depends_on]
            implied = [ref.target for ref in find_references(declaration.attributes)]
        except ValueError as e:
            raise ValidationError(f"Invalid reference in {identity}: {e}") from e

        specs[identity] = ResourceSpec(
            identity=identity,
            attributes=declaration.attributes,
            depends_on=frozenset([*explicit, *implied]),
            index=index,
        )

    for spec in specs.values():
        for dep in sorted(spec.depends_on):
            if dep not in specs:
                raise UnresolvedReferenceError(spec.identity, dep)

    dependencies = {identity: spec.depends_on for identity, spec in specs.items()}
    ordered, leftover = topological_sort(dependencies, rank=lambda i: specs[i].index)

    if leftover:
        members = _find_cycle(leftover, dependencies)
        start = min(range(len(members)), key=lambda n: specs[members[n]].index)
        members = members[start:] + members[:start]
        raise CycleError(members)

    logger.debug(
        "Resource graph built",
        extra={"resource_count": len(specs), "order": [str(i) for i in ordered]},
    )
    return ResourceGraph(specs=specs, order=tuple(ordered))

"""Planner: diff desired state against applied state.

For each resource in topological order the planner compares the desired
attributes with the last applied attributes held by the State Store and
classifies it:

    no usable state              -> create
    attributes differ            -> update
    stored but no longer desired -> delete (dependents before dependencies)

Live observation through the Resource Provider is used when the stored state
cannot be trusted (a previous apply failed or was interrupted) and, on drift
checks, to detect out-of-band changes. Desired state always wins: drifted
resources are re-applied and the drift is reported as a warning.

The planner never mutates state. Deletes are placed before creates and
updates; creates/updates follow topological order with declaration order
breaking ties, so plans are stable across runs.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from .config import DEFAULT_CALL_TIMEOUT_SECONDS
from .diff import AttributeChange, diff_attributes, drifted_attributes
from .errors import DriftDetectedError, PlanningError, ProviderError
from .graph import ResourceGraph, topological_sort
from .interpolation import Reference, resolve
from .models import ResourceId, ResourceSpec, ResourceState, ResourceStatus
from .provider import ResourceProvider, call_provider

if TYPE_CHECKING:
    from .state_store import FileStateStore

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    """Kinds of plan operations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Operation:
    """One planned change to one resource.

    Attributes:
        kind: create, update or delete.
        identity: Target resource.
        attributes: Desired attributes; still holding references when deferred.
        changes: Attribute diff against the last applied (or live) state.
            Updates leave out attributes in ``pending``; their new value is
            only known at apply time.
        dependencies: Dependencies to record in the applied state.
        prerequisites: Earlier operations that must succeed before this one.
        deferred: References wait for outputs produced earlier in this plan.
        pending: Top-level attributes holding those references.
    """

    kind: OperationKind
    identity: ResourceId
    attributes: dict[str, Any] = field(default_factory=dict)
    changes: dict[str, AttributeChange] = field(default_factory=dict)
    dependencies: tuple[ResourceId, ...] = ()
    prerequisites: tuple[ResourceId, ...] = ()
    deferred: bool = False
    pending: tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"{self.kind.value} {self.identity}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "resource": str(self.identity),
            "changes": {key: change.to_dict() for key, change in self.changes.items()},
            "deferred": self.deferred,
            "pending": list(self.pending),
        }


@dataclass(frozen=True)
class Plan:
    """Ordered operations plus the drift observed while planning."""

    operations: tuple[Operation, ...] = ()
    drift: tuple[DriftDetectedError, ...] = ()

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def summary(self) -> dict[str, int]:
        """Count operations per kind."""
        counts = {kind.value: 0 for kind in OperationKind}
        for operation in self.operations:
            counts[operation.kind.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "operations": [operation.to_dict() for operation in self.operations],
            "drift": [str(warning) for warning in self.drift],
            "summary": self.summary(),
        }


class _PendingOutput(LookupError):
    """The referenced output will only be known after an earlier operation."""


class Planner:
    """Computes the Plan that converges applied state to a ResourceGraph."""

    def __init__(
        self,
        store: FileStateStore,
        provider: ResourceProvider | None = None,
        *,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the planner.

        Args:
            store: State Store for the scope being planned.
            provider: Used for live observation; without it stored state is trusted.
            call_timeout_seconds: Timeout for one live read.
        """
        self._store = store
        self._provider = provider
        self._call_timeout = call_timeout_seconds

    async def plan(self, graph: ResourceGraph, drift_check: bool = False) -> Plan:
        """Compute the operations needed to reach ``graph``.

        Args:
            graph: Validated desired state.
            drift_check: Observe every applied resource live to detect drift.

        Returns:
            The ordered Plan (empty when already converged).

        Raises:
            PlanningError: If live observation fails or a reference names an
                output the (unchanged) dependency does not have.
        """
        states = {state.identity: state for state in self._store.list_states()}
        drift: list[DriftDetectedError] = []

        deletes = self._plan_deletes(graph, states)

        applies: list[Operation] = []
        scheduled: set[ResourceId] = set()
        for spec in graph:
            operation = await self._plan_resource(spec, states, scheduled, drift, drift_check)
            if operation is None:
                continue
            prerequisites = tuple(
                dep for dep in graph.topological_order()
                if dep in scheduled and dep in graph.transitive_dependencies(spec.identity)
            )
            applies.append(replace(operation, prerequisites=prerequisites))
            scheduled.add(spec.identity)

        plan = Plan(operations=tuple(deletes + applies), drift=tuple(drift))

        for warning in plan.drift:
            logger.warning(
                "Drift detected",
                extra={
                    "scope": self._store.scope,
                    "resource": warning.identity,
                    "changed": warning.changed,
                },
            )
        logger.info(
            "Plan computed",
            extra={
                "scope": self._store.scope,
                "operations": [str(op) for op in plan.operations],
                **plan.summary(),
            },
        )
        return plan

    async def _plan_resource(
        self,
        spec: ResourceSpec,
        states: dict[ResourceId, ResourceState],
        scheduled: set[ResourceId],
        drift: list[DriftDetectedError],
        drift_check: bool,
    ) -> Operation | None:
        state = states.get(spec.identity)
        resolved, pending = self._resolve(spec, states, scheduled)
        deferred = bool(pending)
        attributes = dict(spec.attributes) if deferred else resolved
        dependencies = tuple(sorted(spec.depends_on))

        live: dict[str, Any] | None = None
        observed = False
        if (
            self._provider is not None
            and state is not None
            and state.provider_id is not None
            and (state.status is not ResourceStatus.APPLIED or drift_check)
        ):
            live = await self._observe(state)
            observed = True

        if state is None or state.provider_id is None or (observed and live is None):
            if observed and state is not None and state.status is ResourceStatus.APPLIED:
                drift.append(DriftDetectedError(str(spec.identity), []))
            return Operation(
                kind=OperationKind.CREATE,
                identity=spec.identity,
                attributes=attributes,
                changes=diff_attributes({}, attributes),
                dependencies=dependencies,
                deferred=deferred,
                pending=pending,
            )

        before = dict(state.attributes)
        force = state.status is not ResourceStatus.APPLIED
        if live is not None:
            drifted = drifted_attributes(state.attributes, live)
            if drifted:
                if state.status is ResourceStatus.APPLIED:
                    drift.append(DriftDetectedError(str(spec.identity), drifted))
                before.update({key: live[key] for key in drifted})
                force = True

        # Pending attributes already applied are compared at apply time
        changes = {
            key: change
            for key, change in diff_attributes(before, resolved).items()
            if key not in pending or key not in before
        }
        if not changes and not force and not deferred:
            return None

        return Operation(
            kind=OperationKind.UPDATE,
            identity=spec.identity,
            attributes=attributes,
            changes=changes,
            dependencies=dependencies,
            deferred=deferred,
            pending=pending,
        )

    def _resolve(
        self,
        spec: ResourceSpec,
        states: dict[ResourceId, ResourceState],
        scheduled: set[ResourceId],
    ) -> tuple[dict[str, Any], tuple[str, ...]]:
        """Resolve references from stored outputs, attribute by attribute.

        Returns:
            Tuple of (attributes, pending). Pending attributes reference an
            output produced earlier in this plan and are returned unresolved
            for the executor to resolve after their dependencies.
        """

        def lookup(reference: Reference) -> Any:
            target = states.get(reference.target)
            if (
                reference.target in scheduled
                or target is None
                or target.status is not ResourceStatus.APPLIED
            ):
                raise _PendingOutput(str(reference.target))
            return target.lookup(reference.attribute)

        resolved: dict[str, Any] = {}
        pending: list[str] = []
        for key, value in spec.attributes.items():
            try:
                resolved[key] = resolve(value, lookup)
            except PlanningError as e:
                if not isinstance(e.__cause__, _PendingOutput):
                    raise
                resolved[key] = value
                pending.append(key)
        return resolved, tuple(pending)

    async def _observe(self, state: ResourceState) -> dict[str, Any] | None:
        assert self._provider is not None and state.provider_id is not None
        try:
            return await call_provider(
                self._provider.read,
                state.identity.type,
                state.provider_id,
                timeout=self._call_timeout,
            )
        except ProviderError as e:
            raise PlanningError(f"Cannot observe live state of {state.identity}: {e}") from e

    def _plan_deletes(
        self,
        graph: ResourceGraph,
        states: dict[ResourceId, ResourceState],
    ) -> list[Operation]:
        """Schedule deletes for stored resources that are no longer declared.

        Dependents are deleted before their dependencies; a delete waits for
        the deletes of everything that (transitively) depends on it.
        """
        removed = {
            identity: state for identity, state in states.items() if identity not in graph
        }
        if not removed:
            return []

        dependencies = {
            identity: [dep for dep in state.dependencies if dep in removed]
            for identity, state in removed.items()
        }
        ordered, leftover = topological_sort(dependencies, rank=lambda identity: identity)
        ordered.extend(sorted(leftover))

        dependents: dict[ResourceId, set[ResourceId]] = {identity: set() for identity in removed}
        for identity, deps in dependencies.items():
            for dep in deps:
                dependents[dep].add(identity)

        def transitive_dependents(identity: ResourceId) -> set[ResourceId]:
            result: set[ResourceId] = set()
            stack = list(dependents[identity])
            while stack:
                current = stack.pop()
                if current not in result:
                    result.add(current)
                    stack.extend(dependents[current])
            return result

        operations = []
        delete_order = list(reversed(ordered))
        for identity in delete_order:
            state = removed[identity]
            waits_for = transitive_dependents(identity)
            operations.append(
                Operation(
                    kind=OperationKind.DELETE,
                    identity=identity,
                    changes=diff_attributes(state.attributes, {}),
                    dependencies=state.dependencies,
                    prerequisites=tuple(dep for dep in delete_order if dep in waits_for),
                )
            )
        return operations

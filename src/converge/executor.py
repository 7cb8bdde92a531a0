"""Executor: apply a Plan against the Resource Provider.

For each operation:
1. Take the resource's lock and mark it ``applying`` (``deleted`` for deletes)
2. Call the provider in a worker thread with a per-call timeout
3. Retry transient failures with exponential backoff and jitter
4. Record ``applied`` with the provider ID, attributes and outputs, or purge
   the entry once a delete is confirmed
5. On persistent failure record ``failed`` and skip every operation that
   depends on the resource, directly or transitively

Independent branches keep going so one failure does not block unrelated
resources. A stop request or the cycle deadline is only honored between
operations; an operation that has started always runs to completion.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .config import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_CALL_TIMEOUT_SECONDS,
    DEFAULT_RETRY_LIMIT,
    Config,
)
from .errors import (
    PermanentProviderError,
    PlanningError,
    ProviderError,
    TransientProviderError,
)
from .interpolation import Reference, resolve
from .models import ResourceId, ResourceState, ResourceStatus
from .planner import Operation, OperationKind, Plan
from .provider import ResourceProvider, call_provider

if TYPE_CHECKING:
    from .state_store import FileStateStore

logger = logging.getLogger(__name__)


class OperationOutcome(str, Enum):
    """Result of one operation within a cycle."""

    SUCCEEDED = "succeeded"
    UNCHANGED = "unchanged"  # Deferred update resolved to the applied attributes
    FAILED = "failed"
    SKIPPED = "skipped"  # Never attempted: dependency failed, stop or timeout


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one operation, as reported in the cycle status."""

    operation: Operation
    outcome: OperationOutcome
    attempts: int = 0
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def converged(self) -> bool:
        return self.outcome in (OperationOutcome.SUCCEEDED, OperationOutcome.UNCHANGED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": str(self.operation.identity),
            "kind": self.operation.kind.value,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class Executor:
    """Applies plans for one scope."""

    def __init__(
        self,
        store: FileStateStore,
        provider: ResourceProvider,
        *,
        retry_limit: int = DEFAULT_RETRY_LIMIT,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        max_concurrency: int = 1,
    ) -> None:
        """Initialize the executor.

        Args:
            store: State Store for the scope.
            provider: Resource Provider to mutate.
            retry_limit: Attempts per operation for transient failures.
            backoff_base_seconds: First retry delay; doubles each attempt.
            call_timeout_seconds: Timeout for one provider call.
            max_concurrency: Provider calls in flight at once. 1 applies
                operations strictly in plan order.
        """
        self._store = store
        self._provider = provider
        self._retry_limit = retry_limit
        self._backoff_base = backoff_base_seconds
        self._call_timeout = call_timeout_seconds
        self._max_concurrency = max_concurrency

    @classmethod
    def from_config(
        cls, config: Config, store: FileStateStore, provider: ResourceProvider
    ) -> Executor:
        return cls(
            store,
            provider,
            retry_limit=config.retry_limit,
            backoff_base_seconds=config.backoff_base_seconds,
            call_timeout_seconds=config.call_timeout_seconds,
            max_concurrency=config.max_concurrency,
        )

    async def execute(
        self,
        plan: Plan,
        *,
        deadline: float | None = None,
        stop: asyncio.Event | None = None,
    ) -> list[OperationResult]:
        """Apply ``plan`` and return one result per operation, in plan order.

        Args:
            plan: Operations to apply.
            deadline: ``time.monotonic()`` value after which no new operation starts.
            stop: When set, no new operation starts.
        """
        results: dict[ResourceId, OperationResult] = {}

        if self._max_concurrency <= 1:
            for operation in plan:
                results[operation.identity] = await self._run(operation, results, deadline, stop)
        else:
            await self._execute_concurrently(plan, results, deadline, stop)

        return [results[operation.identity] for operation in plan]

    async def _execute_concurrently(
        self,
        plan: Plan,
        results: dict[ResourceId, OperationResult],
        deadline: float | None,
        stop: asyncio.Event | None,
    ) -> None:
        finished = {operation.identity: asyncio.Event() for operation in plan}
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run(operation: Operation) -> None:
            try:
                for prerequisite in operation.prerequisites:
                    await finished[prerequisite].wait()
                async with semaphore:
                    results[operation.identity] = await self._run(
                        operation, results, deadline, stop
                    )
            finally:
                finished[operation.identity].set()

        outcomes = await asyncio.gather(
            *(run(operation) for operation in plan), return_exceptions=True
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def _run(
        self,
        operation: Operation,
        results: dict[ResourceId, OperationResult],
        deadline: float | None,
        stop: asyncio.Event | None,
    ) -> OperationResult:
        blocked = [
            prerequisite
            for prerequisite in operation.prerequisites
            if prerequisite in results and not results[prerequisite].converged
        ]
        if blocked:
            return self._skip(operation, f"dependency {blocked[0]} did not converge")
        if stop is not None and stop.is_set():
            return self._skip(operation, "reconciliation stopped before this operation")
        if deadline is not None and time.monotonic() >= deadline:
            return self._skip(operation, "cycle timeout exceeded before this operation")

        async with self._store.resource_lock(operation.identity):
            return await self._apply(operation)

    def _skip(self, operation: Operation, reason: str) -> OperationResult:
        logger.warning(
            "Operation skipped",
            extra={
                "scope": self._store.scope,
                "resource": str(operation.identity),
                "kind": operation.kind.value,
                "reason": reason,
            },
        )
        return OperationResult(operation=operation, outcome=OperationOutcome.SKIPPED, error=reason)

    async def _apply(self, operation: Operation) -> OperationResult:
        started = time.monotonic()
        state = self._store.get(operation.identity) or ResourceState(identity=operation.identity)

        attributes = operation.attributes
        if operation.deferred:
            try:
                attributes = resolve(operation.attributes, self._lookup_output)
            except PlanningError as e:
                return self._fail(operation, state, e, attempts=0, started=started)
            if (
                operation.kind is OperationKind.UPDATE
                and state.status is ResourceStatus.APPLIED
                and attributes == state.attributes
            ):
                return OperationResult(
                    operation=operation,
                    outcome=OperationOutcome.UNCHANGED,
                    duration_seconds=time.monotonic() - started,
                )

        in_progress = (
            ResourceStatus.DELETED
            if operation.kind is OperationKind.DELETE
            else ResourceStatus.APPLYING
        )
        self._store.put(state.transition(in_progress, error=state.error))

        last_error: ProviderError | None = None
        attempt = 0
        for attempt in range(1, self._retry_limit + 1):
            try:
                await self._call(operation, state, attributes)
                last_error = None
                break
            except TransientProviderError as e:
                last_error = e
                if attempt < self._retry_limit:
                    backoff = self._backoff_base * (2 ** (attempt - 1))
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter
                    logger.warning(
                        "Operation failed, retrying",
                        extra={
                            "scope": self._store.scope,
                            "resource": str(operation.identity),
                            "kind": operation.kind.value,
                            "attempt": attempt,
                            "max_attempts": self._retry_limit,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await asyncio.sleep(wait_time)
            except ProviderError as e:
                last_error = e
                break
            except Exception as e:
                # Unclassified provider failures are not retried
                last_error = PermanentProviderError(f"{type(e).__name__}: {e}")
                last_error.__cause__ = e
                break

        if last_error is not None:
            return self._fail(operation, state, last_error, attempts=attempt, started=started)

        logger.info(
            "Operation applied",
            extra={
                "scope": self._store.scope,
                "resource": str(operation.identity),
                "kind": operation.kind.value,
                "attempts": attempt,
            },
        )
        return OperationResult(
            operation=operation,
            outcome=OperationOutcome.SUCCEEDED,
            attempts=attempt,
            duration_seconds=time.monotonic() - started,
        )

    async def _call(
        self, operation: Operation, state: ResourceState, attributes: dict[str, Any]
    ) -> None:
        identity = operation.identity

        if operation.kind is OperationKind.DELETE:
            if state.provider_id is not None:
                await call_provider(
                    self._provider.delete, identity.type, state.provider_id,
                    timeout=self._call_timeout,
                )
            self._store.delete(identity)
            return

        if operation.kind is OperationKind.UPDATE and state.provider_id is not None:
            provider_id = state.provider_id
            outputs = await call_provider(
                self._provider.update, identity.type, provider_id, attributes,
                timeout=self._call_timeout,
            )
        else:
            provider_id, outputs = await call_provider(
                self._provider.create, identity.type, identity.name, attributes,
                timeout=self._call_timeout,
            )

        self._store.put(
            state.transition(
                ResourceStatus.APPLIED,
                attributes=attributes,
                outputs=outputs or {},
                provider_id=provider_id,
                dependencies=operation.dependencies,
            )
        )

    def _lookup_output(self, reference: Reference) -> Any:
        state = self._store.get(reference.target)
        if state is None or state.status is not ResourceStatus.APPLIED:
            raise LookupError(str(reference.target))
        return state.lookup(reference.attribute)

    def _fail(
        self,
        operation: Operation,
        state: ResourceState,
        error: Exception,
        attempts: int,
        started: float,
    ) -> OperationResult:
        self._store.put(state.transition(ResourceStatus.FAILED, error=str(error)))
        logger.error(
            "Operation failed",
            extra={
                "scope": self._store.scope,
                "resource": str(operation.identity),
                "kind": operation.kind.value,
                "attempts": attempts,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
        return OperationResult(
            operation=operation,
            outcome=OperationOutcome.FAILED,
            attempts=attempts,
            error=str(error),
            duration_seconds=time.monotonic() - started,
        )

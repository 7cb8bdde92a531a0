"""Sync cycle status records.

Every completed cycle is summarized in a SyncCycle that answers:
- "Which commit was applied, and when?"
- "Which operations ran, and how did each end?"
- "Why did a cycle fail?"

Records are immutable once built. They are appended to the scope's history
in the State Store and emitted as one structured log record per cycle.
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from .executor import OperationOutcome, OperationResult
from .planner import Plan

if TYPE_CHECKING:
    from .state_store import FileStateStore

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
CONVERGE_VERSION = os.environ.get("CONVERGE_VERSION", "dev")


class CycleOutcome(str, Enum):
    """How a sync cycle ended."""

    SUCCEEDED = "succeeded"  # Every operation succeeded (or nothing to do)
    PARTIAL = "partial"  # Applied, but some operations failed or were skipped
    FAILED = "failed"  # Aborted before anything was applied


@dataclass(frozen=True)
class OperationRecord:
    """Status of one operation as it appears in a cycle record."""

    resource: str
    kind: str
    outcome: str
    attempts: int = 0
    error: str | None = None

    @classmethod
    def from_result(cls, result: OperationResult) -> OperationRecord:
        return cls(
            resource=str(result.operation.identity),
            kind=result.operation.kind.value,
            outcome=result.outcome.value,
            attempts=result.attempts,
            error=result.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "kind": self.kind,
            "outcome": self.outcome,
            "attempts": self.attempts,
            "error": self.error,
        }


def outcome_of(results: list[OperationResult]) -> CycleOutcome:
    """Classify an applied cycle from its operation results."""
    if all(
        result.outcome in (OperationOutcome.SUCCEEDED, OperationOutcome.UNCHANGED)
        for result in results
    ):
        return CycleOutcome.SUCCEEDED
    return CycleOutcome.PARTIAL


@dataclass(frozen=True)
class SyncCycle:
    """Immutable record of one completed reconciliation cycle."""

    scope: str
    commit: str | None
    started_at: datetime
    finished_at: datetime
    outcome: CycleOutcome
    operations: tuple[OperationRecord, ...] = ()
    plan_summary: dict[str, int] = field(default_factory=dict)
    drift: tuple[str, ...] = ()
    drift_check: bool = False
    error: str | None = None
    error_type: str | None = None
    version: str = CONVERGE_VERSION

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @classmethod
    def applied(
        cls,
        scope: str,
        commit: str,
        started_at: datetime,
        plan: Plan,
        results: list[OperationResult],
        drift_check: bool = False,
    ) -> SyncCycle:
        """Build the record of a cycle that reached the executor."""
        return cls(
            scope=scope,
            commit=commit,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            outcome=outcome_of(results),
            operations=tuple(OperationRecord.from_result(result) for result in results),
            plan_summary=plan.summary(),
            drift=tuple(str(warning) for warning in plan.drift),
            drift_check=drift_check,
        )

    @classmethod
    def aborted(
        cls,
        scope: str,
        commit: str | None,
        started_at: datetime,
        error: BaseException,
        drift_check: bool = False,
    ) -> SyncCycle:
        """Build the record of a cycle that failed before applying anything."""
        return cls(
            scope=scope,
            commit=commit,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            outcome=CycleOutcome.FAILED,
            drift_check=drift_check,
            error=str(error),
            error_type=type(error).__name__,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "scope": self.scope,
            "commit": self.commit,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "outcome": self.outcome.value,
            "operations": [record.to_dict() for record in self.operations],
            "plan_summary": dict(self.plan_summary),
            "drift": list(self.drift),
            "drift_check": self.drift_check,
            "error": self.error,
            "error_type": self.error_type,
            "version": self.version,
        }


class StatusReporter:
    """Publishes completed cycles.

    Outputs to:
    1. The scope's history in the State Store
    2. The structured logger (stdout, collected by the platform)
    """

    def __init__(self, store: FileStateStore) -> None:
        self._store = store
        self._host = socket.gethostname()

    def report(self, cycle: SyncCycle) -> None:
        """Record and log a completed cycle."""
        record = cycle.to_dict()
        record["host"] = self._host
        self._store.append_cycle(record)

        match cycle.outcome:
            case CycleOutcome.FAILED:
                level = logging.ERROR
            case CycleOutcome.PARTIAL:
                level = logging.WARNING
            case _:
                level = logging.INFO

        logger.log(
            level,
            "Sync cycle completed",
            extra={
                "cycle": record,
                # Flatten key fields for easier querying
                "scope": cycle.scope,
                "commit": cycle.commit,
                "outcome": cycle.outcome.value,
                "operations_total": len(cycle.operations),
                "operations_failed": sum(
                    1 for op in cycle.operations if op.outcome == OperationOutcome.FAILED.value
                ),
                "duration_seconds": cycle.duration_seconds,
                "converge_version": cycle.version,
            },
        )

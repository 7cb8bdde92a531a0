"""GitOps sync loop for one scope.

The loop polls the desired-state repository and drives each new commit
through the pipeline::

    idle -> fetching -> building -> planning -> applying -> idle

Two states sit outside the pipeline:
- paused: entered by ``pause()``, left only by ``resume()``. No cycle runs.
- degraded: after ``degraded_threshold`` consecutive non-successful cycles.
  Cycles keep running, with the interval doubling per further failure up to
  MAX_DEGRADED_INTERVAL_SECONDS. One successful cycle returns to idle.

A tick does nothing when the commit is unchanged since the last successful
cycle and no drift check is due. A tick that finds the scope lease held by
another reconciliation is skipped without counting as a failure.

Stop requests are honored at state boundaries only: an in-flight provider
call always completes, a pending fetch is abandoned.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from .config import MAX_DEGRADED_INTERVAL_SECONDS, Config
from .errors import LockContentionError, ReconcileError
from .executor import Executor
from .git_source import GitSource, GitSourceError
from .graph import build_graph
from .planner import Planner
from .provider import ResourceProvider
from .spec_loader import load_declarations
from .status import CycleOutcome, StatusReporter, SyncCycle

if TYPE_CHECKING:
    from .state_store import FileStateStore

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    """States of the sync loop."""

    IDLE = "idle"
    FETCHING = "fetching"
    BUILDING = "building"
    PLANNING = "planning"
    APPLYING = "applying"
    PAUSED = "paused"
    DEGRADED = "degraded"


class SyncLoop:
    """Reconciles one scope against a git ref, repeatedly."""

    def __init__(
        self,
        config: Config,
        source: GitSource,
        store: FileStateStore,
        provider: ResourceProvider,
        reporter: StatusReporter | None = None,
    ) -> None:
        """Initialize the loop.

        Args:
            config: Configuration of the scope.
            source: Where desired state is read from.
            store: State Store bound to ``config.scope``.
            provider: Resource Provider used for observation and apply.
            reporter: Publishes completed cycles (defaults to the store's history).
        """
        self._config = config
        self._source = source
        self._store = store
        self._planner = Planner(
            store, provider, call_timeout_seconds=config.call_timeout_seconds
        )
        self._executor = Executor.from_config(config, store, provider)
        self._reporter = reporter or StatusReporter(store)

        self._state = SyncState.IDLE
        self._paused = False
        self._stop_event = asyncio.Event()
        self._wakeup = asyncio.Event()

        self._consecutive_failures = 0
        self._last_successful_commit: str | None = None
        self._last_drift_check: float | None = None

    @property
    def config(self) -> Config:
        return self._config

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_successful_commit(self) -> str | None:
        return self._last_successful_commit

    @property
    def degraded(self) -> bool:
        return self._consecutive_failures >= self._config.degraded_threshold

    def _set_state(self, state: SyncState) -> None:
        if state is not self._state:
            logger.debug(
                "Sync state changed",
                extra={"scope": self._config.scope, "from": self._state.value, "to": state.value},
            )
        self._state = state

    def _settle(self) -> None:
        if self._paused:
            self._set_state(SyncState.PAUSED)
        elif self.degraded:
            self._set_state(SyncState.DEGRADED)
        else:
            self._set_state(SyncState.IDLE)

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def pause(self) -> None:
        """Stop starting new cycles until ``resume()``. A running cycle finishes."""
        logger.info("Sync loop paused", extra={"scope": self._config.scope})
        self._paused = True
        if self._state in (SyncState.IDLE, SyncState.DEGRADED):
            self._set_state(SyncState.PAUSED)

    def resume(self) -> None:
        """Leave the paused state and tick immediately."""
        logger.info("Sync loop resumed", extra={"scope": self._config.scope})
        self._paused = False
        if self._state is SyncState.PAUSED:
            self._settle()
        self._wakeup.set()

    def stop(self) -> None:
        """Signal the loop to stop at the next state boundary."""
        logger.info("Shutdown requested", extra={"scope": self._config.scope})
        self._stop_event.set()
        self._wakeup.set()

    def drift_check_due(self) -> bool:
        interval = self._config.drift_check_interval_seconds
        if interval <= 0:
            return False
        if self._last_drift_check is None:
            return True
        return time.monotonic() - self._last_drift_check >= interval

    def next_interval(self) -> float:
        """Seconds until the next tick."""
        interval = self._config.reconcile_interval_seconds
        if not self.degraded:
            return interval
        excess = self._consecutive_failures - self._config.degraded_threshold
        return min(interval * 2**excess, max(interval, MAX_DEGRADED_INTERVAL_SECONDS))

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Tick at the configured interval until ``stop()``.

        Errors never escape: a failing tick is logged and the loop carries on.
        """
        logger.info(
            "Starting sync loop",
            extra={
                "scope": self._config.scope,
                "repo": str(self._config.repo_path),
                "ref": self._config.ref,
                "path": self._config.desired_state_path,
                "interval_seconds": self._config.reconcile_interval_seconds,
            },
        )

        while not self._stop_event.is_set():
            if self._paused:
                self._set_state(SyncState.PAUSED)
                await self._sleep(None)
                continue

            try:
                await self.tick()
            except Exception:
                logger.exception(
                    "Sync tick failed unexpectedly",
                    extra={"scope": self._config.scope},
                )
                self._settle()

            await self._sleep(self.next_interval())

        logger.info("Sync loop shutdown complete", extra={"scope": self._config.scope})

    async def _sleep(self, timeout: float | None) -> None:
        """Wait for ``timeout`` seconds or until woken by stop/resume."""
        if self._stop_event.is_set():
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except TimeoutError:
            # Normal timeout, continue to next tick
            pass
        self._wakeup.clear()

    async def tick(self) -> SyncCycle | None:
        """Run at most one reconciliation cycle.

        Returns:
            The completed cycle, or None if no cycle ran (paused, stopped,
            nothing new to apply, or lease held elsewhere).
        """
        if self._paused:
            logger.debug("Sync loop paused, skipping tick", extra={"scope": self._config.scope})
            return None

        started_at = datetime.now(UTC)
        drift_check = self.drift_check_due()
        commit: str | None = None

        try:
            self._set_state(SyncState.FETCHING)
            commit = await self._fetch()
            if commit is None:
                return None

            if commit == self._last_successful_commit and not drift_check:
                logger.debug(
                    "Desired state unchanged",
                    extra={"scope": self._config.scope, "commit": commit},
                )
                return None

            async with self._store.lease(timeout=self._config.lock_timeout_seconds):
                cycle = await self._reconcile(commit, started_at, drift_check)
        except LockContentionError as e:
            logger.warning(
                "Scope lease held elsewhere, skipping tick",
                extra={"scope": self._config.scope, "error": str(e)},
            )
            return None
        except ReconcileError as e:
            cycle = SyncCycle.aborted(self._config.scope, commit, started_at, e, drift_check)
        except Exception as e:
            logger.exception(
                "Unexpected error during sync cycle",
                extra={"scope": self._config.scope, "commit": commit},
            )
            cycle = SyncCycle.aborted(self._config.scope, commit, started_at, e, drift_check)
        finally:
            self._settle()

        if cycle is None:
            return None
        self._record(cycle)
        self._settle()
        return cycle

    async def _fetch(self) -> str | None:
        """Resolve the ref in a worker thread. None if stopped meanwhile."""
        fetch = asyncio.ensure_future(asyncio.to_thread(self._source.latest_commit, self._config.ref))
        stopping = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {fetch, stopping},
                timeout=self._config.fetch_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stopping.cancel()

        if fetch in done:
            return fetch.result()

        fetch.cancel()
        if self._stop_event.is_set():
            logger.info("Fetch abandoned on shutdown", extra={"scope": self._config.scope})
            return None
        raise GitSourceError(
            f"Fetching {self._config.ref} timed out after {self._config.fetch_timeout_seconds}s"
        )

    async def _reconcile(
        self, commit: str, started_at: datetime, drift_check: bool
    ) -> SyncCycle | None:
        deadline = time.monotonic() + self._config.cycle_timeout_seconds

        self._set_state(SyncState.BUILDING)
        tree = await asyncio.to_thread(
            self._source.tree, commit, self._config.desired_state_path
        )
        declarations = load_declarations(tree, self._config.desired_state_path)
        graph = build_graph(declarations)
        if self._stop_event.is_set():
            return None

        self._set_state(SyncState.PLANNING)
        plan = await self._planner.plan(graph, drift_check)
        if drift_check:
            self._last_drift_check = time.monotonic()
        if self._stop_event.is_set():
            return None

        self._set_state(SyncState.APPLYING)
        logger.info(
            "Applying plan",
            extra={"scope": self._config.scope, "commit": commit, **plan.summary()},
        )
        results = await self._executor.execute(plan, deadline=deadline, stop=self._stop_event)
        return SyncCycle.applied(
            self._config.scope, commit, started_at, plan, results, drift_check
        )

    def _record(self, cycle: SyncCycle) -> None:
        was_degraded = self.degraded

        if cycle.outcome is CycleOutcome.SUCCEEDED:
            self._consecutive_failures = 0
            self._last_successful_commit = cycle.commit
            if was_degraded:
                logger.info(
                    "Sync loop recovered from degraded state",
                    extra={"scope": self._config.scope, "commit": cycle.commit},
                )
        else:
            self._consecutive_failures += 1
            if self.degraded:
                logger.error(
                    "Sync loop degraded after consecutive unsuccessful cycles",
                    extra={
                        "scope": self._config.scope,
                        "consecutive_failures": self._consecutive_failures,
                        "next_interval_seconds": self.next_interval(),
                    },
                )

        self._reporter.report(cycle)

    def history(self, limit: int | None = None) -> list[dict]:
        """Recorded cycles of this scope, oldest first."""
        return self._store.history(limit)

"""Tests for the GitOps sync loop."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path

import pytest

from converge.config import Config
from converge.errors import PermanentProviderError
from converge.git_source import GitSourceError
from converge.models import ResourceId, ResourceState, ResourceStatus
from converge.state_store import FileStateStore
from converge.status import CycleOutcome
from converge.sync_loop import SyncLoop, SyncState
from provider_mock import MockGitSource, MockResourceProvider, desired_yaml, resource

NET = ResourceId("net", "main")
SVC = ResourceId("svc", "api")

DESIRED = {
    "infra/net.yaml": desired_yaml(resource("net.main", {"cidr": "10.0.0.0/16"})),
    "infra/svc.yaml": desired_yaml(resource("svc.api", {"network": "${net.main.id}"})),
    "README.md": "not desired state",
}


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        scope="test",
        repo_path=tmp_path,
        desired_state_path="infra",
        state_dir=tmp_path / "state",
        reconcile_interval_seconds=10,
        lock_timeout_seconds=0,
        drift_check_interval_seconds=0,
        retry_limit=1,
        backoff_base_seconds=0.001,
        degraded_threshold=2,
        max_concurrency=1,
    )


@pytest.fixture
def loop(
    config: Config,
    source: MockGitSource,
    store: FileStateStore,
    provider: MockResourceProvider,
) -> SyncLoop:
    return SyncLoop(config, source, store, provider)


class TestTick:
    """Tests for single reconciliation cycles."""

    @pytest.mark.asyncio
    async def test_applies_new_commit(
        self,
        loop: SyncLoop,
        source: MockGitSource,
        store: FileStateStore,
        provider: MockResourceProvider,
    ) -> None:
        """Test that a new commit is fetched, planned and applied."""
        sha = source.commit(DESIRED)

        cycle = await loop.tick()

        assert cycle.outcome == CycleOutcome.SUCCEEDED
        assert cycle.commit == sha
        assert cycle.plan_summary == {"create": 2, "update": 0, "delete": 0}
        assert store.get(SVC).attributes == {"network": "/mock/net/main"}
        assert loop.last_successful_commit == sha
        assert loop.state == SyncState.IDLE
        assert [record["commit"] for record in loop.history()] == [sha]

    @pytest.mark.asyncio
    async def test_unchanged_commit_is_noop(
        self, loop: SyncLoop, source: MockGitSource, provider: MockResourceProvider
    ) -> None:
        """Test that an already applied commit does not start a cycle."""
        source.commit(DESIRED)
        await loop.tick()
        provider.calls.clear()

        assert await loop.tick() is None
        assert provider.calls == []
        assert source.fetch_count == 2
        assert len(loop.history()) == 1

    @pytest.mark.asyncio
    async def test_removed_resource_deleted(
        self,
        loop: SyncLoop,
        source: MockGitSource,
        store: FileStateStore,
        provider: MockResourceProvider,
    ) -> None:
        """Test that removing a file from git deletes its resources."""
        source.commit(DESIRED)
        await loop.tick()
        source.commit({"infra/net.yaml": DESIRED["infra/net.yaml"]})

        cycle = await loop.tick()

        assert cycle.plan_summary["delete"] == 1
        assert store.get(SVC) is None
        assert list(provider.resources) == ["/mock/net/main"]

    @pytest.mark.asyncio
    async def test_partial_failure_retried_next_tick(
        self,
        loop: SyncLoop,
        source: MockGitSource,
        store: FileStateStore,
        provider: MockResourceProvider,
    ) -> None:
        """Test that a partial cycle is not treated as applied."""
        sha = source.commit(DESIRED)
        provider.inject_failure("create", "api", PermanentProviderError("quota exceeded"))

        first = await loop.tick()

        assert first.outcome == CycleOutcome.PARTIAL
        assert store.get(SVC).status == ResourceStatus.FAILED
        assert loop.consecutive_failures == 1
        assert loop.last_successful_commit is None

        second = await loop.tick()

        assert second.outcome == CycleOutcome.SUCCEEDED
        assert second.commit == sha
        assert second.plan_summary == {"create": 1, "update": 0, "delete": 0}
        assert loop.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_invalid_desired_state_fails_cycle(
        self, loop: SyncLoop, source: MockGitSource, provider: MockResourceProvider
    ) -> None:
        """Test that validation errors abort the cycle before any provider call."""
        source.commit({"infra/bad.yaml": desired_yaml(resource("svc.a", {"x": "${net.gone.id}"}))})

        cycle = await loop.tick()

        assert cycle.outcome == CycleOutcome.FAILED
        assert cycle.error_type == "UnresolvedReferenceError"
        assert provider.calls == []
        assert loop.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_git_failure_fails_cycle(self, loop: SyncLoop, source: MockGitSource) -> None:
        """Test that an unreachable repository is a failed cycle."""
        source.error = GitSourceError("connection refused")

        cycle = await loop.tick()

        assert cycle.outcome == CycleOutcome.FAILED
        assert cycle.commit is None
        assert "connection refused" in cycle.error

    @pytest.mark.asyncio
    async def test_lease_held_skips_tick(
        self, loop: SyncLoop, source: MockGitSource, store: FileStateStore
    ) -> None:
        """Test that contention is neither a cycle nor a failure."""
        source.commit(DESIRED)

        async with store.lease():
            assert await loop.tick() is None

        assert loop.consecutive_failures == 0
        assert loop.history() == []
        assert loop.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_hung_observation_fails_cycle(
        self,
        config: Config,
        source: MockGitSource,
        store: FileStateStore,
        provider: MockResourceProvider,
    ) -> None:
        """Test that a live read that never returns is bounded by the call timeout."""
        source.commit(DESIRED)
        store.put(
            ResourceState(identity=NET, status=ResourceStatus.FAILED, provider_id="/mock/net/main")
        )
        provider.reads_released.clear()
        loop = SyncLoop(
            replace(config, call_timeout_seconds=1, cycle_timeout_seconds=1),
            source,
            store,
            provider,
        )

        try:
            cycle = await asyncio.wait_for(loop.tick(), timeout=4)
        finally:
            provider.reads_released.set()

        assert cycle.outcome == CycleOutcome.FAILED
        assert cycle.error_type == "PlanningError"
        assert "timed out after 1s" in cycle.error
        assert provider.mutations() == []
        assert loop.state == SyncState.IDLE
        async with store.lease():
            pass

    @pytest.mark.asyncio
    async def test_concurrent_ticks_fail_fast(
        self, config: Config, source: MockGitSource, tmp_path: Path
    ) -> None:
        """Test that only one of two racing loops reconciles the scope."""
        source.commit(DESIRED)
        slow = MockResourceProvider(delay_seconds=0.2)
        loops = [
            SyncLoop(config, source, FileStateStore(tmp_path / "state", "test"), slow)
            for _ in range(2)
        ]

        cycles = await asyncio.gather(*(loop.tick() for loop in loops))

        assert sorted(cycle is None for cycle in cycles) == [False, True]
        assert slow.max_in_flight == 1
        assert len(slow.calls_for("create")) == 2

    @pytest.mark.asyncio
    async def test_concurrent_ticks_wait_for_lease(
        self, config: Config, source: MockGitSource, tmp_path: Path
    ) -> None:
        """Test that a waiting loop runs after the first and finds nothing to do."""
        source.commit(DESIRED)
        slow = MockResourceProvider(delay_seconds=0.2)
        waiting = replace(config, lock_timeout_seconds=10)
        loops = [
            SyncLoop(waiting, source, FileStateStore(tmp_path / "state", "test"), slow)
            for _ in range(2)
        ]

        cycles = await asyncio.gather(*(loop.tick() for loop in loops))

        assert all(cycle.outcome == CycleOutcome.SUCCEEDED for cycle in cycles)
        assert sorted(sum(cycle.plan_summary.values()) for cycle in cycles) == [0, 2]
        assert slow.max_in_flight == 1
        assert len(slow.calls_for("create")) == 2

    @pytest.mark.asyncio
    async def test_drift_repaired_on_drift_check(
        self,
        config: Config,
        source: MockGitSource,
        store: FileStateStore,
        provider: MockResourceProvider,
    ) -> None:
        """Test that a due drift check re-applies even without a new commit."""
        source.commit(DESIRED)
        await SyncLoop(config, source, store, provider).tick()
        provider.tamper("net", "main", cidr="192.168.0.0/24")

        checking = SyncLoop(
            replace(config, drift_check_interval_seconds=60),
            source,
            store,
            provider,
        )
        cycle = await checking.tick()

        assert cycle.drift_check
        assert len(cycle.drift) == 1
        assert provider.resources["/mock/net/main"]["cidr"] == "10.0.0.0/16"
        assert not checking.drift_check_due()


class TestDegraded:
    """Tests for the degraded state."""

    @pytest.mark.asyncio
    async def test_degrades_and_recovers(
        self, loop: SyncLoop, source: MockGitSource, config: Config
    ) -> None:
        """Test degrading after the threshold and recovering on success."""
        source.error = GitSourceError("unreachable")

        await loop.tick()
        assert loop.state == SyncState.IDLE
        assert loop.next_interval() == config.reconcile_interval_seconds

        await loop.tick()
        assert loop.degraded
        assert loop.state == SyncState.DEGRADED
        assert loop.next_interval() == config.reconcile_interval_seconds

        await loop.tick()
        assert loop.next_interval() == config.reconcile_interval_seconds * 2

        source.error = None
        source.commit(DESIRED)
        cycle = await loop.tick()

        assert cycle.outcome == CycleOutcome.SUCCEEDED
        assert not loop.degraded
        assert loop.state == SyncState.IDLE
        assert loop.next_interval() == config.reconcile_interval_seconds


class TestControl:
    """Tests for pause, resume and stop."""

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, loop: SyncLoop, source: MockGitSource) -> None:
        """Test that a paused loop runs no cycle until resumed."""
        source.commit(DESIRED)

        loop.pause()
        assert loop.state == SyncState.PAUSED
        assert await loop.tick() is None
        assert source.fetch_count == 0

        loop.resume()
        assert loop.state == SyncState.IDLE
        assert (await loop.tick()).outcome == CycleOutcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, loop: SyncLoop, source: MockGitSource) -> None:
        """Test that run() ticks immediately and exits promptly on stop."""
        sha = source.commit(DESIRED)

        task = asyncio.create_task(loop.run())
        for _ in range(100):
            if loop.last_successful_commit is not None:
                break
            await asyncio.sleep(0.01)
        loop.stop()
        await asyncio.wait_for(task, timeout=5)

        assert loop.last_successful_commit == sha

    @pytest.mark.asyncio
    async def test_resume_wakes_paused_run(self, loop: SyncLoop, source: MockGitSource) -> None:
        """Test that resume() starts a cycle without waiting for the interval."""
        source.commit(DESIRED)
        loop.pause()

        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.05)
        assert loop.history() == []

        loop.resume()
        for _ in range(100):
            if loop.history():
                break
            await asyncio.sleep(0.01)
        loop.stop()
        await asyncio.wait_for(task, timeout=5)

        assert len(loop.history()) == 1

"""Persistent store for last-applied resource state.

Layout under ``<state_dir>/<scope>/``::

    .lease                 exclusive fcntl lock held for a whole cycle
    resources/<id>.json    one document per resource identity
    history.jsonl          completed sync cycles, newest last

Every document write goes to a temp file in the same directory and is then
renamed over the target (``os.replace``), so a concurrent reader sees either
the previous or the new version of a resource, never a partial write.
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import socket
import tempfile
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote

from .config import MAX_HISTORY_ENTRIES
from .errors import LockContentionError
from .models import ResourceId, ResourceState

logger = logging.getLogger(__name__)

LEASE_FILENAME = ".lease"
RESOURCES_DIRNAME = "resources"
HISTORY_FILENAME = "history.jsonl"

# How often a waiting caller retries a held lease
LEASE_POLL_INTERVAL_SECONDS = 0.05


def _atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` atomically via temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class FileStateStore:
    """Filesystem-backed State Store for a single scope.

    Concurrency:
    - ``lease()`` serializes reconciliation runs across processes (and across
      tasks of one process, since each acquisition opens its own descriptor)
    - ``resource_lock()`` serializes operations on one identity in-process
    - ``put()``/``delete()`` are atomic per identity
    """

    def __init__(self, state_dir: Path, scope: str) -> None:
        self.scope = scope
        self.root = state_dir / scope
        self.resources_dir = self.root / RESOURCES_DIRNAME
        self.history_path = self.root / HISTORY_FILENAME
        self.lease_path = self.root / LEASE_FILENAME
        self.resources_dir.mkdir(parents=True, exist_ok=True)
        self._resource_locks: dict[ResourceId, asyncio.Lock] = {}

    def _path_for(self, identity: ResourceId) -> Path:
        return self.resources_dir / f"{quote(str(identity), safe='')}.json"

    # -------------------------------------------------------------------------
    # Resource state
    # -------------------------------------------------------------------------

    def get(self, identity: ResourceId) -> ResourceState | None:
        """Return the last committed state of ``identity``, if any."""
        path = self._path_for(identity)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return ResourceState.from_dict(json.loads(text))

    def put(self, state: ResourceState) -> None:
        """Atomically replace the stored state of ``state.identity``."""
        content = json.dumps(state.to_dict(), sort_keys=True, indent=2, default=str)
        _atomic_write_text(self._path_for(state.identity), content)
        logger.debug(
            "Resource state written",
            extra={
                "scope": self.scope,
                "resource": str(state.identity),
                "status": state.status.value,
            },
        )

    def delete(self, identity: ResourceId) -> bool:
        """Purge the stored state of ``identity``.

        Returns:
            True if an entry was removed.
        """
        try:
            self._path_for(identity).unlink()
        except FileNotFoundError:
            return False
        logger.debug(
            "Resource state purged",
            extra={"scope": self.scope, "resource": str(identity)},
        )
        return True

    def list_states(self) -> list[ResourceState]:
        """Return all stored states, ordered by identity."""
        states = []
        for path in self.resources_dir.glob("*.json"):
            try:
                states.append(ResourceState.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except FileNotFoundError:
                # Purged between glob and read
                continue
        return sorted(states, key=lambda s: s.identity)

    def resource_lock(self, identity: ResourceId) -> asyncio.Lock:
        """Return the lock serializing operations on ``identity``."""
        lock = self._resource_locks.get(identity)
        if lock is None:
            lock = asyncio.Lock()
            self._resource_locks[identity] = lock
        return lock

    # -------------------------------------------------------------------------
    # Scope lease
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def lease(self, timeout: float = 0) -> AsyncIterator[None]:
        """Hold the scope's exclusive reconciliation lease.

        Args:
            timeout: Seconds to wait for a held lease. 0 fails immediately.

        Raises:
            LockContentionError: If the lease is still held after ``timeout``.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + timeout
        handle = self.lease_path.open("a+", encoding="utf-8")
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockContentionError(
                            f"Scope '{self.scope}' is locked by another reconciliation "
                            f"(waited {timeout}s)"
                        ) from None
                    await asyncio.sleep(LEASE_POLL_INTERVAL_SECONDS)

            handle.seek(0)
            handle.truncate()
            handle.write(
                json.dumps(
                    {
                        "pid": os.getpid(),
                        "host": socket.gethostname(),
                        "acquired_at": datetime.now(UTC).isoformat(),
                    }
                )
            )
            handle.flush()
            logger.debug("Scope lease acquired", extra={"scope": self.scope})

            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                logger.debug("Scope lease released", extra={"scope": self.scope})
        finally:
            handle.close()

    # -------------------------------------------------------------------------
    # Cycle history
    # -------------------------------------------------------------------------

    def append_cycle(self, record: dict[str, Any]) -> None:
        """Append a completed cycle record, keeping the newest entries only."""
        lines = self._read_history_lines()
        lines.append(json.dumps(record, sort_keys=True, default=str))
        _atomic_write_text(self.history_path, "\n".join(lines[-MAX_HISTORY_ENTRIES:]) + "\n")

    def history(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Return recorded cycles, oldest first."""
        lines = self._read_history_lines()
        if limit is not None:
            lines = lines[-limit:] if limit > 0 else []
        return [json.loads(line) for line in lines]

    def _read_history_lines(self) -> list[str]:
        try:
            text = self.history_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        return [line for line in text.splitlines() if line.strip()]

"""Git Source: where desired state comes from.

The sync loop only needs two things from git: the commit a ref currently
points at, and the desired-state files of a commit. ``LocalGitSource``
answers both from a local clone through the ``git`` executable, optionally
fetching first. Other files are never read.

SECURITY: Every git invocation has a timeout and blob sizes are checked
before content is read.
"""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

from .config import DEFAULT_FETCH_TIMEOUT_SECONDS, MAX_DESIRED_STATE_FILE_SIZE_BYTES
from .errors import ReconcileError
from .spec_loader import DESIRED_STATE_SUFFIXES

logger = logging.getLogger(__name__)

DEFAULT_REMOTE = "origin"


class GitSourceError(ReconcileError):
    """Raised when the desired-state repository cannot be read."""

    pass


class GitSource(ABC):
    """Read-only access to a desired-state repository."""

    @abstractmethod
    def latest_commit(self, ref: str) -> str:
        """Return the commit ``ref`` currently points at."""

    @abstractmethod
    def tree(self, commit: str, path: str = "") -> dict[str, str]:
        """Return ``{path: content}`` for desired-state files under ``path``."""


class LocalGitSource(GitSource):
    """Git Source backed by a local clone."""

    def __init__(
        self,
        repo_path: Path | str,
        fetch: bool = True,
        timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        remote: str = DEFAULT_REMOTE,
    ) -> None:
        """Initialize with the clone's path.

        Args:
            repo_path: Working copy or bare repository.
            fetch: Fetch from ``remote`` before resolving a ref.
            timeout: Timeout for each git invocation, in seconds.
            remote: Remote to fetch from and whose branches take precedence.
        """
        self.repo_path = Path(repo_path).resolve()
        self.fetch = fetch
        self.timeout = timeout
        self.remote = remote

    def _run(self, *args: str) -> str:
        """Run a git command and return stdout."""
        try:
            result = subprocess.run(
                ["git", "-C", str(self.repo_path), *args],
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise GitSourceError(f"git {args[0]} failed: {e.stderr.strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise GitSourceError(f"git {args[0]} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise GitSourceError("Git executable not found") from e
        return result.stdout

    def _has_remote(self) -> bool:
        return self.remote in self._run("remote").split()

    def latest_commit(self, ref: str) -> str:
        remote_tracking = False
        if self.fetch and self._has_remote():
            self._run("fetch", "--quiet", "--prune", self.remote)
            remote_tracking = True
            logger.debug("Fetched desired state", extra={"repo": str(self.repo_path)})

        candidates = [f"{self.remote}/{ref}", ref] if remote_tracking else [ref]
        for candidate in candidates:
            try:
                commit = self._run("rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}")
            except GitSourceError:
                continue
            return commit.strip()

        raise GitSourceError(f"Ref '{ref}' not found in {self.repo_path}")

    def tree(self, commit: str, path: str = "") -> dict[str, str]:
        args = ["ls-tree", "-r", "-z", "--long", commit]
        if path.strip("/"):
            args += ["--", path.strip("/")]
        listing = self._run(*args)

        files: dict[str, str] = {}
        for entry in listing.split("\0"):
            if not entry:
                continue
            meta, _, file_path = entry.partition("\t")
            _mode, object_type, object_id, size = meta.split()
            if object_type != "blob" or not file_path.lower().endswith(DESIRED_STATE_SUFFIXES):
                continue
            # SECURITY: Check blob size before reading it
            if int(size) > MAX_DESIRED_STATE_FILE_SIZE_BYTES:
                raise GitSourceError(
                    f"{file_path} exceeds maximum size of "
                    f"{MAX_DESIRED_STATE_FILE_SIZE_BYTES} bytes at {commit[:12]}"
                )
            files[file_path] = self._run("cat-file", "blob", object_id)

        logger.debug(
            "Read desired state tree",
            extra={"commit": commit, "path": path, "files": len(files)},
        )
        return files

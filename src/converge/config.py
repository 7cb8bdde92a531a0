"""Configuration management with validation.

All options are read from the environment and validated at load time so
a misconfigured controller fails at startup instead of mid-reconciliation.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_LOCK_TIMEOUT_SECONDS = 30
MAX_LOCK_TIMEOUT_SECONDS = 600

DEFAULT_RETRY_LIMIT = 3
MAX_RETRY_LIMIT = 10
DEFAULT_BACKOFF_BASE_SECONDS = 5.0

DEFAULT_DEGRADED_THRESHOLD = 5
MAX_DEGRADED_INTERVAL_SECONDS = 3600

DEFAULT_CALL_TIMEOUT_SECONDS = 300
DEFAULT_CYCLE_TIMEOUT_SECONDS = 3600
DEFAULT_FETCH_TIMEOUT_SECONDS = 120
DEFAULT_DRIFT_CHECK_INTERVAL_SECONDS = 1800

DEFAULT_MAX_CONCURRENCY = 4
MAX_CONCURRENCY = 32

# Size limits for desired state read from git
MAX_DESIRED_STATE_FILE_SIZE_BYTES = 1024 * 1024  # 1MB per file
MAX_DESIRED_STATE_FILES = 500
MAX_HISTORY_ENTRIES = 1000

DEFAULT_STATE_DIR = "/var/lib/converge"
DEFAULT_GIT_REF = "main"

# Input validation patterns
VALID_SCOPE_PATTERN = r"^[a-z][a-z0-9-]{0,62}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_GIT_REF_PATTERN = r"^[A-Za-z0-9._/-]+$"


@dataclass(frozen=True)
class Config:
    """Controller configuration for one reconciliation scope.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Target scope (one cluster/environment); one lease per scope
    scope: str

    # Desired state source
    repo_path: Path = field(default_factory=lambda: Path("."))
    ref: str = DEFAULT_GIT_REF
    desired_state_path: str = ""
    fetch: bool = True

    # Applied state
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    lock_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS
    call_timeout_seconds: int = DEFAULT_CALL_TIMEOUT_SECONDS
    cycle_timeout_seconds: int = DEFAULT_CYCLE_TIMEOUT_SECONDS
    fetch_timeout_seconds: int = DEFAULT_FETCH_TIMEOUT_SECONDS
    drift_check_interval_seconds: int = DEFAULT_DRIFT_CHECK_INTERVAL_SECONDS

    # Retry and failure handling
    retry_limit: int = DEFAULT_RETRY_LIMIT
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    degraded_threshold: int = DEFAULT_DEGRADED_THRESHOLD
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    # Azure provider (optional; authentication is managed identity only)
    subscription_id: str | None = None
    client_id: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.scope:
            errors.append("CONVERGE_SCOPE is required")
        elif not re.match(VALID_SCOPE_PATTERN, self.scope):
            errors.append(f"CONVERGE_SCOPE must match pattern {VALID_SCOPE_PATTERN}: {self.scope}")

        if not re.match(VALID_GIT_REF_PATTERN, self.ref) or ".." in self.ref:
            errors.append(f"CONVERGE_REF is not a valid git ref: {self.ref}")

        if self.desired_state_path.startswith("/") or ".." in self.desired_state_path.split("/"):
            errors.append(
                f"CONVERGE_PATH must be relative to the repository root: {self.desired_state_path}"
            )

        if not self.repo_path.exists():
            errors.append(f"Repository path does not exist: {self.repo_path}")

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        # Timing validation
        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"CONVERGE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not 0 <= self.lock_timeout_seconds <= MAX_LOCK_TIMEOUT_SECONDS:
            errors.append(f"CONVERGE_LOCK_TIMEOUT must be between 0 and {MAX_LOCK_TIMEOUT_SECONDS}")

        if self.call_timeout_seconds < 1:
            errors.append("CONVERGE_CALL_TIMEOUT must be at least 1 second")
        elif self.cycle_timeout_seconds < self.call_timeout_seconds:
            errors.append("CONVERGE_CYCLE_TIMEOUT must not be shorter than CONVERGE_CALL_TIMEOUT")

        if self.fetch_timeout_seconds < 1:
            errors.append("CONVERGE_FETCH_TIMEOUT must be at least 1 second")

        if self.drift_check_interval_seconds < 0:
            errors.append("CONVERGE_DRIFT_CHECK_INTERVAL must not be negative (0 disables)")

        # Retry validation
        if not 1 <= self.retry_limit <= MAX_RETRY_LIMIT:
            errors.append(f"CONVERGE_RETRY_LIMIT must be between 1 and {MAX_RETRY_LIMIT}")

        if self.backoff_base_seconds <= 0:
            errors.append("CONVERGE_BACKOFF_BASE must be positive")

        if self.degraded_threshold < 1:
            errors.append("CONVERGE_DEGRADED_THRESHOLD must be at least 1")

        if not 1 <= self.max_concurrency <= MAX_CONCURRENCY:
            errors.append(f"CONVERGE_MAX_CONCURRENCY must be between 1 and {MAX_CONCURRENCY}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, scope: str | None = None) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CONVERGE_SCOPE: Scope identifier (cluster/environment)
            CONVERGE_REPO: Path to the git working copy (default: .)
            CONVERGE_REF: Git ref to follow (default: main)
            CONVERGE_PATH: Subdirectory holding desired state (default: repo root)
            CONVERGE_FETCH: If "true", git fetch before each poll (default: true)
            CONVERGE_STATE_DIR: Applied state directory (default: /var/lib/converge)
            CONVERGE_INTERVAL: Seconds between reconciliation ticks (default: 300)
            CONVERGE_LOCK_TIMEOUT: Seconds to wait for the scope lease, 0 fails fast (default: 30)
            CONVERGE_CALL_TIMEOUT: Timeout per provider call in seconds (default: 300)
            CONVERGE_CYCLE_TIMEOUT: Timeout per reconciliation cycle in seconds (default: 3600)
            CONVERGE_FETCH_TIMEOUT: Timeout for git operations in seconds (default: 120)
            CONVERGE_DRIFT_CHECK_INTERVAL: Seconds between live drift checks, 0 disables
                (default: 1800)
            CONVERGE_RETRY_LIMIT: Attempts per operation on transient errors (default: 3)
            CONVERGE_BACKOFF_BASE: Base of the exponential backoff in seconds (default: 5)
            CONVERGE_DEGRADED_THRESHOLD: Consecutive failed cycles before degrading (default: 5)
            CONVERGE_MAX_CONCURRENCY: Parallel provider calls per cycle (default: 4)

        Azure Variables:
            AZURE_SUBSCRIPTION_ID: Subscription for the Azure resource provider
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            scope=scope if scope is not None else os.environ.get("CONVERGE_SCOPE", ""),
            repo_path=Path(os.environ.get("CONVERGE_REPO", ".")),
            ref=os.environ.get("CONVERGE_REF", DEFAULT_GIT_REF),
            desired_state_path=os.environ.get("CONVERGE_PATH", "").strip("/"),
            fetch=get_bool("CONVERGE_FETCH", True),
            state_dir=Path(os.environ.get("CONVERGE_STATE_DIR", DEFAULT_STATE_DIR)),
            reconcile_interval_seconds=get_int(
                "CONVERGE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            lock_timeout_seconds=get_int("CONVERGE_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT_SECONDS),
            call_timeout_seconds=get_int("CONVERGE_CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT_SECONDS),
            cycle_timeout_seconds=get_int(
                "CONVERGE_CYCLE_TIMEOUT", DEFAULT_CYCLE_TIMEOUT_SECONDS
            ),
            fetch_timeout_seconds=get_int(
                "CONVERGE_FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT_SECONDS
            ),
            drift_check_interval_seconds=get_int(
                "CONVERGE_DRIFT_CHECK_INTERVAL", DEFAULT_DRIFT_CHECK_INTERVAL_SECONDS
            ),
            retry_limit=get_int("CONVERGE_RETRY_LIMIT", DEFAULT_RETRY_LIMIT),
            backoff_base_seconds=get_float("CONVERGE_BACKOFF_BASE", DEFAULT_BACKOFF_BASE_SECONDS),
            degraded_threshold=get_int("CONVERGE_DEGRADED_THRESHOLD", DEFAULT_DEGRADED_THRESHOLD),
            max_concurrency=get_int("CONVERGE_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
        )


def scopes_from_env() -> list[str]:
    """Return the scopes listed in CONVERGE_SCOPE (comma separated)."""
    raw = os.environ.get("CONVERGE_SCOPE", "")
    return [scope.strip() for scope in raw.split(",") if scope.strip()]

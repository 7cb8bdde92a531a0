"""Main entry point for the converge controller.

SECRETLESS ARCHITECTURE:
The controller enforces a secretless security model where:
- ALL cloud authentication uses Managed Identities
- NO service principal secrets or passwords are allowed
- Desired state in git never carries literal secret values

One process can reconcile several scopes: CONVERGE_SCOPE accepts a comma
separated list and each scope gets its own sync loop and State Store.

Signals:
- SIGTERM/SIGINT: stop every loop at the next state boundary
- SIGUSR1: pause every loop
- SIGUSR2: resume every loop
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace
from datetime import UTC, datetime
from typing import TextIO

from .azure_provider import AzureResourceProvider
from .config import Config, ConfigurationError, scopes_from_env
from .git_source import LocalGitSource
from .provider import ResourceProvider
from .security import SecretlessViolationError, get_managed_identity_credential
from .state_store import FileStateStore
from .sync_loop import SyncLoop

HANDLER_NAME = "converge"

# LogRecord attributes that are not structured context
_RESERVED_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRIBUTES:
                log_data[key] = value

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    log_format: str = "json",
    level: int = logging.INFO,
    stream: TextIO | None = None,
) -> None:
    """Configure logging: JSON for production, plain text for terminals.

    Args:
        log_format: "json" or "text".
        level: Root log level.
        stream: Destination (default stdout).
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.set_name(HANDLER_NAME)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_provider(config: Config) -> ResourceProvider:
    """Create the Azure provider for ``config`` (managed identity only).

    Raises:
        ConfigurationError: If no subscription is configured.
        SecretlessViolationError: If credentials are present in the environment.
    """
    if not config.subscription_id:
        raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required for the Azure provider")
    credential = get_managed_identity_credential(config.client_id)
    return AzureResourceProvider(credential, config.subscription_id)


def build_sync_loop(config: Config, provider: ResourceProvider) -> SyncLoop:
    """Wire a sync loop for one scope."""
    source = LocalGitSource(
        config.repo_path,
        fetch=config.fetch,
        timeout=config.fetch_timeout_seconds,
    )
    store = FileStateStore(config.state_dir, config.scope)
    return SyncLoop(config, source, store, provider)


async def run_loops(loops: list[SyncLoop]) -> None:
    """Run sync loops concurrently until stopped by a signal."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()

    def stop_all(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        for sync_loop in loops:
            sync_loop.stop()

    def pause_all() -> None:
        for sync_loop in loops:
            sync_loop.pause()

    def resume_all() -> None:
        for sync_loop in loops:
            sync_loop.resume()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: stop_all(s))
    loop.add_signal_handler(signal.SIGUSR1, pause_all)
    loop.add_signal_handler(signal.SIGUSR2, resume_all)

    await asyncio.gather(*(sync_loop.run() for sync_loop in loops))


async def main() -> int:
    """Run the controller.

    Returns:
        Exit code (0 for success, 1 for configuration or initialization
        errors, 2 for security violations).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        scopes = scopes_from_env()
        if not scopes:
            raise ConfigurationError("CONVERGE_SCOPE is required")
        configs = [Config.from_env(scope=scope) for scope in scopes]
        if len(configs) > 1:
            # Each scope reads its own subdirectory of the desired state
            configs = [
                replace(
                    config,
                    desired_state_path=f"{config.desired_state_path}/{config.scope}".lstrip("/"),
                )
                for config in configs
            ]
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting converge controller",
        extra={"scopes": scopes, "repo": str(configs[0].repo_path), "ref": configs[0].ref},
    )

    try:
        providers: dict[str | None, ResourceProvider] = {}
        loops = []
        for config in configs:
            if config.subscription_id not in providers:
                providers[config.subscription_id] = build_provider(config)
            loops.append(build_sync_loop(config, providers[config.subscription_id]))
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1
    except Exception as e:
        # Unexpected initialization error
        logger.error(
            "Failed to initialize controller",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    try:
        await run_loops(loops)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()

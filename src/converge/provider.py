"""Resource Provider contract.

The engine never talks to a cloud API directly. Every create/read/update/
delete goes through a ResourceProvider, whose calls are synchronous and are
run in worker threads by the planner and executor with a per-call timeout.

Implementations must classify failures:
- TransientProviderError: rate limiting, timeouts, transient network failures
- PermanentProviderError: invalid attributes, quota exceeded, rejection
Any other exception escaping a provider call is treated as permanent.
"""

from __future__ import annotations

import asyncio
import functools
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, TypeVar

from .errors import TransientProviderError

T = TypeVar("T")


class ResourceProvider(ABC):
    """Create, read, update and delete resources by type."""

    @abstractmethod
    def create(
        self, resource_type: str, name: str, attributes: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        """Create a resource.

        Returns:
            Tuple of (provider-assigned identifier, resulting attributes).
        """

    @abstractmethod
    def read(self, resource_type: str, provider_id: str) -> dict[str, Any] | None:
        """Observe a live resource.

        Returns:
            Live attributes, or None if the resource does not exist.
        """

    @abstractmethod
    def update(
        self, resource_type: str, provider_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        """Update a resource in place and return its resulting attributes."""

    @abstractmethod
    def delete(self, resource_type: str, provider_id: str) -> None:
        """Delete a resource. Deleting a missing resource is not an error."""


async def call_provider(func: Callable[..., T], *args: Any, timeout: float) -> T:
    """Run a blocking provider call in a worker thread with a timeout.

    The call itself cannot be interrupted; on timeout it is abandoned and
    its eventual result discarded.

    Raises:
        TransientProviderError: If the call does not finish within ``timeout``.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, functools.partial(func, *args)),
            timeout=timeout,
        )
    except TimeoutError as e:
        raise TransientProviderError(f"{func.__name__} timed out after {timeout}s") from e

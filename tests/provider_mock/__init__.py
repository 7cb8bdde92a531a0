"""Test doubles for the reconciliation engine.

This package provides in-memory implementations of the engine's external
collaborators so the whole pipeline can be exercised without a cloud
account or a git repository.

Key Features:
- In-memory Resource Provider with call recording
- Error injection (transient or permanent) per operation and resource
- Out-of-band tampering to simulate drift
- In-memory Git Source with commits, refs and fetch failures

Usage:
    from provider_mock import MockGitSource, MockResourceProvider, resource

    provider = MockResourceProvider()
    provider.inject_failure("create", "b", TransientProviderError("throttled"))

    graph = build_graph([resource("svc.a"), resource("svc.b", depends_on=["svc.a"])])
"""

from .desired import desired_yaml, graph_of, resource
from .git import MockGitSource
from .provider import MockResourceProvider, ProviderCall

__all__ = [
    "MockGitSource",
    "MockResourceProvider",
    "ProviderCall",
    "desired_yaml",
    "graph_of",
    "resource",
]

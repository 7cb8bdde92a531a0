"""Helpers for writing desired state in tests."""

from __future__ import annotations

from typing import Any

import yaml

from converge.graph import ResourceGraph, build_graph
from converge.models import ResourceDeclaration


def resource(
    identity: str,
    attributes: dict[str, Any] | None = None,
    depends_on: list[str] | None = None,
) -> ResourceDeclaration:
    """Declare a resource from its ``type.name`` identity."""
    resource_type, _, name = identity.rpartition(".")
    return ResourceDeclaration(
        type=resource_type,
        name=name,
        attributes=attributes or {},
        depends_on=depends_on or [],
    )


def graph_of(*declarations: ResourceDeclaration) -> ResourceGraph:
    return build_graph(list(declarations))


def desired_yaml(*declarations: ResourceDeclaration) -> str:
    """Render declarations as a desired-state YAML document."""
    return yaml.safe_dump(
        {"resources": [d.model_dump(by_alias=True) for d in declarations]},
        sort_keys=False,
    )

"""Desired-state loading with validation.

Desired state is a set of YAML files in a git tree. Each file holds one or
more documents; a document is either a flat ``resources:`` list or a
Kubernetes-style wrapper whose ``spec`` section holds that list.

SECURITY: All content enforces size and file-count limits to prevent DoS via
large commits. Input validation is performed at the boundary, and literal
secret values are rejected before anything reaches the planner.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from .config import MAX_DESIRED_STATE_FILE_SIZE_BYTES, MAX_DESIRED_STATE_FILES
from .errors import ValidationError
from .models import DesiredStateDocument, ResourceDeclaration
from .security import reject_plaintext_secrets

logger = logging.getLogger(__name__)

DESIRED_STATE_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(ValidationError):
    """Raised when desired state cannot be parsed or fails validation."""

    pass


def select_files(tree: Mapping[str, str], base_path: str = "") -> list[str]:
    """Return the desired-state files under ``base_path``, sorted by path."""
    prefix = f"{base_path.strip('/')}/" if base_path.strip("/") else ""
    return sorted(
        path
        for path in tree
        if path.startswith(prefix) and path.lower().endswith(DESIRED_STATE_SUFFIXES)
    )


def _format_errors(error: PydanticValidationError) -> str:
    # Format Pydantic validation errors for readability
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        lines.append(f"  - {loc}: {item['msg']}")
    return "\n".join(lines)


def _normalize(value: Any, source: str) -> Any:
    """Reduce YAML values to JSON types.

    YAML produces dates and other non-JSON scalars that would never compare
    equal to what the State Store reads back.
    """
    try:
        return json.loads(json.dumps(value, default=str))
    except (TypeError, ValueError) as e:
        raise SpecLoadError(f"Unsupported value in {source}: {e}") from e


def parse_document(data: Any, source: str) -> list[ResourceDeclaration]:
    """Validate one parsed YAML document."""
    if data is None:
        return []
    if not isinstance(data, dict):
        raise SpecLoadError(f"Desired state document must be a YAML mapping: {source}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in data and "spec" in data:
        data = data.get("spec") or {}
        if not isinstance(data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")

    try:
        document = DesiredStateDocument.model_validate(_normalize(data, source))
    except PydanticValidationError as e:
        raise SpecLoadError(f"Validation failed for {source}:\n{_format_errors(e)}") from e

    for declaration in document.resources:
        reject_plaintext_secrets(str(declaration.identity), declaration.attributes)
    return document.resources


def load_declarations(tree: Mapping[str, str], base_path: str = "") -> list[ResourceDeclaration]:
    """Load every resource declared in ``tree`` in declaration order.

    Files are read in path order and documents within a file in order, so
    the declaration index is stable for a given commit.

    Args:
        tree: Mapping of repository path to file content.
        base_path: Subdirectory holding the desired state ("" for the root).

    Returns:
        Validated declarations.

    Raises:
        SpecLoadError: If a file is too large, is not valid YAML, or fails
            validation.
        PlaintextSecretError: If a sensitive attribute holds a literal value.
    """
    paths = select_files(tree, base_path)
    if len(paths) > MAX_DESIRED_STATE_FILES:
        raise SpecLoadError(
            f"Desired state has {len(paths)} files, more than the maximum "
            f"of {MAX_DESIRED_STATE_FILES}"
        )

    declarations: list[ResourceDeclaration] = []
    for path in paths:
        content = tree[path]
        # SECURITY: Check size before parsing to prevent DoS
        if len(content.encode("utf-8")) > MAX_DESIRED_STATE_FILE_SIZE_BYTES:
            raise SpecLoadError(
                f"Desired state file exceeds maximum size of "
                f"{MAX_DESIRED_STATE_FILE_SIZE_BYTES} bytes: {path}"
            )
        try:
            documents = list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

        for position, data in enumerate(documents):
            source = path if len(documents) == 1 else f"{path}#{position}"
            declarations.extend(parse_document(data, source))

    logger.info(
        "Loaded desired state",
        extra={"files": len(paths), "resources": len(declarations), "base_path": base_path},
    )
    return declarations

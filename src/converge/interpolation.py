"""Attribute interpolation across resources.

A string attribute may reference another resource's output with
``${type.name.attribute}``. A value consisting of exactly one reference takes
the referenced value as-is (keeping its JSON type); references embedded in a
longer string are substituted as text.

EXAMPLE:
```yaml
- type: service
  name: api
  attributes:
    networkId: ${network.hub.id}
    endpoint: "https://${network.hub.fqdn}:8443"
```
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from .errors import PlanningError
from .models import ResourceId

REFERENCE_PATTERN = re.compile(r"\$\{([^}]+)\}")


@dataclass(frozen=True)
class Reference:
    """A parsed ``${type.name.attribute}`` expression."""

    target: ResourceId
    attribute: str
    expression: str


def parse_reference(expression: str) -> Reference:
    """Parse the inside of a ``${...}`` expression.

    Raises:
        ValueError: If the expression is not ``type.name.attribute``.
    """
    identity, sep, attribute = expression.strip().rpartition(".")
    if not sep or not attribute:
        raise ValueError(f"Reference must be 'type.name.attribute': ${{{expression}}}")
    return Reference(
        target=ResourceId.parse(identity),
        attribute=attribute,
        expression=expression,
    )


def _walk_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _walk_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _walk_strings(item)


def find_references(value: Any) -> list[Reference]:
    """Return every reference in a (nested) attribute value, in order.

    Raises:
        ValueError: If a ``${...}`` expression is malformed.
    """
    references: list[Reference] = []
    for text in _walk_strings(value):
        for match in REFERENCE_PATTERN.finditer(text):
            references.append(parse_reference(match.group(1)))
    return references


def resolve(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Return a copy of ``value`` with all references substituted.

    Args:
        value: Attribute value (scalars, dicts and lists).
        lookup: Returns the referenced value, or raises KeyError/LookupError
            when it is not known yet.

    Raises:
        PlanningError: If any reference cannot be resolved.
    """
    if isinstance(value, dict):
        return {key: resolve(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve(item, lookup) for item in value]
    if not isinstance(value, str):
        return value

    def lookup_or_fail(expression: str) -> Any:
        reference = parse_reference(expression)
        try:
            return lookup(reference)
        except LookupError as e:
            raise PlanningError(
                f"Cannot resolve ${{{expression}}}: output of {reference.target} is not known"
            ) from e

    whole = REFERENCE_PATTERN.fullmatch(value)
    if whole:
        return lookup_or_fail(whole.group(1))

    return REFERENCE_PATTERN.sub(lambda m: str(lookup_or_fail(m.group(1))), value)

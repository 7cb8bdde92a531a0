"""Attribute diffing and live-state comparison.

Two comparisons are needed:
1. Desired vs last applied: exact, key by key. Any difference means update.
2. Last applied vs live observation: tolerant. Providers fill in defaults and
   computed fields, so live state only drifts when a value we applied is no
   longer there.

Semantic equivalence applied to live comparisons:
- Empty equivalence: [], {}, "" and null are equivalent
- Boolean normalization: "true"/"True" vs true
- Numeric strings: "100" vs 100
- Case-insensitive strings (enum values such as "Enabled" vs "enabled")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

_MISSING = object()


@dataclass(frozen=True)
class AttributeChange:
    """Before/after value of one top-level attribute. None means absent."""

    before: Any
    after: Any

    def to_dict(self) -> dict[str, Any]:
        return {"before": self.before, "after": self.after}


def diff_attributes(before: dict[str, Any], after: dict[str, Any]) -> dict[str, AttributeChange]:
    """Return the top-level attributes that differ, in sorted key order."""
    changes: dict[str, AttributeChange] = {}
    for key in sorted(set(before) | set(after)):
        old = before.get(key, _MISSING)
        new = after.get(key, _MISSING)
        if old != new:
            changes[key] = AttributeChange(
                before=None if old is _MISSING else old,
                after=None if new is _MISSING else new,
            )
    return changes


def _normalize(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, list, dict)) and len(value) == 0:
        return None
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        try:
            return float(lowered) if "." in lowered else int(lowered)
        except ValueError:
            return lowered
    return value


def is_satisfied_by(applied: Any, live: Any) -> bool:
    """Check that everything in ``applied`` is still present in ``live``.

    Extra keys in live dictionaries are ignored; lists must match
    element-wise.
    """
    if isinstance(applied, dict):
        if not applied:
            return _normalize(live) is None
        if not isinstance(live, dict):
            return False
        return all(
            is_satisfied_by(value, live.get(key))
            for key, value in applied.items()
        )
    if isinstance(applied, list):
        if not applied:
            return _normalize(live) is None
        if not isinstance(live, list) or len(applied) != len(live):
            return False
        return all(is_satisfied_by(a, b) for a, b in zip(applied, live, strict=True))
    return _normalize(applied) == _normalize(live)


def drifted_attributes(applied: dict[str, Any], live: dict[str, Any]) -> list[str]:
    """Return applied attributes that the live resource no longer satisfies.

    Attributes the provider does not report at all (e.g. request-only fields
    such as API versions) are not considered drift.
    """
    return sorted(
        key
        for key, value in applied.items()
        if key in live and not is_satisfied_by(value, live[key])
    )

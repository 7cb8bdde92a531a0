"""Error taxonomy shared by the reconciliation pipeline.

Propagation policy:
- ValidationError: malformed desired state. Fatal to the cycle, never retried.
- PlanningError: the plan cannot be computed (or a deferred reference is still
  unresolved at apply time).
- ProviderError: raised by Resource Provider adapters, classified as transient
  (retried with backoff) or permanent (resource marked failed).
- LockContentionError: the scope lease is held elsewhere. The cycle is skipped.
- DriftDetectedError: never raised out of the planner; carried in the plan as
  a warning because desired state always wins.
"""

from __future__ import annotations


class ReconcileError(Exception):
    """Root of all reconciliation errors."""

    pass


class ValidationError(ReconcileError):
    """Raised when the desired state is malformed."""

    pass


class PlanningError(ReconcileError):
    """Raised when a plan or one of its operations cannot be resolved."""

    pass


class LockContentionError(ReconcileError):
    """Raised when a scope lease cannot be acquired in time."""

    pass


class DriftDetectedError(ReconcileError):
    """Live state diverged from the last applied state out of band."""

    def __init__(self, identity: str, changed: list[str]) -> None:
        self.identity = identity
        self.changed = changed
        if changed:
            detail = f"attributes changed out of band: {changed}"
        else:
            detail = "resource disappeared out of band"
        super().__init__(f"Drift detected on {identity}: {detail}")


class ProviderError(ReconcileError):
    """Base class for Resource Provider failures."""

    transient: bool = False


class TransientProviderError(ProviderError):
    """Rate limiting, timeouts and other failures worth retrying."""

    transient = True


class PermanentProviderError(ProviderError):
    """Provider-side rejection that retrying will not fix."""

    pass

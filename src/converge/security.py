"""Security enforcement for secretless operation.

Two rules are enforced:
1. The controller authenticates to cloud providers with managed identities
   only. Credential environment variables abort startup.
2. Desired state committed to git never carries a plaintext secret. Attributes
   whose name marks them as sensitive must be references (``${...}``) to a
   resource that delivers the value at apply time, never literal values.

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET (and friends) must never be present in the environment
2. ManagedIdentityCredential is the ONLY credential type created here
3. A literal non-empty value under a sensitive key fails the cycle as invalid
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any

from azure.identity import ManagedIdentityCredential

from .errors import ValidationError
from .interpolation import REFERENCE_PATTERN

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

# Attribute names that must never hold literal values in desired state
SENSITIVE_ATTRIBUTE_PATTERN = re.compile(
    r"(password|passwd|secret|token|api[_-]?key|access[_-]?key|private[_-]?key|credential)",
    re.IGNORECASE,
)

SECRETLESS_VIOLATION_MESSAGE = (
    "SECURITY VIOLATION: credential environment variable {env_var} detected. "
    "This controller authenticates with managed identity only. Remove all "
    "credential environment variables and assign a managed identity instead."
)


class SecretlessViolationError(Exception):
    """Raised when a credential is found in the process environment.

    This is a fatal security error that prevents controller startup.
    """

    pass


class PlaintextSecretError(ValidationError):
    """Raised when desired state carries a literal secret value."""

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying secretless operation.

    Args:
        client_id: Optional client ID for user-assigned managed identity.
                   If None, uses system-assigned managed identity.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def find_plaintext_secrets(attributes: Any, path: str = "") -> list[str]:
    """Return attribute paths holding literal values under sensitive names.

    Args:
        attributes: Attribute mapping (nested dicts and lists are walked).
        path: Prefix for reported paths.

    Returns:
        Dotted paths of offending attributes, in traversal order.
    """
    found: list[str] = []
    if isinstance(attributes, dict):
        for key, value in attributes.items():
            child = f"{path}.{key}" if path else str(key)
            if SENSITIVE_ATTRIBUTE_PATTERN.search(str(key)) and _is_literal(value):
                found.append(child)
            else:
                found.extend(find_plaintext_secrets(value, child))
    elif isinstance(attributes, list):
        for index, item in enumerate(attributes):
            found.extend(find_plaintext_secrets(item, f"{path}[{index}]"))
    return found


def _is_literal(value: Any) -> bool:
    if value is None or value == "" or isinstance(value, bool):
        return False
    if isinstance(value, str):
        return REFERENCE_PATTERN.fullmatch(value.strip()) is None
    if isinstance(value, (dict, list)):
        # Containers are walked for nested sensitive keys instead
        return False
    return True


def reject_plaintext_secrets(identity: str, attributes: dict[str, Any]) -> None:
    """Fail validation if ``attributes`` carries a literal secret.

    Raises:
        PlaintextSecretError: Naming the resource and offending attribute paths.
    """
    offending = find_plaintext_secrets(attributes)
    if offending:
        logger.error(
            "Plaintext secret in desired state",
            extra={"security_event": "plaintext_secret", "resource": identity, "paths": offending},
        )
        raise PlaintextSecretError(
            f"{identity} declares literal values for sensitive attributes {offending}; "
            "reference a value delivered at apply time instead"
        )

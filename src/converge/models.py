"""Core data model for desired and applied resource state.

Two families of types live here:
1. Pydantic declaration models that validate desired-state YAML at the boundary
2. Frozen dataclasses used inside the pipeline (identities, specs, states)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# Resource names never contain dots, so "type.name" splits on the last dot.
# Types may (e.g. "Microsoft.Network/virtualNetworks").
VALID_RESOURCE_NAME_PATTERN = r"^[A-Za-z0-9_-]+$"
VALID_RESOURCE_TYPE_PATTERN = r"^[A-Za-z][A-Za-z0-9_./-]*$"

MAX_RESOURCE_NAME_LENGTH = 128
MAX_RESOURCE_TYPE_LENGTH = 256


@dataclass(frozen=True, order=True)
class ResourceId:
    """Identity of a resource: its type plus a name unique within that type."""

    type: str
    name: str

    def __str__(self) -> str:
        return f"{self.type}.{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceId:
        """Parse a ``type.name`` string.

        Raises:
            ValueError: If the string is not a valid identity.
        """
        resource_type, sep, name = value.strip().rpartition(".")
        if not sep or not resource_type or not name:
            raise ValueError(f"Resource identity must be 'type.name': {value!r}")
        if not re.match(VALID_RESOURCE_TYPE_PATTERN, resource_type):
            raise ValueError(f"Invalid resource type in {value!r}")
        if not re.match(VALID_RESOURCE_NAME_PATTERN, name):
            raise ValueError(f"Invalid resource name in {value!r}")
        return cls(type=resource_type, name=name)


class ResourceStatus(str, Enum):
    """Lifecycle status of an applied resource."""

    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    DELETED = "deleted"


@dataclass(frozen=True)
class ResourceSpec:
    """One desired resource, immutable for the duration of a cycle.

    Attributes:
        identity: Resource type and name.
        attributes: Declared configuration, possibly holding ``${...}`` references.
        depends_on: Explicit dependencies plus those implied by references.
        index: Declaration order, used to break ordering ties.
    """

    identity: ResourceId
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: frozenset[ResourceId] = field(default_factory=frozenset)
    index: int = 0


@dataclass(frozen=True)
class ResourceState:
    """Last known applied state of one resource.

    Owned by the State Store and only ever replaced as a whole.
    """

    identity: ResourceId
    status: ResourceStatus = ResourceStatus.PENDING
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    provider_id: str | None = None
    dependencies: tuple[ResourceId, ...] = ()
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None

    def transition(self, status: ResourceStatus, **changes: Any) -> ResourceState:
        """Return a copy in ``status`` stamped with the current time."""
        values: dict[str, Any] = {
            "identity": self.identity,
            "status": status,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "provider_id": self.provider_id,
            "dependencies": self.dependencies,
            "updated_at": datetime.now(UTC),
            "error": None,
        }
        values.update(changes)
        return ResourceState(**values)

    def lookup(self, attribute: str) -> Any:
        """Resolve an output attribute for interpolation.

        ``id`` maps to the provider-assigned identifier; other names are
        looked up in provider outputs first, then in the applied attributes.

        Raises:
            KeyError: If the attribute is unknown.
        """
        if attribute == "id" and self.provider_id is not None:
            return self.provider_id
        if attribute in self.outputs:
            return self.outputs[attribute]
        return self.attributes[attribute]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "type": self.identity.type,
            "name": self.identity.name,
            "status": self.status.value,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "provider_id": self.provider_id,
            "dependencies": [str(dep) for dep in self.dependencies],
            "updated_at": self.updated_at.isoformat(),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceState:
        """Create from dictionary."""
        return cls(
            identity=ResourceId(type=data["type"], name=data["name"]),
            status=ResourceStatus(data["status"]),
            attributes=data.get("attributes") or {},
            outputs=data.get("outputs") or {},
            provider_id=data.get("provider_id"),
            dependencies=tuple(ResourceId.parse(dep) for dep in data.get("dependencies", [])),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            error=data.get("error"),
        )


# =============================================================================
# Desired-state declarations (YAML boundary)
# =============================================================================


class ResourceDeclaration(BaseModel):
    """A single resource as declared in a desired-state document."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: Annotated[
        str,
        Field(
            min_length=1,
            max_length=MAX_RESOURCE_TYPE_LENGTH,
            pattern=VALID_RESOURCE_TYPE_PATTERN,
        ),
    ]
    name: Annotated[
        str,
        Field(
            min_length=1,
            max_length=MAX_RESOURCE_NAME_LENGTH,
            pattern=VALID_RESOURCE_NAME_PATTERN,
        ),
    ]
    attributes: dict[str, Any] = Field(default_factory=dict)

    # Explicit ordering edges, e.g. dependsOn: ["network.hub"]
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        for dep in v:
            ResourceId.parse(dep)
        return v

    @property
    def identity(self) -> ResourceId:
        return ResourceId(type=self.type, name=self.name)


class DesiredStateDocument(BaseModel):
    """Top-level shape of a desired-state YAML document."""

    model_config = {"extra": "ignore"}

    resources: list[ResourceDeclaration] = Field(default_factory=list)

"""Collaborator driver interface.

Each resource kind is backed by one ResourceDriver. Drivers translate the
orchestrator's vocabulary (describe, apply, readiness, delete) into calls on
Azure Resource Manager, the Kubernetes API or the Helm CLI. The core
components only ever see this protocol.

Ownership markers:
    Cloud resources carry tags, platform resources carry labels. A resource is
    "ours" only if the stack marker matches this stack's id exactly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .models import ResourceDefinition
    from .resources import ResourceKind
    from .waiter import Readiness

# ARM tag names
MANAGED_BY_TAG = "managedBy"
MANAGED_BY_VALUE = "stack-operator"
STACK_TAG = "stackop-stack"
STABLE_NAME_TAG = "stackop-stable-name"
KIND_TAG = "stackop-kind"
LOGICAL_NAME_TAG = "stackop-name"

# Kubernetes / Helm label names
MANAGED_BY_LABEL = "stackop.io/managed-by"
STABLE_NAME_ANNOTATION = "stackop.io/stable-name"
STABLE_NAME_LABEL = "stackop.io/stable-name"


def ownership_tags(
    stack_id: str, kind: ResourceKind, stable_name: str, logical_name: str
) -> dict[str, str]:
    """Tags stamped on every cloud resource and ledger record."""
    return {
        MANAGED_BY_TAG: MANAGED_BY_VALUE,
        STACK_TAG: stack_id,
        STABLE_NAME_TAG: stable_name,
        KIND_TAG: kind.value,
        LOGICAL_NAME_TAG: logical_name,
    }


def is_owned(tags: dict[str, str] | None, stack_id: str) -> bool:
    """Check whether a tag or label set marks a resource as this stack's."""
    if not tags:
        return False
    return tags.get(MANAGED_BY_TAG) == MANAGED_BY_VALUE and tags.get(STACK_TAG) == stack_id


@dataclass
class ObservedResource:
    """A resource as seen by a driver."""

    name: str
    healthy: bool
    managed_by_us: bool | None
    details: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ResourceDriver(Protocol):
    """Operations every collaborator driver provides for its kind."""

    kind: ResourceKind
    max_name_length: int

    async def describe(self, name: str) -> ObservedResource | None:
        """Return the resource with exactly this name, or None if absent."""
        ...

    async def find_managed(self, stable_name: str) -> ObservedResource | None:
        """Return a resource this stack created for stable_name, if any."""
        ...

    async def apply(self, name: str, definition: ResourceDefinition) -> None:
        """Create or upgrade the resource. Must be idempotent."""
        ...

    async def readiness(self, name: str) -> Readiness:
        """Evaluate the resource against ready / pending / failed."""
        ...

    async def reset(self, name: str) -> None:
        """Clear a failed or stuck apply so the next attempt starts clean."""
        ...

    async def delete(self, name: str) -> None:
        """Delete the resource. Deleting an absent resource is a no-op."""
        ...

    async def discover(self, pattern: str) -> list[ObservedResource]:
        """List resources whose names match a naming-convention regex."""
        ...

    def is_retryable(self, error: Exception) -> bool:
        """Classify an apply error as transient (True) or permanent."""
        ...

    def guidance(self, name: str) -> list[str]:
        """Manual commands an operator can run to remove the resource."""
        ...

"""Core data model for managed stack resources.

A ManagedResource is the single per-run record for one logical unit of the
stack. Its lifecycle is a small state machine; illegal transitions raise
LifecycleError instead of silently corrupting the run report.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import ResourceDefinition


class ResourceKind(str, Enum):
    """Categories of resources the stack is built from."""

    NETWORK = "network"
    CLUSTER = "cluster"
    CACHE = "cache"
    NAMESPACE = "namespace"
    INGRESS_CONTROLLER = "ingressController"
    RELEASE = "release"

    @property
    def is_platform(self) -> bool:
        """True for kinds that live inside the Kubernetes cluster."""
        return self in PLATFORM_KINDS


PLATFORM_KINDS = frozenset(
    {ResourceKind.NAMESPACE, ResourceKind.INGRESS_CONTROLLER, ResourceKind.RELEASE}
)

HELM_KINDS = frozenset({ResourceKind.INGRESS_CONTROLLER, ResourceKind.RELEASE})

# Provider limits: vnet 64, AKS 63, Redis 63, namespace 63 (DNS label),
# helm release 53
MAX_NAME_LENGTHS: dict[ResourceKind, int] = {
    ResourceKind.NETWORK: 64,
    ResourceKind.CLUSTER: 63,
    ResourceKind.CACHE: 63,
    ResourceKind.NAMESPACE: 63,
    ResourceKind.INGRESS_CONTROLLER: 53,
    ResourceKind.RELEASE: 53,
}


class Origin(str, Enum):
    """Who owns the resource currently in effect."""

    FOREIGN = "Foreign"
    ORCHESTRATED = "Orchestrated"


class LifecycleState(str, Enum):
    """Lifecycle of a ManagedResource within one run."""

    UNRESOLVED = "Unresolved"
    RESOLVED = "Resolved"
    PROVISIONING = "Provisioning"
    READY = "Ready"
    FAILED = "Failed"
    DESTROYING = "Destroying"
    DESTROYED = "Destroyed"


class ResolutionAction(str, Enum):
    """Action chosen by the resolver for one resource."""

    REUSE = "Reuse"
    CREATE_DISAMBIGUATED = "CreateDisambiguated"
    SKIP = "Skip"
    UPGRADE = "Upgrade"


ALLOWED_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.UNRESOLVED: frozenset(
        {LifecycleState.RESOLVED, LifecycleState.FAILED, LifecycleState.DESTROYING}
    ),
    LifecycleState.RESOLVED: frozenset(
        {
            LifecycleState.PROVISIONING,
            LifecycleState.READY,
            LifecycleState.FAILED,
            LifecycleState.DESTROYING,
        }
    ),
    LifecycleState.PROVISIONING: frozenset({LifecycleState.READY, LifecycleState.FAILED}),
    LifecycleState.READY: frozenset({LifecycleState.DESTROYING}),
    LifecycleState.FAILED: frozenset({LifecycleState.DESTROYING}),
    LifecycleState.DESTROYING: frozenset({LifecycleState.DESTROYED, LifecycleState.FAILED}),
    LifecycleState.DESTROYED: frozenset(),
}


class LifecycleError(Exception):
    """Raised on an illegal lifecycle transition or name reassignment."""

    pass


@dataclass(frozen=True)
class ResolutionDecision:
    """Immutable output of the resolver for one resource.

    Attributes:
        action: What the orchestrator will do.
        reason: Short diagnostic shown in the report.
        target_name: Name the action applies to (None for Skip).
    """

    action: ResolutionAction
    reason: str
    target_name: str | None = None


@dataclass(frozen=True)
class ResourceSnapshot:
    """Point-in-time observation of a resource.

    Attributes:
        exists: Whether a resource was found.
        healthy: Whether it is usable as-is.
        managed_by_us: True if tagged as created by this stack, False if
            foreign, None if ownership could not be established.
        name: Name actually observed (may differ from the stable name when a
            previous run created a disambiguated replacement).
        details: Collaborator-specific detail for logs and reports.
        unknown: State could not be established at all.
    """

    exists: bool = False
    healthy: bool = False
    managed_by_us: bool | None = None
    name: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    unknown: bool = False

    @classmethod
    def indeterminate(cls, reason: str) -> ResourceSnapshot:
        return cls(unknown=True, details={"reason": reason})

    @classmethod
    def absent(cls) -> ResourceSnapshot:
        return cls(exists=False, managed_by_us=False)

    @classmethod
    def present(
        cls,
        name: str,
        *,
        healthy: bool,
        managed_by_us: bool | None,
        details: dict[str, Any] | None = None,
    ) -> ResourceSnapshot:
        return cls(
            exists=True,
            healthy=healthy,
            managed_by_us=managed_by_us,
            name=name,
            details=details or {},
        )


@dataclass
class ManagedResource:
    """One logical unit of the stack, tracked for the duration of a run."""

    logical_name: str
    kind: ResourceKind
    stable_name: str
    depends_on: list[str] = field(default_factory=list)
    optional: bool = False
    definition: ResourceDefinition | None = None

    origin: Origin | None = None
    lifecycle_state: LifecycleState = LifecycleState.UNRESOLVED
    decision: ResolutionDecision | None = None
    reason: str = ""
    _current_name: str | None = field(default=None, repr=False)

    @property
    def current_name(self) -> str | None:
        """Name actually in effect, assigned at resolution time."""
        return self._current_name

    def assign_name(self, name: str) -> None:
        """Assign the name in effect.

        Raises:
            LifecycleError: If a different name was already assigned.
        """
        if self._current_name is not None and self._current_name != name:
            raise LifecycleError(
                f"{self.logical_name}: current name is '{self._current_name}', "
                f"refusing to reassign to '{name}'"
            )
        self._current_name = name

    def transition(self, state: LifecycleState, reason: str | None = None) -> None:
        """Move to a new lifecycle state.

        Raises:
            LifecycleError: If the transition is not allowed.
        """
        if state not in ALLOWED_TRANSITIONS[self.lifecycle_state]:
            raise LifecycleError(
                f"{self.logical_name}: illegal transition "
                f"{self.lifecycle_state.value} -> {state.value}"
            )
        self.lifecycle_state = state
        if reason is not None:
            self.reason = reason

    def apply_decision(self, decision: ResolutionDecision) -> None:
        """Record a resolver decision and mark the resource Resolved."""
        self.decision = decision
        self.reason = decision.reason
        self.transition(LifecycleState.RESOLVED)
        if decision.target_name is not None:
            self.assign_name(decision.target_name)

    @classmethod
    def from_definition(cls, definition: ResourceDefinition) -> ManagedResource:
        return cls(
            logical_name=definition.name,
            kind=definition.kind,
            stable_name=definition.stable_name,
            depends_on=list(definition.depends_on),
            optional=definition.optional,
            definition=definition,
        )

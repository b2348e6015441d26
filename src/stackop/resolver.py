"""Resource resolver: the ordered reconciliation rule table.

Given a resource and a fresh snapshot, the resolver decides between reusing
what exists, creating the stack's own copy, upgrading an earlier creation, or
skipping. Rules are evaluated strictly in order and the first match wins:

    1. indeterminate                          -> Skip
    2. exists, ours                           -> Upgrade (observed name)
    3. exists, foreign, healthy               -> Reuse (stable name, read-only)
    4. exists, foreign, unhealthy             -> CreateDisambiguated (new name)
    5. absent                                 -> CreateDisambiguated
                                                 (stable name, or a new name if
                                                 the stable name already failed
                                                 or collided in this process)
    6. optional, nothing above matched        -> Skip
    7. required, nothing above matched        -> Skip (ownership indeterminate)

Rules 6 and 7 catch an existing resource whose ownership could not be
established; such a resource is never adopted or replaced.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .naming import NamingAuthority
from .resources import (
    ManagedResource,
    ResolutionAction,
    ResolutionDecision,
    ResourceKind,
    ResourceSnapshot,
)

logger = logging.getLogger(__name__)


@dataclass
class RunHistory:
    """Names that failed or collided earlier in this process."""

    _failed: set[tuple[ResourceKind, str]] = field(default_factory=set)

    def record_failure(self, kind: ResourceKind, name: str) -> None:
        self._failed.add((kind, name))

    def has_failed(self, kind: ResourceKind, name: str) -> bool:
        return (kind, name) in self._failed


RuleMatch = Callable[[ManagedResource, ResourceSnapshot], bool]
RuleDecide = Callable[
    ["ResourceResolver", ManagedResource, ResourceSnapshot], Awaitable[ResolutionDecision]
]


@dataclass(frozen=True)
class Rule:
    """One row of the rule table."""

    name: str
    matches: RuleMatch
    decide: RuleDecide


async def _skip_indeterminate(
    resolver: ResourceResolver, resource: ManagedResource, snapshot: ResourceSnapshot
) -> ResolutionDecision:
    return ResolutionDecision(ResolutionAction.SKIP, "state indeterminate")


async def _upgrade_ours(
    resolver: ResourceResolver, resource: ManagedResource, snapshot: ResourceSnapshot
) -> ResolutionDecision:
    target = snapshot.name or resource.current_name or resource.stable_name
    return ResolutionDecision(
        ResolutionAction.UPGRADE, "previously created by this stack, re-applying", target
    )


async def _reuse_foreign(
    resolver: ResourceResolver, resource: ManagedResource, snapshot: ResourceSnapshot
) -> ResolutionDecision:
    return ResolutionDecision(
        ResolutionAction.REUSE,
        "foreign resource is healthy, adopting read-only",
        resource.stable_name,
    )


async def _replace_unhealthy_foreign(
    resolver: ResourceResolver, resource: ManagedResource, snapshot: ResourceSnapshot
) -> ResolutionDecision:
    pair = await resolver.naming.resolve_name(resource.kind, resource.stable_name)
    return ResolutionDecision(
        ResolutionAction.CREATE_DISAMBIGUATED,
        f"foreign resource '{resource.stable_name}' is unhealthy, creating alongside it",
        pair.disambiguated_name,
    )


async def _create_absent(
    resolver: ResourceResolver, resource: ManagedResource, snapshot: ResourceSnapshot
) -> ResolutionDecision:
    if resolver.history.has_failed(resource.kind, resource.stable_name):
        pair = await resolver.naming.resolve_name(resource.kind, resource.stable_name)
        return ResolutionDecision(
            ResolutionAction.CREATE_DISAMBIGUATED,
            f"earlier attempt on '{resource.stable_name}' failed, creating under a new name",
            pair.disambiguated_name,
        )
    return ResolutionDecision(
        ResolutionAction.CREATE_DISAMBIGUATED, "not found, creating", resource.stable_name
    )


async def _skip_optional(
    resolver: ResourceResolver, resource: ManagedResource, snapshot: ResourceSnapshot
) -> ResolutionDecision:
    return ResolutionDecision(
        ResolutionAction.SKIP, "optional resource with indeterminate ownership"
    )


async def _skip_fallback(
    resolver: ResourceResolver, resource: ManagedResource, snapshot: ResourceSnapshot
) -> ResolutionDecision:
    return ResolutionDecision(ResolutionAction.SKIP, "ownership indeterminate")


RULES: tuple[Rule, ...] = (
    Rule("indeterminate", lambda r, s: s.unknown, _skip_indeterminate),
    Rule("ours", lambda r, s: s.exists and s.managed_by_us is True, _upgrade_ours),
    Rule(
        "foreign-healthy",
        lambda r, s: s.exists and s.managed_by_us is False and s.healthy,
        _reuse_foreign,
    ),
    Rule(
        "foreign-unhealthy",
        lambda r, s: s.exists and s.managed_by_us is False and not s.healthy,
        _replace_unhealthy_foreign,
    ),
    Rule("absent", lambda r, s: not s.exists, _create_absent),
    Rule("optional", lambda r, s: r.optional, _skip_optional),
    Rule("fallback", lambda r, s: True, _skip_fallback),
)


class ResourceResolver:
    """Applies the rule table to one resource at a time."""

    def __init__(
        self,
        naming: NamingAuthority,
        history: RunHistory | None = None,
        rules: tuple[Rule, ...] = RULES,
    ) -> None:
        self.naming = naming
        self.history = history or RunHistory()
        self._rules = rules

    async def resolve(
        self, resource: ManagedResource, snapshot: ResourceSnapshot
    ) -> ResolutionDecision:
        """Return the decision of the first matching rule.

        Raises:
            NameCollisionError: If a disambiguated name cannot be issued.
        """
        for rule in self._rules:
            if rule.matches(resource, snapshot):
                decision = await rule.decide(self, resource, snapshot)
                logger.info(
                    "Resolved resource",
                    extra={
                        "resource": resource.logical_name,
                        "kind": resource.kind.value,
                        "rule": rule.name,
                        "action": decision.action.value,
                        "target_name": decision.target_name,
                        "reason": decision.reason,
                    },
                )
                return decision

        # Unreachable while RULES ends with the fallback row
        raise RuntimeError(f"No resolution rule matched {resource.logical_name}")

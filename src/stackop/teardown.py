"""Teardown coordinator: tiered destroy with mandatory verification.

Tiers run strictly in order. A tier whose precondition does not hold is
skipped without its action ever being invoked. A tier whose action raises is
recorded as failed and the next tier is tried. After every successful tier
the managed resources are re-probed; once nothing is left, the remaining
tiers are recorded as not needed.

Whatever happens, a final verification probe runs over every managed
resource and the report lists what is still there. An indeterminate probe
counts as remaining: removal that cannot be confirmed is not reported as
done.

Standard tiers (build_standard_tiers):
    1. state-based       delete what the deployment ledger recorded, in
                         reverse dependency order
    2. direct-deletion   discover by naming convention, delete only what
                         carries this stack's ownership marker
    3. manual-guidance   print commands for whatever is left
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from .drivers import ResourceDriver
from .probe import StateProbe
from .resources import ManagedResource, ResourceKind
from .waiter import ProvisioningWaiter, Readiness, WaitSpec

if TYPE_CHECKING:
    from .ledger import LedgerEntry

logger = logging.getLogger(__name__)

STATE_BASED_TIER = "state-based"
DIRECT_DELETION_TIER = "direct-deletion"
MANUAL_GUIDANCE_TIER = "manual-guidance"

DEFAULT_DELETE_TIMEOUT_SECONDS = 1800


class TeardownError(Exception):
    """Raised by a tier action that could not finish its work."""

    pass


class TierStatus(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_NEEDED = "not_needed"


@dataclass
class TierActionResult:
    """What a tier action did."""

    deleted: list[str] = field(default_factory=list)
    skipped_foreign: list[str] = field(default_factory=list)
    guidance: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TeardownTier:
    """One rung of the fallback chain."""

    name: str
    precondition: Callable[[], Awaitable[bool]]
    action: Callable[[list[ManagedResource]], Awaitable[TierActionResult]]


@dataclass
class TierResult:
    name: str
    status: TierStatus
    detail: str = ""
    result: TierActionResult | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        result = self.result or TierActionResult()
        return {
            "name": self.name,
            "status": self.status.value,
            "detail": self.detail,
            "deleted": list(result.deleted),
            "skipped_foreign": list(result.skipped_foreign),
            "guidance": list(result.guidance),
        }


@dataclass(frozen=True)
class RemainingResource:
    """A managed resource verification could not confirm as removed."""

    logical_name: str
    kind: ResourceKind
    name: str | None
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.logical_name,
            "kind": self.kind.value,
            "current_name": self.name,
            "reason": self.reason,
        }


@dataclass
class TeardownReport:
    """Outcome of a teardown, always produced."""

    tier_results: list[TierResult] = field(default_factory=list)
    remaining: list[RemainingResource] = field(default_factory=list)
    effective_tier: str | None = None

    @property
    def complete(self) -> bool:
        return not self.remaining

    def to_dict(self) -> dict[str, Any]:
        return {
            "tiers": [t.to_dict() for t in self.tier_results],
            "remaining": [r.to_dict() for r in self.remaining],
            "effective_tier": self.effective_tier,
        }


class TeardownCoordinator:
    """Runs teardown tiers and verifies the result.

    Args:
        probe: Used for every verification pass.
        hosted_on: Maps a platform resource's logical name to the logical
            name of the cluster it runs on. A platform resource is counted as
            removed once its cluster is verified absent.
    """

    def __init__(self, probe: StateProbe, hosted_on: dict[str, str] | None = None) -> None:
        self._probe = probe
        self._hosted_on = hosted_on or {}

    async def teardown(
        self, tiers: list[TeardownTier], resources: list[ManagedResource]
    ) -> TeardownReport:
        report = TeardownReport()
        done_after: str | None = None

        for index, tier in enumerate(tiers):
            if done_after is not None:
                detail = f"nothing left after {done_after}"
                report.tier_results.append(TierResult(tier.name, TierStatus.NOT_NEEDED, detail))
                continue

            try:
                eligible = await tier.precondition()
            except Exception as e:
                logger.warning(
                    "Teardown tier precondition raised, treating as false",
                    extra={"tier": tier.name, "error": str(e)},
                )
                eligible = False

            if not eligible:
                logger.info("Teardown tier skipped", extra={"tier": tier.name, "index": index})
                report.tier_results.append(
                    TierResult(tier.name, TierStatus.SKIPPED, "precondition not met")
                )
                continue

            start = time.monotonic()
            try:
                result = await tier.action(resources)
            except Exception as e:
                logger.error(
                    "Teardown tier failed",
                    extra={"tier": tier.name, "error": str(e), "error_type": type(e).__name__},
                )
                report.tier_results.append(
                    TierResult(
                        tier.name,
                        TierStatus.FAILED,
                        f"{type(e).__name__}: {e}",
                        duration_seconds=time.monotonic() - start,
                    )
                )
                continue

            report.tier_results.append(
                TierResult(
                    tier.name,
                    TierStatus.SUCCEEDED,
                    result=result,
                    duration_seconds=time.monotonic() - start,
                )
            )
            logger.info(
                "Teardown tier succeeded",
                extra={
                    "tier": tier.name,
                    "deleted": result.deleted,
                    "skipped_foreign": result.skipped_foreign,
                },
            )

            if not await self.verify(resources):
                done_after = tier.name

        # Mandatory final verification, regardless of how the tiers went
        report.remaining = await self.verify(resources)
        report.effective_tier = done_after if not report.remaining else None

        logger.info(
            "Teardown verification complete",
            extra={
                "remaining": [r.logical_name for r in report.remaining],
                "effective_tier": report.effective_tier,
            },
        )
        return report

    async def verify(self, resources: list[ManagedResource]) -> list[RemainingResource]:
        """Re-probe every resource and return those not confirmed removed."""
        remaining: list[RemainingResource] = []
        gone: set[str] = set()
        position = {r.logical_name: i for i, r in enumerate(resources)}

        # Hosts are verified before the platform resources they carry
        for resource in sorted(resources, key=lambda r: r.kind.is_platform):
            host = self._hosted_on.get(resource.logical_name)
            if host is not None and host in gone:
                continue

            snapshot = await self._probe.inspect(resource.kind, resource.stable_name)
            if snapshot.unknown:
                remaining.append(
                    RemainingResource(
                        resource.logical_name,
                        resource.kind,
                        resource.current_name,
                        "state indeterminate",
                    )
                )
            elif not snapshot.exists:
                gone.add(resource.logical_name)
            elif snapshot.managed_by_us is not False:
                reason = (
                    "still exists"
                    if snapshot.managed_by_us
                    else "still exists, ownership indeterminate"
                )
                remaining.append(
                    RemainingResource(resource.logical_name, resource.kind, snapshot.name, reason)
                )

        return sorted(remaining, key=lambda r: position[r.logical_name])


class StateStore(Protocol):
    """Authoritative record of what the stack created."""

    async def is_consistent(self) -> bool: ...

    async def entries(self) -> list[LedgerEntry]: ...

    async def forget(self, entry: LedgerEntry) -> None: ...


def naming_pattern(stable_name: str) -> str:
    """Regex matching the stable name and its disambiguated variants."""
    return rf"^{re.escape(stable_name)}(-[a-z0-9]+)*$"


async def _wait_absent(
    waiter: ProvisioningWaiter,
    driver: ResourceDriver,
    name: str,
    timeout_seconds: float,
    poll_interval_seconds: float,
    cancel_event: asyncio.Event | None = None,
) -> None:
    async def gone() -> Readiness:
        if await driver.describe(name) is None:
            return Readiness.ready("deleted")
        return Readiness.pending("deletion in progress")

    outcome = await waiter.wait(
        WaitSpec(
            predicate=gone,
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
            description=f"delete {driver.kind.value} {name}",
        ),
        cancel_event,
    )
    if not outcome.ready:
        raise TeardownError(f"{driver.kind.value} '{name}' not deleted: {outcome.kind.value}")


def build_standard_tiers(
    *,
    store: StateStore,
    probe: StateProbe,
    drivers: dict[ResourceKind, ResourceDriver],
    destroy_order: list[str],
    api_reachable: Callable[[], Awaitable[bool]],
    hosted_on: dict[str, str] | None = None,
    waiter: ProvisioningWaiter | None = None,
    delete_timeout_seconds: float = DEFAULT_DELETE_TIMEOUT_SECONDS,
    poll_interval_seconds: float = 10,
    cancel_event: asyncio.Event | None = None,
) -> list[TeardownTier]:
    """Build the state-based, direct-deletion and manual-guidance tiers.

    Args:
        store: Deployment ledger for the state-based tier.
        probe: Used to find what is left for manual guidance.
        drivers: Driver per kind.
        destroy_order: Logical names, dependents first.
        api_reachable: Precondition for direct deletion.
        hosted_on: Platform resource -> hosting cluster logical name.
        cancel_event: When set, no further deletion starts and deletion
            waits in flight end early; verification still runs.
    """
    waiter = waiter or ProvisioningWaiter()
    hosted_on = hosted_on or {}

    def check_cancelled() -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise TeardownError("teardown cancelled")

    def rank(logical_name: str) -> int:
        try:
            return destroy_order.index(logical_name)
        except ValueError:
            return len(destroy_order)

    async def state_based(resources: list[ManagedResource]) -> TierActionResult:
        result = TierActionResult()
        entries = sorted(await store.entries(), key=lambda e: rank(e.logical_name))
        for entry in entries:
            check_cancelled()
            driver = drivers[entry.kind]
            await driver.delete(entry.resource_name)
            await _wait_absent(
                waiter,
                driver,
                entry.resource_name,
                delete_timeout_seconds,
                poll_interval_seconds,
                cancel_event,
            )
            await store.forget(entry)
            result.deleted.append(entry.resource_name)
        return result

    async def direct_deletion(resources: list[ManagedResource]) -> TierActionResult:
        result = TierActionResult()
        errors: list[str] = []
        by_name = {r.logical_name: r for r in resources}

        for resource in sorted(resources, key=lambda r: rank(r.logical_name)):
            check_cancelled()
            host = by_name.get(hosted_on.get(resource.logical_name, ""))
            if host is not None:
                host_snapshot = await probe.inspect(host.kind, host.stable_name)
                if not host_snapshot.unknown and not host_snapshot.exists:
                    continue

            driver = drivers[resource.kind]
            try:
                candidates = await driver.discover(naming_pattern(resource.stable_name))
                for candidate in candidates:
                    if candidate.managed_by_us is not True:
                        # Pattern match alone is never enough to delete
                        logger.warning(
                            "Skipping pattern match without ownership marker",
                            extra={"kind": resource.kind.value, "name": candidate.name},
                        )
                        result.skipped_foreign.append(candidate.name)
                        continue
                    await driver.delete(candidate.name)
                    await _wait_absent(
                        waiter,
                        driver,
                        candidate.name,
                        delete_timeout_seconds,
                        poll_interval_seconds,
                        cancel_event,
                    )
                    result.deleted.append(candidate.name)
            except Exception as e:
                logger.error(
                    "Direct deletion failed for resource",
                    extra={"resource": resource.logical_name, "error": str(e)},
                )
                errors.append(f"{resource.logical_name}: {e}")

        if errors:
            raise TeardownError("; ".join(errors))
        return result

    async def manual_guidance(resources: list[ManagedResource]) -> TierActionResult:
        result = TierActionResult()
        for resource in sorted(resources, key=lambda r: rank(r.logical_name)):
            snapshot = await probe.inspect(resource.kind, resource.stable_name)
            if snapshot.exists and snapshot.managed_by_us is False:
                continue
            if not snapshot.unknown and not snapshot.exists:
                continue
            name = snapshot.name or resource.current_name or resource.stable_name
            result.guidance.extend(drivers[resource.kind].guidance(name))
        for line in result.guidance:
            logger.warning("Manual teardown step", extra={"command": line})
        return result

    async def always() -> bool:
        return True

    return [
        TeardownTier(STATE_BASED_TIER, store.is_consistent, state_based),
        TeardownTier(DIRECT_DELETION_TIER, api_reachable, direct_deletion),
        TeardownTier(MANUAL_GUIDANCE_TIER, always, manual_guidance),
    ]

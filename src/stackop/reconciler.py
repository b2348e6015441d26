"""Stack orchestration: deploy, plan and destroy flows.

Deploy runs one asyncio task per resource:
1. Wait for the declared dependencies to settle (bounded by the run deadline)
2. Probe the resource by its stable name
3. Resolve: Reuse, Upgrade, CreateDisambiguated or Skip
4. Provision under the retry controller, polling readiness with the waiter

A dependency that does not end Ready gives its dependents a derived Skip
without probing or resolving them. Failures are caught per task and recorded
on the resource; siblings keep running.

Destroy marks every resource Destroying and hands over to the teardown
coordinator. Resources end Destroyed or Failed according to the final
verification.

SECURITY: Reused foreign resources are never modified. Every create, reuse
and delete is written to the audit log.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Protocol

from azure.mgmt.resource import ResourceManagementClient

from .azure_resources import (
    RESOURCE_TYPES,
    AzureResourceDriver,
    ClusterCredentials,
    ResourceGroupGuard,
    probe_arm,
)
from .commands import require_tools
from .config import Config, ConfigurationError
from .discovery import ResourceDiscovery
from .drivers import ResourceDriver
from .helm import HelmClient, HelmReleaseDriver
from .kubernetes_platform import KubernetesSession, NamespaceDriver
from .ledger import DeploymentLedger, LedgerEntry
from .models import StackSpec
from .naming import NameCollisionError, NamingAuthority
from .probe import StateProbe
from .report import OrchestrationReport, Operation
from .resolver import ResourceResolver, RunHistory
from .resources import (
    ALLOWED_TRANSITIONS,
    HELM_KINDS,
    LifecycleState,
    ManagedResource,
    Origin,
    ResolutionAction,
    ResolutionDecision,
    ResourceKind,
)
from .retry import (
    Backoff,
    PermanentConfigurationFailure,
    ProvisioningCancelled,
    ProvisioningError,
    ProvisioningTimeout,
    RetryController,
    RetryPolicy,
    TransientProvisioningFailure,
    default_is_retryable,
)
from .security import get_credential, log_security_audit_event
from .spec_loader import load_stack_spec
from .teardown import StateStore, TeardownCoordinator, TeardownTier, build_standard_tiers
from .waiter import ProvisioningWaiter, WaitOutcomeKind, WaitSpec

logger = logging.getLogger(__name__)

ReadyHook = Callable[[str], Awaitable[None]]


class Ledger(StateStore, Protocol):
    """State store that platform resources are recorded in."""

    async def record(
        self,
        kind: ResourceKind,
        resource_name: str,
        stable_name: str,
        logical_name: str,
    ) -> LedgerEntry: ...


def required_tools(spec: StackSpec) -> list[str]:
    """External CLIs the stack needs on PATH."""
    kinds = {r.kind for r in spec.resources}
    tools = []
    if ResourceKind.CLUSTER in kinds:
        tools.append("az")
    if kinds & HELM_KINDS:
        tools.append("helm")
    return tools


def check_prerequisites(spec: StackSpec) -> None:
    """Raise ConfigurationError if a required CLI is missing."""
    missing = require_tools(*required_tools(spec))
    if missing:
        raise ConfigurationError(f"Required tools not found on PATH: {', '.join(missing)}")


class ProvisionAction:
    """One create-or-upgrade attempt: apply, then wait for readiness.

    Failed readiness raises a Permanent or Transient failure according to
    the driver's verdict; a timed out wait raises ProvisioningTimeout.
    """

    def __init__(
        self,
        resource: ManagedResource,
        driver: ResourceDriver,
        reconciler: StackReconciler,
        deadline: float,
    ) -> None:
        # SAFETY: only called after a Create or Upgrade decision assigned the name
        assert resource.current_name is not None and resource.definition is not None
        self.resource = resource
        self.target = resource.current_name
        self.name = f"{resource.kind.value}/{self.target}"
        self._driver = driver
        self._reconciler = reconciler
        self._deadline = deadline

    async def run(self) -> str:
        reconciler = self._reconciler
        resource = self.resource
        # SAFETY: checked in __init__
        assert resource.definition is not None
        if reconciler.cancel_event.is_set():
            raise ProvisioningCancelled(f"{self.name}: run cancelled before apply")

        definition = resource.definition.bind(reconciler.names_in_effect())
        await self._driver.apply(self.target, definition)

        timeout = min(float(definition.timeout_seconds), self._deadline - reconciler.clock())
        if timeout <= 0:
            raise ProvisioningTimeout(f"run deadline reached before {self.name} became ready")

        outcome = await reconciler.waiter.wait(
            WaitSpec(
                predicate=lambda: self._driver.readiness(self.target),
                timeout_seconds=timeout,
                poll_interval_seconds=reconciler.config.poll_interval_seconds,
                description=self.name,
            ),
            reconciler.cancel_event,
        )

        match outcome.kind:
            case WaitOutcomeKind.FAILED if outcome.permanent:
                raise PermanentConfigurationFailure(outcome.detail)
            case WaitOutcomeKind.FAILED:
                raise TransientProvisioningFailure(outcome.detail)
            case WaitOutcomeKind.TIMED_OUT:
                raise ProvisioningTimeout(
                    f"{self.name} not ready after {outcome.elapsed_seconds:.0f}s: "
                    f"{outcome.detail}"
                )
            case WaitOutcomeKind.CANCELLED:
                raise ProvisioningCancelled(f"{self.name}: run cancelled")

        if resource.kind.is_platform and reconciler.ledger is not None:
            await reconciler.ledger.record(
                resource.kind, self.target, resource.stable_name, resource.logical_name
            )

        hook = reconciler.on_ready.get(resource.kind)
        if hook is not None:
            await hook(self.target)

        return outcome.detail or "ready"

    def is_retryable(self, error: Exception) -> bool:
        if isinstance(error, ProvisioningError):
            return default_is_retryable(error)
        return self._driver.is_retryable(error)

    async def cleanup(self, attempt: int, error: Exception) -> None:
        logger.info(
            "Resetting resource before retry",
            extra={"action": self.name, "attempt": attempt, "error": str(error)},
        )
        await self._driver.reset(self.target)


class StackReconciler:
    """Runs a stack spec against its collaborators.

    Args:
        config: Orchestrator configuration.
        spec: Validated stack spec.
        drivers: One ResourceDriver per kind used by the spec.
        ledger: Deployment ledger; platform resources are recorded here and
            teardown tier 1 reads it.
        api_reachable: Precondition of the direct-deletion teardown tier.
        on_ready: Per-kind hooks called with the resource name once it is
            ready or reused (e.g. kubeconfig refresh for the cluster).
        history: Failures remembered across runs of this process.
        tiers: Teardown tiers; defaults to build_standard_tiers().
        retry: Retry controller (injectable sleep for tests).
        waiter: Provisioning waiter (injectable clock for tests).
        clock: Monotonic clock for the run deadline.
    """

    def __init__(
        self,
        config: Config,
        spec: StackSpec,
        drivers: dict[ResourceKind, ResourceDriver],
        *,
        ledger: Ledger | None = None,
        api_reachable: Callable[[], Awaitable[bool]] | None = None,
        on_ready: dict[ResourceKind, ReadyHook] | None = None,
        history: RunHistory | None = None,
        naming: NamingAuthority | None = None,
        tiers: list[TeardownTier] | None = None,
        retry: RetryController | None = None,
        waiter: ProvisioningWaiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        missing = sorted({r.kind for r in spec.resources} - set(drivers), key=lambda k: k.value)
        if missing:
            raise ConfigurationError(
                f"No driver for kinds: {', '.join(k.value for k in missing)}"
            )

        self.config = config
        self.spec = spec
        self.drivers = drivers
        self.ledger = ledger
        self.on_ready = on_ready or {}
        self.waiter = waiter or ProvisioningWaiter()
        self.clock = clock
        self.cancel_event = asyncio.Event()

        self._api_reachable = api_reachable
        self._tiers = tiers
        self._retry = retry or RetryController()
        self._probe = StateProbe(drivers)
        self._naming = naming or NamingAuthority(
            max_lengths={kind: driver.max_name_length for kind, driver in drivers.items()},
            name_taken=self._name_taken,
        )
        self._resolver = ResourceResolver(self._naming, history or RunHistory())
        self._resources: list[ManagedResource] = []

    @classmethod
    def from_config(cls, config: Config, spec: StackSpec | None = None) -> StackReconciler:
        """Compose the reconciler with the Azure, Kubernetes and Helm drivers.

        Raises:
            SpecLoadError: If the spec file is invalid.
            SecretlessViolationError: In managed identity mode, if secrets are set.
        """
        if spec is None:
            spec = load_stack_spec(config.spec_file, config.security.max_resources_per_stack)

        credential = get_credential(config.use_managed_identity, config.managed_identity_client_id)
        client = ResourceManagementClient(
            credential=credential, subscription_id=config.subscription_id
        )
        guard = ResourceGroupGuard(client, config.resource_group, config.location, config.stack_id)
        discovery = ResourceDiscovery(credential, config.subscription_id, config.resource_group)
        session = KubernetesSession(config.kube_context)
        helm = HelmClient(config.kube_context, config.helm_timeout_seconds)

        drivers: dict[ResourceKind, ResourceDriver] = {
            kind: AzureResourceDriver(
                kind,
                client,
                config.subscription_id,
                guard,
                config.stack_id,
                spec.location or config.location,
                discovery,
            )
            for kind in RESOURCE_TYPES
        }
        drivers[ResourceKind.NAMESPACE] = NamespaceDriver(session, config.stack_id)
        for kind in HELM_KINDS:
            drivers[kind] = HelmReleaseDriver(kind, helm, session, config.stack_id)

        credentials = ClusterCredentials(
            config.resource_group, config.kube_context, on_refresh=session.invalidate
        )

        async def api_reachable() -> bool:
            return await probe_arm(guard) and await discovery.is_reachable()

        return cls(
            config,
            spec,
            drivers,
            ledger=DeploymentLedger(client, guard, config.stack_id),
            api_reachable=api_reachable,
            on_ready={ResourceKind.CLUSTER: credentials.refresh},
        )

    @property
    def resources(self) -> list[ManagedResource]:
        """Resources of the current or last run, in spec order."""
        return list(self._resources)

    def shutdown(self) -> None:
        """Request cancellation; in-flight waits return within one poll interval."""
        logger.info("Shutdown requested", extra={"stack": self.config.stack_id})
        self.cancel_event.set()

    def names_in_effect(self) -> dict[str, str]:
        """Logical name -> name in effect, for `${name}` placeholders."""
        return {
            r.logical_name: r.current_name for r in self._resources if r.current_name is not None
        }

    async def _name_taken(self, kind: ResourceKind, name: str) -> bool:
        return await self.drivers[kind].describe(name) is not None

    def _build_resources(self) -> list[ManagedResource]:
        resources = []
        for definition in self.spec.resources:
            update: dict[str, object] = {"tags": {**self.spec.tags, **definition.tags}}
            if definition.location is None and not definition.kind.is_platform:
                update["location"] = self.spec.location or self.config.location
            resources.append(ManagedResource.from_definition(definition.model_copy(update=update)))
        return resources

    async def plan(self) -> OrchestrationReport:
        """Resolve every resource and report the decisions without applying."""
        return await self.deploy(dry_run=True)

    async def deploy(self, dry_run: bool | None = None) -> OrchestrationReport:
        """Bring the stack to its desired state.

        Args:
            dry_run: Resolve only; defaults to config.dry_run.

        Returns:
            Report listing every resource with its terminal state and reason.
        """
        dry_run = self.config.dry_run if dry_run is None else dry_run
        operation = Operation.PLAN if dry_run else Operation.DEPLOY
        report = OrchestrationReport(operation, self.config.stack_id)

        self._resources = self._build_resources()
        by_name = {r.logical_name: r for r in self._resources}
        settled = {name: asyncio.Event() for name in by_name}
        deadline = self.clock() + self.config.run_timeout_seconds

        logger.info(
            "Starting stack run",
            extra={
                "stack": self.config.stack_id,
                "operation": operation.value,
                "run_id": report.run_id,
                "resources": len(self._resources),
                "order": self.spec.graph().topological_sort(),
            },
        )

        await asyncio.gather(
            *(
                self._run_resource(resource, by_name, settled, deadline, dry_run)
                for resource in self._resources
            )
        )

        report.finish(self._resources)
        self._log_result(report)
        return report

    async def _run_resource(
        self,
        resource: ManagedResource,
        by_name: dict[str, ManagedResource],
        settled: dict[str, asyncio.Event],
        deadline: float,
        dry_run: bool,
    ) -> None:
        try:
            blocker = await self._await_dependencies(resource, by_name, settled, deadline, dry_run)
            if blocker is not None:
                # Derived skip: never probed or resolved
                resource.decision = ResolutionDecision(ResolutionAction.SKIP, blocker)
                resource.reason = blocker
                logger.warning(
                    "Skipping resource, dependency not ready",
                    extra={"resource": resource.logical_name, "reason": blocker},
                )
                return
            await self._reconcile_resource(resource, deadline, dry_run)
        except Exception as e:
            logger.exception(
                "Resource reconciliation failed",
                extra={"resource": resource.logical_name, "error": str(e)},
            )
            self._fail(resource, f"{type(e).__name__}: {e}")
        finally:
            settled[resource.logical_name].set()

    async def _await_dependencies(
        self,
        resource: ManagedResource,
        by_name: dict[str, ManagedResource],
        settled: dict[str, asyncio.Event],
        deadline: float,
        dry_run: bool,
    ) -> str | None:
        """Wait for every dependency; return a skip reason if one is not usable."""
        for dep in resource.depends_on:
            remaining = deadline - self.clock()
            try:
                if remaining <= 0:
                    raise TimeoutError
                await asyncio.wait_for(settled[dep].wait(), timeout=remaining)
            except TimeoutError:
                return f"run deadline reached waiting for dependency '{dep}'"

            dependency = by_name[dep]
            if dry_run:
                usable = (
                    dependency.decision is not None
                    and dependency.decision.action != ResolutionAction.SKIP
                    and dependency.lifecycle_state != LifecycleState.FAILED
                )
            else:
                usable = dependency.lifecycle_state == LifecycleState.READY
            if not usable:
                state = dependency.lifecycle_state.value
                if dependency.decision is not None:
                    state = f"{state}/{dependency.decision.action.value}"
                return f"dependency '{dep}' is not ready ({state})"

        if self.cancel_event.is_set():
            return "run cancelled before resolution"
        return None

    async def _reconcile_resource(
        self, resource: ManagedResource, deadline: float, dry_run: bool
    ) -> None:
        snapshot = await self._probe.inspect(resource.kind, resource.stable_name)
        try:
            decision = await self._resolver.resolve(resource, snapshot)
        except NameCollisionError as e:
            resource.transition(LifecycleState.FAILED, str(e))
            return

        resource.apply_decision(decision)

        match decision.action:
            case ResolutionAction.SKIP:
                return
            case ResolutionAction.REUSE:
                resource.origin = Origin.FOREIGN
                if dry_run:
                    return
                hook = self.on_ready.get(resource.kind)
                if hook is not None and resource.current_name is not None:
                    await hook(resource.current_name)
                resource.transition(LifecycleState.READY)
                log_security_audit_event(
                    "resource_reused",
                    self.config.stack_id,
                    target_resource=resource.current_name,
                    action=decision.action.value,
                    result="read-only",
                )
            case ResolutionAction.UPGRADE | ResolutionAction.CREATE_DISAMBIGUATED:
                resource.origin = Origin.ORCHESTRATED
                if dry_run:
                    return
                await self._provision(resource, deadline)

    async def _provision(self, resource: ManagedResource, deadline: float) -> None:
        action = ProvisionAction(resource, self.drivers[resource.kind], self, deadline)
        policy = RetryPolicy(
            max_attempts=self.config.max_attempts,
            cleanup_before_retry=action.cleanup,
            backoff=Backoff.incremental(
                self.config.retry_backoff_seconds, self.config.retry_backoff_increment_seconds
            ),
        )

        resource.transition(LifecycleState.PROVISIONING)
        outcome = await self._retry.execute(action, policy, self.cancel_event)

        if outcome.success:
            resource.transition(LifecycleState.READY, f"{resource.reason}; {outcome.result}")
            log_security_audit_event(
                "resource_provisioned",
                self.config.stack_id,
                target_resource=action.target,
                action=resource.decision.action.value if resource.decision else None,
                result="ready",
            )
            return

        error = outcome.last_error
        if resource.decision is not None and (
            resource.decision.action == ResolutionAction.CREATE_DISAMBIGUATED
        ):
            # The next resolution of this stable name must not retry the same create
            self._resolver.history.record_failure(resource.kind, resource.stable_name)
        resource.transition(
            LifecycleState.FAILED,
            f"{type(error).__name__}: {error} (after {outcome.attempts} attempts)",
        )

    @staticmethod
    def _fail(resource: ManagedResource, reason: str) -> None:
        if LifecycleState.FAILED in ALLOWED_TRANSITIONS[resource.lifecycle_state]:
            resource.transition(LifecycleState.FAILED, reason)
        else:
            resource.reason = reason

    async def destroy(self) -> OrchestrationReport:
        """Tear the stack down tier by tier and verify nothing is left."""
        report = OrchestrationReport(Operation.DESTROY, self.config.stack_id)
        self._resources = self._build_resources()
        graph = self.spec.graph()
        hosted_on = graph.hosting_clusters()

        logger.info(
            "Starting stack teardown",
            extra={"stack": self.config.stack_id, "run_id": report.run_id},
        )

        for resource in self._resources:
            resource.transition(LifecycleState.DESTROYING)

        tiers = self._tiers
        if tiers is None:
            if self.ledger is None:
                raise ConfigurationError("Teardown needs a deployment ledger")
            tiers = build_standard_tiers(
                store=self.ledger,
                probe=self._probe,
                drivers=self.drivers,
                destroy_order=graph.destroy_order(),
                api_reachable=self._api_reachable or _always_reachable,
                hosted_on=hosted_on,
                waiter=self.waiter,
                poll_interval_seconds=self.config.poll_interval_seconds,
                cancel_event=self.cancel_event,
            )

        teardown = await TeardownCoordinator(self._probe, hosted_on).teardown(
            tiers, self._resources
        )
        remaining = {r.logical_name: r for r in teardown.remaining}
        for resource in self._resources:
            left = remaining.get(resource.logical_name)
            if left is not None:
                if left.name:
                    resource.assign_name(left.name)
                resource.transition(LifecycleState.FAILED, left.reason)
            else:
                resource.transition(LifecycleState.DESTROYED, "no managed resource remains")

        for tier in teardown.tier_results:
            for name in tier.result.deleted if tier.result else []:
                log_security_audit_event(
                    "resource_deleted",
                    self.config.stack_id,
                    target_resource=name,
                    result="deleted",
                )

        report.teardown = teardown
        report.finish(self._resources)
        self._log_result(report)
        return report

    def _log_result(self, report: OrchestrationReport) -> None:
        extra = {
            "stack": report.stack,
            "operation": report.operation.value,
            "run_id": report.run_id,
            "succeeded": report.succeeded,
            "duration_seconds": round(report.duration_seconds, 2),
            "states": {e.name: e.lifecycle_state for e in report.entries},
        }
        if report.succeeded:
            logger.info("Stack run completed", extra=extra)
        else:
            logger.error("Stack run completed with failures", extra=extra)


async def _always_reachable() -> bool:
    return True

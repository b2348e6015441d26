"""Azure Resource Manager driver for the network, cluster and cache kinds.

Every cloud resource is created by its own incremental ARM template
deployment in the stack resource group. The deployment carries the same
ownership tags as the resource, so the deployment history doubles as the
stack's ledger (see ledger.py).

Creation is fire-and-forget at the ARM level: apply() submits the
deployment and returns, and readiness() is polled by the provisioning
waiter. A failed deployment is a terminal failure whose error codes decide
whether another attempt could succeed.

SECURITY: Timeouts are enforced on all Azure API calls to prevent indefinite hangs.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from collections.abc import Callable
from typing import Any

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
    ResourceGroup,
)

from .commands import run_command_async
from .config import ARM_CALL_TIMEOUT_SECONDS, MAX_DEPLOYMENT_NAME_LENGTH
from .discovery import ResourceDiscovery
from .drivers import (
    KIND_TAG,
    MANAGED_BY_TAG,
    MANAGED_BY_VALUE,
    STABLE_NAME_TAG,
    STACK_TAG,
    ObservedResource,
    is_owned,
    ownership_tags,
)
from .models import ResourceDefinition
from .resources import MAX_NAME_LENGTHS, ResourceKind
from .security import log_security_audit_event
from .waiter import Readiness

logger = logging.getLogger(__name__)

# Deployment name prefix for tracking
DEPLOYMENT_NAME_PREFIX = "stackop"

# Tag on ledger deployments naming the resource they created
RESOURCE_NAME_TAG = "stackop-resource"

DEPLOYMENT_TEMPLATE_SCHEMA = (
    "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#"
)

# ARM resource type and default API version per cloud kind
RESOURCE_TYPES: dict[ResourceKind, tuple[str, str]] = {
    ResourceKind.NETWORK: ("Microsoft.Network/virtualNetworks", "2023-09-01"),
    ResourceKind.CLUSTER: ("Microsoft.ContainerService/managedClusters", "2024-02-01"),
    ResourceKind.CACHE: ("Microsoft.Cache/redis", "2023-08-01"),
}

# Deployment error codes no retry can fix
PERMANENT_ERROR_CODES = frozenset(
    {
        "InvalidTemplate",
        "InvalidTemplateDeployment",
        "InvalidParameter",
        "InvalidRequestContent",
        "InvalidResourceName",
        "AuthorizationFailed",
        "LinkedAuthorizationFailed",
        "RequestDisallowedByPolicy",
        "QuotaExceeded",
        "SkuNotAvailable",
        "MissingSubscriptionRegistration",
        "BadRequest",
    }
)

# HTTP status codes worth another attempt
RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})

# Deployment states in which ARM is still working
ACTIVE_DEPLOYMENT_STATES = frozenset({"Accepted", "Running", "Created", "Creating", "Updating"})


async def call_arm(
    operation: Callable[[], Any],
    timeout_seconds: int = ARM_CALL_TIMEOUT_SECONDS,
    operation_name: str = "ARM call",
) -> Any:
    """Run a synchronous SDK call in the default executor with a timeout.

    Raises:
        TimeoutError: If the call exceeds the timeout.
        HttpResponseError: If Azure API returns an error.
    """
    loop = asyncio.get_event_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, operation), timeout=timeout_seconds
        )
    except TimeoutError:
        logger.error(f"{operation_name} timed out", extra={"timeout_seconds": timeout_seconds})
        raise


async def execute_with_timeout(
    begin_operation: Callable[[], Any],
    timeout_seconds: int,
    operation_name: str,
) -> Any:
    """Execute an Azure SDK poller operation and wait for its result.

    Args:
        begin_operation: Callable that returns an LROPoller.
        timeout_seconds: Maximum time to wait for operation completion.
        operation_name: Human-readable name for logging.

    Raises:
        TimeoutError: If operation exceeds timeout.
        HttpResponseError: If Azure API returns an error.
    """
    loop = asyncio.get_event_loop()

    poller = await call_arm(begin_operation, operation_name=operation_name)

    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, poller.result),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        logger.error(f"{operation_name} timed out", extra={"timeout_seconds": timeout_seconds})
        raise


def deployment_name_for(kind: ResourceKind, resource_name: str) -> str:
    """Deterministic deployment name for a resource, within ARM's 64-character limit.

    Re-applying the same resource overwrites its deployment record instead of
    piling up history.
    """
    name = f"{DEPLOYMENT_NAME_PREFIX}-{kind.value.lower()}-{resource_name}"
    if len(name) <= MAX_DEPLOYMENT_NAME_LENGTH:
        return name
    digest = hashlib.sha256(name.encode()).hexdigest()[:8]
    return f"{name[: MAX_DEPLOYMENT_NAME_LENGTH - 9]}-{digest}"


def error_codes(error: Any) -> set[str]:
    """Collect error codes from a deployment error and its nested details."""
    if error is None:
        return set()
    if isinstance(error, dict):
        code = error.get("code")
        details = error.get("details") or []
    else:
        code = getattr(error, "code", None)
        details = getattr(error, "details", None) or []

    codes = {code} if code else set()
    for detail in details:
        codes |= error_codes(detail)
    return codes


def is_retryable_azure_error(error: Exception) -> bool:
    """Classify an Azure SDK error by type and HTTP status code."""
    if isinstance(error, ClientAuthenticationError):
        return False
    if isinstance(error, HttpResponseError):
        return error.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return True
    return isinstance(error, (ConnectionError, TimeoutError))


class ResourceGroupGuard:
    """Creates the stack resource group once per process, on first use."""

    def __init__(
        self,
        client: ResourceManagementClient,
        name: str,
        location: str,
        stack_id: str,
    ) -> None:
        self._client = client
        self.name = name
        self._location = location
        self._stack_id = stack_id
        self._lock = asyncio.Lock()
        self._ensured = False

    async def exists(self) -> bool:
        return bool(
            await call_arm(
                lambda: self._client.resource_groups.check_existence(self.name),
                operation_name="Resource group existence check",
            )
        )

    async def ensure(self) -> None:
        async with self._lock:
            if self._ensured:
                return
            if not await self.exists():
                logger.info(
                    "Creating stack resource group",
                    extra={"resource_group": self.name, "location": self._location},
                )
                group = ResourceGroup(
                    location=self._location,
                    tags={MANAGED_BY_TAG: MANAGED_BY_VALUE, STACK_TAG: self._stack_id},
                )
                await call_arm(
                    lambda: self._client.resource_groups.create_or_update(self.name, group),
                    operation_name="Resource group create",
                )
            self._ensured = True


class AzureResourceDriver:
    """ResourceDriver for one cloud kind, backed by ARM deployments.

    Args:
        kind: network, cluster or cache.
        client: ARM client for the stack subscription.
        subscription_id: Stack subscription, used to build resource IDs.
        resource_group: Guard for the stack resource group.
        stack_id: Ownership marker value.
        location: Default region for resources without one.
        discovery: Resource Graph discovery for naming-convention search.
            Without it discover() falls back to listing the resource group.
        delete_timeout_seconds: Bound for deletes that must finish inline.
    """

    def __init__(
        self,
        kind: ResourceKind,
        client: ResourceManagementClient,
        subscription_id: str,
        resource_group: ResourceGroupGuard,
        stack_id: str,
        location: str,
        discovery: ResourceDiscovery | None = None,
        delete_timeout_seconds: int = 1800,
    ) -> None:
        if kind not in RESOURCE_TYPES:
            raise ValueError(f"{kind.value} is not a cloud resource kind")
        self.kind = kind
        self.max_name_length = MAX_NAME_LENGTHS[kind]
        self.resource_type, self.default_api_version = RESOURCE_TYPES[kind]
        self._client = client
        self._subscription_id = subscription_id
        self._resource_group = resource_group
        self._stack_id = stack_id
        self._location = location
        self._discovery = discovery
        self._delete_timeout_seconds = delete_timeout_seconds
        self._api_versions: dict[str, str] = {}

    def resource_id(self, name: str) -> str:
        return (
            f"/subscriptions/{self._subscription_id}"
            f"/resourceGroups/{self._resource_group.name}"
            f"/providers/{self.resource_type}/{name}"
        )

    def _api_version(self, name: str) -> str:
        return self._api_versions.get(name, self.default_api_version)

    def _is_healthy(self, properties: dict[str, Any]) -> bool:
        if properties.get("provisioningState") != "Succeeded":
            return False
        if self.kind == ResourceKind.CLUSTER:
            power_state = properties.get("powerState") or {}
            return power_state.get("code") == "Running"
        return True

    def _observe(self, resource: Any) -> ObservedResource:
        properties = resource.properties or {}
        details: dict[str, Any] = {
            "id": resource.id,
            "provisioningState": properties.get("provisioningState"),
        }
        if self.kind == ResourceKind.CLUSTER:
            details["powerState"] = (properties.get("powerState") or {}).get("code")
        return ObservedResource(
            name=resource.name,
            healthy=self._is_healthy(properties),
            managed_by_us=is_owned(resource.tags, self._stack_id),
            details=details,
        )

    async def describe(self, name: str) -> ObservedResource | None:
        resource_id = self.resource_id(name)
        try:
            resource = await call_arm(
                lambda: self._client.resources.get_by_id(resource_id, self._api_version(name)),
                operation_name=f"Get {self.kind.value}",
            )
        except ResourceNotFoundError:
            return None
        return self._observe(resource)

    async def find_managed(self, stable_name: str) -> ObservedResource | None:
        # ARM $filter accepts a single tag condition; stack and kind are checked below
        tag_filter = f"tagName eq '{STABLE_NAME_TAG}' and tagValue eq '{stable_name}'"
        try:
            items = await call_arm(
                lambda: list(
                    self._client.resources.list_by_resource_group(
                        self._resource_group.name, filter=tag_filter
                    )
                ),
                operation_name=f"List {self.kind.value} by tag",
            )
        except ResourceNotFoundError:
            return None

        found: list[ObservedResource] = []
        for item in items:
            tags = item.tags or {}
            if (item.type or "").lower() != self.resource_type.lower():
                continue
            if not is_owned(tags, self._stack_id) or tags.get(KIND_TAG) != self.kind.value:
                continue
            observed = await self.describe(item.name)
            if observed is not None:
                found.append(observed)

        if not found:
            return None
        healthy = [o for o in found if o.healthy]
        return (healthy or found)[0]

    def template_for(self, name: str, definition: ResourceDefinition) -> dict[str, Any]:
        """Single-resource ARM template for a definition."""
        body: dict[str, Any] = {
            "type": self.resource_type,
            "apiVersion": definition.api_version or self.default_api_version,
            "name": name,
            "location": definition.location or self._location,
            "tags": {
                **definition.tags,
                **ownership_tags(
                    self._stack_id, self.kind, definition.stable_name, definition.name
                ),
            },
            "properties": definition.properties,
        }
        if definition.sku is not None:
            body["sku"] = definition.sku
        if definition.identity is not None:
            body["identity"] = definition.identity
        return {
            "$schema": DEPLOYMENT_TEMPLATE_SCHEMA,
            "contentVersion": "1.0.0.0",
            "resources": [body],
        }

    async def apply(self, name: str, definition: ResourceDefinition) -> None:
        await self._resource_group.ensure()

        deployment_name = deployment_name_for(self.kind, name)
        tags = ownership_tags(self._stack_id, self.kind, definition.stable_name, definition.name)
        tags[RESOURCE_NAME_TAG] = name
        deployment = Deployment(
            properties=DeploymentProperties(
                template=self.template_for(name, definition),
                mode=DeploymentMode.INCREMENTAL,
            ),
            tags=tags,
        )
        self._api_versions[name] = definition.api_version or self.default_api_version

        logger.info(
            "Submitting deployment",
            extra={"kind": self.kind.value, "resource": name, "deployment": deployment_name},
        )
        await call_arm(
            lambda: self._client.deployments.begin_create_or_update(
                self._resource_group.name, deployment_name, deployment
            ),
            operation_name=f"Deployment ({self.kind.value})",
        )
        log_security_audit_event(
            "deployment",
            self._stack_id,
            target_resource=self.resource_id(name),
            action="create_or_update",
            result="submitted",
        )

    async def readiness(self, name: str) -> Readiness:
        deployment_name = deployment_name_for(self.kind, name)
        try:
            deployment = await call_arm(
                lambda: self._client.deployments.get(self._resource_group.name, deployment_name),
                operation_name="Get deployment",
            )
        except ResourceNotFoundError:
            return Readiness.pending("deployment not registered yet")

        properties = deployment.properties
        state = properties.provisioning_state if properties is not None else None

        match state:
            case "Succeeded":
                observed = await self.describe(name)
                if observed is None:
                    return Readiness.pending("resource not visible yet")
                if observed.healthy:
                    return Readiness.ready(f"{self.kind.value} {name} is ready")
                return Readiness.pending(
                    f"provisioningState={observed.details.get('provisioningState')}"
                )
            case "Failed":
                codes = error_codes(properties.error if properties is not None else None)
                permanent = bool(codes & PERMANENT_ERROR_CODES)
                return Readiness.failed(
                    f"deployment {deployment_name} failed: "
                    f"{', '.join(sorted(codes)) or 'no error code'}",
                    permanent=permanent,
                )
            case "Canceled":
                return Readiness.failed(f"deployment {deployment_name} canceled", permanent=False)
            case _:
                return Readiness.pending(f"deployment {state or 'pending'}")

    async def reset(self, name: str) -> None:
        """Cancel an in-flight deployment and remove a failed resource of ours."""
        deployment_name = deployment_name_for(self.kind, name)
        try:
            deployment = await call_arm(
                lambda: self._client.deployments.get(self._resource_group.name, deployment_name),
                operation_name="Get deployment",
            )
        except ResourceNotFoundError:
            deployment = None

        if deployment is not None and deployment.properties is not None:
            if deployment.properties.provisioning_state in ACTIVE_DEPLOYMENT_STATES:
                logger.info(
                    "Cancelling in-flight deployment",
                    extra={"deployment": deployment_name},
                )
                await call_arm(
                    lambda: self._client.deployments.cancel(
                        self._resource_group.name, deployment_name
                    ),
                    operation_name="Cancel deployment",
                )

        observed = await self.describe(name)
        if observed is None or not observed.managed_by_us:
            return
        if observed.details.get("provisioningState") == "Failed":
            logger.info("Deleting failed resource before retry", extra={"resource": name})
            resource_id = self.resource_id(name)
            await execute_with_timeout(
                lambda: self._client.resources.begin_delete_by_id(
                    resource_id, self._api_version(name)
                ),
                timeout_seconds=self._delete_timeout_seconds,
                operation_name=f"Delete {self.kind.value}",
            )

    async def delete(self, name: str) -> None:
        resource_id = self.resource_id(name)
        try:
            await call_arm(
                lambda: self._client.resources.begin_delete_by_id(
                    resource_id, self._api_version(name)
                ),
                operation_name=f"Delete {self.kind.value}",
            )
        except ResourceNotFoundError:
            logger.debug("Resource already absent", extra={"resource": name})
            return
        log_security_audit_event(
            "deletion",
            self._stack_id,
            target_resource=resource_id,
            action="delete",
            result="submitted",
        )

    async def discover(self, pattern: str) -> list[ObservedResource]:
        if self._discovery is not None:
            infos = await self._discovery.find_by_pattern(self.resource_type, pattern)
            return [
                ObservedResource(
                    name=info.name,
                    healthy=info.provisioning_state == "Succeeded",
                    managed_by_us=is_owned(info.tags, self._stack_id),
                    details={"id": info.resource_id},
                )
                for info in infos
            ]

        type_filter = f"resourceType eq '{self.resource_type}'"
        try:
            items = await call_arm(
                lambda: list(
                    self._client.resources.list_by_resource_group(
                        self._resource_group.name, filter=type_filter
                    )
                ),
                operation_name=f"List {self.kind.value}",
            )
        except ResourceNotFoundError:
            return []
        compiled = re.compile(pattern)
        return [
            ObservedResource(
                name=item.name,
                healthy=False,
                managed_by_us=is_owned(item.tags, self._stack_id),
                details={"id": item.id},
            )
            for item in items
            if compiled.match(item.name)
        ]

    def is_retryable(self, error: Exception) -> bool:
        return is_retryable_azure_error(error)

    def guidance(self, name: str) -> list[str]:
        group = self._resource_group.name
        match self.kind:
            case ResourceKind.NETWORK:
                return [f"az network vnet delete --resource-group {group} --name {name}"]
            case ResourceKind.CLUSTER:
                return [f"az aks delete --resource-group {group} --name {name} --yes"]
            case ResourceKind.CACHE:
                return [f"az redis delete --resource-group {group} --name {name} --yes"]
            case _:
                return [f"az resource delete --ids {self.resource_id(name)}"]


class ClusterCredentials:
    """Refreshes the local kubeconfig once a cluster is ready.

    Args:
        resource_group: Stack resource group name.
        kube_context: Context name to write, or None for the cluster name.
        on_refresh: Called after a successful refresh (drops cached API clients).
    """

    def __init__(
        self,
        resource_group: str,
        kube_context: str | None = None,
        on_refresh: Callable[[], None] | None = None,
        timeout_seconds: int = 300,
    ) -> None:
        self._resource_group = resource_group
        self._kube_context = kube_context
        self._on_refresh = on_refresh
        self._timeout_seconds = timeout_seconds

    def command(self, cluster_name: str) -> list[str]:
        cmd = [
            "az",
            "aks",
            "get-credentials",
            "--resource-group",
            self._resource_group,
            "--name",
            cluster_name,
            "--overwrite-existing",
        ]
        if self._kube_context:
            cmd.extend(["--context", self._kube_context])
        return cmd

    async def refresh(self, cluster_name: str) -> None:
        await run_command_async(self.command(cluster_name), timeout=self._timeout_seconds)
        logger.info(
            "Kubeconfig refreshed",
            extra={"cluster": cluster_name, "context": self._kube_context or cluster_name},
        )
        if self._on_refresh is not None:
            self._on_refresh()


async def probe_arm(guard: ResourceGroupGuard) -> bool:
    """True if ARM answers for the stack resource group."""
    try:
        await guard.exists()
    except (AzureError, TimeoutError) as e:
        logger.warning("Azure Resource Manager unreachable", extra={"error": str(e)})
        return False
    return True


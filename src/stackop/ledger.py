"""Deployment ledger: the stack's authoritative record of what it created.

The ledger is the ARM deployment history of the stack resource group,
filtered to deployments carrying this stack's ownership tags:
- Cloud resources are recorded by the deployment that created them
  (azure_resources.AzureResourceDriver.apply).
- Platform resources are recorded by a record-only deployment with an empty
  template and the same tags (DeploymentLedger.record).

No local state file is kept; the ledger lives next to the resources it
describes and survives a lost workstation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
)

from .azure_resources import (
    ACTIVE_DEPLOYMENT_STATES,
    DEPLOYMENT_TEMPLATE_SCHEMA,
    RESOURCE_NAME_TAG,
    ResourceGroupGuard,
    call_arm,
    deployment_name_for,
    execute_with_timeout,
)
from .config import ARM_CALL_TIMEOUT_SECONDS
from .drivers import KIND_TAG, LOGICAL_NAME_TAG, STABLE_NAME_TAG, is_owned, ownership_tags
from .resources import ResourceKind

logger = logging.getLogger(__name__)

RECORD_ONLY_TEMPLATE: dict[str, Any] = {
    "$schema": DEPLOYMENT_TEMPLATE_SCHEMA,
    "contentVersion": "1.0.0.0",
    "resources": [],
}


class LedgerError(Exception):
    """Raised when a ledger record cannot be interpreted."""

    pass


@dataclass(frozen=True)
class LedgerEntry:
    """One resource the stack recorded as created.

    Attributes:
        deployment_name: ARM deployment holding the record.
        logical_name: Resource name in the stack spec.
        kind: Resource kind.
        resource_name: Name the resource was created under.
        stable_name: Stable name it was derived from.
        state: Deployment provisioning state.
    """

    deployment_name: str
    logical_name: str
    kind: ResourceKind
    resource_name: str
    stable_name: str
    state: str | None = None


def entry_from_deployment(deployment: Any, stack_id: str) -> LedgerEntry | None:
    """Interpret a deployment as a ledger entry.

    Returns:
        The entry, or None if the deployment does not belong to this stack.

    Raises:
        LedgerError: If the deployment belongs to this stack but its tags are incomplete.
    """
    tags = deployment.tags or {}
    if not is_owned(tags, stack_id):
        return None

    missing = [
        tag
        for tag in (KIND_TAG, RESOURCE_NAME_TAG, STABLE_NAME_TAG, LOGICAL_NAME_TAG)
        if not tags.get(tag)
    ]
    if missing:
        raise LedgerError(f"deployment {deployment.name} is missing tags {missing}")

    try:
        kind = ResourceKind(tags[KIND_TAG])
    except ValueError as e:
        raise LedgerError(
            f"deployment {deployment.name} has unknown kind '{tags[KIND_TAG]}'"
        ) from e

    properties = deployment.properties
    return LedgerEntry(
        deployment_name=deployment.name,
        logical_name=tags[LOGICAL_NAME_TAG],
        kind=kind,
        resource_name=tags[RESOURCE_NAME_TAG],
        stable_name=tags[STABLE_NAME_TAG],
        state=properties.provisioning_state if properties is not None else None,
    )


class DeploymentLedger:
    """Ledger backed by the stack resource group's deployment history."""

    def __init__(
        self,
        client: ResourceManagementClient,
        resource_group: ResourceGroupGuard,
        stack_id: str,
        timeout_seconds: int = ARM_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._resource_group = resource_group
        self._stack_id = stack_id
        self._timeout_seconds = timeout_seconds

    async def record(
        self,
        kind: ResourceKind,
        resource_name: str,
        stable_name: str,
        logical_name: str,
    ) -> LedgerEntry:
        """Record a platform resource with a record-only deployment."""
        if not kind.is_platform:
            raise ValueError(f"{kind.value} resources are recorded by their own deployment")

        await self._resource_group.ensure()

        deployment_name = deployment_name_for(kind, resource_name)
        tags = ownership_tags(self._stack_id, kind, stable_name, logical_name)
        tags[RESOURCE_NAME_TAG] = resource_name
        deployment = Deployment(
            properties=DeploymentProperties(
                template=RECORD_ONLY_TEMPLATE,
                mode=DeploymentMode.INCREMENTAL,
            ),
            tags=tags,
        )
        await execute_with_timeout(
            lambda: self._client.deployments.begin_create_or_update(
                self._resource_group.name, deployment_name, deployment
            ),
            timeout_seconds=self._timeout_seconds,
            operation_name="Ledger record",
        )
        logger.info(
            "Recorded platform resource in ledger",
            extra={"kind": kind.value, "resource": resource_name, "deployment": deployment_name},
        )
        return LedgerEntry(
            deployment_name=deployment_name,
            logical_name=logical_name,
            kind=kind,
            resource_name=resource_name,
            stable_name=stable_name,
            state="Succeeded",
        )

    async def _deployments(self) -> list[Any]:
        try:
            return await call_arm(
                lambda: list(
                    self._client.deployments.list_by_resource_group(self._resource_group.name)
                ),
                timeout_seconds=self._timeout_seconds,
                operation_name="List deployments",
            )
        except ResourceNotFoundError:
            # No resource group, nothing was ever recorded
            return []

    async def entries(self) -> list[LedgerEntry]:
        """All entries for this stack.

        Raises:
            LedgerError: If a stack deployment cannot be interpreted.
            HttpResponseError: If the deployment history cannot be read.
        """
        entries = []
        for deployment in await self._deployments():
            entry = entry_from_deployment(deployment, self._stack_id)
            if entry is not None:
                entries.append(entry)
        return entries

    async def is_consistent(self) -> bool:
        """Whether the ledger can drive a state-based teardown.

        False if the history is unreachable, a stack deployment is malformed,
        or a deployment is still in flight.
        """
        try:
            entries = await self.entries()
        except (AzureError, TimeoutError) as e:
            logger.warning("Deployment ledger unreachable", extra={"error": str(e)})
            return False
        except LedgerError as e:
            logger.warning("Deployment ledger inconsistent", extra={"error": str(e)})
            return False

        in_flight = [e.deployment_name for e in entries if e.state in ACTIVE_DEPLOYMENT_STATES]
        if in_flight:
            logger.warning(
                "Deployment ledger has in-flight deployments",
                extra={"deployments": in_flight},
            )
            return False
        return True

    async def forget(self, entry: LedgerEntry) -> None:
        """Delete the deployment record after its resource is gone."""
        try:
            await execute_with_timeout(
                lambda: self._client.deployments.begin_delete(
                    self._resource_group.name, entry.deployment_name
                ),
                timeout_seconds=self._timeout_seconds,
                operation_name="Ledger forget",
            )
        except ResourceNotFoundError:
            pass
        logger.info(
            "Removed ledger entry",
            extra={"deployment": entry.deployment_name, "resource": entry.resource_name},
        )

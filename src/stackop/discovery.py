"""Azure Resource Graph discovery for naming-convention teardown.

When the deployment ledger is gone or inconsistent, the direct-deletion
tier has to find the stack's cloud resources by name. Resource Graph answers
"every resource of this type in the stack resource group whose name matches"
in one query, with tags included so ownership can be checked before anything
is deleted.

SECURITY:
- Query results are bounded by MAX_GRAPH_QUERY_RESULTS
- All queries have timeouts enforced
- Values interpolated into KQL are quote-escaped
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import (
    QueryRequest,
    QueryRequestOptions,
    ResultFormat,
)

from .config import MAX_GRAPH_QUERY_RESULTS, MAX_GRAPH_QUERY_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


@dataclass
class ResourceInfo:
    """Basic resource information from Resource Graph.

    Attributes:
        resource_id: Full ARM resource ID
        name: Resource name
        type: Resource type (lowercase, e.g. microsoft.cache/redis)
        resource_group: Resource group name
        tags: Resource tags
        provisioning_state: properties.provisioningState, if present
    """

    resource_id: str
    name: str
    type: str
    resource_group: str
    tags: dict[str, str] | None = None
    provisioning_state: str | None = None


def _kql_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class ResourceDiscovery:
    """Resource Graph queries scoped to one subscription and resource group."""

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        resource_group: str,
        client: ResourceGraphClient | None = None,
    ) -> None:
        self._subscription_id = subscription_id
        self._resource_group = resource_group
        self._client = client or ResourceGraphClient(credential=credential)

    async def find_by_pattern(self, resource_type: str, pattern: str) -> list[ResourceInfo]:
        """Return resources of a type whose name matches a regex.

        The regex is applied in the query and again on the results, so a
        lenient server-side match never widens what callers see.

        Raises:
            HttpResponseError: If the query fails or times out.
        """
        query = f"""
        Resources
        | where subscriptionId == '{_kql_string(self._subscription_id)}'
            and resourceGroup =~ '{_kql_string(self._resource_group)}'
        | where tolower(type) == '{_kql_string(resource_type.lower())}'
        | where name matches regex '{_kql_string(pattern)}'
        | project
            id,
            name,
            type,
            resourceGroup,
            tags,
            provisioningState = tostring(properties.provisioningState)
        | limit {MAX_GRAPH_QUERY_RESULTS}
        """

        rows = await self._execute_query(query.strip())
        compiled = re.compile(pattern)

        resources = []
        for row in rows:
            name = row.get("name", "")
            if not compiled.match(name):
                continue
            resources.append(
                ResourceInfo(
                    resource_id=row.get("id", ""),
                    name=name,
                    type=row.get("type", ""),
                    resource_group=row.get("resourceGroup", ""),
                    tags=row.get("tags") or None,
                    provisioning_state=row.get("provisioningState") or None,
                )
            )

        logger.debug(
            "Resource Graph discovery complete",
            extra={"resource_type": resource_type, "pattern": pattern, "found": len(resources)},
        )
        return resources

    async def is_reachable(self) -> bool:
        """Cheap query used as the direct-deletion tier precondition."""
        query = (
            f"Resources | where subscriptionId == '{_kql_string(self._subscription_id)}' "
            "| project id | limit 1"
        )
        try:
            await self._execute_query(query)
        except AzureError as e:
            logger.warning("Resource Graph unreachable", extra={"error": str(e)})
            return False
        return True

    async def _execute_query(self, query: str) -> list[dict[str, Any]]:
        """Execute a Resource Graph query.

        Raises:
            HttpResponseError: If the query fails.
        """
        request = QueryRequest(
            subscriptions=[self._subscription_id],
            query=query,
            options=QueryRequestOptions(
                result_format=ResultFormat.OBJECT_ARRAY,
                top=MAX_GRAPH_QUERY_RESULTS,
            ),
        )

        try:
            # Resource Graph client is synchronous, wrap in executor
            loop = asyncio.get_event_loop()
            response = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: self._client.resources(request)),
                timeout=MAX_GRAPH_QUERY_TIMEOUT_SECONDS,
            )
        except TimeoutError as e:
            logger.error(
                "Resource Graph query timed out",
                extra={"timeout_seconds": MAX_GRAPH_QUERY_TIMEOUT_SECONDS},
            )
            raise HttpResponseError(message="Resource Graph query timed out") from e
        except AzureError as e:
            logger.error("Resource Graph query failed", extra={"error": str(e)})
            raise

        # response.data is a list of dictionaries when using OBJECT_ARRAY format
        if isinstance(response.data, list):
            return response.data
        return []

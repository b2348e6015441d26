"""Azure Mock Context for integration testing.

Provides context manager that patches Azure SDK components with mock implementations.
"""

from __future__ import annotations

from typing import Any
from unittest import mock

from .credential import MockManagedIdentityCredential
from .graph import MockResourceGraphClient
from .resources import MockResource, MockResourceClient, MockResourceState


class MockAzureContext:
    """Context manager for Azure API mocking in integration tests.

    Patches:
    - stackop.security.ManagedIdentityCredential and DefaultAzureCredential
    - stackop.reconciler.ResourceManagementClient → MockResourceClient
    - stackop.discovery.ResourceGraphClient → MockResourceGraphClient

    Usage:
        with MockAzureContext() as ctx:
            reconciler = StackReconciler.from_config(config, spec)
            report = await reconciler.deploy()

            assert ctx.state.resource_count == 3
    """

    def __init__(
        self,
        *,
        fail_deployments: bool = False,
        complete_deployments: bool = True,
        initial_resources: list[MockResource] | None = None,
    ) -> None:
        """Initialize mock context.

        Args:
            fail_deployments: Whether deployments should fail.
            complete_deployments: Whether deployments finish immediately.
            initial_resources: Resources to pre-populate in state.
        """
        self._fail_deployments = fail_deployments
        self._complete_deployments = complete_deployments
        self._initial_resources = initial_resources or []

        # These are set when context is entered
        self._state: MockResourceState | None = None
        self.graph = MockResourceGraphClient()
        self.credentials: list[MockManagedIdentityCredential] = []
        self.clients: list[MockResourceClient] = []
        self._patches: list[Any] = []

    @property
    def state(self) -> MockResourceState:
        """Get the mock resource state.

        Raises:
            RuntimeError: If accessed outside of context.
        """
        if self._state is None:
            raise RuntimeError("MockAzureContext must be used as a context manager")
        return self._state

    def _create_credential(self, **kwargs: Any) -> MockManagedIdentityCredential:
        credential = MockManagedIdentityCredential(**kwargs)
        self.credentials.append(credential)
        return credential

    def _create_client(self, credential: Any, subscription_id: str) -> MockResourceClient:
        client = MockResourceClient(
            state=self.state,
            subscription_id=subscription_id,
            fail_deployments=self._fail_deployments,
            complete_deployments=self._complete_deployments,
        )
        self.clients.append(client)
        return client

    def __enter__(self) -> MockAzureContext:
        """Enter the mock context, applying patches."""
        self._state = MockResourceState()
        for resource in self._initial_resources:
            self._state.put_resource(resource)

        self._patches = [
            mock.patch(
                "stackop.security.ManagedIdentityCredential",
                side_effect=self._create_credential,
            ),
            mock.patch(
                "stackop.security.DefaultAzureCredential",
                side_effect=self._create_credential,
            ),
            mock.patch(
                "stackop.reconciler.ResourceManagementClient",
                side_effect=self._create_client,
            ),
            mock.patch(
                "stackop.discovery.ResourceGraphClient",
                return_value=self.graph,
            ),
        ]
        for patch in self._patches:
            patch.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit the mock context, removing patches."""
        for patch in reversed(self._patches):
            patch.stop()
        self._patches.clear()

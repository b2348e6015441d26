"""Azure API Mock for Integration Testing.

In-memory stand-ins for the Azure Resource Manager and Resource Graph APIs
used by the stack drivers, so ARM-backed code runs without Azure
connectivity.

Key Features:
- In-memory resource groups, resources and deployments
- Deployment lifecycle simulation (running → succeeded/failed/canceled)
- Error injection for testing failure scenarios
- Credential simulation

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        reconciler = StackReconciler.from_config(config, spec)
        report = await reconciler.deploy()

        assert ctx.state.deployment_count == 3
"""

from .context import MockAzureContext
from .credential import MockManagedIdentityCredential
from .graph import MockGraphResource, MockResourceGraphClient
from .resources import (
    DeploymentProvisioningState,
    MockDeployment,
    MockResource,
    MockResourceClient,
    MockResourceState,
    resource_id_for,
)

__all__ = [
    "DeploymentProvisioningState",
    "MockAzureContext",
    "MockDeployment",
    "MockGraphResource",
    "MockManagedIdentityCredential",
    "MockResource",
    "MockResourceClient",
    "MockResourceGraphClient",
    "MockResourceState",
    "resource_id_for",
]

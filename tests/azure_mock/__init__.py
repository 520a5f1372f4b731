"""Azure API Mock for Integration Testing.

In-memory stand-ins for the Azure surfaces the orchestrator talks to, so the
full stage pipeline runs without Azure connectivity.

Key Features:
- ARM child resources with ETag / If-Match / If-None-Match semantics
- Role assignments with scope inheritance and RoleAssignmentExists conflicts
- Microsoft Graph service principal lookups
- Rule manifests served from arbitrary URLs
- Template deployments with queued failures and configurable outputs
- Resource Graph workspace lookups by tag
- Error injection by method and path fragment

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        orchestrator = ctx.build_orchestrator(config)
        result = await orchestrator.run(spec)

        assert ctx.arm.requests_for("PUT", "alertRules")
"""

from .arm import MockArmPipeline, MockHttpResponse, RecordedRequest
from .context import MockAzureContext
from .credential import MockTokenCredential, create_mock_credential
from .deployments import MockLROPoller, MockResourceManagementClient, RecordedDeployment
from .graph import MockResourceGraphClient, MockWorkspace

__all__ = [
    "MockArmPipeline",
    "MockAzureContext",
    "MockHttpResponse",
    "MockLROPoller",
    "MockResourceGraphClient",
    "MockResourceManagementClient",
    "MockTokenCredential",
    "MockWorkspace",
    "RecordedDeployment",
    "RecordedRequest",
    "create_mock_credential",
]

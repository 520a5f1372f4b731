"""Azure Mock Context for integration testing.

Wires the real orchestrator components to in-memory fakes: ARM, Graph and
manifest hosts share one MockArmPipeline, template deployments go to a
MockResourceManagementClient, and workspace lookups to a
MockResourceGraphClient. Credential classes are patched so that code paths
calling get_credential() never reach azure-identity.
"""

from __future__ import annotations

from typing import Any
from unittest import mock

from sentinel_orchestrator.automation import TemplatePlaybookDeployer
from sentinel_orchestrator.client import RemoteResourceClient
from sentinel_orchestrator.config import Config
from sentinel_orchestrator.deployments import TemplateDeployer
from sentinel_orchestrator.pipeline import StagePipelineOrchestrator
from sentinel_orchestrator.principals import DirectoryClient, PrincipalDiscovery, RoleBinder
from sentinel_orchestrator.reconciler import ConditionalUpsertReconciler
from sentinel_orchestrator.resource_graph import WorkspaceLocator
from sentinel_orchestrator.rules import BulkRuleDeployer, ManifestFetcher
from sentinel_orchestrator.workbooks import WorkbookPublisher

from .arm import MockArmPipeline
from .credential import MockTokenCredential
from .deployments import MockResourceManagementClient
from .graph import MockResourceGraphClient


class MockAzureContext:
    """Context manager for Azure API mocking in integration tests.

    Patches:
    - sentinel_orchestrator.security.ManagedIdentityCredential
    - sentinel_orchestrator.security.AzureCliCredential

    Usage:
        with MockAzureContext() as ctx:
            ctx.arm.seed(...)
            orchestrator = ctx.build_orchestrator(config)
            result = await orchestrator.run(spec)
            assert ctx.deployments.history
    """

    def __init__(self, *, client_id: str | None = None) -> None:
        self.credential = MockTokenCredential(client_id=client_id)
        self.arm = MockArmPipeline()
        self.resource_management = MockResourceManagementClient()
        self.graph = MockResourceGraphClient()
        self._patches: list[Any] = []

    @property
    def deployments(self) -> Any:
        return self.resource_management.deployments

    def __enter__(self) -> MockAzureContext:
        for target in (
            "sentinel_orchestrator.security.ManagedIdentityCredential",
            "sentinel_orchestrator.security.AzureCliCredential",
        ):
            patcher = mock.patch(target, side_effect=self._credential_factory)
            patcher.start()
            self._patches.append(patcher)
        return self

    def __exit__(self, *args: Any) -> None:
        for patcher in reversed(self._patches):
            patcher.stop()
        self._patches.clear()

    def _credential_factory(self, *args: Any, **kwargs: Any) -> MockTokenCredential:
        if kwargs.get("client_id"):
            self.credential.client_id = kwargs["client_id"]
        return self.credential

    def build_orchestrator(self, config: Config, **overrides: Any) -> StagePipelineOrchestrator:
        """Build an orchestrator whose collaborators all talk to the mocks.

        Keyword overrides replace individual collaborators
        (e.g. playbook_deployer=...).
        """
        client = RemoteResourceClient(
            timeout_seconds=config.request_timeout_seconds, pipeline_client=self.arm
        )
        reconciler = ConditionalUpsertReconciler(client)
        template_deployer = TemplateDeployer(
            self.credential, config, client=self.resource_management
        )
        components: dict[str, Any] = {
            "resource_client": client,
            "reconciler": reconciler,
            "discovery": PrincipalDiscovery(DirectoryClient(pipeline_client=self.arm)),
            "role_binder": RoleBinder(client),
            "rule_deployer": BulkRuleDeployer(
                client,
                ManifestFetcher(pipeline_client=self.arm),
                max_workers=config.max_rule_workers,
                timeout_seconds=config.request_timeout_seconds,
            ),
            "locator": WorkspaceLocator(self.credential, config, client=self.graph),
            "template_deployer": template_deployer,
            "playbook_deployer": TemplatePlaybookDeployer(config.templates_dir, template_deployer),
            "workbook_publisher": WorkbookPublisher(
                reconciler, config.templates_dir, config.location
            ),
        }
        components.update(overrides)
        return StagePipelineOrchestrator(config, **components)

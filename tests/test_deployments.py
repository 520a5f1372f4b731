"""Tests for ARM template deployment."""

from __future__ import annotations

import time
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import HttpResponseError
from azure_mock import MockLROPoller, MockResourceManagementClient, create_mock_credential

from sentinel_orchestrator.client import TransportError
from sentinel_orchestrator.config import MAX_DEPLOYMENT_NAME_LENGTH, Config
from sentinel_orchestrator.deployments import (
    TemplateDeployer,
    build_deployment_name,
    declared_parameters,
    flatten_outputs,
    to_arm_parameters,
)

TEMPLATE: dict[str, Any] = {
    "parameters": {"workspaceName": {"type": "string"}, "deployDataConnectors": {"type": "bool"}},
    "resources": [],
}


@pytest.fixture
def arm_client() -> MockResourceManagementClient:
    return MockResourceManagementClient()


@pytest.fixture
def deployer(config: Config, arm_client: MockResourceManagementClient) -> TemplateDeployer:
    return TemplateDeployer(create_mock_credential(), config, client=arm_client)


class TestHelpers:
    def test_to_arm_parameters(self) -> None:
        assert to_arm_parameters({"a": 1, "b": False}) == {
            "a": {"value": 1},
            "b": {"value": False},
        }

    def test_flatten_outputs(self) -> None:
        outputs = {
            "workspaceResourceId": {"type": "String", "value": "/subscriptions/x"},
            "count": {"type": "Int", "value": 3},
        }
        assert flatten_outputs(outputs) == {"workspaceResourceId": "/subscriptions/x", "count": 3}
        assert flatten_outputs(None) == {}

    def test_declared_parameters_drops_undeclared(self) -> None:
        values = {"workspaceName": "law", "deployDataConnectors": True, "skipUeba": False}

        assert declared_parameters(TEMPLATE, values) == {
            "workspaceName": "law",
            "deployDataConnectors": True,
        }

    def test_template_without_parameters(self) -> None:
        assert declared_parameters({"resources": []}, {"a": 1}) == {}

    def test_deployment_name_length(self) -> None:
        name = build_deployment_name("infra-" + "x" * 100)

        assert len(name) <= MAX_DEPLOYMENT_NAME_LENGTH
        assert name.startswith("sentinel-infra-")

    def test_deployment_names_are_unique(self) -> None:
        names = {build_deployment_name("infra") for _ in range(20)}
        assert len(names) > 1


class TestTemplateDeployer:
    """Tests for TemplateDeployer.deploy()."""

    @pytest.mark.asyncio
    async def test_deploy_records_parameters_and_outputs(
        self, deployer: TemplateDeployer, arm_client: MockResourceManagementClient
    ) -> None:
        arm_client.deployments.set_outputs("infra", {"workspaceResourceId": "/ws/id"})

        result = await deployer.deploy(
            TEMPLATE,
            {"workspaceName": "law", "deployDataConnectors": False, "undeclared": 1},
            label="infra-abc",
        )

        assert result.success
        assert result.provisioning_state == "Succeeded"
        assert result.outputs == {"workspaceResourceId": "/ws/id"}
        recorded = arm_client.deployments.history[0]
        assert recorded.resource_group == "rg-sentinel"
        assert recorded.parameter("deployDataConnectors") is False
        assert "undeclared" not in recorded.parameters

    @pytest.mark.asyncio
    async def test_explicit_resource_group(
        self, deployer: TemplateDeployer, arm_client: MockResourceManagementClient
    ) -> None:
        await deployer.deploy(TEMPLATE, {}, label="pb-x", resource_group_name="rg-playbooks")

        assert arm_client.deployments.history[0].resource_group == "rg-playbooks"

    @pytest.mark.asyncio
    async def test_failure_raises_http_error(
        self, deployer: TemplateDeployer, arm_client: MockResourceManagementClient
    ) -> None:
        arm_client.deployments.fail_next("infra", "InvalidTemplate: bad expression")

        with pytest.raises(HttpResponseError, match="InvalidTemplate"):
            await deployer.deploy(TEMPLATE, {}, label="infra-abc")

    @pytest.mark.asyncio
    async def test_enum_provisioning_state(
        self, deployer: TemplateDeployer, arm_client: MockResourceManagementClient
    ) -> None:
        """SDK models report provisioning_state as an enum member."""
        state = MagicMock()
        state.value = "Failed"
        result = MagicMock()
        result.properties.provisioning_state = state
        result.properties.outputs = {}
        arm_client.deployments.begin_create_or_update = MagicMock(
            return_value=MockLROPoller(result)
        )

        deployed = await deployer.deploy(TEMPLATE, {}, label="infra-abc")

        assert deployed.provisioning_state == "Failed"
        assert not deployed.success

    @pytest.mark.asyncio
    async def test_timeout(self, arm_client: MockResourceManagementClient) -> None:
        class SlowPoller(MockLROPoller):
            def result(self, _timeout: int | None = None) -> Any:
                time.sleep(0.5)
                return super().result()

        arm_client.deployments.begin_create_or_update = MagicMock(
            return_value=SlowPoller(MagicMock())
        )
        short = MagicMock(resource_group_name="rg-sentinel", deployment_timeout_seconds=0.05)
        deployer = TemplateDeployer(create_mock_credential(), short, client=arm_client)

        with pytest.raises(TransportError, match="timed out"):
            await deployer.deploy(TEMPLATE, {}, label="infra-abc")

    def test_default_client(self, config: Config) -> None:
        credential = create_mock_credential()
        with patch("sentinel_orchestrator.deployments.ResourceManagementClient") as client_class:
            TemplateDeployer(credential, config)

        client_class.assert_called_once_with(credential, config.subscription_id)

"""Tests for Resource Graph workspace lookup."""

from __future__ import annotations

import time
from unittest.mock import patch

import pytest
from azure.core.exceptions import HttpResponseError
from azure_mock import MockResourceGraphClient, MockWorkspace, create_mock_credential

from sentinel_orchestrator.config import MAX_GRAPH_QUERY_RESULTS, Config
from sentinel_orchestrator.resource_graph import CORRELATION_TAG, WorkspaceLocator

CORRELATION_ID = "sentinel-prod-001"


@pytest.fixture
def graph() -> MockResourceGraphClient:
    return MockResourceGraphClient()


@pytest.fixture
def locator(config: Config, graph: MockResourceGraphClient) -> WorkspaceLocator:
    return WorkspaceLocator(create_mock_credential(), config, client=graph)


def _tagged(name: str, resource_group: str = "rg-sentinel", value: str = CORRELATION_ID):
    return MockWorkspace(
        name=name,
        resource_group=resource_group,
        tags={CORRELATION_TAG: value, "env": "prod"},
    )


class TestWorkspaceLocator:
    """Tests for WorkspaceLocator.locate()."""

    @pytest.mark.asyncio
    async def test_no_tagged_workspace(
        self, graph: MockResourceGraphClient, locator: WorkspaceLocator
    ) -> None:
        graph.add_workspace(_tagged("law-other", value="another-run"))

        assert await locator.locate(CORRELATION_ID) is None

    @pytest.mark.asyncio
    async def test_single_match(
        self, graph: MockResourceGraphClient, locator: WorkspaceLocator
    ) -> None:
        workspace = _tagged("law-sentinel")
        graph.add_workspace(workspace)

        found = await locator.locate(CORRELATION_ID)

        assert found is not None
        assert found.resource_id == workspace.resource_id
        assert found.name == "law-sentinel"
        assert found.tags[CORRELATION_TAG] == CORRELATION_ID

    @pytest.mark.asyncio
    async def test_prefers_configured_resource_group(
        self, graph: MockResourceGraphClient, locator: WorkspaceLocator
    ) -> None:
        graph.add_workspace(_tagged("law-elsewhere", resource_group="rg-other"))
        graph.add_workspace(_tagged("law-sentinel", resource_group="RG-Sentinel"))

        found = await locator.locate(CORRELATION_ID)

        assert found.name == "law-sentinel"

    @pytest.mark.asyncio
    async def test_first_match_outside_resource_group(
        self, graph: MockResourceGraphClient, locator: WorkspaceLocator
    ) -> None:
        graph.add_workspace(_tagged("law-a", resource_group="rg-a"))
        graph.add_workspace(_tagged("law-b", resource_group="rg-b"))

        found = await locator.locate(CORRELATION_ID)

        assert found.name == "law-a"

    @pytest.mark.asyncio
    async def test_query_shape(
        self, graph: MockResourceGraphClient, locator: WorkspaceLocator
    ) -> None:
        await locator.locate(CORRELATION_ID)

        query = graph.queries[0]
        assert "microsoft.operationalinsights/workspaces" in query
        assert f"tags['{CORRELATION_TAG}']" in query
        assert f"limit {MAX_GRAPH_QUERY_RESULTS}" in query

    @pytest.mark.asyncio
    async def test_query_failure_propagates(
        self, graph: MockResourceGraphClient, locator: WorkspaceLocator
    ) -> None:
        graph.set_failure("Forbidden")

        with pytest.raises(HttpResponseError, match="Forbidden"):
            await locator.locate(CORRELATION_ID)

    @pytest.mark.asyncio
    async def test_timeout_is_http_error(
        self, graph: MockResourceGraphClient, locator: WorkspaceLocator
    ) -> None:
        answer = graph.resources

        def slow_resources(request):
            time.sleep(0.3)
            return answer(request)

        graph.resources = slow_resources
        with patch("sentinel_orchestrator.resource_graph.MAX_GRAPH_QUERY_TIMEOUT_SECONDS", 0.05):
            with pytest.raises(HttpResponseError, match="timed out"):
                await locator.locate(CORRELATION_ID)

    def test_default_client_uses_credential(self, config: Config) -> None:
        credential = create_mock_credential()
        with patch("sentinel_orchestrator.resource_graph.ResourceGraphClient") as client_class:
            WorkspaceLocator(credential, config)

        client_class.assert_called_once_with(credential=credential)

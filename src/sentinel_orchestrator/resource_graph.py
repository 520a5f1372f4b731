"""Azure Resource Graph lookup of the target workspace.

PreflightProbe uses this to find a Log Analytics workspace tagged with the
deployment's correlation id. A tagged workspace means an earlier run (or
another pipeline) already provisioned it, so Infrastructure targets that
resource instead of the name declared in the deployment spec.

SECURITY:
- Query results are bounded to prevent OOM
- Correlation ids are pattern-validated before they reach KQL
"""

from __future__ import annotations

import asyncio
import logging
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

from .config import MAX_GRAPH_QUERY_RESULTS, MAX_GRAPH_QUERY_TIMEOUT_SECONDS, Config

logger = logging.getLogger(__name__)

CORRELATION_TAG = "deploymentCorrelationId"
WORKSPACE_TYPE = "microsoft.operationalinsights/workspaces"


@dataclass
class WorkspaceInfo:
    """A workspace row returned by Resource Graph.

    Attributes:
        resource_id: Full ARM resource ID
        name: Workspace name
        resource_group: Resource group name
        location: Azure region
        tags: Resource tags
    """

    resource_id: str
    name: str
    resource_group: str
    location: str
    tags: dict[str, str] | None = None


class WorkspaceLocator:
    """Finds workspaces by correlation tag through Resource Graph."""

    def __init__(
        self,
        credential: TokenCredential,
        config: Config,
        client: Any | None = None,
    ) -> None:
        self._config = config
        self._client = client if client is not None else ResourceGraphClient(credential=credential)

    async def locate(self, correlation_id: str) -> WorkspaceInfo | None:
        """Return the workspace tagged with correlation_id, or None.

        When several workspaces carry the tag, the one in the configured
        resource group wins; otherwise the first row is used and a warning
        is logged.

        Raises:
            HttpResponseError: If the query fails or times out.
        """
        query = f"""
        Resources
        | where type =~ '{WORKSPACE_TYPE}'
        | where tostring(tags['{CORRELATION_TAG}']) == '{correlation_id}'
        | project id, name, resourceGroup, location, tags
        | limit {MAX_GRAPH_QUERY_RESULTS}
        """

        rows = await self._execute_query(query.strip())
        workspaces = [
            WorkspaceInfo(
                resource_id=row.get("id", ""),
                name=row.get("name", ""),
                resource_group=row.get("resourceGroup", ""),
                location=row.get("location", ""),
                tags=row.get("tags"),
            )
            for row in rows
            if row.get("id")
        ]

        if not workspaces:
            logger.info(
                "No workspace tagged with correlation id",
                extra={"correlation_id": correlation_id},
            )
            return None

        preferred = [
            w
            for w in workspaces
            if w.resource_group.lower() == self._config.resource_group_name.lower()
        ]
        chosen = preferred[0] if preferred else workspaces[0]

        if len(workspaces) > 1:
            logger.warning(
                "Multiple workspaces carry the correlation tag",
                extra={
                    "correlation_id": correlation_id,
                    "candidates": [w.resource_id for w in workspaces],
                    "chosen": chosen.resource_id,
                },
            )

        logger.info(
            "Located workspace by correlation tag",
            extra={"correlation_id": correlation_id, "workspace_id": chosen.resource_id},
        )
        return chosen

    async def _execute_query(self, query: str) -> list[dict[str, Any]]:
        """Execute a Resource Graph query in the default executor with a timeout.

        Raises:
            HttpResponseError: If the query fails or times out.
        """
        request = QueryRequest(
            subscriptions=[self._config.subscription_id],
            query=query,
            options=QueryRequestOptions(
                result_format=ResultFormat.OBJECT_ARRAY,
                top=MAX_GRAPH_QUERY_RESULTS,
            ),
        )

        try:
            # Resource Graph client is synchronous, wrap in executor
            loop = asyncio.get_running_loop()
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

        if isinstance(response.data, list):
            return response.data
        return []

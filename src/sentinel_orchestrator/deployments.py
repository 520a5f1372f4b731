"""ARM template deployment at resource-group scope.

Templates are opaque: the deployer never inspects their content. Decision
flags from the preflight probe are passed as template parameters, and the
deployment outputs are flattened to plain values so later stages can consume
them (e.g. workspaceResourceId).
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any

from azure.core.credentials import TokenCredential
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
)

from .client import TransportError
from .config import MAX_DEPLOYMENT_NAME_LENGTH, Config

logger = logging.getLogger(__name__)

DEPLOYMENT_NAME_PREFIX = "sentinel"


@dataclass
class TemplateDeploymentResult:
    """Outcome of one template deployment.

    Attributes:
        deployment_name: ARM deployment name.
        provisioning_state: Final provisioning state reported by ARM.
        outputs: Template outputs flattened to {name: value}.
        duration_seconds: Wall-clock time of the deployment.
    """

    deployment_name: str
    provisioning_state: str
    outputs: dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.provisioning_state == "Succeeded"


def to_arm_parameters(values: dict[str, Any]) -> dict[str, Any]:
    """Wrap plain values in the ARM parameter shape {"name": {"value": v}}."""
    return {name: {"value": value} for name, value in values.items()}


def flatten_outputs(outputs: dict[str, Any] | None) -> dict[str, Any]:
    """Unwrap ARM outputs ({"name": {"type": t, "value": v}}) to {name: v}."""
    if not outputs:
        return {}
    return {
        name: (entry.get("value") if isinstance(entry, dict) else entry)
        for name, entry in outputs.items()
    }


def declared_parameters(template: dict[str, Any], values: dict[str, Any]) -> dict[str, Any]:
    """Keep only the values the template declares; ARM rejects undeclared parameters."""
    declared = template.get("parameters") or {}
    dropped = sorted(set(values) - set(declared))
    if dropped:
        logger.debug("Dropping undeclared template parameters", extra={"dropped": dropped})
    return {name: value for name, value in values.items() if name in declared}


def build_deployment_name(label: str) -> str:
    """Build a unique deployment name within the ARM length limit.

    Format: {prefix}-{label}-{timestamp}-{suffix}
    """
    timestamp = int(time.time())
    random_suffix = random.randint(1000, 9999)
    reserved_len = len(DEPLOYMENT_NAME_PREFIX) + 17
    truncated_label = label[: MAX_DEPLOYMENT_NAME_LENGTH - reserved_len]
    return f"{DEPLOYMENT_NAME_PREFIX}-{truncated_label}-{timestamp}-{random_suffix}"


class TemplateDeployer:
    """Runs incremental ARM deployments into the configured resource group."""

    def __init__(
        self,
        credential: TokenCredential,
        config: Config,
        client: Any | None = None,
    ) -> None:
        self._config = config
        self._client = (
            client
            if client is not None
            else ResourceManagementClient(credential, config.subscription_id)
        )

    async def deploy(
        self,
        template: dict[str, Any],
        parameters: dict[str, Any],
        label: str,
        resource_group_name: str | None = None,
    ) -> TemplateDeploymentResult:
        """Deploy a template and wait for completion.

        Args:
            template: Compiled ARM template (opaque).
            parameters: Plain parameter values.
            label: Short label embedded in the deployment name.
            resource_group_name: Target resource group (defaults to config).

        Returns:
            Result with the flattened outputs.

        Raises:
            HttpResponseError: If ARM rejects or fails the deployment.
            TransportError: If the deployment exceeds the configured timeout.
        """
        deployment_name = build_deployment_name(label)
        resource_group = resource_group_name or self._config.resource_group_name
        deployment = Deployment(
            properties=DeploymentProperties(
                template=template,
                parameters=to_arm_parameters(declared_parameters(template, parameters)),
                mode=DeploymentMode.INCREMENTAL,
            ),
        )

        logger.info(
            "Starting template deployment",
            extra={
                "deployment_name": deployment_name,
                "resource_group": resource_group,
                "parameters": sorted(parameters),
            },
        )

        start_time = time.monotonic()
        result = await self._execute_with_timeout(
            lambda: self._client.deployments.begin_create_or_update(
                resource_group,
                deployment_name,
                deployment,
            ),
            timeout_seconds=self._config.deployment_timeout_seconds,
            operation_name=f"Deployment {deployment_name}",
        )
        duration = time.monotonic() - start_time

        properties = getattr(result, "properties", None)
        state = getattr(properties, "provisioning_state", None) or "Succeeded"
        provisioning_state = str(getattr(state, "value", state))
        outputs = flatten_outputs(getattr(properties, "outputs", None))

        logger.info(
            "Template deployment complete",
            extra={
                "deployment_name": deployment_name,
                "provisioning_state": provisioning_state,
                "outputs": sorted(outputs),
                "duration_seconds": round(duration, 2),
            },
        )

        return TemplateDeploymentResult(
            deployment_name=deployment_name,
            provisioning_state=provisioning_state,
            outputs=outputs,
            duration_seconds=duration,
        )

    async def _execute_with_timeout(
        self,
        begin_operation: Any,
        timeout_seconds: int,
        operation_name: str,
    ) -> Any:
        """Start an SDK long-running operation and wait for its result.

        Raises:
            TransportError: If the operation exceeds timeout_seconds.
            HttpResponseError: If Azure returns an error.
        """
        loop = asyncio.get_running_loop()
        poller = await loop.run_in_executor(None, begin_operation)

        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, poller.result),
                timeout=timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(
                f"{operation_name} timed out",
                extra={"timeout_seconds": timeout_seconds},
            )
            raise TransportError(f"{operation_name} timed out after {timeout_seconds}s") from e

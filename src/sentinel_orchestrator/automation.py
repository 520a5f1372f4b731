"""Response automation (playbook) deployment.

The pipeline only depends on the ResponseAutomationDeployer interface:
target scope plus logical playbook names in, per-item provisioning state out.
TemplatePlaybookDeployer is the default implementation and deploys one
compiled template per playbook from {templates_dir}/playbooks/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from azure.core.exceptions import AzureError, HttpResponseError

from .client import TransportError
from .deployments import TemplateDeployer
from .spec_loader import SpecLoadError, load_playbook_template

logger = logging.getLogger(__name__)

# Template output carrying the playbook's managed identity
PRINCIPAL_ID_OUTPUT = "principalId"


@dataclass(frozen=True)
class PlaybookResult:
    """Provisioning result of one playbook."""

    name: str
    provisioning_state: str
    principal_id: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.provisioning_state == "Succeeded"


class ResponseAutomationDeployer(Protocol):
    """Deploys response automations into a resource group."""

    async def deploy(
        self,
        resource_group_name: str,
        names: list[str],
        parameters: dict[str, Any],
    ) -> list[PlaybookResult]: ...


class TemplatePlaybookDeployer:
    """Deploys each playbook from its compiled ARM template."""

    def __init__(self, templates_dir: Path, deployer: TemplateDeployer) -> None:
        self._templates_dir = templates_dir
        self._deployer = deployer

    async def deploy(
        self,
        resource_group_name: str,
        names: list[str],
        parameters: dict[str, Any],
    ) -> list[PlaybookResult]:
        """Deploy playbooks one by one; a failure is recorded and the loop continues."""
        results: list[PlaybookResult] = []
        for name in names:
            results.append(await self._deploy_one(resource_group_name, name, parameters))
        return results

    async def _deploy_one(
        self,
        resource_group_name: str,
        name: str,
        parameters: dict[str, Any],
    ) -> PlaybookResult:
        try:
            template = load_playbook_template(self._templates_dir, name)
        except SpecLoadError as e:
            logger.error("Playbook template unavailable", extra={"playbook": name, "error": str(e)})
            return PlaybookResult(name, "Failed", error=str(e))

        try:
            result = await self._deployer.deploy(
                template,
                {**parameters, "playbookName": name},
                label=f"pb-{name}",
                resource_group_name=resource_group_name,
            )
        except HttpResponseError as e:
            logger.error(
                "Playbook deployment failed",
                extra={"playbook": name, "status_code": e.status_code, "error": str(e)},
            )
            return PlaybookResult(name, "Failed", error=f"Azure API error ({e.status_code}): {e}")
        except (AzureError, TransportError) as e:
            logger.error("Playbook deployment failed", extra={"playbook": name, "error": str(e)})
            return PlaybookResult(name, "Failed", error=str(e))

        principal_id = result.outputs.get(PRINCIPAL_ID_OUTPUT)
        logger.info(
            "Playbook deployed",
            extra={
                "playbook": name,
                "provisioning_state": result.provisioning_state,
                "has_identity": bool(principal_id),
            },
        )
        return PlaybookResult(
            name,
            result.provisioning_state,
            principal_id=str(principal_id) if principal_id else None,
        )

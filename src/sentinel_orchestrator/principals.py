"""Principal discovery and idempotent role binding.

Automation rules run playbooks as the Azure Security Insights first-party
application, so its service principal needs a role on the playbooks'
resource group. This module:

1. Discovers that principal (override, then application id, then display name)
2. Binds roles with list-then-create so a principal never receives the same
   role twice at the same scope, however many times a run repeats

DISCOVERY IS NON-FATAL:
The Graph lookup needs directory read permission, which deploying identities
often lack. "Not found" is treated like a permission skip: the run continues
and a manual remediation command is logged.

ROLE ASSIGNMENT NAMES:
Names are uuid5 over scope + principal + role + purpose. Re-running with the
same inputs targets the same assignment resource.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.core.rest import HttpRequest

from .classifier import ReconcileStatus, classify
from .client import (
    MatchMode,
    RemoteResourceClient,
    ResourceReadError,
    ResourceRef,
    TransportError,
    build_pipeline_client,
    run_blocking,
)
from .config import DEFAULT_REQUEST_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

GRAPH_ENDPOINT = "https://graph.microsoft.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

SECURITY_INSIGHTS_APP_ID = "98785600-1bb7-4fb9-b9fa-19afe2c8a360"
SECURITY_INSIGHTS_DISPLAY_NAME = "Azure Security Insights"

ROLE_ASSIGNMENTS_KIND = "Microsoft.Authorization/roleAssignments"

VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"

# Namespace for deterministic role assignment names
ROLE_ASSIGNMENT_NAMESPACE = uuid.UUID("0b0f6a8e-3f4c-4d55-9a1e-6f2b7d0c9e11")

# Azure built-in roles have well-known GUIDs that are the same across all tenants
BUILTIN_ROLES: dict[str, str] = {
    "Owner": "8e3af657-a8ff-443c-a75c-2fe8c4bcb635",
    "Contributor": "b24988ac-6180-42a0-ab88-20f7382dd24c",
    "Reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
    "Logic App Contributor": "87a39d53-fc1b-424a-814c-f7e04687dc9e",
    "Log Analytics Contributor": "92aaf0da-9dab-42b6-94a3-d43ce8d16293",
    "Log Analytics Reader": "73c42c96-874c-492b-b04d-ab87d138a893",
    "Security Admin": "fb1c8493-542b-48eb-b624-b4c8fea62acd",
    "Security Reader": "39bc4728-0917-49c7-9d2c-d95423bc2eb4",
    "Microsoft Sentinel Automation Contributor": "f4c81013-99ee-4d62-a7ee-b3f1f648599a",
    "Microsoft Sentinel Contributor": "ab8e14d6-4a74-4a29-9ba8-549422addade",
    "Microsoft Sentinel Responder": "3e150937-b8fe-4cfb-8069-0eaf05ecd056",
    "Microsoft Sentinel Reader": "8d289c81-5878-46d4-8554-54e1e3d8b5cb",
}


class PrincipalSource(str, Enum):
    """Where a discovered principal id came from."""

    OVERRIDE = "Override"
    APPLICATION_ID = "ApplicationId"
    DISPLAY_NAME = "DisplayName"
    NOT_FOUND = "NotFound"


@dataclass(frozen=True)
class PrincipalLookup:
    """Result of principal discovery."""

    principal_id: str | None
    source: PrincipalSource

    @property
    def found(self) -> bool:
        return self.principal_id is not None


@dataclass(frozen=True)
class PrincipalBinding:
    """One desired (principal, role, scope) assignment."""

    principal_id: str
    role_id: str
    scope: str
    principal_type: str = "ServicePrincipal"
    purpose: str = ""


@dataclass(frozen=True)
class BindingOutcome:
    """Terminal result of ensuring one binding."""

    binding: PrincipalBinding
    status: ReconcileStatus
    detail: str = ""
    assignment_name: str | None = None

    @property
    def failed(self) -> bool:
        return self.status == ReconcileStatus.FAILED


def resolve_role_id(role: str) -> str:
    """Map a built-in role display name or a GUID to the role definition GUID.

    Raises:
        ValueError: If role is neither a known built-in role nor a GUID.
    """
    if role in BUILTIN_ROLES:
        return BUILTIN_ROLES[role]

    if not re.match(VALID_GUID_PATTERN, role.lower()):
        raise ValueError(
            f"Role '{role}' is not a recognized built-in role and is not a valid GUID. "
            f"Custom roles must be specified as GUIDs (xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx)."
        )
    return role.lower()


def role_definition_id(scope: str, role_id: str) -> str:
    """Subscription-qualified role definition ID for a scope."""
    match = re.match(r"^/subscriptions/([^/]+)", scope, re.IGNORECASE)
    if not match:
        raise ValueError(f"Scope is not beneath a subscription: {scope}")
    return (
        f"/subscriptions/{match.group(1)}/providers/Microsoft.Authorization"
        f"/roleDefinitions/{role_id}"
    )


def assignment_name(binding: PrincipalBinding) -> str:
    """Deterministic role assignment name for a binding."""
    key = ":".join(
        (
            binding.scope.lower().rstrip("/"),
            binding.principal_id.lower(),
            binding.role_id.lower(),
            binding.purpose,
        )
    )
    return str(uuid.uuid5(ROLE_ASSIGNMENT_NAMESPACE, key))


def remediation_hint(
    role_id: str, scope: str, assignee: str = SECURITY_INSIGHTS_APP_ID
) -> str:
    """Manual command an administrator can run to grant the role."""
    return (
        f"az role assignment create --assignee {assignee} "
        f"--role {role_id} --scope {scope}"
    )


class DirectoryClient:
    """Microsoft Graph service principal lookups."""

    def __init__(
        self,
        credential: TokenCredential | None = None,
        *,
        timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        pipeline_client: Any | None = None,
    ) -> None:
        if pipeline_client is None:
            if credential is None:
                raise ValueError("credential is required when no pipeline_client is supplied")
            pipeline_client = build_pipeline_client(credential, GRAPH_ENDPOINT, GRAPH_SCOPE)
        self._pipeline = pipeline_client
        self._timeout_seconds = timeout_seconds

    def find_service_principal(self, filter_expression: str) -> str | None:
        """Return the object id of the first service principal matching an OData filter.

        Directory errors are logged and reported as None.

        Raises:
            TransportError: On network failure or malformed body.
        """
        request = HttpRequest(
            "GET",
            f"{GRAPH_ENDPOINT}/v1.0/servicePrincipals",
            params={"$filter": filter_expression, "$select": "id,appId,displayName"},
        )
        try:
            response = self._pipeline.send_request(
                request,
                connection_timeout=self._timeout_seconds,
                read_timeout=self._timeout_seconds,
            )
        except (ServiceRequestError, ServiceResponseError) as e:
            raise TransportError(f"Directory lookup failed: {e}") from e

        if not 200 <= response.status_code < 300:
            logger.warning(
                "Directory lookup refused",
                extra={"filter": filter_expression, "status_code": response.status_code},
            )
            return None

        try:
            data = json.loads(response.text() or "{}")
        except json.JSONDecodeError as e:
            raise TransportError(f"Malformed directory response: {e}") from e

        for item in data.get("value") or []:
            if item.get("id"):
                return str(item["id"])
        return None


class PrincipalDiscovery:
    """Finds the Azure Security Insights service principal."""

    def __init__(self, directory: DirectoryClient) -> None:
        self._directory = directory

    def discover(self, override_id: str | None = None) -> PrincipalLookup:
        """Discover the principal id.

        Raises:
            TransportError: On network failure.
        """
        if override_id:
            logger.info("Using principal id override", extra={"principal_id": override_id})
            return PrincipalLookup(override_id, PrincipalSource.OVERRIDE)

        principal_id = self._directory.find_service_principal(
            f"appId eq '{SECURITY_INSIGHTS_APP_ID}'"
        )
        if principal_id:
            logger.info(
                "Discovered principal by application id",
                extra={"principal_id": principal_id},
            )
            return PrincipalLookup(principal_id, PrincipalSource.APPLICATION_ID)

        escaped = SECURITY_INSIGHTS_DISPLAY_NAME.replace("'", "''")
        principal_id = self._directory.find_service_principal(f"displayName eq '{escaped}'")
        if principal_id:
            logger.info(
                "Discovered principal by display name",
                extra={"principal_id": principal_id},
            )
            return PrincipalLookup(principal_id, PrincipalSource.DISPLAY_NAME)

        logger.warning(
            "Security Insights service principal not found",
            extra={"app_id": SECURITY_INSIGHTS_APP_ID},
        )
        return PrincipalLookup(None, PrincipalSource.NOT_FOUND)


class RoleBinder:
    """Creates role assignments only when no equivalent assignment exists."""

    def __init__(self, client: RemoteResourceClient) -> None:
        self._client = client

    def ensure_role_binding(self, binding: PrincipalBinding) -> BindingOutcome:
        """List existing assignments for the principal; create only if none match.

        An assignment of the same role at the scope or any parent scope counts
        as a match.

        Raises:
            TransportError: On network failure.
        """
        try:
            assignments = self._client.list(
                binding.scope,
                ROLE_ASSIGNMENTS_KIND,
                params={"$filter": f"principalId eq '{binding.principal_id}'"},
            )
        except ResourceReadError as e:
            return self._log(self._refused(binding, e.status_code, e.body_text, None))

        if any(self._matches(a, binding) for a in assignments):
            return self._log(
                BindingOutcome(
                    binding,
                    ReconcileStatus.SKIPPED_EXISTS,
                    "Role assignment already present at scope",
                )
            )

        name = assignment_name(binding)
        ref = ResourceRef(binding.scope, ROLE_ASSIGNMENTS_KIND, name)
        payload = {
            "properties": {
                "roleDefinitionId": role_definition_id(binding.scope, binding.role_id),
                "principalId": binding.principal_id,
                "principalType": binding.principal_type,
                "description": f"Managed by sentinel-orchestrator ({binding.purpose or 'binding'})",
            }
        }
        result = self._client.put(ref, payload, match_mode=MatchMode.NONE)

        if result.success:
            return self._log(
                BindingOutcome(
                    binding, ReconcileStatus.CONFIGURED, f"HTTP {result.http_status}", name
                )
            )
        return self._log(self._refused(binding, result.http_status, result.body_text, name))

    async def ensure_all(
        self,
        bindings: list[PrincipalBinding],
        *,
        max_workers: int,
        timeout_seconds: float,
    ) -> list[BindingOutcome]:
        """Ensure bindings across a bounded pool, preserving input order.

        Duplicate bindings in the input are collapsed before dispatch.
        """
        unique = list(dict.fromkeys(bindings))
        semaphore = asyncio.Semaphore(max_workers)

        async def ensure_one(binding: PrincipalBinding) -> BindingOutcome:
            async with semaphore:
                try:
                    return await run_blocking(
                        lambda: self.ensure_role_binding(binding),
                        timeout_seconds,
                        f"Role binding {binding.role_id}",
                    )
                except TransportError as e:
                    return self._log(BindingOutcome(binding, ReconcileStatus.FAILED, str(e)))

        return list(await asyncio.gather(*(ensure_one(b) for b in unique)))

    @staticmethod
    def _matches(assignment: dict[str, Any], binding: PrincipalBinding) -> bool:
        properties = assignment.get("properties") or {}
        if str(properties.get("principalId", "")).lower() != binding.principal_id.lower():
            return False
        definition = str(properties.get("roleDefinitionId", "")).lower()
        if not definition.endswith("/" + binding.role_id.lower()):
            return False
        assigned_scope = str(properties.get("scope", "")).lower().rstrip("/")
        target_scope = binding.scope.lower().rstrip("/")
        return (
            assigned_scope == target_scope
            or assigned_scope == ""
            or target_scope.startswith(assigned_scope + "/")
        )

    @staticmethod
    def _refused(
        binding: PrincipalBinding,
        status_code: int,
        body_text: str,
        name: str | None,
    ) -> BindingOutcome:
        if status_code == 403:
            hint = remediation_hint(binding.role_id, binding.scope, binding.principal_id)
            return BindingOutcome(
                binding,
                ReconcileStatus.SKIPPED_PERMISSION,
                f"Not authorized to manage role assignments at scope (HTTP 403). "
                f"Remediate with: {hint}",
                name,
            )
        if status_code == 409 and "roleassignmentexists" in (body_text or "").lower():
            return BindingOutcome(
                binding,
                ReconcileStatus.SKIPPED_EXISTS,
                "Role assignment already exists (HTTP 409)",
                name,
            )
        classification = classify(status_code, body_text)
        return BindingOutcome(binding, classification.status, classification.detail, name)

    @staticmethod
    def _log(outcome: BindingOutcome) -> BindingOutcome:
        extra = {
            "principal_id": outcome.binding.principal_id,
            "role_id": outcome.binding.role_id,
            "scope": outcome.binding.scope,
            "status": outcome.status.value,
            "reason": outcome.detail,
        }
        if outcome.failed:
            logger.error("Role binding failed", extra=extra)
        elif outcome.status == ReconcileStatus.CONFIGURED:
            logger.info("Role binding created", extra=extra)
        else:
            logger.warning("Role binding skipped", extra=extra)
        return outcome

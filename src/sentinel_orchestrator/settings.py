"""Catalog of workspace settings and data connectors.

Translates the deployment spec into an ordered list of DesiredSetting
records. The same catalog serves two callers:

- PreflightProbe probes every catalog ref to learn what already exists.
- Infrastructure reconciles the catalog built with those existence flags.

Order matters: UEBA requires Entity Analytics, so it always follows it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from .client import ResourceRef
from .config import SettingKind
from .models import DeploymentSpec
from .reconciler import DesiredSetting

SETTINGS_KIND = "Microsoft.SecurityInsights/settings"
DATA_CONNECTORS_KIND = "Microsoft.SecurityInsights/dataConnectors"
DIAGNOSTIC_SETTINGS_KIND = "Microsoft.Insights/diagnosticSettings"

WORKSPACE_DIAGNOSTIC_SETTING_NAME = "sentinel-workspace-audit"

# Namespace for deterministic connector names
CONNECTOR_NAMESPACE = uuid.UUID("6c1f3f0e-5b7c-4bb8-9a52-0f3e0d9d2c41")

# Data types enabled per connector kind
CONNECTOR_DATA_TYPES: dict[str, dict[str, Any]] = {
    "AzureActiveDirectory": {"alerts": {"state": "Enabled"}},
    "AzureAdvancedThreatProtection": {"alerts": {"state": "Enabled"}},
    "AzureSecurityCenter": {"alerts": {"state": "Enabled"}},
    "MicrosoftCloudAppSecurity": {
        "alerts": {"state": "Enabled"},
        "discoveryLogs": {"state": "Disabled"},
    },
    "MicrosoftDefenderAdvancedThreatProtection": {"alerts": {"state": "Enabled"}},
    "MicrosoftThreatIntelligence": {
        "microsoftEmergingThreatFeed": {"lookbackPeriod": "1970-01-01T00:00:00.000Z"},
    },
    "MicrosoftThreatProtection": {"incidents": {"state": "Enabled"}},
    "Office365": {
        "exchange": {"state": "Enabled"},
        "sharePoint": {"state": "Enabled"},
        "teams": {"state": "Enabled"},
    },
}


@dataclass(frozen=True)
class CatalogEntry:
    """A known setting before policy and existence flags are applied."""

    kind: SettingKind
    ref: ResourceRef
    payload: dict[str, Any]
    enabled: bool


def connector_name(workspace_id: str, connector_kind: str) -> str:
    """Deterministic data connector name for a workspace and connector kind."""
    return str(uuid.uuid5(CONNECTOR_NAMESPACE, f"{workspace_id.lower()}:{connector_kind}"))


def _connector_payload(connector_kind: str, tenant_id: str | None) -> dict[str, Any]:
    properties: dict[str, Any] = {"dataTypes": CONNECTOR_DATA_TYPES[connector_kind]}
    if tenant_id:
        properties["tenantId"] = tenant_id
    return {"kind": connector_kind, "properties": properties}


def catalog(spec: DeploymentSpec, workspace_id: str) -> list[CatalogEntry]:
    """All settings the deployment spec knows about, in reconcile order."""
    s = spec.settings
    entries = [
        CatalogEntry(
            kind=SettingKind.ENTITY_ANALYTICS,
            ref=ResourceRef(workspace_id, SETTINGS_KIND, "EntityAnalytics"),
            payload={
                "kind": "EntityAnalytics",
                "properties": {"entityProviders": list(s.entity_providers)},
            },
            enabled=s.entity_analytics,
        ),
        CatalogEntry(
            kind=SettingKind.UEBA,
            ref=ResourceRef(workspace_id, SETTINGS_KIND, "Ueba"),
            payload={"kind": "Ueba", "properties": {"dataSources": list(s.ueba_data_sources)}},
            enabled=s.ueba,
        ),
        CatalogEntry(
            kind=SettingKind.ANOMALIES,
            ref=ResourceRef(workspace_id, SETTINGS_KIND, "Anomalies"),
            payload={"kind": "Anomalies", "properties": {}},
            enabled=s.anomalies,
        ),
        CatalogEntry(
            kind=SettingKind.DIAGNOSTIC_SETTING,
            ref=ResourceRef(workspace_id, DIAGNOSTIC_SETTINGS_KIND, WORKSPACE_DIAGNOSTIC_SETTING_NAME),
            payload={
                "properties": {
                    "workspaceId": workspace_id,
                    "logs": [{"categoryGroup": "audit", "enabled": True}],
                    "metrics": [{"category": "AllMetrics", "enabled": False}],
                }
            },
            enabled=s.diagnostic_settings,
        ),
    ]

    for connector_kind in s.data_connectors:
        entries.append(
            CatalogEntry(
                kind=SettingKind.DATA_CONNECTOR,
                ref=ResourceRef(
                    workspace_id, DATA_CONNECTORS_KIND, connector_name(workspace_id, connector_kind)
                ),
                payload=_connector_payload(connector_kind, spec.overrides.tenant_id),
                enabled=True,
            )
        )

    return entries


def build_desired_settings(
    spec: DeploymentSpec,
    workspace_id: str,
    existing_paths: frozenset[str] = frozenset(),
    *,
    deploy_data_connectors: bool = True,
    kinds: frozenset[SettingKind] | None = None,
) -> list[DesiredSetting]:
    """Build the desired settings for one Infrastructure attempt.

    Args:
        spec: Deployment spec.
        workspace_id: ARM ID of the target workspace.
        existing_paths: Resource paths found by the preflight probe; those
            settings are flagged skip-if-exists.
        deploy_data_connectors: False disables every data connector by policy.
        kinds: Restrict the result to these kinds (None keeps all).
    """
    settings: list[DesiredSetting] = []
    for entry in catalog(spec, workspace_id):
        if kinds is not None and entry.kind not in kinds:
            continue
        enabled = entry.enabled
        if entry.kind == SettingKind.DATA_CONNECTOR and not deploy_data_connectors:
            enabled = False
        settings.append(
            DesiredSetting(
                ref=entry.ref,
                kind=entry.kind,
                payload=entry.payload,
                enabled_by_policy=enabled,
                skip_if_exists=entry.ref.path in existing_paths,
            )
        )
    return settings

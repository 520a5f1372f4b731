"""Pydantic models for the deployment spec and the rule manifest.

These models provide:
1. Type-safe YAML/JSON parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Normalization of shorthand values (durations, trigger operators)
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

# =============================================================================
# Value normalization
# =============================================================================

ISO8601_DURATION_PATTERN = r"^P(?!$)(\d+D)?(T(?=\d)(\d+H)?(\d+M)?(\d+S)?)?$"
SHORTHAND_DURATION_PATTERN = r"^(\d+)([mhd])$"

TRIGGER_OPERATORS: dict[str, str] = {
    "gt": "GreaterThan",
    "lt": "LessThan",
    "eq": "Equal",
    "ne": "NotEqual",
}
VALID_TRIGGER_OPERATORS = frozenset(TRIGGER_OPERATORS.values())
VALID_SEVERITIES = frozenset({"Informational", "Low", "Medium", "High"})

# Correlation ids end up in resource tags and KQL filters
VALID_CORRELATION_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$"


def to_iso8601_duration(value: str) -> str:
    """Normalize a duration to ISO 8601 ("5m" -> "PT5M", "1d" -> "P1D").

    Raises:
        ValueError: If the value is neither ISO 8601 nor shorthand.
    """
    text = str(value).strip()
    if re.match(ISO8601_DURATION_PATTERN, text):
        return text
    match = re.match(SHORTHAND_DURATION_PATTERN, text)
    if not match:
        raise ValueError(f"Cannot parse duration '{value}'")
    amount, unit = match.groups()
    return {"m": f"PT{amount}M", "h": f"PT{amount}H", "d": f"P{amount}D"}[unit]


def to_trigger_operator(value: str) -> str:
    """Normalize a trigger operator ("gt" -> "GreaterThan")."""
    text = str(value).strip()
    operator = TRIGGER_OPERATORS.get(text.lower(), text)
    if operator not in VALID_TRIGGER_OPERATORS:
        raise ValueError(f"triggerOperator must be one of {sorted(VALID_TRIGGER_OPERATORS)}")
    return operator


# =============================================================================
# Rule manifest
# =============================================================================


class RuleKind(str, Enum):
    """Analytics rule kinds supported by the bulk deployer."""

    SCHEDULED = "Scheduled"
    NRT = "NRT"


class RuleDefinition(BaseModel):
    """One declarative detection rule from the manifest.

    Schedule fields only apply to Scheduled rules; NRT rules are evaluated in
    near-real time and never carry them.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: Annotated[str, Field(min_length=1, max_length=128)]
    name: str = Field(validation_alias=AliasChoices("name", "displayName"))
    kind: RuleKind = RuleKind.SCHEDULED
    enabled: bool = True
    severity: str = "Medium"
    query: Annotated[str, Field(min_length=1)]
    description: str = ""

    # Scheduled only
    query_frequency: str | None = Field(None, alias="queryFrequency")
    query_period: str | None = Field(None, alias="queryPeriod")
    trigger_operator: str | None = Field(None, alias="triggerOperator")
    trigger_threshold: int | None = Field(None, alias="triggerThreshold", ge=0)

    tactics: list[str] = Field(default_factory=list)
    techniques: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("techniques", "relevantTechniques"),
    )
    entity_mappings: list[dict[str, Any]] | None = Field(None, alias="entityMappings")

    @field_validator("severity")
    @classmethod
    def validate_severity(cls, v: str) -> str:
        normalized = v.strip().capitalize()
        if normalized not in VALID_SEVERITIES:
            raise ValueError(f"severity must be one of {sorted(VALID_SEVERITIES)}")
        return normalized

    @field_validator("query_frequency", "query_period")
    @classmethod
    def normalize_duration(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return to_iso8601_duration(v)

    @field_validator("trigger_operator")
    @classmethod
    def normalize_operator(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return to_trigger_operator(v)


class RuleManifest(BaseModel):
    """Manifest document listing rule definitions.

    Rules are kept as raw mappings so a single malformed rule is reported as
    an error for that rule instead of rejecting the whole manifest.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    rule_count: int | None = Field(None, alias="ruleCount", ge=0)
    rules: list[dict[str, Any]]


# =============================================================================
# Deployment spec
# =============================================================================

# Data connector kinds the settings catalog knows how to build
KNOWN_DATA_CONNECTORS = frozenset(
    {
        "AzureActiveDirectory",
        "AzureAdvancedThreatProtection",
        "AzureSecurityCenter",
        "MicrosoftCloudAppSecurity",
        "MicrosoftDefenderAdvancedThreatProtection",
        "MicrosoftThreatIntelligence",
        "MicrosoftThreatProtection",
        "Office365",
    }
)


class WorkspaceConfig(BaseModel):
    """Log Analytics workspace targeted by the deployment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=4, max_length=63)]
    resource_group: str | None = Field(None, alias="resourceGroup")


class SettingsConfig(BaseModel):
    """Which workspace settings and connectors are desired."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    entity_analytics: bool = Field(True, alias="entityAnalytics")
    entity_providers: list[str] = Field(
        default_factory=lambda: ["AzureActiveDirectory"], alias="entityProviders"
    )
    ueba: bool = True
    ueba_data_sources: list[str] = Field(
        default_factory=lambda: ["AuditLogs", "AzureActivity", "SecurityEvent", "SigninLogs"],
        alias="uebaDataSources",
    )
    anomalies: bool = True
    diagnostic_settings: bool = Field(True, alias="diagnosticSettings")
    data_connectors: list[str] = Field(default_factory=list, alias="dataConnectors")

    @field_validator("data_connectors")
    @classmethod
    def validate_data_connectors(cls, v: list[str]) -> list[str]:
        unknown = [c for c in v if c not in KNOWN_DATA_CONNECTORS]
        if unknown:
            raise ValueError(
                f"Unknown data connectors {unknown}; valid: {sorted(KNOWN_DATA_CONNECTORS)}"
            )
        if len(set(v)) != len(v):
            raise ValueError("dataConnectors must not contain duplicates")
        return v


class AutomationConfig(BaseModel):
    """Response automations (playbooks) deployed by ResponseAutomations."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    playbooks: list[str] = Field(default_factory=list)
    bind_identities: bool = Field(True, alias="bindPlaybookIdentities")


class WorkbookConfig(BaseModel):
    """Workbook published by the Content stage."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=64)]
    display_name: str = Field(alias="displayName")
    file: str

    @field_validator("file")
    @classmethod
    def validate_relative_path(cls, v: str) -> str:
        if v.startswith("/") or ".." in v.split("/"):
            raise ValueError("workbook file must be a relative path inside the workbooks directory")
        return v


class OverridesConfig(BaseModel):
    """Caller overrides for principal discovery, role ids and stage flags."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    principal_id: str | None = Field(None, alias="principalId")
    automation_role: str = Field(
        "Microsoft Sentinel Automation Contributor", alias="automationRole"
    )
    playbook_role: str = Field("Microsoft Sentinel Responder", alias="playbookRole")
    deploy_data_connectors: bool = Field(True, alias="deployDataConnectors")
    tenant_id: str | None = Field(None, alias="tenantId")


class DeploymentSpec(BaseModel):
    """Deployment request handed to the stage pipeline."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    correlation_id: str = Field(alias="correlationId")
    workspace: WorkspaceConfig
    manifest_url: str | None = Field(None, alias="manifestUrl")
    infrastructure_template: str | None = Field(None, alias="infrastructureTemplate")
    template_parameters: dict[str, Any] = Field(default_factory=dict, alias="templateParameters")
    settings: SettingsConfig = Field(default_factory=SettingsConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)
    workbooks: list[WorkbookConfig] = Field(default_factory=list)
    overrides: OverridesConfig = Field(default_factory=OverridesConfig)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("correlation_id")
    @classmethod
    def validate_correlation_id(cls, v: str) -> str:
        if not re.match(VALID_CORRELATION_ID_PATTERN, v):
            raise ValueError(f"correlationId must match {VALID_CORRELATION_ID_PATTERN}")
        return v

    @field_validator("manifest_url")
    @classmethod
    def validate_manifest_url(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith(("https://", "http://")):
            raise ValueError("manifestUrl must be an http(s) URL")
        return v

    def workspace_resource_id(self, subscription_id: str, default_resource_group: str) -> str:
        """ARM ID of the workspace as declared by the deployment spec."""
        resource_group = self.workspace.resource_group or default_resource_group
        return (
            f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.OperationalInsights/workspaces/{self.workspace.name}"
        )

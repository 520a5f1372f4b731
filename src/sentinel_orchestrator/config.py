"""Configuration management with validation.

Configuration is read once from environment variables at startup and is
immutable afterwards. Invalid values fail fast with every problem listed,
rather than surfacing halfway through a deployment.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class RunMode(str, Enum):
    """Which stage plan the entry point runs."""

    FULL = "full"
    FINALIZE = "finalize"


class CredentialMode(str, Enum):
    """How the authenticated credential is obtained."""

    MANAGED_IDENTITY = "managed_identity"
    CLI = "cli"


class SettingKind(str, Enum):
    """Kinds of workspace settings reconciled by the Infrastructure stage."""

    ENTITY_ANALYTICS = "EntityAnalytics"
    UEBA = "Ueba"
    ANOMALIES = "Anomalies"
    DIAGNOSTIC_SETTING = "DiagnosticSetting"
    DATA_CONNECTOR = "DataConnector"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
MIN_REQUEST_TIMEOUT_SECONDS = 5
MAX_REQUEST_TIMEOUT_SECONDS = 600

DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS = 1800
MAX_DEPLOYMENT_TIMEOUT_SECONDS = 7200

DEFAULT_RULE_WORKERS = 4
MAX_RULE_WORKERS = 16

# File size limits enforced by the spec loader
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max deployment spec
MAX_TEMPLATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max ARM template or workbook
MAX_MANIFEST_SIZE_BYTES = 20 * 1024 * 1024  # 20MB max rule manifest

# Resource Graph bounds
MAX_GRAPH_QUERY_RESULTS = 100
MAX_GRAPH_QUERY_TIMEOUT_SECONDS = 60

MAX_DEPLOYMENT_NAME_LENGTH = 64
MAX_RESOURCE_GROUP_NAME_LENGTH = 90

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"


@dataclass(frozen=True)
class Config:
    """Orchestrator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    subscription_id: str
    location: str
    resource_group_name: str

    # Paths
    spec_path: Path = field(default_factory=lambda: Path("/specs/sentinel.yaml"))
    templates_dir: Path = field(default_factory=lambda: Path("/templates"))

    # Timing
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    deployment_timeout_seconds: int = DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS

    # Behavior
    max_rule_workers: int = DEFAULT_RULE_WORKERS
    run_mode: RunMode = RunMode.FULL

    # Setting kinds re-attempted by FinalizeAutomationRoles after a permission skip.
    # Kinds not listed are best-effort: a permission skip is final for the run.
    finalize_retry_kinds: frozenset[SettingKind] = frozenset()

    # Credentials
    credential_mode: CredentialMode = CredentialMode.MANAGED_IDENTITY
    managed_identity_client_id: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not self.resource_group_name:
            errors.append("RESOURCE_GROUP_NAME is required")
        elif len(self.resource_group_name) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"RESOURCE_GROUP_NAME exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )

        if not (
            MIN_REQUEST_TIMEOUT_SECONDS
            <= self.request_timeout_seconds
            <= MAX_REQUEST_TIMEOUT_SECONDS
        ):
            errors.append(
                f"REQUEST_TIMEOUT must be between {MIN_REQUEST_TIMEOUT_SECONDS} "
                f"and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.deployment_timeout_seconds <= MAX_DEPLOYMENT_TIMEOUT_SECONDS):
            errors.append(
                f"DEPLOYMENT_TIMEOUT must be between 1 and {MAX_DEPLOYMENT_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.max_rule_workers <= MAX_RULE_WORKERS):
            errors.append(f"RULE_WORKERS must be between 1 and {MAX_RULE_WORKERS}")

        if not self.spec_path.exists():
            errors.append(f"Deployment spec does not exist: {self.spec_path}")

        if not self.templates_dir.exists():
            errors.append(f"Templates directory does not exist: {self.templates_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def resource_group_id(self) -> str:
        """ARM resource ID of the target resource group."""
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group_name}"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_LOCATION: Default deployment location
            RESOURCE_GROUP_NAME: Resource group holding the workspace
            DEPLOYMENT_SPEC: Path to the YAML deployment spec
                (default: /specs/sentinel.yaml)
            TEMPLATES_DIR: Path to compiled ARM templates, playbooks and
                workbooks (default: /templates)
            REQUEST_TIMEOUT: Per-request timeout in seconds (default: 60)
            DEPLOYMENT_TIMEOUT: Timeout for ARM deployments in seconds (default: 1800)
            RULE_WORKERS: Concurrent rule deployments (default: 4)
            RUN_MODE: full or finalize (default: full)
            FINALIZE_RETRY_SETTING_KINDS: Comma-separated setting kinds that
                FinalizeAutomationRoles re-attempts (default: none)
            CREDENTIAL_MODE: managed_identity or cli (default: managed_identity)
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_enum(key: str, enum_cls: type[Enum], default: Enum) -> Enum:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return enum_cls(value)
            except ValueError as e:
                valid = [m.value for m in enum_cls]
                raise ConfigurationError(f"{key} must be one of {valid}: {value}") from e

        def get_kinds(key: str) -> frozenset[SettingKind]:
            value = os.environ.get(key, "")
            kinds: set[SettingKind] = set()
            for item in (part.strip() for part in value.split(",")):
                if not item:
                    continue
                try:
                    kinds.add(SettingKind(item))
                except ValueError as e:
                    valid = [k.value for k in SettingKind]
                    raise ConfigurationError(f"{key} entries must be one of {valid}: {item}") from e
            return frozenset(kinds)

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            resource_group_name=os.environ.get("RESOURCE_GROUP_NAME", ""),
            spec_path=Path(os.environ.get("DEPLOYMENT_SPEC", "/specs/sentinel.yaml")),
            templates_dir=Path(os.environ.get("TEMPLATES_DIR", "/templates")),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            deployment_timeout_seconds=get_int(
                "DEPLOYMENT_TIMEOUT", DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS
            ),
            max_rule_workers=get_int("RULE_WORKERS", DEFAULT_RULE_WORKERS),
            run_mode=get_enum("RUN_MODE", RunMode, RunMode.FULL),  # type: ignore[arg-type]
            finalize_retry_kinds=get_kinds("FINALIZE_RETRY_SETTING_KINDS"),
            credential_mode=get_enum(  # type: ignore[arg-type]
                "CREDENTIAL_MODE", CredentialMode, CredentialMode.MANAGED_IDENTITY
            ),
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
        )

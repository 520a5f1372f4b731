"""Pytest configuration and fixtures."""

import json
import sys
from pathlib import Path

import pytest
import yaml

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from sentinel_orchestrator.config import Config  # noqa: E402

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"
RESOURCE_GROUP = "rg-sentinel"
WORKSPACE_NAME = "law-sentinel"
WORKSPACE_ID = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{RESOURCE_GROUP}"
    f"/providers/Microsoft.OperationalInsights/workspaces/{WORKSPACE_NAME}"
)

INFRA_TEMPLATE = {
    "$schema": "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#",
    "contentVersion": "1.0.0.0",
    "parameters": {
        "workspaceName": {"type": "string"},
        "location": {"type": "string"},
        "correlationId": {"type": "string"},
        "tags": {"type": "object"},
        "deployDataConnectors": {"type": "bool"},
        "skipEntityAnalytics": {"type": "bool"},
        "skipUeba": {"type": "bool"},
        "skipAnomalies": {"type": "bool"},
        "skipDiagnosticSetting": {"type": "bool"},
        "skipDataConnector": {"type": "bool"},
        "retentionInDays": {"type": "int", "defaultValue": 90},
    },
    "resources": [],
    "outputs": {"workspaceResourceId": {"type": "string", "value": "[resourceId(...)]"}},
}

PLAYBOOK_TEMPLATE = {
    "$schema": "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#",
    "contentVersion": "1.0.0.0",
    "parameters": {
        "playbookName": {"type": "string"},
        "workspaceResourceId": {"type": "string"},
        "location": {"type": "string"},
    },
    "resources": [],
    "outputs": {"principalId": {"type": "string", "value": "[reference(...)]"}},
}

WORKBOOK = {"version": "Notebook/1.0", "items": [{"type": 1, "content": {"json": "# Overview"}}]}


@pytest.fixture
def templates_dir(tmp_path: Path) -> Path:
    """Templates directory with an infrastructure template, one playbook and one workbook."""
    root = tmp_path / "templates"
    (root / "playbooks").mkdir(parents=True)
    (root / "workbooks").mkdir()
    (root / "infra.json").write_text(json.dumps(INFRA_TEMPLATE))
    (root / "playbooks" / "Isolate-Host.json").write_text(json.dumps(PLAYBOOK_TEMPLATE))
    (root / "workbooks" / "overview.json").write_text(json.dumps(WORKBOOK))
    return root


@pytest.fixture
def spec_data() -> dict:
    """Minimal valid deployment spec document."""
    return {
        "correlationId": "sentinel-prod-001",
        "workspace": {"name": WORKSPACE_NAME, "resourceGroup": RESOURCE_GROUP},
    }


@pytest.fixture
def spec_file(tmp_path: Path, spec_data: dict) -> Path:
    path = tmp_path / "sentinel.yaml"
    path.write_text(yaml.safe_dump(spec_data))
    return path


@pytest.fixture
def config(spec_file: Path, templates_dir: Path) -> Config:
    return Config(
        subscription_id=SUBSCRIPTION_ID,
        location="westeurope",
        resource_group_name=RESOURCE_GROUP,
        spec_path=spec_file,
        templates_dir=templates_dir,
        request_timeout_seconds=10,
        deployment_timeout_seconds=10,
    )


@pytest.fixture
def workspace_id() -> str:
    return WORKSPACE_ID

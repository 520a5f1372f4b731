"""Tests for spec and template loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from sentinel_orchestrator.config import MAX_SPEC_FILE_SIZE_BYTES
from sentinel_orchestrator.spec_loader import (
    SpecLoadError,
    load_json_document,
    load_playbook_template,
    load_spec,
    load_template,
    load_workbook,
)


class TestLoadSpec:
    """Tests for load_spec()."""

    def test_flat_document(self, spec_file: Path) -> None:
        spec = load_spec(spec_file)

        assert spec.correlation_id == "sentinel-prod-001"
        assert spec.workspace.name == "law-sentinel"

    def test_kubernetes_style_wrapper(self, tmp_path: Path) -> None:
        path = tmp_path / "wrapped.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "apiVersion": "sentinel-orchestrator/v1",
                    "kind": "SentinelDeployment",
                    "metadata": {"name": "prod"},
                    "spec": {
                        "correlationId": "wrapped-1",
                        "workspace": {"name": "law-wrapped"},
                        "settings": {"dataConnectors": ["Office365"]},
                    },
                }
            )
        )

        spec = load_spec(path)

        assert spec.correlation_id == "wrapped-1"
        assert spec.settings.data_connectors == ["Office365"]

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError, match="not found"):
            load_spec(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("correlationId: [unclosed\n")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_spec(path)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(SpecLoadError, match="mapping"):
            load_spec(path)

    def test_validation_errors_name_fields(self, tmp_path: Path) -> None:
        path = tmp_path / "invalid.yaml"
        path.write_text(yaml.safe_dump({"correlationId": "ok", "workspace": {}}))

        with pytest.raises(SpecLoadError) as exc_info:
            load_spec(path)

        assert "workspace.name" in str(exc_info.value)

    def test_oversized_file(self, tmp_path: Path) -> None:
        path = tmp_path / "huge.yaml"
        path.write_text("#" * (MAX_SPEC_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError, match="maximum size"):
            load_spec(path)


class TestTemplates:
    """Tests for template, playbook and workbook loading."""

    def test_load_template_appends_extension(self, templates_dir: Path) -> None:
        template = load_template(templates_dir, "infra")

        assert "deployDataConnectors" in template["parameters"]

    def test_load_playbook_template(self, templates_dir: Path) -> None:
        template = load_playbook_template(templates_dir, "Isolate-Host")

        assert "principalId" in template["outputs"]

    def test_load_workbook(self, templates_dir: Path) -> None:
        assert load_workbook(templates_dir, "overview.json")["version"] == "Notebook/1.0"

    def test_path_escape_rejected(self, templates_dir: Path, tmp_path: Path) -> None:
        (tmp_path / "outside.json").write_text("{}")

        with pytest.raises(SpecLoadError, match="escapes"):
            load_json_document(templates_dir, "../outside.json")

    def test_invalid_json(self, templates_dir: Path) -> None:
        (templates_dir / "broken.json").write_text("{")

        with pytest.raises(SpecLoadError, match="Invalid JSON"):
            load_template(templates_dir, "broken")

    def test_non_object(self, templates_dir: Path) -> None:
        (templates_dir / "array.json").write_text(json.dumps([1, 2]))

        with pytest.raises(SpecLoadError, match="JSON object"):
            load_template(templates_dir, "array.json")

    def test_missing_playbook(self, templates_dir: Path) -> None:
        with pytest.raises(SpecLoadError, match="not found"):
            load_playbook_template(templates_dir, "Unknown")

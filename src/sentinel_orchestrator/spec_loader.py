"""Deployment spec and template loading with validation.

SECURITY: All file operations enforce size limits, and template lookups are
confined to the templates directory. Input validation is performed at the
boundary.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES, MAX_TEMPLATE_FILE_SIZE_BYTES
from .models import DeploymentSpec

logger = logging.getLogger(__name__)

# Sub-directories of the templates directory
PLAYBOOKS_SUBDIR = "playbooks"
WORKBOOKS_SUBDIR = "workbooks"


class SpecLoadError(Exception):
    """Raised when spec or template loading or validation fails."""

    pass


def format_validation_error(error: ValidationError, source: str) -> str:
    """Render pydantic errors as one line per failing field."""
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {source}:\n" + "\n".join(errors)


def _read_bounded(path: Path, max_bytes: int, what: str) -> str:
    if not path.exists():
        raise SpecLoadError(f"{what} not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {what.lower()} {path}: {e}") from e

    if file_size > max_bytes:
        raise SpecLoadError(f"{what} exceeds maximum size of {max_bytes} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {what.lower()} {path}: {e}") from e


def load_spec(spec_path: Path) -> DeploymentSpec:
    """Load and validate the deployment spec from YAML.

    Both a flat document and a Kubernetes-style wrapper
    (apiVersion/kind/metadata/spec) are accepted.

    Raises:
        SpecLoadError: If the deployment spec cannot be loaded or fails validation.
    """
    content = _read_bounded(spec_path, MAX_SPEC_FILE_SIZE_BYTES, "Spec file")

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    try:
        spec = DeploymentSpec.model_validate(spec_data)
    except ValidationError as e:
        raise SpecLoadError(format_validation_error(e, str(spec_path))) from e

    logger.info(
        "Loaded deployment spec from %s",
        spec_path,
        extra={"correlation_id": spec.correlation_id, "workspace": spec.workspace.name},
    )
    return spec


def load_json_document(templates_dir: Path, relative_path: str) -> dict[str, Any]:
    """Load a JSON document (ARM template, playbook or workbook) from the templates directory.

    Raises:
        SpecLoadError: If the path escapes templates_dir, or the file is
            missing, too large or not a JSON object.
    """
    root = templates_dir.resolve()
    path = (templates_dir / relative_path).resolve()
    if root != path and root not in path.parents:
        raise SpecLoadError(f"Template path escapes templates directory: {relative_path}")

    content = _read_bounded(path, MAX_TEMPLATE_FILE_SIZE_BYTES, "Template file")

    try:
        document = json.loads(content)
    except json.JSONDecodeError as e:
        raise SpecLoadError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(document, dict):
        raise SpecLoadError(f"Template must be a JSON object: {path}")

    logger.debug("Loaded JSON document %s", path)
    return document


def load_template(templates_dir: Path, name: str) -> dict[str, Any]:
    """Load the compiled ARM template for the Infrastructure stage."""
    filename = name if name.endswith(".json") else f"{name}.json"
    return load_json_document(templates_dir, filename)


def load_playbook_template(templates_dir: Path, playbook: str) -> dict[str, Any]:
    """Load the ARM template that provisions one playbook."""
    return load_json_document(templates_dir, f"{PLAYBOOKS_SUBDIR}/{playbook}.json")


def load_workbook(templates_dir: Path, file: str) -> dict[str, Any]:
    """Load a serialized workbook definition."""
    return load_json_document(templates_dir, f"{WORKBOOKS_SUBDIR}/{file}")

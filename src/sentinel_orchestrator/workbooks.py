"""Workbook publication with deterministic names.

Workbook resource names must be GUIDs. Deriving them with uuid5 from the
workspace and the logical workbook name means every run addresses the same
resource, so publication goes through the conditional upsert protocol like
any other setting.
"""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path

from .classifier import ReconcileStatus
from .client import ResourceRef
from .models import WorkbookConfig
from .reconciler import ConditionalUpsertReconciler, ReconcileOutcome
from .spec_loader import SpecLoadError, load_workbook

logger = logging.getLogger(__name__)

WORKBOOKS_KIND = "Microsoft.Insights/workbooks"
WORKBOOK_CATEGORY = "sentinel"

WORKBOOK_NAMESPACE = uuid.UUID("a4d2c3f1-7e8b-4c6d-9f0a-1b2c3d4e5f60")


def workbook_name(workspace_id: str, logical_name: str) -> str:
    return str(uuid.uuid5(WORKBOOK_NAMESPACE, f"{workspace_id.lower()}:{logical_name}"))


class WorkbookPublisher:
    """Publishes workbooks into the workspace's resource group."""

    def __init__(
        self,
        reconciler: ConditionalUpsertReconciler,
        templates_dir: Path,
        location: str,
    ) -> None:
        self._reconciler = reconciler
        self._templates_dir = templates_dir
        self._location = location

    def publish(
        self,
        workbooks: list[WorkbookConfig],
        workspace_id: str,
        resource_group_id: str,
    ) -> list[ReconcileOutcome]:
        """Upsert each workbook; a missing definition file fails that workbook only.

        Raises:
            TransportError: On network failure.
        """
        outcomes: list[ReconcileOutcome] = []
        for workbook in workbooks:
            ref = ResourceRef(
                resource_group_id, WORKBOOKS_KIND, workbook_name(workspace_id, workbook.name)
            )
            try:
                content = load_workbook(self._templates_dir, workbook.file)
            except SpecLoadError as e:
                logger.error(
                    "Workbook definition unavailable",
                    extra={"workbook": workbook.name, "error": str(e)},
                )
                outcomes.append(ReconcileOutcome(ref, ReconcileStatus.FAILED, detail=str(e)))
                continue

            payload = {
                "location": self._location,
                "kind": "shared",
                "properties": {
                    "displayName": workbook.display_name,
                    "serializedData": json.dumps(content),
                    "sourceId": workspace_id,
                    "category": WORKBOOK_CATEGORY,
                    "version": "1.0",
                },
            }
            outcomes.append(self._reconciler.upsert(ref, payload))
        return outcomes

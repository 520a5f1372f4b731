"""Conditional upsert reconciliation of workspace settings and connectors.

Every write is a probe-then-conditional-PUT:

1. GET the resource. A version token selects the update path (If-Match with
   that token); no token selects the create-only path (If-None-Match: *).
2. PUT with the chosen precondition. 2xx means Configured.
3. Non-2xx responses are classified by classifier.classify().

The conditional headers are the only concurrency control: two runs racing on
the same setting cannot both win a blind create, and an update never
overwrites a revision it did not read.

Only a Failed outcome aborts the enclosing stage. Skips are successes and are
logged with their reason so "nothing to do" and "lacking permission" stay
distinguishable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .classifier import Classification, ReconcileStatus, classify
from .client import (
    MatchMode,
    RemoteResourceClient,
    ResourceReadError,
    ResourceRef,
)
from .config import SettingKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DesiredSetting:
    """Declared target state for one setting or connector.

    Built once per deployment from static configuration plus the existing-state
    flags discovered by the preflight probe. Never mutated afterwards.
    """

    ref: ResourceRef
    kind: SettingKind
    payload: dict[str, Any]
    enabled_by_policy: bool = True
    skip_if_exists: bool = False


@dataclass(frozen=True)
class ReconcileOutcome:
    """Terminal result of reconciling one resource."""

    ref: ResourceRef
    status: ReconcileStatus
    http_status: int | None = None
    detail: str = ""
    kind: SettingKind | None = None

    @property
    def failed(self) -> bool:
        return self.status == ReconcileStatus.FAILED


class ConditionalUpsertReconciler:
    """Drives remote resources toward a declared payload with conditional writes."""

    def __init__(self, client: RemoteResourceClient) -> None:
        self._client = client

    def reconcile(self, setting: DesiredSetting) -> ReconcileOutcome | None:
        """Reconcile one desired setting.

        Returns:
            The outcome, or None when the setting is disabled by policy.

        Raises:
            TransportError: On network failure; the caller decides whether to retry.
        """
        if not setting.enabled_by_policy:
            logger.info(
                "Setting disabled by policy, not reconciled",
                extra={"kind": setting.kind.value, "resource": setting.ref.path},
            )
            return None

        outcome = self.upsert(
            setting.ref,
            setting.payload,
            skip_if_exists=setting.skip_if_exists,
            kind=setting.kind,
        )
        return outcome

    def upsert(
        self,
        ref: ResourceRef,
        payload: dict[str, Any],
        *,
        skip_if_exists: bool = False,
        kind: SettingKind | None = None,
    ) -> ReconcileOutcome:
        """Probe-then-conditional-write for a single resource.

        Raises:
            TransportError: On network failure.
        """
        try:
            state = self._client.get(ref)
        except ResourceReadError as e:
            # A probe that is refused is classified like a refused write
            outcome = self._outcome(ref, kind, e.status_code, classify(e.status_code, e.body_text))
            self._log(outcome)
            return outcome

        if state.exists and skip_if_exists:
            outcome = ReconcileOutcome(
                ref=ref,
                status=ReconcileStatus.SKIPPED_EXISTS,
                detail="Resource exists and is flagged skip-if-exists",
                kind=kind,
            )
            self._log(outcome)
            return outcome

        if state.exists and state.version_token:
            match_mode = MatchMode.IF_MATCH
        else:
            match_mode = MatchMode.IF_NONE_MATCH

        result = self._client.put(
            ref,
            payload,
            version_token=state.version_token if match_mode == MatchMode.IF_MATCH else None,
            match_mode=match_mode,
        )

        if result.http_status == 412 and match_mode == MatchMode.IF_NONE_MATCH:
            # Create-only precondition lost: another run created it first
            classification = Classification(
                ReconcileStatus.SKIPPED_EXISTS,
                "Resource was created concurrently (HTTP 412)",
            )
        else:
            classification = classify(result.http_status, result.body_text)

        outcome = self._outcome(ref, kind, result.http_status, classification)
        self._log(outcome, match_mode=match_mode)
        return outcome

    def reconcile_all(self, settings: list[DesiredSetting]) -> list[ReconcileOutcome]:
        """Reconcile settings in order, stopping at the first Failed outcome.

        Raises:
            TransportError: On network failure.
        """
        outcomes: list[ReconcileOutcome] = []
        for setting in settings:
            outcome = self.reconcile(setting)
            if outcome is None:
                continue
            outcomes.append(outcome)
            if outcome.failed:
                break
        return outcomes

    @staticmethod
    def _outcome(
        ref: ResourceRef,
        kind: SettingKind | None,
        http_status: int,
        classification: Classification,
    ) -> ReconcileOutcome:
        return ReconcileOutcome(
            ref=ref,
            status=classification.status,
            http_status=http_status,
            detail=classification.detail,
            kind=kind,
        )

    @staticmethod
    def _log(outcome: ReconcileOutcome, match_mode: MatchMode | None = None) -> None:
        extra: dict[str, Any] = {
            "resource": outcome.ref.path,
            "status": outcome.status.value,
            "http_status": outcome.http_status,
            "reason": outcome.detail,
        }
        if outcome.kind is not None:
            extra["kind"] = outcome.kind.value
        if match_mode is not None:
            extra["match_mode"] = match_mode.value

        if outcome.failed:
            logger.error("Reconcile failed", extra=extra)
        elif outcome.status == ReconcileStatus.CONFIGURED:
            logger.info("Reconcile configured", extra=extra)
        else:
            logger.warning("Reconcile skipped", extra=extra)

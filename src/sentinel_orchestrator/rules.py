"""Manifest-driven bulk deployment of analytics rules.

The manifest is a JSON document {ruleCount, rules: [...]} fetched over
unauthenticated HTTP(S). Each rule is handled independently:

1. Validate the definition (a malformed rule is an Error for that rule only)
2. Probe by rule id at the workspace; an existing rule is never updated
3. Build the kind-specific payload and create it with If-None-Match: *
4. Classify failures: missing upstream tables/connectors are skips, the rest
   are errors, and the loop always continues

Rules are dispatched across a bounded pool. Results keep manifest order and
counters are updated through a lock-guarded accumulator. A cancelled rule
produces no result, so created + skipped + errors may fall short of total.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from azure.core import PipelineClient
from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.core.pipeline.policies import HeadersPolicy, UserAgentPolicy
from azure.core.rest import HttpRequest
from pydantic import ValidationError

from .classifier import ReconcileStatus, classify, indicates_missing_dependency, truncate_body
from .client import (
    USER_AGENT,
    MatchMode,
    RemoteResourceClient,
    ResourceReadError,
    ResourceRef,
    TransportError,
    run_blocking,
)
from .config import DEFAULT_REQUEST_TIMEOUT_SECONDS, DEFAULT_RULE_WORKERS, MAX_MANIFEST_SIZE_BYTES
from .models import RuleDefinition, RuleKind, RuleManifest

logger = logging.getLogger(__name__)

ALERT_RULES_KIND = "Microsoft.SecurityInsights/alertRules"

# Suppression is always off; the duration is still required by the API
SUPPRESSION_DURATION = "PT5H"

DEFAULT_QUERY_FREQUENCY = "PT1H"
DEFAULT_QUERY_PERIOD = "PT1H"
DEFAULT_TRIGGER_OPERATOR = "GreaterThan"
DEFAULT_TRIGGER_THRESHOLD = 0


class ManifestError(Exception):
    """Raised when the manifest is unreachable or unparsable."""

    pass


class RuleOutcome(str, Enum):
    """Terminal outcome of deploying one rule."""

    CREATED = "Created"
    SKIPPED_EXISTING = "SkippedExisting"
    SKIPPED_MISSING_DEPENDENCY = "SkippedMissingDependency"
    ERROR = "Error"


@dataclass(frozen=True)
class RuleDeploymentResult:
    """Result for one rule of the manifest."""

    rule_id: str
    outcome: RuleOutcome
    message: str = ""


@dataclass
class ManifestDeploymentSummary:
    """Aggregated counts for one manifest deployment.

    The deployment is reported as successful even when it contains errors;
    callers inspect `errors` to decide how to surface them.
    """

    total: int = 0
    created: int = 0
    skipped: int = 0
    errors: int = 0
    results: list[RuleDeploymentResult] = field(default_factory=list)

    @property
    def resolved(self) -> int:
        return self.created + self.skipped + self.errors

    @property
    def has_errors(self) -> bool:
        return self.errors > 0


class SummaryAccumulator:
    """Exclusive owner of the counters while rules are in flight."""

    def __init__(self, total: int) -> None:
        self._lock = asyncio.Lock()
        self._total = total
        self._indexed: list[tuple[int, RuleDeploymentResult]] = []
        self._created = 0
        self._skipped = 0
        self._errors = 0

    async def record(self, index: int, result: RuleDeploymentResult) -> None:
        async with self._lock:
            self._indexed.append((index, result))
            if result.outcome == RuleOutcome.CREATED:
                self._created += 1
            elif result.outcome == RuleOutcome.ERROR:
                self._errors += 1
            else:
                self._skipped += 1

    async def summary(self) -> ManifestDeploymentSummary:
        async with self._lock:
            ordered = [r for _, r in sorted(self._indexed, key=lambda item: item[0])]
            return ManifestDeploymentSummary(
                total=self._total,
                created=self._created,
                skipped=self._skipped,
                errors=self._errors,
                results=ordered,
            )


def build_rule_payload(rule: RuleDefinition) -> dict[str, Any]:
    """Build the alert rule resource body for a definition.

    Scheduled rules carry the schedule and trigger; NRT rules never do.
    """
    properties: dict[str, Any] = {
        "displayName": rule.name,
        "description": rule.description,
        "severity": rule.severity,
        "enabled": rule.enabled,
        "query": rule.query,
        "tactics": list(rule.tactics),
        "techniques": list(rule.techniques),
        "suppressionEnabled": False,
        "suppressionDuration": SUPPRESSION_DURATION,
        "incidentConfiguration": {
            "createIncident": True,
            "groupingConfiguration": {
                "enabled": False,
                "reopenClosedIncident": False,
                "lookbackDuration": "PT5H",
                "matchingMethod": "AllEntities",
            },
        },
    }
    if rule.entity_mappings:
        properties["entityMappings"] = rule.entity_mappings

    if rule.kind == RuleKind.SCHEDULED:
        properties["queryFrequency"] = rule.query_frequency or DEFAULT_QUERY_FREQUENCY
        properties["queryPeriod"] = rule.query_period or DEFAULT_QUERY_PERIOD
        properties["triggerOperator"] = rule.trigger_operator or DEFAULT_TRIGGER_OPERATOR
        properties["triggerThreshold"] = (
            rule.trigger_threshold
            if rule.trigger_threshold is not None
            else DEFAULT_TRIGGER_THRESHOLD
        )

    return {"kind": rule.kind.value, "properties": properties}


class ManifestFetcher:
    """Fetches and parses a rule manifest over unauthenticated HTTP(S)."""

    def __init__(
        self,
        *,
        timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        pipeline_client: Any | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._pipeline = pipeline_client

    def _client_for(self, url: str) -> Any:
        if self._pipeline is not None:
            return self._pipeline
        return PipelineClient(
            base_url=url,
            policies=[HeadersPolicy(), UserAgentPolicy(base_user_agent=USER_AGENT)],
        )

    def fetch(self, url: str) -> RuleManifest:
        """Fetch and validate a manifest.

        Raises:
            ManifestError: If the manifest is unreachable, too large or unparsable.
        """
        request = HttpRequest("GET", url, headers={"Accept": "application/json"})
        try:
            response = self._client_for(url).send_request(
                request,
                connection_timeout=self._timeout_seconds,
                read_timeout=self._timeout_seconds,
            )
        except (ServiceRequestError, ServiceResponseError) as e:
            raise ManifestError(f"Manifest unreachable at {url}: {e}") from e

        if not 200 <= response.status_code < 300:
            raise ManifestError(f"Manifest fetch returned HTTP {response.status_code}: {url}")

        text = response.text()
        if len(text.encode("utf-8")) > MAX_MANIFEST_SIZE_BYTES:
            raise ManifestError(
                f"Manifest exceeds maximum size of {MAX_MANIFEST_SIZE_BYTES} bytes: {url}"
            )

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ManifestError(f"Manifest is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a JSON object")

        try:
            manifest = RuleManifest.model_validate(data)
        except ValidationError as e:
            raise ManifestError(f"Manifest failed validation: {e}") from e

        if manifest.rule_count is not None and manifest.rule_count != len(manifest.rules):
            logger.warning(
                "Manifest ruleCount disagrees with the rules it lists",
                extra={"rule_count": manifest.rule_count, "rules": len(manifest.rules)},
            )

        logger.info("Fetched rule manifest", extra={"url": url, "rules": len(manifest.rules)})
        return manifest


class BulkRuleDeployer:
    """Creates every rule of a manifest that does not exist yet."""

    def __init__(
        self,
        client: RemoteResourceClient,
        fetcher: ManifestFetcher,
        *,
        max_workers: int = DEFAULT_RULE_WORKERS,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._fetcher = fetcher
        self._max_workers = max_workers
        self._timeout_seconds = timeout_seconds
        self._tasks: dict[str, list[asyncio.Task[None]]] = {}

    async def deploy_manifest(self, manifest_url: str, scope: str) -> ManifestDeploymentSummary:
        """Fetch a manifest and deploy its rules into the workspace at scope.

        Raises:
            ManifestError: If the manifest is unreachable or unparsable.
        """
        try:
            manifest = await run_blocking(
                lambda: self._fetcher.fetch(manifest_url),
                self._timeout_seconds,
                "Manifest fetch",
            )
        except TransportError as e:
            raise ManifestError(str(e)) from e
        return await self.deploy_rules(manifest.rules, scope)

    async def deploy_rules(
        self,
        raw_rules: list[dict[str, Any]],
        scope: str,
    ) -> ManifestDeploymentSummary:
        """Deploy raw rule definitions across the bounded pool."""
        accumulator = SummaryAccumulator(total=len(raw_rules))
        semaphore = asyncio.Semaphore(self._max_workers)

        async def deploy_one(index: int, raw: dict[str, Any]) -> None:
            async with semaphore:
                try:
                    result = await run_blocking(
                        lambda: self.deploy_rule(raw, scope),
                        self._timeout_seconds,
                        f"Rule {_rule_label(raw, index)}",
                    )
                except TransportError as e:
                    result = RuleDeploymentResult(_rule_label(raw, index), RuleOutcome.ERROR, str(e))
                    _log_result(result)
                except Exception as e:
                    # CancelledError is a BaseException and still propagates
                    result = RuleDeploymentResult(
                        _rule_label(raw, index), RuleOutcome.ERROR, f"{type(e).__name__}: {e}"
                    )
                    _log_result(result)
            await accumulator.record(index, result)

        tasks = [asyncio.create_task(deploy_one(i, raw)) for i, raw in enumerate(raw_rules)]
        self._tasks = {}
        for i, (raw, task) in enumerate(zip(raw_rules, tasks)):
            label = _rule_label(raw, i)
            if label in self._tasks:
                logger.warning(
                    "Duplicate rule id in manifest", extra={"rule_id": label, "index": i}
                )
            self._tasks.setdefault(label, []).append(task)
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = {}

        for outcome in outcomes:
            if isinstance(outcome, asyncio.CancelledError):
                continue
            if isinstance(outcome, BaseException):
                raise outcome

        summary = await accumulator.summary()
        logger.info(
            "Manifest deployment complete",
            extra={
                "total": summary.total,
                "created": summary.created,
                "skipped": summary.skipped,
                "errors": summary.errors,
            },
        )
        return summary

    def cancel(self, rule_id: str) -> bool:
        """Cancel every in-flight rule with this id. Returns False if none is running."""
        cancelled = False
        for task in self._tasks.get(rule_id, []):
            if not task.done():
                cancelled = task.cancel() or cancelled
        return cancelled

    def deploy_rule(self, raw: dict[str, Any], scope: str) -> RuleDeploymentResult:
        """Validate, probe and create one rule (blocking).

        Raises:
            TransportError: On network failure.
        """
        try:
            rule = RuleDefinition.model_validate(raw)
        except ValidationError as e:
            fields = ", ".join(".".join(str(x) for x in err["loc"]) for err in e.errors())
            return _log_result(
                RuleDeploymentResult(
                    _rule_label(raw, None),
                    RuleOutcome.ERROR,
                    f"Invalid rule definition ({fields})",
                )
            )

        ref = ResourceRef(scope, ALERT_RULES_KIND, rule.id)

        try:
            state = self._client.get(ref)
        except ResourceReadError as e:
            return _log_result(self._refused(rule.id, e.status_code, e.body_text))

        if state.exists:
            return _log_result(
                RuleDeploymentResult(rule.id, RuleOutcome.SKIPPED_EXISTING, "Rule already deployed")
            )

        result = self._client.put(
            ref, build_rule_payload(rule), match_mode=MatchMode.IF_NONE_MATCH
        )
        if result.success:
            return _log_result(
                RuleDeploymentResult(rule.id, RuleOutcome.CREATED, f"HTTP {result.http_status}")
            )
        if result.http_status == 412:
            return _log_result(
                RuleDeploymentResult(
                    rule.id, RuleOutcome.SKIPPED_EXISTING, "Rule was created concurrently (HTTP 412)"
                )
            )
        return _log_result(self._refused(rule.id, result.http_status, result.body_text))

    @staticmethod
    def _refused(rule_id: str, status_code: int, body_text: str) -> RuleDeploymentResult:
        if indicates_missing_dependency(body_text):
            return RuleDeploymentResult(
                rule_id,
                RuleOutcome.SKIPPED_MISSING_DEPENDENCY,
                f"Upstream table or connector missing (HTTP {status_code}): "
                f"{truncate_body(body_text)}",
            )
        classification = classify(status_code, body_text)
        if classification.status == ReconcileStatus.SKIPPED_EXISTS:
            return RuleDeploymentResult(rule_id, RuleOutcome.SKIPPED_EXISTING, classification.detail)
        return RuleDeploymentResult(rule_id, RuleOutcome.ERROR, classification.detail)


def _rule_label(raw: dict[str, Any], index: int | None) -> str:
    rule_id = raw.get("id") if isinstance(raw, dict) else None
    if rule_id:
        return str(rule_id)
    return f"rule[{index}]" if index is not None else "<unnamed>"


def _log_result(result: RuleDeploymentResult) -> RuleDeploymentResult:
    extra = {"rule_id": result.rule_id, "outcome": result.outcome.value, "reason": result.message}
    if result.outcome == RuleOutcome.ERROR:
        logger.error("Rule deployment failed", extra=extra)
    elif result.outcome == RuleOutcome.CREATED:
        logger.info("Rule created", extra=extra)
    else:
        logger.warning("Rule skipped", extra=extra)
    return result

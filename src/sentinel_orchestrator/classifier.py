"""Failure classification for remote write responses.

The Sentinel and Defender APIs do not expose a stable machine-readable error
taxonomy, so outcomes are derived from the response body by ordered,
case-insensitive pattern matching. Everything here is a pure function of
(status code, body text) so it can be tested against captured responses
without a live endpoint.

Precedence (first match wins):
1. Permission: the acting identity lacks directory-level privilege
2. Managed elsewhere: another management plane owns the setting
3. Already exists: idempotent no-op
4. Missing prerequisite setting (e.g. UEBA requires Entity Analytics)
5. Anything else is a failure
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

# Max characters of a raw response body carried in outcome details
MAX_DETAIL_BODY_CHARS = 1000


class ReconcileStatus(str, Enum):
    """Terminal outcome of reconciling one resource."""

    CONFIGURED = "Configured"
    SKIPPED_EXISTS = "SkippedExists"
    SKIPPED_PERMISSION = "SkippedPermission"
    SKIPPED_MANAGED_ELSEWHERE = "SkippedManagedElsewhere"
    FAILED = "Failed"

    @property
    def is_skip(self) -> bool:
        return self in (
            ReconcileStatus.SKIPPED_EXISTS,
            ReconcileStatus.SKIPPED_PERMISSION,
            ReconcileStatus.SKIPPED_MANAGED_ELSEWHERE,
        )


@dataclass(frozen=True)
class Classification:
    """Status and operator-facing reason for a response."""

    status: ReconcileStatus
    detail: str


@dataclass(frozen=True)
class ClassificationRule:
    """One ordered matching rule.

    The reason may reference named groups of the pattern, e.g. {dependency}.
    """

    name: str
    pattern: re.Pattern[str]
    status: ReconcileStatus
    reason: str

    def describe(self, match: re.Match[str]) -> str:
        return self.reason.format(**match.groupdict())


def _rule(name: str, pattern: str, status: ReconcileStatus, reason: str) -> ClassificationRule:
    return ClassificationRule(
        name=name,
        pattern=re.compile(pattern, re.IGNORECASE | re.DOTALL),
        status=status,
        reason=reason,
    )


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    _rule(
        "permission",
        r"only 'security administrator'|does not have required admin roles|unauthorized",
        ReconcileStatus.SKIPPED_PERMISSION,
        "Acting identity lacks the directory role required to change this setting",
    ),
    _rule(
        "managed_elsewhere",
        r"changes.*disabled|primary.*workspace|threat protection portal",
        ReconcileStatus.SKIPPED_MANAGED_ELSEWHERE,
        "Setting is owned by another management plane and rejects external writes",
    ),
    _rule(
        "already_exists",
        r"already exists",
        ReconcileStatus.SKIPPED_EXISTS,
        "Resource already exists",
    ),
    _rule(
        "missing_prerequisite",
        r"requires '(?P<dependency>[^']+)' to be enabled",
        ReconcileStatus.SKIPPED_MANAGED_ELSEWHERE,
        "Prerequisite '{dependency}' is not enabled",
    ),
)

# Rule creation failures caused by data that has not been ingested yet
MISSING_DEPENDENCY_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE | re.DOTALL)
    for p in (
        r"failed to resolve (table|scalar|column) expression",
        r"table .{0,80}(was not found|does not exist|could not be found)",
        r"(table|data source|connector) not found",
        r"missing (data source|table|connector)",
        r"no data connector",
    )
)


def truncate_body(body_text: str) -> str:
    if len(body_text) <= MAX_DETAIL_BODY_CHARS:
        return body_text
    return body_text[:MAX_DETAIL_BODY_CHARS] + "..."


def classify(status_code: int, body_text: str) -> Classification:
    """Map a write response to a reconcile outcome.

    Args:
        status_code: HTTP status of the response.
        body_text: Raw response body.

    Returns:
        Classification with the status and a reason naming the matched rule.
    """
    if 200 <= status_code < 300:
        return Classification(ReconcileStatus.CONFIGURED, f"HTTP {status_code}")

    body = body_text or ""
    for rule in CLASSIFICATION_RULES:
        match = rule.pattern.search(body)
        if match:
            return Classification(rule.status, f"{rule.describe(match)} (HTTP {status_code})")

    return Classification(
        ReconcileStatus.FAILED,
        f"HTTP {status_code}: {truncate_body(body)}",
    )


def indicates_missing_dependency(error_text: str) -> bool:
    """True when an error says an upstream table, data source or connector is absent."""
    return any(p.search(error_text or "") for p in MISSING_DEPENDENCY_PATTERNS)

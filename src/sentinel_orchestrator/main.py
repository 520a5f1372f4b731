"""Main entry point for the Sentinel deployment orchestrator.

SECRETLESS ARCHITECTURE:
- Authentication uses a managed identity (or the Azure CLI on a workstation)
- NO service principal secrets or passwords are allowed
- Credentials are NEVER stored - Entra ID tokens are ephemeral

Run modes:
- full: every stage of the pipeline
- finalize: PreflightProbe + FinalizeAutomationRoles only, for re-running
  role bindings once an administrator has granted directory permissions

Exit codes:
    0: Success
    1: Fatal pipeline failure or configuration error
    2: Security violation (credentials in environment)
    3: Partial failure (a non-critical stage failed)
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError, RunMode
from .pipeline import FinalOutcome, PipelineResult, StagePipelineOrchestrator, StagePlan
from .security import SecretlessViolationError, get_credential
from .spec_loader import SpecLoadError, load_spec

EXIT_SUCCESS = 0
EXIT_FATAL = 1
EXIT_SECURITY_VIOLATION = 2
EXIT_PARTIAL_FAILURE = 3

# LogRecord attributes that are not structured context
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def exit_code_for(result: PipelineResult) -> int:
    """Map a pipeline outcome to a process exit code."""
    if result.final_outcome == FinalOutcome.SUCCESS:
        return EXIT_SUCCESS
    if result.final_outcome == FinalOutcome.PARTIAL_FAILURE:
        return EXIT_PARTIAL_FAILURE
    return EXIT_FATAL


async def main() -> int:
    """Load configuration and spec, then run the pipeline once.

    Returns:
        Exit code (see module docstring).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FATAL

    logger.info(
        "Starting Sentinel deployment orchestrator",
        extra={
            "subscription_id": config.subscription_id,
            "resource_group": config.resource_group_name,
            "location": config.location,
            "run_mode": config.run_mode.value,
        },
    )

    try:
        credential = get_credential(config.credential_mode, config.managed_identity_client_id)
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION

    try:
        spec = load_spec(config.spec_path)
    except SpecLoadError as e:
        logger.error(
            "Deployment spec loading failed",
            extra={"error": str(e), "spec_path": str(config.spec_path)},
        )
        return EXIT_FATAL

    orchestrator = StagePipelineOrchestrator.from_credential(credential, config)
    plan = StagePlan.finalize_only() if config.run_mode == RunMode.FINALIZE else StagePlan.full()

    # Abort between stages on SIGTERM/SIGINT
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        orchestrator.abort()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        result = await orchestrator.run(spec, plan)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_FATAL

    summary = result.manifest_summary
    logger.info(
        "Orchestrator finished",
        extra={
            "final_outcome": result.final_outcome.value,
            "stages": {r.name.value: r.status.value for r in result.stage_results},
            "rules_created": summary.created if summary else None,
            "rules_skipped": summary.skipped if summary else None,
            "rule_errors": summary.errors if summary else None,
        },
    )
    return exit_code_for(result)


def run() -> None:
    """Console entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()

"""Credential acquisition with secretless enforcement.

The orchestrator never authenticates on its own: it obtains a token
credential from azure-identity and hands it to every client. Only
token-based credentials are accepted:

- ManagedIdentityCredential when running in automation (default)
- AzureCliCredential when an operator runs a deployment from a workstation

SECURITY INVARIANTS:
1. Service principal secrets, certificates and passwords must never be present
   in the environment
2. Credentials are never persisted - tokens are ephemeral
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import AzureCliCredential, ManagedIdentityCredential

from .config import CredentialMode

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "SECURITY VIOLATION: {env_var} is set. This orchestrator only accepts "
    "managed identity or Azure CLI tokens. Remove credential environment "
    "variables and grant the deploying identity RBAC on the target scope."
)


class SecretlessViolationError(Exception):
    """Raised when a secret-bearing credential is found in the environment.

    This is a fatal error that prevents the pipeline from starting.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Refuse to continue when credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))


def get_credential(
    mode: CredentialMode = CredentialMode.MANAGED_IDENTITY,
    client_id: str | None = None,
) -> TokenCredential:
    """Get a token credential after verifying secretless architecture.

    Args:
        mode: Managed identity (automation) or Azure CLI (workstation).
        client_id: Client ID of a user-assigned managed identity. Ignored in CLI mode.

    Returns:
        Token credential shared by all clients of one pipeline run.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if mode == CredentialMode.CLI:
        logger.info("Using Azure CLI credential", extra={"credential_type": "AzureCli"})
        return AzureCliCredential()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()

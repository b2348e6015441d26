"""Credential acquisition and security audit logging.

Two credential modes are supported:
- Managed identity (USE_MANAGED_IDENTITY=true): ManagedIdentityCredential,
  system- or user-assigned. Password and secret variables in the
  environment are refused in this mode so a pod never silently falls back
  to a service principal.
- Default: DefaultAzureCredential, which covers `az login` sessions on
  operator workstations and workload identity in CI.
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """Raised when managed identity mode finds credential secrets in the environment."""

    pass


def enforce_secretless_environment() -> None:
    """Refuse to start when secret-based credentials are present.

    Raises:
        SecretlessViolationError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Credential secret found in managed identity mode",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(
                f"{env_var} is set but USE_MANAGED_IDENTITY=true; remove it or "
                "switch to the default credential chain"
            )


def get_credential(
    use_managed_identity: bool = False,
    client_id: str | None = None,
) -> TokenCredential:
    """Return the credential used by every Azure client in a run.

    Args:
        use_managed_identity: Use ManagedIdentityCredential.
        client_id: Client ID of a user-assigned managed identity.

    Raises:
        SecretlessViolationError: In managed identity mode, if credential
            secrets are present.
    """
    if use_managed_identity:
        enforce_secretless_environment()
        if client_id:
            logger.info(
                "Using user-assigned managed identity",
                extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
            )
            return ManagedIdentityCredential(client_id=client_id)
        logger.info("Using system-assigned managed identity")
        return ManagedIdentityCredential()

    logger.info("Using default Azure credential chain")
    return DefaultAzureCredential(exclude_interactive_browser_credential=True)


def log_security_audit_event(
    event_type: str,
    stack_id: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event (resource created, deleted, reused)."""
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "stack": stack_id,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )

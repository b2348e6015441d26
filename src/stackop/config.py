"""Configuration management with validation.

Every run (deploy, plan, destroy) is driven by a single immutable Config.
Bounds are enforced at load time so a bad value fails the run before any
collaborator is touched.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RUN_TIMEOUT_SECONDS = 3600
MIN_RUN_TIMEOUT_SECONDS = 60
MAX_RUN_TIMEOUT_SECONDS = 14400

DEFAULT_POLL_INTERVAL_SECONDS = 10
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 300

DEFAULT_MAX_ATTEMPTS = 3
MAX_MAX_ATTEMPTS = 10

DEFAULT_RETRY_BACKOFF_SECONDS = 5
DEFAULT_RETRY_BACKOFF_INCREMENT_SECONDS = 5
MAX_RETRY_BACKOFF_SECONDS = 300

DEFAULT_HELM_TIMEOUT_SECONDS = 600
MAX_HELM_TIMEOUT_SECONDS = 3600

# Per-resource provisioning timeout (spec file timeoutSeconds)
DEFAULT_RESOURCE_TIMEOUT_SECONDS = 900
MIN_RESOURCE_TIMEOUT_SECONDS = 30
MAX_RESOURCE_TIMEOUT_SECONDS = 7200

# Timeout for a single synchronous ARM call (describe, begin_*, list)
ARM_CALL_TIMEOUT_SECONDS = 120

# Security constraints - enforced limits to prevent abuse
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file
MAX_DEPLOYMENT_NAME_LENGTH = 64
MAX_RESOURCE_GROUP_NAME_LENGTH = 90
MAX_NAME_ATTEMPTS = 5
MAX_GRAPH_QUERY_RESULTS = 1000
MAX_GRAPH_QUERY_TIMEOUT_SECONDS = 30

# Input validation patterns
VALID_STACK_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,30}[a-z0-9]$"
VALID_ENVIRONMENT_PATTERN = r"^[a-z][a-z0-9]{0,9}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"


@dataclass(frozen=True)
class SecurityConfig:
    """Security-related configuration with safe defaults.

    - max_resources_per_stack: Enforced in spec_loader.load_stack_spec()
    - enable_audit_logging: Enforced in main.setup_logging()
    """

    # Maximum logical resources in one stack spec
    max_resources_per_stack: int = 20

    # Enable structured audit logging (JSON format to stdout)
    enable_audit_logging: bool = True


@dataclass(frozen=True)
class Config:
    """Orchestrator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    stack_name: str
    subscription_id: str
    location: str

    environment: str = "dev"
    resource_group_name: str | None = None

    # Paths
    spec_file: Path = field(default_factory=lambda: Path("/specs/stack.yaml"))
    kube_context: str | None = None

    # Timing
    run_timeout_seconds: int = DEFAULT_RUN_TIMEOUT_SECONDS
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    helm_timeout_seconds: int = DEFAULT_HELM_TIMEOUT_SECONDS

    # Retry
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_seconds: int = DEFAULT_RETRY_BACKOFF_SECONDS
    retry_backoff_increment_seconds: int = DEFAULT_RETRY_BACKOFF_INCREMENT_SECONDS

    # Behavior
    dry_run: bool = False

    # Identity
    use_managed_identity: bool = False
    managed_identity_client_id: str | None = None

    # Security configuration
    security: SecurityConfig = field(default_factory=SecurityConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: All inputs are validated at the boundary (fail-fast).
        """
        import re

        errors: list[str] = []

        if not self.stack_name:
            errors.append("STACK_NAME is required")
        elif not re.match(VALID_STACK_NAME_PATTERN, self.stack_name):
            errors.append(
                f"STACK_NAME must match pattern {VALID_STACK_NAME_PATTERN}: {self.stack_name}"
            )

        if not re.match(VALID_ENVIRONMENT_PATTERN, self.environment):
            errors.append(
                f"STACK_ENVIRONMENT must match pattern {VALID_ENVIRONMENT_PATTERN}: "
                f"{self.environment}"
            )

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if len(self.resource_group) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"RESOURCE_GROUP_NAME exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )

        # Timing validation
        if not (MIN_RUN_TIMEOUT_SECONDS <= self.run_timeout_seconds <= MAX_RUN_TIMEOUT_SECONDS):
            errors.append(
                f"RUN_TIMEOUT must be between {MIN_RUN_TIMEOUT_SECONDS} "
                f"and {MAX_RUN_TIMEOUT_SECONDS} seconds"
            )

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )
        elif self.poll_interval_seconds >= self.run_timeout_seconds:
            errors.append("POLL_INTERVAL must be shorter than RUN_TIMEOUT")

        if not (1 <= self.helm_timeout_seconds <= MAX_HELM_TIMEOUT_SECONDS):
            errors.append(f"HELM_TIMEOUT must be between 1 and {MAX_HELM_TIMEOUT_SECONDS} seconds")

        # Retry validation
        if not (1 <= self.max_attempts <= MAX_MAX_ATTEMPTS):
            errors.append(f"MAX_ATTEMPTS must be between 1 and {MAX_MAX_ATTEMPTS}")

        if not (0 <= self.retry_backoff_seconds <= MAX_RETRY_BACKOFF_SECONDS):
            errors.append(f"RETRY_BACKOFF must be between 0 and {MAX_RETRY_BACKOFF_SECONDS}")

        if not (0 <= self.retry_backoff_increment_seconds <= MAX_RETRY_BACKOFF_SECONDS):
            errors.append(
                f"RETRY_BACKOFF_INCREMENT must be between 0 and {MAX_RETRY_BACKOFF_SECONDS}"
            )

        # Path validation
        if not self.spec_file.is_file():
            errors.append(f"Spec file does not exist: {self.spec_file}")

        # Security constraint validation
        if self.security.max_resources_per_stack < 1:
            errors.append("max_resources_per_stack must be at least 1")
        elif self.security.max_resources_per_stack > 100:
            errors.append("max_resources_per_stack cannot exceed 100")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def stack_id(self) -> str:
        """Identifier stamped on every resource this stack creates."""
        return f"{self.stack_name}-{self.environment}"

    @property
    def resource_group(self) -> str:
        """Resource group holding the stack and its deployment ledger."""
        return self.resource_group_name or f"rg-{self.stack_id}"

    @classmethod
    def from_env(cls, spec_file: Path | None = None) -> Config:
        """Load configuration from environment variables.

        Args:
            spec_file: Overrides SPEC_FILE (the CLI --spec option).

        Environment Variables:
            STACK_NAME: Stack identifier (lowercase, dash separated)
            STACK_ENVIRONMENT: Environment suffix (default: dev)
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_LOCATION: Deployment location
            RESOURCE_GROUP_NAME: Stack resource group (default: rg-<stack>-<env>)
            SPEC_FILE: Path to the stack spec YAML (default: /specs/stack.yaml)
            KUBE_CONTEXT: kubeconfig context for platform resources (default: current)
            RUN_TIMEOUT: Overall run deadline in seconds (default: 3600)
            POLL_INTERVAL: Readiness poll interval in seconds (default: 10)
            HELM_TIMEOUT: Timeout for a single helm invocation (default: 600)
            MAX_ATTEMPTS: Attempts per provisioning action (default: 3)
            RETRY_BACKOFF: Base delay between attempts in seconds (default: 5)
            RETRY_BACKOFF_INCREMENT: Added per attempt, 0 for fixed (default: 5)
            DRY_RUN: If "true", resolve and report without applying (default: false)

        Identity Variables:
            USE_MANAGED_IDENTITY: Use ManagedIdentityCredential (default: false)
            AZURE_CLIENT_ID: Client ID of a user-assigned identity

        Security Variables:
            MAX_RESOURCES_PER_STACK: Max logical resources in a spec (default: 20)
            ENABLE_AUDIT_LOGGING: Enable JSON audit logs (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            stack_name=os.environ.get("STACK_NAME", ""),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            environment=os.environ.get("STACK_ENVIRONMENT", "dev"),
            resource_group_name=os.environ.get("RESOURCE_GROUP_NAME"),
            spec_file=spec_file or Path(os.environ.get("SPEC_FILE", "/specs/stack.yaml")),
            kube_context=os.environ.get("KUBE_CONTEXT") or None,
            run_timeout_seconds=get_int("RUN_TIMEOUT", DEFAULT_RUN_TIMEOUT_SECONDS),
            poll_interval_seconds=get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            helm_timeout_seconds=get_int("HELM_TIMEOUT", DEFAULT_HELM_TIMEOUT_SECONDS),
            max_attempts=get_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            retry_backoff_seconds=get_int("RETRY_BACKOFF", DEFAULT_RETRY_BACKOFF_SECONDS),
            retry_backoff_increment_seconds=get_int(
                "RETRY_BACKOFF_INCREMENT", DEFAULT_RETRY_BACKOFF_INCREMENT_SECONDS
            ),
            dry_run=get_bool("DRY_RUN", False),
            use_managed_identity=get_bool("USE_MANAGED_IDENTITY", False),
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            security=SecurityConfig(
                max_resources_per_stack=get_int("MAX_RESOURCES_PER_STACK", 20),
                enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
            ),
        )

"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from stackop.config import Config, ConfigurationError, SecurityConfig

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"


@pytest.fixture
def spec_file(tmp_path: Path) -> Path:
    path = tmp_path / "stack.yaml"
    path.write_text("resources: []\n")
    return path


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self, spec_file: Path) -> None:
        """Test creating a valid configuration."""
        config = Config(
            stack_name="livekit",
            subscription_id=SUBSCRIPTION_ID,
            location="westeurope",
            spec_file=spec_file,
        )

        assert config.environment == "dev"
        assert config.stack_id == "livekit-dev"
        assert config.resource_group == "rg-livekit-dev"
        assert config.dry_run is False
        assert config.max_attempts == 3

    def test_explicit_resource_group(self, spec_file: Path) -> None:
        config = Config(
            stack_name="livekit",
            subscription_id=SUBSCRIPTION_ID,
            location="westeurope",
            spec_file=spec_file,
            resource_group_name="rg-shared",
        )

        assert config.resource_group == "rg-shared"

    def test_missing_stack_name(self, spec_file: Path) -> None:
        """Test that missing stack name raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                stack_name="",
                subscription_id=SUBSCRIPTION_ID,
                location="westeurope",
                spec_file=spec_file,
            )

        assert "STACK_NAME" in str(exc_info.value)

    def test_invalid_stack_name(self, spec_file: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                stack_name="Live_Kit",
                subscription_id=SUBSCRIPTION_ID,
                location="westeurope",
                spec_file=spec_file,
            )

        assert "STACK_NAME must match" in str(exc_info.value)

    def test_invalid_subscription_id(self, spec_file: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                stack_name="livekit",
                subscription_id="not-a-guid",
                location="westeurope",
                spec_file=spec_file,
            )

        assert "AZURE_SUBSCRIPTION_ID must be a valid GUID" in str(exc_info.value)

    def test_missing_spec_file(self, tmp_path: Path) -> None:
        """Test that a nonexistent spec file raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                stack_name="livekit",
                subscription_id=SUBSCRIPTION_ID,
                location="westeurope",
                spec_file=tmp_path / "missing.yaml",
            )

        assert "Spec file does not exist" in str(exc_info.value)

    def test_invalid_run_timeout(self, spec_file: Path) -> None:
        """Test that out-of-range run timeout raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                stack_name="livekit",
                subscription_id=SUBSCRIPTION_ID,
                location="westeurope",
                spec_file=spec_file,
                run_timeout_seconds=10,
            )

        assert "RUN_TIMEOUT" in str(exc_info.value)

    def test_poll_interval_must_be_shorter_than_run_timeout(self, spec_file: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                stack_name="livekit",
                subscription_id=SUBSCRIPTION_ID,
                location="westeurope",
                spec_file=spec_file,
                run_timeout_seconds=60,
                poll_interval_seconds=60,
            )

        assert "POLL_INTERVAL must be shorter than RUN_TIMEOUT" in str(exc_info.value)

    def test_invalid_max_attempts(self, spec_file: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                stack_name="livekit",
                subscription_id=SUBSCRIPTION_ID,
                location="westeurope",
                spec_file=spec_file,
                max_attempts=0,
            )

        assert "MAX_ATTEMPTS" in str(exc_info.value)

    def test_multiple_errors_are_reported_together(self, tmp_path: Path) -> None:
        """All validation errors are collected into one message."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                stack_name="",
                subscription_id="",
                location="",
                spec_file=tmp_path / "missing.yaml",
            )

        message = str(exc_info.value)
        assert "STACK_NAME is required" in message
        assert "AZURE_SUBSCRIPTION_ID is required" in message
        assert "AZURE_LOCATION is required" in message
        assert "Spec file does not exist" in message

    def test_security_limits(self, spec_file: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                stack_name="livekit",
                subscription_id=SUBSCRIPTION_ID,
                location="westeurope",
                spec_file=spec_file,
                security=SecurityConfig(max_resources_per_stack=500),
            )

        assert "max_resources_per_stack cannot exceed 100" in str(exc_info.value)


class TestConfigFromEnv:
    """Tests for Config.from_env()."""

    def test_from_env(self, spec_file: Path) -> None:
        """Test loading configuration from environment."""
        env = {
            "STACK_NAME": "livekit",
            "STACK_ENVIRONMENT": "prod",
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
            "AZURE_LOCATION": "westeurope",
            "SPEC_FILE": str(spec_file),
            "RUN_TIMEOUT": "1800",
            "POLL_INTERVAL": "15",
            "MAX_ATTEMPTS": "5",
            "DRY_RUN": "true",
            "USE_MANAGED_IDENTITY": "yes",
            "AZURE_CLIENT_ID": "abcdef12-0000-0000-0000-000000000000",
            "MAX_RESOURCES_PER_STACK": "40",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.stack_id == "livekit-prod"
        assert config.spec_file == spec_file
        assert config.run_timeout_seconds == 1800
        assert config.poll_interval_seconds == 15
        assert config.max_attempts == 5
        assert config.dry_run is True
        assert config.use_managed_identity is True
        assert config.managed_identity_client_id == "abcdef12-0000-0000-0000-000000000000"
        assert config.security.max_resources_per_stack == 40
        assert config.kube_context is None

    def test_spec_file_argument_overrides_env(self, spec_file: Path, tmp_path: Path) -> None:
        env = {
            "STACK_NAME": "livekit",
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
            "AZURE_LOCATION": "westeurope",
            "SPEC_FILE": str(tmp_path / "elsewhere.yaml"),
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env(spec_file=spec_file)

        assert config.spec_file == spec_file

    def test_non_integer_value(self, spec_file: Path) -> None:
        env = {
            "STACK_NAME": "livekit",
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
            "AZURE_LOCATION": "westeurope",
            "SPEC_FILE": str(spec_file),
            "POLL_INTERVAL": "often",
        }

        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError, match="POLL_INTERVAL must be an integer"):
                Config.from_env()

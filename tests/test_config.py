"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from onevm.config import (
    DEFAULT_ENDPOINT,
    Config,
    ConfigurationError,
    LifecycleSettings,
    PollSettings,
    ReconciliationMode,
)


class TestConfig:
    """Tests for Config class."""

    def test_defaults(self) -> None:
        """Test creating a configuration with defaults."""
        config = Config()

        assert config.endpoint == DEFAULT_ENDPOINT
        assert config.mode == ReconciliationMode.OBSERVE
        assert config.dry_run is False
        assert config.allow_replace is False
        assert config.lifecycle.default_permissions == "640"

    def test_invalid_endpoint(self) -> None:
        """Test that a non-HTTP endpoint is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(endpoint="localhost:2633")

        assert "ONE_XMLRPC" in str(exc_info.value)

    def test_invalid_reconcile_interval(self) -> None:
        """Test that an out-of-range interval is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(reconcile_interval_seconds=5)

        assert "RECONCILE_INTERVAL" in str(exc_info.value)

    def test_missing_spec_file(self, tmp_path: Path) -> None:
        """Test that a spec path must exist."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(spec_path=tmp_path / "missing.yaml")

        assert "Spec file does not exist" in str(exc_info.value)

    def test_errors_collected(self) -> None:
        """Test that every problem is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(endpoint="ftp://x", rpc_timeout_seconds=0)

        assert "ONE_XMLRPC" in str(exc_info.value)
        assert "RPC_TIMEOUT" in str(exc_info.value)

    def test_from_env(self, tmp_path: Path) -> None:
        """Test loading configuration from environment variables."""
        spec = tmp_path / "vm.yaml"
        spec.write_text("templateId: 1\n")

        env = {
            "ONE_XMLRPC": "https://one.example.com:2633/RPC2",
            "ONEVM_SPEC": str(spec),
            "ONEVM_STATE": str(tmp_path / "state.json"),
            "RECONCILE_MODE": "ENFORCE",
            "DRY_RUN": "true",
            "ALLOW_REPLACE": "1",
            "RECONCILE_INTERVAL": "60",
            "POLL_TIMEOUT": "120",
            "POLL_INTERVAL": "3",
            "DEFAULT_PERMISSIONS": "600",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.endpoint == "https://one.example.com:2633/RPC2"
        assert config.spec_path == spec
        assert config.state_path == tmp_path / "state.json"
        assert config.mode == ReconciliationMode.ENFORCE
        assert config.dry_run is True
        assert config.allow_replace is True
        assert config.reconcile_interval_seconds == 60
        assert config.lifecycle.create_poll.timeout_seconds == 120
        assert config.lifecycle.delete_poll.interval_seconds == 3
        assert config.lifecycle.default_permissions == "600"

    def test_from_env_defaults(self) -> None:
        """Test that an empty environment yields the defaults."""
        with patch.dict(os.environ, {}, clear=True):
            config = Config.from_env()

        assert config == Config()

    def test_from_env_invalid_integer(self) -> None:
        """Test that a non-numeric integer setting is rejected."""
        with patch.dict(os.environ, {"POLL_TIMEOUT": "ten"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "POLL_TIMEOUT" in str(exc_info.value)

    def test_from_env_invalid_mode(self) -> None:
        """Test that an unknown reconciliation mode is rejected."""
        with patch.dict(os.environ, {"RECONCILE_MODE": "yolo"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "RECONCILE_MODE" in str(exc_info.value)


class TestPollSettings:
    """Tests for poll bounds."""

    def test_defaults(self) -> None:
        """Test the default bounds: ten minutes at ten-second intervals."""
        poll = PollSettings()

        assert poll.timeout_seconds == 600
        assert poll.interval_seconds == 10
        assert poll.initial_delay_seconds == 0

    def test_non_positive_interval(self) -> None:
        """Test that a zero interval is rejected."""
        with pytest.raises(ConfigurationError):
            PollSettings(interval_seconds=0)

    def test_backoff_below_one(self) -> None:
        """Test that a shrinking backoff is rejected."""
        with pytest.raises(ConfigurationError):
            PollSettings(backoff_factor=0.5)


class TestLifecycleSettings:
    """Tests for lifecycle settings."""

    def test_invalid_default_permissions(self) -> None:
        """Test that the default permission string is validated."""
        with pytest.raises(ConfigurationError) as exc_info:
            LifecycleSettings(default_permissions="6400")

        assert "DEFAULT_PERMISSIONS" in str(exc_info.value)

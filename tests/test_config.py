"""
Tests for the configuration module.

This test module validates:
- Model defaults and validation
- Configuration loading from YAML files
- Environment variable and override precedence
- Device credential discovery
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest import mock

import pytest
import yaml
from pydantic import ValidationError

from kinuxota_executor.config import (
    DeviceCredentials,
    ExecutorConfig,
    HealthConfig,
    LoggingConfig,
    PollingConfig,
    _deep_merge,
    _load_env_config,
    _parse_env_value,
    load_config,
    load_device_credentials,
)

# =============================================================================
# Model Tests
# =============================================================================


class TestExecutorConfigDefaults:
    """Tests for default configuration values."""

    def test_defaults(self) -> None:
        """Test built-in defaults."""
        config = ExecutorConfig()

        assert config.target.service_name == "kinuxota.service"
        assert config.target.executable_name == "kinuxota_client"
        assert config.target.executable_path is None
        assert config.target.default_executable_path == "/usr/local/bin/kinuxota_client"
        assert config.staging.directory == "/tmp/kinuxota/updates"
        assert config.staging.artifact_pattern == "kinuxota"
        assert config.polling.attempts == 10
        assert config.polling.interval_seconds == 1.0
        assert config.health.command == ["kinuxctl", "health"]
        assert config.health.settle_delay_seconds == 5.0
        assert config.reporting.endpoint_path == "/api/device/update-status"
        assert config.reporting.credential_paths == [
            "/app/config/kinuxota.json",
            "/etc/kinuxota/config.json",
            "~/.config/kinuxota/config.json",
        ]

    def test_polling_attempts_must_be_positive(self) -> None:
        """Test that zero attempts is rejected."""
        with pytest.raises(ValidationError):
            PollingConfig(attempts=0)

    def test_polling_interval_not_negative(self) -> None:
        """Test that a negative interval is rejected."""
        with pytest.raises(ValidationError):
            PollingConfig(interval_seconds=-1)

    def test_empty_health_command_rejected(self) -> None:
        """Test that the health command must name an executable."""
        with pytest.raises(ValidationError):
            HealthConfig(command=[])

    def test_log_level_normalized(self) -> None:
        """Test that 'WARN' is normalized to 'warning'."""
        assert LoggingConfig(level="WARN").level == "warning"

    def test_invalid_log_level(self) -> None:
        """Test that an unknown log level is rejected."""
        with pytest.raises(ValidationError):
            LoggingConfig(level="verbose")


class TestDeviceCredentials:
    """Tests for DeviceCredentials model."""

    def test_parses_client_json_keys(self) -> None:
        """Test parsing apiKey/serverUrl aliases."""
        creds = DeviceCredentials.model_validate(
            {"apiKey": "k-123", "serverUrl": "https://ota.example.com/", "deviceId": "x"}
        )

        assert creds.api_key == "k-123"
        assert creds.server_url == "https://ota.example.com"

    def test_missing_key_rejected(self) -> None:
        """Test that both fields are required."""
        with pytest.raises(ValidationError):
            DeviceCredentials.model_validate({"serverUrl": "https://ota.example.com"})


# =============================================================================
# Loading Tests
# =============================================================================


class TestHelpers:
    """Tests for merge and env parsing helpers."""

    def test_deep_merge(self) -> None:
        """Test nested dictionaries are merged."""
        base = {"polling": {"attempts": 10, "interval_seconds": 1.0}, "state_file": "a"}
        override = {"polling": {"attempts": 20}}

        assert _deep_merge(base, override) == {
            "polling": {"attempts": 20, "interval_seconds": 1.0},
            "state_file": "a",
        }

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("true", True),
            ("off", False),
            ("20", 20),
            ("0.5", 0.5),
            ("kinuxctl,health", ["kinuxctl", "health"]),
            ("kinuxota.service", "kinuxota.service"),
        ],
    )
    def test_parse_env_value(self, raw: str, expected: object) -> None:
        """Test env value type coercion."""
        assert _parse_env_value(raw) == expected

    def test_load_env_config_nesting(self) -> None:
        """Test double-underscore nesting."""
        env = {
            "KINUXOTA_EXECUTOR_POLLING__ATTEMPTS": "5",
            "KINUXOTA_EXECUTOR_TARGET__SERVICE_NAME": "client.service",
            "UNRELATED": "1",
        }
        with mock.patch.dict("os.environ", env, clear=True):
            result = _load_env_config()

        assert result == {
            "polling": {"attempts": 5},
            "target": {"service_name": "client.service"},
        }


class TestLoadConfig:
    """Tests for load_config precedence."""

    def test_yaml_env_and_overrides(self, tmp_path: Path) -> None:
        """Test defaults < YAML < env < overrides."""
        config_file = tmp_path / "executor.yml"
        config_file.write_text(
            yaml.safe_dump(
                {
                    "polling": {"attempts": 4, "interval_seconds": 2},
                    "staging": {"directory": "/srv/updates"},
                    "logging": {"level": "debug"},
                }
            )
        )
        env = {"KINUXOTA_EXECUTOR_POLLING__ATTEMPTS": "6"}

        with mock.patch.dict("os.environ", env, clear=True):
            config = load_config(
                config_file, overrides={"logging": {"level": "error"}}
            )

        assert config.polling.attempts == 6
        assert config.polling.interval_seconds == 2
        assert config.staging.directory == "/srv/updates"
        assert config.logging.level == "error"

    def test_explicit_missing_file_raises(self, tmp_path: Path) -> None:
        """Test that an explicit but missing config file is an error."""
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yml")

    def test_default_path_skipped_when_absent(self, tmp_path: Path) -> None:
        """Test that defaults are used when the default file doesn't exist."""
        with (
            mock.patch(
                "kinuxota_executor.config.DEFAULT_CONFIG_PATH", tmp_path / "none.yml"
            ),
            mock.patch.dict("os.environ", {}, clear=True),
        ):
            config = load_config()

        assert config == ExecutorConfig()

    def test_invalid_values_raise(self, tmp_path: Path) -> None:
        """Test that invalid YAML values fail validation."""
        config_file = tmp_path / "executor.yml"
        config_file.write_text(yaml.safe_dump({"polling": {"attempts": 0}}))

        with mock.patch.dict("os.environ", {}, clear=True), pytest.raises(ValidationError):
            load_config(config_file)


class TestLoadDeviceCredentials:
    """Tests for load_device_credentials."""

    def test_first_existing_candidate_wins(self, tmp_path: Path) -> None:
        """Test candidate order."""
        first = tmp_path / "app.json"
        second = tmp_path / "etc.json"
        second.write_text(json.dumps({"apiKey": "second", "serverUrl": "https://b"}))
        first.write_text(json.dumps({"apiKey": "first", "serverUrl": "https://a"}))

        creds = load_device_credentials([str(tmp_path / "missing.json"), str(first), str(second)])

        assert creds is not None
        assert creds.api_key == "first"
        assert creds.server_url == "https://a"

    def test_no_candidate_returns_none(self, tmp_path: Path) -> None:
        """Test that missing files yield None."""
        assert load_device_credentials([str(tmp_path / "missing.json")]) is None

    def test_invalid_json_returns_none(self, tmp_path: Path) -> None:
        """Test that an unparseable file yields None rather than raising."""
        path = tmp_path / "config.json"
        path.write_text("{not json")

        assert load_device_credentials([str(path)]) is None

    def test_missing_fields_returns_none(self, tmp_path: Path) -> None:
        """Test that a file without apiKey yields None."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"serverUrl": "https://a"}))

        assert load_device_credentials([str(path)]) is None

    def test_home_directory_expanded(self, tmp_path: Path) -> None:
        """Test that '~' in candidate paths is expanded."""
        config_dir = tmp_path / ".config" / "kinuxota"
        config_dir.mkdir(parents=True)
        (config_dir / "config.json").write_text(
            json.dumps({"apiKey": "home", "serverUrl": "https://h"})
        )

        with mock.patch.dict("os.environ", {"HOME": str(tmp_path)}):
            creds = load_device_credentials(["~/.config/kinuxota/config.json"])

        assert creds is not None
        assert creds.api_key == "home"

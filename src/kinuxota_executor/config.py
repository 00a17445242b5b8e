"""
Configuration management for the KinuxOTA update executor.

Configuration is resolved once, at the start of a transaction, and passed
down to every component. Layers, lowest precedence first:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/kinuxota/executor.yml or --config path)
3. Environment variables (KINUXOTA_EXECUTOR_* prefix, __ for nesting)
4. Command-line overrides

Device credentials for status reporting (apiKey/serverUrl) live in the
client's own JSON config, which this module only reads.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from kinuxota_executor.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/kinuxota/executor.yml")
DEFAULT_ENV_PREFIX = "KINUXOTA_EXECUTOR_"

# =============================================================================
# Runtime Target Configuration
# =============================================================================


class TargetConfig(BaseModel):
    """Where the client executable lives and how it is run.

    Attributes:
        service_name: systemd unit that runs the client when installed as a service.
        executable_name: Name of the client executable looked up on PATH.
        executable_path: Explicit live executable path; skips PATH lookup.
        default_executable_path: Fallback when the executable is not on PATH.
    """

    service_name: str = Field(
        default="kinuxota.service",
        description="systemd unit name of the client daemon",
    )
    executable_name: str = Field(
        default="kinuxota_client",
        description="Executable name looked up on PATH",
    )
    executable_path: str | None = Field(
        default=None,
        description="Explicit path to the live executable",
    )
    default_executable_path: str = Field(
        default="/usr/local/bin/kinuxota_client",
        description="Fallback live executable path",
    )


# =============================================================================
# Staging Configuration
# =============================================================================


class StagingConfig(BaseModel):
    """Location of the already-downloaded new binary.

    Attributes:
        directory: Directory scanned for the staged artifact.
        artifact_pattern: fnmatch pattern the artifact file name must match.
    """

    directory: str = Field(
        default="/tmp/kinuxota/updates",
        description="Directory scanned (recursively) for the staged artifact",
    )
    artifact_pattern: str = Field(
        default="kinuxota",
        description="File name pattern of the staged artifact",
    )


# =============================================================================
# Polling Configuration
# =============================================================================


class PollingConfig(BaseModel):
    """Bounds of the stop/start polling loops.

    Attributes:
        attempts: Maximum number of checks before giving up.
        interval_seconds: Delay between two checks.
    """

    attempts: int = Field(
        default=10,
        ge=1,
        description="Maximum number of status checks",
    )
    interval_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Seconds between status checks",
    )


# =============================================================================
# Health Check Configuration
# =============================================================================


class HealthConfig(BaseModel):
    """External health command settings.

    Attributes:
        command: argv of the health command; only its exit code is read.
        settle_delay_seconds: Delay between a successful start and the check.
        timeout_seconds: Maximum runtime of the health command.
    """

    command: list[str] = Field(
        default_factory=lambda: ["kinuxctl", "health"],
        description="Health command argv",
    )
    settle_delay_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Seconds to let the client initialize before checking",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Health command timeout in seconds",
    )

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        """Reject an empty health command."""
        if not v or not v[0]:
            raise ValueError("Health command must name an executable")
        return v


# =============================================================================
# Reporting Configuration
# =============================================================================


def _default_credential_paths() -> list[str]:
    """Return the candidate client config files, in probe order."""
    return [
        "/app/config/kinuxota.json",
        "/etc/kinuxota/config.json",
        "~/.config/kinuxota/config.json",
    ]


class ReportingConfig(BaseModel):
    """Status webhook settings.

    Attributes:
        credential_paths: Client config files probed for apiKey/serverUrl.
        endpoint_path: Path of the status endpoint on the backend.
        timeout_seconds: HTTP request timeout.
    """

    credential_paths: list[str] = Field(
        default_factory=_default_credential_paths,
        description="Candidate client config files; first existing wins",
    )
    endpoint_path: str = Field(
        default="/api/device/update-status",
        description="Status endpoint path",
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="HTTP request timeout in seconds",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON records instead of plain text.
        log_to_stdout: Whether to log to stdout.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warning, error",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON formatted records",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Configuration
# =============================================================================


class ExecutorConfig(BaseModel):
    """
    Main executor configuration model.

    Attributes:
        target: Live executable and service settings.
        staging: Staged artifact location.
        polling: Stop/start polling bounds.
        health: Health command settings.
        reporting: Status webhook settings.
        logging: Logging configuration.
        state_file: Where the transaction record is written.
    """

    target: TargetConfig = Field(default_factory=TargetConfig)
    staging: StagingConfig = Field(default_factory=StagingConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state_file: str = Field(
        default="/var/lib/kinuxota/update_state.json",
        description="Transaction record written after every state transition",
    )


class DeviceCredentials(BaseModel):
    """API credentials read from the client's JSON config."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    api_key: str = Field(alias="apiKey", min_length=1)
    server_url: str = Field(alias="serverUrl", min_length=1)

    @field_validator("server_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the server URL so endpoint paths join cleanly."""
        return v.rstrip("/")


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to an appropriate Python type.

    Booleans, integers and floats are recognized; comma-separated values
    become lists. Anything else stays a string.
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore, e.g.
    ``KINUXOTA_EXECUTOR_POLLING__ATTEMPTS=20``.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    overrides: dict[str, Any] | None = None,
) -> ExecutorConfig:
    """
    Load the executor configuration from all sources.

    Args:
        config_path: YAML configuration file. If None, the default path is
            used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Highest-precedence values, usually from the command line.

    Returns:
        Validated ExecutorConfig instance.

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist.
        ValidationError: If configuration is invalid.
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return ExecutorConfig(**config_dict)


def load_device_credentials(
    candidate_paths: list[str] | list[Path],
) -> DeviceCredentials | None:
    """
    Read apiKey and serverUrl from the first existing client config file.

    Only the first existing candidate is consulted. Problems are logged and
    reported as None: status reporting is best-effort and must not fail the
    update.

    Args:
        candidate_paths: Config files in probe order; ``~`` is expanded.

    Returns:
        DeviceCredentials, or None if no usable file was found.
    """
    for candidate in candidate_paths:
        path = Path(candidate).expanduser()
        if not path.is_file():
            continue

        try:
            with open(path) as f:
                data = json.load(f)
            credentials = DeviceCredentials.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.error(
                f"Could not read API key or server URL from {path}: {e}",
                extra={"path": str(path)},
            )
            return None

        logger.debug("Loaded device credentials", extra={"path": str(path)})
        return credentials

    logger.error(
        "Cannot find configuration file with device credentials",
        extra={"candidates": [str(p) for p in candidate_paths]},
    )
    return None

"""
Tests for health check functionality.

Tests cover:
- HealthCheckResult model
- Exit code interpretation
- Missing and hanging health commands
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kinuxota_executor.health_check import (
    HealthCheckResult,
    HealthStatus,
    HealthVerifier,
)


def _proc(returncode: int) -> MagicMock:
    proc = MagicMock()
    proc.wait = AsyncMock(return_value=returncode)
    return proc


# =============================================================================
# HealthCheckResult Tests
# =============================================================================


class TestHealthCheckResult:
    """Tests for HealthCheckResult class."""

    def test_healthy_passes(self) -> None:
        """Test that only healthy results pass."""
        assert HealthCheckResult(HealthStatus.HEALTHY, 0).passed is True
        assert HealthCheckResult(HealthStatus.UNHEALTHY, 1).passed is False
        assert HealthCheckResult(HealthStatus.UNAVAILABLE).passed is False

    def test_to_dict(self) -> None:
        """Test converting result to dictionary."""
        result = HealthCheckResult(HealthStatus.UNHEALTHY, 2, "exit 2")

        assert result.to_dict() == {
            "status": "unhealthy",
            "returncode": 2,
            "message": "exit 2",
        }


# =============================================================================
# HealthVerifier Tests
# =============================================================================


class TestHealthVerifierInit:
    """Tests for HealthVerifier initialization."""

    def test_default_command(self) -> None:
        """Test the default health command."""
        assert HealthVerifier().command == ["kinuxctl", "health"]

    def test_custom_command(self) -> None:
        """Test a custom command and timeout."""
        verifier = HealthVerifier(["/opt/bin/check", "--quick"], timeout_seconds=3)

        assert verifier.command == ["/opt/bin/check", "--quick"]
        assert verifier.timeout_seconds == 3


class TestHealthVerifierCheck:
    """Tests for HealthVerifier.check."""

    @pytest.mark.asyncio
    async def test_exit_zero_is_healthy(self) -> None:
        """Test a passing health command."""
        with patch(
            "asyncio.create_subprocess_exec", AsyncMock(return_value=_proc(0))
        ) as mock_exec:
            result = await HealthVerifier().check()

        assert result.status == HealthStatus.HEALTHY
        assert result.returncode == 0
        assert mock_exec.call_args.args == ("kinuxctl", "health")

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_unhealthy(self) -> None:
        """Test a failing health command."""
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_proc(1))):
            result = await HealthVerifier().check()

        assert result.status == HealthStatus.UNHEALTHY
        assert result.returncode == 1
        assert "1" in result.message

    @pytest.mark.asyncio
    async def test_missing_tool_is_unavailable(self) -> None:
        """Test that an uninstalled tool skips the check."""
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError()),
        ):
            result = await HealthVerifier().check()

        assert result.status == HealthStatus.UNAVAILABLE
        assert result.returncode is None

    @pytest.mark.asyncio
    async def test_unexecutable_tool_is_unhealthy(self) -> None:
        """Test that a tool that can't be executed is unhealthy."""
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(side_effect=PermissionError("denied")),
        ):
            result = await HealthVerifier().check()

        assert result.status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_timeout_is_unhealthy(self) -> None:
        """Test that a hanging health command is killed."""
        proc = MagicMock()

        async def wait() -> int:
            if not proc.kill.called:
                await asyncio.sleep(10)
            return -9

        proc.wait = wait

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            result = await HealthVerifier(timeout_seconds=0.01).check()

        assert result.status == HealthStatus.UNHEALTHY
        assert "timed out" in result.message
        proc.kill.assert_called_once()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_real_commands(self) -> None:
        """Test against real executables."""
        assert (await HealthVerifier(["true"]).check()).passed is True
        assert (await HealthVerifier(["false"]).check()).status == HealthStatus.UNHEALTHY
        missing = await HealthVerifier(["kinuxctl-does-not-exist"]).check()
        assert missing.status == HealthStatus.UNAVAILABLE

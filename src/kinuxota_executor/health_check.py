"""
Health verification of the freshly started client.

The health tool (``kinuxctl health`` by default) is run once as a
subprocess. Its exit code is the entire contract: 0 means healthy, any
other code unhealthy. A tool that is not installed yields UNAVAILABLE,
which the orchestrator treats as "skip the check" rather than as a failure.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

from kinuxota_executor.logging import get_logger

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Outcome of a health check."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNAVAILABLE = "unavailable"


class HealthCheckResult:
    """Result of a health check."""

    def __init__(
        self,
        status: HealthStatus,
        returncode: int | None = None,
        message: str | None = None,
    ) -> None:
        """
        Initialize the health check result.

        Args:
            status: Interpreted outcome.
            returncode: Exit code of the health command, if it ran to completion.
            message: Optional message describing the result.
        """
        self.status = status
        self.returncode = returncode
        self.message = message

    @property
    def passed(self) -> bool:
        """True only for a healthy result."""
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "returncode": self.returncode,
            "message": self.message,
        }


class HealthVerifier:
    """
    Runs the external health command.

    Example:
        >>> verifier = HealthVerifier(["kinuxctl", "health"])
        >>> result = await verifier.check()
        >>> result.status
        <HealthStatus.HEALTHY: 'healthy'>
    """

    DEFAULT_COMMAND = ("kinuxctl", "health")

    def __init__(
        self,
        command: list[str] | tuple[str, ...] | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        """
        Initialize the health verifier.

        Args:
            command: Health command argv; the first element is looked up on PATH.
            timeout_seconds: Time after which the command is killed and the
                client considered unhealthy.
        """
        self.command = list(command or self.DEFAULT_COMMAND)
        self.timeout_seconds = timeout_seconds

    async def check(self) -> HealthCheckResult:
        """
        Run the health command once and interpret its exit code.

        Returns:
            HealthCheckResult; never raises for command failures.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            logger.warning(f"{self.command[0]} not found, skipping health check")
            return HealthCheckResult(
                status=HealthStatus.UNAVAILABLE,
                message=f"{self.command[0]} not found",
            )
        except OSError as e:
            logger.error(f"Could not run health command: {e}")
            return HealthCheckResult(
                status=HealthStatus.UNHEALTHY,
                message=f"Could not run health command: {e}",
            )

        try:
            returncode = await asyncio.wait_for(
                proc.wait(), timeout=self.timeout_seconds
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error(f"Health check timed out after {self.timeout_seconds}s")
            return HealthCheckResult(
                status=HealthStatus.UNHEALTHY,
                message=f"Health check timed out after {self.timeout_seconds}s",
            )

        if returncode == 0:
            logger.info("Client is healthy")
            return HealthCheckResult(
                status=HealthStatus.HEALTHY,
                returncode=returncode,
                message="Client is healthy",
            )

        logger.error(f"Client health check failed with status {returncode}")
        return HealthCheckResult(
            status=HealthStatus.UNHEALTHY,
            returncode=returncode,
            message=f"Health check exited with status {returncode}",
        )

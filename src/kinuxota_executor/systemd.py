"""
systemctl wrapper used by the managed-service runtime target.

Each helper runs a single systemctl command and translates its exit status.
A missing or hanging systemctl surfaces as UnavailableError so callers can
tell "the host has no systemd" apart from "the unit failed".
"""

from __future__ import annotations

import asyncio

from kinuxota_executor.errors import RuntimeTargetError, UnavailableError
from kinuxota_executor.logging import get_logger

logger = get_logger(__name__)


async def _run_systemctl(
    *args: str,
    timeout: float = 30.0,
) -> tuple[int, str, str]:
    """
    Run a systemctl command.

    Args:
        *args: Arguments to pass to systemctl.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        UnavailableError: If systemctl is not available or times out.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            "systemctl",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise UnavailableError(
            "systemctl not available",
            details={"hint": "This system may not use systemd"},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        raise UnavailableError(
            f"systemctl command timed out after {timeout}s",
            details={"args": args},
        ) from exc

    return (
        proc.returncode or 0,
        stdout.decode() if stdout else "",
        stderr.decode() if stderr else "",
    )


async def service_exists(service_name: str) -> bool:
    """
    Check whether a unit file for the service is registered.

    Args:
        service_name: Unit name, e.g. ``kinuxota.service``.

    Returns:
        True if systemd lists the unit file; False otherwise, including
        hosts without systemctl.
    """
    try:
        _, stdout, _ = await _run_systemctl(
            "list-unit-files", "--no-legend", service_name, timeout=10.0
        )
    except UnavailableError as e:
        logger.debug(f"Cannot probe for {service_name}: {e.message}")
        return False

    return any(
        line.split()[0] == service_name
        for line in stdout.splitlines()
        if line.strip()
    )


async def stop_service(service_name: str, timeout: float = 30.0) -> None:
    """
    Stop a systemd service.

    Raises:
        RuntimeTargetError: If systemctl reports failure or is unavailable.
    """
    logger.info(f"Stopping {service_name}")

    try:
        returncode, stdout, stderr = await _run_systemctl(
            "stop", service_name, timeout=timeout
        )
    except UnavailableError as e:
        raise RuntimeTargetError(
            f"Failed to stop {service_name}: {e.message}", details=e.details
        ) from e

    if returncode != 0:
        logger.error(
            f"Service stop failed: {stderr or stdout}",
            extra={"service": service_name, "returncode": returncode},
        )
        raise RuntimeTargetError(
            f"Failed to stop {service_name}: {(stderr or stdout).strip()}",
            details={"service": service_name, "returncode": returncode},
        )

    logger.info(f"Service {service_name} stopped")


async def start_service(service_name: str, timeout: float = 30.0) -> None:
    """
    Start a systemd service.

    Raises:
        RuntimeTargetError: If systemctl reports failure or is unavailable.
    """
    logger.info(f"Starting {service_name}")

    try:
        returncode, stdout, stderr = await _run_systemctl(
            "start", service_name, timeout=timeout
        )
    except UnavailableError as e:
        raise RuntimeTargetError(
            f"Failed to start {service_name}: {e.message}", details=e.details
        ) from e

    if returncode != 0:
        logger.error(
            f"Service start failed: {stderr or stdout}",
            extra={"service": service_name, "returncode": returncode},
        )
        raise RuntimeTargetError(
            f"Failed to start {service_name}: {(stderr or stdout).strip()}",
            details={"service": service_name, "returncode": returncode},
        )

    logger.info(f"Service {service_name} start command sent")


async def is_service_active(service_name: str) -> bool:
    """
    Check whether a service is active.

    Returns:
        True only if ``systemctl is-active`` reports ``active``.
    """
    try:
        returncode, stdout, _ = await _run_systemctl(
            "is-active", service_name, timeout=5.0
        )
    except UnavailableError:
        return False

    return returncode == 0 and stdout.strip() == "active"

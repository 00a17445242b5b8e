"""
Runtime target abstraction for the KinuxOTA update executor.

The client executable is run either by systemd (ManagedService) or as a
free-standing process (FreeProcess). Both expose the same three async
operations, so the orchestrator drives the forward path and any rollback
through one interface. Which variant applies is decided once per
transaction by resolve_runtime_target().

Waiting for a target to come up, or for a process to go away, always goes
through poll_until(), bounded by PollingConfig.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

import psutil

from kinuxota_executor import systemd
from kinuxota_executor.errors import RuntimeTargetError
from kinuxota_executor.logging import get_logger

if TYPE_CHECKING:
    from kinuxota_executor.config import PollingConfig, TargetConfig

logger = get_logger(__name__)


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    polling: PollingConfig,
    description: str,
) -> bool:
    """
    Re-run ``check`` until it returns True or the polling bound is reached.

    The check runs before each of ``polling.attempts`` waits and once more
    after the last one.

    Args:
        check: Async predicate.
        polling: Attempt count and interval.
        description: What is being waited for, for log messages.

    Returns:
        True if the predicate became true, False if the bound was reached.
    """
    for attempt in range(1, polling.attempts + 1):
        if await check():
            return True
        logger.info(f"Waiting for {description} ({attempt}/{polling.attempts})...")
        await asyncio.sleep(polling.interval_seconds)

    return await check()


class RuntimeTarget(ABC):
    """
    Abstract base class for the thing that runs the client executable.

    Implementations:
    - ManagedService: a systemd unit
    - FreeProcess: a detached process found by executable name
    """

    kind: str = "target"

    @property
    def label(self) -> str:
        """Capitalized kind, used in status messages ("Service stopped")."""
        return self.kind.capitalize()

    @abstractmethod
    def describe(self) -> str:
        """Return a short human-readable identification of the target."""

    @abstractmethod
    async def stop(self) -> bool:
        """
        Stop the target.

        Returns:
            True if something was running and has been stopped, False if
            nothing was running.

        Raises:
            RuntimeTargetError: If stopping actively failed.
        """

    @abstractmethod
    async def start(self) -> None:
        """
        Start the target without waiting for it to come up.

        Raises:
            RuntimeTargetError: If the start request itself failed.
        """

    @abstractmethod
    async def is_running(self) -> bool:
        """Return True if the target is currently running."""


class ManagedService(RuntimeTarget):
    """Client run as a systemd unit."""

    kind = "service"

    def __init__(self, service_name: str, command_timeout: float = 30.0) -> None:
        """
        Initialize the managed service target.

        Args:
            service_name: systemd unit name.
            command_timeout: Timeout for systemctl stop/start.
        """
        self.service_name = service_name
        self._command_timeout = command_timeout

    def describe(self) -> str:
        """Return the unit name."""
        return f"service {self.service_name}"

    async def stop(self) -> bool:
        """Stop the unit; returns whether it was active beforehand."""
        was_active = await systemd.is_service_active(self.service_name)
        await systemd.stop_service(self.service_name, timeout=self._command_timeout)
        return was_active

    async def start(self) -> None:
        """Start the unit."""
        await systemd.start_service(self.service_name, timeout=self._command_timeout)

    async def is_running(self) -> bool:
        """Check ``systemctl is-active``."""
        return await systemd.is_service_active(self.service_name)


class FreeProcess(RuntimeTarget):
    """
    Client run as a free-standing process.

    Processes are matched by the executable's base name, either as the
    process name or as the base name of any command-line argument. The
    executor's own process and zombies never match.
    """

    kind = "process"

    def __init__(self, executable_path: Path | str, polling: PollingConfig) -> None:
        """
        Initialize the free process target.

        Args:
            executable_path: Live executable path; also used to launch it.
            polling: Bounds for waiting on SIGTERM before SIGKILL.
        """
        self.executable_path = Path(executable_path)
        self._polling = polling

    @property
    def process_name(self) -> str:
        """Base name used to find the running process."""
        return self.executable_path.name

    def describe(self) -> str:
        """Return the executable path."""
        return f"process {self.executable_path}"

    def _matches(self, info: dict) -> bool:
        """Check a psutil info dict against the executable base name."""
        if info.get("name") == self.process_name:
            return True
        cmdline = info.get("cmdline") or []
        return any(Path(arg).name == self.process_name for arg in cmdline if arg)

    def find_processes(self) -> list[psutil.Process]:
        """
        Find live processes running the executable.

        Returns:
            Matching processes, lowest pid first.
        """
        own_pid = os.getpid()
        matches: list[psutil.Process] = []

        for proc in psutil.process_iter(["pid", "name", "cmdline", "status"]):
            info = proc.info
            if info.get("pid") == own_pid:
                continue
            if info.get("status") == psutil.STATUS_ZOMBIE:
                continue
            if self._matches(info):
                matches.append(proc)

        return sorted(matches, key=lambda p: p.pid)

    @staticmethod
    def _is_alive(proc: psutil.Process) -> bool:
        """True if the process still exists and is not a zombie."""
        try:
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    @staticmethod
    def _signal(proc: psutil.Process, kill: bool) -> None:
        """Send SIGTERM (or SIGKILL) to a process, ignoring vanished ones."""
        try:
            if kill:
                proc.kill()
            else:
                proc.terminate()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            raise RuntimeTargetError(
                f"Access denied signalling process {proc.pid}",
                details={"pid": proc.pid, "signal": "SIGKILL" if kill else "SIGTERM"},
            ) from e

    async def stop(self) -> bool:
        """
        Stop every matching process.

        SIGTERM first; processes still alive after the polling bound get
        SIGKILL.

        Raises:
            RuntimeTargetError: If a process cannot be signalled or survives
                SIGKILL.
        """
        procs = self.find_processes()
        if not procs:
            logger.info("No running process found")
            return False

        for proc in procs:
            logger.info(f"Found process with PID {proc.pid}, sending SIGTERM")
            self._signal(proc, kill=False)

        async def _all_exited() -> bool:
            return not any(self._is_alive(p) for p in procs)

        if await poll_until(_all_exited, self._polling, "process to exit"):
            return True

        survivors = [p for p in procs if self._is_alive(p)]
        for proc in survivors:
            logger.warning(f"Process {proc.pid} still running, sending SIGKILL")
            self._signal(proc, kill=True)

        _, still_alive = psutil.wait_procs(
            survivors, timeout=max(self._polling.interval_seconds, 1.0)
        )
        still_alive = [p for p in still_alive if self._is_alive(p)]
        if still_alive:
            raise RuntimeTargetError(
                "Process survived SIGKILL",
                details={"pids": [p.pid for p in still_alive]},
            )

        return True

    async def start(self) -> None:
        """
        Launch the executable detached from the executor's session.

        Raises:
            RuntimeTargetError: If the executable cannot be launched.
        """
        logger.info(f"Starting {self.executable_path}")
        try:
            subprocess.Popen(
                [str(self.executable_path)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as e:
            raise RuntimeTargetError(
                f"Failed to launch {self.executable_path}: {e}",
                details={"path": str(self.executable_path)},
            ) from e

    async def is_running(self) -> bool:
        """Re-scan the process table for the executable."""
        return bool(self.find_processes())


async def resolve_runtime_target(
    target_config: TargetConfig,
    executable_path: Path,
    polling: PollingConfig,
) -> RuntimeTarget:
    """
    Decide once how the client is run on this host.

    Args:
        target_config: Service name settings.
        executable_path: Resolved live executable path.
        polling: Polling bounds for the process variant.

    Returns:
        ManagedService if the unit file is registered, FreeProcess otherwise.
    """
    if await systemd.service_exists(target_config.service_name):
        logger.info(f"Service name: {target_config.service_name}")
        return ManagedService(target_config.service_name)

    logger.warning(
        f"Service {target_config.service_name} not found, "
        f"managing {executable_path.name} as a free process"
    )
    return FreeProcess(executable_path, polling)


async def wait_until_running(target: RuntimeTarget, polling: PollingConfig) -> bool:
    """
    Wait for a target to report running.

    Returns:
        True if the target came up within the polling bound.
    """
    return await poll_until(target.is_running, polling, f"{target.kind} to start")

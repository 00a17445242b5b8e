"""
Update orchestrator for the KinuxOTA client.

UpdateExecutor runs one update transaction: it takes the live client
executable to a staged new version and, if anything goes wrong after the
client has been stopped, restores the previous executable and restarts it.

State machine states:
- init: Locating the staged artifact
- backup: Snapshotting the live executable
- stopping: Stopping the runtime target
- replacing: Installing the staged artifact over the live path
- starting: Starting the runtime target and waiting for it to run
- health_check: Running the external health command
- completed: Update succeeded (terminal)
- rolling_back: Restoring the backup and restarting the old version
- failed: Update failed (terminal)

Every status change is reported through the StatusReporter; the last
reported status of a transaction is always COMPLETED or FAILED and nothing
is reported after it.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from kinuxota_executor.backup import Backup, BackupManager
from kinuxota_executor.errors import (
    ExecutorError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
)
from kinuxota_executor.health_check import HealthStatus, HealthVerifier
from kinuxota_executor.logging import get_logger
from kinuxota_executor.operations import (
    find_staged_artifact,
    install_artifact,
    resolve_executable_path,
    safe_remove_directory,
)
from kinuxota_executor.runtime_target import resolve_runtime_target, wait_until_running
from kinuxota_executor.status_reporter import StatusEvent, StatusReporter, UpdateStatus

if TYPE_CHECKING:
    from kinuxota_executor.config import ExecutorConfig
    from kinuxota_executor.runtime_target import RuntimeTarget

logger = get_logger(__name__)


class UpdateState(str, Enum):
    """
    States of one update transaction.

    State transitions:
    - init → backup (artifact found)
    - init → failed (artifact missing or ambiguous)
    - backup → stopping (snapshot taken)
    - backup → failed (snapshot failed, nothing touched)
    - stopping → replacing | rolling_back
    - replacing → starting | rolling_back
    - starting → health_check | rolling_back
    - health_check → completed | rolling_back
    - rolling_back → failed
    """

    INIT = "init"
    BACKUP = "backup"
    STOPPING = "stopping"
    REPLACING = "replacing"
    STARTING = "starting"
    HEALTH_CHECK = "health_check"
    COMPLETED = "completed"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


_VALID_TRANSITIONS: dict[UpdateState, set[UpdateState]] = {
    UpdateState.INIT: {UpdateState.BACKUP, UpdateState.FAILED},
    UpdateState.BACKUP: {UpdateState.STOPPING, UpdateState.FAILED},
    UpdateState.STOPPING: {UpdateState.REPLACING, UpdateState.ROLLING_BACK},
    UpdateState.REPLACING: {UpdateState.STARTING, UpdateState.ROLLING_BACK},
    UpdateState.STARTING: {UpdateState.HEALTH_CHECK, UpdateState.ROLLING_BACK},
    UpdateState.HEALTH_CHECK: {UpdateState.COMPLETED, UpdateState.ROLLING_BACK},
    UpdateState.ROLLING_BACK: {UpdateState.FAILED},
    UpdateState.COMPLETED: set(),
    UpdateState.FAILED: set(),
}

# States in which the live executable may already differ from the backup
_MUTATING_STATES = frozenset(
    {
        UpdateState.STOPPING,
        UpdateState.REPLACING,
        UpdateState.STARTING,
        UpdateState.HEALTH_CHECK,
    }
)


class UpdateRequest(BaseModel):
    """
    Parameters of one update transaction.

    Attributes:
        version: Version being installed; required and non-empty.
        command_id: Backend command id; generated when not supplied.
    """

    model_config = ConfigDict(frozen=True)

    version: str = Field(..., description="Target version")
    command_id: str = Field(
        default_factory=lambda: uuid.uuid4().hex,
        description="Backend command id",
    )

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Strip whitespace and reject empty versions."""
        v = v.strip()
        if not v:
            raise ValueError("version must not be empty")
        return v

    @classmethod
    def create(cls, version: str, command_id: str | None = None) -> UpdateRequest:
        """
        Build a request from invocation arguments.

        Raises:
            InvalidArgumentError: If the version is empty.
        """
        try:
            if command_id:
                return cls(version=version, command_id=command_id)
            return cls(version=version)
        except ValidationError as e:
            raise InvalidArgumentError(
                "Missing argument - version number",
                details={"errors": e.errors(include_url=False)},
            ) from e


class TransactionRecord(BaseModel):
    """
    Progress of the current transaction, persisted after every transition.

    If the executor is killed mid-transaction this file tells the operator
    which step was reached and where the backup is.
    """

    state: str = Field(default=UpdateState.INIT.value)
    version: str | None = None
    command_id: str | None = None
    runtime_target: str | None = None
    backup_path: str | None = None
    started_at: str | None = None
    last_transition_at: str | None = None
    message: str | None = None


class UpdateResult(BaseModel):
    """
    Outcome of one update transaction.

    Attributes:
        version: Requested version.
        command_id: Command id of the transaction.
        status: COMPLETED or FAILED.
        message: Terminal status message.
        rolled_back: Whether the previous version was restored and restarted.
        restore_failed: Whether the rollback itself failed.
        runtime_target: Description of the runtime target used.
        backup_path: Backup file, if one was taken.
        events: Every status event emitted, in order.
    """

    version: str
    command_id: str
    status: UpdateStatus
    message: str
    rolled_back: bool = False
    restore_failed: bool = False
    runtime_target: str | None = None
    backup_path: str | None = None
    events: list[StatusEvent] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """True if the update completed."""
        return self.status == UpdateStatus.COMPLETED

    @property
    def exit_code(self) -> int:
        """Process exit code for this outcome."""
        return 0 if self.succeeded else 1


class UpdateExecutor:
    """
    Runs update transactions through the state machine.

    Collaborators are resolved at the start of each transaction unless they
    were injected: the status reporter (device credentials are read once),
    the live executable path and the runtime target (managed service or
    free process, never re-evaluated mid-transaction).

    Example:
        >>> executor = UpdateExecutor(load_config())
        >>> result = await executor.run(UpdateRequest.create("2.3.0"))
        >>> result.exit_code
        0
    """

    def __init__(
        self,
        config: ExecutorConfig,
        *,
        reporter: StatusReporter | None = None,
        health_verifier: HealthVerifier | None = None,
        backup_manager: BackupManager | None = None,
        runtime_target: RuntimeTarget | None = None,
        executable_path: Path | str | None = None,
        state_file: Path | str | None = None,
    ) -> None:
        """
        Initialize the UpdateExecutor.

        Args:
            config: Executor configuration.
            reporter: Status reporter; built from config per transaction if None.
            health_verifier: Health verifier; built from config if None.
            backup_manager: Backup manager; default if None.
            runtime_target: Runtime target; resolved per transaction if None.
            executable_path: Live executable; resolved from config if None.
            state_file: Transaction record path; config.state_file if None.
        """
        self._config = config
        self._reporter = reporter
        self._health_verifier = health_verifier or HealthVerifier(
            command=config.health.command,
            timeout_seconds=config.health.timeout_seconds,
        )
        self._backup_manager = backup_manager or BackupManager()
        self._runtime_target = runtime_target
        self._executable_path = Path(executable_path) if executable_path else None
        self._state_file = Path(state_file or config.state_file)
        self._progress_callbacks: list[Callable[[StatusEvent], None]] = []

        self._request: UpdateRequest | None = None
        self._record = TransactionRecord()
        self._events: list[StatusEvent] = []
        self._active_reporter: StatusReporter | None = None
        self._target: RuntimeTarget | None = None
        self._backup: Backup | None = None
        self._artifact_consumed = False

    @property
    def state(self) -> UpdateState:
        """Get the current state."""
        return UpdateState(self._record.state)

    @property
    def record(self) -> TransactionRecord:
        """Get the current transaction record."""
        return self._record

    @property
    def events(self) -> list[StatusEvent]:
        """Status events emitted so far in the current transaction."""
        return list(self._events)

    def add_progress_callback(self, callback: Callable[[StatusEvent], None]) -> None:
        """Add a callback to be notified of every status event."""
        self._progress_callbacks.append(callback)

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    def _log_context(self) -> dict[str, str | None]:
        """Extra logging fields identifying the transaction."""
        return {
            "version": self._record.version,
            "command_id": self._record.command_id,
        }

    def _log_error(self, error: ExecutorError) -> None:
        """Log a step failure with its error code and details."""
        logger.error(
            error.message,
            extra={
                **self._log_context(),
                "state": self.state.value,
                "error": error.to_dict(),
            },
        )

    def _begin(self, request: UpdateRequest) -> None:
        """Reset per-transaction state."""
        self._request = request
        self._events = []
        self._active_reporter = None
        self._target = None
        self._backup = None
        self._artifact_consumed = False
        now = datetime.now(UTC).isoformat()
        self._record = TransactionRecord(
            version=request.version,
            command_id=request.command_id,
            started_at=now,
            last_transition_at=now,
        )
        self._save_state()

    def _transition_to(self, new_state: UpdateState, message: str | None = None) -> None:
        """
        Transition to a new state.

        Raises:
            InternalError: If the transition is not valid.
        """
        current = self.state

        if new_state not in _VALID_TRANSITIONS.get(current, set()):
            raise InternalError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS.get(current, set())
                    ),
                },
            )

        logger.info(
            f"State transition: {current.value} -> {new_state.value}",
            extra={
                "old_state": current.value,
                "new_state": new_state.value,
                **self._log_context(),
            },
        )

        self._record.state = new_state.value
        self._record.last_transition_at = datetime.now(UTC).isoformat()
        if message is not None:
            self._record.message = message

        self._save_state()

    def _save_state(self) -> None:
        """Save the transaction record to disk."""
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)

            temp_file = self._state_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(self._record.model_dump(), f, indent=2)
            temp_file.replace(self._state_file)
        except OSError as e:
            logger.warning(f"Failed to save update state: {e}")

    async def _emit(self, status: UpdateStatus, message: str) -> None:
        """
        Record and report one status event.

        Reporter and callback failures are logged and ignored.
        """
        if self._events and self._events[-1].is_complete:
            logger.error(
                "Status event after terminal status dropped",
                extra={"status": status.value, "status_message": message},
            )
            return

        event = StatusEvent.build(self._record.version or "", status, message)
        self._events.append(event)

        if self._active_reporter is not None:
            try:
                await self._active_reporter.send(event)
            except Exception as e:
                logger.warning(f"Status reporter failed: {e}")

        for callback in self._progress_callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    # -------------------------------------------------------------------------
    # Terminal outcomes
    # -------------------------------------------------------------------------

    def _finish(
        self,
        status: UpdateStatus,
        message: str,
        *,
        rolled_back: bool = False,
        restore_failed: bool = False,
    ) -> UpdateResult:
        """Clean up staging when appropriate and build the result."""
        if status == UpdateStatus.COMPLETED or self._artifact_consumed:
            staging_dir = Path(self._config.staging.directory)
            logger.info(f"Cleaning up temporary files in {staging_dir}")
            safe_remove_directory(staging_dir)

        request = self._request
        if request is None:
            raise InternalError("No update transaction in progress")

        return UpdateResult(
            version=request.version,
            command_id=request.command_id,
            status=status,
            message=message,
            rolled_back=rolled_back,
            restore_failed=restore_failed,
            runtime_target=self._record.runtime_target,
            backup_path=self._record.backup_path,
            events=list(self._events),
        )

    async def _complete(self, message: str) -> UpdateResult:
        """End the transaction as COMPLETED."""
        self._transition_to(UpdateState.COMPLETED, message)
        await self._emit(UpdateStatus.COMPLETED, message)
        logger.info("Update completed successfully", extra=self._log_context())
        return self._finish(UpdateStatus.COMPLETED, message)

    async def _fail(
        self,
        message: str,
        *,
        rolled_back: bool = False,
        restore_failed: bool = False,
    ) -> UpdateResult:
        """End the transaction as FAILED."""
        self._transition_to(UpdateState.FAILED, message)
        await self._emit(UpdateStatus.FAILED, message)
        return self._finish(
            UpdateStatus.FAILED,
            message,
            rolled_back=rolled_back,
            restore_failed=restore_failed,
        )

    async def _fail_unrecoverable(self, message: str) -> UpdateResult:
        """End the transaction as FAILED after the rollback itself failed."""
        logger.critical(
            f"{message}. Manual intervention required.",
            extra={
                **self._log_context(),
                "backup_path": self._record.backup_path,
                "runtime_target": self._record.runtime_target,
            },
        )
        return await self._fail(message, restore_failed=True)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _start_and_wait(self, target: RuntimeTarget) -> bool:
        """Start the target and poll until it runs or the bound is reached."""
        try:
            await target.start()
        except ExecutorError as e:
            logger.error(f"Failed to start {target.describe()}: {e.message}")
            return False

        return await wait_until_running(target, self._config.polling)

    async def _rollback(self, reason: str) -> UpdateResult:
        """
        Restore the backup and restart the previous version.

        Only reachable once a backup exists. A failure here is terminal:
        there is no second rollback.
        """
        self._transition_to(UpdateState.ROLLING_BACK, reason)
        logger.error(f"{reason}, rolling back to previous version", extra=self._log_context())
        await self._emit(
            UpdateStatus.UPDATING, f"Rolling back to previous version: {reason}"
        )

        target = self._target
        backup = self._backup
        if target is None or backup is None:
            return await self._fail_unrecoverable(
                f"Failed to restore previous version: no backup available ({reason})"
            )

        try:
            await target.stop()
        except ExecutorError as e:
            logger.warning(
                f"Could not stop {target.describe()} before restore: {e.message}"
            )

        try:
            self._backup_manager.restore(backup)
        except ExecutorError as e:
            return await self._fail_unrecoverable(
                f"Failed to restore previous version: {e.message}"
            )

        logger.info(f"Starting {target.kind} with old binary")
        if await self._start_and_wait(target):
            logger.info(f"{target.label} started successfully with old binary")
            return await self._fail(
                f"Rolled back to previous version: {reason}", rolled_back=True
            )

        return await self._fail_unrecoverable(
            f"Failed to restore previous version: "
            f"failed to start {target.kind} with old binary ({reason})"
        )

    async def _execute(self, request: UpdateRequest) -> UpdateResult:
        """Run the state machine from init to a terminal state."""
        staging = self._config.staging

        self._active_reporter = self._reporter or StatusReporter.from_config(
            self._config.reporting
        )

        live_path = self._executable_path or resolve_executable_path(
            self._config.target.executable_name,
            self._config.target.default_executable_path,
            self._config.target.executable_path,
        )
        logger.info(f"Current executable path: {live_path}")

        target = self._runtime_target or await resolve_runtime_target(
            self._config.target, live_path, self._config.polling
        )
        self._target = target
        self._record.runtime_target = target.describe()

        # init: nothing may be touched until the artifact is known
        try:
            artifact = find_staged_artifact(
                Path(staging.directory), staging.artifact_pattern
            )
        except FailedPreconditionError as e:
            self._log_error(e)
            return await self._fail(e.message)

        self._transition_to(UpdateState.BACKUP)
        await self._emit(UpdateStatus.UPDATING, "Starting update process")
        await self._emit(UpdateStatus.UPDATING, "Found update file")
        try:
            self._backup = self._backup_manager.snapshot(live_path)
        except ExecutorError as e:
            self._log_error(e)
            return await self._fail(f"Backup failed: {e.message}")
        self._record.backup_path = str(self._backup.backup_path)

        self._transition_to(UpdateState.STOPPING)
        try:
            stopped = await target.stop()
        except ExecutorError as e:
            self._log_error(e)
            return await self._rollback(f"Failed to stop {target.kind}: {e.message}")
        if stopped:
            await self._emit(UpdateStatus.UPDATING, f"{target.label} stopped")
        else:
            await self._emit(UpdateStatus.UPDATING, f"{target.label} was not running")

        self._transition_to(UpdateState.REPLACING)
        self._artifact_consumed = True
        try:
            install_artifact(artifact, live_path)
        except ExecutorError as e:
            self._log_error(e)
            return await self._rollback(f"Failed to replace executable: {e.message}")
        await self._emit(UpdateStatus.UPDATING, "Binary replaced")

        self._transition_to(UpdateState.STARTING)
        if not await self._start_and_wait(target):
            return await self._rollback(f"Failed to start {target.kind} with new binary")
        await self._emit(UpdateStatus.UPDATING, f"{target.label} started")

        self._transition_to(UpdateState.HEALTH_CHECK)
        logger.info("Checking client health")
        await asyncio.sleep(self._config.health.settle_delay_seconds)
        health = await self._health_verifier.check()
        logger.info(
            f"Health check result: {health.status.value}",
            extra={**self._log_context(), "health": health.to_dict()},
        )

        if health.status == HealthStatus.HEALTHY:
            return await self._complete("Update completed successfully")

        if health.status == HealthStatus.UNAVAILABLE:
            logger.warning(
                "Health command unavailable, update completed without health check",
                extra=self._log_context(),
            )
            return await self._complete("Update completed, but health check skipped")

        return await self._rollback("Client health check failed")

    async def run(self, request: UpdateRequest) -> UpdateResult:
        """
        Run one update transaction to a terminal status.

        Args:
            request: Version and command id of the transaction.

        Returns:
            UpdateResult; failures are reported in the result, not raised.
        """
        self._begin(request)
        logger.info(f"Update to version: {request.version}", extra=self._log_context())

        try:
            return await self._execute(request)
        except Exception as e:
            logger.exception(f"Unexpected error during update: {e}")
            reason = f"Unexpected error: {e}"

            if self.state in (UpdateState.INIT, UpdateState.BACKUP):
                return await self._fail(reason)
            if self.state in _MUTATING_STATES:
                try:
                    return await self._rollback(reason)
                except Exception as rollback_error:
                    logger.exception(f"Rollback aborted: {rollback_error}")
                    reason = f"Failed to restore previous version: {rollback_error}"
            if self.state == UpdateState.ROLLING_BACK:
                return await self._fail_unrecoverable(reason)

            # Already terminal: the error came after the final status was emitted
            final = self._events[-1]
            return self._finish(final.status, final.message)

"""
Backup management for the KinuxOTA update executor.

Before the live executable is touched, it is copied to
``<install-dir>/backup/<name>_<YYYYMMDDHHMMSS>``. The copy is what a
rollback restores. Backups are kept after a successful update so an
operator can still go back by hand; nothing here prunes them.
"""

from __future__ import annotations

import shutil
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from kinuxota_executor.errors import FailedPreconditionError, InternalError
from kinuxota_executor.logging import get_logger
from kinuxota_executor.operations import atomic_copy, ensure_directory

logger = get_logger(__name__)

BACKUP_DIR_NAME = "backup"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


class Backup(BaseModel):
    """
    A snapshot of the live executable.

    Attributes:
        source_path: Live executable that was copied.
        backup_path: Where the copy lives.
        timestamp: When the snapshot was taken.
    """

    source_path: Path = Field(..., description="Live executable path")
    backup_path: Path = Field(..., description="Backup file path")
    timestamp: datetime = Field(..., description="Snapshot time (local)")


class BackupManager:
    """
    Creates and restores snapshots of the live executable.

    Example:
        >>> manager = BackupManager()
        >>> backup = manager.snapshot(Path("/usr/local/bin/kinuxota_client"))
        >>> manager.restore(backup)
    """

    def __init__(self, backup_dir_name: str = BACKUP_DIR_NAME) -> None:
        """
        Initialize the BackupManager.

        Args:
            backup_dir_name: Name of the backup directory created next to
                the live executable.
        """
        self._backup_dir_name = backup_dir_name

    def backup_dir_for(self, live_path: Path) -> Path:
        """Return the backup directory of a live executable."""
        return live_path.parent / self._backup_dir_name

    def snapshot(self, live_path: Path, now: datetime | None = None) -> Backup:
        """
        Copy the live executable to a timestamped backup file.

        Args:
            live_path: Live executable path.
            now: Snapshot time; defaults to the current local time.

        Returns:
            The created Backup.

        Raises:
            FailedPreconditionError: If the live executable is missing or
                unreadable, or the backup directory cannot be created.
        """
        if not live_path.is_file():
            raise FailedPreconditionError(
                f"Current executable not found: {live_path}",
                details={"path": str(live_path)},
            )

        timestamp = now or datetime.now()
        backup_dir = ensure_directory(self.backup_dir_for(live_path))
        backup_path = backup_dir / f"{live_path.name}_{timestamp.strftime(TIMESTAMP_FORMAT)}"

        logger.info(f"Backing up current executable to {backup_path}")
        try:
            shutil.copy2(live_path, backup_path)
        except OSError as e:
            raise FailedPreconditionError(
                f"Failed to back up {live_path}: {e}",
                details={"source": str(live_path), "backup": str(backup_path)},
            ) from e

        return Backup(
            source_path=live_path,
            backup_path=backup_path,
            timestamp=timestamp,
        )

    def restore(self, backup: Backup) -> None:
        """
        Copy a backup back over the live executable.

        The executable bits are re-applied to the restored file.

        Raises:
            InternalError: If the backup no longer exists or the copy fails.
        """
        if not backup.backup_path.is_file():
            raise InternalError(
                f"Backup file disappeared: {backup.backup_path}",
                details={"backup": str(backup.backup_path)},
            )

        logger.info(f"Restoring {backup.source_path} from {backup.backup_path}")
        atomic_copy(backup.backup_path, backup.source_path, executable=True)

    def list_backups(self, live_path: Path) -> list[Path]:
        """
        List existing backups of a live executable, newest first.

        Returns:
            Backup file paths; empty if the backup directory doesn't exist.
        """
        backup_dir = self.backup_dir_for(live_path)
        if not backup_dir.is_dir():
            return []

        backups = [
            path
            for path in backup_dir.glob(f"{live_path.name}_*")
            if path.is_file()
        ]
        return sorted(backups, key=lambda p: p.name, reverse=True)

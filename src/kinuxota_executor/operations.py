"""
Filesystem operations for the KinuxOTA update executor.

- Locating the live executable and the staged artifact
- Atomic file copy (temp file + os.replace)
- Safe directory creation and removal

CRITICAL: the live executable must never be observable as a truncated or
partially written file. Every write of the live path goes through
atomic_copy():
1. Copy the source into a temp file in the destination directory
2. Apply the final permissions to the temp file
3. Atomically rename the temp file over the destination
"""

from __future__ import annotations

import fnmatch
import os
import shutil
import stat
import tempfile
from pathlib import Path

from kinuxota_executor.errors import FailedPreconditionError, InternalError
from kinuxota_executor.logging import get_logger

logger = get_logger(__name__)

EXECUTABLE_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Raises:
        FailedPreconditionError: If directory cannot be created.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise FailedPreconditionError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def safe_remove_directory(path: Path, *, ignore_errors: bool = True) -> bool:
    """
    Safely remove a directory and its contents.

    Args:
        path: Path to the directory to remove.
        ignore_errors: If True, ignore errors during removal.

    Returns:
        True if directory was removed, False if it didn't exist.

    Raises:
        FailedPreconditionError: If removal fails and ignore_errors is False.
    """
    if not path.exists():
        return False

    try:
        shutil.rmtree(path, ignore_errors=ignore_errors)
        logger.debug("Removed directory", extra={"path": str(path)})
        return True
    except OSError as e:
        if not ignore_errors:
            raise FailedPreconditionError(
                f"Failed to remove directory: {path}",
                details={"path": str(path), "error": str(e)},
            ) from e
        return False


def resolve_executable_path(
    executable_name: str,
    default_path: Path | str,
    explicit_path: Path | str | None = None,
) -> Path:
    """
    Locate the live client executable.

    Order: explicit path, ``executable_name`` on PATH, default path.
    """
    if explicit_path:
        return Path(explicit_path)

    found = shutil.which(executable_name)
    if found:
        return Path(found)

    logger.warning(
        f"Could not find {executable_name} on PATH, assuming {default_path}"
    )
    return Path(default_path)


def find_staged_artifact(staging_dir: Path, pattern: str) -> Path:
    """
    Find the single staged artifact in the staging directory.

    The directory is scanned recursively for regular files whose name
    matches ``pattern``. Exactly one match is required.

    Args:
        staging_dir: Directory holding the downloaded update.
        pattern: fnmatch pattern for the artifact file name.

    Returns:
        Path of the staged artifact.

    Raises:
        FailedPreconditionError: If no file or more than one file matches.
    """
    if not staging_dir.is_dir():
        raise FailedPreconditionError(
            "Could not find update file",
            details={"staging_dir": str(staging_dir), "reason": "missing directory"},
        )

    candidates = sorted(
        path
        for path in staging_dir.rglob("*")
        if path.is_file()
        and not path.is_symlink()
        and fnmatch.fnmatch(path.name, pattern)
    )

    if not candidates:
        raise FailedPreconditionError(
            "Could not find update file",
            details={"staging_dir": str(staging_dir), "pattern": pattern},
        )

    if len(candidates) > 1:
        raise FailedPreconditionError(
            f"Found {len(candidates)} candidate update files, expected exactly one",
            details={
                "staging_dir": str(staging_dir),
                "candidates": [str(c) for c in candidates],
            },
        )

    logger.info(f"Found update file: {candidates[0]}")
    return candidates[0]


def atomic_copy(source: Path, destination: Path, *, executable: bool = True) -> None:
    """
    Copy ``source`` over ``destination`` atomically.

    The destination either keeps its previous content or has the complete
    new content; it is never truncated. If the destination exists its
    permission bits are carried over. A symlinked destination is written
    through: the link stays and its target file is replaced.

    Args:
        source: File to copy.
        destination: File to replace.
        executable: Whether to set the executable bits on the result.

    Raises:
        InternalError: If the copy or rename fails. The destination is
            left as it was.
    """
    temp_path: Path | None = None
    try:
        if destination.is_symlink():
            destination = destination.resolve(strict=True)

        if destination.exists():
            mode = stat.S_IMODE(destination.stat().st_mode)
        else:
            mode = 0o755

        if executable:
            mode |= EXECUTABLE_BITS

        fd, temp_name = tempfile.mkstemp(
            prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent
        )
        os.close(fd)
        temp_path = Path(temp_name)
        shutil.copyfile(source, temp_path)
        temp_path.chmod(mode)
        os.replace(temp_path, destination)
    except OSError as e:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)
        raise InternalError(
            f"Failed to copy {source} to {destination}: {e}",
            details={"source": str(source), "destination": str(destination)},
        ) from e

    logger.debug(
        "Atomic copy completed",
        extra={"source": str(source), "destination": str(destination)},
    )


def install_artifact(artifact: Path, live_path: Path) -> None:
    """
    Replace the live executable with the staged artifact.

    Raises:
        InternalError: If the artifact cannot be installed.
    """
    logger.info(f"Replacing executable {live_path} with {artifact}")
    atomic_copy(artifact, live_path, executable=True)

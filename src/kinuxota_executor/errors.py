"""
Error types for the KinuxOTA update executor.

All failures raised inside the executor derive from ExecutorError. The
orchestrator catches them at each step of a transaction and maps them to
either a plain failure (nothing touched yet) or the rollback path, so an
ExecutorError never escapes a running transaction.
"""

from __future__ import annotations

from typing import Any


class ExecutorError(Exception):
    """
    Base exception class for update executor errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "failed_precondition", "unavailable", "runtime_target", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, return codes).

    Example:
        >>> raise ExecutorError(
        ...     error_code="failed_precondition",
        ...     message="Staged artifact not found",
        ...     details={"staging_dir": "/tmp/kinuxota/updates"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an ExecutorError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for logging.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(ExecutorError):
    """
    Error raised when the executor is invoked with invalid arguments.

    Used for request validation failures such as an empty version string.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class FailedPreconditionError(ExecutorError):
    """
    Error raised when a precondition of the transaction is not met.

    Raised before the live executable is mutated: missing or ambiguous
    staged artifact, unreadable live executable, backup directory that
    cannot be created.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class UnavailableError(ExecutorError):
    """
    Error raised when a host tool the executor relies on is unavailable.

    Typically systemctl missing or not answering within its timeout.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class RuntimeTargetError(ExecutorError):
    """
    Error raised when stopping or starting the runtime target actively fails.

    A process that is already gone is not an error; a stop or start command
    that reports failure, or a process we are not allowed to signal, is.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RuntimeTargetError."""
        super().__init__(
            error_code="runtime_target", message=message, details=details
        )


class InternalError(ExecutorError):
    """
    Error raised for unexpected internal errors.

    Covers invalid state transitions, I/O failures while replacing the live
    executable and a backup that vanished mid-transaction.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)

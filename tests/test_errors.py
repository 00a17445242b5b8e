"""
Tests for the errors module.

This test module validates:
- ExecutorError base class functionality
- Error subclasses and their codes
- Error serialization (to_dict)
"""

from __future__ import annotations

import pytest

from kinuxota_executor.errors import (
    ExecutorError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    RuntimeTargetError,
    UnavailableError,
)

# =============================================================================
# Tests for ExecutorError Base Class
# =============================================================================


class TestExecutorError:
    """Tests for ExecutorError base class."""

    def test_init_with_all_args(self) -> None:
        """Test ExecutorError initialization with all arguments."""
        error = ExecutorError(
            error_code="test_error",
            message="Test error message",
            details={"path": "/usr/local/bin/kinuxota_client"},
        )

        assert error.error_code == "test_error"
        assert error.message == "Test error message"
        assert error.details == {"path": "/usr/local/bin/kinuxota_client"}

    def test_details_default_to_empty_dict(self) -> None:
        """Test ExecutorError without details."""
        error = ExecutorError(error_code="test_error", message="Test message")
        assert error.details == {}

    def test_str_is_message(self) -> None:
        """Test ExecutorError string representation."""
        error = ExecutorError(error_code="test_error", message="Test error message")
        assert str(error) == "Test error message"

    def test_repr_includes_fields(self) -> None:
        """Test ExecutorError repr representation."""
        error = ExecutorError(error_code="code", message="msg", details={"a": 1})
        assert repr(error) == "ExecutorError(error_code='code', message='msg', details={'a': 1})"

    def test_to_dict(self) -> None:
        """Test serialization to a dictionary."""
        error = ExecutorError(error_code="code", message="msg", details={"a": 1})
        assert error.to_dict() == {
            "error_code": "code",
            "message": "msg",
            "details": {"a": 1},
        }


# =============================================================================
# Tests for Error Subclasses
# =============================================================================


class TestErrorSubclasses:
    """Tests for the specific error classes."""

    @pytest.mark.parametrize(
        ("error_class", "expected_code"),
        [
            (InvalidArgumentError, "invalid_argument"),
            (FailedPreconditionError, "failed_precondition"),
            (UnavailableError, "unavailable"),
            (RuntimeTargetError, "runtime_target"),
            (InternalError, "internal"),
        ],
    )
    def test_error_codes(
        self, error_class: type[ExecutorError], expected_code: str
    ) -> None:
        """Test that each subclass carries its error code."""
        error = error_class("something went wrong", details={"k": "v"})

        assert isinstance(error, ExecutorError)
        assert error.error_code == expected_code
        assert error.message == "something went wrong"
        assert error.details == {"k": "v"}

    def test_subclass_can_be_caught_as_base(self) -> None:
        """Test that subclasses are caught by an ExecutorError handler."""
        with pytest.raises(ExecutorError) as exc_info:
            raise RuntimeTargetError("kill refused")

        assert exc_info.value.error_code == "runtime_target"

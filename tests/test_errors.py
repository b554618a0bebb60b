"""
Tests for the errors module.

This test module validates:
- UpdateError base class functionality
- Error subclasses and their stable codes
- Error serialization (to_dict)
"""

from __future__ import annotations

import pytest

from safe_update import errors
from safe_update.errors import (
    BackupDirNotWritableError,
    InsufficientDiskSpaceError,
    SizeMismatchError,
    UpdateError,
    UpdateInProgressError,
)
from safe_update.updates.messages import known_codes

# =============================================================================
# Tests for UpdateError Base Class
# =============================================================================


class TestUpdateError:
    """Tests for UpdateError base class."""

    def test_init_with_all_args(self) -> None:
        """Test UpdateError initialization with all arguments."""
        error = UpdateError(
            "Test error message",
            details={"key": "value"},
            error_code="test_error",
        )

        assert error.error_code == "test_error"
        assert error.message == "Test error message"
        assert error.details == {"key": "value"}

    def test_init_with_minimal_args(self) -> None:
        """Test UpdateError defaults."""
        error = UpdateError("Test message")

        assert error.error_code == "internal"
        assert error.details == {}

    def test_str_representation(self) -> None:
        """Test UpdateError string representation."""
        assert str(UpdateError("Test error message")) == "Test error message"

    def test_repr_representation(self) -> None:
        """Test UpdateError repr includes code, message and details."""
        error = SizeMismatchError("Size off", details={"actual_size": 1})
        text = repr(error)

        assert text.startswith("SizeMismatchError(")
        assert "'size_mismatch'" in text
        assert "'actual_size': 1" in text

    def test_to_dict(self) -> None:
        """Test serialization to a dictionary."""
        error = InsufficientDiskSpaceError(
            "Not enough space",
            details={"required_bytes": 100, "available_bytes": 10},
        )

        assert error.to_dict() == {
            "error_code": "insufficient_disk_space",
            "message": "Not enough space",
            "details": {"required_bytes": 100, "available_bytes": 10},
        }

    def test_override_does_not_change_class_code(self) -> None:
        """Test that a per-instance code leaves the class code alone."""
        error = BackupDirNotWritableError("x", error_code="custom")

        assert error.error_code == "custom"
        assert BackupDirNotWritableError.error_code == "backup_dir_not_writable"


# =============================================================================
# Tests for Subclasses
# =============================================================================


def _all_error_classes() -> list[type[UpdateError]]:
    return [
        obj
        for obj in vars(errors).values()
        if isinstance(obj, type) and issubclass(obj, UpdateError) and obj is not UpdateError
    ]


class TestErrorSubclasses:
    """Tests for the UpdateError subclasses."""

    @pytest.mark.parametrize("error_cls", _all_error_classes(), ids=lambda c: c.__name__)
    def test_subclass_is_catchable_as_update_error(self, error_cls: type[UpdateError]) -> None:
        """Test every subclass is an UpdateError with its own code."""
        with pytest.raises(UpdateError) as exc_info:
            raise error_cls("boom")

        assert exc_info.value.error_code == error_cls.error_code
        assert exc_info.value.error_code != "internal"

    def test_codes_are_unique(self) -> None:
        """Test that no two error classes share a code."""
        codes = [cls.error_code for cls in _all_error_classes()]
        assert len(codes) == len(set(codes))

    def test_every_code_has_a_message(self) -> None:
        """Test that every error code has a dedicated user message."""
        codes = {cls.error_code for cls in _all_error_classes()}
        assert codes <= known_codes()

    def test_update_in_progress_code(self) -> None:
        """Test the lock contention code."""
        assert UpdateInProgressError("busy").error_code == "update_in_progress"

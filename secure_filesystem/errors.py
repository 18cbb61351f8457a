"""Error types for the secure filesystem server.

Every failure raised by path resolution or patch application belongs to a
closed set of kinds, so callers can branch on ``error.kind`` instead of
matching message text. ``str(error)`` is always a human-readable message
that names the offending path or line range.
"""

from enum import Enum
from pathlib import Path
from typing import Optional, Union


class ErrorKind(str, Enum):
    """Closed enumeration of failure kinds."""

    ACCESS_DENIED = "access_denied"
    PARENT_MISSING = "parent_missing"
    NO_ANCHOR_FOUND = "no_anchor_found"
    INVALID_RANGE = "invalid_range"
    IO_FAILURE = "io_failure"


class FilesystemError(Exception):
    """Base class for all typed filesystem failures."""

    kind: ErrorKind = ErrorKind.IO_FAILURE

    def __init__(
        self,
        message: str,
        path: Optional[Union[str, Path]] = None,
        cause: Optional[BaseException] = None,
    ):
        """Initialize the error.

        Args:
            message: Human-readable description of the failure
            path: Path the failure relates to, if any
            cause: Underlying exception, if any
        """
        super().__init__(message)
        self.message = message
        self.path = str(path) if path is not None else None
        self.cause = cause

    def to_dict(self) -> dict:
        """Convert to dictionary representation.

        Returns:
            Dictionary with the error kind and its structured fields
        """
        return {
            "kind": self.kind.value,
            "message": self.message,
            "path": self.path,
            "cause": str(self.cause) if self.cause is not None else None,
        }


class AccessDeniedError(FilesystemError):
    """A requested or resolved path escapes every allowed directory."""

    kind = ErrorKind.ACCESS_DENIED


class ParentMissingError(FilesystemError):
    """No real parent directory exists for a path that does not exist yet."""

    kind = ErrorKind.PARENT_MISSING


class NoAnchorFoundError(AccessDeniedError):
    """The upward walk reached the filesystem root without an existing ancestor."""

    kind = ErrorKind.NO_ANCHOR_FOUND


class InvalidRangeError(FilesystemError):
    """A line range is out of bounds, inverted or overlaps another range."""

    kind = ErrorKind.INVALID_RANGE

    def __init__(
        self,
        message: str,
        start_line: int,
        end_line: int,
        line_count: Optional[int] = None,
        path: Optional[Union[str, Path]] = None,
    ):
        super().__init__(message, path=path)
        self.start_line = start_line
        self.end_line = end_line
        self.line_count = line_count

    def to_dict(self) -> dict:
        result = super().to_dict()
        result.update(
            {
                "start_line": self.start_line,
                "end_line": self.end_line,
                "line_count": self.line_count,
            }
        )
        return result


class IOFailureError(FilesystemError):
    """An underlying read, write or stat call failed."""

    kind = ErrorKind.IO_FAILURE

"""
Error types for StreamDB.

This module defines all exception types raised by the server:
- StreamDbError: Base exception
- NotFoundError: Stream or closure member missing
- ForbiddenError: Authorization failure
- MissingDispositionError: Linked events exist but no merge/detach choice
- InvalidOperationError: Request is structurally impossible
- InvalidStateError: Stored data violates an invariant (e.g. a cycle)
- UnexpectedError: Storage-layer failure

Invariants:
    - All errors inherit from StreamDbError
    - Validation errors are raised before any mutation
    - UnexpectedError always chains the original storage exception
"""

from __future__ import annotations

from typing import Any


class StreamDbError(Exception):
    """Base exception for all StreamDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "STREAMDB_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Error payload for result objects."""
        return {"error": {"id": self.code, "message": self.message, "data": self.details}}


class NotFoundError(StreamDbError):
    """Resource not found.

    Raised when:
    - Stream doesn't exist
    - Parent stream referenced on creation doesn't exist
    """

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(
            f"Unknown {resource_type} '{resource_id}'",
            code="NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ForbiddenError(StreamDbError):
    """Caller lacks permission on the target stream."""

    def __init__(self, stream_id: str) -> None:
        super().__init__(
            f"Insufficient permissions on stream '{stream_id}'",
            code="FORBIDDEN",
            details={"stream_id": stream_id},
        )
        self.stream_id = stream_id


class MissingDispositionError(StreamDbError):
    """Events refer to the deleted streams and no merge choice was given."""

    def __init__(self, stream_id: str) -> None:
        super().__init__(
            "There are events referring to the deleted items "
            "and the `mergeEventsWithParent` parameter is missing.",
            code="MISSING_DISPOSITION",
            details={"stream_id": stream_id},
        )
        self.stream_id = stream_id


class InvalidOperationError(StreamDbError):
    """Operation cannot be performed on the target.

    Raised when:
    - Merging into the parent of a root stream
    - A stream is made its own parent
    - A system stream is deleted
    """

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, code="INVALID_OPERATION", details=details)


class InvalidStateError(StreamDbError):
    """Stored data breaks an invariant (e.g. the stream tree has a cycle)."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, code="INVALID_STATE", details=details)


class UnexpectedError(StreamDbError):
    """Storage failure during a deletion phase.

    Phases committed before the failure are not rolled back; re-issuing the
    same request completes the work.
    """

    def __init__(self, message: str, phase: str | None = None) -> None:
        super().__init__(message, code="UNEXPECTED_ERROR", details={"phase": phase})
        self.phase = phase

"""Error taxonomy shared by aggregates, repositories and handlers."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    PERMISSION_DENIED = "permission_denied"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    CORRUPT_RECORD = "corrupt_record"
    DISPATCH = "dispatch"


class WorkflowRuntimeError(Exception):
    """Base class for every error the runtime reports as a failed result."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(WorkflowRuntimeError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class InvalidTransitionError(WorkflowRuntimeError):
    """An aggregate method was invoked from a status that does not allow it."""

    kind = ErrorKind.INVALID_TRANSITION


class PermissionDeniedError(WorkflowRuntimeError):
    """The acting user is not the task's recorded assignee."""

    kind = ErrorKind.PERMISSION_DENIED


class ValidationError(WorkflowRuntimeError):
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        super().__init__(message)
        self.fields = fields or []


class ConcurrencyConflictError(WorkflowRuntimeError):
    """The stored version no longer matches the version that was loaded."""

    kind = ErrorKind.CONFLICT

    def __init__(self, aggregate_id: str, expected_version: int) -> None:
        super().__init__(
            f"Version conflict for {aggregate_id}: expected version {expected_version}"
        )
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version


class CorruptRecordError(WorkflowRuntimeError):
    """A stored payload could not be decoded."""

    kind = ErrorKind.CORRUPT_RECORD


class EventDispatchError(WorkflowRuntimeError):
    """Events were saved with their aggregate but could not be published.

    ``undelivered`` holds the domain events still to be published, in order.
    """

    kind = ErrorKind.DISPATCH

    def __init__(self, message: str, undelivered: tuple = ()) -> None:
        super().__init__(message)
        self.undelivered = undelivered

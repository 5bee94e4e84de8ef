"""
Error taxonomy for Task Tracker operations.

Every fault is classified once, where it is detected, and carries the HTTP
status the API layer reports for it. Anything that is not a TaskTrackerError
is a server fault and is surfaced to callers as a generic failure.
"""

from typing import Optional


class TaskTrackerError(Exception):
    """Base class for client-facing faults."""

    status_code: int = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationFault(TaskTrackerError):
    """Client input is malformed or outside the allowed domain."""

    status_code = 400


class InvalidSortField(ValidationFault):
    """Requested sort key is not in the allow-list."""

    def __init__(self, field: str):
        super().__init__("Invalid sort field")
        self.field = field


class EmptyPatch(ValidationFault):
    """Update carried no fields; nothing was executed."""

    def __init__(self):
        super().__init__("Update must contain at least one field")


class NotFoundFault(TaskTrackerError):
    """Referenced row does not exist."""

    status_code = 404

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found")
        self.resource = resource


class ConflictFault(TaskTrackerError):
    """Uniqueness violation or optimistic-lock mismatch."""

    status_code = 409

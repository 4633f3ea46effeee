"""
Platform-wide exception hierarchy.

Services raise these types; the application factory registers one error
handler per type and turns them into the standard JSON error body
(see ``shopfloor.utils.errors.api_error``).  Each class carries the
machine-readable code it maps to, so handlers never guess.

Usage:
    from shopfloor.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="OperationPlan", resource_id=42)
    raise ValidationError("part_name is required", details={"part_name": "required"})
"""

from shopfloor.utils.errors import E


class PlatformError(Exception):
    """Base class for every domain error raised by the service layer."""

    code = E.INTERNAL

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(PlatformError):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "OperationPlan").
        resource_id: The PK that was looked up.
    """

    code = E.NOT_FOUND

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(PlatformError):
    """Raised when caller-supplied input is malformed or violates a rule
    that does not depend on the current state of a record.

    Maps to HTTP 400.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    code = E.VALIDATION_INVALID


class ConflictError(PlatformError):
    """Raised when an operation would duplicate a unique value.

    Maps to HTTP 409.
    """

    code = E.CONFLICT_DUPLICATE

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(
            f"{resource} with {field}={value!r} already exists",
            details={field: "duplicate"},
        )


class InvalidStateError(PlatformError):
    """Raised when the entity is not in a state that permits the operation
    (e.g. approving a plan that is still a draft).

    Maps to HTTP 409.
    """

    code = E.CONFLICT_STATE

    def __init__(self, message: str, current_status: str | None = None) -> None:
        self.current_status = current_status
        details = {"current_status": current_status} if current_status else None
        super().__init__(message, details=details)


class ForbiddenError(PlatformError):
    """Raised when the acting user may not perform the operation.

    Maps to HTTP 403.
    """

    code = E.FORBIDDEN


class AlreadyProcessedError(PlatformError):
    """Raised when an approval record has already been decided, including
    the case where a concurrent caller decided it first.

    Maps to HTTP 409.
    """

    code = E.ALREADY_PROCESSED


class IncompletePrerequisiteError(PlatformError):
    """Raised when a plan cannot leave draft because something required
    is missing (an approver for a role, or the plan's steps).

    Maps to HTTP 422.
    """

    code = E.INCOMPLETE_PREREQUISITE

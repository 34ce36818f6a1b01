"""
Portal-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from portal.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Request", resource_id=42)
    raise ValidationError("Reason is required", details={"reason": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "Request", "ApprovalStep").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ForbiddenError(Exception):
    """Raised when the acting user is not allowed to perform the operation.

    Maps to HTTP 403.
    """

    def __init__(self, message: str = "Not authorized", user_id: int | None = None) -> None:
        self.user_id = user_id
        super().__init__(message)


class InvalidStateError(Exception):
    """Raised when an entity is not in a state that permits the operation.

    Maps to HTTP 409.

    Args:
        message: Human-readable explanation.
        current_status: The status the entity was found in, if relevant.
    """

    def __init__(self, message: str, current_status: str | None = None) -> None:
        self.current_status = current_status
        super().__init__(message)


class QuizRequiredError(InvalidStateError):
    """Raised when an approval is attempted before the step's quiz is passed.

    Unlike other state errors this one is side-effecting: the step and its
    request have already been moved to their survey-blocked statuses and
    committed when it is raised.
    """

    def __init__(self, step_id: int, message: str = "Quiz must be completed before approval") -> None:
        self.step_id = step_id
        super().__init__(message, current_status="requires_survey")


class RoutingError(Exception):
    """Raised when an approval step's approver cannot be resolved at submission.

    Maps to HTTP 422. Nothing is persisted for the aborted submission.
    """

    def __init__(self, step_order: int, approver_type: str, message: str | None = None) -> None:
        self.step_order = step_order
        self.approver_type = approver_type
        super().__init__(
            message or f"No approver could be resolved for step {step_order} ({approver_type})"
        )


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)

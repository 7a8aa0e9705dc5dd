"""Error handling utilities."""

from typing import Any, Optional


class FarmVisitError(Exception):
    """Base exception for the farm visit backend."""
    pass


class ValidationError(FarmVisitError):
    """A required field is missing or invalid."""

    def __init__(self, message: str, field_errors: Optional[dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.field_errors = dict(field_errors or {})

    @classmethod
    def from_pydantic(cls, exc: Any, message: str = "Invalid values") -> "ValidationError":
        """Flatten a pydantic ValidationError into a field error map."""
        field_errors = {}
        for error in exc.errors():
            field = ".".join(str(part) for part in error.get("loc", ())) or "__root__"
            field_errors.setdefault(field, error.get("msg", "Invalid value"))
        return cls(message, field_errors)


class MissingFieldError(ValidationError):
    """A field required by a lifecycle transition is absent."""

    def __init__(self, field: str, message: Optional[str] = None):
        message = message or f'Missing required field "{field}"'
        super().__init__(message, {field: message})
        self.field = field


class InvalidTransitionError(FarmVisitError):
    """The requested action is not legal in the visit's current state."""

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        visit_status: Optional[str] = None,
        approval_status: Optional[str] = None,
    ):
        super().__init__(message)
        self.action = action
        self.visit_status = visit_status
        self.approval_status = approval_status


class NotFoundError(FarmVisitError):
    """The visit (or its detail record) no longer exists."""

    def __init__(self, message: str, schedule_id: Optional[str] = None):
        super().__init__(message)
        self.schedule_id = schedule_id


class ActionInProgressError(FarmVisitError):
    """The same action is already running for this session."""
    pass


class GatewayError(FarmVisitError):
    """The service layer behind the mutation gateway failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class NetworkError(GatewayError):
    """The service could not be reached."""
    pass


class ResponseFormatError(GatewayError):
    """The service answered with a payload that does not match the visit schema."""
    pass


class SupabaseError(GatewayError):
    """Supabase operation error."""
    pass

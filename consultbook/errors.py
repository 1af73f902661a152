"""
Domain error taxonomy

Services raise these instead of HTTPException so the same rules hold when the
engine is driven by the worker. main.py renders them as JSON responses.
"""

from typing import Optional


class BookingError(Exception):
    """Base class for every rule violation raised by the booking core"""

    status_code = 400
    code = "booking_error"
    retryable = False

    def __init__(self, detail: str, code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"detail": self.detail, "code": self.code, "retryable": self.retryable}


class ValidationError(BookingError):
    """Malformed input - rejected before any write"""

    status_code = 422
    code = "validation_error"


class NotFoundError(BookingError):
    status_code = 404
    code = "not_found"


class PermissionDeniedError(BookingError):
    status_code = 403
    code = "forbidden"


class ConflictError(BookingError):
    """Slot taken or duplicate completion; the caller may re-poll and retry"""

    status_code = 409
    code = "conflict"
    retryable = True


class StateTransitionError(BookingError):
    """Invalid status change - never silently coerced"""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, target: str, detail: Optional[str] = None, code: Optional[str] = None):
        super().__init__(detail or f"Cannot move from '{current}' to '{target}'", code)
        self.current = current
        self.target = target


class ExternalDependencyError(BookingError):
    """Payment gateway (or other collaborator) failed or timed out"""

    status_code = 502
    code = "external_dependency_error"
    retryable = True

"""Error taxonomy for trainer assignment and session scheduling."""
from typing import Any


class AllocationError(Exception):
    """Base error. Converted to a JSON response by the app exception handler."""

    status_code = 400
    code = "allocation_error"
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class ValidationError(AllocationError):
    """Malformed input, rejected before any side effect."""

    status_code = 422
    code = "validation_error"


class NotFoundError(AllocationError):
    status_code = 404
    code = "not_found"


class ConflictError(AllocationError):
    """Duplicate allocation or stale state transition. Nothing was mutated."""

    status_code = 409
    code = "conflict"


class CapacityExhaustedError(AllocationError):
    """Every eligible trainer is at cap for the slot. Try another slot."""

    status_code = 503
    code = "capacity_exhausted"
    retryable = True


class GPSMissingError(AllocationError):
    """Student has no valid home coordinates; sessions cannot be generated."""

    status_code = 422
    code = "gps_missing"


class DependencyDegradedError(AllocationError):
    """A read-only collaborator is unavailable. Callers fall back to defaults."""

    status_code = 503
    code = "dependency_degraded"
    retryable = True

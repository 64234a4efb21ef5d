"""
Typed failures for the returns domain.

Every failure is per-request and recoverable by the caller. The API layer
maps ``status_code`` and ``code`` onto the HTTP response.
"""

from typing import Any, Dict, Optional


class ReturnsError(Exception):
    """Base class for all returns domain errors."""

    status_code: int = 400
    code: str = "RETURNS_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(ReturnsError):
    status_code = 404
    code = "NOT_FOUND"


class IllegalTransition(ReturnsError):
    """Target status is not reachable from the current status."""
    status_code = 409
    code = "ILLEGAL_TRANSITION"


class Forbidden(ReturnsError):
    """Actor's role (or identity) may not perform this operation."""
    status_code = 403
    code = "FORBIDDEN"


class PreconditionFailed(ReturnsError):
    """Transition is legal but its preconditions (verified OTP, assigned agent) are not met."""
    status_code = 422
    code = "PRECONDITION_FAILED"


class ConflictingUpdate(ReturnsError):
    """Another writer changed the return first; re-read and retry."""
    status_code = 409
    code = "CONFLICTING_UPDATE"


class NotEligible(ReturnsError):
    """Operation is not available in the return's current state."""
    status_code = 409
    code = "NOT_ELIGIBLE"


class InvalidCode(ReturnsError):
    status_code = 400
    code = "INVALID_CODE"


class CodeExpired(ReturnsError):
    status_code = 400
    code = "CODE_EXPIRED"


class CooldownActive(ReturnsError):
    status_code = 429
    code = "COOLDOWN_ACTIVE"

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(message, {"retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class MissingTaxInfo(ReturnsError):
    """No tax rate could be resolved for one or more return lines."""
    status_code = 422
    code = "MISSING_TAX_INFO"


class AmountExceedsRefundable(ReturnsError):
    status_code = 422
    code = "AMOUNT_EXCEEDS_REFUNDABLE"


class InvalidAmount(ReturnsError):
    status_code = 422
    code = "INVALID_AMOUNT"


class InvalidReturnRequest(ReturnsError):
    """Customer return submission failed validation against the order."""
    status_code = 400
    code = "INVALID_RETURN_REQUEST"

"""
shared/utils/exceptions.py
Domain exceptions raised by the service layer.
main.py turns every AppException into a JSON error envelope.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NOT_FOUND_OR_ILLEGAL_STATE = "NOT_FOUND_OR_ILLEGAL_STATE"
    UNAUTHORIZED = "UNAUTHORIZED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_INVALID = "SESSION_INVALID"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    OTP_NOT_FOUND = "OTP_NOT_FOUND"
    OTP_INVALID_CODE = "OTP_INVALID_CODE"
    OTP_ATTEMPTS_EXHAUSTED = "OTP_ATTEMPTS_EXHAUSTED"
    RATE_LIMITED = "RATE_LIMITED"
    UNAVAILABLE = "UNAVAILABLE"
    LAST_SUPER_ADMIN = "LAST_SUPER_ADMIN"
    SELF_DELETION = "SELF_DELETION"


class AppException(Exception):
    """Base class carrying the HTTP status the error maps to."""

    status_code: int = 500
    error_code: ErrorCode = ErrorCode.UNAVAILABLE

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.error_code.value}
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, code={self.error_code.value})"


class ValidationFailed(AppException):
    status_code = 400
    error_code = ErrorCode.VALIDATION_FAILED


class NotFoundOrIllegalState(AppException):
    """Entity missing or its precondition unmet. The two cases are deliberately merged."""
    status_code = 404
    error_code = ErrorCode.NOT_FOUND_OR_ILLEGAL_STATE


class Unauthorized(AppException):
    status_code = 401
    error_code = ErrorCode.UNAUTHORIZED


class SessionExpired(Unauthorized):
    error_code = ErrorCode.SESSION_EXPIRED

    def __init__(self, message: str = "Session expired"):
        super().__init__(message)


class SessionInvalid(Unauthorized):
    error_code = ErrorCode.SESSION_INVALID

    def __init__(self, message: str = "Invalid session token"):
        super().__init__(message)


class Forbidden(AppException):
    status_code = 403
    error_code = ErrorCode.FORBIDDEN


class Conflict(AppException):
    status_code = 409
    error_code = ErrorCode.CONFLICT


class OTPRejected(AppException):
    """Verification failed. `reason` is one of the OTP_* error codes."""
    status_code = 400

    def __init__(self, reason: ErrorCode, message: Optional[str] = None):
        if message is None:
            message = (
                "Max OTP attempts exceeded"
                if reason == ErrorCode.OTP_ATTEMPTS_EXHAUSTED
                else "Invalid or expired OTP"
            )
        super().__init__(message, error_code=reason)

    @property
    def reason(self) -> ErrorCode:
        return self.error_code


class RateLimited(AppException):
    status_code = 429
    error_code = ErrorCode.RATE_LIMITED


class Unavailable(AppException):
    """An external collaborator (email, geocoding) failed."""
    status_code = 503
    error_code = ErrorCode.UNAVAILABLE


class LastSuperAdmin(AppException):
    status_code = 400
    error_code = ErrorCode.LAST_SUPER_ADMIN

    def __init__(self, message: str = "Cannot remove the last active super admin"):
        super().__init__(message)


class SelfDeletion(AppException):
    status_code = 400
    error_code = ErrorCode.SELF_DELETION

    def __init__(self, message: str = "You cannot delete your own account"):
        super().__init__(message)

"""
Error taxonomy for the Client Verification Portal

Every domain error carries a programmatic code, an optional field name and
an optional suggestion, and maps to one HTTP status. The API layer renders
them through ``api.middleware.create_error_response``.
"""

from typing import Optional


GENERIC_TOKEN_MESSAGE = "This verification link is invalid or has expired."


class PortalError(Exception):
    """Base class for all domain errors

    Attributes:
        code: Error code for programmatic handling
        field: The field that caused the error, if any
        suggestion: Optional hint for fixing the error
    """
    status_code: int = 500
    default_code: str = "PORTAL_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: Optional[str] = None,
        suggestion: Optional[str] = None
    ):
        self.field = field
        self.code = code or self.default_code
        self.suggestion = suggestion
        super().__init__(message)


class ValidationError(PortalError):
    """Bad field, row or file format. User-correctable, never fatal to a batch."""
    status_code = 422
    default_code = "VALIDATION_ERROR"


class NotFoundError(PortalError):
    """Unknown record id or token."""
    status_code = 404
    default_code = "NOT_FOUND"


class ExpiredTokenError(PortalError):
    """Token matched a record but its validity window has passed."""
    status_code = 410
    default_code = "TOKEN_EXPIRED"


class InvalidTokenError(PortalError):
    """Public form of any token problem; never says which one."""
    status_code = 404
    default_code = "INVALID_OR_EXPIRED_TOKEN"

    def __init__(self, message: str = GENERIC_TOKEN_MESSAGE, **kwargs):
        super().__init__(message, **kwargs)


class AuthError(PortalError):
    """Bad credentials, expired session or bad second factor."""
    status_code = 401
    default_code = "AUTHENTICATION_FAILED"


class DispatchError(PortalError):
    """Mail transport failure. Reported alongside otherwise-successful work."""
    status_code = 502
    default_code = "DISPATCH_FAILED"


class ConflictError(PortalError):
    """A concurrent request consumed the token first."""
    status_code = 409
    default_code = "CONFLICT"


class UploadTooLargeError(ValidationError):
    """Uploaded file exceeds the configured size limit."""
    status_code = 413
    default_code = "FILE_TOO_LARGE"

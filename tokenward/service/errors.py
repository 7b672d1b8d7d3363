from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of domain outcomes surfaced to API clients."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_REVOKED = "session_revoked"
    SESSION_EXPIRED = "session_expired"
    REAUTHENTICATION_REQUIRED = "reauthentication_required"
    TOKEN_INVALID = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_ALREADY_USED = "token_already_used"
    ACCOUNT_NOT_FOUND = "account_not_found"
    EMAIL_IN_USE = "email_in_use"
    PERMISSION_DENIED = "permission_denied"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``.
    Generic codes:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Domain errors additionally set ``kind`` and use its value as error_code.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: Optional[ErrorKind] = None
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        elif self.kind is not None:
            self.error_code = self.kind.value
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


# Authentication outcomes


class InvalidCredentials(AuthenticationError):
    """Unknown email or wrong password; the two are indistinguishable."""
    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "invalid credentials"


class AccountDeactivated(ForbiddenError):
    kind = ErrorKind.ACCOUNT_DEACTIVATED
    default_message = "account is deactivated"


class EmailNotVerified(ForbiddenError):
    kind = ErrorKind.EMAIL_NOT_VERIFIED
    default_message = "email address is not verified"


# Refresh session outcomes. These stay inside the service layer; the refresh
# boundary collapses them into ReauthenticationRequired.


class SessionError(AuthenticationError):
    default_message = "session is not usable"


class SessionNotFound(SessionError):
    kind = ErrorKind.SESSION_NOT_FOUND
    default_message = "session not found"


class SessionRevoked(SessionError):
    kind = ErrorKind.SESSION_REVOKED
    default_message = "session revoked"


class SessionExpired(SessionError):
    kind = ErrorKind.SESSION_EXPIRED
    default_message = "session expired"


class ReauthenticationRequired(AuthenticationError):
    kind = ErrorKind.REAUTHENTICATION_REQUIRED
    default_message = "please sign in again"


# Token outcomes


class TokenInvalid(AuthenticationError):
    kind = ErrorKind.TOKEN_INVALID
    default_message = "invalid token"


class TokenExpired(ServiceError):
    """Expired token; 400 for one-time tokens, raised with 401 for access tokens."""
    status_code = 400
    kind = ErrorKind.TOKEN_EXPIRED
    default_message = "token expired"


class TokenNotFound(ValidationError):
    kind = ErrorKind.TOKEN_NOT_FOUND
    default_message = "invalid or unknown token"


class TokenAlreadyUsed(ValidationError):
    kind = ErrorKind.TOKEN_ALREADY_USED
    default_message = "token already used"


# Account outcomes


class AccountNotFound(NotFoundError):
    kind = ErrorKind.ACCOUNT_NOT_FOUND
    default_message = "account not found"


class EmailAlreadyInUse(ConflictError):
    kind = ErrorKind.EMAIL_IN_USE
    default_message = "email already in use"


class PermissionDenied(ForbiddenError):
    kind = ErrorKind.PERMISSION_DENIED
    default_message = "permission denied"


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "InvalidCredentials",
    "AccountDeactivated",
    "EmailNotVerified",
    "SessionError",
    "SessionNotFound",
    "SessionRevoked",
    "SessionExpired",
    "ReauthenticationRequired",
    "TokenInvalid",
    "TokenExpired",
    "TokenNotFound",
    "TokenAlreadyUsed",
    "AccountNotFound",
    "EmailAlreadyInUse",
    "PermissionDenied",
]

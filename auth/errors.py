"""
auth/errors.py -- The closed set of failures the auth layer may surface.

Every public failure is one AuthError subclass with a fixed machine-readable
code, HTTP status, and generic message. Transports map errors by type
(status_code / code attributes), never by inspecting message text.

Low-level causes stay narrow and private:
  - TokenVerificationError subclasses come from auth/tokens.py.
  - SQLAlchemy errors come from auth/store.py (timeouts become StoreUnavailable).
The gateway and rotation coordinator collapse them into the uniform public
errors below so that callers cannot tell "unknown email" from "wrong password"
or "revoked" from "expired" from "never existed" [enumeration / replay oracle].

Layer rule: no imports from api/, ws/, or core/. Pure stdlib.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    SESSION_INVALID = "session_invalid"
    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    WEAK_PASSWORD = "weak_password"
    INCORRECT_PASSWORD = "incorrect_password"
    EMAIL_ALREADY_EXISTS = "email_already_exists"
    STORE_UNAVAILABLE = "store_unavailable"
    INTERNAL_ERROR = "internal_error"


class AuthError(Exception):
    """Base class. Subclasses pin code, status_code and message."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500
    message: str = "An unexpected error occurred."
    retryable: bool = False

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = ErrorCode.INVALID_CREDENTIALS
    status_code = 401
    message = "Invalid email or password."


class SessionInvalid(AuthError):
    code = ErrorCode.SESSION_INVALID
    status_code = 401
    message = "Invalid or expired refresh token."


class MissingToken(AuthError):
    code = ErrorCode.MISSING_TOKEN
    status_code = 401
    message = "Authentication token is required."


class InvalidOrExpiredAccessToken(AuthError):
    code = ErrorCode.INVALID_TOKEN
    status_code = 401
    message = "Invalid or expired authentication token."


class AccountDeactivated(AuthError):
    code = ErrorCode.ACCOUNT_DEACTIVATED
    status_code = 403
    message = "Your account has been deactivated."


class WeakPassword(AuthError):
    """Raised with every violated rule, not just the first one."""

    code = ErrorCode.WEAK_PASSWORD
    status_code = 400
    message = "Password does not meet security requirements."

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__()


class IncorrectPassword(AuthError):
    code = ErrorCode.INCORRECT_PASSWORD
    status_code = 400
    message = "Current password is incorrect."


class EmailAlreadyExists(AuthError):
    code = ErrorCode.EMAIL_ALREADY_EXISTS
    status_code = 409
    message = "An account with this email already exists."


class StoreUnavailable(AuthError):
    code = ErrorCode.STORE_UNAVAILABLE
    status_code = 503
    message = "Service temporarily unavailable."
    retryable = True


class InternalFailure(AuthError):
    code = ErrorCode.INTERNAL_ERROR
    status_code = 500
    message = "An unexpected error occurred."

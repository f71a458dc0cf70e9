"""
API request and response models for ChatAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Account

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Password strength is not checked here -- the gateway evaluates every rule
    and reports all violations at once, which field constraints cannot do.
    max_length only caps request size. Passwords are taken byte-for-byte;
    only the email is trimmed.
    """

    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=1, max_length=1024)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=512)


class LogoutRequest(BaseModel):
    """Body for POST /api/v1/auth/logout. The token is optional -- logout always succeeds."""

    refresh_token: Optional[str] = Field(default=None, max_length=512)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=1024)
    new_password: str = Field(min_length=1, max_length=1024)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of an account. The password hash never leaves the auth layer."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "UserResponse":
        """Factory Method -- the mapping lives beside the output model."""
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            is_active=account.is_active,
            created_at=account.created_at,
            last_login_at=account.last_login_at,
        )


class TokenResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class AuthResponse(TokenResponse):
    """Response for POST /api/v1/auth/register and /login."""

    user: UserResponse


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: int
    email: str
    active: bool
    user: UserResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class LogoutAllResponse(MessageResponse):
    sessions_revoked: int


class SessionStatusResponse(BaseModel):
    """Response for GET /api/v1/auth/session. Anonymous callers get authenticated=False."""

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    account_id: Optional[int] = None
    email: Optional[str] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    detail is only populated in DEBUG mode. violations is only present for
    weak_password.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    violations: Optional[list[str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)

"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
gateway do the work; these types only carry shape between layers.

Persisted: Account, RefreshSession.
Ephemeral: AccessClaims (lives inside a signed token), Principal (derived by
authorization), TokenPair / AuthResult (returned to transports),
StrengthReport (password policy output).

Layer rule: no imports from api/, ws/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SessionState(str, Enum):
    """Lifecycle of one refresh-token link. VALID is the only non-terminal state."""

    VALID = "valid"
    ROTATED = "rotated"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass
class Account:
    """A registered identity.

    email is stored lower-cased and trimmed; lookups normalize the same way.
    password_hash is a bcrypt hash string and never leaves the auth layer.
    """

    email: str
    password_hash: str
    id: int | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    last_login_at: datetime | None = None


@dataclass
class RefreshSession:
    """One link of a refresh-token rotation chain.

    token_hash is SHA-256 of the opaque token; the raw token is returned to
    the client once and never persisted. replaced_by points at the successor
    link when this one was rotated.
    """

    account_id: int
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    id: int | None = None
    revoked: bool = False
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    replaced_by: int | None = None

    def state(self, now: datetime) -> SessionState:
        """Derive the link state. Expiry is detected lazily, on lookup."""
        if self.revoked:
            return SessionState.ROTATED if self.revoked_reason == "rotated" else SessionState.REVOKED
        if self.expires_at <= now:
            return SessionState.EXPIRED
        return SessionState.VALID


@dataclass(frozen=True)
class AccessClaims:
    """Claims carried by a verified access token."""

    account_id: int
    email: str
    issued_at: datetime
    expires_at: datetime
    issuer: str
    audience: str


@dataclass(frozen=True)
class Principal:
    """The authenticated identity attached to a request or connection."""

    account_id: int
    email: str
    active: bool


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime


@dataclass(frozen=True)
class AuthResult:
    """Outcome of register/authenticate: who logged in plus their new session."""

    principal: Principal
    tokens: TokenPair
    account: Account


@dataclass
class StrengthReport:
    valid: bool
    violations: list[str] = field(default_factory=list)

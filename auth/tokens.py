"""
auth/tokens.py -- Access-token issuance and verification, refresh-token minting.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY and
       carry account_id, email, iat, exp, iss, and aud. Lifetime is fixed at
       issuance (ACCESS_TOKEN_TTL_SECONDS); nothing extends a token in place.

  Verification: raises one narrow TokenVerificationError subclass per cause
       (malformed, bad signature, wrong issuer/audience, expired). The gateway
       collapses all four into a single public 401 so callers learn nothing
       about which check failed.

       python-jose reports a bad signature and a garbled segment with the same
       JWTError type. The header and claims are therefore parsed unverified
       first: anything that fails there is malformed, so a JWTError from the
       signed decode afterwards can only be the signature.

       Expiry is checked here against the injected clock rather than by jose,
       with zero leeway: a token is dead at exactly iat + TTL.

  Key rotation: PREVIOUS_SECRET_KEYS are tried after SECRET_KEY for
       verification only. New tokens are always signed with SECRET_KEY.

  Refresh tokens: secrets.token_hex(64) gives 512 bits of entropy with no
       embedded claims. They are only meaningful to the session store, which
       persists a SHA-256 digest, never the raw value.

Layer rule: no imports from api/ or ws/. Settings are passed in by the caller;
this module never calls get_settings().
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.models import AccessClaims

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("chatauth.auth.tokens")

_ALGORITHM = "HS256"

ACCESS_COOKIE_NAME = "access_token"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Verification failures (internal -- never shown to clients verbatim)
# ---------------------------------------------------------------------------


class TokenVerificationError(Exception):
    """Base class for every reason an access token can be rejected."""


class TokenMalformed(TokenVerificationError):
    """Not a decodable HS256 JWS, or a required claim is missing/ill-typed."""


class TokenSignatureInvalid(TokenVerificationError):
    """Signature does not verify under any configured key."""


class TokenClaimsInvalid(TokenVerificationError):
    """Issuer or audience does not match this deployment."""


class TokenExpired(TokenVerificationError):
    pass


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


class SessionIssuer:
    """Mints signed access tokens and opaque refresh tokens.

    Usage:
        issuer = SessionIssuer(settings)
        token, claims = issuer.issue_access_token(account.id, account.email)
        refresh = issuer.issue_refresh_token()
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utc_now) -> None:
        self._settings = settings
        self._clock = clock

    @property
    def access_ttl(self) -> int:
        return self._settings.access_token_ttl_seconds

    @property
    def refresh_ttl(self) -> int:
        return self._settings.refresh_token_ttl_seconds

    def issue_access_token(self, account_id: int, email: str) -> tuple[str, AccessClaims]:
        """Encode a signed JWT for the account.

        iat is whole seconds (JWT NumericDate); exp = iat + ACCESS_TOKEN_TTL_SECONDS.
        Returns the compact token and the claims it carries.
        """
        iat = int(self._clock().timestamp())
        exp = iat + self._settings.access_token_ttl_seconds
        payload = {
            "account_id": account_id,
            "email": email,
            "iat": iat,
            "exp": exp,
            "iss": self._settings.jwt_issuer,
            "aud": self._settings.jwt_audience,
        }
        token = jwt.encode(payload, self._settings.secret_key, algorithm=_ALGORITHM)
        claims = AccessClaims(
            account_id=account_id,
            email=email,
            issued_at=datetime.fromtimestamp(iat, timezone.utc),
            expires_at=datetime.fromtimestamp(exp, timezone.utc),
            issuer=self._settings.jwt_issuer,
            audience=self._settings.jwt_audience,
        )
        return token, claims

    def issue_refresh_token(self) -> str:
        """Return a fresh opaque refresh token: 64 random bytes as 128 hex chars."""
        return secrets.token_hex(64)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TokenVerifier:
    """Stateless access-token checks. Never consults the account store."""

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utc_now) -> None:
        self._settings = settings
        self._clock = clock

    def verify(self, token: str) -> AccessClaims:
        """Return the token's claims or raise a TokenVerificationError subclass."""
        if not isinstance(token, str) or token.count(".") != 2:
            raise TokenMalformed("token is not a three-segment JWS")
        try:
            header = jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenMalformed("token segments could not be decoded") from exc
        if header.get("alg") != _ALGORITHM:
            raise TokenMalformed("unexpected signing algorithm")

        payload = self._decode_with_any_key(token)
        claims = _claims_from_payload(payload)

        if self._clock() >= claims.expires_at:
            raise TokenExpired("token has expired")
        return claims

    def _decode_with_any_key(self, token: str) -> dict:
        for key in self._settings.verification_keys:
            try:
                return jwt.decode(
                    token,
                    key,
                    algorithms=[_ALGORITHM],
                    audience=self._settings.jwt_audience,
                    issuer=self._settings.jwt_issuer,
                    options={"verify_exp": False},
                )
            except JWTClaimsError as exc:
                # Claims are only checked after the signature verified.
                raise TokenClaimsInvalid("issuer or audience mismatch") from exc
            except JWTError:
                continue
        raise TokenSignatureInvalid("signature did not verify under any key")


def _claims_from_payload(payload: dict) -> AccessClaims:
    account_id = payload.get("account_id")
    email = payload.get("email")
    iat = payload.get("iat")
    exp = payload.get("exp")
    if not isinstance(account_id, int) or isinstance(account_id, bool):
        raise TokenMalformed("account_id claim missing or not an integer")
    if not isinstance(email, str) or not email:
        raise TokenMalformed("email claim missing or not a string")
    for value in (iat, exp):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            raise TokenMalformed("iat/exp claim missing or not numeric")
    return AccessClaims(
        account_id=account_id,
        email=email,
        issued_at=datetime.fromtimestamp(iat, timezone.utc),
        expires_at=datetime.fromtimestamp(exp, timezone.utc),
        issuer=payload.get("iss", ""),
        audience=payload.get("aud", ""),
    )


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, max_age: int, secure: bool = False) -> None:
    """Write the access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation for most cases.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the access-token TTL so both expire together.
    """
    response.set_cookie(
        ACCESS_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )


def clear_auth_cookie(response, secure: bool = False) -> None:
    response.delete_cookie(ACCESS_COOKIE_NAME, httponly=True, samesite="lax", secure=secure)


def expires_in(claims: AccessClaims) -> int:
    """Seconds between issuance and expiry, as reported to clients."""
    return int((claims.expires_at - claims.issued_at) / timedelta(seconds=1))

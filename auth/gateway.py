"""
auth/gateway.py -- AuthenticationGateway, the one entry point transports call.

Both the HTTP routes and the WebSocket handshake go through this class:
credentials in, AuthResult out; raw token in, Principal out. Everything below
it (bcrypt, JWT, SQL) raises narrow causes which are collapsed here into the
closed AuthError set from auth/errors.py.

Security design decisions:
  [C1] Unknown email and wrong password raise the same InvalidCredentials and
       cost one bcrypt verification each (verify_dummy on the unknown path).

  Deactivation: authorize() re-reads the account on every call, so flipping
       is_active locks out already-issued access tokens immediately. The
       password is checked before the active flag so a deactivated account
       is only revealed to someone who knows its password.

  Password change revokes every refresh session for the account. Access
       tokens already issued stay valid until their short TTL runs out.

Layer rule: no imports from api/ or ws/. Settings are passed in; this module
never calls get_settings().
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AccountDeactivated,
    EmailAlreadyExists,
    IncorrectPassword,
    InvalidCredentials,
    InvalidOrExpiredAccessToken,
    MissingToken,
    WeakPassword,
)
from auth.models import Account, AuthResult, Principal, StrengthReport, TokenPair
from auth.passwords import CredentialVerifier
from auth.rotation import RotationCoordinator
from auth.store import AccountStore, SessionStore
from auth.tokens import SessionIssuer, TokenVerificationError, TokenVerifier, utc_now

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("chatauth.auth.gateway")


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthenticationGateway:
    """Orchestrates registration, login, authorization and session lifecycle.

    Usage:
        store = AuthStore(settings.database_url, timeout=settings.store_timeout_seconds)
        gateway = AuthenticationGateway(settings, sessions=store, accounts=store)
        result = gateway.authenticate("ada@example.com", "StrongPass123!")
        principal = gateway.authorize(result.tokens.access_token)
    """

    def __init__(
        self,
        settings: Settings,
        sessions: SessionStore,
        accounts: AccountStore,
        clock: Callable[[], datetime] = utc_now,
        credentials: CredentialVerifier | None = None,
    ) -> None:
        self._settings = settings
        self._sessions = sessions
        self._accounts = accounts
        self._clock = clock
        self.credentials = credentials or CredentialVerifier(rounds=settings.bcrypt_rounds)
        self.issuer = SessionIssuer(settings, clock=clock)
        self.verifier = TokenVerifier(settings, clock=clock)
        self.rotation = RotationCoordinator(sessions, accounts, self.issuer, clock=clock)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def register(
        self, email: str, password: str, first_name: str | None = None, last_name: str | None = None
    ) -> AuthResult:
        """Create an account and open its first session.

        Raises WeakPassword (with every violated rule) or EmailAlreadyExists.
        """
        email = normalize_email(email)
        report = self.credentials.validate_strength(password)
        if not report.valid:
            raise WeakPassword(report.violations)
        if self._accounts.get_account_by_email(email) is not None:
            raise EmailAlreadyExists()

        password_hash = self.credentials.hash(password)
        try:
            account = self._accounts.create_account(email, password_hash, first_name, last_name)
        except IntegrityError as exc:
            # A concurrent registration inserted the same email first.
            raise EmailAlreadyExists() from exc

        logger.info("Registered account %s", account.id)
        return self._open_session(account)

    def authenticate(self, email: str, password: str) -> AuthResult:
        """Verify email + password and open a new session [C1]."""
        account = self._accounts.get_account_by_email(normalize_email(email))
        if account is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            self.credentials.verify_dummy(password)
            logger.info("Login failed: unknown email")
            raise InvalidCredentials()
        if not self.credentials.verify(password, account.password_hash):
            logger.info("Login failed: wrong password for account %s", account.id)
            raise InvalidCredentials()
        if not account.is_active:
            logger.info("Login refused: account %s is deactivated", account.id)
            raise AccountDeactivated()

        logger.info("Account %s logged in", account.id)
        return self._open_session(account)

    def _open_session(self, account: Account) -> AuthResult:
        access_token, claims = self.issuer.issue_access_token(account.id, account.email)
        refresh_token = self.issuer.issue_refresh_token()
        now = self._clock()
        self._sessions.create(account.id, refresh_token, self.issuer.refresh_ttl, now=now)
        self._accounts.update_last_login(account.id, now=now)
        account.last_login_at = now
        return AuthResult(
            principal=Principal(account_id=account.id, email=account.email, active=account.is_active),
            tokens=TokenPair(
                access_token=access_token,
                refresh_token=refresh_token,
                access_expires_at=claims.expires_at,
            ),
            account=account,
        )

    # ------------------------------------------------------------------
    # Authorization (shared by HTTP and WebSocket)
    # ------------------------------------------------------------------

    @staticmethod
    def select_token(
        authorization: str | None = None,
        query_token: str | None = None,
        cookie_token: str | None = None,
    ) -> str | None:
        """Pick the access token from the places a client may put it.

        Priority: "Authorization: Bearer <token>" header, then the token query
        parameter, then the access_token cookie. A header that is not exactly
        two space-separated parts starting with "Bearer" is ignored.
        """
        if authorization:
            parts = authorization.split(" ")
            if len(parts) == 2 and parts[0] == "Bearer" and parts[1]:
                return parts[1]
        if query_token:
            return query_token
        if cookie_token:
            return cookie_token
        return None

    def authorize(self, raw_token: str | None) -> Principal:
        """Turn a raw access token into the Principal of a live, active account."""
        if not raw_token:
            raise MissingToken()
        try:
            claims = self.verifier.verify(raw_token)
        except TokenVerificationError as exc:
            logger.debug("Access token rejected: %s", type(exc).__name__)
            raise InvalidOrExpiredAccessToken() from exc

        account = self._accounts.get_account(claims.account_id)
        if account is None:
            raise InvalidOrExpiredAccessToken()
        if not account.is_active:
            raise AccountDeactivated()
        return Principal(account_id=account.id, email=account.email, active=True)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        return self.rotation.rotate(refresh_token)

    def logout(self, refresh_token: str | None) -> None:
        """Revoke one refresh session. Never raises; logout always succeeds for the client."""
        if not refresh_token:
            return
        try:
            self._sessions.revoke(refresh_token, reason="logout", now=self._clock())
        except Exception:
            logger.warning("Logout could not revoke the refresh session", exc_info=True)

    revoke_session = logout

    def logout_all(self, account_id: int, reason: str = "logout_all") -> int:
        """Revoke every refresh session of the account. Returns how many were revoked."""
        count = self._sessions.revoke_all_for_account(account_id, reason=reason, now=self._clock())
        logger.info("Revoked %d session(s) for account %s (%s)", count, account_id, reason)
        return count

    revoke_all_sessions = logout_all

    def change_password(self, account_id: int, current_password: str, new_password: str) -> int:
        """Replace the password and revoke all refresh sessions.

        Raises IncorrectPassword or WeakPassword. Returns the number of
        sessions revoked.
        """
        account = self._accounts.get_account(account_id)
        if account is None:
            raise InvalidOrExpiredAccessToken()
        if not self.credentials.verify(current_password, account.password_hash):
            raise IncorrectPassword()
        report = self.credentials.validate_strength(new_password)
        if not report.valid:
            raise WeakPassword(report.violations)

        # One transaction: a failed revoke must not leave the new hash behind.
        count = self._accounts.replace_password(
            account_id, self.credentials.hash(new_password), reason="password_change", now=self._clock()
        )
        logger.info("Password changed for account %s; revoked %d session(s)", account_id, count)
        return count

    def purge_sessions(self) -> int:
        """Delete terminal sessions past the retention window."""
        removed = self._sessions.purge_expired_or_revoked(self._settings.purge_retention_seconds, now=self._clock())
        if removed:
            logger.info("Purged %d refresh session(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Account administration
    # ------------------------------------------------------------------

    def get_account(self, account_id: int) -> Account | None:
        return self._accounts.get_account(account_id)

    def set_account_active(self, email: str, active: bool) -> Account | None:
        """Activate or deactivate by email. Deactivation also revokes all sessions.

        Returns the updated account, or None if no account has that email.
        """
        account = self._accounts.get_account_by_email(normalize_email(email))
        if account is None:
            return None
        self._accounts.set_active(account.id, active)
        account.is_active = active
        if not active:
            self.logout_all(account.id, reason="logout_all")
        logger.info("Account %s %s", account.id, "activated" if active else "deactivated")
        return account

    def check_password_strength(self, password: str) -> StrengthReport:
        return self.credentials.validate_strength(password)

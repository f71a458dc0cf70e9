"""
auth/rotation.py -- Single-use refresh-token rotation.

Each refresh token is one link in a chain. Presenting a VALID link retires it
and hands back its successor plus a fresh access token; every other state is
terminal and answers SessionInvalid:

    VALID --rotate--> ROTATED      (successor created in the same transaction)
    VALID --logout--> REVOKED
    VALID --ttl-----> EXPIRED      (detected lazily on lookup)

Absent, revoked, rotated and expired tokens are indistinguishable to the
caller. Presenting an already-rotated token is a replay and is logged at
WARNING with the session id; the raw token is never logged.

The race between two callers holding the same token is settled by the store
(AuthStore.rotate): the loser of the compare-and-swap gets SessionInvalid and
nothing it did is persisted.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from auth.errors import SessionInvalid
from auth.models import SessionState, TokenPair
from auth.store import AccountStore, SessionStore
from auth.tokens import SessionIssuer, utc_now

logger = logging.getLogger("chatauth.auth.rotation")


class RotationCoordinator:
    def __init__(
        self,
        sessions: SessionStore,
        accounts: AccountStore,
        issuer: SessionIssuer,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._sessions = sessions
        self._accounts = accounts
        self._issuer = issuer
        self._clock = clock

    def rotate(self, old_token: str) -> TokenPair:
        """Exchange a VALID refresh token for a new access + refresh pair.

        Raises SessionInvalid for every failure the caller could act on.
        StoreUnavailable propagates unchanged so the client knows to retry.
        """
        now = self._clock()

        session = self._sessions.find_by_token(old_token)
        if session is None:
            raise SessionInvalid()
        state = session.state(now)
        if state is not SessionState.VALID:
            if state is SessionState.ROTATED:
                logger.warning(
                    "Refresh token replay: session %s for account %s was already rotated",
                    session.id,
                    session.account_id,
                )
            raise SessionInvalid()

        account = self._accounts.get_account(session.account_id)
        if account is None or not account.is_active:
            logger.info("Refresh refused for session %s: account missing or inactive", session.id)
            raise SessionInvalid()

        new_refresh = self._issuer.issue_refresh_token()
        successor = self._sessions.rotate(old_token, new_refresh, self._issuer.refresh_ttl, now=now)
        if successor is None:
            # Another caller swapped the same link between lookup and commit.
            logger.warning("Refresh token race lost for session %s", session.id)
            raise SessionInvalid()

        access_token, claims = self._issuer.issue_access_token(account.id, account.email)
        logger.debug("Rotated session %s -> %s for account %s", session.id, successor.id, account.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh,
            access_expires_at=claims.expires_at,
        )

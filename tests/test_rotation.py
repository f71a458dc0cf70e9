"""
tests/test_rotation.py -- Unit tests for RotationCoordinator.

Covers:
  - rotate() returns a new pair; the old token is single-use
  - replaying t0 after t0 -> t1 fails, and t1 still rotates afterwards
  - expired, revoked, unknown tokens all fail with the same SessionInvalid
  - an inactive or deleted owner makes rotation fail without touching the row
  - losing the compare-and-swap fails cleanly
  - replay is logged at WARNING without the raw token
"""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest

from auth.errors import SessionInvalid, StoreUnavailable
from auth.gateway import AuthenticationGateway
from auth.models import SessionState
from auth.rotation import RotationCoordinator
from auth.store import AuthStore
from auth.tokens import SessionIssuer

PASSWORD = "StrongPass123!"


@pytest.fixture
def login(gateway: AuthenticationGateway):
    return gateway.register("ada@example.com", PASSWORD)


class TestRotate:
    """Happy path and single-use enforcement."""

    def test_rotate_returns_new_pair(self, gateway: AuthenticationGateway, login) -> None:
        pair = gateway.rotation.rotate(login.tokens.refresh_token)
        assert pair.refresh_token != login.tokens.refresh_token
        assert len(pair.refresh_token) == 128
        assert gateway.authorize(pair.access_token).account_id == login.principal.account_id

    def test_old_token_is_single_use(self, gateway: AuthenticationGateway, login) -> None:
        t0 = login.tokens.refresh_token
        gateway.rotation.rotate(t0)
        with pytest.raises(SessionInvalid):
            gateway.rotation.rotate(t0)

    def test_replay_does_not_kill_successor(self, gateway: AuthenticationGateway, login) -> None:
        """rotate(t0) -> t1; rotate(t0) fails; rotate(t1) still succeeds."""
        t0 = login.tokens.refresh_token
        t1 = gateway.rotation.rotate(t0).refresh_token
        with pytest.raises(SessionInvalid):
            gateway.rotation.rotate(t0)
        t2 = gateway.rotation.rotate(t1).refresh_token
        assert t2 not in (t0, t1)

    def test_chain_has_one_valid_link(self, gateway: AuthenticationGateway, store: AuthStore, login, clock) -> None:
        token = login.tokens.refresh_token
        for _ in range(3):
            token = gateway.rotation.rotate(token).refresh_token
        assert store.count_valid_for_account(login.principal.account_id, now=clock()) == 1


class TestRejections:
    """Every terminal state answers the same SessionInvalid."""

    def test_unknown_token(self, gateway: AuthenticationGateway) -> None:
        with pytest.raises(SessionInvalid):
            gateway.rotation.rotate("f" * 128)

    def test_expired_token(self, gateway: AuthenticationGateway, login, clock, settings) -> None:
        clock.advance(seconds=settings.refresh_token_ttl_seconds)
        with pytest.raises(SessionInvalid):
            gateway.rotation.rotate(login.tokens.refresh_token)

    def test_revoked_token(self, gateway: AuthenticationGateway, login) -> None:
        gateway.logout(login.tokens.refresh_token)
        with pytest.raises(SessionInvalid):
            gateway.rotation.rotate(login.tokens.refresh_token)

    def test_same_message_for_every_cause(self, gateway: AuthenticationGateway, login) -> None:
        gateway.logout(login.tokens.refresh_token)
        with pytest.raises(SessionInvalid) as revoked:
            gateway.rotation.rotate(login.tokens.refresh_token)
        with pytest.raises(SessionInvalid) as unknown:
            gateway.rotation.rotate("0" * 128)
        assert revoked.value.message == unknown.value.message
        assert revoked.value.code == unknown.value.code

    def test_inactive_owner(self, gateway: AuthenticationGateway, store: AuthStore, login, clock) -> None:
        store.set_active(login.principal.account_id, False)
        with pytest.raises(SessionInvalid):
            gateway.rotation.rotate(login.tokens.refresh_token)
        # Refused before the swap: the row is left exactly as it was.
        assert store.find_by_token(login.tokens.refresh_token).state(clock()) is SessionState.VALID


class TestRaceAndOutage:
    """Collaborator behaviour the coordinator must not mask."""

    def test_cas_loser_gets_session_invalid(self, store: AuthStore, settings, clock, login) -> None:
        """find_by_token saw VALID but another caller won the swap first."""
        sessions = MagicMock(wraps=store)
        sessions.rotate.return_value = None
        coordinator = RotationCoordinator(sessions, store, SessionIssuer(settings, clock=clock), clock=clock)
        with pytest.raises(SessionInvalid):
            coordinator.rotate(login.tokens.refresh_token)

    def test_store_unavailable_propagates(self, store: AuthStore, settings, clock) -> None:
        sessions = MagicMock()
        sessions.find_by_token.side_effect = StoreUnavailable()
        coordinator = RotationCoordinator(sessions, store, SessionIssuer(settings, clock=clock), clock=clock)
        with pytest.raises(StoreUnavailable):
            coordinator.rotate("a" * 128)

    def test_replay_logged_without_token(self, gateway: AuthenticationGateway, login, caplog) -> None:
        t0 = login.tokens.refresh_token
        gateway.rotation.rotate(t0)
        with caplog.at_level(logging.WARNING, logger="chatauth.auth.rotation"):
            with pytest.raises(SessionInvalid):
                gateway.rotation.rotate(t0)
        assert any("replay" in r.getMessage().lower() for r in caplog.records)
        assert all(t0 not in r.getMessage() for r in caplog.records)

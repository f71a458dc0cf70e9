"""
tests/conftest.py -- Shared test fixtures for ChatAuth tests.

This module provides:
  - FrozenClock: injectable clock so expiry boundaries are exact
  - settings / store / gateway: unit-level components on an in-memory DB
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api_client: TestClient over the full ASGI app (HTTP + WebSocket)
  - register_account: factory that registers a fresh account through the API

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment variables must be set before any api/core import so
get_settings() auto-generates SECRET_KEY in dev mode and the module-level
rate limiter is built disabled.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timedelta, timezone

# CRITICAL: Set these before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from asgi import app
from auth.gateway import AuthenticationGateway
from auth.store import AuthStore
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"
STRONG_PASSWORD = "StrongPass123!"

_db_counter = itertools.count()
_email_counter = itertools.count()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FrozenClock:
    """A clock that only moves when told to.

    Pass an instance anywhere a clock callable is accepted:
        clock = FrozenClock()
        issuer = SessionIssuer(settings, clock=clock)
        clock.advance(minutes=15)
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    """Settings with a fixed key and fast bcrypt, independent of the environment cache."""
    values = {"debug": True, "secret_key": TEST_SECRET, "bcrypt_rounds": 4}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    """make_settings() as a fixture, for tests that need a second configuration."""
    return make_settings


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    """Fresh in-memory AuthStore per test."""
    s = AuthStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def gateway(settings: Settings, store: AuthStore, clock: FrozenClock) -> AuthenticationGateway:
    return AuthenticationGateway(settings, sessions=store, accounts=store, clock=clock)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, store: AuthStore, gateway: AuthenticationGateway):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test components into app.state so TestClient routes see
    an isolated test DB rather than the configured database.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.store = store
        app.state.gateway = gateway
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.purge_task

    return test_lifespan


@pytest.fixture(scope="module")
def api_stack() -> Generator[tuple[TestClient, AuthenticationGateway, AuthStore], None, None]:
    """Yield (client, gateway, store) backed by a module-private shared-memory DB.

    The client hits real route handlers, middleware and exception handlers.
    The gateway and store are exposed so tests can arrange state (deactivate
    an account, inspect sessions) without going through HTTP.
    """
    db_name = f"test_chatauth_{os.getpid()}_{next(_db_counter)}"
    store = AuthStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    settings = make_settings()
    gateway = AuthenticationGateway(settings, sessions=store, accounts=store)

    app.router.lifespan_context = _patch_lifespan(settings, store, gateway)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, gateway, store

    store.close()


@pytest.fixture
def api_client(api_stack: tuple[TestClient, AuthenticationGateway, AuthStore]) -> TestClient:
    """The module's TestClient with an empty cookie jar.

    Login and register set an access_token cookie, which the client would
    otherwise replay on every later request in the module.
    """
    client = api_stack[0]
    client.cookies.clear()
    return client


@pytest.fixture
def register_account(api_client: TestClient) -> Callable[..., dict]:
    """Factory: register a new account over HTTP and return the response JSON.

    Every call uses a unique email so tests sharing the module-scoped client
    never collide. The cookie set by the response is dropped so each test
    chooses explicitly how to present its token.
    """

    def _register(prefix: str = "user", password: str = STRONG_PASSWORD) -> dict:
        email = f"{prefix}-{os.getpid()}-{next(_email_counter)}@example.com"
        resp = api_client.post("/api/v1/auth/register", json={"email": email, "password": password})
        assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
        api_client.cookies.clear()
        data = resp.json()
        data["password"] = password
        return data

    return _register

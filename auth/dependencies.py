"""
auth/dependencies.py -- The trust boundary shared by HTTP routes and WebSockets.

Token sources are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. ?token=<token> query parameter -- browsers opening a WebSocket, which
     cannot set headers on the upgrade request.
  3. access_token cookie -- set by the login/register responses.

Starlette's Request and WebSocket are both HTTPConnection, so
authorize_connection() is the single code path for both transports. The HTTP
layer wraps it as a Depends() helper; ws/routes.py calls it directly during
the handshake. get_optional_principal() is the same path for public endpoints
that serve anonymous callers too.

Failures are raised as AuthError subclasses, never HTTPException: the HTTP
layer renders them through the error envelope handler, and the WebSocket
layer maps them to close codes.

Layer rule: no imports from api/ or ws/.
  auth/dependencies.py may import from fastapi/starlette (for Request and
  HTTPConnection) because this module is part of the dependency injection
  system.
"""

from __future__ import annotations

from fastapi import Request
from starlette.requests import HTTPConnection

from auth.errors import AccountDeactivated, InvalidOrExpiredAccessToken, MissingToken
from auth.gateway import AuthenticationGateway
from auth.models import Principal
from auth.tokens import ACCESS_COOKIE_NAME


def get_gateway(conn: HTTPConnection) -> AuthenticationGateway:
    return conn.app.state.gateway


def extract_token(conn: HTTPConnection) -> str | None:
    """Return the raw access token carried by the connection, or None."""
    return AuthenticationGateway.select_token(
        authorization=conn.headers.get("Authorization"),
        query_token=conn.query_params.get("token"),
        cookie_token=conn.cookies.get(ACCESS_COOKIE_NAME),
    )


def authorize_connection(conn: HTTPConnection) -> Principal:
    """Authorize a request or WebSocket handshake.

    Raises MissingToken, InvalidOrExpiredAccessToken, AccountDeactivated, or
    StoreUnavailable.
    """
    return get_gateway(conn).authorize(extract_token(conn))


def get_optional_principal(conn: HTTPConnection) -> Principal | None:
    """Authorize if a usable token is present; otherwise continue anonymously.

    A missing, invalid or expired token, or a deactivated account, gives None.
    StoreUnavailable still propagates: an outage is not an anonymous caller.
    """
    try:
        return authorize_connection(conn)
    except (MissingToken, InvalidOrExpiredAccessToken, AccountDeactivated):
        return None


def get_current_principal(request: Request) -> Principal:
    """Require authentication on an HTTP route.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    return authorize_connection(request)

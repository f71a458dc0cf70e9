"""
ws/routes.py -- WebSocket transport: authorize once at the handshake.

The handshake runs the same authorize_connection() as every HTTP route, so a
token that fails over HTTP fails here with the same error. Failures close the
socket before accept, with the stable error code as the close reason:

    4401  -- 401 errors (missing_token, invalid_token)
    4403  -- 403 errors (account_deactivated)
    1013  -- store_unavailable ("try again later")
    1011  -- anything else

/ws/public accepts anonymous peers: it runs get_optional_principal() and only
refuses the handshake when the store itself is down.

Chat fan-out lives elsewhere; these endpoints only confirm the identity and
answer keep-alive pings until the peer disconnects.

Layer rule: no imports from api/. asgi.py mounts this router.
"""

from __future__ import annotations

import json
import logging
from typing import Callable, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from auth.dependencies import authorize_connection, get_optional_principal
from auth.errors import AuthError, ErrorCode, StoreUnavailable
from auth.models import Principal

logger = logging.getLogger("chatauth.ws")

router = APIRouter()

WS_CLOSE_UNAUTHORIZED = 4401
WS_CLOSE_FORBIDDEN = 4403
WS_CLOSE_TRY_AGAIN_LATER = 1013
WS_CLOSE_INTERNAL_ERROR = 1011


def close_code_for(exc: AuthError) -> int:
    """Map an AuthError to the WebSocket close code sent during the handshake."""
    if isinstance(exc, StoreUnavailable):
        return WS_CLOSE_TRY_AGAIN_LATER
    if exc.status_code == 401:
        return WS_CLOSE_UNAUTHORIZED
    if exc.status_code == 403:
        return WS_CLOSE_FORBIDDEN
    return WS_CLOSE_INTERNAL_ERROR


async def _handshake(
    websocket: WebSocket, authorize: Callable[[WebSocket], Optional[Principal]]
) -> tuple[bool, Optional[Principal]]:
    """Run authorize off the event loop. Returns (accepted, principal); refusals are already closed."""
    try:
        # authorize() does blocking SQL; keep it off the event loop.
        principal = await run_in_threadpool(authorize, websocket)
    except AuthError as exc:
        logger.info("WebSocket handshake refused: %s", exc.code.value)
        await websocket.close(code=close_code_for(exc), reason=exc.code.value)
        return False, None
    except Exception:
        logger.exception("WebSocket handshake failed")
        await websocket.close(code=WS_CLOSE_INTERNAL_ERROR, reason=ErrorCode.INTERNAL_ERROR.value)
        return False, None
    await websocket.accept()
    return True, principal


async def _answer_pings(websocket: WebSocket) -> None:
    """Keep-alive loop shared by both endpoints. Returns when the peer disconnects."""
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "code": "invalid_json"})
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json({"type": "error", "code": "unsupported_message"})
    except WebSocketDisconnect:
        pass


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Authorize the handshake, then answer pings until disconnect."""
    accepted, principal = await _handshake(websocket, authorize_connection)
    if not accepted:
        return

    logger.info("WebSocket connected for account %s", principal.account_id)
    await websocket.send_json(
        {"type": "authenticated", "account_id": principal.account_id, "email": principal.email}
    )
    await _answer_pings(websocket)
    logger.info("WebSocket disconnected for account %s", principal.account_id)


@router.websocket("/ws/public")
async def public_websocket_endpoint(websocket: WebSocket) -> None:
    """Accept anyone; attach the principal when the token checks out."""
    accepted, principal = await _handshake(websocket, get_optional_principal)
    if not accepted:
        return

    if principal is None:
        logger.info("Public WebSocket connected anonymously")
        await websocket.send_json({"type": "connected", "authenticated": False})
    else:
        logger.info("Public WebSocket connected for account %s", principal.account_id)
        await websocket.send_json(
            {
                "type": "connected",
                "authenticated": True,
                "account_id": principal.account_id,
                "email": principal.email,
            }
        )
    await _answer_pings(websocket)

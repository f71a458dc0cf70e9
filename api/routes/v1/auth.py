"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/register    -- create account; returns tokens, sets cookie (201)
  POST /api/v1/auth/login       -- password login; returns tokens, sets cookie
  POST /api/v1/auth/refresh     -- rotate a refresh token; returns a new pair
  POST /api/v1/auth/logout      -- revoke one refresh token, clear cookie; always 200
  GET  /api/v1/auth/session     -- who am I, if anyone (optional auth)
  POST /api/v1/auth/logout-all  -- revoke every refresh token of the caller (requires auth)
  POST /api/v1/auth/password    -- change password, revoking all sessions (requires auth)
  GET  /api/v1/auth/me          -- current account (requires auth)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] gateway.authenticate() provides timing equalization -- never inline
       the lookup + bcrypt check here.
  [M5] Cache-Control: no-store on every response that carries a token.

Handlers are plain def: the gateway does blocking bcrypt and SQL work, and
FastAPI runs sync handlers in its thread pool. logout is the exception: it
reads its body by hand so no body shape can turn it into a 422, and pushes
the revoke onto the thread pool itself. Failures are AuthError
subclasses raised by the gateway and rendered by the handler in api/main.py.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_rate_limit
from api.models import (
    AuthResponse,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    RefreshRequest,
    RegisterRequest,
    SessionStatusResponse,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_current_principal, get_gateway, get_optional_principal
from auth.errors import InvalidOrExpiredAccessToken
from auth.models import AuthResult, Principal
from auth.tokens import clear_auth_cookie, set_auth_cookie

# Auth policy:
# - POST /api/v1/auth/register:    public
# - POST /api/v1/auth/login:       public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:     public -- the refresh token is the credential
# - POST /api/v1/auth/logout:      public -- revoking a token needs no prior auth
# - GET  /api/v1/auth/session:     optional auth (get_optional_principal)
# - POST /api/v1/auth/logout-all:  requires auth (get_current_principal)
# - POST /api/v1/auth/password:    requires auth (get_current_principal)
# - GET  /api/v1/auth/me:          requires auth (get_current_principal)
router = APIRouter()


def _token_response(request: Request, content: dict, access_token: str, status_code: int = 200) -> JSONResponse:
    settings = request.app.state.settings
    resp = JSONResponse(status_code=status_code, content=content)
    set_auth_cookie(resp, access_token, settings.access_token_ttl_seconds, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _auth_result_response(request: Request, result: AuthResult, status_code: int) -> JSONResponse:
    body = AuthResponse(
        user=UserResponse.from_account(result.account),
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=request.app.state.settings.access_token_ttl_seconds,
    )
    return _token_response(request, body.model_dump(mode="json"), result.tokens.access_token, status_code)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and log it in.

    A weak password answers 400 weak_password listing every violated rule;
    a taken email answers 409 email_already_exists.
    """
    result = get_gateway(request).register(body.email, body.password, body.first_name, body.last_name)
    return _auth_result_response(request, result, 201)


@limiter.limit(login_rate_limit)  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the access-token cookie.

    Returns the same invalid_credentials error for an unknown email and a
    wrong password so the response does not reveal which accounts exist.
    """
    result = get_gateway(request).authenticate(body.email, body.password)
    return _auth_result_response(request, result, 200)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new access + refresh pair.

    The presented token is single-use: a second presentation, or a racing
    concurrent one, answers 401 session_invalid.
    """
    pair = get_gateway(request).refresh(body.refresh_token)
    content = TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=request.app.state.settings.access_token_ttl_seconds,
    ).model_dump()
    return _token_response(request, content, pair.access_token)


async def _logout_token(request: Request) -> Optional[str]:
    """Pull refresh_token out of the logout body; anything unreadable counts as no token."""
    try:
        payload = await request.json()
        return LogoutRequest.model_validate(payload).refresh_token
    except (ValueError, ValidationError):
        return None


@router.post(
    "/auth/logout",
    response_model=MessageResponse,
    openapi_extra={"requestBody": {"content": {"application/json": {"schema": LogoutRequest.model_json_schema()}}}},
)
async def logout(request: Request) -> JSONResponse:
    """Revoke the given refresh token and clear the cookie. Always 200, whatever the body holds."""
    refresh_token = await _logout_token(request)
    await run_in_threadpool(get_gateway(request).logout, refresh_token)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookie(resp, secure=request.app.state.settings.secure_cookies)
    return resp


@router.get("/auth/session", response_model=SessionStatusResponse)
def session_status(request: Request) -> SessionStatusResponse:
    """Report who the caller is, if anyone. Missing or bad tokens answer authenticated=false."""
    principal = get_optional_principal(request)
    if principal is None:
        return SessionStatusResponse(authenticated=False)
    return SessionStatusResponse(authenticated=True, account_id=principal.account_id, email=principal.email)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(request: Request, principal: Principal = Depends(get_current_principal)) -> LogoutAllResponse:
    """Revoke every refresh session of the caller, on every device."""
    count = get_gateway(request).logout_all(principal.account_id)
    return LogoutAllResponse(message="Logged out from all devices.", sessions_revoked=count)


@router.post("/auth/password", response_model=LogoutAllResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_current_principal),
) -> LogoutAllResponse:
    """Change the caller's password. All refresh sessions are revoked."""
    count = get_gateway(request).change_password(principal.account_id, body.current_password, body.new_password)
    return LogoutAllResponse(message="Password changed. Please log in again.", sessions_revoked=count)


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return identity and profile information for the authenticated account."""
    account = get_gateway(request).get_account(principal.account_id)
    if account is None:
        raise InvalidOrExpiredAccessToken()
    return MeResponse(
        account_id=principal.account_id,
        email=principal.email,
        active=principal.active,
        user=UserResponse.from_account(account),
    )

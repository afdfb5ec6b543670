"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login       -- password login; sets the session cookie
  POST /api/v1/auth/signup      -- create a password account (anonymous only)
  POST /api/v1/auth/logout      -- delete the session row, clear the cookie
  GET  /api/v1/auth/me          -- current account (requires auth)
  GET  /api/v1/auth/providers   -- list enabled OAuth providers (public)
  POST /api/v1/auth/password    -- change own password (requires auth)

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  [C1] verify_account_password() equalizes timing -- never inline the lookup.
  [M5] Cache-Control: no-store on responses that set the session cookie.
  Accounts with a 2FA Verification get no session cookie from /login; the
  response carries verify_url and the session waits in the verification cookie.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    MembershipResponse,
    MessageResponse,
    OAuthProviderInfo,
    PasswordChange,
    SignupRequest,
)
from auth import accounts
from auth.callback import requires_two_factor, stash_unverified_session, verify_url
from auth.dependencies import get_sessions, require_account_id, require_anonymous
from auth.models import Session
from auth.sessions import SessionManager
from core.config import get_settings

logger = logging.getLogger("notekeeper.api.auth")

# Auth policy:
# - POST /api/v1/auth/login:      public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/signup:     anonymous only (require_anonymous)
# - POST /api/v1/auth/logout:     public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/providers:  public -- login page calls this to render OAuth buttons
# - GET  /api/v1/auth/me:         requires auth (require_account_id)
# - POST /api/v1/auth/password:   requires auth (require_account_id)
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _session_response(sessions: SessionManager, session: Session, username: str, status_code: int) -> JSONResponse:
    """Commit session to the cookie, or park it behind a 2FA challenge."""
    account_id = session.active_account_id
    if requires_two_factor(sessions, account_id):
        body = LoginResponse(account_id=account_id, username=username, verify_url=verify_url(account_id, "/"))
        resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
        stash_unverified_session(sessions, resp, session)
    else:
        body = LoginResponse(account_id=account_id, username=username, expiration_date=session.expiration_date)
        resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
        sessions.commit_session(resp, session)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_login_rate_limit)  # [H2] below @router so the registered endpoint is the limited one
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    Returns the same generic error for wrong username, wrong password and
    OAuth-only accounts ("bad_credentials").
    """
    sessions = get_sessions(request)
    session = accounts.login(sessions, body.username, body.password)
    if session is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    return _session_response(sessions, session, body.username.lower(), 200)


@router.post("/auth/signup", response_model=LoginResponse, status_code=201)
def signup(request: Request, body: SignupRequest, _: None = Depends(require_anonymous)) -> JSONResponse:
    """Create a password account and log it in.

    Account, password, profile, membership and first session are written in
    one transaction; a taken email or username leaves nothing behind.
    """
    sessions = get_sessions(request)
    try:
        session = accounts.signup(
            sessions,
            email=body.email,
            username=body.username,
            name=body.name,
            password=body.password,
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email or username already exists."},
        ) from exc
    return _session_response(sessions, session, body.username, 201)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Delete the session row and clear the session cookie."""
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    get_sessions(request).end_session(request, resp)
    return resp


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers; empty when none are set up."""
    return [OAuthProviderInfo(**p) for p in request.app.state.providers.enabled()]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, account_id: str = Depends(require_account_id)) -> MeResponse:
    """Return identity information for the currently authenticated account."""
    store = get_sessions(request).store
    account = store.get_account_by_id(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Account not found."})
    users = store.list_users_for_account(account_id)
    return MeResponse(
        account_id=account.id,
        email=account.email,
        username=account.username,
        name=users[0].name if users else None,
        memberships=[MembershipResponse.from_membership(m) for m in store.list_memberships(account_id)],
    )


@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChange,
    account_id: str = Depends(require_account_id),
) -> MessageResponse:
    """Change the caller's password after re-verifying the current one."""
    store = get_sessions(request).store
    if not accounts.change_password(
        store, account_id, current_password=body.current_password, new_password=body.new_password
    ):
        raise HTTPException(
            status_code=400,
            detail={"code": "bad_credentials", "message": "Current password is incorrect."},
        )
    logger.info("Password changed for account %s", account_id)
    return MessageResponse(message="Password updated.")

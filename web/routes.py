"""
web/routes.py -- Browser-facing auth routes for Notekeeper.

These routes answer with redirects (plus signed cookies and toasts), never
with JSON error envelopes. Page rendering belongs to the UI; the only bodies
returned here are the onboarding prefill for the UI to show.

Routes:
  GET  /auth/{provider}             -- start the OAuth flow (stores redirectTo)
  GET  /auth/{provider}/callback    -- OAuth callback state machine
  POST /login                       -- password login form
  POST /signup                      -- password signup form
  POST /logout                      -- delete session, clear cookie, redirect /
  GET  /onboarding/{provider}       -- prefilled provider profile (JSON)
  POST /onboarding/{provider}       -- finish signup for a new provider identity
  POST /verify                      -- check a TOTP code, release a 2FA session

Layer rule: imports auth/ and core/ only, never api/.
"""

import logging
import re
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import EmailStr, TypeAdapter, ValidationError
from sqlalchemy.exc import IntegrityError

from auth import accounts
from auth.callback import (
    ONBOARDING_EMAIL_KEY,
    PREFILLED_PROFILE_KEY,
    PROVIDER_ID_KEY,
    UNVERIFIED_SESSION_KEY,
    complete_login,
    ensure_primary,
    handle_provider_callback,
    requires_two_factor,
)
from auth.cookies import VERIFY_COOKIE, Toast, safe_redirect
from auth.dependencies import get_sessions, require_anonymous
from auth.sessions import login_url
from auth.totp import TWO_FACTOR_VERIFICATION_TYPE, verify_totp

logger = logging.getLogger("notekeeper.web")

router = APIRouter()

_USERNAME_RE = re.compile(r"^[a-z0-9_]{3,20}$")
# Same email rules as the JSON signup model.
_EMAIL_ADAPTER = TypeAdapter(EmailStr)
_MIN_PASSWORD_LENGTH = 6


def _form_error(request: Request, url: str, description: str) -> RedirectResponse:
    return get_sessions(request).cookies.redirect_with_toast(
        url, Toast(title="Error", description=description, type="error")
    )


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/{provider}")
async def oauth_start(request: Request, provider: str, redirectTo: Optional[str] = None) -> Response:
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the registry first so a spoofed
    name cannot start a flow against an unconfigured client. A redirectTo
    query param is kept in a short-lived signed cookie for the callback.
    """
    registry = request.app.state.providers
    client = registry.get(provider)
    if client is None:
        return _form_error(request, "/login", f"{provider} login is not available.")

    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    response = await client.authorize_redirect(request, redirect_uri)
    if redirectTo:
        get_sessions(request).cookies.set_redirect_to(response, safe_redirect(redirectTo))
    return response


@router.get("/auth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> Response:
    """Resolve the callback into a link, login, onboarding or rejection."""
    response = await handle_provider_callback(
        request,
        provider,
        registry=request.app.state.providers,
        sessions=get_sessions(request),
        settings=request.app.state.settings,
    )
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


# ---------------------------------------------------------------------------
# Password login / signup / logout
# ---------------------------------------------------------------------------


@router.post("/login")
def login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    redirectTo: Optional[str] = Form(None),
    _: None = Depends(require_anonymous),
) -> Response:
    """Handle the username/password login form."""
    sessions = get_sessions(request)
    session = accounts.login(sessions, username.strip(), password)
    if session is None:
        return _form_error(request, login_url(redirectTo), "Invalid username or password.")
    response = complete_login(sessions, session, redirect_to=redirectTo)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


@router.post("/signup")
def signup_post(
    request: Request,
    email: str = Form(...),
    username: str = Form(...),
    name: str = Form(...),
    password: str = Form(...),
    redirectTo: Optional[str] = Form(None),
    _: None = Depends(require_anonymous),
) -> Response:
    """Create a password account from the signup form and log it in."""
    email = email.strip().lower()
    username = username.strip().lower()
    back = "/signup" if not redirectTo else f"/signup?{urlencode({'redirectTo': redirectTo})}"
    try:
        email = _EMAIL_ADAPTER.validate_python(email).lower()
    except ValidationError:
        return _form_error(request, back, "Enter a valid email address.")
    if not _USERNAME_RE.match(username):
        return _form_error(request, back, "Username must be 3-20 letters, digits or underscores.")
    if len(password) < _MIN_PASSWORD_LENGTH:
        return _form_error(request, back, f"Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
    if not name.strip():
        return _form_error(request, back, "Name is required.")

    sessions = get_sessions(request)
    try:
        session = accounts.signup(sessions, email=email, username=username, name=name.strip(), password=password)
    except IntegrityError:
        return _form_error(request, back, "An account with that email or username already exists.")
    response = complete_login(sessions, session, redirect_to=redirectTo)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """Delete the session row, clear the cookie and redirect home."""
    return get_sessions(request).destroy_session(request, "/")


# ---------------------------------------------------------------------------
# Onboarding (new provider identity)
# ---------------------------------------------------------------------------


def _onboarding_state(request: Request) -> Optional[dict]:
    data = get_sessions(request).cookies.read(request, VERIFY_COOKIE)
    if not data.get(ONBOARDING_EMAIL_KEY) or not data.get(PROVIDER_ID_KEY):
        return None
    return data


@router.get("/onboarding/{provider}")
def onboarding_form(
    request: Request,
    provider: str,
    redirectTo: Optional[str] = None,
    _: None = Depends(require_anonymous),
) -> Response:
    """Return the profile captured by the callback so the UI can prefill the form."""
    state = _onboarding_state(request)
    if state is None:
        return RedirectResponse("/login", status_code=302)
    return JSONResponse(
        {
            "provider": provider,
            "email": state[ONBOARDING_EMAIL_KEY],
            "prefilledProfile": state.get(PREFILLED_PROFILE_KEY) or {},
            "redirectTo": safe_redirect(redirectTo) if redirectTo else None,
        }
    )


@router.post("/onboarding/{provider}")
def onboarding_post(
    request: Request,
    provider: str,
    username: str = Form(...),
    name: str = Form(...),
    redirectTo: Optional[str] = Form(None),
    _: None = Depends(require_anonymous),
) -> Response:
    """Create the account for a new provider identity and log it in."""
    ensure_primary(request.app.state.settings)
    state = _onboarding_state(request)
    if state is None:
        return RedirectResponse("/login", status_code=302)

    username = username.strip().lower()
    back = f"/onboarding/{provider}"
    if redirectTo:
        back = f"{back}?{urlencode({'redirectTo': redirectTo})}"
    if not _USERNAME_RE.match(username):
        return _form_error(request, back, "Username must be 3-20 letters, digits or underscores.")
    if not name.strip():
        return _form_error(request, back, "Name is required.")

    sessions = get_sessions(request)
    prefilled = state.get(PREFILLED_PROFILE_KEY) or {}
    try:
        session = accounts.signup_with_connection(
            sessions,
            email=state[ONBOARDING_EMAIL_KEY],
            username=username,
            name=name.strip(),
            provider_id=state[PROVIDER_ID_KEY],
            provider_name=provider,
            image_url=prefilled.get("image_url"),
        )
    except IntegrityError:
        return _form_error(request, back, "An account with that email or username already exists.")

    response = complete_login(
        sessions,
        session,
        redirect_to=redirectTo,
        toast=Toast(title="Welcome", description="Thanks for signing up!", type="success"),
    )
    if not requires_two_factor(sessions, session.active_account_id):
        sessions.cookies.delete(response, VERIFY_COOKIE)
    return response


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


@router.post("/verify")
def verify_post(
    request: Request,
    code: str = Form(...),
    type: str = Form(...),
    target: str = Form(...),
    redirectTo: Optional[str] = Form(None),
) -> Response:
    """Check a one-time code and, for 2FA, issue the parked session.

    A wrong or expired code sends the caller back to the same /verify URL
    with an error toast. The parked session must still be alive and belong
    to target, otherwise the caller starts over at /login.
    """
    sessions = get_sessions(request)
    store = sessions.store
    params = {"type": type, "target": target}
    if redirectTo:
        params["redirectTo"] = redirectTo
    back = f"/verify?{urlencode(params)}"

    if type != TWO_FACTOR_VERIFICATION_TYPE:
        return _form_error(request, back, "Unsupported verification type.")

    verification = store.get_verification(target, type)
    if verification is None or not verify_totp(
        code,
        secret=verification.secret,
        algorithm=verification.algorithm,
        digits=verification.digits,
        period=verification.period,
    ):
        logger.info("Rejected %s code", type)
        return _form_error(request, back, "Invalid code.")

    session_id = sessions.cookies.read(request, VERIFY_COOKIE).get(UNVERIFIED_SESSION_KEY)
    session = sessions.resolve_session(session_id if isinstance(session_id, str) else None)
    if session is None or session.active_account_id != target:
        logger.info("2FA code accepted but no matching pending session")
        return _form_error(request, "/login", "Your login has expired. Please log in again.")

    response = RedirectResponse(safe_redirect(redirectTo), status_code=302)
    sessions.commit_session(response, session)
    sessions.cookies.delete(response, VERIFY_COOKIE)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response

"""
auth/sessions.py -- Server-side sessions bound to a signed cookie.

The browser holds only a signed {"sessionId": ...} cookie. Everything else
lives in the sessions table:

  expiration_date   -- fixed 30 days from creation. Reads filter
                       expiration_date > now, so an expired row is dead even
                       before any cleanup job removes it.
  account_ids       -- the accounts allowed to use this session.
  active_account_id -- the account the session currently acts as. It is
                       re-validated against account_ids on every read; a
                       claim that fails validation is treated as a forged or
                       stale cookie: the cookie is destroyed and the caller is
                       redirected home.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from auth.cookies import AUTH_COOKIE, CookieSigner, safe_redirect
from auth.errors import AuthRedirect
from auth.models import Session
from auth.store import AccountStore

logger = logging.getLogger("notekeeper.auth.sessions")

SESSION_EXPIRATION_TIME = timedelta(days=30)
SESSION_KEY = "sessionId"

# Sentinel: "send the caller back to the URL they asked for".
CURRENT_URL = object()


def get_session_expiration_date() -> datetime:
    return datetime.now(timezone.utc) + SESSION_EXPIRATION_TIME


def login_url(redirect_to: str | None) -> str:
    """Return /login, carrying redirectTo when one is given."""
    if not redirect_to:
        return "/login"
    return f"/login?{urlencode({'redirectTo': redirect_to})}"


class SessionManager:
    """Create, resolve and destroy sessions for incoming requests.

    Usage:
        sessions = SessionManager(store, cookies)
        session = sessions.create_session(account_id)
        sessions.commit_session(response, session)
        ...
        account_id = sessions.require_active_account_id(request)
    """

    def __init__(self, store: AccountStore, cookies: CookieSigner) -> None:
        self.store = store
        self.cookies = cookies

    # ------------------------------------------------------------------
    # Server-side records
    # ------------------------------------------------------------------

    def create_session(self, active_account_id: str) -> Session:
        """Create a session for active_account_id expiring in 30 days."""
        return self.store.create_session(active_account_id, get_session_expiration_date())

    def resolve_session(self, session_id: str | None) -> Session | None:
        """Return the live session for session_id, or None (fail closed)."""
        if not session_id:
            return None
        return self.store.get_session(session_id)

    # ------------------------------------------------------------------
    # Cookie binding
    # ------------------------------------------------------------------

    def get_session_id(self, request: Request) -> str | None:
        value = self.cookies.read(request, AUTH_COOKIE).get(SESSION_KEY)
        return value if isinstance(value, str) and value else None

    def commit_session(self, response: Response, session: Session) -> None:
        """Write the auth cookie for session; it expires with the session."""
        remaining = session.expiration_date - datetime.now(timezone.utc)
        max_age = max(int(remaining.total_seconds()), 0)
        self.cookies.write(response, AUTH_COOKIE, {SESSION_KEY: session.id}, max_age)

    def destroy_cookie(self, response: Response) -> None:
        self.cookies.delete(response, AUTH_COOKIE)

    # ------------------------------------------------------------------
    # Request resolution
    # ------------------------------------------------------------------

    def get_active_account_id(self, request: Request) -> str | None:
        """Return the active account for this request, or None if anonymous.

        Raises AuthRedirect to "/" (with the auth cookie destroyed) when the
        cookie names a session that is gone, expired, or whose active account
        is not one of its members.
        """
        session_id = self.get_session_id(request)
        if session_id is None:
            return None
        session = self.resolve_session(session_id)
        if session is None or session.active_account_id not in session.account_ids:
            logger.info("Rejecting stale or invalid session cookie")
            response = RedirectResponse("/", status_code=302)
            self.destroy_cookie(response)
            raise AuthRedirect(response)
        return session.active_account_id

    def require_active_account_id(self, request: Request, redirect_to: str | None | object = CURRENT_URL) -> str:
        """Return the active account or raise AuthRedirect to the login page.

        redirect_to defaults to the current path + query; pass None to send
        the caller to a bare /login.
        """
        account_id = self.get_active_account_id(request)
        if account_id is None:
            if redirect_to is CURRENT_URL:
                query = request.url.query
                redirect_to = f"{request.url.path}?{query}" if query else request.url.path
            raise AuthRedirect(RedirectResponse(login_url(redirect_to), status_code=302))
        return account_id

    def require_anonymous(self, request: Request) -> None:
        """Raise AuthRedirect to "/" if the caller is already logged in."""
        if self.get_active_account_id(request) is not None:
            raise AuthRedirect(RedirectResponse("/", status_code=302))

    def end_session(self, request: Request, response: Response) -> None:
        """Delete the session row (best effort) and always clear the cookie on response.

        Row deletion failures are swallowed -- an orphaned row expires on its
        own, but the browser must lose its cookie regardless.
        """
        session_id = self.get_session_id(request)
        if session_id:
            try:
                self.store.delete_session(session_id)
            except SQLAlchemyError:
                logger.debug("Session row delete failed; clearing cookie anyway", exc_info=True)
        self.destroy_cookie(response)

    def destroy_session(self, request: Request, redirect_to: str = "/") -> RedirectResponse:
        """Log out and redirect to redirect_to (relative paths only)."""
        response = RedirectResponse(safe_redirect(redirect_to), status_code=302)
        self.end_session(request, response)
        return response

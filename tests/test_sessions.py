"""
tests/test_sessions.py -- SessionManager resolution, cookie binding and logout.

Requests are built directly from ASGI scopes so each branch of
get_active_account_id() can be driven without routing.

Coverage:
  - No cookie -> anonymous; valid cookie -> active account
  - Expired, deleted, or inconsistent sessions -> AuthRedirect("/") + cookie destroyed
  - Cookies signed with another key are ignored
  - require_active_account_id: redirectTo carries path + query, or bare /login
  - require_anonymous bounces logged-in callers home
  - commit_session max-age tracks the session expiration
  - destroy_session deletes the row, survives DB errors, always clears the cookie
"""

from __future__ import annotations

import os

os.environ.setdefault("DEBUG", "true")

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from conftest import cookie_value, create_account, make_sessions, make_store
from sqlalchemy.exc import OperationalError
from starlette.requests import Request
from starlette.responses import Response

from auth.cookies import AUTH_COOKIE, CookieSigner
from auth.errors import AuthRedirect
from auth.models import Session
from auth.sessions import SESSION_EXPIRATION_TIME, SESSION_KEY, SessionManager


@pytest.fixture(scope="module")
def sessions():
    store = make_store("sessions")
    yield make_sessions(store)
    store.close()


@pytest.fixture(scope="module")
def account_id(sessions) -> str:
    return create_account(sessions.store, "sessionuser")


def _request(cookies: dict[str, str] | None = None, path: str = "/", query: str = "") -> Request:
    header = "; ".join(f"{k}={v}" for k, v in (cookies or {}).items())
    headers = [(b"cookie", header.encode())] if header else []
    return Request(
        {
            "type": "http",
            "method": "GET",
            "scheme": "http",
            "server": ("testserver", 80),
            "root_path": "",
            "path": path,
            "query_string": query.encode(),
            "headers": headers,
        }
    )


def _cookie_for(sessions: SessionManager, session_id: str) -> dict[str, str]:
    return {AUTH_COOKIE: sessions.cookies.dumps({SESSION_KEY: session_id})}


class TestGetActiveAccountId:
    def test_no_cookie_is_anonymous(self, sessions) -> None:
        assert sessions.get_active_account_id(_request()) is None

    def test_valid_session(self, sessions, account_id) -> None:
        session = sessions.create_session(account_id)
        assert sessions.get_active_account_id(_request(_cookie_for(sessions, session.id))) == account_id

    def test_session_expires_in_thirty_days(self, sessions, account_id) -> None:
        session = sessions.create_session(account_id)
        remaining = session.expiration_date - datetime.now(timezone.utc)
        assert SESSION_EXPIRATION_TIME - timedelta(minutes=1) < remaining <= SESSION_EXPIRATION_TIME

    def test_expired_session_redirects_home(self, sessions, account_id) -> None:
        expired = sessions.store.create_session(account_id, datetime.now(timezone.utc) - timedelta(seconds=1))
        assert sessions.resolve_session(expired.id) is None

        with pytest.raises(AuthRedirect) as exc_info:
            sessions.get_active_account_id(_request(_cookie_for(sessions, expired.id)))
        assert exc_info.value.location == "/"
        assert cookie_value(exc_info.value.response, AUTH_COOKIE) == ""

    def test_deleted_session_redirects_home(self, sessions, account_id) -> None:
        session = sessions.create_session(account_id)
        sessions.store.delete_session(session.id)
        with pytest.raises(AuthRedirect) as exc_info:
            sessions.get_active_account_id(_request(_cookie_for(sessions, session.id)))
        assert exc_info.value.location == "/"

    def test_active_account_outside_members_redirects_home(self, sessions) -> None:
        bogus = Session(
            id="s1",
            expiration_date=datetime.now(timezone.utc) + timedelta(days=1),
            active_account_id="intruder",
            account_ids={"owner"},
        )
        with patch.object(SessionManager, "resolve_session", return_value=bogus):
            with pytest.raises(AuthRedirect) as exc_info:
                sessions.get_active_account_id(_request(_cookie_for(sessions, "s1")))
        assert exc_info.value.location == "/"

    def test_foreign_signature_is_ignored(self, sessions, account_id) -> None:
        session = sessions.create_session(account_id)
        forged = CookieSigner("x" * 32).dumps({SESSION_KEY: session.id})
        assert sessions.get_active_account_id(_request({AUTH_COOKIE: forged})) is None


class TestRequireHelpers:
    def test_require_active_account_redirects_with_current_url(self, sessions) -> None:
        with pytest.raises(AuthRedirect) as exc_info:
            sessions.require_active_account_id(_request(path="/notes", query="page=2"))
        assert exc_info.value.location == "/login?redirectTo=%2Fnotes%3Fpage%3D2"

    def test_require_active_account_without_redirect_target(self, sessions) -> None:
        with pytest.raises(AuthRedirect) as exc_info:
            sessions.require_active_account_id(_request(path="/notes"), redirect_to=None)
        assert exc_info.value.location == "/login"

    def test_require_active_account_passes(self, sessions, account_id) -> None:
        session = sessions.create_session(account_id)
        assert sessions.require_active_account_id(_request(_cookie_for(sessions, session.id))) == account_id

    def test_require_anonymous(self, sessions, account_id) -> None:
        sessions.require_anonymous(_request())
        session = sessions.create_session(account_id)
        with pytest.raises(AuthRedirect) as exc_info:
            sessions.require_anonymous(_request(_cookie_for(sessions, session.id)))
        assert exc_info.value.location == "/"


class TestCookieLifecycle:
    def test_commit_session_sets_signed_cookie(self, sessions, account_id) -> None:
        session = sessions.create_session(account_id)
        response = Response()
        sessions.commit_session(response, session)

        header = response.headers["set-cookie"]
        assert "httponly" in header.lower()
        assert "samesite=lax" in header.lower()
        max_age = int(header.lower().split("max-age=")[1].split(";")[0])
        assert SESSION_EXPIRATION_TIME.total_seconds() - 60 < max_age <= SESSION_EXPIRATION_TIME.total_seconds()
        assert sessions.cookies.loads(cookie_value(response, AUTH_COOKIE)) == {SESSION_KEY: session.id}

    def test_destroy_session_deletes_row(self, sessions, account_id) -> None:
        session = sessions.create_session(account_id)
        response = sessions.destroy_session(_request(_cookie_for(sessions, session.id)), "/goodbye")
        assert response.status_code == 302
        assert response.headers["location"] == "/goodbye"
        assert cookie_value(response, AUTH_COOKIE) == ""
        assert sessions.resolve_session(session.id) is None

    def test_destroy_session_rejects_offsite_target(self, sessions) -> None:
        response = sessions.destroy_session(_request(), "//evil.example")
        assert response.headers["location"] == "/"

    def test_destroy_session_survives_db_error(self, sessions, account_id) -> None:
        session = sessions.create_session(account_id)
        with patch.object(sessions.store, "delete_session", side_effect=OperationalError("DELETE", {}, Exception())):
            response = sessions.destroy_session(_request(_cookie_for(sessions, session.id)))
        assert response.status_code == 302
        assert cookie_value(response, AUTH_COOKIE) == ""

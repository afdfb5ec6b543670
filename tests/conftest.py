"""
tests/conftest.py -- Shared test fixtures for Notekeeper integration tests.

This module provides:
  - make_store(): isolated named shared-memory SQLite store, defaults seeded
  - FakeProvider: an OAuth provider whose profile (or failure) each test sets
  - _patch_lifespan(): wires the test store, provider registry and settings
    into app.state, bypassing real startup
  - auth_env (module scope) / env (function scope): the running TestClient and
    the services behind it; env clears cookies, the fake provider and the
    rate limiter before each test
  - create_account() / login_as(): build accounts and sessions without HTTP

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from api.limiter import limiter
from asgi import app
from auth.cookies import AUTH_COOKIE, CookieSigner
from auth.credentials import hash_password
from auth.errors import ProviderExchangeError
from auth.models import Session
from auth.permissions import PermissionEvaluator
from auth.providers import ProviderRegistry, ProviderUser
from auth.sessions import SESSION_KEY, SessionManager, get_session_expiration_date
from auth.store import AccountStore
from core.config import Settings, get_settings

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store(db_suffix: str) -> AccountStore:
    """Create an isolated named shared-memory SQLite store with defaults seeded.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    store = AccountStore(f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")
    store.ensure_defaults()
    return store


def make_sessions(store: AccountStore) -> SessionManager:
    return SessionManager(store, CookieSigner(get_settings().secret_key))


def create_account(
    store: AccountStore,
    username: str,
    password: Optional[str] = "secret123",
    *,
    email: Optional[str] = None,
    role_name: str = "user",
) -> str:
    """Create an account (with profile, membership and role) and return its id."""
    session = store.create_account_with_session(
        email=email or f"{username}@example.com",
        username=username,
        name=username.title(),
        password_hash=hash_password(password) if password is not None else None,
        expiration_date=get_session_expiration_date(),
        role_name=role_name,
    )
    store.delete_session(session.id)
    return session.active_account_id


# ---------------------------------------------------------------------------
# Fake OAuth provider
# ---------------------------------------------------------------------------


class FakeProvider:
    """Stands in for GitHub: returns self.profile, or raises when self.fail is set."""

    name = "github"
    label = "GitHub"

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.profile: Optional[ProviderUser] = None
        self.fail = False
        self.calls = 0

    async def authorize_redirect(self, request: Request, redirect_uri: str) -> Response:
        return RedirectResponse(f"https://github.example/login/oauth/authorize?redirect_uri={redirect_uri}", 302)

    async def authenticate(self, request: Request) -> ProviderUser:
        self.calls += 1
        if self.fail or self.profile is None:
            raise ProviderExchangeError("code exchange rejected")
        return self.profile


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------


@dataclass
class AuthEnv:
    client: TestClient
    store: AccountStore
    sessions: SessionManager
    provider: FakeProvider
    settings: Settings

    def login_as(self, account_id: str) -> Session:
        """Open a session for account_id and put its cookie in the client jar."""
        session = self.sessions.create_session(account_id)
        # Same domain the jar records for server-set cookies, so later
        # responses replace this value instead of adding a second one.
        self.client.cookies.set(
            AUTH_COOKIE, self.sessions.cookies.dumps({SESSION_KEY: session.id}), domain="testserver.local"
        )
        return session


def _patch_lifespan(store: AccountStore, sessions: SessionManager, registry: ProviderRegistry, settings: Settings):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.store = store
        app.state.cookies = sessions.cookies
        app.state.sessions = sessions
        app.state.permissions = PermissionEvaluator(sessions, settings.organization_id)
        app.state.providers = registry
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def auth_env(request) -> Generator[AuthEnv, None, None]:
    """Yield an AuthEnv backed by a store private to the calling test module.

    follow_redirects=False is essential: the tests assert on redirect
    Location headers, which are invisible once the client follows them.
    """
    store = make_store(request.module.__name__.rsplit(".", 1)[-1])
    sessions = make_sessions(store)
    provider = FakeProvider()
    settings = get_settings()

    app.router.lifespan_context = _patch_lifespan(store, sessions, ProviderRegistry([provider]), settings)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield AuthEnv(client=client, store=store, sessions=sessions, provider=provider, settings=settings)

    store.close()


@pytest.fixture
def env(auth_env: AuthEnv) -> AuthEnv:
    """Per-test view of auth_env with a clean cookie jar and fake provider."""
    auth_env.client.cookies.clear()
    auth_env.provider.reset()
    limiter.reset()
    return auth_env


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_cookie_headers(resp) -> list[str]:
    """All Set-Cookie values of an httpx or Starlette response."""
    headers = resp.headers
    items = headers.multi_items() if hasattr(headers, "multi_items") else headers.items()
    return [v for k, v in items if k.lower() == "set-cookie"]


def cookie_value(resp, name: str) -> Optional[str]:
    """Return the value of the last Set-Cookie for name, "" when deleted, None when absent."""
    value = None
    for header in set_cookie_headers(resp):
        key, _, rest = header.partition("=")
        if key.strip() == name:
            raw = rest.split(";", 1)[0].strip().strip('"')
            deleted = "max-age=0" in header.lower()
            value = "" if deleted else raw
    return value


def decode_cookie(env: AuthEnv, resp, name: str) -> dict:
    raw = cookie_value(resp, name)
    if not raw:
        return {}
    return env.sessions.cookies.loads(raw) or {}

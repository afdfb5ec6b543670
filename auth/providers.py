"""
auth/providers.py -- OAuth provider strategies and their registry.

The registry is an explicit value: build_provider_registry(settings) is
called once in the app lifespan and the result is stored on
app.state.providers. Route handlers pass it to the callback state machine;
nothing reads a module-level OAuth singleton.

Each provider turns an inbound callback request into a verified ProviderUser
or raises ProviderExchangeError. That is the only failure the callback state
machine handles -- every authlib, HTTP and profile-shape problem is funneled
into it here.

Security notes:
  [H1] Email verification is mandatory. An unverified GitHub email could be a
       victim's address added by an attacker, and the callback links accounts
       by email.

  OAuth state parameter (CSRF protection) is handled by authlib via
  Starlette SessionMiddleware: the state is stored in the signed session
  cookie before the authorization redirect and checked in the callback.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol

import httpx
from authlib.integrations.starlette_client import OAuth, OAuthError
from starlette.requests import Request
from starlette.responses import Response

from auth.errors import ProviderExchangeError
from core.config import Settings

logger = logging.getLogger("notekeeper.auth.providers")

GITHUB_PROVIDER_NAME = "github"

_USERNAME_MAX_LENGTH = 20
_USERNAME_DISALLOWED = re.compile(r"[^a-z0-9_]")


@dataclass
class ProviderUser:
    """A verified external profile returned by a provider."""

    id: str
    email: str
    username: str | None = None
    name: str | None = None
    image_url: str | None = None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_username(username: str) -> str:
    """Lowercase and strip anything but [a-z0-9_], capped at 20 characters."""
    return _USERNAME_DISALLOWED.sub("_", username.lower())[:_USERNAME_MAX_LENGTH]


class Provider(Protocol):
    name: str
    label: str

    async def authorize_redirect(self, request: Request, redirect_uri: str) -> Response: ...

    async def authenticate(self, request: Request) -> ProviderUser: ...


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


class GitHubProvider:
    """Authorization code flow against GitHub's static endpoints."""

    name = GITHUB_PROVIDER_NAME
    label = "GitHub"

    def __init__(self, client) -> None:
        self.client = client

    async def authorize_redirect(self, request: Request, redirect_uri: str) -> Response:
        return await self.client.authorize_redirect(request, redirect_uri)

    async def authenticate(self, request: Request) -> ProviderUser:
        """Exchange the callback code and fetch the GitHub profile.

        GitHub does not put the email in the token response, so two API calls
        follow the exchange:
          1. GET /user         -- numeric id (stable subject), login, name, avatar.
          2. GET /user/emails  -- the primary verified email [H1].
        """
        try:
            token = await self.client.authorize_access_token(request)
            resp = await self.client.get("user", token=token)
            resp.raise_for_status()
            profile = resp.json()
            emails_resp = await self.client.get("user/emails", token=token)
            emails_resp.raise_for_status()
            emails = emails_resp.json()
        except (OAuthError, httpx.HTTPError, ValueError) as exc:
            raise ProviderExchangeError(f"GitHub code exchange failed: {exc}") from exc

        email = next((e["email"] for e in emails if e.get("primary") and e.get("verified")), None)
        if not email:
            raise ProviderExchangeError(
                "GitHub OAuth: no primary verified email found. "
                "The user must verify their email address on GitHub before logging in."
            )
        if "id" not in profile:
            raise ProviderExchangeError("GitHub OAuth: profile response has no id")

        return ProviderUser(
            id=str(profile["id"]),
            email=email,
            username=profile.get("login"),
            name=profile.get("name"),
            image_url=profile.get("avatar_url"),
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ProviderRegistry:
    """Provider name -> strategy. Built once at startup, read-only afterwards."""

    def __init__(self, providers: list[Provider] | None = None) -> None:
        self._providers: dict[str, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def label(self, name: str) -> str:
        provider = self._providers.get(name)
        return provider.label if provider is not None else name

    def enabled(self) -> list[dict]:
        """Return [{"name": ..., "label": ...}] for every registered provider."""
        return [{"name": p.name, "label": p.label} for p in self._providers.values()]


def build_provider_registry(settings: Settings) -> ProviderRegistry:
    """Register every provider whose client ID and secret are configured."""
    oauth = OAuth()
    registry = ProviderRegistry()

    if settings.github_client_id and settings.github_client_secret:
        oauth.register(
            name=GITHUB_PROVIDER_NAME,
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        registry.register(GitHubProvider(oauth.create_client(GITHUB_PROVIDER_NAME)))
        logger.info("GitHub OAuth provider registered")

    return registry

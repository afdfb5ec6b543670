"""
auth/errors.py -- Exception taxonomy for the auth subsystem.

  AuthRedirect            -- not authenticated (or a stale session claim); the
                             caller must follow the carried redirect response.
  AuthorizationError      -- authenticated but lacking a permission or role;
                             rendered as a structured 403.
  ProviderExchangeError   -- OAuth code exchange / profile fetch failed.
  PrimaryInstanceRequired -- a write was attempted on a read replica.

api/main.py registers a handler for each so route code can simply raise.
"""

from __future__ import annotations

from starlette.responses import RedirectResponse


class AuthRedirect(Exception):
    """Raised to abort a request with a redirect (plus any cookie changes)."""

    def __init__(self, response: RedirectResponse) -> None:
        super().__init__(response.headers.get("location", ""))
        self.response = response

    @property
    def location(self) -> str:
        return self.response.headers.get("location", "")


class AuthorizationError(Exception):
    """Raised when the caller lacks the permission or role a route requires.

    body is the JSON payload of the 403 response, e.g.
    {"error": "Unauthorized", "requiredPermission": {...}, "message": "..."}.
    """

    status_code = 403

    def __init__(self, body: dict) -> None:
        super().__init__(body.get("message", "Unauthorized"))
        self.body = body


class ProviderExchangeError(Exception):
    """The OAuth provider rejected the code or returned an unusable profile."""


class PrimaryInstanceRequired(Exception):
    """The request mutates state but this instance is a read replica."""

    def __init__(self, primary_instance: str) -> None:
        super().__init__(f"Writes must go to the primary instance {primary_instance!r}")
        self.primary_instance = primary_instance

"""
auth/cookies.py -- Signed cookies, toasts and safe redirects.

Every cookie Notekeeper sets is an HS256 JWT (python-jose) signed with
SECRET_KEY, so a client can read but never forge its contents:

  session       -- {"sessionId": ...}; the auth session. max_age tracks the
                   server-side Session expiration.
  verification  -- short-lived state for onboarding and 2FA challenges
                   (prefilled provider profile, unverified session id).
  redirectTo    -- pending post-login target captured when an OAuth flow
                   starts.
  toast         -- a one-shot notification {id, title, description, type}
                   for the UI to display after a redirect.

httponly=True and samesite="lax" on all of them; secure follows
Settings.secure_cookies.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

_ALGORITHM = "HS256"

AUTH_COOKIE = "session"
VERIFY_COOKIE = "verification"
REDIRECT_COOKIE = "redirectTo"
TOAST_COOKIE = "toast"

VERIFY_COOKIE_MAX_AGE = 10 * 60
REDIRECT_COOKIE_MAX_AGE = 10 * 60
TOAST_COOKIE_MAX_AGE = 60

TOAST_TYPES = ("error", "success", "message")


@dataclass
class Toast:
    title: str
    description: str
    type: str = "message"  # "error", "success", "message"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if self.type not in TOAST_TYPES:
            raise ValueError(f"Unknown toast type {self.type!r}")


def safe_redirect(to: str | None, default: str = "/") -> str:
    """Validate a redirect target. Only relative, server-local paths pass. [C2]

    Rejects absolute URLs and protocol-relative "//host" paths (including the
    backslash variant browsers normalize to "//") so a crafted redirectTo
    cannot bounce a user off-site after login.
    """
    if to and to.startswith("/") and not to.startswith("//") and not to.startswith("/\\"):
        return to
    return default


class CookieSigner:
    """Encode, decode, set and delete signed cookies.

    Constructed once at startup from Settings and shared via app.state.
    """

    def __init__(self, secret_key: str, secure: bool = False) -> None:
        self._secret_key = secret_key
        self.secure = secure

    # ------------------------------------------------------------------
    # Codec
    # ------------------------------------------------------------------

    def dumps(self, data: dict[str, Any], max_age: int | None = None) -> str:
        payload: dict[str, Any] = {"data": data}
        if max_age is not None:
            payload["exp"] = datetime.now(timezone.utc) + timedelta(seconds=max_age)
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def loads(self, token: str) -> dict[str, Any] | None:
        """Decode a signed value. Returns None on any tampering or expiry."""
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        data = payload.get("data")
        return data if isinstance(data, dict) else None

    # ------------------------------------------------------------------
    # Cookie I/O
    # ------------------------------------------------------------------

    def read(self, request: Request, name: str) -> dict[str, Any]:
        """Return the decoded cookie, or an empty dict if absent or invalid."""
        raw = request.cookies.get(name)
        if not raw:
            return {}
        return self.loads(raw) or {}

    def write(self, response: Response, name: str, data: dict[str, Any], max_age: int | None = None) -> None:
        response.set_cookie(
            name,
            value=self.dumps(data, max_age),
            max_age=max_age,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )

    def delete(self, response: Response, name: str) -> None:
        response.delete_cookie(name, path="/", httponly=True, samesite="lax", secure=self.secure)

    # ------------------------------------------------------------------
    # Named cookies
    # ------------------------------------------------------------------

    def get_redirect_to(self, request: Request) -> str | None:
        value = self.read(request, REDIRECT_COOKIE).get("redirectTo")
        return value if isinstance(value, str) and value else None

    def set_redirect_to(self, response: Response, redirect_to: str) -> None:
        self.write(response, REDIRECT_COOKIE, {"redirectTo": redirect_to}, REDIRECT_COOKIE_MAX_AGE)

    def set_toast(self, response: Response, toast: Toast) -> None:
        self.write(response, TOAST_COOKIE, asdict(toast), TOAST_COOKIE_MAX_AGE)

    def redirect_with_toast(self, url: str, toast: Toast, status_code: int = 302) -> RedirectResponse:
        """Build a redirect carrying a one-shot toast cookie."""
        response = RedirectResponse(url, status_code=status_code)
        self.set_toast(response, toast)
        return response

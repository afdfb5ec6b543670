"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The SessionManager and PermissionEvaluator are built once in the app lifespan
and live on app.state; these helpers fetch them per request so route
signatures stay declarative:

    @router.get("/users")
    def list_users(account_id: str = Depends(require_permission("read:user:any"))): ...

try_get_account_id() is the soft variant (None when anonymous).
require_account_id() raises AuthRedirect to /login?redirectTo=<current url>.
require_permission() / require_role() add the 403 check on top.

Layer rule: no imports from api/ or web/. auth/dependencies.py may import
from fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.permissions import PermissionEvaluator, parse_permission_string
from auth.sessions import SessionManager


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_permissions(request: Request) -> PermissionEvaluator:
    return request.app.state.permissions


def try_get_account_id(request: Request) -> str | None:
    """Return the active account id, or None for anonymous callers.

    Still raises AuthRedirect (cookie destroyed) for a forged or stale
    session cookie.
    """
    return get_sessions(request).get_active_account_id(request)


def require_account_id(request: Request) -> str:
    """Require a logged-in caller."""
    return get_sessions(request).require_active_account_id(request)


def require_anonymous(request: Request) -> None:
    """Require a caller with no active session (login and signup forms)."""
    get_sessions(request).require_anonymous(request)


def require_permission(permission: str) -> Callable[[Request], str]:
    """Build a dependency that enforces permission and returns the account id.

    The permission string is parsed up front so a typo fails at import time
    rather than on the first request.
    """
    parse_permission_string(permission)

    def dependency(request: Request) -> str:
        return get_permissions(request).require_with_permission(request, permission)

    return dependency


def require_role(name: str) -> Callable[[Request], str]:
    """Build a dependency that enforces role name and returns the account id."""

    def dependency(request: Request) -> str:
        return get_permissions(request).require_with_role(request, name)

    return dependency

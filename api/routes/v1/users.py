"""
api/routes/v1/users.py -- Account administration and data export endpoints.

Routes:
  GET /api/v1/users                        -- list accounts (read:user:any)
  GET /api/v1/users/me/data                -- export everything held about the caller
  PUT /api/v1/users/{username}/password    -- reset a password (update:user:any)
  GET /api/v1/admin/roles                  -- roles and their permissions (role admin)

Permission checks run in dependencies, so an unauthenticated caller gets 401
and an authenticated caller without the grant gets the structured 403 before
the handler body runs.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import (
    AccountDataResponse,
    AccountResponse,
    ConnectionResponse,
    MembershipResponse,
    MessageResponse,
    PasswordReset,
    RoleResponse,
    SessionResponse,
    UserProfileResponse,
)
from auth import accounts
from auth.dependencies import get_sessions, require_account_id, require_permission, require_role

logger = logging.getLogger("notekeeper.api.users")

router = APIRouter()


@router.get("/users", response_model=list[AccountResponse])
def list_accounts(
    request: Request,
    account_id: str = Depends(require_permission("read:user:any")),
) -> list[AccountResponse]:
    """List every account. Requires read:user:any."""
    store = get_sessions(request).store
    return [AccountResponse.from_account(a) for a in store.list_accounts()]


@router.get("/users/me/data", response_model=AccountDataResponse)
def export_account_data(request: Request, account_id: str = Depends(require_account_id)) -> AccountDataResponse:
    """Return the caller's account with sessions, connections, profiles and memberships.

    The password hash is never part of the export.
    """
    store = get_sessions(request).store
    account = store.get_account_by_id(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Account not found."})
    users = store.list_users_for_account(account_id)
    return AccountDataResponse(
        account=AccountResponse.from_account(account),
        sessions=[SessionResponse.from_session(s) for s in store.list_sessions_for_account(account_id)],
        connections=[ConnectionResponse.from_connection(c) for c in store.list_connections(account_id)],
        users=[
            UserProfileResponse(
                id=u.id,
                name=u.name,
                username=u.username,
                email=u.email,
                has_image=store.get_user_image(u.id) is not None,
            )
            for u in users
        ],
        memberships=[MembershipResponse.from_membership(m) for m in store.list_memberships(account_id)],
    )


@router.put("/users/{username}/password", response_model=MessageResponse)
def reset_password(
    request: Request,
    username: str,
    body: PasswordReset,
    account_id: str = Depends(require_permission("update:user:any")),
) -> MessageResponse:
    """Overwrite another account's password. Requires update:user:any."""
    store = get_sessions(request).store
    if not accounts.reset_password(store, username=username, password=body.password):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Account not found."})
    logger.info("Password reset for %s by account %s", username.lower(), account_id)
    return MessageResponse(message="Password updated.")


@router.get("/admin/roles", response_model=list[RoleResponse])
def list_roles(request: Request, account_id: str = Depends(require_role("admin"))) -> list[RoleResponse]:
    """List roles with their permissions. Requires the admin role."""
    store = get_sessions(request).store
    return [RoleResponse.from_role(r) for r in store.list_roles()]

"""
auth/permissions.py -- Role and permission checks.

Permission strings have the shape "action:entity[:access[,access...]]":

    "delete:note:own"       -- may delete own notes
    "delete:note:own,any"   -- either grant is enough
    "read:user"             -- any access level

Evaluation walks Account -> User -> Membership (in the configured
organization) -> Role -> Permission. Stored access "*" satisfies any request;
a requested "*" (or no access part) accepts any stored access.

Both checks are read-only. Unauthenticated callers get the Session
Manager's login redirect; authenticated callers without the grant get an
AuthorizationError rendered as a structured 403.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from starlette.requests import Request

from auth.errors import AuthorizationError
from auth.sessions import SessionManager

ACCESS_LEVELS = ("own", "any", "*")


@dataclass(frozen=True)
class PermissionData:
    action: str
    entity: str
    access: list[str] | None = None


def parse_permission_string(permission: str) -> PermissionData:
    """Split "action:entity[:access,...]" into a PermissionData.

    Raises ValueError for a missing action/entity or an unknown access level.
    """
    parts = permission.split(":")
    if len(parts) not in (2, 3) or not parts[0] or not parts[1]:
        raise ValueError(f"Invalid permission string {permission!r}; expected action:entity[:access]")
    action, entity = parts[0], parts[1]
    access = None
    if len(parts) == 3 and parts[2]:
        access = [a.strip() for a in parts[2].split(",") if a.strip()]
        unknown = [a for a in access if a not in ACCESS_LEVELS]
        if unknown:
            raise ValueError(f"Unknown access level(s) {unknown!r} in {permission!r}")
    return PermissionData(action=action, entity=entity, access=access or None)


class PermissionEvaluator:
    """Answers "does the caller hold permission/role Y" for one organization."""

    def __init__(self, sessions: SessionManager, organization_id: str) -> None:
        self.sessions = sessions
        self.organization_id = organization_id

    def has_permission(self, account_id: str, permission: PermissionData) -> bool:
        return self.sessions.store.account_has_permission(
            account_id,
            self.organization_id,
            permission.action,
            permission.entity,
            permission.access,
        )

    def require_with_permission(self, request: Request, permission: str) -> str:
        """Return the caller's account id if it holds permission, else raise.

        Raises AuthRedirect when not logged in, AuthorizationError (403) when
        logged in without a matching grant.
        """
        permission_data = parse_permission_string(permission)
        account_id = self.sessions.require_active_account_id(request)
        if not self.has_permission(account_id, permission_data):
            raise AuthorizationError(
                {
                    "error": "Unauthorized",
                    "requiredPermission": asdict(permission_data),
                    "message": f"Unauthorized: required permissions: {permission}",
                }
            )
        return account_id

    def require_with_role(self, request: Request, name: str) -> str:
        """Return the caller's account id if a membership carries role name."""
        account_id = self.sessions.require_active_account_id(request)
        if not self.sessions.store.account_has_role(account_id, self.organization_id, name):
            raise AuthorizationError(
                {
                    "error": "Unauthorized",
                    "requiredRole": name,
                    "message": f"Unauthorized: required role: {name}",
                }
            )
        return account_id

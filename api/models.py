"""
API request and response models for Notekeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Password hashes never appear in any response model.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import Account, Connection, Membership, Role, Session

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[a-zA-Z0-9_]+$"

_Username = Annotated[str, Field(min_length=3, max_length=20, pattern=USERNAME_PATTERN)]
_Password = Annotated[str, Field(min_length=6, max_length=72)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Only the username is stripped. Passwords are compared byte for byte, the
    same as the web login form.
    """

    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=100)

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, value: str) -> str:
        return str(value).strip()


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup.

    Username and email are lowercased before validation so "Alice" and
    "alice" cannot become two accounts. The password is kept as typed.
    """

    email: EmailStr
    username: _Username
    name: str = Field(min_length=1, max_length=40)
    password: _Password

    @field_validator("email", "username", mode="before")
    @classmethod
    def lowercase(cls, value: str) -> str:
        return str(value).strip().lower()

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return str(value).strip()


class PasswordChange(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(min_length=1, max_length=100)
    new_password: _Password


class PasswordReset(BaseModel):
    """Request body for PUT /api/v1/users/{username}/password."""

    password: _Password


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    expiration_date: datetime
    active_account_id: Optional[str]

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            expiration_date=session.expiration_date,
            active_account_id=session.active_account_id,
        )


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login and /signup.

    verify_url is set (and no session cookie issued) when the account must
    pass a two-factor challenge first.
    """

    model_config = ConfigDict(frozen=True)

    account_id: str
    username: str
    expiration_date: Optional[datetime] = None
    verify_url: Optional[str] = None


class AccountResponse(BaseModel):
    """Public view of an Account."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    username: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(id=account.id, email=account.email, username=account.username, created_at=account.created_at)


class MembershipResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization_id: str
    roles: list[str]

    @classmethod
    def from_membership(cls, membership: Membership) -> "MembershipResponse":
        return cls(organization_id=membership.organization_id, roles=sorted(membership.roles))


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    email: str
    username: str
    name: Optional[str] = None
    memberships: list[MembershipResponse] = Field(default_factory=list)


class OAuthProviderInfo(BaseModel):
    """One entry of GET /api/v1/auth/providers -- drives the login buttons."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ConnectionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_name: str
    provider_id: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_connection(cls, connection: Connection) -> "ConnectionResponse":
        return cls(
            provider_name=connection.provider_name,
            provider_id=connection.provider_id,
            created_at=connection.created_at,
        )


class UserProfileResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    username: str
    email: str
    has_image: bool = False


class AccountDataResponse(BaseModel):
    """Response for GET /api/v1/users/me/data -- everything held about the caller."""

    model_config = ConfigDict(frozen=True)

    account: AccountResponse
    sessions: list[SessionResponse]
    connections: list[ConnectionResponse]
    users: list[UserProfileResponse]
    memberships: list[MembershipResponse]


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    entity: str
    access: str
    description: str = ""


class RoleResponse(BaseModel):
    """One role with its permissions, for GET /api/v1/admin/roles."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    permissions: list[PermissionResponse]

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            name=role.name,
            description=role.description,
            permissions=[
                PermissionResponse(action=p.action, entity=p.entity, access=p.access, description=p.description)
                for p in role.permissions
            ],
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)

"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store and the session/callback layers do the work.

Timestamps are timezone-aware UTC datetimes. The store converts to and from
the naive UTC values it persists.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Account:
    """An authentication identity.

    An Account owns at most one password hash and any number of provider
    Connections. Sessions reference accounts through a many-to-many edge so a
    single browser session can switch between several accounts.
    """

    email: str
    username: str
    id: str | None = None
    created_at: datetime | None = None


@dataclass
class Session:
    """A login instance.

    account_ids is the set of accounts permitted to use this session;
    active_account_id must be one of them for the session to authenticate
    anything. The row is logically dead once expiration_date has passed even
    if it still exists in the table.
    """

    id: str
    expiration_date: datetime
    active_account_id: str | None = None
    account_ids: set[str] = field(default_factory=set)


@dataclass
class Connection:
    """Links one Account to one (provider_name, provider_id) identity."""

    provider_name: str
    provider_id: str
    account_id: str | None
    id: str | None = None
    created_at: datetime | None = None


@dataclass
class UserImage:
    content_type: str
    blob: bytes
    alt_text: str | None = None
    id: str | None = None


@dataclass
class User:
    """Profile attached to an Account. Memberships hang off the profile."""

    account_id: str
    name: str
    username: str
    email: str
    id: str | None = None


@dataclass
class Membership:
    user_id: str
    organization_id: str
    roles: list[str] = field(default_factory=list)
    id: str | None = None


@dataclass
class Permission:
    action: str  # "create", "read", "update", "delete"
    entity: str  # "user", "note"
    access: str  # "own", "any", "*"
    description: str = ""
    id: str | None = None


@dataclass
class Role:
    name: str
    description: str = ""
    permissions: list[Permission] = field(default_factory=list)
    id: str | None = None


@dataclass
class Verification:
    """A one-time-password secret bound to (target, type).

    type "2fa" with target=<account id> marks an account that must pass a
    TOTP challenge before a session cookie is issued.
    """

    type: str
    target: str
    secret: str
    algorithm: str = "SHA1"
    digits: int = 6
    period: int = 30
    char_set: str = "0123456789"
    expiration_date: datetime | None = None
    id: str | None = None
    created_at: datetime | None = None

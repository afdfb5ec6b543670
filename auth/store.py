"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
AccountStore is the repository; the _row_to_* functions are the mappers.
Session, callback and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(provider_name, provider_id) on connections is a real SQL constraint
  (both columns are NOT NULL, so SQLite's NULL-distinct rule does not apply).
  Concurrent OAuth callbacks racing to link the same provider identity get an
  IntegrityError for the loser; callers treat it as "already connected".

Transactions:
  Multi-row writes that must be all-or-nothing (signup, connection + session
  in the OAuth login path) run inside a single engine.begin() block.

Time:
  Timestamps are stored as naive UTC datetimes and handed out as aware UTC
  datetimes. Session reads always filter expiration_date > now; expired rows
  are logically dead even while they still exist.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from itertools import product

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Connection as DBConnection
from sqlalchemy.engine import Engine

from auth.models import Account, Connection, Membership, Permission, Role, Session, User, UserImage, Verification

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("created_at", DateTime, nullable=False),
)

_passwords = Table(
    "passwords",
    _metadata,
    Column("account_id", String(32), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True),
    Column("hash", Text, nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("expiration_date", DateTime, nullable=False),
    Column("active_account_id", String(32)),  # NULL until an account is activated
    Column("created_at", DateTime, nullable=False),
)

_account_sessions = Table(
    "account_sessions",
    _metadata,
    Column("account_id", String(32), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    Column("session_id", String(32), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
    UniqueConstraint("account_id", "session_id"),
)

_connections = Table(
    "connections",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("provider_name", String(30), nullable=False),
    Column("provider_id", String(255), nullable=False),
    Column("account_id", String(32), ForeignKey("accounts.id", ondelete="SET NULL")),
    Column("created_at", DateTime, nullable=False),
    # One provider identity links to at most one account. (account_id,
    # provider_name) is deliberately NOT unique.
    UniqueConstraint("provider_name", "provider_id"),
)

_organizations = Table(
    "organizations",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False),
)

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("account_id", String(32), ForeignKey("accounts.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("username", String(255), nullable=False),
    Column("email", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False),
)

_user_images = Table(
    "user_images",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
    Column("content_type", String(100), nullable=False),
    Column("blob", LargeBinary, nullable=False),
    Column("alt_text", Text),
    Column("created_at", DateTime, nullable=False),
)

_memberships = Table(
    "memberships",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), ForeignKey("users.id", ondelete="SET NULL"), index=True),
    Column("organization_id", String(32), ForeignKey("organizations.id"), nullable=False, index=True),
    Column("created_at", DateTime, nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("action", String(30), nullable=False),
    Column("entity", String(30), nullable=False),
    Column("access", String(30), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    UniqueConstraint("action", "entity", "access"),
)

_membership_roles = Table(
    "membership_roles",
    _metadata,
    Column("membership_id", String(32), ForeignKey("memberships.id", ondelete="CASCADE"), nullable=False),
    Column("role_id", String(32), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True),
    UniqueConstraint("membership_id", "role_id"),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", String(32), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", String(32), ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False, index=True),
    UniqueConstraint("role_id", "permission_id"),
)

_verifications = Table(
    "verifications",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("type", String(30), nullable=False),
    Column("target", String(255), nullable=False),
    Column("secret", Text, nullable=False),
    Column("algorithm", String(20), nullable=False),
    Column("digits", Integer, nullable=False),
    Column("period", Integer, nullable=False),
    Column("char_set", String(100), nullable=False),
    Column("expiration_date", DateTime),  # NULL = never expires (2FA secrets)
    Column("created_at", DateTime, nullable=False),
    UniqueConstraint("target", "type"),
)

# Seed data for ensure_defaults()
DEFAULT_ORGANIZATION_ID = "default"
DEFAULT_ROLE = "user"
_DEFAULT_ACTIONS = ("create", "read", "update", "delete")
_DEFAULT_ENTITIES = ("user", "note")
_DEFAULT_ACCESS = ("own", "any")


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_db(value: datetime | None) -> datetime | None:
    """Normalize an aware datetime to the naive UTC value stored in the DB."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for accounts, sessions, connections, roles and verifications.

    Usage:
        store = AccountStore("sqlite:///notekeeper.db")
        store.ensure_defaults()
        session = store.create_account_with_session(
            email="a@x.com", username="a", name="A", expiration_date=...,
            password_hash=hash_password("secret123"),
        )
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Seed data
    # ------------------------------------------------------------------

    def ensure_defaults(self) -> None:
        """Create the default organization, permissions and roles if missing.

        Idempotent -- safe to call on every startup. The "user" role holds
        every "own" permission, the "admin" role every "any" permission.
        """
        with self.engine.begin() as conn:
            if conn.execute(select(_organizations.c.id).where(_organizations.c.id == DEFAULT_ORGANIZATION_ID)).first() is None:
                conn.execute(
                    _organizations.insert().values(id=DEFAULT_ORGANIZATION_ID, name="Default", created_at=_utcnow())
                )

            role_ids = {
                "user": self._ensure_role(conn, "user", "Regular user"),
                "admin": self._ensure_role(conn, "admin", "Administrator"),
            }
            for action, entity, access in product(_DEFAULT_ACTIONS, _DEFAULT_ENTITIES, _DEFAULT_ACCESS):
                permission_id = self._ensure_permission(conn, action, entity, access)
                role_id = role_ids["user"] if access == "own" else role_ids["admin"]
                self._link_role_permission(conn, role_id, permission_id)

    def _ensure_role(self, conn: DBConnection, name: str, description: str = "") -> str:
        row = conn.execute(select(_roles.c.id).where(_roles.c.name == name)).first()
        if row is not None:
            return row.id
        role_id = _new_id()
        conn.execute(_roles.insert().values(id=role_id, name=name, description=description))
        return role_id

    def _ensure_permission(self, conn: DBConnection, action: str, entity: str, access: str) -> str:
        row = conn.execute(
            select(_permissions.c.id).where(
                (_permissions.c.action == action) & (_permissions.c.entity == entity) & (_permissions.c.access == access)
            )
        ).first()
        if row is not None:
            return row.id
        permission_id = _new_id()
        conn.execute(
            _permissions.insert().values(
                id=permission_id,
                action=action,
                entity=entity,
                access=access,
                description=f"{action} {access} {entity}",
            )
        )
        return permission_id

    def _link_role_permission(self, conn: DBConnection, role_id: str, permission_id: str) -> None:
        exists = conn.execute(
            select(_role_permissions.c.role_id).where(
                (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == permission_id)
            )
        ).first()
        if exists is None:
            conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=permission_id))

    def create_role(self, name: str, description: str = "", permissions: list[tuple[str, str, str]] = ()) -> str:
        """Create (or extend) a role with the given (action, entity, access) permissions."""
        with self.engine.begin() as conn:
            role_id = self._ensure_role(conn, name, description)
            for action, entity, access in permissions:
                self._link_role_permission(conn, role_id, self._ensure_permission(conn, action, entity, access))
        return role_id

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account_with_session(
        self,
        *,
        email: str,
        username: str,
        name: str,
        expiration_date: datetime,
        password_hash: str | None = None,
        connection: tuple[str, str] | None = None,
        image: UserImage | None = None,
        organization_id: str = DEFAULT_ORGANIZATION_ID,
        role_name: str = DEFAULT_ROLE,
    ) -> Session:
        """Create Account + credential + User + Membership + Session atomically.

        Exactly one engine.begin() block: if any insert fails (duplicate
        email/username, missing role, connection already claimed) nothing is
        committed. connection is a (provider_name, provider_id) pair.

        Raises sqlalchemy.exc.IntegrityError on uniqueness violations and
        LookupError if role_name has not been seeded.
        """
        now = _utcnow()
        account_id = _new_id()
        user_id = _new_id()
        membership_id = _new_id()
        session_id = _new_id()
        with self.engine.begin() as conn:
            role = conn.execute(select(_roles.c.id).where(_roles.c.name == role_name)).first()
            if role is None:
                raise LookupError(f"Role {role_name!r} does not exist; run ensure_defaults() first")

            conn.execute(_accounts.insert().values(id=account_id, email=email, username=username, created_at=now))
            if password_hash is not None:
                conn.execute(_passwords.insert().values(account_id=account_id, hash=password_hash))
            if connection is not None:
                provider_name, provider_id = connection
                conn.execute(
                    _connections.insert().values(
                        id=_new_id(),
                        provider_name=provider_name,
                        provider_id=provider_id,
                        account_id=account_id,
                        created_at=now,
                    )
                )
            conn.execute(
                _users.insert().values(
                    id=user_id, account_id=account_id, name=name, username=username, email=email, created_at=now
                )
            )
            if image is not None:
                conn.execute(
                    _user_images.insert().values(
                        id=_new_id(),
                        user_id=user_id,
                        content_type=image.content_type,
                        blob=image.blob,
                        alt_text=image.alt_text,
                        created_at=now,
                    )
                )
            conn.execute(
                _memberships.insert().values(
                    id=membership_id, user_id=user_id, organization_id=organization_id, created_at=now
                )
            )
            conn.execute(_membership_roles.insert().values(membership_id=membership_id, role_id=role.id))
            self._insert_session(conn, session_id, account_id, expiration_date, now)

        return Session(
            id=session_id,
            expiration_date=_from_db(_to_db(expiration_date)),
            active_account_id=account_id,
            account_ids={account_id},
        )

    def get_account_by_id(self, account_id: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).first()
        return _row_to_account(row) if row is not None else None

    def get_account_by_username(self, username: str) -> Account | None:
        """Look up an account by exact (already normalized) username."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.username == username)).first()
        return _row_to_account(row) if row is not None else None

    def get_account_by_email(self, email: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email)).first()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        """Return all accounts ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.username)).fetchall()
        return [_row_to_account(r) for r in rows]

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def get_password_hash(self, *, username: str | None = None, account_id: str | None = None) -> tuple[str, str | None] | None:
        """Return (account_id, hash) for the account, or None if it does not exist.

        hash is None for OAuth-only accounts. Exactly one of username or
        account_id must be given.
        """
        if (username is None) == (account_id is None):
            raise ValueError("Pass exactly one of username or account_id")
        where = _accounts.c.username == username if username is not None else _accounts.c.id == account_id
        query = (
            select(_accounts.c.id, _passwords.c.hash)
            .select_from(_accounts.outerjoin(_passwords, _passwords.c.account_id == _accounts.c.id))
            .where(where)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).first()
        if row is None:
            return None
        return row.id, row.hash

    def set_password(self, username: str, password_hash: str) -> bool:
        """Overwrite (or create) the password hash for username.

        Returns False if the account does not exist.
        """
        with self.engine.begin() as conn:
            account = conn.execute(select(_accounts.c.id).where(_accounts.c.username == username)).first()
            if account is None:
                return False
            updated = conn.execute(
                _passwords.update().where(_passwords.c.account_id == account.id).values(hash=password_hash)
            )
            if updated.rowcount == 0:
                conn.execute(_passwords.insert().values(account_id=account.id, hash=password_hash))
        return True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _insert_session(
        self, conn: DBConnection, session_id: str, account_id: str, expiration_date: datetime, now: datetime
    ) -> None:
        conn.execute(
            _sessions.insert().values(
                id=session_id,
                expiration_date=_to_db(expiration_date),
                active_account_id=account_id,
                created_at=now,
            )
        )
        conn.execute(_account_sessions.insert().values(account_id=account_id, session_id=session_id))

    def create_session(
        self,
        active_account_id: str,
        expiration_date: datetime,
        connection: Connection | None = None,
    ) -> Session:
        """Create a session whose active account is also its only member.

        When connection is given it is inserted in the same transaction, so
        an OAuth login that links an identity either commits both rows or
        neither. Raises IntegrityError if the connection is already claimed.
        """
        now = _utcnow()
        session_id = _new_id()
        with self.engine.begin() as conn:
            if connection is not None:
                self._insert_connection(conn, connection, now)
            self._insert_session(conn, session_id, active_account_id, expiration_date, now)
        return Session(
            id=session_id,
            expiration_date=_from_db(_to_db(expiration_date)),
            active_account_id=active_account_id,
            account_ids={active_account_id},
        )

    def get_session(self, session_id: str, now: datetime | None = None) -> Session | None:
        """Return the session if it exists and has not expired, else None."""
        cutoff = _to_db(now) if now is not None else _utcnow()
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where((_sessions.c.id == session_id) & (_sessions.c.expiration_date > cutoff))
            ).first()
            if row is None:
                return None
            members = conn.execute(
                select(_account_sessions.c.account_id).where(_account_sessions.c.session_id == session_id)
            ).fetchall()
        return _row_to_session(row, {m.account_id for m in members})

    def list_sessions_for_account(self, account_id: str) -> list[Session]:
        """Return the unexpired sessions this account may activate."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .select_from(_sessions.join(_account_sessions, _account_sessions.c.session_id == _sessions.c.id))
                .where((_account_sessions.c.account_id == account_id) & (_sessions.c.expiration_date > _utcnow()))
                .order_by(_sessions.c.created_at)
            ).fetchall()
        return [_row_to_session(r, {account_id}) for r in rows]

    def delete_session(self, session_id: str) -> bool:
        """Delete the session row and its account edges. Accounts are untouched."""
        with self.engine.begin() as conn:
            conn.execute(_account_sessions.delete().where(_account_sessions.c.session_id == session_id))
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _insert_connection(self, conn: DBConnection, connection: Connection, now: datetime) -> str:
        connection_id = _new_id()
        conn.execute(
            _connections.insert().values(
                id=connection_id,
                provider_name=connection.provider_name,
                provider_id=connection.provider_id,
                account_id=connection.account_id,
                created_at=now,
            )
        )
        return connection_id

    def create_connection(self, connection: Connection) -> str:
        """Insert a connection and return its ID.

        Raises sqlalchemy.exc.IntegrityError if (provider_name, provider_id)
        is already linked. Callers treat that as a benign race and re-read.
        """
        with self.engine.begin() as conn:
            return self._insert_connection(conn, connection, _utcnow())

    def get_connection(self, provider_name: str, provider_id: str) -> Connection | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _connections.select().where(
                    (_connections.c.provider_name == provider_name) & (_connections.c.provider_id == provider_id)
                )
            ).first()
        return _row_to_connection(row) if row is not None else None

    def list_connections(self, account_id: str) -> list[Connection]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _connections.select().where(_connections.c.account_id == account_id).order_by(_connections.c.created_at)
            ).fetchall()
        return [_row_to_connection(r) for r in rows]

    # ------------------------------------------------------------------
    # Profiles and memberships
    # ------------------------------------------------------------------

    def list_users_for_account(self, account_id: str) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().where(_users.c.account_id == account_id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def get_user_image(self, user_id: str) -> UserImage | None:
        with self.engine.connect() as conn:
            row = conn.execute(_user_images.select().where(_user_images.c.user_id == user_id)).first()
        if row is None:
            return None
        return UserImage(id=row.id, content_type=row.content_type, blob=row.blob, alt_text=row.alt_text)

    def list_memberships(self, account_id: str) -> list[Membership]:
        """Return every membership of the account's profiles with its role names."""
        query = (
            select(_memberships.c.id, _memberships.c.user_id, _memberships.c.organization_id, _roles.c.name)
            .select_from(
                _memberships.join(_users, _users.c.id == _memberships.c.user_id)
                .outerjoin(_membership_roles, _membership_roles.c.membership_id == _memberships.c.id)
                .outerjoin(_roles, _roles.c.id == _membership_roles.c.role_id)
            )
            .where(_users.c.account_id == account_id)
            .order_by(_memberships.c.created_at, _roles.c.name)
        )
        memberships: dict[str, Membership] = {}
        with self.engine.connect() as conn:
            for row in conn.execute(query):
                membership = memberships.setdefault(
                    row.id, Membership(id=row.id, user_id=row.user_id, organization_id=row.organization_id)
                )
                if row.name is not None:
                    membership.roles.append(row.name)
        return list(memberships.values())

    def grant_role(self, account_id: str, role_name: str, organization_id: str = DEFAULT_ORGANIZATION_ID) -> bool:
        """Attach role_name to every membership the account has in organization_id.

        Returns False if the role or a membership does not exist.
        """
        with self.engine.begin() as conn:
            role = conn.execute(select(_roles.c.id).where(_roles.c.name == role_name)).first()
            if role is None:
                return False
            membership_ids = conn.execute(
                select(_memberships.c.id)
                .select_from(_memberships.join(_users, _users.c.id == _memberships.c.user_id))
                .where((_users.c.account_id == account_id) & (_memberships.c.organization_id == organization_id))
            ).fetchall()
            for membership in membership_ids:
                already = conn.execute(
                    select(_membership_roles.c.role_id).where(
                        (_membership_roles.c.membership_id == membership.id) & (_membership_roles.c.role_id == role.id)
                    )
                ).first()
                if already is None:
                    conn.execute(_membership_roles.insert().values(membership_id=membership.id, role_id=role.id))
        return bool(membership_ids)

    def list_roles(self) -> list[Role]:
        """Return every role with its permissions, ordered by role name."""
        query = (
            select(
                _roles,
                _permissions.c.action,
                _permissions.c.entity,
                _permissions.c.access,
                _permissions.c.description.label("permission_description"),
            )
            .select_from(
                _roles.outerjoin(_role_permissions, _role_permissions.c.role_id == _roles.c.id).outerjoin(
                    _permissions, _permissions.c.id == _role_permissions.c.permission_id
                )
            )
            .order_by(_roles.c.name, _permissions.c.entity, _permissions.c.action, _permissions.c.access)
        )
        roles: dict[str, Role] = {}
        with self.engine.connect() as conn:
            for row in conn.execute(query):
                role = roles.setdefault(row.id, Role(id=row.id, name=row.name, description=row.description))
                if row.action is not None:
                    role.permissions.append(
                        Permission(
                            action=row.action,
                            entity=row.entity,
                            access=row.access,
                            description=row.permission_description or "",
                        )
                    )
        return list(roles.values())

    # ------------------------------------------------------------------
    # Authorization queries
    # ------------------------------------------------------------------

    def account_has_permission(
        self,
        account_id: str,
        organization_id: str,
        action: str,
        entity: str,
        access: list[str] | None = None,
    ) -> bool:
        """True if any Membership -> Role -> Permission path grants the permission.

        access=None, or a list containing "*", accepts any stored access.
        A stored access of "*" satisfies any requested access.
        """
        conditions = (
            (_users.c.account_id == account_id)
            & (_memberships.c.organization_id == organization_id)
            & (_permissions.c.action == action)
            & (_permissions.c.entity == entity)
        )
        if access and "*" not in access:
            conditions = conditions & _permissions.c.access.in_([*access, "*"])
        query = (
            select(_users.c.id)
            .select_from(
                _users.join(_memberships, _memberships.c.user_id == _users.c.id)
                .join(_membership_roles, _membership_roles.c.membership_id == _memberships.c.id)
                .join(_role_permissions, _role_permissions.c.role_id == _membership_roles.c.role_id)
                .join(_permissions, _permissions.c.id == _role_permissions.c.permission_id)
            )
            .where(conditions)
            .limit(1)
        )
        with self.engine.connect() as conn:
            return conn.execute(query).first() is not None

    def account_has_role(self, account_id: str, organization_id: str, role_name: str) -> bool:
        query = (
            select(_users.c.id)
            .select_from(
                _users.join(_memberships, _memberships.c.user_id == _users.c.id)
                .join(_membership_roles, _membership_roles.c.membership_id == _memberships.c.id)
                .join(_roles, _roles.c.id == _membership_roles.c.role_id)
            )
            .where(
                (_users.c.account_id == account_id)
                & (_memberships.c.organization_id == organization_id)
                & (_roles.c.name == role_name)
            )
            .limit(1)
        )
        with self.engine.connect() as conn:
            return conn.execute(query).first() is not None

    # ------------------------------------------------------------------
    # Verifications
    # ------------------------------------------------------------------

    def upsert_verification(self, verification: Verification) -> str:
        """Insert or replace the verification for (target, type). Returns its ID."""
        with self.engine.begin() as conn:
            conn.execute(
                _verifications.delete().where(
                    (_verifications.c.target == verification.target) & (_verifications.c.type == verification.type)
                )
            )
            verification_id = _new_id()
            conn.execute(
                _verifications.insert().values(
                    id=verification_id,
                    type=verification.type,
                    target=verification.target,
                    secret=verification.secret,
                    algorithm=verification.algorithm,
                    digits=verification.digits,
                    period=verification.period,
                    char_set=verification.char_set,
                    expiration_date=_to_db(verification.expiration_date),
                    created_at=_utcnow(),
                )
            )
        return verification_id

    def get_verification(self, target: str, type: str) -> Verification | None:
        """Return the unexpired verification for (target, type), or None."""
        now = _utcnow()
        with self.engine.connect() as conn:
            row = conn.execute(
                _verifications.select().where(
                    (_verifications.c.target == target)
                    & (_verifications.c.type == type)
                    & (_verifications.c.expiration_date.is_(None) | (_verifications.c.expiration_date > now))
                )
            ).first()
        return _row_to_verification(row) if row is not None else None

    def delete_verification(self, target: str, type: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _verifications.delete().where((_verifications.c.target == target) & (_verifications.c.type == type))
            )
        return result.rowcount > 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(id=row.id, email=row.email, username=row.username, created_at=_from_db(row.created_at))


def _row_to_session(row, account_ids: set[str]) -> Session:
    return Session(
        id=row.id,
        expiration_date=_from_db(row.expiration_date),
        active_account_id=row.active_account_id,
        account_ids=account_ids,
    )


def _row_to_connection(row) -> Connection:
    return Connection(
        id=row.id,
        provider_name=row.provider_name,
        provider_id=row.provider_id,
        account_id=row.account_id,
        created_at=_from_db(row.created_at),
    )


def _row_to_user(row) -> User:
    return User(id=row.id, account_id=row.account_id, name=row.name, username=row.username, email=row.email)


def _row_to_verification(row) -> Verification:
    return Verification(
        id=row.id,
        type=row.type,
        target=row.target,
        secret=row.secret,
        algorithm=row.algorithm,
        digits=row.digits,
        period=row.period,
        char_set=row.char_set,
        expiration_date=_from_db(row.expiration_date),
        created_at=_from_db(row.created_at),
    )

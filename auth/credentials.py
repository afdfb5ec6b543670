"""
auth/credentials.py -- Password hashing and verification.

Passwords: bcrypt used directly (no passlib wrapper) with a fixed work factor
     of 10. passlib's wrap-bug detection builds a password longer than 72
     bytes, which bcrypt 4.x rejects outright.

Timing: verify_account_password() always runs one bcrypt comparison, against
     _DUMMY_HASH when the account is unknown or OAuth-only, so response time
     does not reveal whether a username exists [C1].

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.store import AccountStore

logger = logging.getLogger("notekeeper.auth.credentials")

BCRYPT_ROUNDS = 10
_BCRYPT_MAX_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash (cost 10) of the plaintext password.

    Input is cut to bcrypt's 72-byte limit; bcrypt 5 raises instead of
    truncating.
    """
    return bcrypt.hashpw(plain.encode("utf-8")[:_BCRYPT_MAX_BYTES], bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash (constant time)."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:_BCRYPT_MAX_BYTES], hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB -- treat as a mismatch, never as a crash.
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


_DUMMY_HASH: str = hash_password("notekeeper_timing_dummy")


def verify_account_password(
    store: AccountStore,
    password: str,
    *,
    username: str | None = None,
    account_id: str | None = None,
) -> str | None:
    """Return the account ID if password matches the account's stored hash.

    The account is looked up by username or by id (exactly one). Returns None
    when the account does not exist, has no password (OAuth-only), or the
    password does not match.
    """
    record = store.get_password_hash(username=username, account_id=account_id)
    if record is None or record[1] is None:
        verify_password(password, _DUMMY_HASH)  # [C1]
        return None
    found_id, hashed = record
    if not verify_password(password, hashed):
        return None
    return found_id

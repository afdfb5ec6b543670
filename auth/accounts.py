"""
auth/accounts.py -- Login and signup entry points.

Every function here ends in a Session (or None): the caller decides whether
to commit it to a cookie right away or defer it behind a 2FA challenge.

Signup is a single transaction in the store: account, credential (password
or provider connection), profile, default-organization membership with the
"user" role, and the first session are committed together or not at all.
Usernames and emails are lowercased before they are stored.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging

from auth import images
from auth.credentials import hash_password, verify_account_password
from auth.models import Session
from auth.sessions import SessionManager, get_session_expiration_date
from auth.store import AccountStore

logger = logging.getLogger("notekeeper.auth")


def login(sessions: SessionManager, username: str, password: str) -> Session | None:
    """Verify username/password and open a session for the account.

    Returns None on unknown username, OAuth-only account or wrong password;
    the three cases are indistinguishable to the caller.
    """
    account_id = verify_account_password(sessions.store, password, username=username.lower())
    if account_id is None:
        logger.info("Password login failed")
        return None
    return sessions.create_session(account_id)


def signup(sessions: SessionManager, *, email: str, username: str, name: str, password: str) -> Session:
    """Create a password account and its first session.

    Raises sqlalchemy.exc.IntegrityError if the email or username is taken.
    """
    session = sessions.store.create_account_with_session(
        email=email.lower(),
        username=username.lower(),
        name=name,
        password_hash=hash_password(password),
        expiration_date=get_session_expiration_date(),
    )
    logger.info("Account created (username=%s)", username.lower())
    return session


def signup_with_connection(
    sessions: SessionManager,
    *,
    email: str,
    username: str,
    name: str,
    provider_id: str,
    provider_name: str,
    image_url: str | None = None,
) -> Session:
    """Create an account linked to a provider identity instead of a password.

    The avatar is fetched before the transaction opens so no DB connection is
    held across the HTTP call. A failed download is logged and the account is
    created without an image.
    """
    image = None
    if image_url:
        try:
            image = images.download_file(image_url)
        except images.ImageDownloadError:
            logger.warning("Could not import %s avatar; continuing without it", provider_name, exc_info=True)

    session = sessions.store.create_account_with_session(
        email=email.lower(),
        username=username.lower(),
        name=name,
        connection=(provider_name, provider_id),
        image=image,
        expiration_date=get_session_expiration_date(),
    )
    logger.info("Account created via %s (username=%s)", provider_name, username.lower())
    return session


def reset_password(store: AccountStore, *, username: str, password: str) -> bool:
    """Overwrite the stored password hash. Returns False for an unknown username."""
    return store.set_password(username.lower(), hash_password(password))


def change_password(store: AccountStore, account_id: str, *, current_password: str, new_password: str) -> bool:
    """Re-verify the current password by account id, then replace it.

    Returns False if current_password does not match (or the account has no
    password yet).
    """
    if verify_account_password(store, current_password, account_id=account_id) is None:
        return False
    account = store.get_account_by_id(account_id)
    if account is None:
        return False
    return reset_password(store, username=account.username, password=new_password)

"""
tests/test_credentials.py -- Password hashing, verification and the account resolver.

Coverage:
  - hash_password / verify_password round trip and mismatch
  - Malformed stored hash is a mismatch, not a crash
  - verify_account_password: unknown user, OAuth-only account, by account id
  - signup -> login end to end; usernames are case-insensitive
  - signup is atomic: a duplicate username leaves no partial account behind
  - signup_with_connection imports the avatar, or continues without it
  - reset_password / change_password
"""

from __future__ import annotations

import os

os.environ.setdefault("DEBUG", "true")

from unittest.mock import patch

import pytest
from conftest import create_account, make_sessions, make_store
from sqlalchemy.exc import IntegrityError

from auth import accounts
from auth.credentials import BCRYPT_ROUNDS, hash_password, verify_account_password, verify_password
from auth.images import ImageDownloadError
from auth.models import UserImage


@pytest.fixture(scope="module")
def store():
    store = make_store("credentials")
    yield store
    store.close()


@pytest.fixture(scope="module")
def sessions(store):
    return make_sessions(store)


class TestPasswordHashing:
    def test_round_trip(self) -> None:
        hashed = hash_password("secret123")
        assert hashed != "secret123"
        assert verify_password("secret123", hashed)

    def test_wrong_password(self) -> None:
        assert not verify_password("nope", hash_password("secret123"))

    def test_work_factor(self) -> None:
        """Stored hashes carry the configured bcrypt cost."""
        assert hash_password("secret123").split("$")[2] == f"{BCRYPT_ROUNDS:02d}"

    def test_malformed_hash_is_mismatch(self) -> None:
        assert verify_password("secret123", "not-a-bcrypt-hash") is False

    def test_long_password_does_not_raise(self) -> None:
        hashed = hash_password("x" * 100)
        assert verify_password("x" * 100, hashed)


class TestVerifyAccountPassword:
    def test_unknown_username(self, store) -> None:
        assert verify_account_password(store, "secret123", username="ghost") is None

    def test_oauth_only_account(self, store) -> None:
        create_account(store, "oauthonly", password=None)
        assert verify_account_password(store, "anything", username="oauthonly") is None

    def test_by_account_id(self, store) -> None:
        account_id = create_account(store, "byid", "secret123")
        assert verify_account_password(store, "secret123", account_id=account_id) == account_id
        assert verify_account_password(store, "wrong", account_id=account_id) is None


class TestSignupAndLogin:
    def test_signup_then_login(self, sessions) -> None:
        session = accounts.signup(sessions, email="a@x.com", username="a", name="A", password="secret123")
        assert session.active_account_id in session.account_ids

        logged_in = accounts.login(sessions, "a", "secret123")
        assert logged_in is not None
        assert logged_in.active_account_id == session.active_account_id
        assert logged_in.id != session.id

    def test_login_wrong_password(self, sessions) -> None:
        accounts.signup(sessions, email="b@x.com", username="b", name="B", password="secret123")
        assert accounts.login(sessions, "b", "wrong") is None

    def test_username_and_email_are_lowercased(self, sessions) -> None:
        session = accounts.signup(sessions, email="Mixed@X.com", username="MixedCase", name="M", password="secret123")
        account = sessions.store.get_account_by_id(session.active_account_id)
        assert account.username == "mixedcase"
        assert account.email == "mixed@x.com"
        assert accounts.login(sessions, "MIXEDCASE", "secret123") is not None

    def test_signup_creates_membership_with_user_role(self, sessions) -> None:
        session = accounts.signup(sessions, email="m@x.com", username="member", name="M", password="secret123")
        memberships = sessions.store.list_memberships(session.active_account_id)
        assert [(m.organization_id, m.roles) for m in memberships] == [("default", ["user"])]

    def test_duplicate_signup_is_atomic(self, sessions) -> None:
        accounts.signup(sessions, email="dup@x.com", username="dup", name="D", password="secret123")
        with pytest.raises(IntegrityError):
            accounts.signup(sessions, email="other@x.com", username="dup", name="D2", password="secret123")
        assert sessions.store.get_account_by_email("other@x.com") is None


class TestSignupWithConnection:
    def test_imports_avatar(self, sessions) -> None:
        image = UserImage(content_type="image/png", blob=b"\x89PNG")
        with patch("auth.images.download_file", return_value=image) as download:
            session = accounts.signup_with_connection(
                sessions,
                email="gh@x.com",
                username="ghuser",
                name="GH",
                provider_id="1001",
                provider_name="github",
                image_url="https://avatars.example/1001",
            )
        download.assert_called_once_with("https://avatars.example/1001")
        store = sessions.store
        connection = store.get_connection("github", "1001")
        assert connection.account_id == session.active_account_id
        user = store.list_users_for_account(session.active_account_id)[0]
        assert store.get_user_image(user.id).blob == b"\x89PNG"
        # No password: only the provider can log this account in.
        assert accounts.login(sessions, "ghuser", "") is None

    def test_failed_avatar_download_still_creates_account(self, sessions) -> None:
        with patch("auth.images.download_file", side_effect=ImageDownloadError("too big")):
            session = accounts.signup_with_connection(
                sessions,
                email="noimg@x.com",
                username="noimg",
                name="No Image",
                provider_id="1002",
                provider_name="github",
                image_url="https://avatars.example/1002",
            )
        user = sessions.store.list_users_for_account(session.active_account_id)[0]
        assert sessions.store.get_user_image(user.id) is None

    def test_claimed_identity_rolls_back(self, sessions) -> None:
        accounts.signup_with_connection(
            sessions, email="first@x.com", username="first", name="F", provider_id="1003", provider_name="github"
        )
        with pytest.raises(IntegrityError):
            accounts.signup_with_connection(
                sessions, email="second@x.com", username="second", name="S", provider_id="1003", provider_name="github"
            )
        assert sessions.store.get_account_by_username("second") is None


class TestPasswordChanges:
    def test_reset_password(self, sessions) -> None:
        create_account(sessions.store, "resetme", "oldpass1")
        assert accounts.reset_password(sessions.store, username="ResetMe", password="newpass1")
        assert accounts.login(sessions, "resetme", "newpass1") is not None
        assert accounts.login(sessions, "resetme", "oldpass1") is None

    def test_reset_unknown_user(self, store) -> None:
        assert accounts.reset_password(store, username="nobody", password="whatever1") is False

    def test_reset_gives_oauth_account_a_password(self, sessions) -> None:
        create_account(sessions.store, "nopass", password=None)
        assert accounts.reset_password(sessions.store, username="nopass", password="fresh123")
        assert accounts.login(sessions, "nopass", "fresh123") is not None

    def test_change_password_requires_current(self, store) -> None:
        account_id = create_account(store, "changer", "current1")
        assert not accounts.change_password(store, account_id, current_password="wrong", new_password="next1234")
        assert accounts.change_password(store, account_id, current_password="current1", new_password="next1234")
        assert verify_account_password(store, "next1234", account_id=account_id) == account_id

"""
tests/test_web_routes.py -- Browser form routes: login, signup, logout,
onboarding and two-factor verification.

Uses the env fixture (follow_redirects=False) so Location headers and
Set-Cookie values can be asserted directly.

Coverage:
  - POST /login: success sets the auth cookie, honours a safe redirectTo,
    rejects off-site targets, bad credentials -> /login + error toast
  - POST /login and /signup bounce callers who are already logged in
  - POST /signup: creates account + session; duplicates leave nothing behind
  - POST /logout: deletes the session row and clears the cookie
  - /onboarding/github: prefill JSON, account creation with avatar import,
    missing state -> /login
  - POST /verify: valid code releases the parked session; wrong code and
    mismatched session are rejected
"""

from __future__ import annotations

from unittest.mock import patch

from conftest import AuthEnv, cookie_value, create_account, decode_cookie

from auth.cookies import AUTH_COOKIE, TOAST_COOKIE, VERIFY_COOKIE
from auth.models import Connection, UserImage, Verification
from auth.providers import ProviderUser
from auth.sessions import SESSION_KEY
from auth.totp import TWO_FACTOR_VERIFICATION_TYPE, generate_totp


def _session_account(env: AuthEnv, resp) -> str | None:
    session = env.sessions.resolve_session(decode_cookie(env, resp, AUTH_COOKIE).get(SESSION_KEY))
    return session.active_account_id if session else None


def _enable_2fa(env: AuthEnv, account_id: str) -> str:
    secret = generate_totp()["secret"]
    env.store.upsert_verification(Verification(type=TWO_FACTOR_VERIFICATION_TYPE, target=account_id, secret=secret))
    return secret


class TestLoginForm:
    def test_valid_login(self, env: AuthEnv) -> None:
        account_id = create_account(env.store, "formuser", "secret123")
        resp = env.client.post("/login", data={"username": "FormUser", "password": "secret123"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert resp.headers["cache-control"] == "no-store"
        assert _session_account(env, resp) == account_id

    def test_redirect_to(self, env: AuthEnv) -> None:
        create_account(env.store, "formuser2", "secret123")
        resp = env.client.post(
            "/login", data={"username": "formuser2", "password": "secret123", "redirectTo": "/notes/7"}
        )
        assert resp.headers["location"] == "/notes/7"

    def test_offsite_redirect_to_is_dropped(self, env: AuthEnv) -> None:
        create_account(env.store, "formuser3", "secret123")
        resp = env.client.post(
            "/login", data={"username": "formuser3", "password": "secret123", "redirectTo": "https://evil.example"}
        )
        assert resp.headers["location"] == "/"

    def test_bad_credentials(self, env: AuthEnv) -> None:
        create_account(env.store, "formuser4", "secret123")
        resp = env.client.post("/login", data={"username": "formuser4", "password": "nope", "redirectTo": "/notes"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?redirectTo=%2Fnotes"
        assert cookie_value(resp, AUTH_COOKIE) is None
        assert decode_cookie(env, resp, TOAST_COOKIE)["type"] == "error"

    def test_logged_in_caller_is_sent_home(self, env: AuthEnv) -> None:
        account_id = create_account(env.store, "already")
        env.login_as(account_id)
        resp = env.client.post("/login", data={"username": "already", "password": "secret123"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

    def test_two_factor_account_is_sent_to_verify(self, env: AuthEnv) -> None:
        account_id = create_account(env.store, "form2fa", "secret123")
        _enable_2fa(env, account_id)
        resp = env.client.post("/login", data={"username": "form2fa", "password": "secret123"})
        assert resp.headers["location"].startswith("/verify?type=2fa")
        assert cookie_value(resp, AUTH_COOKIE) is None


class TestSignupForm:
    def test_signup_logs_in(self, env: AuthEnv) -> None:
        resp = env.client.post(
            "/signup",
            data={"email": "New@Example.com", "username": "NewUser", "name": "New User", "password": "secret123"},
        )
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        account = env.store.get_account_by_username("newuser")
        assert account.email == "new@example.com"
        assert _session_account(env, resp) == account.id

    def test_duplicate_username(self, env: AuthEnv) -> None:
        create_account(env.store, "taken")
        resp = env.client.post(
            "/signup",
            data={"email": "unique@example.com", "username": "taken", "name": "T", "password": "secret123"},
        )
        assert resp.headers["location"] == "/signup"
        assert decode_cookie(env, resp, TOAST_COOKIE)["type"] == "error"
        assert env.store.get_account_by_email("unique@example.com") is None

    def test_invalid_fields(self, env: AuthEnv) -> None:
        resp = env.client.post(
            "/signup",
            data={"email": "not-an-email", "username": "ok_name", "name": "N", "password": "secret123"},
        )
        assert resp.headers["location"] == "/signup"
        assert env.store.get_account_by_username("ok_name") is None

        resp = env.client.post(
            "/signup", data={"email": "short@example.com", "username": "shortpw", "name": "N", "password": "123"}
        )
        assert "Password must be at least" in decode_cookie(env, resp, TOAST_COOKIE)["description"]

    def test_email_rules_match_api(self, env: AuthEnv) -> None:
        resp = env.client.post(
            "/signup", data={"email": "a..b@x.y", "username": "dotdot", "name": "D", "password": "secret123"}
        )
        assert resp.headers["location"] == "/signup"
        assert decode_cookie(env, resp, TOAST_COOKIE)["description"] == "Enter a valid email address."
        assert env.store.get_account_by_username("dotdot") is None

        resp = env.client.post(
            "/api/v1/auth/signup",
            json={"email": "a..b@x.y", "username": "dotdot", "name": "D", "password": "secret123"},
        )
        assert resp.status_code == 422


class TestLogout:
    def test_logout_deletes_session(self, env: AuthEnv) -> None:
        account_id = create_account(env.store, "leaving")
        session = env.login_as(account_id)
        resp = env.client.post("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert cookie_value(resp, AUTH_COOKIE) == ""
        assert env.sessions.resolve_session(session.id) is None

    def test_logout_when_anonymous(self, env: AuthEnv) -> None:
        resp = env.client.post("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"


class TestOnboarding:
    def _start(self, env: AuthEnv, provider_id: str, email: str) -> None:
        env.provider.profile = ProviderUser(
            id=provider_id,
            email=email,
            username="Octo",
            name="Octo Cat",
            image_url=f"https://avatars.example/{provider_id}",
        )
        resp = env.client.get("/auth/github/callback?code=abc")
        assert resp.headers["location"] == "/onboarding/github"

    def test_missing_state_redirects_to_login(self, env: AuthEnv) -> None:
        assert env.client.get("/onboarding/github").headers["location"] == "/login"
        resp = env.client.post("/onboarding/github", data={"username": "someone", "name": "S"})
        assert resp.headers["location"] == "/login"

    def test_prefill(self, env: AuthEnv) -> None:
        self._start(env, "9001", "Octo@Example.com")
        resp = env.client.get("/onboarding/github")
        assert resp.status_code == 200
        data = resp.json()
        assert data["email"] == "Octo@Example.com"
        assert data["prefilledProfile"]["username"] == "octo"
        assert data["prefilledProfile"]["email"] == "octo@example.com"

    def test_completes_signup_with_connection(self, env: AuthEnv) -> None:
        self._start(env, "9002", "octo2@example.com")
        image = UserImage(content_type="image/png", blob=b"png-bytes")
        with patch("auth.images.download_file", return_value=image) as download:
            resp = env.client.post("/onboarding/github", data={"username": "Octo2", "name": "Octo Two"})

        download.assert_called_once_with("https://avatars.example/9002")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert cookie_value(resp, VERIFY_COOKIE) == ""
        account = env.store.get_account_by_username("octo2")
        assert account.email == "octo2@example.com"
        assert _session_account(env, resp) == account.id
        connection = env.store.get_connection("github", "9002")
        assert connection == Connection(
            provider_name="github",
            provider_id="9002",
            account_id=account.id,
            id=connection.id,
            created_at=connection.created_at,
        )
        user = env.store.list_users_for_account(account.id)[0]
        assert env.store.get_user_image(user.id).content_type == "image/png"
        assert decode_cookie(env, resp, TOAST_COOKIE)["title"] == "Welcome"

    def test_taken_username_returns_to_form(self, env: AuthEnv) -> None:
        create_account(env.store, "octotaken")
        self._start(env, "9003", "octo3@example.com")
        with patch("auth.images.download_file", return_value=None):
            resp = env.client.post("/onboarding/github", data={"username": "octotaken", "name": "O"})
        assert resp.headers["location"] == "/onboarding/github"
        assert decode_cookie(env, resp, TOAST_COOKIE)["type"] == "error"
        assert env.store.get_connection("github", "9003") is None


class TestVerify:
    def _login_pending(self, env: AuthEnv, username: str) -> tuple[str, str]:
        account_id = create_account(env.store, username, "secret123")
        secret = _enable_2fa(env, account_id)
        resp = env.client.post("/login", data={"username": username, "password": "secret123", "redirectTo": "/notes"})
        assert resp.headers["location"].startswith("/verify?")
        return account_id, secret

    def test_valid_code_issues_session(self, env: AuthEnv) -> None:
        account_id, secret = self._login_pending(env, "verifier")
        resp = env.client.post(
            "/verify",
            data={
                "code": generate_totp(secret)["otp"],
                "type": "2fa",
                "target": account_id,
                "redirectTo": "/notes",
            },
        )
        assert resp.status_code == 302
        assert resp.headers["location"] == "/notes"
        assert _session_account(env, resp) == account_id
        assert cookie_value(resp, VERIFY_COOKIE) == ""

    def test_wrong_code(self, env: AuthEnv) -> None:
        account_id, _secret = self._login_pending(env, "verifier2")
        resp = env.client.post(
            "/verify", data={"code": "000000x", "type": "2fa", "target": account_id, "redirectTo": "/notes"}
        )
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/verify?type=2fa")
        assert cookie_value(resp, AUTH_COOKIE) is None
        assert decode_cookie(env, resp, TOAST_COOKIE)["description"] == "Invalid code."

    def test_code_for_other_account_is_rejected(self, env: AuthEnv) -> None:
        _account_id, _secret = self._login_pending(env, "verifier3")
        other_id = create_account(env.store, "verifier3b")
        other_secret = _enable_2fa(env, other_id)
        resp = env.client.post(
            "/verify", data={"code": generate_totp(other_secret)["otp"], "type": "2fa", "target": other_id}
        )
        assert resp.headers["location"] == "/login"
        assert cookie_value(resp, AUTH_COOKIE) is None

    def test_unsupported_type(self, env: AuthEnv) -> None:
        resp = env.client.post("/verify", data={"code": "123456", "type": "reset-password", "target": "x"})
        assert resp.headers["location"].startswith("/verify?type=reset-password")
        assert decode_cookie(env, resp, TOAST_COOKIE)["type"] == "error"

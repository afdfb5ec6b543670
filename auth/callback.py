"""
auth/callback.py -- OAuth callback state machine and login completion.

handle_provider_callback() runs a fixed decision sequence and stops at the
first branch that matches. Order is priority:

  0. ensure_primary          -- the flow writes, so replicas bounce the request.
  1. provider exchange       -- failure: log once, /login + error toast.
  2. look up Connection (provider, profile.id) and the caller's account.
  A. connection + caller     -- "already connected" (same or other account).
  B. caller, no connection   -- link the identity to the caller.
  C. connection, no caller   -- log in as the connection's account.
  D. email matches account   -- link + log in, one transaction.
  E. nothing matches         -- stash profile, send to onboarding.

Every terminal response clears the pending redirect-target cookie.

Races: two callbacks for the same provider identity can both miss the
connection lookup. The UNIQUE(provider_name, provider_id) constraint rejects
the second insert; the loser re-reads the connection and answers as if it had
existed all along (A for B, C for D).

complete_login() is shared with password login: it either sets the auth
cookie or, for accounts with a 2FA Verification, parks the new session id in
the verification cookie and redirects to /verify without authenticating.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from auth.cookies import REDIRECT_COOKIE, VERIFY_COOKIE, VERIFY_COOKIE_MAX_AGE, Toast, safe_redirect
from auth.errors import AuthRedirect, PrimaryInstanceRequired, ProviderExchangeError
from auth.models import Connection, Session
from auth.providers import ProviderRegistry, ProviderUser, normalize_email, normalize_username
from auth.sessions import SessionManager, get_session_expiration_date
from auth.totp import TWO_FACTOR_VERIFICATION_TYPE
from core.config import Settings

logger = logging.getLogger("notekeeper.auth.callback")

CONNECTIONS_ROUTE = "/settings/profile/connections"

# Keys inside the verification cookie
ONBOARDING_EMAIL_KEY = "onboardingEmail"
PREFILLED_PROFILE_KEY = "prefilledProfile"
PROVIDER_ID_KEY = "providerId"
UNVERIFIED_SESSION_KEY = "unverifiedSessionId"


def ensure_primary(settings: Settings) -> None:
    """Raise PrimaryInstanceRequired when running on a read replica."""
    if not settings.is_primary:
        raise PrimaryInstanceRequired(settings.primary_instance)


def verify_url(account_id: str, redirect_to: str) -> str:
    params = urlencode({"type": TWO_FACTOR_VERIFICATION_TYPE, "target": account_id, "redirectTo": redirect_to})
    return f"/verify?{params}"


def requires_two_factor(sessions: SessionManager, account_id: str | None) -> bool:
    return bool(account_id) and sessions.store.get_verification(account_id, TWO_FACTOR_VERIFICATION_TYPE) is not None


def stash_unverified_session(sessions: SessionManager, response: Response, session: Session) -> None:
    """Park session in the verification cookie until the 2FA code is checked."""
    sessions.cookies.write(response, VERIFY_COOKIE, {UNVERIFIED_SESSION_KEY: session.id}, VERIFY_COOKIE_MAX_AGE)


def complete_login(
    sessions: SessionManager,
    session: Session,
    *,
    redirect_to: str | None = None,
    toast: Toast | None = None,
) -> RedirectResponse:
    """Finish a login that produced session.

    Without 2FA: set the auth cookie and redirect to redirect_to (default /).
    With 2FA: do NOT set the auth cookie. Store the session id in the
    verification cookie and redirect to /verify?type=2fa&target=...&redirectTo=...
    """
    target = safe_redirect(redirect_to)
    account_id = session.active_account_id
    if requires_two_factor(sessions, account_id):
        logger.info("2FA challenge required before issuing session")
        response = RedirectResponse(verify_url(account_id, target), status_code=302)
        stash_unverified_session(sessions, response, session)
    else:
        response = RedirectResponse(target, status_code=302)
        sessions.commit_session(response, session)
    if toast is not None:
        sessions.cookies.set_toast(response, toast)
    return response


async def handle_provider_callback(
    request: Request,
    provider_name: str,
    *,
    registry: ProviderRegistry,
    sessions: SessionManager,
    settings: Settings,
) -> Response:
    """Resolve a provider callback into a link, login, onboarding or rejection."""
    ensure_primary(settings)

    store = sessions.store
    cookies = sessions.cookies
    redirect_to = cookies.get_redirect_to(request)
    label = registry.label(provider_name)

    def finish(response: Response) -> Response:
        cookies.delete(response, REDIRECT_COOKIE)
        return response

    provider = registry.get(provider_name)
    try:
        if provider is None:
            raise ProviderExchangeError(f"Unknown OAuth provider: {provider_name!r}")
        profile = await provider.authenticate(request)
    except ProviderExchangeError:
        logger.exception("OAuth authentication failed for provider %r", provider_name)
        return finish(
            cookies.redirect_with_toast(
                "/login",
                Toast(
                    title="Auth Failed",
                    description=f"There was an error authenticating with {label}.",
                    type="error",
                ),
            )
        )

    existing = store.get_connection(provider_name, profile.id)
    try:
        account_id = sessions.get_active_account_id(request)
    except AuthRedirect as exc:
        finish(exc.response)
        raise

    # A: identity already linked and the caller is logged in
    if existing is not None and account_id:
        return finish(_already_connected(cookies, profile, label, same_account=existing.account_id == account_id))

    # B: logged in, identity not linked yet -- link it to the caller
    if account_id:
        try:
            store.create_connection(Connection(provider_name=provider_name, provider_id=profile.id, account_id=account_id))
        except IntegrityError:
            existing = store.get_connection(provider_name, profile.id)
            if existing is None:
                raise
            logger.info("Lost connection race for %s identity; reporting existing link", provider_name)
            return finish(_already_connected(cookies, profile, label, same_account=existing.account_id == account_id))
        logger.info("Connected %s identity to account", provider_name)
        return finish(
            cookies.redirect_with_toast(
                CONNECTIONS_ROUTE,
                Toast(
                    title="Connected",
                    description=f'Your "{profile.username}" {label} account has been connected.',
                    type="success",
                ),
            )
        )

    # C: identity linked, anonymous caller -- log in as the linked account
    if existing is not None:
        return finish(_login_existing(sessions, existing, redirect_to, label))

    # D: anonymous caller, provider email matches an account -- link and log in
    account = store.get_account_by_email(normalize_email(profile.email))
    if account is not None:
        connection = Connection(provider_name=provider_name, provider_id=profile.id, account_id=account.id)
        try:
            session = store.create_session(account.id, get_session_expiration_date(), connection=connection)
        except IntegrityError:
            existing = store.get_connection(provider_name, profile.id)
            if existing is None:
                raise
            logger.info("Lost connection race for %s identity; logging in as linked account", provider_name)
            return finish(_login_existing(sessions, existing, redirect_to, label))
        logger.info("Linked %s identity by email and logged in", provider_name)
        return finish(
            complete_login(
                sessions,
                session,
                redirect_to=redirect_to,
                toast=Toast(
                    title="Connected",
                    description=f'Your "{profile.username}" {label} account has been connected.',
                ),
            )
        )

    # E: brand new identity -- onboarding
    return finish(_start_onboarding(cookies, provider_name, profile, redirect_to))


def _already_connected(cookies, profile: ProviderUser, label: str, *, same_account: bool) -> RedirectResponse:
    if same_account:
        description = f'Your "{profile.username}" {label} account is already connected.'
    else:
        description = f'The "{profile.username}" {label} account is already connected to another account.'
    return cookies.redirect_with_toast(CONNECTIONS_ROUTE, Toast(title="Already Connected", description=description))


def _login_existing(sessions: SessionManager, connection: Connection, redirect_to: str | None, label: str) -> Response:
    if connection.account_id is None:
        # Orphaned by account deletion; nothing to log in as.
        logger.warning("Connection %s has no account; refusing login", connection.id)
        return sessions.cookies.redirect_with_toast(
            "/login",
            Toast(
                title="Auth Failed",
                description=f"That {label} account is not linked to any account.",
                type="error",
            ),
        )
    session = sessions.create_session(connection.account_id)
    return complete_login(sessions, session, redirect_to=redirect_to)


def _start_onboarding(cookies, provider_name: str, profile: ProviderUser, redirect_to: str | None) -> RedirectResponse:
    prefilled = asdict(profile)
    prefilled["email"] = normalize_email(profile.email)
    prefilled["username"] = normalize_username(profile.username) if isinstance(profile.username, str) else None

    url = f"/onboarding/{provider_name}"
    if redirect_to:
        url = f"{url}?{urlencode({'redirectTo': redirect_to})}"
    response = RedirectResponse(url, status_code=302)
    cookies.write(
        response,
        VERIFY_COOKIE,
        {
            ONBOARDING_EMAIL_KEY: profile.email,
            PREFILLED_PROFILE_KEY: prefilled,
            PROVIDER_ID_KEY: profile.id,
        },
        VERIFY_COOKIE_MAX_AGE,
    )
    return response

"""
auth/totp.py -- RFC 6238 time-based one-time passwords.

Secrets are base32 strings. Each Verification row stores its own algorithm,
digit count and period so existing secrets keep working if defaults change.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time

TWO_FACTOR_VERIFICATION_TYPE = "2fa"

_ALGORITHMS = {"SHA1": hashlib.sha1, "SHA256": hashlib.sha256, "SHA512": hashlib.sha512}


def generate_secret() -> str:
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def _hotp(secret: str, counter: int, *, algorithm: str, digits: int) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    key = base64.b32decode(padded)
    digest = hmac.new(key, counter.to_bytes(8, "big"), _ALGORITHMS[algorithm.upper()]).digest()
    offset = digest[-1] & 0x0F
    code = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code).zfill(digits)


def generate_totp(
    secret: str | None = None,
    *,
    algorithm: str = "SHA1",
    digits: int = 6,
    period: int = 30,
    timestamp: float | None = None,
) -> dict:
    """Return {"otp", "secret", "algorithm", "digits", "period", "char_set"}.

    A new secret is generated when none is given. Everything except "otp" is
    what a Verification row stores.
    """
    secret = secret or generate_secret()
    now = time.time() if timestamp is None else timestamp
    otp = _hotp(secret, int(now // period), algorithm=algorithm, digits=digits)
    return {
        "otp": otp,
        "secret": secret,
        "algorithm": algorithm,
        "digits": digits,
        "period": period,
        "char_set": "0123456789",
    }


def verify_totp(
    otp: str,
    *,
    secret: str,
    algorithm: str = "SHA1",
    digits: int = 6,
    period: int = 30,
    window: int = 1,
    timestamp: float | None = None,
) -> bool:
    """Check otp against the current step and +/- window steps for clock skew."""
    otp = otp.strip()
    if len(otp) != digits or not otp.isdigit():
        return False
    now = time.time() if timestamp is None else timestamp
    counter = int(now // period)
    try:
        for offset in range(-window, window + 1):
            candidate = _hotp(secret, counter + offset, algorithm=algorithm, digits=digits)
            if hmac.compare_digest(candidate, otp):
                return True
    except (binascii.Error, KeyError):
        return False
    return False

"""
auth/tokens.py -- Password hashing, random tokens, and the session cookie.

Security design decisions:
  Passwords: bcrypt, cost from Settings.bcrypt_rounds (12 in production).
       Bcrypt is the right choice for low-entropy secrets because its cost
       factor makes brute-force expensive. dummy_hash() enables timing
       equalization in the login flow so response time does not reveal
       whether a username exists.

  Session ids / CSRF tokens / reset tokens: secrets.token_hex(32) -- 256 bits
       from the OS CSPRNG. Unguessable, so no signing is needed on top.

  Reset tokens: only HMAC-SHA256(SECRET_KEY, raw_token) is stored. A leaked
       users table does not yield usable reset links, and the deterministic
       digest keeps lookup a single indexed query.

  Cookie: httpOnly (JS cannot read it), SameSite=Lax (not sent on cross-site
       POST), Secure when SECURE_COOKIES=true.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from functools import lru_cache

import bcrypt

from core.config import get_settings

SESSION_ID_BYTES = 32
CSRF_TOKEN_BYTES = 32
RESET_TOKEN_BYTES = 32

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The validator caps
    password fields well below that.
    """
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash is a non-match, not an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=1)
def dummy_hash() -> str:
    """A real bcrypt hash at the configured cost, computed once.

    Verify against this when the user does not exist so the unknown-user path
    costs the same bcrypt work as the wrong-password path.
    """
    return hash_password("shebamiles_timing_dummy")


# ---------------------------------------------------------------------------
# Random tokens
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    return secrets.token_hex(SESSION_ID_BYTES)


def generate_csrf_token() -> str:
    return secrets.token_hex(CSRF_TOKEN_BYTES)


def generate_reset_token() -> str:
    return secrets.token_hex(RESET_TOKEN_BYTES)


def hash_reset_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
    return hmac.new(
        get_settings().secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, session_id: str, max_age: int | None = None) -> None:
    """Write the opaque session identifier as an httpOnly cookie on the response.

    max_age None makes it a browser-session cookie; the server-side inactivity
    timeout still applies either way. "Remember me" logins pass a max_age.
    """
    settings = get_settings()
    response.set_cookie(
        settings.session_cookie_name,
        value=session_id,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=max_age,
        path="/",
    )


def clear_session_cookie(response) -> None:
    settings = get_settings()
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
    )

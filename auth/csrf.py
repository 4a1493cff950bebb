"""
auth/csrf.py -- Per-session CSRF tokens.

One token per session, generated from the OS CSPRNG and stored server-side in
the session data. State-changing requests must echo it back in one of
(priority order):

  1. form body field   csrf_token
  2. JSON body field   csrf_token
  3. header            X-CSRF-Token
  4. header            X-CSRF-Protection

Comparison uses hmac.compare_digest. GET, HEAD and OPTIONS are exempt.
Every failure is logged at SECURITY level with the client ip and user id.

Because the token lives in the session row, a token issued to session S1 can
never validate for a request carrying session S2's cookie.

Layer rule: no imports from api/. starlette is allowed here because token
extraction needs the raw request.
"""

from __future__ import annotations

import hmac
import json
import logging

from starlette.requests import Request

from auth.models import Session
from auth.sessions import SessionStore
from auth.tokens import generate_csrf_token
from core.log import log_security

logger = logging.getLogger("shebamiles.csrf")

CSRF_FIELD = "csrf_token"
CSRF_HEADERS = ("X-CSRF-Token", "X-CSRF-Protection")
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def get_token(session: Session | None) -> str | None:
    if session is None:
        return None
    return session.data.get(CSRF_FIELD)


def ensure_token(session: Session, sessions: SessionStore) -> str:
    """Return the session's token, creating and persisting one if absent."""
    token = session.data.get(CSRF_FIELD)
    if not token:
        token = generate_csrf_token()
        session.data[CSRF_FIELD] = token
        sessions.save(session)
    return token


def regenerate_token(session: Session, sessions: SessionStore) -> str:
    """Discard the current token and issue a new one (call after login)."""
    session.data.pop(CSRF_FIELD, None)
    return ensure_token(session, sessions)


def validate_token(session: Session | None, candidate: str | None, client_ip: str = "") -> bool:
    """Constant-time comparison of `candidate` with the session token."""
    expected = get_token(session)
    user_id = session.user_id if session is not None else None
    if not candidate or not expected:
        log_security(logger, "CSRF validation failed - missing token", ip=client_ip, user_id=user_id)
        return False
    valid = hmac.compare_digest(expected.encode(), str(candidate).encode())
    if not valid:
        log_security(logger, "CSRF validation failed - token mismatch", ip=client_ip, user_id=user_id)
    return valid


async def extract_token(request: Request) -> str | None:
    """Find the submitted token in form body, JSON body, then headers."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(_FORM_TYPES):
        form = await request.form()
        value = form.get(CSRF_FIELD)
        if value:
            return str(value)
    else:
        body = await request.body()
        if body:
            try:
                payload = json.loads(body)
            except ValueError:
                payload = None
            if isinstance(payload, dict) and payload.get(CSRF_FIELD):
                return str(payload[CSRF_FIELD])
    for header in CSRF_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return None

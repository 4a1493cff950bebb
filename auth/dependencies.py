"""
auth/dependencies.py -- FastAPI Depends() helpers for sessions, roles and CSRF.

Authentication is session based: the cookie carries an opaque identifier,
SessionStore resolves it (enforcing the inactivity timeout) and the session's
user_id is loaded from UserStore. The resolved session is cached on
request.state so one request touches the sessions table once.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises UnauthorizedError if unauthenticated.
require_admin() / require_role() wrap get_current_user() and raise
ForbiddenError on a role mismatch.
csrf_protect() rejects state-changing requests without the session's token.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request
from starlette.concurrency import run_in_threadpool

from auth.csrf import SAFE_METHODS, extract_token, validate_token
from auth.models import RequestContext, Session, User
from auth.ratelimit import client_identifier
from core.config import get_settings
from core.errors import ForbiddenError, UnauthorizedError

_UNSET = object()


def get_session(request: Request) -> Session | None:
    """Return the live session named by the request cookie, or None."""
    cached = getattr(request.state, "session", _UNSET)
    if cached is not _UNSET:
        return cached
    session_id = request.cookies.get(get_settings().session_cookie_name)
    session = request.app.state.session_store.get(session_id)
    request.state.session = session
    return session


def get_request_context(request: Request) -> RequestContext:
    """Build the explicit RequestContext handed to auth flows."""
    return RequestContext(
        client_ip=client_identifier(request.headers, request.client.host if request.client else None),
        user_agent=request.headers.get("user-agent", ""),
        session=get_session(request),
    )


def try_get_current_user(request: Request) -> User | None:
    """Return the active user behind the session cookie, or None. Never raises.

    A session whose user has since been deactivated or deleted does not
    authenticate.
    """
    session = get_session(request)
    if session is None or not session.is_authenticated:
        return None
    user = request.app.state.user_store.get_by_id(session.user_id)
    if user and user.is_active:
        return user
    return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises UnauthorizedError (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise UnauthorizedError("Authentication required")
    return user


def require_admin(request: Request) -> User:
    """Require admin role. 401 if unauthenticated, 403 if not admin."""
    user = get_current_user(request)
    if user.role != "admin":
        raise ForbiddenError("Admin access required")
    return user


def require_role(*roles: str) -> Callable[[Request], User]:
    """Dependency factory: the user must hold one of `roles`. Admin always passes.

        @router.get("/team", dependencies=[Depends(require_role("manager"))])
    """

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        if user.role != "admin" and user.role not in roles:
            raise ForbiddenError("You do not have permission to access this resource")
        return user

    return dependency


def _check_csrf(request: Request, candidate: str | None) -> bool:
    # Session lookup and the failure log both touch the database.
    client_ip = client_identifier(request.headers, request.client.host if request.client else None)
    return validate_token(get_session(request), candidate, client_ip=client_ip)


async def csrf_protect(request: Request) -> None:
    """Reject unsafe-method requests whose CSRF token does not match the session.

    Raises ForbiddenError (403). The failure itself is logged at SECURITY
    level by auth.csrf.validate_token.
    """
    if request.method.upper() in SAFE_METHODS:
        return
    candidate = await extract_token(request)
    if not await run_in_threadpool(_check_csrf, request, candidate):
        raise ForbiddenError("Invalid or missing CSRF token")

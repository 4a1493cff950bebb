"""
api/routes/v1/auth.py -- Authentication and account administration endpoints.

Routes:
  POST  /api/v1/auth/login                     -- password login; sets session cookie
  POST  /api/v1/auth/logout                    -- ends the session; idempotent
  POST  /api/v1/auth/register                  -- self-registration (role employee)
  GET   /api/v1/auth/me                        -- current user summary (requires auth)
  GET   /api/v1/auth/csrf-token                -- CSRF token for the current session
  POST  /api/v1/auth/password-reset/request    -- issue a reset token
  POST  /api/v1/auth/password-reset/confirm    -- consume a reset token
  POST  /api/v1/auth/password                  -- change password (auth + CSRF)
  GET   /api/v1/auth/users                     -- list users (admin only)
  PATCH /api/v1/auth/users/{id}/status         -- set account status (admin + CSRF)

Handlers stay thin: read the payload, build the RequestContext, run the flow
from auth/flows.py in the thread pool (bcrypt and SQL are blocking), wrap the
result in an envelope. Errors are raised as core.errors exceptions and
rendered by api/main.py.

CSRF:
  Applied to state-changing endpoints that act on an authenticated session.
  Login, registration and password reset run before any session exists and
  are protected by the per-client action rate limits instead. Logout checks
  the token only when there is an authenticated session to end.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.models import UserAdminView, UserSummary
from api.payload import read_payload
from api.responses import success
from auth import flows
from auth.csrf import CSRF_FIELD, ensure_token
from auth.dependencies import (
    csrf_protect,
    get_current_user,
    get_request_context,
    require_admin,
)
from auth.models import RequestContext, User
from auth.tokens import clear_session_cookie, set_session_cookie
from core.config import get_settings

# Auth policy:
# - POST  /auth/login, /auth/register, /auth/password-reset/*: public, action rate-limited
# - POST  /auth/logout:              public; CSRF when a signed-in session exists
# - GET   /auth/csrf-token:          public; creates an anonymous session if needed
# - GET   /auth/me:                  requires auth (get_current_user)
# - POST  /auth/password:            requires auth + CSRF
# - GET   /auth/users:               requires admin (require_admin)
# - PATCH /auth/users/{id}/status:   requires admin + CSRF
router = APIRouter()


def _summary(user: User) -> dict:
    return UserSummary(**user.summary()).model_dump()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login")
async def login(request: Request, ctx: RequestContext = Depends(get_request_context)) -> JSONResponse:
    """Authenticate with username (or email) and password; issue a new session.

    Unknown user and wrong password return the same 401 message. The previous
    session identifier, if any, is discarded (session fixation defence).
    """
    payload = await read_payload(request)
    result = await run_in_threadpool(
        flows.login,
        payload,
        ctx,
        request.app.state.user_store,
        request.app.state.session_store,
        request.app.state.rate_limiter,
    )
    resp = success(
        "Login successful! Redirecting...",
        {"user": _summary(result.user), "redirect": result.redirect, "csrf_token": result.csrf_token},
    )
    set_session_cookie(resp, result.session.id, max_age=result.cookie_max_age)
    return resp


@router.post("/auth/logout")
async def logout(request: Request, ctx: RequestContext = Depends(get_request_context)) -> JSONResponse:
    """End the session and clear the cookie. 200 even when there was no session."""
    if ctx.session is not None and ctx.session.is_authenticated:
        await csrf_protect(request)
    await run_in_threadpool(flows.logout, ctx, request.app.state.user_store, request.app.state.session_store)
    resp = success("Logged out successfully")
    clear_session_cookie(resp)
    return resp


@router.post("/auth/register", status_code=201)
async def register(request: Request, ctx: RequestContext = Depends(get_request_context)) -> JSONResponse:
    """Create an employee account. 422 lists every invalid field; 409 on a duplicate."""
    payload = await read_payload(request)
    user = await run_in_threadpool(
        flows.register, payload, ctx, request.app.state.user_store, request.app.state.rate_limiter
    )
    return success(
        "Registration successful! Please log in with your credentials.",
        {"user": _summary(user)},
        status_code=201,
    )


@router.get("/auth/csrf-token")
def csrf_token(request: Request, ctx: RequestContext = Depends(get_request_context)) -> JSONResponse:
    """Return the CSRF token bound to the caller's session.

    A caller without a session gets a new anonymous one (and its cookie), so
    the token it receives is bound to that session.
    """
    sessions = request.app.state.session_store
    session = ctx.session
    created = session is None
    if created:
        session = sessions.create()
    token = ensure_token(session, sessions)
    resp = success("CSRF token issued", {"csrf_token": token, "csrf_field": CSRF_FIELD})
    if created:
        set_session_cookie(resp, session.id)
    return resp


@router.post("/auth/password-reset/request")
async def request_password_reset(
    request: Request, ctx: RequestContext = Depends(get_request_context)
) -> JSONResponse:
    """Always answers the same way whether or not the email is registered.

    In debug mode the raw token is echoed in data.reset_token so the flow can
    be exercised without a mail server.
    """
    payload = await read_payload(request)
    token = await run_in_threadpool(
        flows.request_password_reset,
        payload,
        ctx,
        request.app.state.user_store,
        request.app.state.rate_limiter,
    )
    data = {"reset_token": token} if (token and get_settings().debug) else {}
    return success("If this email exists, a reset link has been sent", data)


@router.post("/auth/password-reset/confirm")
async def confirm_password_reset(
    request: Request, ctx: RequestContext = Depends(get_request_context)
) -> JSONResponse:
    """Set a new password with a reset token. 400 for an unknown or expired token."""
    payload = await read_payload(request)
    await run_in_threadpool(
        flows.confirm_password_reset,
        payload,
        ctx,
        request.app.state.user_store,
        request.app.state.session_store,
    )
    return success("Password reset successful")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me")
def me(current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the summary of the currently signed-in user."""
    return success("Authenticated", {"user": _summary(current_user)})


@router.post("/auth/password", dependencies=[Depends(csrf_protect)])
async def change_password(
    request: Request,
    current_user: User = Depends(get_current_user),
    ctx: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """Change the signed-in user's password. The session identifier and CSRF token rotate."""
    payload = await read_payload(request)
    session = await run_in_threadpool(
        flows.change_password,
        payload,
        ctx,
        current_user,
        request.app.state.user_store,
        request.app.state.session_store,
    )
    resp = success("Password changed successfully", {"csrf_token": session.data["csrf_token"]})
    set_session_cookie(resp, session.id)
    return resp


# ---------------------------------------------------------------------------
# User administration (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/users")
def list_users(request: Request, current_user: User = Depends(require_admin)) -> JSONResponse:
    """List all user accounts. Admin only."""
    users = request.app.state.user_store.list_users()
    return success(
        "Users retrieved",
        {
            "users": [
                UserAdminView(
                    id=u.id,
                    email=u.email,
                    username=u.username,
                    name=u.full_name,
                    role=u.role,
                    status=u.status,
                    department=u.department,
                    last_login=u.last_login,
                    created_at=u.created_at,
                ).model_dump()
                for u in users
            ]
        },
    )


@router.patch("/auth/users/{user_id}/status", dependencies=[Depends(csrf_protect)])
async def set_user_status(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_admin),
    ctx: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """Activate, deactivate or suspend another account. Admin only.

    Leaving "active" logs the user out everywhere. An admin cannot change
    their own status.
    """
    payload = await read_payload(request)
    user = await run_in_threadpool(
        flows.set_user_status,
        current_user,
        user_id,
        payload,
        ctx,
        request.app.state.user_store,
        request.app.state.session_store,
    )
    return success("User status updated", {"user": {**_summary(user), "status": user.status}})

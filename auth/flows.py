"""
auth/flows.py -- Login, logout, registration, password and account-status flows.

Each flow receives its collaborators explicitly (stores, rate limiter,
settings) plus a RequestContext describing the caller. Flows raise
core.errors exceptions and never build HTTP responses; the routes in
api/routes/v1/auth.py turn their results into envelopes and cookies.

Login state machine:
  received -> validated -> rate-checked -> looked up -> status-checked
  -> password-verified -> session-issued -> side effects -> success

  Nothing is written to the session store before the session-issued step:
  a failed login leaves the caller's prior session (if any) untouched.

Security:
  Unknown user and wrong password return the identical 401 message, and the
  unknown-user path still runs a bcrypt verify against dummy_hash() so the
  response time does not reveal whether the account exists.

  The status check runs before the password check. A suspended user learns
  the status only by supplying a username that exists, which the generic
  401 already concedes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from sqlalchemy.exc import IntegrityError

from auth.models import ROLE_REDIRECTS, STATUSES, RequestContext, Session, User
from auth.ratelimit import LOGIN_BUCKET, PASSWORD_RESET_BUCKET, REGISTER_BUCKET, RateLimiter
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import (
    dummy_hash,
    generate_csrf_token,
    generate_reset_token,
    hash_password,
    hash_reset_token,
    verify_password,
)
from core.config import Settings, get_settings
from core.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitError,
    UnauthorizedError,
    ValidationError,
)
from core.log import log_security
from core.validator import FAIR, Validator

logger = logging.getLogger("shebamiles.auth")

INVALID_CREDENTIALS = "Invalid username or password"
RESET_TOKEN_TTL = timedelta(hours=1)
USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"
PHONE_PATTERN = r"^\+?[0-9 ()\-]{7,20}$"
# bcrypt hashes at most 72 bytes of input.
PASSWORD_MAX_BYTES = 72
PASSWORD_TOO_LONG = "Password cannot exceed 72 bytes"

# user_activity event names
LOGIN_SUCCESS = "LOGIN_SUCCESS"
LOGOUT = "LOGOUT"
SIGNUP = "SIGNUP"
PASSWORD_RESET = "PASSWORD_RESET"
PASSWORD_CHANGED = "PASSWORD_CHANGED"
STATUS_CHANGED = "STATUS_CHANGED"


@dataclass
class LoginResult:
    user: User
    session: Session
    redirect: str
    csrf_token: str
    # Cookie max-age; None means a browser-session cookie.
    cookie_max_age: int | None = None


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _password_rules(v: Validator, field: str, confirm_field: str) -> None:
    """Shared password policy for registration, reset and change."""
    v.required(field).min_length(8, "Password must be at least 8 characters").max_bytes(
        PASSWORD_MAX_BYTES, PASSWORD_TOO_LONG
    ).character_classes("upper", "lower", "digit").password_strength(FAIR)
    v.required(confirm_field, "Please confirm your password").matches(field)


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


def login(
    payload: Mapping[str, Any],
    ctx: RequestContext,
    users: UserStore,
    sessions: SessionStore,
    limiter: RateLimiter,
    settings: Settings | None = None,
) -> LoginResult:
    """Authenticate by username or email and issue a fresh session.

    Raises:
        ValidationError: username/password missing, too short or over 72 bytes.
        RateLimitError: too many attempts from this client in the window.
        UnauthorizedError: unknown user or wrong password (same message).
        ForbiddenError: the account is inactive or suspended.
    """
    settings = settings or get_settings()

    v = Validator(payload)
    v.required("username").min_length(3)
    v.required("password").min_length(8).max_bytes(PASSWORD_MAX_BYTES, PASSWORD_TOO_LONG)
    if not v.validate():
        raise ValidationError("Please fill in all required fields", v.errors)

    username = str(payload["username"]).strip()
    password = str(payload["password"])
    remember = _truthy(payload.get("remember"))

    limit, window = settings.login_rate_limit, settings.login_rate_limit_window
    if not limiter.check(ctx.client_ip, LOGIN_BUCKET, limit, window):
        log_security(logger, "Login rate limit exceeded", ip=ctx.client_ip, username=username)
        raise RateLimitError(
            f"Too many login attempts. Please try again in {max(1, window // 60)} minutes.",
            retry_after=window,
            limit=limit,
        )

    user = users.get_by_login(username)
    if user is None:
        verify_password(password, dummy_hash())
        logger.warning("Login attempt with non-existent user username=%s ip=%s", username, ctx.client_ip)
        raise UnauthorizedError(INVALID_CREDENTIALS)

    if not user.is_active:
        logger.warning("Login attempt on %s account user_id=%s ip=%s", user.status, user.id, ctx.client_ip)
        raise ForbiddenError(f"Your account is {user.status}. Please contact support.")

    if not verify_password(password, user.hashed_password):
        logger.warning("Failed login attempt user_id=%s ip=%s reason=invalid_password", user.id, ctx.client_ip)
        raise UnauthorizedError(INVALID_CREDENTIALS)

    timeout = settings.remember_me_seconds if remember else settings.session_timeout_seconds
    csrf_token = generate_csrf_token()
    session = sessions.regenerate(
        ctx.session,
        {
            "user_id": user.id,
            "email": user.email,
            "name": user.full_name,
            "role": user.role,
            "login_time": time.time(),
            "csrf_token": csrf_token,
        },
        timeout=timeout,
    )

    users.update_last_login(user.id)
    users.log_activity(user.id, LOGIN_SUCCESS, ip_address=ctx.client_ip, user_agent=ctx.user_agent)
    logger.info("User logged in successfully user_id=%s ip=%s", user.id, ctx.client_ip)
    limiter.reset(LOGIN_BUCKET, ctx.client_ip)

    return LoginResult(
        user=user,
        session=session,
        redirect=ROLE_REDIRECTS.get(user.role, ROLE_REDIRECTS["employee"]),
        csrf_token=csrf_token,
        cookie_max_age=timeout if remember else None,
    )


def logout(ctx: RequestContext, users: UserStore, sessions: SessionStore) -> None:
    """Destroy the caller's session. A request without one is a no-op."""
    if ctx.session is None:
        return
    user_id = ctx.session.user_id
    sessions.destroy(ctx.session.id)
    if user_id is not None:
        users.log_activity(user_id, LOGOUT, ip_address=ctx.client_ip, user_agent=ctx.user_agent)
        logger.info("User logged out user_id=%s", user_id)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def create_account(payload: Mapping[str, Any], users: UserStore, role: str = "employee") -> User:
    """Validate a registration payload and insert the user.

    Shared by the public register endpoint and `manage.py create-admin`.

    Raises:
        ValidationError: one entry per invalid field.
        ConflictError: email or username taken (including a concurrent insert
            that slipped past the uniqueness check).
    """
    v = Validator(payload)
    v.required("email").email().max_length(255).unique(users, "email")
    v.required("username").min_length(3).max_length(50).format(
        USERNAME_PATTERN, "Username may only contain letters, numbers, dots, dashes and underscores"
    ).unique(users, "username")
    v.required("first_name").min_length(2).max_length(100)
    v.required("last_name").min_length(2).max_length(100)
    _password_rules(v, "password", "confirm_password")
    v.optional("phone").format(PHONE_PATTERN, "Please enter a valid phone number")
    v.optional("department").max_length(100)
    if not v.validate():
        raise ValidationError("Please correct the highlighted fields", v.errors)

    data = v.validated()
    user = User(
        email=str(data["email"]).strip().lower(),
        username=str(data["username"]).strip(),
        hashed_password=hash_password(str(data["password"])),
        first_name=str(data["first_name"]).strip(),
        last_name=str(data["last_name"]).strip(),
        phone=data.get("phone"),
        department=data.get("department"),
        role=role,
        status="active",
        is_verified=True,
    )
    try:
        user.id = users.create_user(user)
    except IntegrityError as exc:
        raise ConflictError("Email or username already registered") from exc
    return user


def register(
    payload: Mapping[str, Any],
    ctx: RequestContext,
    users: UserStore,
    limiter: RateLimiter,
    settings: Settings | None = None,
) -> User:
    """Public self-registration: rate-limited per client, always role employee."""
    settings = settings or get_settings()
    limiter.enforce(
        ctx.client_ip,
        REGISTER_BUCKET,
        settings.register_rate_limit,
        settings.register_rate_limit_window,
        "Too many registration attempts. Please try again later.",
    )
    user = create_account(payload, users, role="employee")
    users.log_activity(
        user.id,
        SIGNUP,
        details=f"New user registered: {user.email}",
        ip_address=ctx.client_ip,
        user_agent=ctx.user_agent,
    )
    logger.info("User registered user_id=%s ip=%s", user.id, ctx.client_ip)
    return user


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


def request_password_reset(
    payload: Mapping[str, Any],
    ctx: RequestContext,
    users: UserStore,
    limiter: RateLimiter,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> str | None:
    """Issue a reset token when the email belongs to a user.

    Returns the raw token (for delivery) or None when no user matched. The
    caller must answer identically in both cases.
    """
    settings = settings or get_settings()
    limiter.enforce(
        ctx.client_ip,
        PASSWORD_RESET_BUCKET,
        settings.password_reset_rate_limit,
        settings.password_reset_rate_limit_window,
        "Too many password reset requests. Please try again later.",
    )
    v = Validator(payload)
    v.required("email", "Valid email required").email("Valid email required")
    if not v.validate():
        raise ValidationError("Valid email required", v.errors)

    user = users.get_by_email(str(payload["email"]).strip().lower())
    if user is None:
        logger.info("Password reset requested for unknown email ip=%s", ctx.client_ip)
        return None

    raw = generate_reset_token()
    expires = (now or datetime.now(timezone.utc)) + RESET_TOKEN_TTL
    users.set_reset_token(user.id, hash_reset_token(raw), expires.isoformat())
    logger.info("Password reset token issued user_id=%s ip=%s", user.id, ctx.client_ip)
    return raw


def confirm_password_reset(
    payload: Mapping[str, Any],
    ctx: RequestContext,
    users: UserStore,
    sessions: SessionStore,
) -> User:
    """Consume a reset token and set the new password.

    Every existing session of the user is destroyed.

    Raises:
        ValidationError: missing token or password policy failure.
        BadRequestError: unknown, used or expired token.
    """
    v = Validator(payload)
    v.required("token")
    _password_rules(v, "password", "confirm_password")
    if not v.validate():
        raise ValidationError("Please correct the highlighted fields", v.errors)

    user = users.get_by_reset_token(hash_reset_token(str(payload["token"])))
    if user is None:
        log_security(logger, "Invalid or expired password reset token used", ip=ctx.client_ip)
        raise BadRequestError("Invalid or expired reset link")

    users.complete_password_reset(user.id, hash_password(str(payload["password"])))
    sessions.destroy_user_sessions(user.id)
    users.log_activity(user.id, PASSWORD_RESET, ip_address=ctx.client_ip, user_agent=ctx.user_agent)
    logger.info("Password reset completed user_id=%s", user.id)
    return user


def change_password(
    payload: Mapping[str, Any],
    ctx: RequestContext,
    user: User,
    users: UserStore,
    sessions: SessionStore,
) -> Session:
    """Change the signed-in user's password and return the replacement session.

    Other sessions of the user are logged out; the caller keeps a session
    under a new identifier with a new CSRF token.
    """
    v = Validator(payload)
    v.required("current_password")
    _password_rules(v, "new_password", "confirm_password")
    if not v.validate():
        raise ValidationError("Please correct the highlighted fields", v.errors)

    if not verify_password(str(payload["current_password"]), user.hashed_password):
        logger.warning("Password change with wrong current password user_id=%s ip=%s", user.id, ctx.client_ip)
        raise UnauthorizedError("Current password is incorrect")

    users.update_user(user.id, hashed_password=hash_password(str(payload["new_password"])))
    data = dict(ctx.session.data) if ctx.session is not None else {"user_id": user.id, "role": user.role}
    data["csrf_token"] = generate_csrf_token()
    timeout = ctx.session.timeout if ctx.session is not None else None
    sessions.destroy_user_sessions(user.id)
    session = sessions.create(data, timeout=timeout)
    users.log_activity(user.id, PASSWORD_CHANGED, ip_address=ctx.client_ip, user_agent=ctx.user_agent)
    logger.info("Password changed user_id=%s", user.id)
    return session


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


def set_user_status(
    actor: User,
    user_id: int,
    payload: Mapping[str, Any],
    ctx: RequestContext,
    users: UserStore,
    sessions: SessionStore,
) -> User:
    """Set another user's status. Leaving "active" ends all their sessions."""
    v = Validator(payload)
    v.required("status").in_(STATUSES, f"Status must be one of: {', '.join(STATUSES)}")
    if not v.validate():
        raise ValidationError("Please correct the highlighted fields", v.errors)

    target = users.get_by_id(user_id)
    if target is None:
        raise NotFoundError("User not found")
    if target.id == actor.id:
        raise BadRequestError("You cannot change your own account status")

    new_status = str(payload["status"])
    users.update_user(target.id, status=new_status)
    if new_status != "active":
        sessions.destroy_user_sessions(target.id)
    users.log_activity(
        actor.id,
        STATUS_CHANGED,
        details=f"user_id={target.id} {target.status} -> {new_status}",
        ip_address=ctx.client_ip,
        user_agent=ctx.user_agent,
    )
    log_security(
        logger, "Account status changed", actor_id=actor.id, user_id=target.id, status=new_status, ip=ctx.client_ip
    )
    return users.get_by_id(target.id)

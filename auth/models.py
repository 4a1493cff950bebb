"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond derived names).
Stores and flows do the work.

Layer rule: no imports from api/. Only core/ and third-party libraries.
"""

from __future__ import annotations

from dataclasses import dataclass, field

ROLES = ("admin", "manager", "employee")
STATUSES = ("active", "inactive", "suspended")

# Post-login landing page per role, relative to the frontend folder.
ROLE_REDIRECTS = {
    "admin": "admin_dashboard_overview.html",
    "manager": "employee_list.html",
    "employee": "employee_personalized_dashboard_1.html",
}


@dataclass
class User:
    """A person who can sign in to the HR portal.

    hashed_password is a bcrypt hash; the plaintext is never stored.
    status gates login: only "active" accounts may authenticate.
    reset_token_hash holds HMAC-SHA256 of an outstanding password reset token
    (never the raw token) and is cleared once used.
    """

    email: str
    username: str
    hashed_password: str
    first_name: str
    last_name: str
    role: str = "employee"  # "admin", "manager", "employee"
    status: str = "active"  # "active", "inactive", "suspended"
    is_verified: bool = True
    phone: str | None = None
    department: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None
    reset_token_hash: str | None = None
    reset_token_expiry: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def summary(self) -> dict:
        """The public shape returned to clients -- no hashes, no tokens."""
        return {"id": self.id, "email": self.email, "name": self.full_name, "role": self.role}


@dataclass
class Session:
    """Server-side session state, addressed by an opaque cookie identifier.

    data holds user_id, email, name, role, login_time and csrf_token once the
    session is authenticated. An anonymous session (e.g. one created to hand
    out a CSRF token before login) has no user_id.
    """

    id: str
    data: dict = field(default_factory=dict)
    created_at: float = 0.0
    last_activity: float = 0.0
    timeout: int = 3600

    @property
    def user_id(self) -> int | None:
        return self.data.get("user_id")

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None


@dataclass
class RequestContext:
    """Everything the auth flows need to know about the inbound request.

    Built once per request by auth.dependencies.get_request_context and passed
    explicitly, so flows never read ambient request state.
    """

    client_ip: str
    user_agent: str = ""
    session: Session | None = None

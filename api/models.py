"""
API response models for Shebamiles REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Every response body -- success or failure -- is an Envelope. Clients branch
on `success` and `code`, never on the shape of the body.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.errors import ResponseCode


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Envelope(BaseModel):
    """Uniform response body.

    `errors` is only serialized on failures (see api.responses), so a success
    body never carries an errors key.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    success: bool
    code: ResponseCode
    message: str
    data: Any = Field(default_factory=dict)
    errors: Optional[dict[str, Any]] = None
    timestamp: str = Field(default_factory=_now)


class UserSummary(BaseModel):
    """Public user shape returned by login, register and /me."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: str


class UserAdminView(BaseModel):
    """Row in GET /api/v1/auth/users. Never includes hashes or tokens."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    username: str
    name: str
    role: str
    status: str
    department: Optional[str] = None
    last_login: Optional[str] = None
    created_at: Optional[str] = None


class HealthComponents(BaseModel):
    model_config = ConfigDict(frozen=True)

    app: str = "ok"
    database: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    timestamp: str = Field(default_factory=_now)
    components: HealthComponents

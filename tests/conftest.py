"""
tests/conftest.py -- Shared test fixtures for Shebamiles tests.

This module provides:
  - engine: a fresh named shared-memory SQLite engine per test
  - users / sessions / limiter: stores bound to that engine
  - make_user: factory inserting a user with a known password
  - client: TestClient over the real app with a patched lifespan
  - login / csrf helpers for integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers and dependencies in a thread
pool. Plain :memory: DBs are per-connection and would present a blank schema
to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process. A uuid in the name gives every
test its own database, so rate-limit counters never leak between tests.

SHEBAMILES_DEBUG must be set before any core/auth/api import so
get_settings() auto-generates SECRET_KEY instead of raising ValueError.
bcrypt runs at its minimum cost (4) to keep the suite fast.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any project import -- Settings is cached on first use.
os.environ.setdefault("SHEBAMILES_DEBUG", "true")
os.environ.setdefault("SHEBAMILES_BCRYPT_ROUNDS", "4")
os.environ.setdefault("SHEBAMILES_API_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SHEBAMILES_LOG_TO_DATABASE", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app
from auth.models import User
from auth.ratelimit import DatabaseRateLimitBackend, RateLimiter
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import hash_password
from core.database import create_db_engine

DEFAULT_PASSWORD = "Sunrise2024!"


class FakeClock:
    """Manually advanced time source for limiter and session tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    url = f"sqlite:///file:test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    eng = create_db_engine(url)
    yield eng
    eng.dispose()


@pytest.fixture
def users(engine: Engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def sessions(engine: Engine) -> SessionStore:
    return SessionStore(engine, default_timeout=3600)


@pytest.fixture
def limiter(engine: Engine) -> RateLimiter:
    """Database-backed limiter that never runs the probabilistic purge."""
    return RateLimiter(DatabaseRateLimitBackend(engine), rng=lambda: 1.0)


@pytest.fixture
def make_user(users: UserStore) -> Callable[..., User]:
    """Insert a user and return it with its id set.

    make_user("ada") -> active employee ada / ada@example.com / DEFAULT_PASSWORD
    """

    def _make(
        username: str = "ada",
        password: str = DEFAULT_PASSWORD,
        role: str = "employee",
        status: str = "active",
        email: str | None = None,
    ) -> User:
        user = User(
            email=email or f"{username}@example.com",
            username=username,
            hashed_password=hash_password(password),
            first_name=username.capitalize(),
            last_name="Tester",
            role=role,
            status=status,
        )
        user.id = users.create_user(user)
        return user

    return _make


# ---------------------------------------------------------------------------
# Client fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: Engine, users: UserStore, sessions: SessionStore, limiter: RateLimiter):
    """Return an async context manager that replaces the real lifespan.

    Wires the per-test stores into app.state so TestClient routes see the
    isolated test database. The purge_task is a long-sleeping coroutine (a real
    asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.user_store = users
        app.state.session_store = sessions
        app.state.rate_limiter = limiter
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def client(engine, users, sessions, limiter) -> Generator[TestClient, None, None]:
    """TestClient over the real app and middleware with isolated stores."""
    app.router.lifespan_context = _patch_lifespan(engine, users, sessions, limiter)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


# ---------------------------------------------------------------------------
# Integration helpers
# ---------------------------------------------------------------------------


def do_login(client: TestClient, username: str = "ada", password: str = DEFAULT_PASSWORD, **extra):
    return client.post("/api/v1/auth/login", json={"username": username, "password": password, **extra})


@pytest.fixture
def login_as(client: TestClient) -> Callable[..., object]:
    """POST /auth/login through the shared client: login_as("ada", "Sunrise2024!", remember=True)."""

    def _login(username: str = "ada", password: str = DEFAULT_PASSWORD, **extra):
        return do_login(client, username, password, **extra)

    return _login


@pytest.fixture
def logged_in(client: TestClient, make_user) -> tuple[TestClient, User, str]:
    """(client, user, csrf_token) for a signed-in employee."""
    user = make_user("ada")
    resp = do_login(client)
    assert resp.status_code == 200, resp.text
    return client, user, resp.json()["data"]["csrf_token"]


@pytest.fixture
def admin_client(client: TestClient, make_user) -> tuple[TestClient, User, str]:
    """(client, admin, csrf_token) for a signed-in admin."""
    admin = make_user("root", role="admin")
    resp = do_login(client, "root")
    assert resp.status_code == 200, resp.text
    return client, admin, resp.json()["data"]["csrf_token"]

"""
tests/test_tokens.py -- Password hashing, reset token digests and role guards.
"""

from __future__ import annotations

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

import api.main as api_main
from auth.dependencies import require_role
from auth.models import User
from auth.tokens import (
    dummy_hash,
    generate_reset_token,
    hash_password,
    hash_reset_token,
    verify_password,
)
from core.config import get_settings
from core.errors import ApiError


class TestPasswords:
    def test_hash_verifies_and_is_salted(self):
        first = hash_password("Sunrise2024!")
        second = hash_password("Sunrise2024!")
        assert first != second
        assert first.startswith("$2")
        assert verify_password("Sunrise2024!", first)
        assert not verify_password("sunrise2024!", first)

    def test_malformed_hash_is_a_mismatch(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_dummy_hash_is_real_and_cached(self):
        assert dummy_hash() is dummy_hash()
        assert not verify_password("Sunrise2024!", dummy_hash())


class TestResetTokens:
    def test_digest_is_deterministic_hex(self):
        raw = generate_reset_token()
        assert len(raw) == 64
        assert hash_reset_token(raw) == hash_reset_token(raw)
        assert len(hash_reset_token(raw)) == 64
        assert hash_reset_token(raw) != raw

    def test_distinct_tokens_distinct_digests(self):
        assert hash_reset_token(generate_reset_token()) != hash_reset_token(generate_reset_token())


@pytest.fixture
def role_client(users, sessions):
    """Minimal app with one manager-only route over the test stores."""
    app = FastAPI()
    app.state.user_store = users
    app.state.session_store = sessions
    app.add_exception_handler(ApiError, api_main.api_error_handler)

    @app.get("/team")
    def team(user: User = Depends(require_role("manager"))):
        return {"username": user.username}

    with TestClient(app) as client:
        yield client


def _sign_in(client, sessions, user):
    session = sessions.create({"user_id": user.id, "role": user.role})
    client.cookies.set(get_settings().session_cookie_name, session.id)


class TestRequireRole:
    @pytest.mark.parametrize("role,status", [("manager", 200), ("admin", 200), ("employee", 403)])
    def test_role_gate(self, role_client, sessions, make_user, role, status):
        _sign_in(role_client, sessions, make_user("pat", role=role))
        assert role_client.get("/team").status_code == status

    def test_anonymous_is_401(self, role_client):
        assert role_client.get("/team").status_code == 401

    def test_deactivated_user_session_does_not_authenticate(self, role_client, sessions, make_user):
        _sign_in(role_client, sessions, make_user("pat", role="manager", status="inactive"))
        assert role_client.get("/team").status_code == 401

"""Tests for password reset and password change.

Covers:
- reset request answers identically for known and unknown emails
- debug mode echoes the raw token; only its digest is stored
- confirm sets the password, clears the token and ends every session
- unknown, reused and expired tokens -> 400
- change password: wrong current password -> 401, success rotates the session
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth import flows
from auth.models import RequestContext
from auth.tokens import hash_reset_token
from core.config import get_settings
from core.errors import RateLimitError

COOKIE = get_settings().session_cookie_name
DEFAULT_PASSWORD = "Sunrise2024!"
NEW = "Moonrise2025!"


def _request_reset(client, email="ada@example.com"):
    return client.post("/api/v1/auth/password-reset/request", json={"email": email})


def _confirm(client, token, password=NEW, confirm=NEW):
    return client.post(
        "/api/v1/auth/password-reset/confirm",
        json={"token": token, "password": password, "confirm_password": confirm},
    )


class TestResetRequest:
    def test_known_and_unknown_email_answer_alike(self, client, make_user) -> None:
        make_user("ada")
        known = _request_reset(client)
        unknown = _request_reset(client, "nobody@shebamiles.com")
        assert known.status_code == unknown.status_code == 200
        assert known.json()["message"] == unknown.json()["message"]
        assert unknown.json()["data"] == {}

    def test_only_digest_is_stored(self, client, make_user, users) -> None:
        user = make_user("ada")
        token = _request_reset(client).json()["data"]["reset_token"]
        stored = users.get_by_id(user.id)
        assert stored.reset_token_hash == hash_reset_token(token)
        assert stored.reset_token_hash != token

    def test_invalid_email_is_422(self, client) -> None:
        resp = _request_reset(client, "not-an-email")
        assert resp.status_code == 422
        assert resp.json()["errors"]["email"]["email"] == "Valid email required"

    def test_requests_are_rate_limited(self, users, limiter) -> None:
        ctx = RequestContext(client_ip="203.0.113.30")
        for _ in range(get_settings().password_reset_rate_limit):
            flows.request_password_reset({"email": "nobody@shebamiles.com"}, ctx, users, limiter)
        with pytest.raises(RateLimitError):
            flows.request_password_reset({"email": "nobody@shebamiles.com"}, ctx, users, limiter)


class TestResetConfirm:
    def test_sets_password_and_ends_sessions(self, logged_in, sessions, users, login_as) -> None:
        client, user, _token = logged_in
        old_session = client.cookies[COOKIE]
        token = _request_reset(client).json()["data"]["reset_token"]

        resp = _confirm(client, token)
        assert resp.status_code == 200
        assert sessions.get(old_session) is None
        assert users.get_by_id(user.id).reset_token_hash is None
        assert users.recent_activity(user.id)[0]["activity"] == "PASSWORD_RESET"

        client.cookies.clear()
        assert login_as("ada", DEFAULT_PASSWORD).status_code == 401
        assert login_as("ada", NEW).status_code == 200

    def test_token_is_single_use(self, client, make_user) -> None:
        make_user("ada")
        token = _request_reset(client).json()["data"]["reset_token"]
        assert _confirm(client, token).status_code == 200
        resp = _confirm(client, token, "Another2026!", "Another2026!")
        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid or expired reset link"

    def test_unknown_token_is_400(self, client) -> None:
        assert _confirm(client, "f" * 64).status_code == 400

    def test_expired_token_is_400(self, client, make_user, users, limiter) -> None:
        make_user("ada")
        issued = datetime.now(timezone.utc) - timedelta(hours=2)
        token = flows.request_password_reset(
            {"email": "ada@example.com"}, RequestContext(client_ip="203.0.113.31"), users, limiter, now=issued
        )
        assert token
        assert _confirm(client, token).status_code == 400

    def test_weak_password_is_422(self, client, make_user) -> None:
        make_user("ada")
        token = _request_reset(client).json()["data"]["reset_token"]
        resp = _confirm(client, token, "password", "password")
        assert resp.status_code == 422
        assert "characterClasses" in resp.json()["errors"]["password"]


class TestChangePassword:
    def _change(self, client, token, current=DEFAULT_PASSWORD, new=NEW):
        return client.post(
            "/api/v1/auth/password",
            json={"current_password": current, "new_password": new, "confirm_password": new},
            headers={"X-CSRF-Token": token},
        )

    def test_wrong_current_password_is_401(self, logged_in) -> None:
        client, _user, token = logged_in
        resp = self._change(client, token, current="Wrong-pass-1")
        assert resp.status_code == 401
        assert resp.json()["message"] == "Current password is incorrect"

    def test_success_rotates_session_and_token(self, logged_in, sessions, users) -> None:
        client, user, token = logged_in
        old_session = client.cookies[COOKIE]
        other = sessions.create({"user_id": user.id, "role": user.role})

        resp = self._change(client, token)
        assert resp.status_code == 200
        new_token = resp.json()["data"]["csrf_token"]
        assert new_token != token
        assert sessions.get(old_session) is None
        assert sessions.get(other.id) is None

        new_session = sessions.get(client.cookies[COOKIE])
        assert new_session.user_id == user.id
        assert client.get("/api/v1/auth/me").status_code == 200
        assert users.recent_activity(user.id)[0]["activity"] == "PASSWORD_CHANGED"

    def test_new_password_over_72_bytes_is_422(self, logged_in) -> None:
        client, _user, token = logged_in
        resp = self._change(client, token, new="Aa1" + "é" * 60)
        assert resp.status_code == 422
        assert resp.json()["errors"]["new_password"]["maxLength"] == "Password cannot exceed 72 bytes"

    def test_new_password_required_by_policy(self, logged_in) -> None:
        client, _user, token = logged_in
        resp = self._change(client, token, new="short")
        assert resp.status_code == 422
        assert "minLength" in resp.json()["errors"]["new_password"]

    def test_requires_authentication(self, client) -> None:
        # CSRF runs first and an anonymous caller has no token to present.
        resp = client.post("/api/v1/auth/password", json={})
        assert resp.status_code == 403

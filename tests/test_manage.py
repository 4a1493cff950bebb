"""
tests/test_manage.py -- Operator commands in manage.py.

_engine() is patched to hand the commands the per-test SQLite engine.
"""

from __future__ import annotations

import itertools

import pytest

import manage
from auth.sessions import SessionStore
from core.errors import DatabaseUnavailableError

ADMIN_ARGS = [
    "create-admin",
    "--email",
    "hr@shebamiles.com",
    "--username",
    "hradmin",
    "--first-name",
    "Helen",
    "--last-name",
    "Reyes",
]


@pytest.fixture
def use_engine(engine, monkeypatch):
    monkeypatch.setattr(manage, "_engine", lambda: engine)
    return engine


def _prompts(monkeypatch, *answers):
    it = itertools.cycle(answers)
    monkeypatch.setattr(manage.getpass, "getpass", lambda prompt="": next(it))


def test_init_db(use_engine, capsys):
    assert manage.main(["init-db"]) == 0
    out = capsys.readouterr().out
    assert "ready" in out
    assert "create-admin" in out


def test_init_db_skips_hint_once_users_exist(use_engine, make_user, capsys):
    make_user("ada")
    assert manage.main(["init-db"]) == 0
    assert "create-admin" not in capsys.readouterr().out


def test_create_admin(use_engine, users, monkeypatch, capsys):
    _prompts(monkeypatch, "Harbour2024!")
    assert manage.main(ADMIN_ARGS) == 0
    admin = users.get_by_email("hr@shebamiles.com")
    assert admin.role == "admin"
    assert "hradmin" in capsys.readouterr().out


def test_create_admin_reports_validation_errors(use_engine, users, monkeypatch, capsys):
    _prompts(monkeypatch, "weak")
    assert manage.main(ADMIN_ARGS) == 1
    out = capsys.readouterr().out
    assert "password:" in out
    assert users.get_by_email("hr@shebamiles.com") is None


def test_purge(use_engine, capsys):
    sessions = SessionStore(use_engine, default_timeout=1, clock=lambda: 0.0)
    sessions.create({"user_id": 1})
    assert manage.main(["purge", "--log-days", "30"]) == 0
    assert "Removed 1 expired sessions" in capsys.readouterr().out


def test_database_unavailable_exit_code(monkeypatch, capsys):
    def unavailable():
        raise DatabaseUnavailableError()

    monkeypatch.setattr(manage, "_engine", unavailable)
    assert manage.main(["init-db"]) == 2
    assert "SHEBAMILES_DB_" in capsys.readouterr().out

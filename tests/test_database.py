"""
tests/test_database.py -- Engine construction, ping and bounded connect retry.
"""

from __future__ import annotations

import logging

import pytest

from core.database import connect_with_retry, create_db_engine, ping
from core.errors import DatabaseUnavailableError

UNREACHABLE = "sqlite:////nonexistent-shebamiles-dir/db.sqlite"


def test_ping_reachable(engine):
    assert ping(engine) is True


def test_ping_unreachable_returns_false():
    engine = create_db_engine(UNREACHABLE)
    try:
        assert ping(engine) is False
    finally:
        engine.dispose()


def test_connect_with_retry_succeeds_first_time(engine):
    connect_with_retry(engine, attempts=3, base_delay=0.001)


def test_connect_with_retry_gives_up_with_typed_error(caplog):
    engine = create_db_engine(UNREACHABLE)
    try:
        with caplog.at_level(logging.WARNING, logger="shebamiles.database"):
            with pytest.raises(DatabaseUnavailableError) as info:
                connect_with_retry(engine, attempts=3, base_delay=0.001)
    finally:
        engine.dispose()
    assert info.value.status_code == 503
    retries = [r for r in caplog.records if "connection attempt" in r.getMessage()]
    assert len(retries) == 2
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)

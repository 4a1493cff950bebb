"""Unit tests for auth/ratelimit.py -- sliding window, backends, identifiers.

Both backends run the same behavioural tests through a parametrized fixture,
so the database table and the JSON files are held to identical semantics.

Covers:
- limit reached -> rejected, and the rejection is not recorded
- the window slides per event (strictly newer than now - window)
- reset() clears one (identifier, bucket) key only
- status() reports current / remaining without recording
- backend failure fails open
- probabilistic purge of records older than seven days
- client identifier resolution and "unknown" fallback
"""

from __future__ import annotations

import pytest

from auth.ratelimit import (
    PURGE_HORIZON,
    DatabaseRateLimitBackend,
    FileRateLimitBackend,
    RateLimiter,
    build_rate_limiter,
    client_identifier,
)
from core.errors import RateLimitError


@pytest.fixture(params=["database", "file"])
def backend(request, engine, tmp_path):
    if request.param == "database":
        return DatabaseRateLimitBackend(engine)
    return FileRateLimitBackend(tmp_path / "rl")


@pytest.fixture
def rl(backend, clock) -> RateLimiter:
    return RateLimiter(backend, clock=clock, rng=lambda: 1.0)


class ExplodingBackend:
    def count(self, identifier, bucket, since):
        raise RuntimeError("backend down")

    def record(self, identifier, bucket, timestamp):
        raise RuntimeError("backend down")

    def clear(self, identifier, bucket):
        raise RuntimeError("backend down")

    def purge(self, before):
        raise RuntimeError("backend down")


# ---------------------------------------------------------------------------
# Sliding window
# ---------------------------------------------------------------------------


class TestSlidingWindow:
    def test_admits_up_to_limit_then_rejects(self, rl) -> None:
        results = [rl.check("10.0.0.1", "login_attempts", 5, 900) for _ in range(6)]
        assert results == [True] * 5 + [False]

    def test_rejection_is_not_recorded(self, rl, backend, clock) -> None:
        for _ in range(8):
            rl.check("10.0.0.1", "login_attempts", 5, 900)
        assert backend.count("10.0.0.1", "login_attempts", clock() - 900) == 5

    def test_window_slides_per_event(self, rl, clock) -> None:
        assert rl.check("ip", "b", 2, 60)
        clock.advance(30)
        assert rl.check("ip", "b", 2, 60)
        assert not rl.check("ip", "b", 2, 60)
        # first event is now exactly 60s old: boundary is strict, so it no longer counts
        clock.advance(30)
        assert rl.check("ip", "b", 2, 60)
        assert not rl.check("ip", "b", 2, 60)

    def test_keys_are_independent(self, rl) -> None:
        assert rl.check("a", "login_attempts", 1, 60)
        assert not rl.check("a", "login_attempts", 1, 60)
        assert rl.check("b", "login_attempts", 1, 60)
        assert rl.check("a", "registration", 1, 60)

    def test_reset_clears_only_that_key(self, rl) -> None:
        for ident in ("a", "b"):
            assert rl.check(ident, "login_attempts", 1, 60)
        rl.reset("login_attempts", "a")
        assert rl.check("a", "login_attempts", 1, 60)
        assert not rl.check("b", "login_attempts", 1, 60)

    def test_status_does_not_record(self, rl) -> None:
        rl.check("ip", "b", 5, 60)
        rl.check("ip", "b", 5, 60)
        assert rl.status("ip", "b", 5, 60) == {"current": 2, "limit": 5, "remaining": 3}
        assert rl.status("ip", "b", 5, 60) == {"current": 2, "limit": 5, "remaining": 3}

    def test_enforce_raises_with_retry_after(self, rl) -> None:
        rl.enforce("ip", "registration", 1, 3600)
        with pytest.raises(RateLimitError) as info:
            rl.enforce("ip", "registration", 1, 3600)
        assert info.value.retry_after == 3600
        assert info.value.limit == 1
        assert info.value.status_code == 429


# ---------------------------------------------------------------------------
# Housekeeping
# ---------------------------------------------------------------------------


class TestCleanup:
    def test_cleanup_removes_only_old_records(self, rl, backend, clock) -> None:
        rl.check("old", "b", 10, 60)
        clock.advance(PURGE_HORIZON + 10)
        rl.check("new", "b", 10, 60)
        assert rl.cleanup() == 1
        assert backend.count("new", "b", 0) == 1
        assert backend.count("old", "b", 0) == 0

    def test_probabilistic_purge_runs_when_rng_hits(self, backend, clock) -> None:
        rl = RateLimiter(backend, clock=clock, rng=lambda: 0.0)
        rl.check("old", "b", 10, 60)
        clock.advance(PURGE_HORIZON + 10)
        rl.check("new", "b", 10, 60)
        assert backend.count("old", "b", 0) == 0

    def test_probabilistic_purge_skipped_otherwise(self, rl, backend, clock) -> None:
        rl.check("old", "b", 10, 60)
        clock.advance(PURGE_HORIZON + 10)
        rl.check("new", "b", 10, 60)
        # file backend prunes only the key it writes
        assert backend.count("old", "b", 0) == 1


# ---------------------------------------------------------------------------
# Fail-open
# ---------------------------------------------------------------------------


class TestFailOpen:
    def test_check_admits_when_backend_raises(self, caplog) -> None:
        rl = RateLimiter(ExplodingBackend())
        assert rl.check("ip", "login_attempts", 1, 60) is True
        assert rl.check("ip", "login_attempts", 1, 60) is True
        assert "failing open" in caplog.text

    def test_reset_and_cleanup_do_not_raise(self) -> None:
        rl = RateLimiter(ExplodingBackend())
        rl.reset("login_attempts", "ip")
        assert rl.cleanup() == 0
        assert rl.status("ip", "b", 5, 60)["remaining"] == 5


# ---------------------------------------------------------------------------
# Construction and file layout
# ---------------------------------------------------------------------------


class TestBackends:
    def test_file_backend_writes_one_json_file_per_key(self, tmp_path, clock) -> None:
        backend = FileRateLimitBackend(tmp_path)
        rl = RateLimiter(backend, clock=clock, rng=lambda: 1.0)
        rl.check("ip", "login_attempts", 5, 60)
        rl.check("ip", "login_attempts", 5, 60)
        rl.check("ip", "registration", 5, 60)
        files = sorted(p.name for p in tmp_path.glob("*.json"))
        assert len(files) == 2
        assert not list(tmp_path.glob("*.tmp"))

    def test_build_rate_limiter_selects_backend(self, engine, tmp_path) -> None:
        assert isinstance(build_rate_limiter("database", engine).backend, DatabaseRateLimitBackend)
        assert isinstance(build_rate_limiter("file", engine, str(tmp_path)).backend, FileRateLimitBackend)
        assert isinstance(build_rate_limiter("database", None, str(tmp_path)).backend, FileRateLimitBackend)
        with pytest.raises(ValueError):
            build_rate_limiter("redis", engine)


# ---------------------------------------------------------------------------
# Identifier resolution
# ---------------------------------------------------------------------------


class TestClientIdentifier:
    def test_client_ip_header_wins(self) -> None:
        headers = {"client-ip": "203.0.113.9", "x-forwarded-for": "198.51.100.1"}
        assert client_identifier(headers, "10.0.0.1") == "203.0.113.9"

    def test_first_forwarded_hop(self) -> None:
        headers = {"x-forwarded-for": "198.51.100.1, 10.0.0.2, 10.0.0.3"}
        assert client_identifier(headers, "10.0.0.1") == "198.51.100.1"

    def test_connection_address_fallback(self) -> None:
        assert client_identifier({}, "192.0.2.44") == "192.0.2.44"

    def test_ipv6(self) -> None:
        assert client_identifier({}, "2001:db8::1") == "2001:db8::1"

    @pytest.mark.parametrize("remote", ["testclient", "", None, "999.1.1.1"])
    def test_invalid_resolves_to_unknown(self, remote) -> None:
        assert client_identifier({}, remote) == "unknown"

    def test_invalid_forwarded_value_resolves_to_unknown(self) -> None:
        assert client_identifier({"x-forwarded-for": "not-an-ip"}, "192.0.2.44") == "unknown"

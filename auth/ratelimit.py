"""
auth/ratelimit.py -- Sliding-window rate limiter with database or file storage.

Policy:
  check(identifier, bucket, limit, window) counts the recorded events for
  (identifier, bucket) whose timestamp is strictly newer than now - window.
  At or over the limit the call is rejected and NOT recorded; otherwise the
  current timestamp is recorded and the call admitted. The window slides per
  event -- there are no fixed-interval buckets, so no burst at a boundary.

Fail-open:
  If the backend raises while counting or recording, check() admits the
  request and logs the failure.

Housekeeping:
  About one admitted check in a hundred also purges events older than seven
  days (PURGE_HORIZON), amortizing cleanup across requests.

Concurrency:
  count-then-record is two statements, not one atomic increment. Two requests
  racing at the edge of the limit may both be admitted (overshoot by the
  number of concurrent racers). See DESIGN.md.

Backends (same semantics, interchangeable):
  DatabaseRateLimitBackend  `rate_limits` table, one row per event
  FileRateLimitBackend      one JSON file per (identifier, bucket) key

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import ipaddress
import json
import logging
import os
import random
import tempfile
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol

from sqlalchemy import Column, Float, Index, Integer, MetaData, String, Table, func, select
from sqlalchemy.engine import Engine

from core.errors import RateLimitError

logger = logging.getLogger("shebamiles.ratelimit")

PURGE_HORIZON = 7 * 24 * 3600  # seconds
PURGE_PROBABILITY = 0.01
UNKNOWN_IDENTIFIER = "unknown"

# Bucket names used by the auth flows.
LOGIN_BUCKET = "login_attempts"
REGISTER_BUCKET = "registration"
PASSWORD_RESET_BUCKET = "password_reset"


class RateLimitBackend(Protocol):
    def count(self, identifier: str, bucket: str, since: float) -> int: ...

    def record(self, identifier: str, bucket: str, timestamp: float) -> None: ...

    def clear(self, identifier: str, bucket: str) -> None: ...

    def purge(self, before: float) -> int: ...


# ---------------------------------------------------------------------------
# Database backend
# ---------------------------------------------------------------------------

_metadata = MetaData()

_rate_limits = Table(
    "rate_limits",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(100), nullable=False),
    Column("bucket", String(50), nullable=False),
    Column("timestamp", Float, nullable=False),
    Index("ix_rate_limits_key_ts", "identifier", "bucket", "timestamp"),
)


class DatabaseRateLimitBackend:
    """One row per admitted event. Counting uses the (identifier, bucket, timestamp) index."""

    def __init__(self, engine: Engine, create_tables: bool = True) -> None:
        self.engine = engine
        if create_tables:
            _metadata.create_all(self.engine)

    def count(self, identifier: str, bucket: str, since: float) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_rate_limits)
                .where(
                    (_rate_limits.c.identifier == identifier)
                    & (_rate_limits.c.bucket == bucket)
                    & (_rate_limits.c.timestamp > since)
                )
            ).scalar()
        return result or 0

    def record(self, identifier: str, bucket: str, timestamp: float) -> None:
        with self.engine.connect() as conn:
            conn.execute(_rate_limits.insert().values(identifier=identifier, bucket=bucket, timestamp=timestamp))
            conn.commit()

    def clear(self, identifier: str, bucket: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _rate_limits.delete().where((_rate_limits.c.identifier == identifier) & (_rate_limits.c.bucket == bucket))
            )
            conn.commit()

    def purge(self, before: float) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_rate_limits.delete().where(_rate_limits.c.timestamp < before))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# File backend
# ---------------------------------------------------------------------------


class FileRateLimitBackend:
    """One JSON file per key: {"requests": [timestamp, ...]}.

    File names are md5(identifier + "_" + bucket) so arbitrary identifiers are
    safe on disk. Writes go to a temp file then os.replace(), so a reader never
    sees a half-written file. Useful when no database is reachable.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, identifier: str, bucket: str) -> Path:
        digest = hashlib.md5(f"{identifier}_{bucket}".encode(), usedforsecurity=False).hexdigest()
        return self.directory / f"{digest}.json"

    @staticmethod
    def _read(path: Path) -> list[float]:
        if not path.exists():
            return []
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
        return [float(ts) for ts in data.get("requests", [])]

    def _write(self, path: Path, requests: list[float]) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump({"requests": requests}, fh)
        os.replace(tmp, path)

    def count(self, identifier: str, bucket: str, since: float) -> int:
        return sum(1 for ts in self._read(self._path(identifier, bucket)) if ts > since)

    def record(self, identifier: str, bucket: str, timestamp: float) -> None:
        path = self._path(identifier, bucket)
        horizon = timestamp - PURGE_HORIZON
        requests = [ts for ts in self._read(path) if ts >= horizon]
        requests.append(timestamp)
        self._write(path, requests)

    def clear(self, identifier: str, bucket: str) -> None:
        self._path(identifier, bucket).unlink(missing_ok=True)

    def purge(self, before: float) -> int:
        removed = 0
        for path in self.directory.glob("*.json"):
            requests = self._read(path)
            kept = [ts for ts in requests if ts >= before]
            removed += len(requests) - len(kept)
            if not kept:
                path.unlink(missing_ok=True)
            elif len(kept) != len(requests):
                self._write(path, kept)
        return removed


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Admit or reject actions keyed by (identifier, bucket).

    clock and rng are injectable so tests can move time and force or suppress
    the probabilistic purge.
    """

    def __init__(
        self,
        backend: RateLimitBackend,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
        purge_probability: float = PURGE_PROBABILITY,
    ) -> None:
        self.backend = backend
        self._clock = clock
        self._rng = rng
        self.purge_probability = purge_probability

    def check(self, identifier: str, bucket: str = "default", limit: int = 100, window: int = 3600) -> bool:
        """Return True (and record the event) if under the limit, False otherwise."""
        now = self._clock()
        try:
            current = self.backend.count(identifier, bucket, now - window)
        except Exception:
            logger.exception("Rate limit count failed for bucket %s -- failing open", bucket)
            return True

        if current >= limit:
            logger.warning(
                "Rate limit exceeded identifier=%s bucket=%s limit=%d current=%d",
                identifier,
                bucket,
                limit,
                current,
            )
            return False

        try:
            self.backend.record(identifier, bucket, now)
        except Exception:
            logger.exception("Rate limit record failed for bucket %s -- failing open", bucket)
            return True

        if self._rng() < self.purge_probability:
            self.cleanup()
        return True

    def enforce(
        self, identifier: str, bucket: str, limit: int, window: int, message: str | None = None
    ) -> None:
        """check() that raises RateLimitError instead of returning False."""
        if not self.check(identifier, bucket, limit, window):
            raise RateLimitError(
                message or f"Rate limit exceeded for {bucket}. Please try again later.",
                retry_after=window,
                limit=limit,
            )

    def reset(self, bucket: str, identifier: str) -> None:
        """Forget every event for the key (e.g. after a successful login).

        A backend failure here is logged and not raised.
        """
        try:
            self.backend.clear(identifier, bucket)
        except Exception:
            logger.exception("Rate limit reset failed for bucket %s", bucket)

    def status(self, identifier: str, bucket: str, limit: int, window: int) -> dict:
        """Return {current, limit, remaining} without recording anything."""
        try:
            current = self.backend.count(identifier, bucket, self._clock() - window)
        except Exception:
            logger.exception("Rate limit status failed for bucket %s", bucket)
            current = 0
        return {"current": current, "limit": limit, "remaining": max(0, limit - current)}

    def cleanup(self, horizon: int = PURGE_HORIZON) -> int:
        """Physically delete events older than `horizon` seconds."""
        try:
            removed = self.backend.purge(self._clock() - horizon)
        except Exception:
            logger.exception("Rate limit cleanup failed")
            return 0
        if removed:
            logger.info("Purged %d expired rate limit records", removed)
        return removed


def build_rate_limiter(backend: str, engine: Engine | None = None, directory: str = "") -> RateLimiter:
    """Construct the limiter for the configured backend name ("database" or "file")."""
    if backend == "file" or engine is None:
        path = directory or os.path.join(tempfile.gettempdir(), "shebamiles_rate_limit")
        return RateLimiter(FileRateLimitBackend(path))
    if backend != "database":
        raise ValueError(f"Unknown rate limit backend: {backend!r}")
    return RateLimiter(DatabaseRateLimitBackend(engine))


# ---------------------------------------------------------------------------
# Client identifier
# ---------------------------------------------------------------------------


def client_identifier(headers: Mapping[str, str], remote_addr: str | None) -> str:
    """Resolve the rate-limit identifier for an HTTP request.

    Preference: Client-IP header, then the first hop of X-Forwarded-For, then
    the connection address. The chosen value must parse as an IPv4/IPv6
    address; anything else resolves to "unknown" instead of failing the request.
    """
    candidate = headers.get("client-ip") or ""
    if not candidate:
        forwarded = headers.get("x-forwarded-for") or ""
        candidate = forwarded.split(",")[0]
    if not candidate.strip():
        candidate = remote_addr or ""
    candidate = candidate.strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return UNKNOWN_IDENTIFIER

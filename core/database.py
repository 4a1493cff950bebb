"""
core/database.py -- Engine (connection pool) construction with bounded retry.

One Engine is built at startup (api/main.py lifespan, manage.py) and injected
into every store. Stores never create their own engines.

Connect retry:
  connect_with_retry() pings the database up to `attempts` times with
  exponential backoff (tenacity). When every attempt fails it raises
  DatabaseUnavailableError instead of terminating the process, so the API can
  start degraded and answer 503 from the health check until the database
  returns. Individual requests that hit a dead pool surface OperationalError,
  which api/main.py maps to 503.

SQLite specifics (dev + tests):
  check_same_thread=False because TestClient / uvicorn run sync handlers in a
  thread pool. WAL is enabled per connection for concurrent read safety.
  Foreign keys are not enforced -- no table in this schema declares one.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import DatabaseUnavailableError

logger = logging.getLogger("shebamiles.database")


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode. Set per-connection because SQLite PRAGMAs are
    not inherited by new connections from the pool."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_db_engine(db_url: str) -> Engine:
    """Build the process-wide Engine for `db_url`.

    pool_pre_ping makes the pool transparently replace connections the server
    dropped (MySQL wait_timeout) instead of failing the next request.
    """
    connect_args: dict = {}
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    else:
        kwargs["pool_pre_ping"] = True
        kwargs["pool_recycle"] = 3600
    engine = create_engine(db_url, connect_args=connect_args, **kwargs)
    if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def ping(engine: Engine) -> bool:
    """Return True if a trivial query succeeds. Never raises."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError:
        return False


def connect_with_retry(engine: Engine, attempts: int = 3, base_delay: float = 1.0) -> None:
    """Verify connectivity, retrying with exponential backoff.

    Delays grow base_delay, 2*base_delay, 4*base_delay ... capped at 30s.

    Raises:
        DatabaseUnavailableError: every attempt failed.
    """

    def _log_retry(retry_state) -> None:
        logger.warning(
            "Database connection attempt %d/%d failed: %s",
            retry_state.attempt_number,
            attempts,
            retry_state.outcome.exception() if retry_state.outcome else "unknown",
        )

    retrying = Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=base_delay, min=base_delay, max=30),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=_log_retry,
        reraise=False,
    )
    try:
        for attempt in retrying:
            with attempt:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
    except RetryError as exc:
        logger.critical("Database unavailable after %d attempts", attempts)
        raise DatabaseUnavailableError() from exc
    if retrying.statistics.get("attempt_number", 1) > 1:
        logger.info("Database connection successful (attempts=%d)", retrying.statistics["attempt_number"])

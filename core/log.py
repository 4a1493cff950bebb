"""
core/log.py -- Logging setup, the SECURITY level, and the database audit sink.

Every module logs through stdlib logging under the "shebamiles" hierarchy
(shebamiles.api, shebamiles.auth, shebamiles.ratelimit, ...).
configure_logging() runs once at startup and attaches:

  - a console handler (always)
  - rotating files under log_dir when configured:
      application.log  every record at the configured level
      error.log        ERROR and above
      security.log     SECURITY records only
  - DatabaseLogHandler for WARNING and above when log_to_database is true,
    giving admins an audit trail in the `logs` table

SECURITY (45) sits between ERROR and CRITICAL so it is never filtered out by
a WARNING/ERROR threshold. Use log_security() to emit it with context.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

SECURITY = 45
logging.addLevelName(SECURITY, "SECURITY")

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

_MAX_LOG_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5

_metadata = MetaData()

logs_table = Table(
    "logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("level", String(20), nullable=False),
    Column("logger", String(100), nullable=False),
    Column("message", Text, nullable=False),
    Column("context", Text),  # JSON
    Column("user_id", Integer),
    Column("ip_address", String(45)),
    Column("created_at", String(32), nullable=False),
)


def log_security(logger: logging.Logger, message: str, **context) -> None:
    """Emit a SECURITY record. Context is appended as JSON and kept on the record.

    Example:
        log_security(logger, "CSRF validation failed - token mismatch", ip=ip, user_id=uid)
    """
    logger.log(SECURITY, "%s | %s", message, json.dumps(context, default=str), extra={"context": context})


class _SecurityOnlyFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno == SECURITY


class DatabaseLogHandler(logging.Handler):
    """Write log records to the `logs` table.

    Records passed to log_security() (or any call with extra={"context": {...}})
    keep their context dict; user_id / ip are lifted into their own columns.
    A failing insert goes through Handler.handleError -- it never raises into
    the request that logged.
    """

    def __init__(self, engine: Engine, level: int = logging.WARNING) -> None:
        super().__init__(level)
        self.engine = engine
        _metadata.create_all(engine)

    def emit(self, record: logging.LogRecord) -> None:
        context = getattr(record, "context", None) or {}
        try:
            message = record.getMessage()
            if context and " | " in message:
                message = message.split(" | ", 1)[0]
            with self.engine.connect() as conn:
                conn.execute(
                    logs_table.insert().values(
                        level=record.levelname,
                        logger=record.name,
                        message=message,
                        context=json.dumps(context, default=str) if context else None,
                        user_id=context.get("user_id"),
                        ip_address=context.get("ip"),
                        created_at=datetime.now(timezone.utc).isoformat(),
                    )
                )
                conn.commit()
        except Exception:
            self.handleError(record)


def purge_old_logs(engine: Engine, days: int) -> int:
    """Delete audit log rows older than `days`. Returns the number removed."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    with engine.connect() as conn:
        result = conn.execute(logs_table.delete().where(logs_table.c.created_at < cutoff.isoformat()))
        conn.commit()
    return result.rowcount


def configure_logging(level: str = "INFO", log_dir: str = "", engine: Engine | None = None) -> None:
    """Configure the "shebamiles" logger tree. Safe to call more than once.

    Handlers are attached to the "shebamiles" logger, not the root logger, so
    uvicorn and third-party loggers keep their own configuration.
    """
    root = logging.getLogger("shebamiles")
    root.setLevel(level.upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)

        app_file = logging.handlers.RotatingFileHandler(
            path / "application.log", maxBytes=_MAX_LOG_BYTES, backupCount=_BACKUP_COUNT
        )
        app_file.setFormatter(formatter)
        root.addHandler(app_file)

        error_file = logging.handlers.RotatingFileHandler(
            path / "error.log", maxBytes=_MAX_LOG_BYTES, backupCount=_BACKUP_COUNT
        )
        error_file.setLevel(logging.ERROR)
        error_file.setFormatter(formatter)
        root.addHandler(error_file)

        security_file = logging.handlers.RotatingFileHandler(
            path / "security.log", maxBytes=_MAX_LOG_BYTES, backupCount=_BACKUP_COUNT
        )
        security_file.addFilter(_SecurityOnlyFilter())
        security_file.setFormatter(formatter)
        root.addHandler(security_file)

    if engine is not None:
        root.addHandler(DatabaseLogHandler(engine))

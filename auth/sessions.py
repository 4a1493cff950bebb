"""
auth/sessions.py -- Server-side session storage keyed by an opaque identifier.

The browser only ever holds the identifier (see auth.tokens.set_session_cookie).
Everything else -- user id, role, login time, CSRF token -- lives in the
`sessions` table as a JSON blob.

Lifecycle:
  create()      new identifier, optional initial data
  get()         load + enforce inactivity timeout + touch last_activity
  save()        persist data changes
  regenerate()  new identifier carrying new data; the old row is deleted.
                Called at login so a pre-auth identifier planted by an
                attacker (session fixation) never becomes authenticated.
  destroy()     logout
  purge_expired()  periodic cleanup from the lifespan background task

Each session stores its own timeout so "remember me" sessions can outlive the
default inactivity window without a second table.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from auth.models import Session
from auth.tokens import generate_session_id

logger = logging.getLogger("shebamiles.sessions")

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", Integer, index=True),
    Column("data", Text, nullable=False),
    Column("created_at", Float, nullable=False),
    Column("last_activity", Float, nullable=False),
    Column("timeout", Integer, nullable=False),
)


class SessionStore:
    """Repository for Session rows.

    Usage:
        sessions = SessionStore(engine, default_timeout=3600)
        s = sessions.create({"csrf_token": "..."})
        s = sessions.get(s.id)          # None once idle longer than its timeout
        s = sessions.regenerate(s, {"user_id": 7, ...})
        sessions.destroy(s.id)
    """

    def __init__(
        self,
        engine: Engine,
        default_timeout: int = 3600,
        clock: Callable[[], float] = time.time,
        create_tables: bool = True,
    ) -> None:
        self.engine = engine
        self.default_timeout = default_timeout
        self._clock = clock
        if create_tables:
            _metadata.create_all(self.engine)

    def create(self, data: dict | None = None, timeout: int | None = None) -> Session:
        now = self._clock()
        session = Session(
            id=generate_session_id(),
            data=dict(data or {}),
            created_at=now,
            last_activity=now,
            timeout=timeout or self.default_timeout,
        )
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    data=json.dumps(session.data),
                    created_at=session.created_at,
                    last_activity=session.last_activity,
                    timeout=session.timeout,
                )
            )
            conn.commit()
        return session

    def get(self, session_id: str | None) -> Session | None:
        """Return the live session for `session_id`, or None.

        An expired session is deleted on sight and reported as absent.
        A live session has its last_activity bumped to now.
        """
        if not session_id:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
            if row is None:
                return None
            now = self._clock()
            if now - row.last_activity > row.timeout:
                conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
                conn.commit()
                logger.info("Session expired after %ds of inactivity (user_id=%s)", row.timeout, row.user_id)
                return None
            conn.execute(_sessions.update().where(_sessions.c.id == session_id).values(last_activity=now))
            conn.commit()
        return Session(
            id=row.id,
            data=json.loads(row.data),
            created_at=row.created_at,
            last_activity=now,
            timeout=row.timeout,
        )

    def save(self, session: Session) -> None:
        session.last_activity = self._clock()
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.update()
                .where(_sessions.c.id == session.id)
                .values(
                    user_id=session.user_id,
                    data=json.dumps(session.data),
                    last_activity=session.last_activity,
                    timeout=session.timeout,
                )
            )
            conn.commit()

    def regenerate(self, previous: Session | None, data: dict, timeout: int | None = None) -> Session:
        """Replace `previous` (if any) with a brand-new identifier holding `data`."""
        if previous is not None:
            self.destroy(previous.id)
        return self.create(data, timeout=timeout)

    def destroy(self, session_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
            conn.commit()

    def destroy_user_sessions(self, user_id: int) -> int:
        """Delete every session belonging to a user. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def purge_expired(self) -> int:
        """Delete all sessions idle longer than their own timeout."""
        now = self._clock()
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.last_activity + _sessions.c.timeout < now))
            conn.commit()
        return result.rowcount

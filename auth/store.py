"""
auth/store.py -- SQLAlchemy Core persistence layer for users and activity.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper.
Flow and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  value_exists() accepts only whitelisted column names, because the column is
  chosen by the caller (the validator's "unique" rule) rather than fixed.

Concurrency:
  UNIQUE(email) and UNIQUE(username) are enforced by the database. Two
  concurrent registrations that both pass the validator's uniqueness check
  are resolved here: the second insert raises IntegrityError, which the
  registration flow maps to 409.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, or_, select
from sqlalchemy.engine import Engine

from auth.models import User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("hashed_password", String(255), nullable=False),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("phone", String(30)),
    Column("department", String(100)),
    Column("role", String(20), nullable=False, server_default="employee"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("is_verified", Integer, nullable=False, server_default="1"),
    Column("reset_token_hash", String(64)),
    Column("reset_token_expiry", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    Column("last_login", String(32)),
)

_user_activity = Table(
    "user_activity",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),
    Column("activity", String(50), nullable=False),
    Column("details", Text),
    Column("ip_address", String(45)),
    Column("user_agent", String(255)),
    Column("timestamp", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records and the user_activity log.

    Usage:
        store = UserStore(engine)
        uid = store.create_user(User(email="a@b.co", username="ada", hashed_password=hash_password("..."),
                                     first_name="Ada", last_name="Lovelace"))
        user = store.get_by_login("ada")
    """

    # Columns the validator's "unique" rule may query.
    _UNIQUE_COLUMNS: set = {"email", "username"}
    # Columns update_user() accepts.
    _MUTABLE_COLUMNS: set = {
        "first_name",
        "last_name",
        "phone",
        "department",
        "role",
        "status",
        "is_verified",
        "hashed_password",
    }

    def __init__(self, engine: Engine, create_tables: bool = True) -> None:
        self.engine = engine
        if create_tables:
            _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or username already
        exists. Callers map that to a 409 Conflict.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    username=user.username,
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    phone=user.phone,
                    department=user.department,
                    role=user.role,
                    status=user.status,
                    is_verified=1 if user.is_verified else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_login(self, login: str) -> User | None:
        """Look up a user whose username OR email equals `login`. None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(or_(_users.c.username == login, _users.c.email == login)).limit(1)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def value_exists(self, column: str, value) -> bool:
        """Return True if any user row has `column` == value.

        Satisfies core.validator.UniqueLookup. Unknown columns raise ValueError
        rather than being interpolated into SQL.
        """
        if column not in self._UNIQUE_COLUMNS:
            raise ValueError(f"Column {column!r} cannot be checked for uniqueness")
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c[column] == value).limit(1)).fetchone()
        return row is not None

    def list_users(self) -> list[User]:
        """Return all users ordered by username. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        is_verified may be passed as bool; it is stored as 0/1.
        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - self._MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_verified" in fields:
            fields["is_verified"] = 1 if fields["is_verified"] else 0
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def set_reset_token(self, user_id: int, token_hash: str, expires_at: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(reset_token_hash=token_hash, reset_token_expiry=expires_at)
            )
            conn.commit()

    def get_by_reset_token(self, token_hash: str, now_iso: str | None = None) -> User | None:
        """Return the user holding an unexpired reset token with this digest."""
        now_iso = now_iso or _now_iso()
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.reset_token_hash == token_hash) & (_users.c.reset_token_expiry > now_iso)
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def complete_password_reset(self, user_id: int, hashed_password: str) -> None:
        """Store the new hash and clear the reset token in one statement."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    hashed_password=hashed_password,
                    reset_token_hash=None,
                    reset_token_expiry=None,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def log_activity(
        self, user_id: int | None, activity: str, details: str = "", ip_address: str = "", user_agent: str = ""
    ) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _user_activity.insert().values(
                    user_id=user_id,
                    activity=activity,
                    details=details,
                    ip_address=ip_address,
                    user_agent=user_agent[:255],
                    timestamp=_now_iso(),
                )
            )
            conn.commit()

    def recent_activity(self, user_id: int, limit: int = 20) -> list[dict]:
        """Return the newest activity rows for a user as plain dicts."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_activity.select()
                .where(_user_activity.c.user_id == user_id)
                .order_by(_user_activity.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [
            {
                "activity": r.activity,
                "details": r.details,
                "ip_address": r.ip_address,
                "user_agent": r.user_agent,
                "timestamp": r.timestamp,
            }
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        department=row.department,
        role=row.role,
        status=row.status,
        is_verified=bool(row.is_verified),
        reset_token_hash=row.reset_token_hash,
        reset_token_expiry=row.reset_token_expiry,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )

"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route, gate and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, otp/, audit/, or cache/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Role, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)


# ---------------------------------------------------------------------------
# Engine helpers (shared by every store in the project)
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an Engine with the SQLite tweaks every store needs."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite") and "mode=memory" not in db_url and ":memory:" not in db_url:
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///pocketledger.db")
        uid = store.create_user(User(email="a@b.c", hashed_password=hash_password("secret")))
        user = store.get_by_id(uid)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        user_id = user.id or uuid.uuid4().hex
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    role=Role(user.role).value,
                    created_at=now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
        return user_id

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(func.lower(_users.c.email) == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def has_admin(self) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.role == Role.admin.value)
            ).scalar()
        return (count or 0) > 0

    def list_users(self, role: Role | None = None, limit: int = 20, skip: int = 0) -> tuple[list[User], int]:
        """Return one page of users (newest first) and the total matching count."""
        query = _users.select()
        count_query = select(func.count()).select_from(_users)
        if role is not None:
            query = query.where(_users.c.role == role.value)
            count_query = count_query.where(_users.c.role == role.value)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_users.c.created_at.desc()).limit(limit).offset(skip)).fetchall()
            total = conn.execute(count_query).scalar() or 0
        return [_row_to_user(r) for r in rows], total

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user (find-one-and-update by id).

        Accepted fields: first_name, last_name, role, is_active, hashed_password.
        Returns True if a row was updated, False if user_id was not found.
        """
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def ping(self) -> bool:
        """Cheap liveness check for health endpoints."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        role=Role(row.role),
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )

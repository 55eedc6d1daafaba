"""
audit/store.py -- SQLAlchemy Core persistence for the activity log.

Pattern: Repository + Data Mapper (same as auth/store.py). Insert-only: there
is no update or delete method on purpose.

Layer rule: no imports from api/, otp/, or cache/.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, MetaData, String, Table, func, select
from sqlalchemy.engine import Engine

from audit.models import ActivityLogEntry, ActivityStats
from auth.store import make_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_activity = Table(
    "activity_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False),
    Column("action", String(64), nullable=False),
    Column("details", JSON, nullable=False),
    Column("user_info", JSON, nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", String(512)),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Index("ix_activity_log_user_ts", "user_id", "timestamp"),
    Index("ix_activity_log_action_ts", "action", "timestamp"),
    Index("ix_activity_log_ts", "timestamp"),
)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ActivityLogStore:
    """Repository for ActivityLogEntry records."""

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def insert(self, entry: ActivityLogEntry) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _activity.insert().values(
                    user_id=entry.user_id,
                    action=entry.action,
                    details=entry.details,
                    user_info=entry.user_info,
                    ip_address=entry.ip_address,
                    user_agent=(entry.user_agent or "")[:512] or None,
                    timestamp=_utc(entry.timestamp),
                )
            )
            return result.inserted_primary_key[0]

    def list_recent(self, limit: int = 50, skip: int = 0) -> list[ActivityLogEntry]:
        """Newest first across all users (admin activity feed)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _activity.select().order_by(_activity.c.timestamp.desc(), _activity.c.id.desc()).limit(limit).offset(skip)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def list_for_user(self, user_id: str, limit: int = 20) -> list[ActivityLogEntry]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _activity.select()
                .where(_activity.c.user_id == user_id)
                .order_by(_activity.c.timestamp.desc(), _activity.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def stats(self, days: int = 30, now: datetime | None = None) -> ActivityStats:
        """Counts per action over the last `days` days, plus today's total (UTC)."""
        now = _utc(now or datetime.now(timezone.utc))
        start = now - timedelta(days=days)
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        count = func.count().label("count")
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_activity.c.action, count)
                .where(_activity.c.timestamp >= start)
                .group_by(_activity.c.action)
                .order_by(count.desc(), _activity.c.action)
            ).fetchall()
            today_total = conn.execute(
                select(func.count()).select_from(_activity).where(_activity.c.timestamp >= today)
            ).scalar()
        return ActivityStats(
            by_action=[(r.action, r.count) for r in rows],
            today_total=today_total or 0,
            period_days=days,
        )

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> ActivityLogEntry:
    return ActivityLogEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        details=row.details or {},
        user_info=row.user_info or {},
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        timestamp=_utc(row.timestamp),
    )

"""
otp/store.py -- SQLAlchemy Core persistence for one-time code records.

Pattern: Repository + Data Mapper (same as auth/store.py).

Uniqueness: replace() deletes every record for (user_id, purpose) and inserts
the new one inside a single transaction, so two concurrent issues cannot both
commit a live record for the same pair.

Timestamps are normalized to UTC before binding and re-tagged as UTC when
read back, because SQLite drops tzinfo on DateTime columns.

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, MetaData, String, Table
from sqlalchemy.engine import Engine

from auth.store import make_engine
from otp.models import OTPPurpose, OTPRecord

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_otps = Table(
    "otp_records",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False),
    Column("email", String(255), nullable=False),
    Column("code", String(6), nullable=False),
    Column("purpose", String(32), nullable=False),
    Column("used", Boolean, nullable=False, default=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("used_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_otp_records_user_purpose", "user_id", "purpose"),
    Index("ix_otp_records_expires_at", "expires_at"),
    # Never reuse a deleted id: a caller holding a replaced record must not
    # be able to address its successor.
    sqlite_autoincrement=True,
)


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class OTPStore:
    """Repository for OTPRecord entities."""

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def replace(self, record: OTPRecord) -> OTPRecord:
        """Atomically drop all records for (user_id, purpose) and insert `record`.

        Returns the record with id and created_at filled in.
        """
        created_at = datetime.now(timezone.utc)
        purpose = OTPPurpose(record.purpose).value
        with self.engine.begin() as conn:
            conn.execute(_otps.delete().where((_otps.c.user_id == record.user_id) & (_otps.c.purpose == purpose)))
            result = conn.execute(
                _otps.insert().values(
                    user_id=record.user_id,
                    email=record.email,
                    code=record.code,
                    purpose=purpose,
                    used=False,
                    expires_at=_utc(record.expires_at),
                    used_at=None,
                    created_at=created_at,
                )
            )
            record_id = result.inserted_primary_key[0]
        record.id = record_id
        record.created_at = created_at
        record.used = False
        record.used_at = None
        return record

    def find_live(self, user_id: str, purpose: OTPPurpose, code: str, now: datetime) -> OTPRecord | None:
        """Return the unused, unexpired record matching user, purpose and code exactly."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _otps.select().where(
                    (_otps.c.user_id == user_id)
                    & (_otps.c.purpose == OTPPurpose(purpose).value)
                    & (_otps.c.code == code)
                    & (_otps.c.used == False)  # noqa: E712 -- SQL expression, not a Python comparison
                    & (_otps.c.expires_at > _utc(now))
                )
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def get(self, record_id: int) -> OTPRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_otps.select().where(_otps.c.id == record_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def mark_used(self, record_id: int, used_at: datetime) -> bool:
        """Flip used=True on a still-unused record. False means someone else got there first."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _otps.update()
                .where((_otps.c.id == record_id) & (_otps.c.used == False))  # noqa: E712
                .values(used=True, used_at=_utc(used_at))
            )
        return result.rowcount > 0

    def release(self, record_id: int) -> bool:
        """Undo mark_used() after the guarded mutation failed, making the record live again."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _otps.update()
                .where((_otps.c.id == record_id) & (_otps.c.used == True))  # noqa: E712
                .values(used=False, used_at=None)
            )
        return result.rowcount > 0

    def list_for(self, user_id: str, purpose: OTPPurpose) -> list[OTPRecord]:
        """All records for the pair, live or not, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _otps.select()
                .where((_otps.c.user_id == user_id) & (_otps.c.purpose == OTPPurpose(purpose).value))
                .order_by(_otps.c.id)
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def purge_expired(self, now: datetime) -> int:
        """Delete records whose expiry has passed. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_otps.delete().where(_otps.c.expires_at <= _utc(now)))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_record(row) -> OTPRecord:
    return OTPRecord(
        id=row.id,
        user_id=row.user_id,
        email=row.email,
        code=row.code,
        purpose=OTPPurpose(row.purpose),
        used=bool(row.used),
        expires_at=_utc(row.expires_at),
        used_at=_utc(row.used_at),
        created_at=_utc(row.created_at),
    )

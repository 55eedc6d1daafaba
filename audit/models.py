"""
audit/models.py -- Activity log entry and the known action tags.

Entries are append-only: written once by AuditRecorder, never updated or
deleted by this codebase.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

# Action tags used by the routes in this repository. The column is free text,
# so collaborators may record their own tags (e.g. "watchlist_add").
USER_SIGNUP = "user_signup"
USER_LOGIN = "user_login"
PASSWORD_CHANGE = "password_change"
CACHE_INVALIDATE = "cache_invalidate"


@dataclass
class ActivityLogEntry:
    user_id: str
    action: str
    details: dict = field(default_factory=dict)
    user_info: dict = field(default_factory=dict)  # email / first_name / last_name at action time
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: int | None = None


@dataclass(frozen=True)
class ActivityStats:
    by_action: list[tuple[str, int]]  # (action, count), most frequent first
    today_total: int
    period_days: int

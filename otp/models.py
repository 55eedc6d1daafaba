"""
otp/models.py -- Domain dataclasses for one-time codes.

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class OTPPurpose(str, Enum):
    password_change = "password_change"
    email_verification = "email_verification"


@dataclass
class OTPRecord:
    """One issued code.

    email is denormalized from the user at issue time for delivery and audit.
    A record is live while used is False and expires_at is in the future.
    Expired records are never deleted explicitly; lookups simply skip them
    and the next issue() for the same (user_id, purpose) replaces them.
    """

    user_id: str
    email: str
    code: str
    purpose: OTPPurpose
    expires_at: datetime
    used: bool = False
    used_at: datetime | None = None
    id: int | None = None
    created_at: datetime | None = None

    def is_live(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return not self.used and self.expires_at > now


@dataclass(frozen=True)
class IssueResult:
    """What issue() tells the caller. Deliberately excludes the code itself."""

    masked_email: str
    expires_in: int
    delivered: bool


def mask_email(email: str) -> str:
    """Mask the local part of an address: 'jane.doe@example.com' -> 'j******e@example.com'."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "*" * len(email)
    if len(local) <= 2:
        masked = local[:1] + "*" * (len(local) - 1)
    else:
        masked = local[0] + "*" * (len(local) - 2) + local[-1]
    return f"{masked}@{domain}"

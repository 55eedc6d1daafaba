"""
otp/service.py -- Issue, verify and consume single-use, time-boxed codes.

Lifecycle of one record:

  issue()    -> live record (used=False, expires_at = now + window);
                every older record for the same (user, purpose) is gone.
  verify()   -> read-only check; never touches used/used_at.
  consume()  -> claim the record (used=True), then run the guarded mutation.
                A failed mutation releases the claim and leaves the code live.
  (nothing)  -> the record expires passively; lookups skip it.

Verify and consume are separate calls so a client can confirm a code before
committing the change. Between the two calls the same code can be replayed
until one consume succeeds. This is the two-step confirm-then-commit UX the
clients use (see DESIGN.md).

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TypeVar

from auth.store import UserStore
from auth.tokens import hash_password
from core.errors import AlreadyUsed, InvalidCredential, NotFoundOrExpired, PurposeMismatch
from otp.delivery import OTPNotifier
from otp.models import IssueResult, OTPPurpose, OTPRecord, mask_email
from otp.store import OTPStore

logger = logging.getLogger("pocketledger.otp")

T = TypeVar("T")

DEFAULT_EXPIRE_SECONDS = 5 * 60


def generate_code() -> str:
    """Uniformly random 6-digit code in 100000-999999 from the OS CSPRNG."""
    return str(100000 + secrets.randbelow(900000))


class OTPService:
    def __init__(
        self,
        otp_store: OTPStore,
        user_store: UserStore,
        notifier: OTPNotifier,
        expire_seconds: int = DEFAULT_EXPIRE_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._otps = otp_store
        self._users = user_store
        self._notifier = notifier
        self._expire_seconds = expire_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, user_id: str, purpose: OTPPurpose) -> IssueResult:
        user = self._users.get_by_id(user_id)
        if user is None:
            raise InvalidCredential()

        code = generate_code()
        record = self._otps.replace(
            OTPRecord(
                user_id=user_id,
                email=user.email,
                code=code,
                purpose=OTPPurpose(purpose),
                expires_at=self._clock() + timedelta(seconds=self._expire_seconds),
            )
        )
        logger.info("Issued OTP %s for user %s (purpose=%s)", record.id, user_id, record.purpose.value)

        delivered = self._notifier.send(user.email, code, record.purpose)
        if not delivered:
            logger.warning("OTP %s for user %s was not delivered", record.id, user_id)

        return IssueResult(
            masked_email=mask_email(user.email),
            expires_in=self._expire_seconds,
            delivered=delivered,
        )

    # ------------------------------------------------------------------
    # Verify (read-only)
    # ------------------------------------------------------------------

    def verify(self, user_id: str, purpose: OTPPurpose, code: str) -> OTPRecord:
        record = self._otps.find_live(user_id, OTPPurpose(purpose), code.strip(), self._clock())
        if record is None:
            raise NotFoundOrExpired()
        return record

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def consume(self, record: OTPRecord, mutation: Callable[[], T], purpose: OTPPurpose | None = None) -> T:
        """Run `mutation` under the protection of `record`, then burn the record.

        The record is re-read first and must still be the same issue (user,
        code and creation time), so a stale copy held by the caller can
        neither be consumed twice nor burn the code that replaced it.

        The record is claimed with a conditional update before `mutation`
        runs, so of two concurrent consumers only one ever mutates. If
        `mutation` raises, the claim is released, the record is live again
        and the exception propagates unchanged.
        """
        current = self._otps.get(record.id) if record.id is not None else None
        if current is None or not _same_issue(current, record):
            raise NotFoundOrExpired()
        if purpose is not None and current.purpose is not OTPPurpose(purpose):
            raise PurposeMismatch()
        if current.used:
            raise AlreadyUsed()
        if not current.is_live(self._clock()):
            raise NotFoundOrExpired()

        if not self._otps.mark_used(current.id, self._clock()):
            logger.warning("OTP %s was consumed concurrently for user %s", current.id, current.user_id)
            raise AlreadyUsed()

        try:
            result = mutation()
        except Exception:
            self._otps.release(current.id)
            logger.info("Released OTP %s for user %s after a failed mutation", current.id, current.user_id)
            raise
        logger.info("Consumed OTP %s for user %s (purpose=%s)", current.id, current.user_id, current.purpose.value)
        return result

    # ------------------------------------------------------------------
    # Guarded mutations
    # ------------------------------------------------------------------

    def change_password(self, user_id: str, code: str, new_password: str) -> None:
        record = self.verify(user_id, OTPPurpose.password_change, code)
        hashed = hash_password(new_password)

        def _store_new_hash() -> None:
            if not self._users.update_user(user_id, hashed_password=hashed):
                raise InvalidCredential()

        self.consume(record, _store_new_hash, purpose=OTPPurpose.password_change)


def _same_issue(current: OTPRecord, held: OTPRecord) -> bool:
    if current.user_id != held.user_id or current.code != held.code:
        return False
    return held.created_at is None or current.created_at == held.created_at

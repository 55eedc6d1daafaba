"""
tests/test_otp_service.py -- Unit tests for the one-time code lifecycle.

OTPService is exercised against real SQLAlchemy stores on shared-memory
SQLite. Time is controlled with an injected clock so expiry is tested without
sleeping.

Coverage:
  - Issue / re-issue keeps exactly one live record per (user, purpose)
  - Verify is read-only; wrong, expired and used codes fail with the same error
  - Consume burns the record only when the mutation succeeds
  - A failing mutation leaves the code live
  - Purpose mismatch and double consumption are rejected
  - A replaced record can never address its successor
  - Concurrent consumers: only the claimant runs its mutation
  - Email masking and code format
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.tokens import verify_password
from core.errors import AlreadyUsed, InvalidCredential, NotFoundOrExpired, PurposeMismatch
from otp.models import OTPPurpose, mask_email
from otp.service import OTPService, generate_code
from tests.conftest import CapturingNotifier, create_account, make_stores

PURPOSE = OTPPurpose.password_change


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def env():
    stores = make_stores("otp")
    clock = FakeClock()
    notifier = CapturingNotifier()
    create_account(stores.users, "jane.doe@example.com", "oldpass123", id="42")
    service = OTPService(stores.otps, stores.users, notifier, expire_seconds=300, clock=clock)
    yield service, stores, notifier, clock
    stores.close()


def _wrong(code: str) -> str:
    return "100000" if code != "100000" else "100001"


def test_issue_verify_consume_scenario(env) -> None:
    service, stores, notifier, clock = env

    result = service.issue("42", PURPOSE)
    records = stores.otps.list_for("42", PURPOSE)
    assert len(records) == 1
    first = records[0]
    assert first.used is False
    assert first.expires_at == clock.now + timedelta(seconds=300)
    assert result.expires_in == 300
    assert result.masked_email == "j******e@example.com"
    assert result.delivered is True

    # Re-issue before expiry replaces the previous record.
    clock.advance(30)
    service.issue("42", PURPOSE)
    records = stores.otps.list_for("42", PURPOSE)
    assert len(records) == 1
    assert records[0].id != first.id
    code = notifier.last_code

    with pytest.raises(NotFoundOrExpired):
        service.verify("42", PURPOSE, _wrong(code))

    verified = service.verify("42", PURPOSE, code)
    assert stores.otps.get(verified.id).used is False

    marker = []
    service.consume(verified, lambda: marker.append("mutated"), purpose=PURPOSE)
    assert marker == ["mutated"]
    burned = stores.otps.get(verified.id)
    assert burned.used is True
    assert burned.used_at == clock.now

    with pytest.raises(NotFoundOrExpired):
        service.verify("42", PURPOSE, code)


def test_old_record_is_gone_after_reissue(env, monkeypatch) -> None:
    service, stores, notifier, _clock = env
    codes = iter(["111111", "222222"])
    monkeypatch.setattr("otp.service.generate_code", lambda: next(codes))

    service.issue("42", PURPOSE)
    old = stores.otps.list_for("42", PURPOSE)[0]
    service.issue("42", PURPOSE)

    records = stores.otps.list_for("42", PURPOSE)
    assert len(records) == 1
    assert records[0].id != old.id
    assert records[0].code == "222222"
    assert stores.otps.get(old.id) is None
    with pytest.raises(NotFoundOrExpired):
        service.verify("42", PURPOSE, "111111")
    assert service.verify("42", PURPOSE, notifier.last_code).id == records[0].id


def test_stale_record_cannot_burn_its_replacement(env) -> None:
    service, stores, notifier, _clock = env
    service.issue("42", PURPOSE)
    stale = service.verify("42", PURPOSE, notifier.last_code)
    service.issue("42", PURPOSE)
    replacement = stores.otps.list_for("42", PURPOSE)[0]

    calls = []
    with pytest.raises(NotFoundOrExpired):
        service.consume(stale, lambda: calls.append(1), purpose=PURPOSE)
    assert calls == []
    assert stores.otps.get(replacement.id).used is False
    assert service.verify("42", PURPOSE, notifier.last_code).id == replacement.id


def test_ids_are_not_reused_after_delete(env) -> None:
    service, stores, _notifier, _clock = env
    seen = set()
    for _ in range(3):
        service.issue("42", PURPOSE)
        record_id = stores.otps.list_for("42", PURPOSE)[0].id
        assert record_id not in seen
        seen.add(record_id)


def test_concurrent_consumer_never_mutates(env) -> None:
    """A consume that starts while another holds the claim is rejected before its mutation."""
    service, stores, notifier, _clock = env
    service.issue("42", PURPOSE)
    record = service.verify("42", PURPOSE, notifier.last_code)

    inner_calls = []

    def _outer() -> str:
        with pytest.raises(AlreadyUsed):
            service.consume(record, lambda: inner_calls.append(1), purpose=PURPOSE)
        return "outer"

    assert service.consume(record, _outer, purpose=PURPOSE) == "outer"
    assert inner_calls == []
    assert stores.otps.get(record.id).used is True


def test_expired_code_is_rejected(env) -> None:
    service, _stores, notifier, clock = env
    service.issue("42", PURPOSE)
    code = notifier.last_code
    record = service.verify("42", PURPOSE, code)

    clock.advance(301)
    with pytest.raises(NotFoundOrExpired):
        service.verify("42", PURPOSE, code)
    with pytest.raises(NotFoundOrExpired):
        service.consume(record, lambda: None, purpose=PURPOSE)


def test_failed_mutation_keeps_code_live(env) -> None:
    service, stores, notifier, _clock = env
    service.issue("42", PURPOSE)
    code = notifier.last_code
    record = service.verify("42", PURPOSE, code)

    def _boom() -> None:
        raise RuntimeError("write failed")

    with pytest.raises(RuntimeError):
        service.consume(record, _boom, purpose=PURPOSE)
    assert stores.otps.get(record.id).used is False

    # Same code still works for a retry.
    assert service.verify("42", PURPOSE, code).id == record.id
    service.consume(record, lambda: None, purpose=PURPOSE)
    assert stores.otps.get(record.id).used is True


def test_double_consume_is_rejected(env) -> None:
    service, _stores, notifier, _clock = env
    service.issue("42", PURPOSE)
    record = service.verify("42", PURPOSE, notifier.last_code)
    service.consume(record, lambda: None)

    calls = []
    with pytest.raises(AlreadyUsed):
        service.consume(record, lambda: calls.append(1))
    assert calls == []


def test_purpose_mismatch(env) -> None:
    service, _stores, notifier, _clock = env
    service.issue("42", OTPPurpose.email_verification)
    record = service.verify("42", OTPPurpose.email_verification, notifier.last_code)
    with pytest.raises(PurposeMismatch):
        service.consume(record, lambda: None, purpose=PURPOSE)


def test_code_is_scoped_to_purpose(env) -> None:
    service, _stores, notifier, _clock = env
    service.issue("42", OTPPurpose.email_verification)
    with pytest.raises(NotFoundOrExpired):
        service.verify("42", PURPOSE, notifier.last_code)


def test_issue_for_unknown_user(env) -> None:
    service, _stores, notifier, _clock = env
    with pytest.raises(InvalidCredential):
        service.issue("404", PURPOSE)
    assert notifier.sent == []


def test_undelivered_code_is_still_issued(env) -> None:
    _service, stores, _notifier, clock = env
    offline = CapturingNotifier(delivered=False)
    service = OTPService(stores.otps, stores.users, offline, clock=clock)
    result = service.issue("42", PURPOSE)
    assert result.delivered is False
    assert service.verify("42", PURPOSE, offline.last_code).used is False


def test_change_password(env) -> None:
    service, stores, notifier, _clock = env
    service.issue("42", PURPOSE)
    code = notifier.last_code

    service.change_password("42", code, "newpass456")

    user = stores.users.get_by_id("42")
    assert verify_password("newpass456", user.hashed_password)
    assert not verify_password("oldpass123", user.hashed_password)
    with pytest.raises(NotFoundOrExpired):
        service.change_password("42", code, "another789")


def test_purge_expired(env) -> None:
    service, stores, _notifier, clock = env
    service.issue("42", PURPOSE)
    assert stores.otps.purge_expired(clock.now) == 0
    assert stores.otps.purge_expired(clock.now + timedelta(seconds=301)) == 1
    assert stores.otps.list_for("42", PURPOSE) == []


class TestHelpers:
    def test_generate_code_format(self) -> None:
        for _ in range(200):
            code = generate_code()
            assert len(code) == 6
            assert code.isdigit()
            assert 100000 <= int(code) <= 999999

    @pytest.mark.parametrize(
        ("email", "masked"),
        [
            ("jane.doe@example.com", "j******e@example.com"),
            ("ab@example.com", "a*@example.com"),
            ("a@example.com", "a@example.com"),
            ("abc@x.io", "a*c@x.io"),
        ],
    )
    def test_mask_email(self, email: str, masked: str) -> None:
        assert mask_email(email) == masked

"""
tests/conftest.py -- Shared test fixtures for PocketLedger.

This module provides:
  - FakeRedis: in-process stand-in for the handful of redis-py calls CacheStore makes
  - CapturingNotifier: OTP channel that records codes instead of emailing them
  - make_stores(): isolated named shared-memory SQLite stores
  - api_client: TestClient with a patched lifespan plus user and admin tokens

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import fnmatch
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from audit.recorder import AuditRecorder
from audit.store import ActivityLogStore
from auth.models import Role, User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from cache.store import CacheHandle, CacheStore
from otp.models import OTPPurpose
from otp.service import OTPService
from otp.store import OTPStore

# Rate limits are exercised by slowapi's own test-suite; here they would only
# make test order matter.
limiter.enabled = False

USER_PASSWORD = "userpass123"
ADMIN_PASSWORD = "adminpass123"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeRedis:
    """Dict-backed double covering get/setex/delete/keys/ping/close. TTLs are recorded, not enforced."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.closed = False

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    def keys(self, pattern):
        return [k for k in self.data if fnmatch.fnmatchcase(k, pattern)]

    def ping(self):
        return True

    def close(self):
        self.closed = True


@dataclass
class SentCode:
    destination: str
    code: str
    purpose: OTPPurpose


class CapturingNotifier:
    def __init__(self, delivered: bool = True) -> None:
        self.sent: list[SentCode] = []
        self.delivered = delivered

    def send(self, destination: str, code: str, purpose: OTPPurpose) -> bool:
        self.sent.append(SentCode(destination, code, OTPPurpose(purpose)))
        return self.delivered

    @property
    def last_code(self) -> str:
        return self.sent[-1].code


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_url(name: str) -> str:
    return f"sqlite:///file:{name}_{uuid.uuid4().hex[:8]}?mode=memory&cache=shared&uri=true"


@dataclass
class Stores:
    users: UserStore
    otps: OTPStore
    activity: ActivityLogStore

    def close(self) -> None:
        self.activity.close()
        self.otps.close()
        self.users.close()


def make_stores(db_suffix: str) -> Stores:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Appended to each DB name so test modules don't share state.
    """
    return Stores(
        users=UserStore(memory_url(f"test_users_{db_suffix}")),
        otps=OTPStore(memory_url(f"test_otps_{db_suffix}")),
        activity=ActivityLogStore(memory_url(f"test_activity_{db_suffix}")),
    )


def create_account(store: UserStore, email: str, password: str, role: Role = Role.user, **fields) -> User:
    uid = store.create_user(
        User(email=email, hashed_password=hash_password(password), role=role, **fields)
    )
    return store.get_by_id(uid)


def _patch_lifespan(stores: Stores, cache: CacheStore, notifier: CapturingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the production database.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; a mock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = stores.users
        app.state.otp_store = stores.otps
        app.state.activity_store = stores.activity
        app.state.audit = AuditRecorder(stores.activity)
        app.state.cache_handle = CacheHandle()
        app.state.cache = cache
        app.state.otp_service = OTPService(stores.otps, stores.users, notifier)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        await app.state.audit.drain()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiContext:
    client: TestClient
    stores: Stores
    notifier: CapturingNotifier
    redis: FakeRedis
    user: User
    admin: User
    user_token: str
    admin_token: str

    def auth(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def drain_audit(self) -> None:
        """Block until detached audit writes scheduled so far have finished."""
        self.client.portal.call(app.state.audit.drain)


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores and an
    in-process Redis double.
    """
    stores = make_stores("api")
    redis = FakeRedis()
    notifier = CapturingNotifier()

    user = create_account(stores.users, "jane.doe@example.com", USER_PASSWORD, first_name="Jane", last_name="Doe")
    admin = create_account(stores.users, "admin@example.com", ADMIN_PASSWORD, role=Role.admin, first_name="Ada")

    app.router.lifespan_context = _patch_lifespan(stores, CacheStore(CacheHandle(client=redis)), notifier)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(
            client=client,
            stores=stores,
            notifier=notifier,
            redis=redis,
            user=user,
            admin=admin,
            user_token=create_access_token(user.id, user.role, expire_seconds=3600),
            admin_token=create_access_token(admin.id, admin.role, expire_seconds=3600),
        )

    stores.close()

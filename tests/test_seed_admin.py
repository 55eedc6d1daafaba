"""
tests/test_seed_admin.py -- Tests for the `main.py seed-admin` operator command.
"""

from __future__ import annotations

import pytest

from auth.models import Role
from auth.store import UserStore
from auth.tokens import verify_password
from main import seed_admin
from tests.conftest import create_account, memory_url


@pytest.fixture
def store():
    s = UserStore(memory_url("test_seed"))
    yield s
    s.close()


def test_creates_first_admin(store) -> None:
    message = seed_admin(store, "Root@Example.com", "rootpass1", "Root", "Ops")
    assert message.startswith("Admin user created: Root@Example.com")
    admin = store.get_by_email("root@example.com")
    assert admin.role is Role.admin
    assert admin.email == "root@example.com"
    assert verify_password("rootpass1", admin.hashed_password)


def test_noop_when_admin_exists(store) -> None:
    seed_admin(store, "root@example.com", "rootpass1")
    assert seed_admin(store, "second@example.com", "rootpass2") == "Admin user already exists. Nothing to do."
    assert store.get_by_email("second@example.com") is None


def test_email_taken_by_regular_user(store) -> None:
    create_account(store, "taken@example.com", "userpass1")
    assert "already uses taken@example.com" in seed_admin(store, "taken@example.com", "rootpass1")
    assert store.has_admin() is False

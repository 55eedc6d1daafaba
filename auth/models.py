"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
gate do the work.

User is the stored record and carries the password hash. Principal is the
sanitized projection attached to a request -- it is frozen and has no hash
field at all, so it cannot leak one into a response or an audit snapshot.

Layer rule: no imports from api/, otp/, audit/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    user = "user"
    admin = "admin"


def role_satisfies(role: Role, required: Role) -> bool:
    """Return True if a principal holding `role` may pass a gate requiring `required`.

    Every Role member must be handled explicitly. Adding a variant without
    extending this function fails loudly instead of silently granting access.
    """
    if required is Role.user:
        return role in (Role.user, Role.admin)
    if required is Role.admin:
        return role is Role.admin
    raise ValueError(f"Unhandled role requirement: {required!r}")


@dataclass
class User:
    """A stored account.

    id is an opaque string (uuid4 hex unless the caller supplies one).
    hashed_password is a bcrypt hash and never leaves the auth layer.
    """

    email: str
    hashed_password: str
    first_name: str = ""
    last_name: str = ""
    role: Role = Role.user
    id: str | None = None
    created_at: str | None = None
    is_active: bool = True

    def to_principal(self) -> Principal:
        return Principal(
            id=self.id or "",
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            role=self.role,
        )


@dataclass(frozen=True)
class Principal:
    """The verified identity attached to a request after authentication."""

    id: str
    email: str
    first_name: str
    last_name: str
    role: Role

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.email

    def snapshot(self) -> dict:
        """Identity fields copied into audit records at the time of an action."""
        return {"email": self.email, "first_name": self.first_name, "last_name": self.last_name}

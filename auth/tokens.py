"""
auth/tokens.py -- JWT and password hashing utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       the user id as the subject, the role at issue time, and expiry. The
       role claim is informational only -- the gate always re-reads the role
       from the user store.

  Passwords: bcrypt directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered [C1].

  SECRET_KEY: sourced from core.config.get_settings(). See that module for
       the startup policy [M6][M7].

Layer rule: no imports from api/, otp/, audit/, or cache/. Import from core/
is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from core.config import get_settings
from core.errors import CredentialExpired, InvalidCredential

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("pocketledger.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones [C1].
_DUMMY_HASH: str = hash_password("pocketledger_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT for user_id.

    Args:
        user_id:        Opaque user id, stored as the `sub` claim.
        role:           Role at issue time.
        expire_seconds: Token lifetime. 0 (default) uses Settings.token_expire_seconds.
                        A negative value issues an already-expired token (tests).
    """
    duration = expire_seconds if expire_seconds != 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": user_id,
        "role": str(getattr(role, "value", role)),
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Decode and verify a JWT, returning its payload.

    Raises CredentialExpired for a valid signature past its expiry and
    InvalidCredential for everything else (bad signature, malformed token,
    missing subject).
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise CredentialExpired() from exc
    except JWTError as exc:
        logger.debug("Rejected token: %s", exc)
        raise InvalidCredential() from exc
    if not payload.get("sub"):
        raise InvalidCredential()
    return payload


# ---------------------------------------------------------------------------
# User authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists. Returns the User on
    success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user

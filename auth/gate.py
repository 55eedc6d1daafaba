"""
auth/gate.py -- Framework-free credential verification and role gating.

resolve_principal() is the whole AuthGate decision in one synchronous call:

  1. No bearer credential          -> MissingCredential (store never touched)
  2. Bad signature / malformed     -> InvalidCredential
  3. Valid signature, past expiry  -> CredentialExpired
  4. Subject has no active user    -> InvalidCredential (same as tampering)
  5. Store unavailable             -> InternalFailure (detail logged only)
  6. Role below the requirement    -> InsufficientRole

auth/dependencies.py adapts this to FastAPI; tests call it directly.

Layer rule: no imports from api/, otp/, audit/, or cache/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.models import Principal, Role, role_satisfies
from auth.store import UserStore
from auth.tokens import decode_access_token
from core.errors import InsufficientRole, InternalFailure, InvalidCredential, MissingCredential

logger = logging.getLogger("pocketledger.auth.gate")

_BEARER_PREFIX = "bearer "


def extract_bearer(authorization: str | None) -> str | None:
    """Return the token from an `Authorization: Bearer <token>` value, or None."""
    if not authorization:
        return None
    if not authorization.lower().startswith(_BEARER_PREFIX):
        return None
    token = authorization[len(_BEARER_PREFIX) :].strip()
    return token or None


def resolve_principal(authorization: str | None, user_store: UserStore, required_role: Role = Role.user) -> Principal:
    token = extract_bearer(authorization)
    if token is None:
        raise MissingCredential()

    payload = decode_access_token(token)

    try:
        user = user_store.get_by_id(payload["sub"])
    except SQLAlchemyError as exc:
        logger.exception("User store lookup failed during authentication")
        raise InternalFailure() from exc

    if user is None or not user.is_active:
        # Logged for operators; the client sees the same message as a forged token.
        logger.info("Token subject %s has no active user", payload["sub"])
        raise InvalidCredential()

    if not role_satisfies(user.role, required_role):
        raise InsufficientRole()

    return user.to_principal()

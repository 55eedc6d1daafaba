"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only one credential transport is accepted: `Authorization: Bearer <token>`.
There is no cookie and no server-side session -- the principal is rebuilt
from the token subject on every request.

require_user() raises the AuthError family on failure.
require_admin() additionally requires Role.admin.

On success the sanitized Principal is attached to request.state.principal so
post-response observers (audit/hooks.py) can see who acted.

Layer rule: no imports from api/, otp/, audit/, or cache/.
  auth/dependencies.py may import from fastapi because this module is part of
  the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.gate import resolve_principal
from auth.models import Principal, Role


def _authorize(request: Request, required_role: Role) -> Principal:
    principal = resolve_principal(
        request.headers.get("Authorization"),
        request.app.state.user_store,
        required_role,
    )
    request.state.principal = principal
    return principal


def require_user(request: Request) -> Principal:
    """Require any valid, existing principal.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(require_user)): ...
    """
    return _authorize(request, Role.user)


def require_admin(request: Request) -> Principal:
    """Require Role.admin. Missing/invalid/expired credentials fail first."""
    return _authorize(request, Role.admin)

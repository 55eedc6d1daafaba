"""
audit/hooks.py -- Post-response observers registered per route.

Pattern: Observer. An endpoint lists its observers with @observe(...); the
router's route_class (ObservedRoute) calls each one after the handler has
produced its response, passing the request and the decoded JSON envelope.

    router = APIRouter(route_class=ObservedRoute)

    @router.post("/profile/change-password")
    @observe(audit_activity(PASSWORD_CHANGE))
    async def change_password(...): ...

@router.post must stay the OUTERMOST decorator so FastAPI registers the
function that already carries the observer list.

Observers only run for responses the handler returned. A handler that raised
(auth failure, OTP error, crash) produced no success envelope, so there is
nothing to observe. Observer errors are logged and never alter the response.

Layer rule: no imports from api/, otp/, or cache/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Optional

from fastapi import Request, Response
from fastapi.routing import APIRoute

from audit.recorder import AuditRecorder
from auth.models import Principal

logger = logging.getLogger("pocketledger.audit.hooks")

ResponseObserver = Callable[[Request, Optional[dict]], None]
DetailsFn = Callable[[Request, dict], dict]

_OBSERVERS_ATTR = "__response_observers__"


def observe(*observers: ResponseObserver):
    """Attach observers to an endpoint function (see module docstring for ordering)."""

    def decorator(endpoint):
        existing = getattr(endpoint, _OBSERVERS_ATTR, ())
        setattr(endpoint, _OBSERVERS_ATTR, tuple(existing) + observers)
        return endpoint

    return decorator


def _read_envelope(response: Response) -> dict | None:
    if response.status_code >= 400:
        return None
    body = getattr(response, "body", None)
    if not isinstance(body, (bytes, bytearray)) or not body:
        return None
    try:
        decoded = json.loads(body)
    except ValueError:
        return None
    return decoded if isinstance(decoded, dict) else None


class ObservedRoute(APIRoute):
    """APIRoute that notifies the endpoint's observers once its response exists."""

    def get_route_handler(self) -> Callable:
        handler = super().get_route_handler()
        observers: tuple[ResponseObserver, ...] = getattr(self.endpoint, _OBSERVERS_ATTR, ())
        if not observers:
            return handler

        async def observed_handler(request: Request) -> Response:
            response = await handler(request)
            envelope = _read_envelope(response)
            for observer in observers:
                try:
                    observer(request, envelope)
                except Exception:
                    logger.exception("Response observer failed on %s %s", request.method, request.url.path)
            return response

        return observed_handler


# ---------------------------------------------------------------------------
# Audit observers
# ---------------------------------------------------------------------------


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def audit_activity(action: str, get_details: DetailsFn | None = None) -> ResponseObserver:
    """Build an observer that records `action` for successful, authenticated responses.

    get_details(request, envelope) may derive a structured detail map from the
    request and the response envelope.
    """

    def _observer(request: Request, envelope: dict | None) -> None:
        principal: Principal | None = getattr(request.state, "principal", None)
        if principal is None or envelope is None:
            return
        details = get_details(request, envelope) if get_details else {}
        recorder: AuditRecorder = request.app.state.audit
        recorder.observe(
            envelope,
            principal,
            action,
            details,
            ip_address=client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )

    return _observer


def record_activity(request: Request, principal: Principal, action: str, details: dict | None = None) -> None:
    """Manual audit write for handlers that authenticate inside the handler (login, signup)."""
    recorder: AuditRecorder = request.app.state.audit
    recorder.record(
        principal,
        action,
        details,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )

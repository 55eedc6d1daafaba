"""
api/routes/v1/profile.py -- OTP-guarded account mutations.

Routes (all require a valid principal):
  POST /api/v1/profile/request-password-change  -- issue a password_change code by email
  POST /api/v1/profile/verify-otp               -- confirm a code without consuming it
  POST /api/v1/profile/change-password          -- consume the code and set a new password

verify-otp and change-password are deliberately separate calls. A code
stays valid between them until change-password succeeds once.

Service calls run in the threadpool: issuing sends SMTP and changing the
password runs bcrypt, both of which would otherwise block the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from api.models import ChangePasswordRequest, Envelope, OTPIssuedData, VerifyOTPRequest, success
from audit.hooks import ObservedRoute, audit_activity, observe
from audit.models import PASSWORD_CHANGE
from auth.dependencies import require_user
from auth.models import Principal
from core.errors import ValidationError
from otp.models import OTPPurpose
from otp.service import OTPService

router = APIRouter(route_class=ObservedRoute)

_MIN_PASSWORD_LENGTH = 6


def _otp_service(request: Request) -> OTPService:
    return request.app.state.otp_service


@router.post("/profile/request-password-change", response_model=Envelope)
async def request_password_change(
    request: Request,
    principal: Principal = Depends(require_user),
) -> Envelope:
    result = await run_in_threadpool(_otp_service(request).issue, principal.id, OTPPurpose.password_change)
    message = "OTP sent to your email" if result.delivered else "OTP created but the email could not be delivered"
    return success(
        OTPIssuedData(email=result.masked_email, expires_in=result.expires_in, delivered=result.delivered),
        message=message,
    )


@router.post("/profile/verify-otp", response_model=Envelope)
async def verify_otp(
    request: Request,
    body: VerifyOTPRequest,
    principal: Principal = Depends(require_user),
) -> Envelope:
    record = await run_in_threadpool(_otp_service(request).verify, principal.id, OTPPurpose.password_change, body.otp)
    return success(
        {"otp_id": record.id, "expires_at": record.expires_at.isoformat()},
        message="OTP verified successfully",
    )


def _validate_change_password(body: ChangePasswordRequest) -> None:
    for field in ("otp", "new_password", "confirm_password"):
        if not getattr(body, field):
            raise ValidationError(f"{field} is required.", field=field)
    if body.new_password != body.confirm_password:
        raise ValidationError("Passwords do not match.", field="confirm_password")
    if len(body.new_password) < _MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {_MIN_PASSWORD_LENGTH} characters.",
            field="new_password",
        )


@router.post("/profile/change-password", response_model=Envelope)
@observe(audit_activity(PASSWORD_CHANGE, lambda request, envelope: {"method": "otp"}))
async def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(require_user),
) -> Envelope:
    _validate_change_password(body)
    await run_in_threadpool(_otp_service(request).change_password, principal.id, body.otp, body.new_password)
    return success(message="Password changed successfully")

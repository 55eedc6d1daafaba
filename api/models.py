"""
API request and response models for PocketLedger REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/, otp/ and audit/, which
own the internal domain representation. Route handlers map between the two.

Every endpoint answers with an envelope:
    success: {"status": "success", "message": ..., "data": ...}
    failure: {"status": "error", "code": ..., "message": ...}
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from audit.models import ActivityLogEntry
from auth.models import Principal, Role, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Shape check only; deliverability is proven by the OTP email flow.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    status: Literal["success"] = "success"
    message: Optional[str] = None
    data: Any = None


class ErrorEnvelope(BaseModel):
    status: Literal["error"] = "error"
    code: str
    message: str
    field: Optional[str] = None


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


def success(data: Any = None, message: Optional[str] = None) -> Envelope:
    """Wrap a payload in the success envelope. Nested models are dumped to plain JSON types."""
    return Envelope(message=message, data=_plain(data))


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=6, max_length=255)


class LoginRequest(BaseModel):
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class VerifyOTPRequest(BaseModel):
    otp: str = Field(min_length=1, max_length=12)


class ChangePasswordRequest(BaseModel):
    """Fields are optional at the schema level so the handler can report which
    one is missing with a field-level validation error."""

    otp: Optional[str] = None
    new_password: Optional[str] = Field(default=None, max_length=255)
    confirm_password: Optional[str] = Field(default=None, max_length=255)


class CacheInvalidateRequest(BaseModel):
    pattern: str = Field(min_length=1, max_length=200)


# ---------------------------------------------------------------------------
# Response payloads (the `data` part of an envelope)
# ---------------------------------------------------------------------------


class PrincipalOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    first_name: str
    last_name: str
    role: Role

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalOut":
        return cls(
            id=principal.id,
            email=principal.email,
            first_name=principal.first_name,
            last_name=principal.last_name,
            role=principal.role,
        )


class UserOut(PrincipalOut):
    created_at: str
    is_active: bool

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        """Factory Method -- the hash is never copied into the response model."""
        return cls(
            id=user.id or "",
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            created_at=user.created_at or "",
            is_active=user.is_active,
        )


class LoginData(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: PrincipalOut


class OTPIssuedData(BaseModel):
    email: str
    expires_in: int
    delivered: bool


class ActivityOut(BaseModel):
    id: Optional[int]
    user_id: str
    action: str
    details: dict
    user_info: dict
    ip_address: Optional[str]
    user_agent: Optional[str]
    timestamp: str

    @classmethod
    def from_entry(cls, entry: ActivityLogEntry) -> "ActivityOut":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            action=entry.action,
            details=entry.details,
            user_info=entry.user_info,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            timestamp=entry.timestamp.isoformat(),
        )


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_users: int
    has_next: bool
    has_prev: bool


class HealthData(BaseModel):
    version: str
    components: dict[str, str]

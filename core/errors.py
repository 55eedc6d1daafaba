"""
core/errors.py -- Typed error hierarchy for every failure the API surfaces.

Invariants:
  - Every error carries a stable code, a user-facing message and an HTTP status.
  - Messages are fixed per class. Root causes ("user not found", "bad
    signature") never reach the client; they go to the operator log instead.
  - Cache failures are NOT part of this hierarchy. cache/ absorbs them.

The FastAPI handler in api/main.py catches PocketLedgerError and renders
to_response() as the error envelope.

Layer rule: core/ is the kernel. No imports from api/, auth/, otp/, audit/, or cache/.
"""

from __future__ import annotations


class PocketLedgerError(Exception):
    """Base exception for all PocketLedger errors."""

    code = "internal_error"
    message = "An unexpected error occurred."
    http_status = 500

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_response(self) -> dict:
        """Convert to the standard error envelope."""
        return {"status": "error", "code": self.code, "message": self.message}


# ---------------------------------------------------------------------------
# Authentication / authorization
# ---------------------------------------------------------------------------


class AuthError(PocketLedgerError):
    http_status = 401


class MissingCredential(AuthError):
    code = "missing_credential"
    message = "Access denied. No token provided."


class InvalidCredential(AuthError):
    """Bad signature, malformed token, or a subject with no matching user."""

    code = "invalid_credential"
    message = "Invalid token."


class CredentialExpired(AuthError):
    code = "credential_expired"
    message = "Token expired."


class InsufficientRole(AuthError):
    code = "insufficient_role"
    message = "Access denied. Admin privileges required."
    http_status = 403


class BadCredentials(AuthError):
    """Login failure. Same message for unknown email and wrong password."""

    code = "bad_credentials"
    message = "Invalid email or password."


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


class OTPError(PocketLedgerError):
    http_status = 400


class NotFoundOrExpired(OTPError):
    code = "otp_invalid"
    message = "Invalid or expired OTP."


class AlreadyUsed(OTPError):
    code = "otp_used"
    message = "OTP has already been used."


class PurposeMismatch(OTPError):
    code = "otp_purpose_mismatch"
    message = "OTP was issued for a different purpose."


# ---------------------------------------------------------------------------
# Input / infrastructure
# ---------------------------------------------------------------------------


class ValidationError(PocketLedgerError):
    """Field-level input problem detected by a handler (not by Pydantic)."""

    code = "validation_error"
    message = "Request validation failed."
    http_status = 400

    def __init__(self, message: str | None = None, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    def to_response(self) -> dict:
        body = super().to_response()
        if self.field:
            body["field"] = self.field
        return body


class Conflict(PocketLedgerError):
    code = "conflict"
    message = "Resource already exists."
    http_status = 409


class InternalFailure(PocketLedgerError):
    """Unexpected persistence or infrastructure error. Detail stays in the log."""

"""
otp/delivery.py -- Outbound channels for one-time codes.

The lifecycle only needs `send(destination, code, purpose) -> bool`. Delivery
is fire-once: a False return is logged by the caller and reported to the
client, never retried here.

SmtpNotifier is used when SMTP_HOST and SMTP_USER are configured;
LogOnlyNotifier otherwise (local development, tests).

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

from core.config import Settings
from otp.models import OTPPurpose

logger = logging.getLogger("pocketledger.otp.delivery")

_SUBJECTS = {
    OTPPurpose.password_change: "Your PocketLedger password change code",
    OTPPurpose.email_verification: "Verify your PocketLedger email address",
}


class OTPNotifier(Protocol):
    def send(self, destination: str, code: str, purpose: OTPPurpose) -> bool: ...


def render_message(code: str, purpose: OTPPurpose, expires_minutes: int) -> tuple[str, str]:
    """Return (subject, plain-text body) for a code email."""
    subject = _SUBJECTS[OTPPurpose(purpose)]
    body = (
        f"Your one-time code is: {code}\n\n"
        f"It expires in {expires_minutes} minutes and can be used once.\n"
        "If you did not request this code, you can ignore this email and your account stays unchanged.\n"
    )
    return subject, body


class SmtpNotifier:
    """Send codes through an SMTP relay (STARTTLS on 587, implicit TLS when smtp_use_ssl)."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def send(self, destination: str, code: str, purpose: OTPPurpose) -> bool:
        s = self._settings
        subject, body = render_message(code, purpose, max(1, s.otp_expire_seconds // 60))
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = s.smtp_sender
        msg["To"] = destination
        msg.set_content(body)

        context = ssl.create_default_context()
        try:
            if s.smtp_use_ssl:
                with smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout, context=context) as smtp:
                    smtp.login(s.smtp_user, s.smtp_password)
                    smtp.send_message(msg)
            else:
                with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout) as smtp:
                    smtp.starttls(context=context)
                    smtp.login(s.smtp_user, s.smtp_password)
                    smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("OTP email to %s failed: %s", destination, exc)
            return False
        logger.info("OTP email sent to %s (purpose=%s)", destination, OTPPurpose(purpose).value)
        return True


class LogOnlyNotifier:
    """Stand-in channel when email is not configured. Never logs the code."""

    def send(self, destination: str, code: str, purpose: OTPPurpose) -> bool:
        logger.warning("Email not configured; OTP for %s (purpose=%s) not sent", destination, OTPPurpose(purpose).value)
        return False


def build_notifier(settings: Settings) -> OTPNotifier:
    if settings.smtp_enabled:
        return SmtpNotifier(settings)
    logger.info("SMTP not configured. OTP email delivery disabled.")
    return LogOnlyNotifier()

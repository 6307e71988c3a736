from __future__ import annotations

import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Optional

from authcore.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Sends verification and password-reset links.

    Falls back to logging when SMTP is not configured (dev mode).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(self, to_email: str, subject: str, body: str) -> bool:
        """Send a plain-text email. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to_email
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 60) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        body = (
            "We received a request to reset your password.\n\n"
            f"Choose a new password here: {reset_url}\n\n"
            f"This link expires in {ttl_minutes} minutes. "
            "If you didn't request this, you can ignore this email.\n"
        )
        return self._send_email(to_email, "Reset your password", body)

    def send_email_verification(self, to_email: str, token: str, *, ttl_hours: int = 24) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        body = (
            "Please verify your email address to activate your account.\n\n"
            f"{verify_url}\n\n"
            f"This link expires in {ttl_hours} hours.\n"
        )
        return self._send_email(to_email, "Verify your email", body)

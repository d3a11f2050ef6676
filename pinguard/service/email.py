from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from pinguard.logging import get_logger

logger = get_logger(__name__)


class EmailSender(Protocol):
    """What the PIN reset channel needs from an email transport."""

    def send_pin_reset_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        ...

    def send_pin_reset_confirmation(self, to_email: str) -> bool:
        ...


_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { font-size: 32px; letter-spacing: 8px; font-weight: 700; margin: 30px 0; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """SMTP email transport for the PIN reset channel.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - PIN reset code and reset confirmation emails
    - Fallback to logging when not configured (dev mode)

    Sending is blocking; the biometric service dispatches it on a worker
    thread.
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
        from_name: str = "PinGuard",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: note the email instead of sending it. The body is not
            # logged because it carries the reset code.
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_pin_reset_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        """Send the numeric code that unlocks a PIN reset."""
        subject = "Your PinGuard PIN reset code"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Reset your PIN</h1>
        <p>Your PIN was locked after too many incorrect attempts. Enter this code to choose a new PIN:</p>
        <p class="code">{code}</p>
        <p>This code expires in {ttl_minutes} minutes and can be used once.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>PinGuard</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Reset your PinGuard PIN

Your PIN was locked after too many incorrect attempts. Enter this code to choose a new PIN:

{code}

This code expires in {ttl_minutes} minutes and can be used once.

If you didn't request this, you can safely ignore this email.

---
PinGuard
"""

        return self._send_email(to_email, subject, html_body, text_body)

    def send_pin_reset_confirmation(self, to_email: str) -> bool:
        """Tell the user their PIN was reset."""
        subject = "Your PinGuard PIN was reset"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>PIN reset</h1>
        <p>The PIN on your account was just reset and biometric sign-in is enabled again.</p>
        <p>If you didn't make this change, please contact support immediately.</p>
        <div class="footer">
            <p>PinGuard</p>
            <p>{self.base_url}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""PIN reset

The PIN on your account was just reset and biometric sign-in is enabled again.

If you didn't make this change, please contact support immediately.

---
PinGuard
{self.base_url}
"""

        return self._send_email(to_email, subject, html_body, text_body)

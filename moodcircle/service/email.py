from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from moodcircle.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Sends one-time verification codes over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - An explicit socket timeout on every connection
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "MoodCircle",
        timeout_seconds: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout_seconds = timeout_seconds

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
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
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
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
                recipient=self._redact_email(to_email),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host,
                    self.smtp_port,
                    context=context,
                    timeout=self.timeout_seconds,
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except TimeoutError as e:
            logger.error(
                "email_timeout",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                timeout=self.timeout_seconds,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_connect_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_otp(self, to_email: str, code: str, expiry_minutes: int) -> bool:
        """Send a verification code email."""
        subject = "Your MoodCircle Verification Code"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .code-box {{ background: #667eea; color: white; padding: 30px; border-radius: 12px; text-align: center; margin: 30px 0; }}
        .code {{ font-size: 36px; font-weight: bold; letter-spacing: 8px; margin: 20px 0; }}
        .footer {{ text-align: center; color: #666; font-size: 14px; margin-top: 30px; }}
    </style>
</head>
<body>
    <div class="container">
        <h1 style="color: #667eea;">MoodCircle</h1>
        <p>Your verification code for MoodCircle is:</p>
        <div class="code-box">
            <div class="code">{code}</div>
            <p style="margin: 0; font-size: 14px;">This code expires in {expiry_minutes} minutes</p>
        </div>
        <p>If you didn't request this code, please ignore this email.</p>
        <div class="footer">
            <p>This is an automated message from MoodCircle. Please do not reply.</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Your MoodCircle verification code is: {code}

This code expires in {expiry_minutes} minutes.

If you didn't request this code, please ignore this email.

---
MoodCircle
"""

        return self._send_email(to_email, subject, html_body, text_body)

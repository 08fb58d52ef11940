from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from meterauth.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailService:
    """Transactional mail over SMTP.

    When SMTP is not configured the message is logged instead of sent, which
    keeps local development and tests free of a mail server.
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
        from_name: str = "MeterIt Pro",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message; True on success or in dev mode, False on SMTP failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=redact_email(to_email), error=str(e)
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # connection refused, DNS failure and socket timeouts land here
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _layout(self, heading: str, paragraphs: list[str]) -> str:
        body = "\n".join(f"        <p>{p}</p>" for p in paragraphs)
        return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
{body}
        <div class="footer"><p>{html.escape(self.from_name)}</p></div>
    </div>
</body>
</html>
"""

    def send_password_reset(
        self, to_email: str, reset_url: str, *, expires_hours: int = 24
    ) -> bool:
        subject = "Password Reset Request"
        safe_url = html.escape(reset_url, quote=True)
        html_body = self._layout(
            "Reset your password",
            [
                "We received a request to reset your password. Click the button below to choose a new password:",
                f'<a href="{safe_url}" class="button">Reset Password</a>',
                f"This link will expire in {expires_hours} hours.",
                "If you didn't request this, you can safely ignore this email.",
                f"If the button doesn't work, copy and paste this URL: {safe_url}",
            ],
        )
        text_body = f"""Password Reset Request

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in {expires_hours} hours.

If you didn't request this, you can safely ignore this email.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_otp_code(self, to_email: str, code: str, *, expires_minutes: int = 5) -> bool:
        subject = "Your verification code"
        html_body = self._layout(
            "Your verification code",
            [
                f'<span class="code">{html.escape(code)}</span>',
                f"This code expires in {expires_minutes} minutes.",
                "If you did not try to sign in, change your password.",
            ],
        )
        text_body = (
            f"Your verification code is {code}\n\n"
            f"This code expires in {expires_minutes} minutes.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_two_factor_enabled(self, to_email: str, method_label: str) -> bool:
        subject = "Two-factor authentication enabled"
        html_body = self._layout(
            "Two-factor authentication enabled",
            [
                f"{html.escape(method_label)} is now required when you sign in.",
                "If you didn't make this change, contact your administrator immediately.",
            ],
        )
        text_body = f"{method_label} is now required when you sign in.\n"
        return self._send_email(to_email, subject, html_body, text_body)

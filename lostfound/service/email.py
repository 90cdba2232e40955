from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from lostfound.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
"""


class EmailService:
    """Transactional email for account flows.

    Sends over SMTP (STARTTLS or implicit TLS). When SMTP is not configured the
    message is logged instead, which is the dev-mode behaviour.
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
        from_name: str = "PLV Lost & Found",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
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
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
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
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def _render(self, heading: str, paragraphs: list[str], link: Optional[tuple[str, str]]) -> str:
        body = "".join(f"        <p>{p}</p>\n" for p in paragraphs)
        button = ""
        footer_link = ""
        if link:
            label, url = link
            button = f'        <p style="margin: 30px 0;"><a href="{url}" class="button">{label}</a></p>\n'
            footer_link = f"<p>If the button doesn't work, copy and paste this URL: {url}</p>"
        return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE.format()}</style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
{body}{button}        <div class="footer">
            <p>{self.from_name}</p>
            {footer_link}
        </div>
    </div>
</body>
</html>
"""

    def send_password_reset(self, to_email: str, token: str, ttl_minutes: int = 15) -> bool:
        """Send the recovery link; the ``type=recovery`` marker puts the tab into the reset flow."""
        reset_url = f"{self.base_url}/?type=recovery&token={token}"
        subject = "Reset your PLV Lost & Found password"
        html_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Click the button below to choose a new password:",
            ],
            ("Reset Password", reset_url),
        )
        text_body = f"""Reset your PLV Lost & Found password

Visit the link below to choose a new password:

{reset_url}

This link will expire in {ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_email_verification(self, to_email: str, token: str, ttl_hours: int = 24) -> bool:
        verify_url = f"{self.base_url}/?type=email&token={token}"
        subject = "Verify your PLV Lost & Found email"
        html_body = self._render(
            "Verify your email",
            [
                "Thanks for registering! Please verify your email address before signing in:",
                f"This link will expire in {ttl_hours} hours.",
            ],
            ("Verify Email", verify_url),
        )
        text_body = f"""Verify your PLV Lost & Found email

Please verify your email address by visiting the link below:

{verify_url}

This link will expire in {ttl_hours} hours.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_admin_invitation(self, to_email: str, temporary_password: str) -> bool:
        """Tell a newly created administrator how to sign in."""
        login_url = f"{self.base_url}/login"
        subject = "Your PLV Lost & Found administrator account"
        html_body = self._render(
            "Administrator account created",
            [
                "An administrator account has been created for you.",
                f"Temporary password: <code>{temporary_password}</code>",
                "Please sign in and change it using the password reset flow.",
            ],
            ("Sign In", login_url),
        )
        text_body = f"""Administrator account created

Temporary password: {temporary_password}

Sign in at {login_url} and change it using the password reset flow.
"""
        return self._send_email(to_email, subject, html_body, text_body)

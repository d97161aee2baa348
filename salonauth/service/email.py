from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from salonauth.logging import get_logger
from salonauth.result import Err, Ok, Result
from salonauth.service.failures import EmailServiceError

logger = get_logger(__name__)


_HTML_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #2d2a32; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #b5838d; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #6d6875; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer"><p>{app_name}</p>{footer}</div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP (STARTTLS or implicit TLS).

    When no SMTP host is configured the message is logged instead of sent so
    local development works without a mail server.
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
        from_name: str = "Salon Reservations",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, title: str, paragraphs: list[str], *, link: Optional[tuple[str, str]] = None) -> tuple[str, str]:
        body = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
        footer = ""
        text_lines = [title, ""]
        if link:
            label, url = link
            safe_url = html.escape(url, quote=True)
            body = (
                f"<p>{html.escape(paragraphs[0])}</p>"
                f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">{html.escape(label)}</a></p>'
                + "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs[1:])
            )
            footer = f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
            text_lines += [paragraphs[0], "", url, ""] + paragraphs[1:]
        else:
            text_lines += paragraphs
        text_lines += ["", "---", self.from_name]
        html_body = _HTML_LAYOUT.format(
            title=html.escape(title), body=body, app_name=html.escape(self.from_name), footer=footer
        )
        return html_body, "\n".join(text_lines)

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
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
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
                "email_recipient_refused", to=self._redact_email(to_email), error=str(e)
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

    def send_password_reset(self, to_email: str, name: str, token: str, ttl_minutes: int) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                f"Hi {name}, we received a request to reset your password. Use the link below to choose a new one:",
                f"This link will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            link=("Reset Password", reset_url),
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_email_verification(self, to_email: str, name: str, token: str, ttl_hours: int) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                f"Hi {name}, please confirm your email address so you can book appointments:",
                f"This link will expire in {ttl_hours} hours.",
            ],
            link=("Verify Email", verify_url),
        )
        return self._send_email(to_email, f"Verify your {self.from_name} email", html_body, text_body)

    def send_password_changed(self, to_email: str, name: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                f"Hi {name}, the password for your account was just changed.",
                "If you didn't make this change, reset your password and contact the salon immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)

    def send_two_factor_enabled(self, to_email: str, name: str) -> bool:
        html_body, text_body = self._render(
            "Two-factor authentication enabled",
            [
                f"Hi {name}, two-factor authentication is now enabled on your account.",
                "You will need a code from your authenticator app (or a backup code) when signing in.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Two-factor authentication enabled", html_body, text_body)


class Notifier(Protocol):
    """Outbound notifications used by the use cases."""

    async def send_password_reset(
        self, email: str, name: str, token: str
    ) -> Result[None, EmailServiceError]: ...

    async def send_email_verification(
        self, email: str, name: str, token: str
    ) -> Result[None, EmailServiceError]: ...

    async def send_password_changed(
        self, email: str, name: str
    ) -> Result[None, EmailServiceError]: ...

    async def send_two_factor_enabled(
        self, email: str, name: str
    ) -> Result[None, EmailServiceError]: ...


class EmailNotifier:
    """Adapts the blocking :class:`EmailService` to the async ``Notifier`` contract."""

    def __init__(
        self,
        service: EmailService,
        *,
        reset_ttl_minutes: int = 15,
        verification_ttl_hours: int = 24,
    ) -> None:
        self.service = service
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours

    @staticmethod
    async def _deliver(send, *args) -> Result[None, EmailServiceError]:
        sent = await asyncio.to_thread(send, *args)
        return Ok(None) if sent else Err(EmailServiceError())

    async def send_password_reset(self, email: str, name: str, token: str):
        return await self._deliver(
            self.service.send_password_reset, email, name, token, self.reset_ttl_minutes
        )

    async def send_email_verification(self, email: str, name: str, token: str):
        return await self._deliver(
            self.service.send_email_verification, email, name, token, self.verification_ttl_hours
        )

    async def send_password_changed(self, email: str, name: str):
        return await self._deliver(self.service.send_password_changed, email, name)

    async def send_two_factor_enabled(self, email: str, name: str):
        return await self._deliver(self.service.send_two_factor_enabled, email, name)

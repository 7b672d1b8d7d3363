from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import urlencode

from tokenward.logging import get_logger

logger = get_logger(__name__)


class NotificationChannel(Protocol):
    def notify(
        self, to: str, subject: str, text: str, html_body: Optional[str] = None
    ) -> bool: ...


_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #10a37f; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
{body}
        <div class="footer">
            <p>{product}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    Delivery is best effort: every failure is logged and reported as False,
    never raised, so an outage at the mail relay cannot undo a password
    change or a revocation that already happened. When SMTP is not
    configured the message is logged instead of sent (dev mode).
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
        from_name: str = "Tokenward",
        base_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            timeout_seconds=settings.notification_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def notify(
        self, to: str, subject: str, text: str, html_body: Optional[str] = None
    ) -> bool:
        """Send one message. Returns True if it was handed to the relay."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to
            msg.attach(MIMEText(text, "plain"))
            if html_body:
                msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host,
                    self.smtp_port,
                    context=context,
                    timeout=self.timeout_seconds,
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())

            logger.info("email_sent", recipient=self._redact_email(to), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                recipient=self._redact_email(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                recipient=self._redact_email(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    # Templates

    def _render(self, title: str, paragraphs: list[str], link: Optional[tuple[str, str]] = None) -> str:
        parts = [f"        <p>{html.escape(p)}</p>" for p in paragraphs]
        if link:
            label, url = link
            safe_url = html.escape(url, quote=True)
            parts.insert(
                1,
                f'        <p style="margin: 30px 0;"><a href="{safe_url}" class="button">{html.escape(label)}</a></p>',
            )
            parts.append(
                f"        <p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
            )
        return _LAYOUT.format(
            title=html.escape(title), body="\n".join(parts), product=html.escape(self.from_name)
        )

    def verification_link(self, token: str, email: str) -> str:
        return f"{self.base_url}/verify-email?{urlencode({'token': token, 'email': email})}"

    def reset_link(self, token: str, email: str) -> str:
        return f"{self.base_url}/reset-password?{urlencode({'token': token, 'email': email})}"

    def send_email_verification(self, to_email: str, token: str, *, ttl_hours: int = 24) -> bool:
        url = self.verification_link(token, to_email)
        subject = "Verify your email address"
        lines = [
            "Please confirm this address by opening the link below.",
            f"This link will expire in {ttl_hours} hours.",
        ]
        text = "\n\n".join([subject, lines[0], url, lines[1], f"---\n{self.from_name}"])
        return self.notify(to_email, subject, text, self._render(subject, lines, ("Verify Email", url)))

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 60) -> bool:
        url = self.reset_link(token, to_email)
        subject = "Reset your password"
        lines = [
            "We received a request to reset your password. Open the link below to choose a new one.",
            f"This link will expire in {ttl_minutes} minutes.",
            "If you didn't request this, you can safely ignore this email.",
        ]
        text = "\n\n".join([subject, lines[0], url, *lines[1:], f"---\n{self.from_name}"])
        return self.notify(to_email, subject, text, self._render(subject, lines, ("Reset Password", url)))

    def send_password_changed(self, to_email: str) -> bool:
        subject = "Your password was changed"
        lines = [
            "The password for your account was just changed and every signed-in device was signed out.",
            "If you didn't make this change, reset your password immediately.",
        ]
        text = "\n\n".join([subject, *lines, f"---\n{self.from_name}"])
        return self.notify(to_email, subject, text, self._render(subject, lines))

    def send_account_deactivated(self, to_email: str) -> bool:
        subject = "Account deactivated"
        lines = [
            "Your account has been deactivated and all sessions were signed out.",
            "If this wasn't you, contact support.",
        ]
        text = "\n\n".join([subject, *lines, f"---\n{self.from_name}"])
        return self.notify(to_email, subject, text, self._render(subject, lines))

"""
auth/mailer.py -- Transactional email for the auth flows.

Three messages: email verification, password reset, welcome. Bodies are
Jinja2 templates in auth/templates/ (autoescaped -- user names are untrusted).

Delivery is SMTP. When SMTP_HOST is empty the mailer runs in dev mode: the
link is logged at INFO and the send counts as successful, so a local stack
works without a mail server.

Failures raise MailDeliveryError. Whether that is fatal is the caller's call:
registration logs and continues, password reset rolls back the token.

Layer rule: no imports from api/ or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from auth.models import User
from core.config import Settings

logger = logging.getLogger("salescrm.mailer")

_TEMPLATE_DIR = Path(__file__).parent / "templates"
_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


class MailDeliveryError(Exception):
    """The message could not be handed to the SMTP server."""


def _humanize(seconds: int) -> str:
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    minutes = max(seconds // 60, 1)
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


def _redact(email: str) -> str:
    """Redact an address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Mailer:
    """Render and send the auth emails.

    Usage:
        mailer = Mailer(get_settings())
        mailer.send_verification_email(user, raw_token)
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.client_url = settings.client_url.rstrip("/")
        self._env = Environment(
            loader=FileSystemLoader(str(_TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.smtp_host)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def send_verification_email(self, user: User, token: str) -> None:
        url = f"{self.client_url}/verify-email/{token}"
        html = self._render(
            "verify_email.html",
            name=user.name,
            url=url,
            expires_in=_humanize(self.settings.email_verification_expire_seconds),
        )
        self.send(user.email, "Verify Your Email - CRM System", html, link=url)

    def send_password_reset_email(self, user: User, token: str) -> None:
        url = f"{self.client_url}/reset-password/{token}"
        html = self._render(
            "reset_password.html",
            name=user.name,
            url=url,
            expires_in=_humanize(self.settings.password_reset_expire_seconds),
        )
        self.send(user.email, "Password Reset Request - CRM System", html, link=url)

    def send_welcome_email(self, user: User) -> None:
        html = self._render("welcome.html", name=user.name, url=f"{self.client_url}/dashboard")
        self.send(user.email, "Welcome to CRM System!", html)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _render(self, template_name: str, **context) -> str:
        return self._env.get_template(template_name).render(**context)

    def send(self, to: str, subject: str, html: str, link: str | None = None) -> None:
        """Deliver one message. Raises MailDeliveryError on any SMTP failure."""
        if not self.is_configured:
            logger.info("Email (dev mode) to=%s subject=%r link=%s", _redact(to), subject, link or "-")
            return

        text = _BLANK_LINES_RE.sub("\n\n", _TAG_RE.sub("", html)).strip()
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.settings.email_from
        msg["To"] = to
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))

        s = self.settings
        try:
            context = ssl.create_default_context()
            if s.smtp_use_tls:
                with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if s.smtp_user and s.smtp_password:
                        server.login(s.smtp_user, s.smtp_password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, context=context, timeout=30) as server:
                    if s.smtp_user and s.smtp_password:
                        server.login(s.smtp_user, s.smtp_password)
                    server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email sending failed to=%s subject=%r: %s", _redact(to), subject, exc)
            raise MailDeliveryError("Email could not be sent. Please try again later.") from exc

        logger.info("Email sent to=%s subject=%r", _redact(to), subject)

"""Unit tests for auth/mailer.py.

Covers:
- dev mode (no SMTP_HOST): nothing is sent, the link is logged
- SMTP mode: STARTTLS + login + one multipart message with the right link
- implicit TLS (SMTP_USE_TLS=false) uses SMTP_SSL
- SMTP failures surface as MailDeliveryError
- user-supplied names are HTML-escaped in the rendered body
"""

import logging
import smtplib

import pytest

from auth.mailer import MailDeliveryError, Mailer, _humanize, _redact
from auth.models import User
from core.config import Settings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeSMTP:
    instances: list["FakeSMTP"] = []
    fail = False

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.tls = False
        self.credentials = None
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        self.credentials = (user, password)

    def send_message(self, msg):
        if FakeSMTP.fail:
            raise smtplib.SMTPRecipientsRefused({msg["To"]: (550, b"no such user")})
        self.messages.append(msg)


@pytest.fixture(autouse=True)
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail = False
    monkeypatch.setattr("auth.mailer.smtplib.SMTP", FakeSMTP)
    monkeypatch.setattr("auth.mailer.smtplib.SMTP_SSL", FakeSMTP)
    return FakeSMTP


def _settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "client_url": "https://crm.example.com/",
        "smtp_host": "smtp.example.com",
        "smtp_user": "mailer",
        "smtp_password": "hunter2",
    }
    values.update(overrides)
    return Settings(**values)


def _html_part(msg) -> str:
    html = [p for p in msg.get_payload() if p.get_content_type() == "text/html"][0]
    return html.get_payload(decode=True).decode("utf-8")


USER = User(id=1, name="Ada", email="ada@example.com")

# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


def test_dev_mode_logs_link_instead_of_sending(caplog, fake_smtp):
    mailer = Mailer(_settings(smtp_host=""))
    assert mailer.is_configured is False
    with caplog.at_level(logging.INFO, logger="salescrm.mailer"):
        mailer.send_verification_email(USER, "abc123")
    assert fake_smtp.instances == []
    assert "https://crm.example.com/verify-email/abc123" in caplog.text
    assert "ada@example.com" not in caplog.text


def test_verification_email_over_starttls(fake_smtp):
    Mailer(_settings()).send_verification_email(USER, "tok")
    (server,) = fake_smtp.instances
    assert server.tls is True
    assert server.credentials == ("mailer", "hunter2")
    (msg,) = server.messages
    assert msg["To"] == "ada@example.com"
    assert msg["Subject"] == "Verify Your Email - CRM System"
    body = _html_part(msg)
    assert "https://crm.example.com/verify-email/tok" in body
    assert "24 hours" in body


def test_password_reset_email(fake_smtp):
    Mailer(_settings()).send_password_reset_email(USER, "rst")
    msg = fake_smtp.instances[0].messages[0]
    body = _html_part(msg)
    assert "https://crm.example.com/reset-password/rst" in body
    assert "30 minutes" in body


def test_plain_text_alternative_present(fake_smtp):
    Mailer(_settings()).send_welcome_email(USER)
    msg = fake_smtp.instances[0].messages[0]
    types = [p.get_content_type() for p in msg.get_payload()]
    assert types == ["text/plain", "text/html"]


def test_implicit_tls(fake_smtp, monkeypatch):
    calls = []

    class RecordingSSL(FakeSMTP):
        def __init__(self, *args, **kwargs):
            calls.append(kwargs.get("context"))
            super().__init__(*args, **kwargs)

    monkeypatch.setattr("auth.mailer.smtplib.SMTP_SSL", RecordingSSL)
    Mailer(_settings(smtp_use_tls=False, smtp_port=465)).send_welcome_email(USER)
    assert len(calls) == 1
    assert fake_smtp.instances[0].tls is False


def test_smtp_failure_raises_delivery_error(fake_smtp):
    fake_smtp.fail = True
    with pytest.raises(MailDeliveryError):
        Mailer(_settings()).send_password_reset_email(USER, "rst")


def test_connection_failure_raises_delivery_error(monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr("auth.mailer.smtplib.SMTP", refuse)
    with pytest.raises(MailDeliveryError):
        Mailer(_settings()).send_welcome_email(USER)


def test_name_is_escaped(fake_smtp):
    evil = User(id=2, name="<script>alert(1)</script>", email="evil@example.com")
    Mailer(_settings()).send_welcome_email(evil)
    body = _html_part(fake_smtp.instances[0].messages[0])
    assert "<script>" not in body
    assert "&lt;script&gt;" in body


@pytest.mark.parametrize(
    "seconds,expected",
    [(86400, "24 hours"), (3600, "1 hour"), (1800, "30 minutes"), (60, "1 minute"), (5, "1 minute")],
)
def test_humanize(seconds, expected):
    assert _humanize(seconds) == expected


def test_redact():
    assert _redact("ada@example.com") == "ad***@example.com"
    assert _redact("nonsense") == "redacted"

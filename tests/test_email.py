import smtplib
from email import message_from_string

import pytest

from fingerauth.logging import _redact_pii
from fingerauth.service import email as email_module
from fingerauth.service.email import EmailService


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.calls = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user))

    def sendmail(self, from_addr, to_addr, body):
        self.calls.append(("sendmail", from_addr, to_addr))
        self.body = body


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def configured(**overrides):
    params = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="pw",
        from_name="Fingerauth",
    )
    params.update(overrides)
    return EmailService(**params)


def test_unconfigured_service_logs_instead_of_sending(fake_smtp):
    service = EmailService()
    assert service.is_configured is False
    assert service.send_otp_code("a@x.com", "1234") is True
    assert fake_smtp.instances == []


def test_sends_code_over_starttls(fake_smtp):
    service = configured()
    assert service.send_otp_code("a@x.com", "4821", "en") is True

    server = fake_smtp.instances[0]
    assert (server.host, server.port) == ("smtp.example.com", 587)
    assert server.calls[0] == "starttls"
    assert ("login", "mailer@example.com") in server.calls
    assert ("sendmail", "mailer@example.com", "a@x.com") in server.calls

    message = message_from_string(server.body)
    assert message["Subject"] == "Email confirmation"
    text = message.get_payload()[0].get_payload(decode=True).decode()
    assert "4821" in text


def test_uses_default_locale(fake_smtp):
    configured(default_locale="ru").send_otp_code("a@x.com", "4821")
    message = message_from_string(fake_smtp.instances[0].body)
    text = message.get_payload()[0].get_payload(decode=True).decode()
    assert text.startswith("Ваш код подтверждения: 4821")


def test_smtp_failure_returns_false(monkeypatch):
    class RefusingSMTP(FakeSMTP):
        def sendmail(self, from_addr, to_addr, body):
            raise smtplib.SMTPRecipientsRefused({to_addr: (550, b"no such user")})

    monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)
    assert configured().send_otp_code("a@x.com", "1234") is False


def test_connection_error_returns_false(monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    assert configured().send_otp_code("a@x.com", "1234") is False


def test_dev_mode_preview_is_redacted_in_logs(monkeypatch):
    class RecordingLogger:
        def __init__(self):
            self.fields = {}

        def info(self, event, **fields):
            self.fields.update(fields)

    recorder = RecordingLogger()
    monkeypatch.setattr(email_module, "logger", recorder)
    EmailService().send_otp_code("a@x.com", "4821", "en")

    assert "4821" in recorder.fields["body_preview"]
    redacted = _redact_pii(None, "info", dict(recorder.fields))
    assert "4821" not in redacted["body_preview"]

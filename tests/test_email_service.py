import smtplib

import pytest

from moodcircle.service.email import EmailService


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in = None
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        self.messages.append((from_addr, to_addr, message))


@pytest.fixture(autouse=True)
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


def _service(**overrides):
    values = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="pw",
        from_email="no-reply@example.com",
        timeout_seconds=7.5,
    )
    values.update(overrides)
    return EmailService(**values)


def test_unconfigured_service_is_dev_mode():
    service = EmailService()
    assert service.is_configured is False
    assert service.send_otp("user@example.com", "123456", 10) is True
    assert FakeSMTP.instances == []


def test_sends_code_with_starttls_and_timeout():
    service = _service()

    assert service.send_otp("user@example.com", "042137", 10) is True

    smtp = FakeSMTP.instances[0]
    assert smtp.started_tls is True
    assert smtp.timeout == 7.5
    assert smtp.logged_in == ("mailer", "pw")
    from_addr, to_addr, message = smtp.messages[0]
    assert from_addr == "no-reply@example.com"
    assert to_addr == "user@example.com"
    assert "Your MoodCircle Verification Code" in message
    assert "042137" in message
    assert "expires in 10 minutes" in message


def test_ssl_mode_skips_starttls():
    service = _service(smtp_use_tls=False, smtp_port=465)
    assert service.send_otp("user@example.com", "123456", 10) is True
    assert FakeSMTP.instances[0].started_tls is False


@pytest.mark.parametrize(
    "error",
    [
        smtplib.SMTPAuthenticationError(535, b"bad credentials"),
        smtplib.SMTPRecipientsRefused({"user@example.com": (550, b"no such user")}),
        smtplib.SMTPServerDisconnected("gone"),
        TimeoutError("timed out"),
        ConnectionRefusedError("refused"),
    ],
)
def test_transport_failures_return_false(monkeypatch, error):
    def boom(self, *args, **kwargs):
        raise error

    monkeypatch.setattr(FakeSMTP, "sendmail", boom)

    assert _service().send_otp("user@example.com", "123456", 10) is False


def test_redacts_recipient_for_logs():
    service = _service()
    assert service._redact_email("someone@example.com") == "so***@example.com"
    assert service._redact_email("garbage") == "redacted"


def test_dev_mode_never_logs_the_code(monkeypatch):
    events = []

    class RecordingLogger:
        def __getattr__(self, level):
            return lambda event, **kw: events.append((event, kw))

    monkeypatch.setattr("moodcircle.service.email.logger", RecordingLogger())

    assert EmailService().send_otp("user@example.com", "042137", 10) is True

    assert events
    for event, context in events:
        assert "042137" not in event
        assert "042137" not in [str(value) for value in context.values()]


def test_otp_keys_are_redacted_in_logs():
    from moodcircle.logging import _redact_pii

    redacted = _redact_pii(None, "info", {"otp": "042137", "event": "x"})
    assert redacted["otp"] != "042137"

"""SMTP transport tests with smtplib replaced by in-process fakes."""

import smtplib

import pytest

from w9mail.service import email as email_module
from w9mail.service.email import EmailService, split_addresses
from w9mail.service.senders import SenderCredentials

CREDS = SenderCredentials(
    header_from="hello@w9.test", auth_email="box@w9.test", auth_password="smtp-secret"
)


class FakeSMTP:
    instances = []
    fail_login = False

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        if FakeSMTP.fail_login:
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addrs, msg):
        self.sent.append((from_addr, list(to_addrs), msg))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_login = False
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(email_module.smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


class TestEmailService:
    async def test_starttls_login_with_mailbox_credentials(self, fake_smtp):
        service = EmailService(smtp_host="smtp.w9.test", smtp_port=587, timeout=5.0)

        ok = await service.send(
            CREDS, "a@x.com, B <b@x.com>", "Hi", "Body", cc="c@x.com", bcc="d@x.com"
        )

        assert ok is True
        server = fake_smtp.instances[0]
        assert (server.host, server.port, server.timeout) == ("smtp.w9.test", 587, 5.0)
        assert server.started_tls is True
        assert server.logged_in == ("box@w9.test", "smtp-secret")
        from_addr, recipients, raw = server.sent[0]
        assert from_addr == "hello@w9.test"
        assert recipients == ["a@x.com", "b@x.com", "c@x.com", "d@x.com"]
        assert "From: hello@w9.test" in raw
        assert "Cc: c@x.com" in raw
        assert "d@x.com" not in raw.split("\n\n", 1)[0]

    async def test_implicit_tls_when_starttls_disabled(self, fake_smtp):
        service = EmailService(smtp_host="smtp.w9.test", smtp_port=465, smtp_use_tls=False)

        assert await service.send(CREDS, "a@x.com", "Hi", "Body") is True
        assert fake_smtp.instances[0].started_tls is False

    async def test_auth_failure_returns_false(self, fake_smtp):
        fake_smtp.fail_login = True
        service = EmailService(smtp_host="smtp.w9.test")

        assert await service.send(CREDS, "a@x.com", "Hi", "Body") is False

    async def test_connection_refused_returns_false(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(email_module.smtplib, "SMTP", refuse)
        service = EmailService(smtp_host="smtp.w9.test")

        assert await service.send(CREDS, "a@x.com", "Hi", "Body") is False

    async def test_dev_mode_logs_instead_of_sending(self, fake_smtp):
        service = EmailService()

        assert service.is_configured is False
        assert await service.send(CREDS, "a@x.com", "Hi", "Body") is True
        assert fake_smtp.instances == []

    async def test_header_injection_in_subject_returns_false(self, fake_smtp):
        service = EmailService(smtp_host="smtp.w9.test")

        ok = await service.send(CREDS, "b@x.com", "hi\r\nBcc: evil@x.com", "body")

        assert ok is False
        assert all(server.sent == [] for server in fake_smtp.instances)

    async def test_no_recipients_is_failure(self, fake_smtp):
        assert await EmailService().send(CREDS, "", "Hi", "Body") is False


def test_split_addresses():
    assert split_addresses(None) == []
    assert split_addresses("a@x.com,  b@x.com") == ["a@x.com", "b@x.com"]
    assert split_addresses('"Doe, J" <j@x.com>, k@x.com') == ["j@x.com", "k@x.com"]

from __future__ import annotations

import smtplib

import pytest

from handbook_accounts.domain.messages import password_reset_mail, verification_mail
from handbook_accounts.mail import (
    DeliveryStatus,
    OutgoingMail,
    SmtpMailTransport,
    classify_smtp_error,
)


class FakeSocket:
    def __init__(self) -> None:
        self.timeouts: list[float] = []

    def settimeout(self, value: float) -> None:
        self.timeouts.append(value)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeSMTP:
    """Stands in for ``smtplib.SMTP``/``SMTP_SSL`` and records the session."""

    instances: list["FakeSMTP"] = []
    failure: Exception | None = None
    login_delay = 0.0
    clock: FakeClock | None = None

    def __init__(self, host: str, port: int, timeout: float) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.sock = FakeSocket()
        self.logged_in: tuple[str, str] | None = None
        self.started_tls = False
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, username: str, password: str):
        self.logged_in = (username, password)
        if FakeSMTP.clock is not None:
            FakeSMTP.clock.now += FakeSMTP.login_delay

    def send_message(self, message):
        if FakeSMTP.failure is not None:
            raise FakeSMTP.failure
        self.messages.append(message)


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.failure = None
    FakeSMTP.login_delay = 0.0
    FakeSMTP.clock = None
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def _transport(**overrides) -> SmtpMailTransport:
    options = dict(host="smtp.test", port=465, sender="no-reply@handbook.test", timeout=5.0)
    options.update(overrides)
    return SmtpMailTransport(**options)


MAIL = OutgoingMail(
    to="user@example.com",
    subject="Hello",
    html_body="<p>Hello</p>",
    text_body="Hello",
)


def test_send_over_ssl(fake_smtp):
    result = _transport(username="relay", password="pw").send(MAIL)

    assert result.ok
    (session,) = fake_smtp.instances
    assert (session.host, session.port, session.timeout) == ("smtp.test", 465, 5.0)
    assert session.logged_in == ("relay", "pw")
    assert not session.started_tls
    (message,) = session.messages
    assert message["To"] == "user@example.com"
    assert message["From"] == "no-reply@handbook.test"
    assert message.is_multipart()


def test_send_with_starttls_and_no_login(fake_smtp):
    result = _transport(use_ssl=False, port=587).send(MAIL)

    assert result.status is DeliveryStatus.sent
    (session,) = fake_smtp.instances
    assert session.started_tls
    assert session.logged_in is None


def test_recipient_refusal_is_mailbox_rejection(fake_smtp):
    fake_smtp.failure = smtplib.SMTPRecipientsRefused(
        {"user@example.com": (550, b"5.1.1 mailbox unavailable")}
    )

    result = _transport().send(MAIL)

    assert result.status is DeliveryStatus.mailbox_rejected
    assert not result.ok


def test_timeout_is_transient(fake_smtp):
    fake_smtp.failure = TimeoutError("timed out")

    assert _transport().send(MAIL).status is DeliveryStatus.transient_failure


def test_sender_refusal_is_transient(fake_smtp):
    fake_smtp.failure = smtplib.SMTPSenderRefused(
        553, b"5.7.1 sender address rejected", "no-reply@handbook.test"
    )

    assert _transport().send(MAIL).status is DeliveryStatus.transient_failure


def test_later_steps_get_remaining_budget(fake_smtp):
    clock = FakeClock()
    fake_smtp.clock = clock
    fake_smtp.login_delay = 3.0

    result = _transport(username="relay", password="pw", clock=clock).send(MAIL)

    assert result.ok
    (session,) = fake_smtp.instances
    assert session.sock.timeouts == [5.0, 2.0]


def test_overall_deadline_stops_the_send(fake_smtp):
    clock = FakeClock()
    fake_smtp.clock = clock
    fake_smtp.login_delay = 6.0

    result = _transport(username="relay", password="pw", clock=clock).send(MAIL)

    assert result.status is DeliveryStatus.transient_failure
    (session,) = fake_smtp.instances
    assert session.messages == []


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (smtplib.SMTPRecipientsRefused({"a@b.c": (553, b"bad mailbox")}), DeliveryStatus.mailbox_rejected),
        (smtplib.SMTPRecipientsRefused({"a@b.c": (450, b"try later")}), DeliveryStatus.transient_failure),
        (smtplib.SMTPDataError(551, b"user not local"), DeliveryStatus.mailbox_rejected),
        (smtplib.SMTPDataError(421, b"service closing"), DeliveryStatus.transient_failure),
        (
            smtplib.SMTPSenderRefused(553, b"5.7.1 sender address rejected", "no-reply@handbook.test"),
            DeliveryStatus.transient_failure,
        ),
        (
            smtplib.SMTPSenderRefused(550, b"5.1.0 sender unknown", "no-reply@handbook.test"),
            DeliveryStatus.transient_failure,
        ),
        (smtplib.SMTPAuthenticationError(535, b"bad credentials"), DeliveryStatus.transient_failure),
        (smtplib.SMTPServerDisconnected("gone"), DeliveryStatus.transient_failure),
        (ConnectionRefusedError(), DeliveryStatus.transient_failure),
    ],
)
def test_classify_smtp_error(exc, expected):
    assert classify_smtp_error(exc).status is expected


def test_verification_mail_links_to_verify_endpoint():
    mail = verification_mail("user@example.com", "abc-123", "https://handbook.test/")

    assert mail.to == "user@example.com"
    assert "https://handbook.test/v1/verify?code=abc-123" in mail.text_body
    assert 'href="https://handbook.test/v1/verify?code=abc-123"' in mail.html_body


def test_password_reset_mail_links_to_reset_page():
    mail = password_reset_mail("user@example.com", "tok&en", "https://app.handbook.test/reset-password")

    assert "https://app.handbook.test/reset-password?token=tok%26en" in mail.text_body
    assert 'href="https://app.handbook.test/reset-password?token=tok%26en"' in mail.html_body
    assert mail.subject == "Password reset request"


def test_password_reset_mail_keeps_existing_query():
    mail = password_reset_mail("user@example.com", "abc", "https://app.handbook.test/#/account?view=reset")

    assert "https://app.handbook.test/#/account?view=reset&token=abc" in mail.text_body
    assert "view=reset&amp;token=abc" in mail.html_body

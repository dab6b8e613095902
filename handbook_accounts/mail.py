"""Outbound e-mail over SMTP with classified delivery outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from email.message import EmailMessage
from enum import Enum
import logging
import smtplib
import time
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

# Reply codes meaning the recipient mailbox itself was refused.
MAILBOX_REJECTION_CODES = frozenset({550, 551, 553})


class DeliveryStatus(str, Enum):
    sent = "sent"
    mailbox_rejected = "mailbox_rejected"
    transient_failure = "transient_failure"


@dataclass(slots=True, frozen=True)
class DeliveryResult:
    """Outcome of one send attempt."""

    status: DeliveryStatus
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is DeliveryStatus.sent


@dataclass(slots=True, frozen=True)
class OutgoingMail:
    to: str
    subject: str
    html_body: str
    text_body: str


class MailTransport(Protocol):
    def send(self, mail: OutgoingMail) -> DeliveryResult: ...


def classify_smtp_error(exc: Exception) -> DeliveryResult:
    """Map an SMTP/socket failure onto a delivery status.

    Only refusals aimed at the recipient count as mailbox rejections; a
    refused envelope sender is a relay configuration problem.
    """
    if isinstance(exc, smtplib.SMTPSenderRefused):
        return DeliveryResult(DeliveryStatus.transient_failure, f"sender refused: {exc.smtp_code}")
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        codes = {code for code, _ in exc.recipients.values()}
        if codes & MAILBOX_REJECTION_CODES:
            return DeliveryResult(DeliveryStatus.mailbox_rejected, f"recipient refused: {sorted(codes)}")
        return DeliveryResult(DeliveryStatus.transient_failure, f"recipient refused: {sorted(codes)}")
    if isinstance(exc, smtplib.SMTPResponseException) and exc.smtp_code in MAILBOX_REJECTION_CODES:
        return DeliveryResult(DeliveryStatus.mailbox_rejected, f"smtp {exc.smtp_code}")
    return DeliveryResult(DeliveryStatus.transient_failure, type(exc).__name__)


class SmtpMailTransport:
    """Sends mail through an SMTP relay within an overall time budget."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        sender: str,
        username: str = "",
        password: str = "",
        use_ssl: bool = True,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._host = host
        self._port = port
        self._sender = sender
        self._username = username
        self._password = password
        self._use_ssl = use_ssl
        self._timeout = timeout
        self._clock = clock

    def _remaining(self, started: float) -> float:
        remaining = self._timeout - (self._clock() - started)
        if remaining <= 0:
            raise TimeoutError(f"smtp send exceeded {self._timeout}s")
        return remaining

    def _next_step(self, conn: smtplib.SMTP, started: float) -> None:
        """Shrink the socket timeout to what is left of the overall budget."""
        remaining = self._remaining(started)
        if conn.sock is not None:
            conn.sock.settimeout(remaining)

    def _connect(self) -> smtplib.SMTP:
        smtp_class = smtplib.SMTP_SSL if self._use_ssl else smtplib.SMTP
        return smtp_class(host=self._host, port=self._port, timeout=self._timeout)

    def _build_message(self, mail: OutgoingMail) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._sender
        message["To"] = mail.to
        message["Subject"] = mail.subject
        message.set_content(mail.text_body)
        message.add_alternative(mail.html_body, subtype="html")
        return message

    def send(self, mail: OutgoingMail) -> DeliveryResult:
        """Deliver ``mail`` and report the outcome instead of raising.

        ``timeout`` bounds the whole exchange: every step after the connect
        only gets the time left over, and an exhausted budget is reported as
        a transient failure.
        """
        message = self._build_message(mail)
        started = self._clock()
        try:
            with self._connect() as conn:
                if not self._use_ssl:
                    self._next_step(conn, started)
                    conn.starttls()
                if self._username:
                    self._next_step(conn, started)
                    conn.login(self._username, self._password)
                self._next_step(conn, started)
                conn.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            result = classify_smtp_error(exc)
            logger.warning("mail to %s failed: %s (%s)", mail.to, result.status.value, result.detail)
            return result
        logger.info("mail sent to %s: %s", mail.to, mail.subject)
        return DeliveryResult(DeliveryStatus.sent)

"""Typed failures raised by the account lifecycle operations.

Each error carries a stable ``code`` so the HTTP boundary can map it onto a
transport-level response without inspecting messages.
"""

from __future__ import annotations


class AccountError(Exception):
    """Base class for every failure surfaced by :class:`AccountService`."""

    code = "account_error"
    default_message = "account operation failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class RateLimited(AccountError):
    code = "rate_limited"
    default_message = "Too many failed attempts. Please try again later."


class InvalidCredentials(AccountError):
    code = "invalid_credentials"
    default_message = "Invalid credentials"


class InvalidEmail(AccountError):
    code = "invalid_email"
    default_message = "Invalid e-mail address"


class EmailTaken(AccountError):
    code = "email_taken"
    default_message = "An account with this e-mail is already registered"


class InvalidMailbox(AccountError):
    code = "invalid_mailbox"
    default_message = "The mailbox rejected the confirmation e-mail"


class MailError(AccountError):
    code = "mail_error"
    default_message = "Could not send the confirmation e-mail"


class InternalError(AccountError):
    """Unexpected failure; the cause is chained but never shown to callers."""

    code = "internal_error"
    default_message = "Internal error, please try again later"


class NotFound(AccountError):
    code = "not_found"
    default_message = "Not found"


class WeakPassword(AccountError):
    code = "weak_password"
    default_message = (
        "Password must be at least 6 characters and contain both letters and digits"
    )


class InvalidFormat(AccountError):
    code = "invalid_format"
    default_message = "Username must be 1-12 characters long, only Latin letters and digits"


class UsernameTaken(AccountError):
    code = "username_taken"
    default_message = "Username is already taken"


class InvalidToken(AccountError):
    code = "invalid_token"
    default_message = "Invalid or expired token"

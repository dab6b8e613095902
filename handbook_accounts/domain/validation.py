"""Input validation rules for e-mail addresses, passwords and usernames."""

from __future__ import annotations

import logging
import re

import dns.exception
import dns.resolver

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9+_.-]+@[A-Za-z0-9.-]+$")
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9]{1,12}$")
PASSWORD_MIN_LENGTH = 6


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return EMAIL_PATTERN.fullmatch(email) is not None


def is_valid_username(username: str) -> bool:
    return USERNAME_PATTERN.fullmatch(username) is not None


def is_strong_password(password: str) -> bool:
    """At least six characters with at least one letter and one digit."""
    return (
        len(password) >= PASSWORD_MIN_LENGTH
        and any(ch.isalpha() for ch in password)
        and any(ch.isdigit() for ch in password)
    )


class MailExchangerCheck:
    """Best-effort lookup of the MX records for an address' domain.

    ``accepts_mail`` answers ``False`` only when DNS definitively reports that
    the domain has no mail exchanger; lookup failures answer ``None`` so the
    caller can proceed.
    """

    def __init__(self, timeout: float = 3.0, resolver: dns.resolver.Resolver | None = None) -> None:
        self._timeout = timeout
        self._resolver = resolver

    def accepts_mail(self, email: str) -> bool | None:
        domain = email.rpartition("@")[2]
        if not domain:
            return False
        try:
            if self._resolver is None:
                self._resolver = dns.resolver.Resolver()
            answer = self._resolver.resolve(domain, "MX", lifetime=self._timeout)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return False
        except dns.exception.DNSException as exc:
            logger.warning("mx lookup for %s failed, treating as unknown: %s", domain, exc)
            return None
        return len(answer) > 0

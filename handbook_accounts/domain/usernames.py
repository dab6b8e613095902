"""Derivation of unique handles from e-mail local parts."""

from __future__ import annotations

import logging
import re
from typing import Protocol

from .errors import InternalError

logger = logging.getLogger(__name__)

MAX_USERNAME_LENGTH = 12
FALLBACK_USERNAME = "user"

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]")


class UsernameLookup(Protocol):
    def is_username_taken(self, username: str, excluding_account_id: int | None = None) -> bool: ...


def base_username(email_local_part: str) -> str:
    """Strip non-alphanumerics, fall back to ``user`` and cap the length."""
    cleaned = _NON_ALPHANUMERIC.sub("", email_local_part)
    return (cleaned or FALLBACK_USERNAME)[:MAX_USERNAME_LENGTH]


class UsernameAllocator:
    """Finds the first free handle among ``base``, ``base1``, ``base2``, ..."""

    def __init__(self, lookup: UsernameLookup, max_attempts: int = 1000) -> None:
        self._lookup = lookup
        self._max_attempts = max_attempts

    def is_taken(self, username: str, excluding_account_id: int | None = None) -> bool:
        return self._lookup.is_username_taken(username, excluding_account_id)

    def allocate(self, email_local_part: str) -> str:
        """Return an unused username derived from ``email_local_part``.

        Raises
        ------
        InternalError
            When no free handle is found within ``max_attempts`` candidates.
        """
        base = base_username(email_local_part)
        if not self.is_taken(base):
            return base
        for suffix in range(1, self._max_attempts):
            tail = str(suffix)
            candidate = base[: MAX_USERNAME_LENGTH - len(tail)] + tail
            if not self.is_taken(candidate):
                return candidate
        logger.error("username allocation for base %s exhausted %d attempts", base, self._max_attempts)
        raise InternalError("could not allocate a username")

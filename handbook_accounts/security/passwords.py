"""bcrypt-backed password hashing."""

from __future__ import annotations

import bcrypt

# bcrypt only consumes the first 72 bytes; newer releases reject longer input.
_BCRYPT_MAX_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


class PasswordHasher:
    """Salted, cost-parameterised one-way password hashing."""

    def __init__(self, rounds: int = 12) -> None:
        self._rounds = rounds

    def hash(self, password: str) -> str:
        """Return a bcrypt hash embedding a fresh salt."""
        hashed = bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=self._rounds))
        return hashed.decode("ascii")

    def verify(self, password: str, password_hash: str) -> bool:
        """Return ``True`` when ``password`` matches ``password_hash``.

        A malformed or empty hash yields ``False`` instead of an error.
        """
        if not password_hash:
            return False
        try:
            return bcrypt.checkpw(_encode(password), password_hash.encode("ascii"))
        except (ValueError, UnicodeEncodeError):
            return False

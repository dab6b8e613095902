"""Utilities for issuing and validating session JWTs and reset tokens."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import secrets
import time
from typing import Any

import jwt

from ..domain.errors import InvalidToken

_ALGORITHM = "HS256"


@dataclass(slots=True, frozen=True)
class SessionClaims:
    """Identity asserted by a verified session token."""

    account_id: int
    email: str
    audience: str | None = None


class TokenIssuer:
    """Signs and verifies compact bearer tokens with a symmetric secret."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        default_audience: str | None = None,
        ttl_seconds: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret
        self._issuer = issuer
        self._default_audience = default_audience
        self._ttl_seconds = ttl_seconds

    @property
    def default_audience(self) -> str | None:
        return self._default_audience

    def issue(self, account_id: int, email: str, audience: str | None = None) -> str:
        """Create a signed JWT representing an authenticated account.

        Parameters
        ----------
        account_id:
            Account identifier embedded in the ``sub`` and ``account_id`` claims.
        email:
            E-mail address of the account.
        audience:
            Optional ``aud`` claim; falls back to the issuer's default audience.

        Returns
        -------
        str
            The encoded JWT. An ``exp`` claim is only added when a TTL is configured.
        """
        now = int(time.time())
        payload: dict[str, Any] = {
            "iss": self._issuer,
            "sub": str(account_id),
            "account_id": account_id,
            "email": email,
            "iat": now,
        }
        aud = audience or self._default_audience
        if aud:
            payload["aud"] = aud
        if self._ttl_seconds > 0:
            payload["exp"] = now + self._ttl_seconds
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify(self, token: str, audience: str | None = None) -> SessionClaims:
        """Decode and verify a JWT returning its identity claims.

        Parameters
        ----------
        token:
            Encoded JWT issued by this service.
        audience:
            When given, the token must carry a matching ``aud`` claim.

        Raises
        ------
        InvalidToken
            On signature mismatch, malformed structure, missing claims, audience
            mismatch or an elapsed ``exp``.
        """
        options = {"verify_aud": audience is not None}
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                audience=audience,
                issuer=self._issuer,
                options=options,
            )
        except jwt.PyJWTError as exc:
            raise InvalidToken("invalid session token") from exc

        account_id = payload.get("account_id")
        email = payload.get("email")
        if not isinstance(account_id, int) or not isinstance(email, str):
            raise InvalidToken("session token is missing account claims")
        return SessionClaims(account_id=account_id, email=email, audience=payload.get("aud"))


def generate_reset_token() -> tuple[str, str]:
    """Generate a password-reset token string and its SHA-256 digest."""
    token = secrets.token_urlsafe(32)
    return token, hash_reset_token(token)


def hash_reset_token(token: str) -> str:
    """Return the SHA-256 hex digest for a reset token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Avatar(str, Enum):
    """Avatar tags handed out at registration."""

    bee = "bee"
    beer = "beer"
    deer = "deer"
    fox = "fox"
    monkey = "monkey"
    owl = "owl"
    panda = "panda"
    penguin = "penguin"
    roe_deer = "roe_deer"


@dataclass(slots=True)
class Account:
    """Aggregate root for a handbook user account.

    ``verification_code`` is set only while the account is pending and
    ``reset_token`` holds the digest of an open password-reset token.
    """

    account_id: int
    email: str
    password_hash: str
    username: str
    avatar: str
    is_verified: bool
    created_at: datetime
    verification_code: str | None = None
    reset_token: str | None = None

    def profile(self) -> "AccountProfile":
        return AccountProfile(
            account_id=self.account_id,
            email=self.email,
            username=self.username,
            avatar=self.avatar,
            is_verified=self.is_verified,
        )


@dataclass(slots=True, frozen=True)
class AccountProfile:
    """Public projection of an account; safe to return to clients."""

    account_id: int
    email: str
    username: str
    avatar: str
    is_verified: bool

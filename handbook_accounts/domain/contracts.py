"""Domain-level contracts shared by the service, the store and the boundary."""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Protocol

from .account import Account, AccountProfile


@dataclass(slots=True, frozen=True)
class LoginResult:
    """Session token plus the public fields of the authenticated account."""

    token: str
    profile: AccountProfile


@dataclass(slots=True, frozen=True)
class RegistrationResult:
    """Outcome of a committed registration."""

    token: str
    profile: AccountProfile


class AccountQueries(Protocol):
    """Account operations available both standalone and inside a transaction."""

    def find_by_email(self, email: str) -> Account | None: ...

    def find_by_id(self, account_id: int) -> Account | None: ...

    def find_by_username(self, username: str) -> Account | None: ...

    def find_by_verification_code(self, code: str) -> Account | None: ...

    def find_by_reset_token(self, token_digest: str) -> Account | None: ...

    def is_username_taken(self, username: str, excluding_account_id: int | None = None) -> bool: ...

    def insert_pending_account(
        self,
        *,
        email: str,
        password_hash: str,
        verification_code: str,
        avatar: str,
        username: str,
    ) -> Account: ...

    def set_verified(self, account_id: int, verification_code: str) -> int: ...

    def set_reset_token(self, account_id: int, token_digest: str) -> int: ...

    def clear_reset_token_and_set_password(
        self, account_id: int, token_digest: str, password_hash: str
    ) -> int: ...

    def update_username(self, account_id: int, username: str) -> AccountProfile | None: ...


class AccountStore(AccountQueries, Protocol):
    """Account persistence with an explicit multi-statement transaction."""

    def transaction(self) -> AbstractContextManager[AccountQueries]: ...

from __future__ import annotations

import copy
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest

from handbook_accounts.domain.account import Account, AccountProfile
from handbook_accounts.domain.service import AccountService
from handbook_accounts.mail import DeliveryResult, DeliveryStatus, OutgoingMail
from handbook_accounts.repository import UniqueConflict
from handbook_accounts.security.login_throttle import LoginThrottle
from handbook_accounts.security.passwords import PasswordHasher
from handbook_accounts.security.tokens import TokenIssuer

TEST_AUDIENCE = "handbook-app"


class FakeAccountStore:
    """In-memory account store mimicking the Postgres-backed behaviours.

    ``transaction()`` snapshots the rows and restores them when the block
    raises, which is how the real store's rollback looks to callers.
    """

    def __init__(self) -> None:
        self.accounts: dict[int, Account] = {}
        self._next_id = 1
        self.transactions_opened = 0
        self.rollbacks = 0

    @contextmanager
    def transaction(self):
        self.transactions_opened += 1
        snapshot = (copy.deepcopy(self.accounts), self._next_id)
        try:
            yield self
        except BaseException:
            self.accounts, self._next_id = snapshot
            self.rollbacks += 1
            raise

    def _first(self, predicate) -> Account | None:
        for account in self.accounts.values():
            if predicate(account):
                return copy.deepcopy(account)
        return None

    def find_by_email(self, email: str) -> Account | None:
        return self._first(lambda a: a.email == email)

    def find_by_id(self, account_id: int) -> Account | None:
        return copy.deepcopy(self.accounts.get(account_id))

    def find_by_username(self, username: str) -> Account | None:
        if not username:
            return None
        return self._first(lambda a: a.username == username)

    def find_by_verification_code(self, code: str) -> Account | None:
        return self._first(lambda a: a.verification_code == code and not a.is_verified)

    def find_by_reset_token(self, token_digest: str) -> Account | None:
        return self._first(lambda a: a.reset_token == token_digest)

    def is_username_taken(self, username: str, excluding_account_id: int | None = None) -> bool:
        return self._username_held(username, excluding_account_id)

    def _username_held(self, username: str, excluding_account_id: int | None = None) -> bool:
        # unique index check; tests may patch is_username_taken to simulate stale reads
        return any(
            a.username == username and a.account_id != excluding_account_id
            for a in self.accounts.values()
        )

    def insert_pending_account(
        self,
        *,
        email: str,
        password_hash: str,
        verification_code: str,
        avatar: str,
        username: str,
    ) -> Account:
        if self.find_by_email(email) is not None:
            raise UniqueConflict("email")
        if username and self._username_held(username):
            raise UniqueConflict("username")
        account = Account(
            account_id=self._next_id,
            email=email,
            password_hash=password_hash,
            username=username,
            avatar=avatar,
            is_verified=False,
            created_at=datetime.now(timezone.utc),
            verification_code=verification_code,
        )
        self.accounts[account.account_id] = account
        self._next_id += 1
        return copy.deepcopy(account)

    def set_verified(self, account_id: int, verification_code: str) -> int:
        account = self.accounts.get(account_id)
        if account is None or account.is_verified or account.verification_code != verification_code:
            return 0
        account.is_verified = True
        account.verification_code = None
        return 1

    def set_reset_token(self, account_id: int, token_digest: str) -> int:
        account = self.accounts.get(account_id)
        if account is None:
            return 0
        account.reset_token = token_digest
        return 1

    def clear_reset_token_and_set_password(
        self, account_id: int, token_digest: str, password_hash: str
    ) -> int:
        account = self.accounts.get(account_id)
        if account is None or account.reset_token != token_digest:
            return 0
        account.password_hash = password_hash
        account.reset_token = None
        return 1

    def update_username(self, account_id: int, username: str) -> AccountProfile | None:
        account = self.accounts.get(account_id)
        if account is None:
            return None
        if self._username_held(username, excluding_account_id=account_id):
            raise UniqueConflict("username")
        account.username = username
        return account.profile()

    def rows_for(self, email: str) -> list[Account]:
        return [a for a in self.accounts.values() if a.email == email]


class FakeMailer:
    """Mail transport double recording every attempt."""

    def __init__(self) -> None:
        self.sent: list[OutgoingMail] = []
        self.result = DeliveryResult(DeliveryStatus.sent)
        self.error: Exception | None = None

    def send(self, mail: OutgoingMail) -> DeliveryResult:
        self.sent.append(mail)
        if self.error is not None:
            raise self.error
        return self.result

    def fail_with(self, status: DeliveryStatus) -> None:
        self.result = DeliveryResult(status, "simulated")


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store() -> FakeAccountStore:
    return FakeAccountStore()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def throttle(clock: FakeClock) -> LoginThrottle:
    return LoginThrottle(max_failures=3, window_seconds=60, clock=clock)


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def tokens() -> TokenIssuer:
    return TokenIssuer("test-secret", issuer="handbook.test", default_audience=TEST_AUDIENCE)


@pytest.fixture
def make_service(store, mailer, throttle, hasher, tokens):
    """Build an ``AccountService`` over the shared fakes, with optional overrides."""

    def _make(**overrides) -> AccountService:
        options = dict(
            hasher=hasher,
            tokens=tokens,
            throttle=throttle,
            mailer=mailer,
            public_base_url="https://handbook.test",
            password_reset_url="https://app.handbook.test/reset-password",
            avatar_picker=lambda: "fox",
        )
        options.update(overrides)
        return AccountService(store, **options)

    return _make


@pytest.fixture
def service(make_service) -> AccountService:
    return make_service()


@pytest.fixture
def verification_code_for(store: FakeAccountStore):
    def _lookup(email: str) -> str:
        (account,) = store.rows_for(email)
        assert account.verification_code
        return account.verification_code

    return _lookup


@pytest.fixture
def reset_token_from(mailer: FakeMailer):
    """Extract the raw reset token from the last reset e-mail."""

    def _extract() -> str:
        body = mailer.sent[-1].text_body
        return body.split("token=", 1)[1].split()[0]

    return _extract


"""Account service orchestrating persistence, credentials, tokens and mail."""

from __future__ import annotations

from dataclasses import replace
from functools import wraps
import logging
import random
import uuid
from typing import Callable, ParamSpec, TypeVar

from prometheus_client import Counter

from .account import Account, AccountProfile, Avatar
from .contracts import AccountStore, LoginResult, RegistrationResult
from .errors import (
    AccountError,
    EmailTaken,
    InternalError,
    InvalidCredentials,
    InvalidEmail,
    InvalidFormat,
    InvalidMailbox,
    InvalidToken,
    MailError,
    NotFound,
    RateLimited,
    UsernameTaken,
    WeakPassword,
)
from .messages import password_reset_mail, verification_mail
from .usernames import UsernameAllocator
from .validation import (
    MailExchangerCheck,
    is_strong_password,
    is_valid_email,
    is_valid_username,
    normalize_email,
)
from ..mail import DeliveryStatus, MailTransport
from ..repository import UniqueConflict
from ..security.login_throttle import LoginThrottle
from ..security.passwords import PasswordHasher
from ..security.tokens import TokenIssuer, generate_reset_token, hash_reset_token

logger = logging.getLogger(__name__)

ACCOUNT_EVENTS = Counter(
    "handbook_account_events_total",
    "Account lifecycle events by type.",
    ["event"],
)

FORGOT_PASSWORD_ACK = "If this email is registered, a reset link has been sent"

# Registration transactions rerun after losing a username race to a concurrent insert.
USERNAME_RACE_RETRIES = 3

P = ParamSpec("P")
R = TypeVar("R")


def _collapse_unexpected(func: Callable[P, R]) -> Callable[P, R]:
    """Turn anything that is not an :class:`AccountError` into ``InternalError``."""

    @wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return func(*args, **kwargs)
        except AccountError:
            raise
        except Exception as exc:
            logger.exception("%s failed unexpectedly", func.__name__)
            raise InternalError() from exc

    return wrapper


def _random_avatar() -> str:
    return random.choice(list(Avatar)).value


class AccountService:
    """Account lifecycle: login, registration, verification, reset and profile updates."""

    def __init__(
        self,
        repository: AccountStore,
        *,
        hasher: PasswordHasher,
        tokens: TokenIssuer,
        throttle: LoginThrottle,
        mailer: MailTransport,
        public_base_url: str,
        password_reset_url: str,
        mx_check: MailExchangerCheck | None = None,
        username_max_attempts: int = 1000,
        avatar_picker: Callable[[], str] = _random_avatar,
    ) -> None:
        """Store the collaborators used by every workflow."""
        self._repository = repository
        self._hasher = hasher
        self._tokens = tokens
        self._throttle = throttle
        self._mailer = mailer
        self._public_base_url = public_base_url
        self._password_reset_url = password_reset_url
        self._mx_check = mx_check
        self._username_max_attempts = username_max_attempts
        self._avatar_picker = avatar_picker

    def _record_event(self, event: str, account_id: int | None = None) -> None:
        ACCOUNT_EVENTS.labels(event=event).inc()
        logger.info("account event %s account_id=%s", event, account_id)

    def _is_blocked(self, client_key: str) -> bool:
        try:
            return self._throttle.is_blocked(client_key)
        except Exception:
            logger.warning("login throttle check failed for %s, allowing", client_key, exc_info=True)
            return False

    def _record_login_failure(self, client_key: str) -> None:
        try:
            self._throttle.record_failure(client_key)
        except Exception:
            logger.warning("login throttle update failed for %s", client_key, exc_info=True)

    def _find_by_identifier(self, identifier: str) -> Account | None:
        identifier = identifier.strip()
        if "@" in identifier:
            return self._repository.find_by_email(normalize_email(identifier))
        return self._repository.find_by_username(identifier)

    @_collapse_unexpected
    def login(self, identifier: str, raw_password: str, client_key: str) -> LoginResult:
        """Authenticate by e-mail or username and issue a session token.

        Only lookups of unknown accounts feed the login throttle; a wrong
        password for an existing account is rejected without counting.
        """
        if self._is_blocked(client_key):
            self._record_event("login.rate_limited")
            raise RateLimited()

        account = self._find_by_identifier(identifier)
        if account is None:
            self._record_login_failure(client_key)
            self._record_event("login.unknown_account")
            raise InvalidCredentials()

        if not self._hasher.verify(raw_password, account.password_hash):
            self._record_event("login.wrong_password", account.account_id)
            raise InvalidCredentials()

        token = self._tokens.issue(account.account_id, account.email)
        self._record_event("login.succeeded", account.account_id)
        return LoginResult(token=token, profile=account.profile())

    @_collapse_unexpected
    def register(self, email: str, raw_password: str) -> RegistrationResult:
        """Create a pending account and send its confirmation e-mail atomically.

        The row is inserted and the mail sent inside one transaction; the row
        is committed only when the mail transport reports success, so a failed
        registration never leaves an account behind. Losing a username race to
        a concurrent registration reruns the whole transaction, up to
        ``USERNAME_RACE_RETRIES`` times.

        Raises
        ------
        InvalidEmail
            Malformed address, or DNS reports that the domain accepts no mail.
        EmailTaken
            The address already belongs to an account.
        InvalidMailbox
            The mail server permanently rejected the recipient.
        MailError
            Any other mail transport failure.
        InternalError
            Any unexpected failure; the transaction has been rolled back.
        """
        email = normalize_email(email)
        if not is_valid_email(email):
            raise InvalidEmail("Malformed e-mail address")
        if self._mx_check is not None and self._mx_check.accepts_mail(email) is False:
            raise InvalidEmail("The e-mail domain does not accept mail")
        if self._repository.find_by_email(email) is not None:
            raise EmailTaken()

        password_hash = self._hasher.hash(raw_password)
        local_part = email.partition("@")[0]
        for attempt in range(1, USERNAME_RACE_RETRIES + 1):
            try:
                account, token = self._create_pending(email, password_hash, local_part)
            except UniqueConflict as exc:
                if exc.column == "email":
                    raise EmailTaken() from exc
                if exc.column != "username" or attempt == USERNAME_RACE_RETRIES:
                    raise
                logger.info("username race on registration, retrying (attempt %d)", attempt)
            except AccountError as exc:
                logger.warning("registration rolled back: %s", exc.code)
                raise
            else:
                break

        self._record_event("account.registered", account.account_id)
        return RegistrationResult(token=token, profile=account.profile())

    def _create_pending(
        self, email: str, password_hash: str, local_part: str
    ) -> tuple[Account, str]:
        """Insert the pending row and send its confirmation mail in one transaction."""
        with self._repository.transaction() as tx:
            verification_code = str(uuid.uuid4())
            username = UsernameAllocator(tx, self._username_max_attempts).allocate(local_part)
            account = tx.insert_pending_account(
                email=email,
                password_hash=password_hash,
                verification_code=verification_code,
                avatar=self._avatar_picker(),
                username=username,
            )
            delivery = self._mailer.send(
                verification_mail(email, verification_code, self._public_base_url)
            )
            if delivery.status is DeliveryStatus.mailbox_rejected:
                raise InvalidMailbox()
            if not delivery.ok:
                raise MailError()
            return account, self._tokens.issue(account.account_id, account.email)

    @_collapse_unexpected
    def verify(self, code: str) -> AccountProfile:
        """Consume a verification code and mark its account verified."""
        account = self._repository.find_by_verification_code(code) if code else None
        if account is None:
            raise NotFound("Invalid or expired code")
        if self._repository.set_verified(account.account_id, code) == 0:
            raise InternalError("Verification failed")
        self._record_event("account.verified", account.account_id)
        return replace(account.profile(), is_verified=True)

    @_collapse_unexpected
    def forgot_password(self, email: str) -> str:
        """Start a reset flow when the account exists; always answer the same way."""
        account = self._repository.find_by_email(normalize_email(email))
        if account is None:
            return FORGOT_PASSWORD_ACK

        token, token_digest = generate_reset_token()
        if self._repository.set_reset_token(account.account_id, token_digest) == 0:
            logger.warning("reset token not stored for account %s", account.account_id)
            return FORGOT_PASSWORD_ACK
        self._record_event("password.reset_requested", account.account_id)

        # Unlike register(), a failed send does not undo the stored token.
        try:
            delivery = self._mailer.send(
                password_reset_mail(account.email, token, self._password_reset_url)
            )
        except Exception:
            logger.exception("reset mail for account %s raised", account.account_id)
            return FORGOT_PASSWORD_ACK
        if not delivery.ok:
            logger.warning(
                "reset mail for account %s not delivered: %s",
                account.account_id,
                delivery.status.value,
            )
        return FORGOT_PASSWORD_ACK

    @_collapse_unexpected
    def reset_password(self, token: str, new_password: str) -> AccountProfile:
        """Replace the password of the account holding ``token`` and consume it."""
        token_digest = hash_reset_token(token) if token else ""
        account = self._repository.find_by_reset_token(token_digest) if token_digest else None
        if account is None:
            raise InvalidToken()
        if not is_strong_password(new_password):
            raise WeakPassword()

        password_hash = self._hasher.hash(new_password)
        updated = self._repository.clear_reset_token_and_set_password(
            account.account_id, token_digest, password_hash
        )
        if updated == 0:
            raise InternalError("Password reset failed")
        self._record_event("password.reset", account.account_id)
        return account.profile()

    @_collapse_unexpected
    def update_username(self, account_id: int, new_username: str) -> AccountProfile:
        username = new_username.strip()
        if not is_valid_username(username):
            raise InvalidFormat()
        if self._repository.is_username_taken(username, excluding_account_id=account_id):
            raise UsernameTaken(f"Username '{username}' is already taken")
        try:
            profile = self._repository.update_username(account_id, username)
        except UniqueConflict as exc:
            raise UsernameTaken(f"Username '{username}' is already taken") from exc
        if profile is None:
            raise InternalError("Failed to update username")
        self._record_event("account.username_updated", account_id)
        return profile

    @_collapse_unexpected
    def get_profile(self, account_id: int) -> AccountProfile:
        account = self._repository.find_by_id(account_id)
        if account is None:
            raise NotFound("User not found")
        return account.profile()

    @_collapse_unexpected
    def authenticate(self, token: str) -> AccountProfile:
        """Resolve a bearer session token to the current account profile."""
        claims = self._tokens.verify(token, audience=self._tokens.default_audience)
        return self.get_profile(claims.account_id)

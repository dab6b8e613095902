"""Database repository for handbook account data."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from psycopg import Connection
from psycopg.errors import UniqueViolation
from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool

from .domain.account import Account, AccountProfile

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        account_id BIGSERIAL PRIMARY KEY,
        email VARCHAR(255) NOT NULL,
        password_hash VARCHAR(255) NOT NULL,
        username VARCHAR(12) NOT NULL DEFAULT '',
        avatar VARCHAR(50) NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        verification_code VARCHAR(255),
        reset_token VARCHAR(255),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT accounts_email_key UNIQUE (email),
        CONSTRAINT accounts_code_only_while_pending
            CHECK (verification_code IS NULL OR is_verified = FALSE)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS accounts_username_key
    ON accounts (username) WHERE username <> ''
    """,
    """
    CREATE INDEX IF NOT EXISTS accounts_verification_code_idx
    ON accounts (verification_code) WHERE verification_code IS NOT NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS accounts_reset_token_idx
    ON accounts (reset_token) WHERE reset_token IS NOT NULL
    """,
)

_ACCOUNT_COLUMNS = """
    account_id, email, password_hash, username, avatar, is_verified,
    created_at, verification_code, reset_token
"""

_PROFILE_COLUMNS = "account_id, email, username, avatar, is_verified"

_CONSTRAINT_COLUMNS = {
    "accounts_email_key": "email",
    "accounts_username_key": "username",
}


class UniqueConflict(RuntimeError):
    """A unique constraint on ``column`` rejected the write."""

    def __init__(self, column: str) -> None:
        super().__init__(f"duplicate value for {column}")
        self.column = column


def _unique_conflict(exc: UniqueViolation) -> UniqueConflict:
    constraint = exc.diag.constraint_name or ""
    return UniqueConflict(_CONSTRAINT_COLUMNS.get(constraint, constraint))


class AccountQueries:
    """Account statements bound to a single open connection."""

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def _fetch_one(self, where_sql: str, params: tuple) -> Account | None:
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {where_sql}", params)
            row = cur.fetchone()
        if not row:
            return None
        return _map_account(row)

    def find_by_email(self, email: str) -> Account | None:
        return self._fetch_one("email = %s", (email,))

    def find_by_id(self, account_id: int) -> Account | None:
        return self._fetch_one("account_id = %s", (account_id,))

    def find_by_username(self, username: str) -> Account | None:
        if not username:
            return None
        return self._fetch_one("username = %s", (username,))

    def find_by_verification_code(self, code: str) -> Account | None:
        """Return the pending account holding ``code``."""
        return self._fetch_one("verification_code = %s AND is_verified = FALSE", (code,))

    def find_by_reset_token(self, token_digest: str) -> Account | None:
        return self._fetch_one("reset_token = %s", (token_digest,))

    def is_username_taken(self, username: str, excluding_account_id: int | None = None) -> bool:
        with self._conn.cursor(row_factory=tuple_row) as cur:
            if excluding_account_id is None:
                cur.execute("SELECT 1 FROM accounts WHERE username = %s", (username,))
            else:
                cur.execute(
                    "SELECT 1 FROM accounts WHERE username = %s AND account_id <> %s",
                    (username, excluding_account_id),
                )
            return cur.fetchone() is not None

    def insert_pending_account(
        self,
        *,
        email: str,
        password_hash: str,
        verification_code: str,
        avatar: str,
        username: str,
    ) -> Account:
        """Insert an unverified account and return the stored row.

        Raises
        ------
        UniqueConflict
            When the e-mail or username is already held by another row.
        """
        try:
            with self._conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    INSERT INTO accounts (email, password_hash, verification_code, avatar, username)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (email, password_hash, verification_code, avatar, username),
                )
                row = cur.fetchone()
        except UniqueViolation as exc:
            raise _unique_conflict(exc) from exc
        return _map_account(row)

    def _execute_update(self, sql: str, params: tuple) -> int:
        with self._conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    def set_verified(self, account_id: int, verification_code: str) -> int:
        """Mark the account verified if it still holds ``verification_code``."""
        return self._execute_update(
            """
            UPDATE accounts
            SET is_verified = TRUE, verification_code = NULL
            WHERE account_id = %s AND verification_code = %s AND is_verified = FALSE
            """,
            (account_id, verification_code),
        )

    def set_reset_token(self, account_id: int, token_digest: str) -> int:
        return self._execute_update(
            "UPDATE accounts SET reset_token = %s WHERE account_id = %s",
            (token_digest, account_id),
        )

    def clear_reset_token_and_set_password(
        self, account_id: int, token_digest: str, password_hash: str
    ) -> int:
        """Swap in the new password hash while consuming the reset token."""
        return self._execute_update(
            """
            UPDATE accounts
            SET password_hash = %s, reset_token = NULL
            WHERE account_id = %s AND reset_token = %s
            """,
            (password_hash, account_id, token_digest),
        )

    def update_username(self, account_id: int, username: str) -> AccountProfile | None:
        try:
            with self._conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE accounts
                    SET username = %s
                    WHERE account_id = %s
                    RETURNING {_PROFILE_COLUMNS}
                    """,
                    (username, account_id),
                )
                row = cur.fetchone()
        except UniqueViolation as exc:
            raise _unique_conflict(exc) from exc
        if not row:
            return None
        return AccountProfile(*row)


class AccountRepository:
    """Postgres-backed account persistence.

    Each standalone call runs in its own short transaction; :meth:`transaction`
    groups several statements on one connection and rolls all of them back if
    the block raises.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    @contextmanager
    def transaction(self) -> Iterator[AccountQueries]:
        with self._pool.connection() as conn:
            with conn.transaction():
                yield AccountQueries(conn)

    def ensure_schema(self) -> None:
        """Create the accounts table and its indexes if they do not exist."""
        with self._pool.connection() as conn:
            with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    conn.execute(statement)

    def find_by_email(self, email: str) -> Account | None:
        with self.transaction() as queries:
            return queries.find_by_email(email)

    def find_by_id(self, account_id: int) -> Account | None:
        with self.transaction() as queries:
            return queries.find_by_id(account_id)

    def find_by_username(self, username: str) -> Account | None:
        with self.transaction() as queries:
            return queries.find_by_username(username)

    def find_by_verification_code(self, code: str) -> Account | None:
        with self.transaction() as queries:
            return queries.find_by_verification_code(code)

    def find_by_reset_token(self, token_digest: str) -> Account | None:
        with self.transaction() as queries:
            return queries.find_by_reset_token(token_digest)

    def is_username_taken(self, username: str, excluding_account_id: int | None = None) -> bool:
        with self.transaction() as queries:
            return queries.is_username_taken(username, excluding_account_id)

    def insert_pending_account(
        self,
        *,
        email: str,
        password_hash: str,
        verification_code: str,
        avatar: str,
        username: str,
    ) -> Account:
        with self.transaction() as queries:
            return queries.insert_pending_account(
                email=email,
                password_hash=password_hash,
                verification_code=verification_code,
                avatar=avatar,
                username=username,
            )

    def set_verified(self, account_id: int, verification_code: str) -> int:
        with self.transaction() as queries:
            return queries.set_verified(account_id, verification_code)

    def set_reset_token(self, account_id: int, token_digest: str) -> int:
        with self.transaction() as queries:
            return queries.set_reset_token(account_id, token_digest)

    def clear_reset_token_and_set_password(
        self, account_id: int, token_digest: str, password_hash: str
    ) -> int:
        with self.transaction() as queries:
            return queries.clear_reset_token_and_set_password(account_id, token_digest, password_hash)

    def update_username(self, account_id: int, username: str) -> AccountProfile | None:
        with self.transaction() as queries:
            return queries.update_username(account_id, username)


def _map_account(row: tuple) -> Account:
    """Convert a raw database tuple into the domain ``Account`` dataclass."""
    return Account(
        account_id=row[0],
        email=row[1],
        password_hash=row[2],
        username=row[3],
        avatar=row[4],
        is_verified=row[5],
        created_at=row[6],
        verification_code=row[7],
        reset_token=row[8],
    )

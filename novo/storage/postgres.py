from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from novo.logging import get_logger
from novo.storage.errors import ConstraintViolation
from novo.storage.models import Account, SessionSlot

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY,
    email VARCHAR(255) NOT NULL,
    name VARCHAR(255) NOT NULL,
    password_hash TEXT,
    provider VARCHAR(50),
    provider_uid VARCHAR(255),
    is_premium BOOLEAN NOT NULL DEFAULT FALSE,
    refresh_session_hash VARCHAR(64),
    refresh_session_version BIGINT NOT NULL DEFAULT 0,
    refresh_session_updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS users_email_lower_idx ON users (lower(email));
CREATE INDEX IF NOT EXISTS users_provider_idx ON users (provider, provider_uid)
    WHERE provider IS NOT NULL;
"""

_ACCOUNT_COLUMNS = (
    "id, email, name, password_hash, provider, provider_uid, is_premium, created_at, updated_at"
)
_SLOT_COLUMNS = "id, refresh_session_hash, refresh_session_version, refresh_session_updated_at"


def _aware(value: Any) -> datetime:
    if not isinstance(value, datetime):
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Account store backed by the ``users`` table.

    The session slot lives on the account row, so a slot write is a single
    ``UPDATE`` and concurrent logins resolve to whichever commits last.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_account(row: Mapping[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row.get("password_hash"),
            provider=row.get("provider"),
            provider_uid=row.get("provider_uid"),
            is_premium=bool(row.get("is_premium", False)),
            created_at=_aware(row.get("created_at")),
            updated_at=_aware(row.get("updated_at")),
        )

    @staticmethod
    def _row_to_slot(row: Mapping[str, Any]) -> SessionSlot:
        return SessionSlot(
            account_id=str(row["id"]),
            session_hash=row.get("refresh_session_hash"),
            version=int(row.get("refresh_session_version") or 0),
            updated_at=_aware(row.get("refresh_session_updated_at")),
        )

    # accounts
    def create_account(
        self,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        provider: Optional[str] = None,
        provider_uid: Optional[str] = None,
    ) -> Account:
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (id, email, name, password_hash, provider, provider_uid)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (account_id, email, name, password_hash, provider, provider_uid),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(account_id)
        except (TypeError, ValueError):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE lower(email) = lower(%s)",
                (email,),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_provider(self, provider: str, provider_uid: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE provider = %s AND provider_uid = %s",
                (provider, provider_uid),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def link_provider(
        self, account_id: str, provider: str, provider_uid: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users SET provider = %s, provider_uid = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (provider, provider_uid, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_password(self, account_id: str, password_hash: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users SET password_hash = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (password_hash, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def delete_account(self, account_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM users WHERE id = %s", (account_id,))
            return result.rowcount > 0

    # session slot
    def get_session_slot(self, account_id: str) -> Optional[SessionSlot]:
        try:
            uuid.UUID(account_id)
        except (TypeError, ValueError):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SLOT_COLUMNS} FROM users WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_slot(row) if row else None

    def write_session_hash(
        self, account_id: str, session_hash: Optional[str]
    ) -> Optional[SessionSlot]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users
                SET refresh_session_hash = %s,
                    refresh_session_version = refresh_session_version + 1,
                    refresh_session_updated_at = now()
                WHERE id = %s
                RETURNING {_SLOT_COLUMNS}
                """,
                (session_hash, account_id),
            ).fetchone()
        return self._row_to_slot(row) if row else None

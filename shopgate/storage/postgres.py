from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from shopgate.logging import get_logger
from shopgate.storage.errors import ConstraintViolation
from shopgate.storage.models import (
    ACCOUNT_ROLE_USER,
    ACCOUNT_STATE_ACTIVE,
    ACCOUNT_STATES,
    REGISTRATION_METHOD_WEB,
    Account,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
        state TEXT NOT NULL DEFAULT 'active' CHECK (state IN ('active', 'blocked', 'deleted')),
        registration_method TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_activity TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_user (
        account_id UUID PRIMARY KEY REFERENCES account (id),
        nickname TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        password_salt TEXT NOT NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_user_nickname_key ON account_user (lower(nickname))",
    "CREATE UNIQUE INDEX IF NOT EXISTS account_user_email_key ON account_user (lower(email))",
)

# Unique index name -> field reported to callers
_CONSTRAINT_FIELDS = {
    "account_user_nickname_key": "nickname",
    "account_user_email_key": "email",
}

_ACCOUNT_COLUMNS = """
    a.id, a.role, a.state, a.registration_method, a.created_at, a.last_activity,
    u.nickname, u.email, u.password_hash, u.password_salt
"""


class PostgresStore:
    """Postgres-backed account directory."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
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
        """Create the account tables and unique indexes if they are missing."""

        with self._connect() as conn, conn.transaction():
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            nickname=row["nickname"],
            email=row["email"],
            password_hash=row["password_hash"],
            password_salt=row["password_salt"],
            role=row["role"],
            state=row["state"],
            registration_method=row["registration_method"],
            created_at=row["created_at"],
            last_activity=row.get("last_activity"),
        )

    def check_exists(self, nickname: str, email: str) -> Tuple[bool, bool]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    EXISTS(SELECT 1 FROM account_user WHERE lower(nickname) = lower(%s)) AS nickname_exists,
                    EXISTS(SELECT 1 FROM account_user WHERE lower(email) = lower(%s)) AS email_exists
                """,
                (nickname, email),
            ).fetchone()
        if not row:
            return False, False
        return bool(row["nickname_exists"]), bool(row["email_exists"])

    def create_account(
        self,
        nickname: str,
        email: str,
        password_hash: str,
        password_salt: str,
        *,
        role: str = ACCOUNT_ROLE_USER,
        registration_method: str = REGISTRATION_METHOD_WEB,
    ) -> Account:
        account_id = str(uuid.uuid4())
        created_at = datetime.now(timezone.utc)
        email = email.lower()
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO account (id, role, state, registration_method, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (account_id, role, ACCOUNT_STATE_ACTIVE, registration_method, created_at),
                )
                conn.execute(
                    """
                    INSERT INTO account_user (account_id, nickname, email, password_hash, password_salt)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (account_id, nickname, email, password_hash, password_salt),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            field = _CONSTRAINT_FIELDS.get(constraint or "")
            self.logger.warning(
                "account_unique_violation", constraint=constraint, field=field
            )
            raise ConstraintViolation(
                f"{field or 'account'} already exists", {"field": field}
            ) from exc
        return Account(
            id=account_id,
            nickname=nickname,
            email=email,
            password_hash=password_hash,
            password_salt=password_salt,
            role=role,
            state=ACCOUNT_STATE_ACTIVE,
            registration_method=registration_method,
            created_at=created_at,
        )

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_ACCOUNT_COLUMNS}
                FROM account a JOIN account_user u ON u.account_id = a.id
                WHERE a.id = %s
                """,
                (account_id,),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_login(
        self, nickname: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[Account]:
        if nickname:
            clause, value = "lower(u.nickname) = lower(%s)", nickname
        elif email:
            clause, value = "lower(u.email) = lower(%s)", email
        else:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_ACCOUNT_COLUMNS}
                FROM account a JOIN account_user u ON u.account_id = a.id
                WHERE {clause}
                """,
                (value,),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_state(self, account_id: str) -> Optional[Tuple[str, str]]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT state, role FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return row["state"], row["role"]

    def touch_last_activity(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET last_activity = now() WHERE id = %s", (account_id,)
            )

    def update_password(
        self, account_id: str, password_hash: str, password_salt: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account_user SET password_hash = %s, password_salt = %s
                WHERE account_id = %s
                """,
                (password_hash, password_salt, account_id),
            )

    def set_account_state(self, account_id: str, state: str) -> Optional[Account]:
        if state not in ACCOUNT_STATES:
            raise ValueError(f"unknown account state: {state}")
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET state = %s WHERE id = %s", (state, account_id)
            )
        return self.get_account(account_id)

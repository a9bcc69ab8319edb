from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from medhub.logging import get_logger
from medhub.storage.errors import ConstraintViolation
from medhub.storage.models import Account, PatientProfile, normalize_email, utcnow


class PostgresStore:
    """Postgres-backed credential store."""

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
        """Create the ``account`` and ``patient_profile`` tables if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    roles TEXT[] NOT NULL,
                    failed_login_attempts INTEGER NOT NULL DEFAULT 0,
                    account_locked_until TIMESTAMPTZ,
                    refresh_token TEXT,
                    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CONSTRAINT account_roles_not_empty CHECK (cardinality(roles) > 0),
                    CONSTRAINT account_failed_attempts_non_negative CHECK (failed_login_attempts >= 0)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS patient_profile (
                    id UUID PRIMARY KEY,
                    account_id UUID NOT NULL UNIQUE REFERENCES account(id) ON DELETE CASCADE,
                    email TEXT NOT NULL,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            roles=list(row.get("roles") or []),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            account_locked_until=row.get("account_locked_until"),
            refresh_token=row.get("refresh_token"),
            email_verified=bool(row.get("email_verified")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # accounts
    def create_account(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        roles: List[str],
        *,
        email_verified: bool = False,
    ) -> Account:
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, first_name, last_name, roles, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        normalize_email(email),
                        password_hash,
                        first_name,
                        last_name,
                        list(roles),
                        email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def list_accounts(self, role: Optional[str] = None, limit: int = 100) -> List[Account]:
        with self._connect() as conn:
            if role:
                rows = conn.execute(
                    "SELECT * FROM account WHERE %s = ANY(roles) ORDER BY created_at DESC LIMIT %s",
                    (role, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM account ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def update_login_state(
        self,
        account_id: str,
        failed_attempts: int,
        locked_until: Optional[datetime],
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_login_attempts = %s, account_locked_until = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (failed_attempts, locked_until, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_refresh_token(
        self, account_id: str, refresh_token: Optional[str]
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET refresh_token = %s, updated_at = now() WHERE id = %s RETURNING *",
                (refresh_token, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_password(
        self,
        account_id: str,
        password_hash: str,
        *,
        clear_refresh_token: bool = True,
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET password_hash = %s,
                    failed_login_attempts = 0,
                    account_locked_until = NULL,
                    refresh_token = CASE WHEN %s THEN NULL ELSE refresh_token END,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, clear_refresh_token, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET email_verified = TRUE, updated_at = now() WHERE id = %s RETURNING *",
                (account_id,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    # patient profiles
    def create_patient_profile(
        self, account_id: str, email: str, first_name: str, last_name: str
    ) -> PatientProfile:
        profile_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO patient_profile (id, account_id, email, first_name, last_name)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (profile_id, account_id, normalize_email(email), first_name, last_name),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "patient profile already exists", {"account_id": account_id}
            )
        return PatientProfile(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            created_at=row.get("created_at") or utcnow(),
        )

    def get_patient_profile(self, account_id: str) -> Optional[PatientProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM patient_profile WHERE account_id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return PatientProfile(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            created_at=row.get("created_at") or utcnow(),
        )

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from bookingauth.logging import get_logger
from bookingauth.storage.errors import ConstraintViolation
from bookingauth.storage.models import User

_USER_COLUMNS = (
    "id, email, first_name, last_name, password_hash, password_algo, "
    "created_at, updated_at"
)


class PostgresStore:
    """Thin Postgres-backed credential store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_user_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_user_table(self) -> None:
        """Create the ``app_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    password_algo TEXT NOT NULL DEFAULT 'argon2id',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    @staticmethod
    def _row_to_user(row: Mapping[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            updated_at=row.get("updated_at"),
        )

    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> User:
        user = User.new(
            email,
            first_name,
            last_name,
            password_hash=password_hash,
            password_algo=password_algo,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, password_hash, password_algo, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.first_name,
                        user.last_name,
                        user.password_hash,
                        user.password_algo,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    def close(self) -> None:
        self.pool.close()

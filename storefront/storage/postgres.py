from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from storefront.logging import get_logger
from storefront.storage.errors import ConstraintViolation
from storefront.storage.models import User

_SORT_SQL = {
    "asc": "username ASC",
    "desc": "username DESC",
    "newest": "created_at DESC",
}

_USER_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    refresh_token TEXT,
    email_verification_token_hash TEXT,
    email_verification_expires_at TIMESTAMPTZ,
    password_reset_token_hash TEXT,
    password_reset_expires_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` table and its lookup indexes if missing."""
        with self._connect() as conn:
            conn.execute(_USER_SCHEMA)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS app_user_verification_idx "
                "ON app_user (email_verification_token_hash)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS app_user_reset_idx "
                "ON app_user (password_reset_token_hash)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS app_user_refresh_idx ON app_user (refresh_token)"
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _constraint_field(exc: errors.UniqueViolation) -> str:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
        return "username" if "username" in constraint else "email"

    def _row_to_user(self, row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role", "user"),
            is_verified=row.get("is_verified", False),
            is_active=row.get("is_active", True),
            refresh_token=row.get("refresh_token"),
            email_verification_token_hash=row.get("email_verification_token_hash"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            password_reset_token_hash=row.get("password_reset_token_hash"),
            password_reset_expires_at=row.get("password_reset_expires_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch_one(self, sql: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._row_to_user(row) if row else None

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: str = "user",
        is_verified: bool = False,
        is_active: bool = True,
        email_verification_token_hash: Optional[str] = None,
        email_verification_expires_at: Optional[datetime] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, username, email, password_hash, role, is_verified, is_active,
                        email_verification_token_hash, email_verification_expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        username,
                        email.lower(),
                        password_hash,
                        role,
                        is_verified,
                        is_active,
                        email_verification_token_hash,
                        email_verification_expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def save_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user SET
                        username = %s,
                        email = %s,
                        password_hash = %s,
                        role = %s,
                        is_verified = %s,
                        is_active = %s,
                        refresh_token = %s,
                        email_verification_token_hash = %s,
                        email_verification_expires_at = %s,
                        password_reset_token_hash = %s,
                        password_reset_expires_at = %s,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        user.username,
                        user.email,
                        user.password_hash,
                        user.role,
                        user.is_verified,
                        user.is_active,
                        user.refresh_token,
                        user.email_verification_token_hash,
                        user.email_verification_expires_at,
                        user.password_reset_token_hash,
                        user.password_reset_expires_at,
                        user.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user.id})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        return self._fetch_one("SELECT * FROM app_user WHERE id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one(
            "SELECT * FROM app_user WHERE email = %s", (email.lower(),)
        )

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_one(
            "SELECT * FROM app_user WHERE username = %s", (username,)
        )

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        return self._fetch_one(
            "SELECT * FROM app_user WHERE email = %s OR username = %s LIMIT 1",
            (identifier.lower(), identifier),
        )

    def get_user_by_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[User]:
        return self._fetch_one(
            """
            SELECT * FROM app_user
            WHERE email_verification_token_hash = %s AND email_verification_expires_at > %s
            """,
            (token_hash, now),
        )

    def get_user_by_reset_token(self, token_hash: str, now: datetime) -> Optional[User]:
        return self._fetch_one(
            """
            SELECT * FROM app_user
            WHERE password_reset_token_hash = %s AND password_reset_expires_at > %s
            """,
            (token_hash, now),
        )

    def get_user_by_refresh_token(self, token: str) -> Optional[User]:
        return self._fetch_one(
            "SELECT * FROM app_user WHERE refresh_token = %s", (token,)
        )

    def list_users(
        self, *, offset: int = 0, limit: int = 10, sort: str = "newest"
    ) -> Tuple[List[User], int]:
        order_by = _SORT_SQL.get(sort)
        if not order_by:
            raise ValueError(f"unsupported sort order: {sort}")
        with self._connect() as conn:
            total_row = conn.execute("SELECT count(*) AS total FROM app_user").fetchone()
            rows = conn.execute(
                f"SELECT * FROM app_user ORDER BY {order_by} OFFSET %s LIMIT %s",
                (offset, limit),
            ).fetchall()
        return [self._row_to_user(row) for row in rows], int(total_row["total"])

    def delete_user(self, user_id: str) -> bool:
        if self.get_user(user_id) is None:
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # single-session refresh token
    def set_refresh_token(self, user_id: str, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET refresh_token = %s, updated_at = now() WHERE id = %s",
                (token, user_id),
            )
            return result.rowcount > 0

    def clear_refresh_token(self, user_id: str, expected: Optional[str] = None) -> bool:
        with self._connect() as conn:
            if expected is None:
                result = conn.execute(
                    """
                    UPDATE app_user SET refresh_token = NULL, updated_at = now()
                    WHERE id = %s AND refresh_token IS NOT NULL
                    """,
                    (user_id,),
                )
            else:
                result = conn.execute(
                    """
                    UPDATE app_user SET refresh_token = NULL, updated_at = now()
                    WHERE id = %s AND refresh_token = %s
                    """,
                    (user_id, expected),
                )
            return result.rowcount > 0

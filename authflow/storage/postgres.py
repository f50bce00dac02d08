from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authflow.logging import get_logger
from authflow.storage.errors import ConstraintViolation
from authflow.storage.models import RefreshToken, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        full_name TEXT NOT NULL DEFAULT '',
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token_hash TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expiry_idx ON refresh_token (expires_at)",
)


class PostgresStore:
    """Postgres-backed user directory and refresh-token registry."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the directory tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row.get("full_name") or "",
            is_verified=bool(row.get("is_verified", False)),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
            meta=row.get("meta"),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        is_verified: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        now = utcnow()
        try:
            # One transaction: a user never exists without its credential
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, full_name, is_verified, is_active, created_at, meta)
                    VALUES (%s, %s, %s, %s, TRUE, %s, %s)
                    """,
                    (
                        user_id,
                        email,
                        full_name,
                        is_verified,
                        now,
                        json.dumps(meta) if meta else None,
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(
            id=user_id,
            email=email,
            full_name=full_name,
            is_verified=is_verified,
            created_at=now,
            meta=meta or {},
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
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
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def record_login(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = now() WHERE id = %s", (user_id,)
            )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token_hash, user_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (token_hash, user_id, now, expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "token_hash"}
            )
        return RefreshToken(
            token_hash=token_hash, user_id=user_id, created_at=now, expires_at=expires_at
        )

    def consume_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        """Delete and return the record; concurrent callers get at most one row."""
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token_hash = %s RETURNING *",
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_refresh_token(row)

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE token_hash = %s", (token_hash,)
            )
            return result.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

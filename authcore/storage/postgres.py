from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.service.errors import InvalidGrant, ValidationError
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    ROLE_ADMIN,
    ROLE_EDITOR,
    AuthorizationCodeRecord,
    User,
)

# Lock-acquisition failures that are safe to retry for code redemption
_RETRYABLE_LOCK_ERRORS = (
    errors.LockNotAvailable,
    errors.DeadlockDetected,
    errors.SerializationFailure,
)
_REDEEM_ATTEMPTS = 3

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        user_id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT,
        provider TEXT NOT NULL,
        provider_user_id TEXT NOT NULL,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        is_editor BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_login_at TIMESTAMPTZ,
        UNIQUE (provider, provider_user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_authorization_codes (
        code TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        client_id TEXT NOT NULL,
        redirect_uri TEXT NOT NULL,
        code_challenge TEXT,
        code_challenge_method TEXT,
        scope TEXT,
        resource TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    # one email may belong to separate users from different providers
    "ALTER TABLE auth_user DROP CONSTRAINT IF EXISTS auth_user_email_key",
    "CREATE INDEX IF NOT EXISTS idx_oauth_codes_expires_at ON oauth_authorization_codes(expires_at)",
)


class PostgresStore:
    """Postgres-backed users and one-time authorization codes.

    Code redemption relies on ``SELECT ... FOR UPDATE`` inside a single
    transaction, so at-most-once redemption holds across server instances.
    """

    def __init__(self, dsn: str, *, bootstrap_admins: Iterable[str] = ()) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.bootstrap_admins = {email.strip().lower() for email in bootstrap_admins}
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
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # -- users ---------------------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict) -> User:
        roles: List[str] = []
        if row.get("is_admin"):
            roles.append(ROLE_ADMIN)
        if row.get("is_editor"):
            roles.append(ROLE_EDITOR)
        return User(
            id=row["user_id"],
            email=row["email"],
            name=row.get("name"),
            provider=row.get("provider"),
            provider_user_id=row.get("provider_user_id"),
            roles=roles,
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            last_login_at=row.get("last_login_at"),
        )

    def upsert_user(
        self,
        email: str,
        name: Optional[str],
        provider: str,
        provider_user_id: str,
    ) -> str:
        if not email or not email.strip():
            raise ValidationError("email cannot be empty")
        if not provider or not provider_user_id:
            raise ValidationError("provider identity cannot be empty")
        is_bootstrap_admin = email.strip().lower() in self.bootstrap_admins
        now = datetime.now(timezone.utc)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    # Bootstrap promotion only ever adds the admin flag
                    row = conn.execute(
                        """
                        UPDATE auth_user
                        SET email = %s, name = COALESCE(%s, name),
                            is_admin = is_admin OR %s, updated_at = %s, last_login_at = %s
                        WHERE provider = %s AND provider_user_id = %s
                        RETURNING user_id
                        """,
                        (
                            email,
                            name,
                            is_bootstrap_admin,
                            now,
                            now,
                            provider,
                            provider_user_id,
                        ),
                    ).fetchone()
                    if row:
                        self.logger.debug("user_updated", user_id=row["user_id"], provider=provider)
                        return row["user_id"]
                    user_id = str(uuid.uuid4())
                    conn.execute(
                        """
                        INSERT INTO auth_user (user_id, email, name, provider, provider_user_id,
                                               is_admin, is_editor, created_at, updated_at, last_login_at)
                        VALUES (%s, %s, %s, %s, %s, %s, FALSE, %s, %s, %s)
                        """,
                        (
                            user_id,
                            email,
                            name,
                            provider,
                            provider_user_id,
                            is_bootstrap_admin,
                            now,
                            now,
                            now,
                        ),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "user already exists", {"field": "provider_user_id"}
            )
        if is_bootstrap_admin:
            self.logger.info("bootstrap_admin_granted", user_id=user_id)
        self.logger.debug("user_created", user_id=user_id, provider=provider)
        return user_id

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def add_role(self, user_id: str, role: str) -> Optional[User]:
        column = {ROLE_ADMIN: "is_admin", ROLE_EDITOR: "is_editor"}.get(role)
        if column is None:
            raise ValidationError(f"unknown role: {role}")
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE auth_user SET {column} = TRUE, updated_at = now() WHERE user_id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    # -- authorization codes ---------------------------------------------------

    @staticmethod
    def _code_from_row(row: dict) -> AuthorizationCodeRecord:
        return AuthorizationCodeRecord(
            code=row["code"],
            user_id=row["user_id"],
            client_id=row["client_id"],
            redirect_uri=row["redirect_uri"],
            expires_at=row["expires_at"],
            code_challenge=row.get("code_challenge"),
            code_challenge_method=row.get("code_challenge_method"),
            scope=row.get("scope"),
            resource=row.get("resource"),
            used=bool(row.get("used")),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    def save_authorization_code(self, record: AuthorizationCodeRecord) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_authorization_codes (code, user_id, client_id, redirect_uri,
                        code_challenge, code_challenge_method, scope, resource, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, FALSE, %s)
                    """,
                    (
                        record.code,
                        record.user_id,
                        record.client_id,
                        record.redirect_uri,
                        record.code_challenge,
                        record.code_challenge_method,
                        record.scope,
                        record.resource,
                        record.expires_at,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("authorization code already exists", {"field": "code"})

    def redeem_authorization_code(
        self, code: str, now: Optional[datetime] = None
    ) -> AuthorizationCodeRecord:
        """Mark a code used exactly once and return it.

        A concurrent redeemer blocks on the row lock and then observes
        ``used = TRUE``. Only lock-acquisition failures are retried.
        """
        now = now or datetime.now(timezone.utc)
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._redeem_once(code, now)
            except _RETRYABLE_LOCK_ERRORS as exc:
                if attempt >= _REDEEM_ATTEMPTS:
                    raise
                self.logger.warning(
                    "authorization_code_lock_retry",
                    attempt=attempt,
                    error_type=type(exc).__name__,
                )
                time.sleep(0.05 * attempt)

    def _redeem_once(self, code: str, now: datetime) -> AuthorizationCodeRecord:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("SET LOCAL lock_timeout = '5s'")
                row = conn.execute(
                    "SELECT * FROM oauth_authorization_codes WHERE code = %s FOR UPDATE",
                    (code,),
                ).fetchone()
                if not row:
                    raise InvalidGrant("authorization code not found")
                if row["used"]:
                    raise InvalidGrant("authorization code already used")
                if now > row["expires_at"]:
                    raise InvalidGrant("authorization code expired")
                conn.execute(
                    "UPDATE oauth_authorization_codes SET used = TRUE WHERE code = %s",
                    (code,),
                )
        record = self._code_from_row(row)
        record.used = True
        return record

    def delete_expired_authorization_codes(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM oauth_authorization_codes WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount or 0

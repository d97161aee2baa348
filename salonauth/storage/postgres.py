from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List, Optional, TypeVar

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from salonauth.logging import get_logger
from salonauth.result import Err, Ok, Result
from salonauth.storage.common import (
    SecretCipher,
    password_reset_to_record,
    reset_token_of,
    session_from_record,
    status_to_record,
    two_factor_to_record,
    user_from_record,
    verification_token_of,
)
from salonauth.storage.errors import (
    DuplicateRecord,
    RecordNotFound,
    RepositoryError,
    StorageFailure,
)
from salonauth.storage.models import Session, User, status_name

T = TypeVar("T")

_USER_COLUMNS = (
    "id, email, name, password_hash, role, email_verified, status, two_factor, "
    "password_reset, password_history, trusted_ip_addresses, failed_login_attempts, "
    "created_at, updated_at, last_password_change_at, last_login_at, last_login_ip"
)

_SESSION_COLUMNS = (
    "id, user_id, refresh_token, ip_address, user_agent, expires_at, remember_me, "
    "created_at, last_activity_at, meta"
)


class PostgresStore:
    """Postgres-backed users and sessions.

    Tagged unions live in JSONB columns; the two one-time tokens are mirrored
    into indexed text columns so token lookups do not scan JSON.
    """

    def __init__(self, dsn: str, *, secret_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(secret_key)
        self._ensure_schema()
        self.users = PostgresUserRepository(self)
        self.sessions = PostgresSessionRepository(self)

    def _connect(self):
        return self.pool.connection()

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` and ``auth_session`` tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL DEFAULT '',
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'customer',
                    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    status_type TEXT NOT NULL DEFAULT 'active',
                    status JSONB NOT NULL,
                    two_factor JSONB NOT NULL,
                    password_reset JSONB NOT NULL,
                    verification_token TEXT,
                    reset_token TEXT,
                    password_history JSONB NOT NULL DEFAULT '[]'::jsonb,
                    trusted_ip_addresses JSONB NOT NULL DEFAULT '[]'::jsonb,
                    failed_login_attempts INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    last_password_change_at TIMESTAMPTZ,
                    last_login_at TIMESTAMPTZ,
                    last_login_ip TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS app_user_verification_token_idx ON app_user (verification_token)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS app_user_reset_token_idx ON app_user (reset_token)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_session (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
                    refresh_token TEXT NOT NULL UNIQUE,
                    ip_address TEXT,
                    user_agent TEXT,
                    expires_at TIMESTAMPTZ NOT NULL,
                    remember_me BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    last_activity_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    meta JSONB
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)"
            )

    def _run(self, op: str, fn: Callable[[Any], Result[T, RepositoryError]]) -> Result[T, RepositoryError]:
        try:
            with self._connect() as conn:
                return fn(conn)
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
            field = "email" if "email" in constraint else "id"
            self.logger.info("postgres_unique_violation", op=op, constraint=constraint)
            return Err(DuplicateRecord(field=field, message=f"{field} already exists"))
        except psycopg.Error as exc:
            self.logger.error("postgres_operation_failed", op=op, error=str(exc))
            return Err(StorageFailure(str(exc)))

    def _user_params(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "role": user.role,
            "email_verified": user.email_verified,
            "status_type": status_name(user.status),
            "status": Jsonb(status_to_record(user.status)),
            "two_factor": Jsonb(two_factor_to_record(user.two_factor, self._cipher.encrypt)),
            "password_reset": Jsonb(password_reset_to_record(user.password_reset)),
            "verification_token": verification_token_of(user),
            "reset_token": reset_token_of(user),
            "password_history": Jsonb(list(user.password_history)),
            "trusted_ip_addresses": Jsonb(list(user.trusted_ip_addresses)),
            "failed_login_attempts": user.failed_login_attempts,
            "created_at": user.created_at,
            "updated_at": user.updated_at,
            "last_password_change_at": user.last_password_change_at,
            "last_login_at": user.last_login_at,
            "last_login_ip": user.last_login_ip,
        }

    def _user_from_row(self, row: Optional[dict]) -> Optional[User]:
        if not row:
            return None
        return user_from_record(row, self._cipher.decrypt)


class PostgresUserRepository:
    def __init__(self, store: PostgresStore) -> None:
        self._store = store

    def _find_one(self, op: str, where: str, value: Any) -> Result[Optional[User], RepositoryError]:
        def _query(conn):
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {where} = %s", (value,)
            ).fetchone()
            return Ok(self._store._user_from_row(row))

        return self._store._run(op, _query)

    def find_by_id(self, user_id: str) -> Result[Optional[User], RepositoryError]:
        return self._find_one("user_find_by_id", "id", user_id)

    def find_by_email(self, email: str) -> Result[Optional[User], RepositoryError]:
        return self._find_one("user_find_by_email", "email", email.strip().lower())

    def find_by_email_verification_token(
        self, token: str
    ) -> Result[Optional[User], RepositoryError]:
        return self._find_one("user_find_by_verification_token", "verification_token", token)

    def find_by_password_reset_token(
        self, token: str
    ) -> Result[Optional[User], RepositoryError]:
        return self._find_one("user_find_by_reset_token", "reset_token", token)

    def save(self, user: User) -> Result[User, RepositoryError]:
        def _insert(conn):
            conn.execute(
                """
                INSERT INTO app_user (
                    id, email, name, password_hash, role, email_verified, status_type,
                    status, two_factor, password_reset, verification_token, reset_token,
                    password_history, trusted_ip_addresses, failed_login_attempts,
                    created_at, updated_at, last_password_change_at, last_login_at, last_login_ip
                ) VALUES (
                    %(id)s, %(email)s, %(name)s, %(password_hash)s, %(role)s, %(email_verified)s,
                    %(status_type)s, %(status)s, %(two_factor)s, %(password_reset)s,
                    %(verification_token)s, %(reset_token)s, %(password_history)s,
                    %(trusted_ip_addresses)s, %(failed_login_attempts)s, %(created_at)s,
                    %(updated_at)s, %(last_password_change_at)s, %(last_login_at)s, %(last_login_ip)s
                )
                """,
                self._store._user_params(user),
            )
            return Ok(user)

        return self._store._run("user_save", _insert)

    def update(self, user: User) -> Result[User, RepositoryError]:
        def _update(conn):
            cur = conn.execute(
                """
                UPDATE app_user SET
                    email = %(email)s, name = %(name)s, password_hash = %(password_hash)s,
                    role = %(role)s, email_verified = %(email_verified)s,
                    status_type = %(status_type)s, status = %(status)s,
                    two_factor = %(two_factor)s, password_reset = %(password_reset)s,
                    verification_token = %(verification_token)s, reset_token = %(reset_token)s,
                    password_history = %(password_history)s,
                    trusted_ip_addresses = %(trusted_ip_addresses)s,
                    failed_login_attempts = %(failed_login_attempts)s,
                    updated_at = %(updated_at)s,
                    last_password_change_at = %(last_password_change_at)s,
                    last_login_at = %(last_login_at)s, last_login_ip = %(last_login_ip)s
                WHERE id = %(id)s
                """,
                self._store._user_params(user),
            )
            if cur.rowcount == 0:
                return Err(RecordNotFound("user"))
            return Ok(user)

        return self._store._run("user_update", _update)


class PostgresSessionRepository:
    def __init__(self, store: PostgresStore) -> None:
        self._store = store

    def _find_one(self, op: str, where: str, value: Any) -> Result[Optional[Session], RepositoryError]:
        def _query(conn):
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE {where} = %s", (value,)
            ).fetchone()
            return Ok(session_from_record(row) if row else None)

        return self._store._run(op, _query)

    def find_by_id(self, session_id: str) -> Result[Optional[Session], RepositoryError]:
        return self._find_one("session_find_by_id", "id", session_id)

    def find_by_refresh_token(
        self, refresh_token: str
    ) -> Result[Optional[Session], RepositoryError]:
        return self._find_one("session_find_by_refresh_token", "refresh_token", refresh_token)

    def find_by_user_id(self, user_id: str) -> Result[List[Session], RepositoryError]:
        def _query(conn):
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE user_id = %s",
                (user_id,),
            ).fetchall()
            return Ok([session_from_record(row) for row in rows])

        return self._store._run("session_find_by_user_id", _query)

    @staticmethod
    def _params(session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token": session.refresh_token,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "expires_at": session.expires_at,
            "remember_me": session.remember_me,
            "created_at": session.created_at,
            "last_activity_at": session.last_activity_at,
            "meta": Jsonb(session.meta) if session.meta else None,
        }

    def save(self, session: Session) -> Result[Session, RepositoryError]:
        def _insert(conn):
            conn.execute(
                """
                INSERT INTO auth_session (
                    id, user_id, refresh_token, ip_address, user_agent, expires_at,
                    remember_me, created_at, last_activity_at, meta
                ) VALUES (
                    %(id)s, %(user_id)s, %(refresh_token)s, %(ip_address)s, %(user_agent)s,
                    %(expires_at)s, %(remember_me)s, %(created_at)s, %(last_activity_at)s, %(meta)s
                )
                """,
                self._params(session),
            )
            return Ok(session)

        return self._store._run("session_save", _insert)

    def update(self, session: Session) -> Result[Session, RepositoryError]:
        def _update(conn):
            cur = conn.execute(
                """
                UPDATE auth_session SET
                    refresh_token = %(refresh_token)s, ip_address = %(ip_address)s,
                    user_agent = %(user_agent)s, expires_at = %(expires_at)s,
                    remember_me = %(remember_me)s, last_activity_at = %(last_activity_at)s,
                    meta = %(meta)s
                WHERE id = %(id)s
                """,
                self._params(session),
            )
            if cur.rowcount == 0:
                return Err(RecordNotFound("session"))
            return Ok(session)

        return self._store._run("session_update", _update)

    def delete(self, session_id: str) -> Result[None, RepositoryError]:
        def _delete(conn):
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            if cur.rowcount == 0:
                return Err(RecordNotFound("session"))
            return Ok(None)

        return self._store._run("session_delete", _delete)

    def delete_by_user_id(self, user_id: str) -> Result[int, RepositoryError]:
        def _delete(conn):
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return Ok(cur.rowcount)

        return self._store._run("session_delete_by_user", _delete)

    def delete_expired(self, now: datetime) -> Result[int, RepositoryError]:
        def _delete(conn):
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at < %s", (now,))
            return Ok(cur.rowcount)

        return self._store._run("session_delete_expired", _delete)

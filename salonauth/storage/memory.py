from __future__ import annotations

import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from salonauth.logging import get_logger
from salonauth.result import Err, Ok, Result
from salonauth.storage.common import (
    SecretCipher,
    reset_token_of,
    session_from_record,
    session_to_record,
    user_from_record,
    user_to_record,
    verification_token_of,
)
from salonauth.storage.errors import DuplicateRecord, RecordNotFound, RepositoryError, StorageFailure
from salonauth.storage.models import Session, User


class MemoryStore:
    """In-process backing store for users and sessions.

    All reads and writes go through ``_data_lock``. When ``state_path`` is
    set every mutation rewrites a JSON snapshot, with TOTP secrets encrypted
    by ``SecretCipher``, and the snapshot is reloaded on start-up.
    """

    def __init__(
        self,
        state_path: str | None = None,
        *,
        secret_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self._users: Dict[str, User] = {}
        self._sessions: Dict[str, Session] = {}
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        self._cipher: SecretCipher | None = None
        if self.state_path is not None:
            self._cipher = SecretCipher(
                secret_key or os.getenv("TWO_FACTOR_ENCRYPTION_KEY") or os.getenv("JWT_SECRET") or ""
            )
            self._load_state()
        self.users = MemoryUserRepository(self)
        self.sessions = MemorySessionRepository(self)

    def _persist_state(self) -> Result[None, StorageFailure]:
        if self.state_path is None or self._cipher is None:
            return Ok(None)
        state = {
            "users": [user_to_record(u, self._cipher.encrypt) for u in self._users.values()],
            "sessions": [session_to_record(s) for s in self._sessions.values()],
        }
        tmp_path = self.state_path.with_suffix(".tmp")
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, self.state_path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(self.state_path), error=str(exc))
            return Err(StorageFailure(f"failed to persist state: {exc}"))
        return Ok(None)

    def _load_state(self) -> bool:
        if self.state_path is None or self._cipher is None:
            return False
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self._users = {
            u["id"]: user_from_record(u, self._cipher.decrypt) for u in data.get("users", [])
        }
        self._sessions = {
            s["id"]: session_from_record(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self._users), sessions=len(self._sessions)
        )
        return True

    def ping(self) -> None:
        return None

    def _write(self, fn):
        """Run ``fn`` under the data lock and snapshot the state when it succeeds.

        A failed snapshot rolls the in-memory change back and is returned as
        ``StorageFailure``.
        """
        with self._data_lock:
            users, sessions = dict(self._users), dict(self._sessions)
            result = fn()
            if isinstance(result, Ok):
                match self._persist_state():
                    case Err() as failure:
                        self._users, self._sessions = users, sessions
                        return failure
                    case Ok(_):
                        pass
            return result


class MemoryUserRepository:
    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    def _find(self, predicate) -> Result[Optional[User], RepositoryError]:
        with self._store._data_lock:
            for user in self._store._users.values():
                if predicate(user):
                    return Ok(user)
        return Ok(None)

    def find_by_id(self, user_id: str) -> Result[Optional[User], RepositoryError]:
        with self._store._data_lock:
            return Ok(self._store._users.get(user_id))

    def find_by_email(self, email: str) -> Result[Optional[User], RepositoryError]:
        normalized = email.strip().lower()
        return self._find(lambda user: user.email == normalized)

    def find_by_email_verification_token(
        self, token: str
    ) -> Result[Optional[User], RepositoryError]:
        if not token:
            return Ok(None)
        return self._find(lambda user: verification_token_of(user) == token)

    def find_by_password_reset_token(
        self, token: str
    ) -> Result[Optional[User], RepositoryError]:
        if not token:
            return Ok(None)
        return self._find(lambda user: reset_token_of(user) == token)

    def save(self, user: User) -> Result[User, RepositoryError]:
        def _save():
            users = self._store._users
            if user.id in users:
                return Err(DuplicateRecord(field="id"))
            if any(existing.email == user.email for existing in users.values()):
                return Err(DuplicateRecord(field="email", message="email already exists"))
            users[user.id] = user
            return Ok(user)

        return self._store._write(_save)

    def update(self, user: User) -> Result[User, RepositoryError]:
        def _update():
            users = self._store._users
            if user.id not in users:
                return Err(RecordNotFound("user"))
            if any(
                existing.email == user.email and existing.id != user.id
                for existing in users.values()
            ):
                return Err(DuplicateRecord(field="email", message="email already exists"))
            users[user.id] = user
            return Ok(user)

        return self._store._write(_update)


class MemorySessionRepository:
    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    def find_by_id(self, session_id: str) -> Result[Optional[Session], RepositoryError]:
        with self._store._data_lock:
            return Ok(self._store._sessions.get(session_id))

    def find_by_refresh_token(
        self, refresh_token: str
    ) -> Result[Optional[Session], RepositoryError]:
        with self._store._data_lock:
            for session in self._store._sessions.values():
                if session.refresh_token == refresh_token:
                    return Ok(session)
        return Ok(None)

    def find_by_user_id(self, user_id: str) -> Result[List[Session], RepositoryError]:
        with self._store._data_lock:
            return Ok([s for s in self._store._sessions.values() if s.user_id == user_id])

    def save(self, session: Session) -> Result[Session, RepositoryError]:
        def _save():
            if session.id in self._store._sessions:
                return Err(DuplicateRecord(field="id"))
            self._store._sessions[session.id] = session
            return Ok(session)

        return self._store._write(_save)

    def update(self, session: Session) -> Result[Session, RepositoryError]:
        def _update():
            if session.id not in self._store._sessions:
                return Err(RecordNotFound("session"))
            self._store._sessions[session.id] = session
            return Ok(session)

        return self._store._write(_update)

    def delete(self, session_id: str) -> Result[None, RepositoryError]:
        def _delete():
            if self._store._sessions.pop(session_id, None) is None:
                return Err(RecordNotFound("session"))
            return Ok(None)

        return self._store._write(_delete)

    def delete_by_user_id(self, user_id: str) -> Result[int, RepositoryError]:
        def _delete_all():
            doomed = [sid for sid, s in self._store._sessions.items() if s.user_id == user_id]
            for sid in doomed:
                del self._store._sessions[sid]
            return Ok(len(doomed))

        return self._store._write(_delete_all)

    def delete_expired(self, now: datetime) -> Result[int, RepositoryError]:
        def _purge():
            doomed = [sid for sid, s in self._store._sessions.items() if s.is_expired(now)]
            for sid in doomed:
                del self._store._sessions[sid]
            return Ok(len(doomed))

        return self._store._write(_purge)

"""Persistence contracts consumed by the auth use cases.

Lookups return ``Ok(None)`` when nothing matches; ``Err`` is reserved for
failures of the store itself (or, for ``update``/``delete``, a missing row).
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from salonauth.result import Result
from salonauth.storage.errors import RepositoryError
from salonauth.storage.models import Session, User


@runtime_checkable
class UserRepository(Protocol):
    def find_by_id(self, user_id: str) -> Result[Optional[User], RepositoryError]: ...

    def find_by_email(self, email: str) -> Result[Optional[User], RepositoryError]: ...

    def find_by_email_verification_token(
        self, token: str
    ) -> Result[Optional[User], RepositoryError]: ...

    def find_by_password_reset_token(
        self, token: str
    ) -> Result[Optional[User], RepositoryError]: ...

    def save(self, user: User) -> Result[User, RepositoryError]: ...

    def update(self, user: User) -> Result[User, RepositoryError]: ...


@runtime_checkable
class SessionRepository(Protocol):
    def find_by_id(self, session_id: str) -> Result[Optional[Session], RepositoryError]: ...

    def find_by_refresh_token(
        self, refresh_token: str
    ) -> Result[Optional[Session], RepositoryError]: ...

    def find_by_user_id(self, user_id: str) -> Result[List[Session], RepositoryError]: ...

    def save(self, session: Session) -> Result[Session, RepositoryError]: ...

    def update(self, session: Session) -> Result[Session, RepositoryError]: ...

    def delete(self, session_id: str) -> Result[None, RepositoryError]: ...

    def delete_by_user_id(self, user_id: str) -> Result[int, RepositoryError]: ...

    def delete_expired(self, now: datetime) -> Result[int, RepositoryError]: ...

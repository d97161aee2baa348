from __future__ import annotations

from typing import Tuple, Union

from salonauth.result import Err, Ok, Result
from salonauth.service.failures import (
    AdminNotFound,
    DatabaseError,
    NotAdmin,
    UserNotFound,
    database_error,
)
from salonauth.storage.models import User
from salonauth.storage.repository import UserRepository


def load_user(
    users: UserRepository, user_id: str
) -> Result[User, Union[UserNotFound, DatabaseError]]:
    match users.find_by_id(user_id):
        case Err(error):
            return Err(database_error(error))
        case Ok(None):
            return Err(UserNotFound(user_id))
        case Ok(user):
            return Ok(user)


def load_admin_and_user(
    users: UserRepository, admin_user_id: str, user_id: str
) -> Result[Tuple[User, User], Union[AdminNotFound, NotAdmin, UserNotFound, DatabaseError]]:
    """Resolve an admin actor and the account they act on, admin checks first."""
    match users.find_by_id(admin_user_id):
        case Err(error):
            return Err(database_error(error))
        case Ok(None):
            return Err(AdminNotFound(admin_user_id))
        case Ok(admin) if not admin.is_admin:
            return Err(NotAdmin())
        case Ok(admin):
            pass
    match load_user(users, user_id):
        case Err(error):
            return Err(error)
        case Ok(user):
            return Ok((admin, user))


def save_user(users: UserRepository, user: User) -> Result[User, DatabaseError]:
    match users.update(user):
        case Err(error):
            return Err(database_error(error))
        case Ok(saved):
            return Ok(saved)

"""Success-or-failure outcome used by repositories and use cases.

Expected failures (wrong password, expired token, missing record) are values,
not exceptions. Callers branch with ``match``::

    match await login(request, deps):
        case Ok(outcome):
            ...
        case Err(InvalidCredentials()):
            ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    error: E


Result = Union[Ok[T], Err[E]]

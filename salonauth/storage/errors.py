from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True, slots=True)
class RecordNotFound:
    """The addressed record does not exist (update/delete of a missing row)."""

    entity: str = "record"


@dataclass(frozen=True, slots=True)
class DuplicateRecord:
    """A uniqueness constraint was violated (e.g. email already registered)."""

    field: str
    message: str = "duplicate record"


@dataclass(frozen=True, slots=True)
class StorageFailure:
    """Backing store is unreachable or rejected the operation."""

    message: str


RepositoryError = Union[RecordNotFound, DuplicateRecord, StorageFailure]


__all__ = ["RecordNotFound", "DuplicateRecord", "StorageFailure", "RepositoryError"]

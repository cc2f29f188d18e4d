"""Exceptions raised by the typed_orm library.

There are three families:

* Conflicts (``ConflictError`` and subclasses) are expected runtime
  conditions. They are raised to the caller so it can retry or merge.
* Programming errors (``ProgrammingError`` and subclasses) mean the caller used
  the API in a way the schema does not allow. They are never caught by the
  library.
* Everything raised by a row-store is propagated unchanged.
"""

from __future__ import annotations

from typing import Any


class OrmError(Exception):
    """Base class for recoverable typed_orm errors."""


class ConflictError(OrmError):
    """A write collided with the current state of the store."""


class UniqueValueError(ConflictError):
    """A write would put a duplicate value into a unique column."""

    def __init__(self, table: str, field: str) -> None:
        self.table = table
        self.field = field
        super().__init__(f"Unique value collision on {table}.{field}")


class OptimisticLockError(ConflictError):
    """A row was changed or removed since it was last read."""

    def __init__(self, table: str, key: Any) -> None:
        self.table = table
        self.key = key
        super().__init__(
            f"Record {table}({key!r}) was modified or deleted by another writer"
        )


class RecordNotFoundError(OrmError):
    """A row that was expected in the store is missing."""

    def __init__(self, table: str, key: Any) -> None:
        self.table = table
        self.key = key
        super().__init__(f"Record {table}({key!r}) not found")


class ContextCancelledError(OrmError):
    """The context attached to an operation was cancelled."""


class DeadlineExceededError(ContextCancelledError):
    """The deadline of the context attached to an operation passed."""


class ProgrammingError(RuntimeError):
    """The API was used in a way the schema does not allow."""


class InvalidNodeError(ProgrammingError):
    """A query node was used where its shape is not allowed."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class MissingReferenceError(ProgrammingError):
    """A required forward reference is absent."""

    def __init__(self, table: str, relationship: str) -> None:
        self.table = table
        self.relationship = relationship
        super().__init__(
            f"{table}.{relationship} is required and cannot be empty"
        )


class MissingPrimaryKeyError(ProgrammingError):
    """A manually assigned primary key was not set before the first save."""

    def __init__(self, table: str) -> None:
        self.table = table
        super().__init__(f"Primary key of {table} must be set before saving")


class FieldNotLoadedError(ProgrammingError):
    """A column was read that the query did not select."""

    def __init__(self, table: str, field: str) -> None:
        self.table = table
        self.field = field
        super().__init__(f"{table}.{field} was not loaded by the query")

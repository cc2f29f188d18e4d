"""Notifications of the rows written by saves and deletes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from typed_orm.types import TableDefinition


class ChangeKind(Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Change:
    """One row written to the store.

    ``key`` is the primary key value, or a tuple for composite keys.
    ``fields`` names the columns an update wrote, not counting the lock
    column. A change to the join rows of a many-to-many relationship is
    reported as an update of the owning row naming the relationship.
    """

    kind: ChangeKind
    db_key: str
    table: str
    key: Any
    fields: tuple[str, ...] = ()


# Called once per change, after the operation that made it has finished
ChangeHook = Callable[[Change], None]


def row_key(table: TableDefinition, key_filter: dict[str, Any]) -> Any:
    """Return the key value held by ``key_filter``, or a tuple for a composite key."""
    values = tuple(key_filter[c] for c in table.primary_key)
    return values[0] if len(values) == 1 else values

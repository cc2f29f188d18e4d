"""The contract between the ORM core and a storage backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ContextManager, Iterator, Protocol, runtime_checkable

from typed_orm.context import Context
from typed_orm.node import Node

# Path under which calculation values appear in result rows
ALIAS_PATH = "aliases_"

# A result row: values keyed by (join path, column), aliases by (ALIAS_PATH, alias)
Row = dict[tuple[str, str], Any]


class UniqueConstraintViolation(Exception):
    """Raised by a row-store when a write breaks a unique constraint."""

    def __init__(self, table: str, columns: tuple[str, ...]) -> None:
        self.table = table
        self.columns = columns
        super().__init__(f"Duplicate value for unique {table}({', '.join(columns)})")


@dataclass
class Join:
    """A left join from the rows at ``parent_path`` through ``node``."""

    path: str
    parent_path: str
    node: Node


@dataclass
class QueryPlan:
    """A compiled query, independent of any query language.

    ``joins`` lists parents before children. ``columns`` lists the
    ``(path, column)`` pairs every returned row must carry.
    """

    table: str
    db_key: str
    joins: list[Join] = field(default_factory=list)
    columns: list[tuple[str, str]] = field(default_factory=list)
    where: Node | None = None
    group_by: list[Node] = field(default_factory=list)
    calculations: dict[str, Node] = field(default_factory=dict)
    having: Node | None = None
    order_by: list[tuple[Node, bool]] = field(default_factory=list)
    distinct: bool = False
    offset: int = 0
    limit: int | None = None

    @property
    def root_path(self) -> str:
        return self.table


class RowCursor(Protocol):
    """A forward-only stream of result rows."""

    def __iter__(self) -> Iterator[Row]: ...

    def __next__(self) -> Row: ...

    def close(self) -> None: ...


@runtime_checkable
class RowStore(Protocol):
    """Parameterized row operations the persistence engine and builder rely on.

    Every method receives the caller's context first and must check it before
    doing work. ``key_filter`` and ``lock_filter`` map column names to the
    values a row must hold to be affected.
    """

    def insert(self, ctx: Context, table: str, values: dict[str, Any]) -> Any:
        """Insert a row and return the generated key, or None."""
        ...

    def update(
        self,
        ctx: Context,
        table: str,
        values: dict[str, Any],
        key_filter: dict[str, Any],
        lock_filter: dict[str, Any] | None = None,
    ) -> int:
        """Update matching rows and return how many were changed."""
        ...

    def delete(
        self,
        ctx: Context,
        table: str,
        key_filter: dict[str, Any],
        lock_filter: dict[str, Any] | None = None,
    ) -> int:
        """Delete matching rows and return how many were removed."""
        ...

    def select(self, ctx: Context, plan: QueryPlan) -> list[Row]: ...

    def select_cursor(self, ctx: Context, plan: QueryPlan) -> RowCursor: ...

    def count(self, ctx: Context, plan: QueryPlan) -> int: ...


@runtime_checkable
class TransactionalRowStore(RowStore, Protocol):
    """A row-store that can run several calls as one atomic unit."""

    def transaction(self, ctx: Context) -> ContextManager[None]: ...

"""Database class binding a schema to a row-store."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable

from typed_orm import op
from typed_orm.builder import QueryBuilder
from typed_orm.changes import ChangeHook
from typed_orm.config import OrmConfig
from typed_orm.context import Context
from typed_orm.engine import PersistenceEngine, key_filter_for
from typed_orm.memory_store import MemoryRowStore
from typed_orm.node import Node
from typed_orm.parsing import SchemaParser
from typed_orm.record import Record
from typed_orm.rowstore import RowStore
from typed_orm.types import SchemaRegistry, TableDefinition

logger = logging.getLogger(__name__)

# Receives every new query builder; returns the builder to use, or None to keep it
QueryHook = Callable[[QueryBuilder], "QueryBuilder | None"]


class Database:
    """A schema, a row-store and the engine that connects them."""

    def __init__(
        self,
        registry: SchemaRegistry,
        store: RowStore | None = None,
        config: OrmConfig | None = None,
        query_hook: QueryHook | None = None,
        on_change: ChangeHook | None = None,
    ) -> None:
        """Initialize a database.

        Args:
            registry: Tables, columns and relationships of the schema.
            store: Row-store holding the data. Defaults to a new
                MemoryRowStore.
            config: Loading and saving options.
            query_hook: Called with every new query builder, e.g. to add
                access conditions.
            on_change: Called with every row inserted, updated or deleted
                by a save or delete, once the operation has finished.
        """
        self.registry = registry
        self.store = store if store is not None else MemoryRowStore(registry)
        self.config = config if config is not None else OrmConfig()
        self.query_hook = query_hook
        self.engine = PersistenceEngine(registry, self.store, self.config, on_change)

    @classmethod
    def from_schema(
        cls,
        schema: str,
        store: RowStore | None = None,
        config: OrmConfig | None = None,
        query_hook: QueryHook | None = None,
        on_change: ChangeHook | None = None,
    ) -> Database:
        """Parse schema definitions and create a database.

        Args:
            schema: Schema DSL text.
            store: Row-store holding the data.
            config: Loading and saving options.
            query_hook: Called with every new query builder.
            on_change: Called with every row written by a save or delete.

        Returns:
            A new Database instance.
        """
        registry = SchemaParser().parse(schema)
        return cls(
            registry, store=store, config=config, query_hook=query_hook, on_change=on_change
        )

    @classmethod
    def from_file(cls, path: Path | str, **kwargs: Any) -> Database:
        """Parse a schema file and create a database."""
        if isinstance(path, str):
            path = Path(path)
        return cls.from_schema(path.read_text(), **kwargs)

    def get_table(self, name: str) -> TableDefinition:
        """Get a table definition by name.

        Raises:
            KeyError: If the table is not found.
        """
        return self.registry.get_or_raise(name)

    def list_tables(self) -> list[str]:
        return self.registry.list_tables()

    def resolve_context(self, ctx: Context | None) -> Context:
        """Return ``ctx``, or a context carrying the configured default timeout."""
        if ctx is not None:
            return ctx
        ctx = Context.background()
        if self.config.default_timeout is not None:
            ctx = ctx.with_timeout(self.config.default_timeout)
        return ctx

    def node(self, table: str) -> Node:
        """Return the root query node of a table."""
        return self.registry.node(table)

    def new(self, table: str, **values: Any) -> Record:
        """Create an unsaved record, with defaults for the columns not given."""
        record = Record._create(self, self.get_table(table))
        for column, value in values.items():
            record.set(column, value)
        return record

    def query(
        self, table: str, ctx: Context | None = None, hook: QueryHook | None = None
    ) -> QueryBuilder:
        """Start a query against ``table``.

        The query hook (``hook`` or the database's) sees the builder first and
        may replace it or raise to deny the query.
        """
        builder = QueryBuilder(self, table, ctx)
        hook = hook if hook is not None else self.query_hook
        if hook is not None:
            replaced = hook(builder)
            if replaced is not None and replaced is not builder:
                logger.debug("Query hook replaced the %s query builder", table)
                builder = replaced
        return builder

    def load(self, table: str, key: Any, *selects: Node, ctx: Context | None = None) -> Record | None:
        """Load one record by primary key, or None if there is no such row.

        ``selects`` are passed to ``QueryBuilder.select``.
        """
        builder = self.query(table, ctx=ctx)
        conditions = [
            op.equal(builder.root[column], value)
            for column, value in key_filter_for(self.get_table(table), key).items()
        ]
        builder.where(op.and_(*conditions))
        if selects:
            builder.select(*selects)
        return builder.get()

    def save(self, record: Record, ctx: Context | None = None) -> None:
        """Save a record and cascade to the related records attached to it."""
        self.engine.save(record, self.resolve_context(ctx))

    def delete(self, record: Record, ctx: Context | None = None) -> None:
        """Delete a record's row and cascade to its dependants."""
        self.engine.delete(record, self.resolve_context(ctx))

    def delete_by_key(self, table: str, key: Any, ctx: Context | None = None) -> None:
        """Delete a row by primary key and cascade to its dependants."""
        self.engine.delete_by_key(table, key, self.resolve_context(ctx))

    def close(self) -> None:
        """Close the row-store if it holds resources."""
        close = getattr(self.store, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

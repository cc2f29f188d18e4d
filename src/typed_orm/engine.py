"""Persistence engine: writes records and their related records to a row-store."""

from __future__ import annotations

import logging
from contextlib import nullcontext
from typing import Any, ContextManager

from typed_orm.changes import Change, ChangeHook, ChangeKind, row_key
from typed_orm.config import OrmConfig
from typed_orm.context import Context
from typed_orm.errors import (
    MissingPrimaryKeyError,
    MissingReferenceError,
    OptimisticLockError,
    ProgrammingError,
    RecordNotFoundError,
    UniqueValueError,
)
from typed_orm.record import Record
from typed_orm.resolver import RelationshipResolver
from typed_orm.rowstore import RowStore, TransactionalRowStore, UniqueConstraintViolation
from typed_orm.types import RelationshipKind, SchemaRegistry, TableDefinition

logger = logging.getLogger(__name__)

# Records touched by a cascade, with their state before it began
Journal = list[tuple[Record, dict[str, Any]]]


class PersistenceEngine:
    """Saves and deletes records, cascading through their relationships.

    The engine keeps no state between calls. Conflicts are detected by the
    store: unique constraints on insert or update, and for locked tables a
    compare-and-swap on the lock token.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        store: RowStore,
        config: OrmConfig,
        on_change: ChangeHook | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.config = config
        self.on_change = on_change
        self.resolver = RelationshipResolver(self)

    def _transaction(self, ctx: Context) -> tuple[ContextManager[Any], bool]:
        if self.config.atomic_cascades and isinstance(self.store, TransactionalRowStore):
            return self.store.transaction(ctx), True
        return nullcontext(), False

    def _notify(self, changes: list[Change]) -> None:
        """Pass the changes of a finished operation to the change hook."""
        if self.on_change is None or not changes:
            return
        logger.debug("Reporting %d change(s)", len(changes))
        for change in changes:
            self.on_change(change)

    # Save

    def save(self, record: Record, ctx: Context) -> None:
        """Write ``record`` and every related record that needs it.

        Raises:
            MissingReferenceError: If a required reference is not set.
            MissingPrimaryKeyError: If a manual key is not set on a new record.
            UniqueValueError: If a write duplicates a unique value.
            OptimisticLockError: If a locked row changed since it was read.
            RecordNotFoundError: If an unlocked row no longer exists.
        """
        ctx.check()
        self._validate(record, set(), frozenset())
        journal: Journal = []
        changes: list[Change] = []
        transaction, transactional = self._transaction(ctx)
        try:
            with transaction:
                self._save(ctx, record, set(), journal, changes)
        except BaseException:
            if transactional:
                for touched, snapshot in reversed(journal):
                    touched._restore(snapshot)
            else:
                self._notify(changes)
            raise
        self._notify(changes)

    def _validate(self, record: Record, visited: set[int], provided: frozenset[str]) -> None:
        """Check required references and manual keys before anything is written."""
        if id(record) in visited:
            return
        visited.add(id(record))
        table = record.table_def

        if record.is_new and not table.has_auto_key:
            if any(v is None for v in record._key()):
                raise MissingPrimaryKeyError(table.name)

        for rel in table.relationships:
            if rel.kind is RelationshipKind.FORWARD:
                target = record._references.get(rel.name)
                if target is not None:
                    if target._needs_save():
                        self._validate(target, visited, frozenset())
                elif (
                    not rel.nullable
                    and rel.name not in provided
                    and rel.column in record._loaded
                    and record._values.get(rel.column) is None
                ):
                    raise MissingReferenceError(table.name, rel.name)
            elif rel.kind is RelationshipKind.REVERSE:
                for child in record._reverse_children(rel.name):
                    if child._needs_save():
                        self._validate(child, visited, frozenset({rel.inverse}))
            else:
                for member in record._many.get(rel.name, []):
                    if member._needs_save():
                        self._validate(member, visited, frozenset())

    def _save(
        self,
        ctx: Context,
        record: Record,
        visited: set[int],
        journal: Journal,
        changes: list[Change],
    ) -> None:
        if id(record) in visited:
            return
        visited.add(id(record))
        ctx.check()
        journal.append((record, record._snapshot()))
        table = record.table_def

        # Referenced records first; their keys go into this row
        for rel in table.relationships:
            if rel.kind is not RelationshipKind.FORWARD:
                continue
            target = record._references.get(rel.name)
            if target is None:
                continue
            if target._needs_save():
                self._save(ctx, target, visited, journal, changes)
            if not target.is_new:
                record._assign(rel.column, target.primary_key)

        inserted = record.is_new
        if inserted:
            self._insert(ctx, record, changes)
        elif record.is_dirty:
            self._update(ctx, record, changes)

        for rel in table.relationships:
            if rel.kind is RelationshipKind.REVERSE:
                if rel.name in record._set_reverse:
                    self.resolver.displace_reverse(ctx, record, rel, journal, changes)
                for child in record._reverse_children(rel.name):
                    child._references[rel.inverse] = record
                    # A child read through this record without its key already holds it
                    if inserted or child.is_new or rel.column in child._loaded:
                        child._assign(rel.column, record.primary_key)
                    if child._needs_save():
                        self._save(ctx, child, visited, journal, changes)
            elif rel.kind is RelationshipKind.MANY_MANY:
                members = record._many.get(rel.name, [])
                added = record._many_added.get(rel.name, [])
                if rel.name in record._set_many or added:
                    for member in members:
                        if member._needs_save():
                            self._save(ctx, member, visited, journal, changes)
                    if rel.name in record._set_many:
                        self.resolver.replace_associations(ctx, record, rel, members, changes)
                    else:
                        self.resolver.add_associations(ctx, record, rel, added, changes)
                else:
                    for member in members:
                        if member.is_dirty:
                            self._save(ctx, member, visited, journal, changes)

        record._clear_pending()

    def _insert(self, ctx: Context, record: Record, changes: list[Change]) -> None:
        table = record.table_def
        values = {
            c.name: record._values.get(c.name)
            for c in table.columns
            if c.name in record._loaded and not (c.is_auto and record._values.get(c.name) is None)
        }
        if table.lock_column is not None:
            values[table.lock_column] = self.config.lock_token_factory()

        logger.debug("Inserting %s: %r", table.name, values)
        try:
            generated = self.store.insert(ctx, table.name, values)
        except UniqueConstraintViolation as e:
            raise self._unique_error(e) from e

        record._values.update(values)
        record._loaded.update(values)
        if table.has_auto_key and generated is not None:
            pk = table.primary_key[0]
            record._values[pk] = generated
            record._loaded.add(pk)
        record._mark_written()
        changes.append(Change(ChangeKind.INSERT, table.db_key, table.name, record.primary_key))

    def _update(self, ctx: Context, record: Record, changes: list[Change]) -> None:
        table = record.table_def
        fields = tuple(sorted(record._dirty))
        values = {c: record._values[c] for c in record._dirty}
        key_filter = record._key_filter()
        lock_filter = None
        if table.lock_column is not None:
            lock_filter = {table.lock_column: record._original.get(table.lock_column)}
            values[table.lock_column] = self.config.lock_token_factory()

        logger.debug("Updating %s%r: %r", table.name, key_filter, values)
        try:
            count = self.store.update(ctx, table.name, values, key_filter, lock_filter)
        except UniqueConstraintViolation as e:
            raise self._unique_error(e) from e
        if count == 0:
            raise self._missing_row_error(table, key_filter, lock_filter is not None)

        record._values.update(values)
        record._loaded.update(values)
        record._mark_written()
        changes.append(
            Change(ChangeKind.UPDATE, table.db_key, table.name, row_key(table, key_filter), fields)
        )

    def _unique_error(self, e: UniqueConstraintViolation) -> UniqueValueError:
        error = UniqueValueError(e.table, ",".join(e.columns))
        logger.warning("%s", error)
        return error

    def _missing_row_error(
        self, table: TableDefinition, key_filter: dict[str, Any], locked: bool
    ) -> Exception:
        key = row_key(table, key_filter)
        error: Exception
        if locked:
            error = OptimisticLockError(table.name, key)
        else:
            error = RecordNotFoundError(table.name, key)
        logger.warning("%s", error)
        return error

    # Delete

    def delete(self, record: Record, ctx: Context) -> None:
        """Delete the row of ``record`` and cascade to its dependants.

        Raises:
            OptimisticLockError: If the locked row changed since it was read.
            RecordNotFoundError: If the row does not exist.
        """
        if record.is_new:
            raise ProgrammingError(f"Cannot delete {record!r}: it was never saved")
        ctx.check()
        table = record.table_def
        key_filter = record._key_filter()
        lock_filter = None
        if table.lock_column is not None:
            lock_filter = {table.lock_column: record._original.get(table.lock_column)}

        tokens = self._delete(ctx, table, key_filter, lock_filter)
        self.resolver.detach_deleted(record, tokens)
        record._mark_detached()

    def delete_by_key(self, table: str, key: Any, ctx: Context) -> None:
        """Delete a row by primary key, without a lock check, and cascade."""
        ctx.check()
        table_def = self.registry.get_or_raise(table)
        key_filter = key_filter_for(table_def, key)
        self._delete(ctx, table_def, key_filter, None)

    def _delete(
        self,
        ctx: Context,
        table: TableDefinition,
        key_filter: dict[str, Any],
        lock_filter: dict[str, Any] | None,
    ) -> dict[tuple[str, tuple], Any]:
        changes: list[Change] = []
        transaction, transactional = self._transaction(ctx)
        try:
            with transaction:
                self._delete_row(ctx, table, key_filter, lock_filter, changes)
                tokens = self.resolver.cascade_delete(ctx, table, key_filter, changes)
        except BaseException:
            if not transactional:
                self._notify(changes)
            raise
        self._notify(changes)
        return tokens

    def _delete_row(
        self,
        ctx: Context,
        table: TableDefinition,
        key_filter: dict[str, Any],
        lock_filter: dict[str, Any] | None,
        changes: list[Change],
    ) -> None:
        logger.debug("Deleting %s%r", table.name, key_filter)
        count = self.store.delete(ctx, table.name, key_filter, lock_filter)
        if count == 0:
            raise self._missing_row_error(table, key_filter, lock_filter is not None)
        key = row_key(table, key_filter)
        changes.append(Change(ChangeKind.DELETE, table.db_key, table.name, key))

    def _delete_cascade(
        self,
        ctx: Context,
        table: TableDefinition,
        key_filter: dict[str, Any],
        changes: list[Change],
    ) -> None:
        """Delete a dependent row found by a cascade, and its own dependants."""
        ctx.check()
        if self.store.delete(ctx, table.name, key_filter):
            changes.append(
                Change(ChangeKind.DELETE, table.db_key, table.name, row_key(table, key_filter))
            )
        self.resolver.cascade_delete(ctx, table, key_filter, changes)


def key_filter_for(table: TableDefinition, key: Any) -> dict[str, Any]:
    pk = table.primary_key
    if len(pk) == 1:
        return {pk[0]: key}
    if not isinstance(key, tuple) or len(key) != len(pk):
        raise ValueError(f"Key of '{table.name}' must be a tuple of {len(pk)} values")
    return dict(zip(pk, key))


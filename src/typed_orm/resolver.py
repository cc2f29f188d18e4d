"""Cascade rules for relationships touched by a save or delete.

| shape                  | on reassignment           | on owner delete       |
|------------------------|---------------------------|-----------------------|
| reverse, not nullable  | displaced rows deleted    | rows deleted          |
| reverse, nullable      | displaced rows nulled     | rows nulled           |
| many-to-many           | join rows replaced        | join rows removed     |

Forward references need no cascade: the referenced row is never touched,
and a second owner of a unique target is rejected by the store.

Cascades read the rows to act on from the store, so they see changes made
by other writers and by earlier steps of the same cascade.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from typed_orm import op
from typed_orm.changes import Change, ChangeKind, row_key
from typed_orm.context import Context
from typed_orm.node import Node, NodeKind
from typed_orm.record import Record
from typed_orm.rowstore import QueryPlan, UniqueConstraintViolation
from typed_orm.types import RelationshipDefinition, RelationshipKind, TableDefinition

if TYPE_CHECKING:
    from typed_orm.engine import Journal, PersistenceEngine

logger = logging.getLogger(__name__)


class RelationshipResolver:
    """Applies reverse and many-to-many cascades on behalf of the engine."""

    def __init__(self, engine: PersistenceEngine) -> None:
        self._engine = engine

    @property
    def _store(self) -> Any:
        return self._engine.store

    def _rows(
        self,
        ctx: Context,
        table: str,
        db_key: str,
        filters: dict[str, Any],
        columns: list[str],
    ) -> list[dict[str, Any]]:
        """Read ``columns`` of the rows of ``table`` matching ``filters``."""
        root = Node(kind=NodeKind.TABLE, table=table, db_key=db_key, name=table)
        conditions = [
            op.equal(Node(kind=NodeKind.COLUMN, table=table, db_key=db_key, name=c,
                          parent=root, column=c), value)
            for c, value in filters.items()
        ]
        plan = QueryPlan(
            table=table,
            db_key=db_key,
            columns=[(table, c) for c in columns],
            where=op.and_(*conditions),
        )
        return [
            {c: row[(table, c)] for c in columns} for row in self._store.select(ctx, plan)
        ]

    def _children(
        self, ctx: Context, rel: RelationshipDefinition, parent_key: Any
    ) -> tuple[TableDefinition, list[dict[str, Any]]]:
        child_def = self._engine.registry.get_or_raise(rel.target_table)
        keys = list(child_def.primary_key)
        rows = self._rows(ctx, child_def.name, child_def.db_key, {rel.column: parent_key}, keys)
        return child_def, [{c: row[c] for c in keys} for row in rows]

    def _null_reference(
        self,
        ctx: Context,
        child_def: TableDefinition,
        column: str,
        key_filter: dict[str, Any],
        changes: list[Change],
    ) -> Any:
        """Clear the foreign key of one row, rotating its lock token. Returns the new token."""
        values: dict[str, Any] = {column: None}
        token = None
        if child_def.lock_column is not None:
            token = self._engine.config.lock_token_factory()
            values[child_def.lock_column] = token
        logger.debug("Clearing %s.%s of %r", child_def.name, column, key_filter)
        if self._store.update(ctx, child_def.name, values, key_filter):
            key = row_key(child_def, key_filter)
            change = Change(ChangeKind.UPDATE, child_def.db_key, child_def.name, key, (column,))
            changes.append(change)
        return token

    def displace_reverse(
        self,
        ctx: Context,
        record: Record,
        rel: RelationshipDefinition,
        journal: Journal,
        changes: list[Change],
    ) -> None:
        """Detach the stored children of ``record`` that are no longer in its ``rel`` slot."""
        kept = {child._key() for child in record._reverse_children(rel.name) if not child.is_new}
        child_def, rows = self._children(ctx, rel, record.primary_key)
        tokens: dict[tuple, Any] = {}
        deleted: set[tuple] = set()
        for key_filter in rows:
            key = tuple(key_filter[c] for c in child_def.primary_key)
            if key in kept:
                continue
            if rel.nullable:
                tokens[key] = self._null_reference(ctx, child_def, rel.column, key_filter, changes)
            else:
                logger.debug("Deleting %s%r displaced from %s", child_def.name, key, record)
                self._engine._delete_cascade(ctx, child_def, key_filter, changes)
                deleted.add(key)

        # Bring displaced in-memory copies in line with the store
        for child in record._displaced.get(rel.name, []):
            key = child._key()
            if child.is_new or (key not in tokens and key not in deleted):
                continue
            journal.append((child, child._snapshot()))
            if key in deleted:
                child._mark_detached()
                continue
            child._values[rel.column] = None
            child._original[rel.column] = None
            child._dirty.discard(rel.column)
            if child_def.lock_column is not None:
                child._values[child_def.lock_column] = tokens[key]
                child._original[child_def.lock_column] = tokens[key]

    def cascade_delete(
        self,
        ctx: Context,
        table_def: TableDefinition,
        key_filter: dict[str, Any],
        changes: list[Change],
    ) -> dict[tuple[str, tuple], Any]:
        """Apply the delete cascade of the row of ``table_def`` at ``key_filter``.

        Returns the new lock tokens of the children whose key was cleared,
        keyed by ``(relationship name, child key)``.
        """
        tokens: dict[tuple[str, tuple], Any] = {}
        for rel in table_def.relationships:
            ctx.check()
            if rel.kind is RelationshipKind.REVERSE:
                key = key_filter[table_def.primary_key[0]]
                child_def, rows = self._children(ctx, rel, key)
                for child_key in rows:
                    if rel.nullable:
                        token = self._null_reference(ctx, child_def, rel.column, child_key, changes)
                        tokens[(rel.name, tuple(child_key[c] for c in child_def.primary_key))] = token
                    else:
                        logger.debug("Deleting dependent %s%r", child_def.name, child_key)
                        self._engine._delete_cascade(ctx, child_def, child_key, changes)
            elif rel.kind is RelationshipKind.MANY_MANY:
                key = key_filter[table_def.primary_key[0]]
                removed = self._store.delete(ctx, rel.assn_table, {rel.assn_parent_column: key})
                logger.debug("Removed %d %s row(s) of %s", removed, rel.assn_table, key_filter)
        return tokens

    def detach_deleted(self, record: Record, tokens: dict[tuple[str, tuple], Any]) -> None:
        """Update the records attached to ``record`` after its row was deleted.

        ``tokens`` is the result of ``cascade_delete`` for the row.
        """
        for rel in record.table_def.relationships:
            if rel.kind is RelationshipKind.FORWARD:
                target = record._references.get(rel.name)
                if target is not None:
                    target._drop_reverse(rel.inverse, record)
            elif rel.kind is RelationshipKind.REVERSE:
                for child in record._reverse_children(rel.name):
                    if child._references.get(rel.inverse) is record:
                        del child._references[rel.inverse]
                    if child.is_new:
                        continue
                    if rel.nullable:
                        child._values[rel.column] = None
                        child._original[rel.column] = None
                        child._dirty.discard(rel.column)
                        lock_column = child.table_def.lock_column
                        key = (rel.name, child._key())
                        if lock_column is not None and key in tokens:
                            child._values[lock_column] = tokens[key]
                            child._original[lock_column] = tokens[key]
                    else:
                        child._mark_detached()
                record._reverse.pop(rel.name, None)
            else:
                record._many.pop(rel.name, None)

    def _link(self, ctx: Context, rel: RelationshipDefinition, key: Any, member: Record) -> None:
        values = {rel.assn_parent_column: key, rel.assn_ref_column: member.primary_key}
        try:
            self._store.insert(ctx, rel.assn_table, values)
        except UniqueConstraintViolation as e:
            raise self._engine._unique_error(e) from e

    def replace_associations(
        self,
        ctx: Context,
        record: Record,
        rel: RelationshipDefinition,
        members: list[Record],
        changes: list[Change],
    ) -> None:
        """Rewrite the join rows of ``record`` so they link exactly ``members``."""
        key = record.primary_key
        removed = self._store.delete(ctx, rel.assn_table, {rel.assn_parent_column: key})
        for member in members:
            self._link(ctx, rel, key, member)
        logger.debug(
            "Replaced %d %s row(s) of %s with %d", removed, rel.assn_table, record, len(members)
        )
        if removed or members:
            changes.append(_association_change(record, rel))

    def add_associations(
        self,
        ctx: Context,
        record: Record,
        rel: RelationshipDefinition,
        added: list[Record],
        changes: list[Change],
    ) -> None:
        """Insert the join rows of ``added`` that are not stored yet."""
        key = record.primary_key
        target_def = self._engine.registry.get_or_raise(rel.target_table)
        linked = {
            row[rel.assn_ref_column]
            for row in self._rows(
                ctx,
                rel.assn_table,
                target_def.db_key,
                {rel.assn_parent_column: key},
                [rel.assn_ref_column],
            )
        }
        stored = len(linked)
        for member in added:
            if member.primary_key in linked:
                continue
            self._link(ctx, rel, key, member)
            linked.add(member.primary_key)
        if len(linked) > stored:
            changes.append(_association_change(record, rel))


def _association_change(record: Record, rel: RelationshipDefinition) -> Change:
    table = record.table_def
    return Change(ChangeKind.UPDATE, table.db_key, table.name, record.primary_key, (rel.name,))

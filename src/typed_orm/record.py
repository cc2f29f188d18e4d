"""Records: mutable, typed wrappers around one row of a table."""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any, Iterable

from typed_orm import op
from typed_orm.context import Context
from typed_orm.errors import FieldNotLoadedError, InvalidNodeError, MissingReferenceError
from typed_orm.types import (
    ColumnType,
    RelationshipDefinition,
    RelationshipKind,
    TableDefinition,
)

if TYPE_CHECKING:
    from typed_orm.database import Database


class Record:
    """One row of a table, plus the related records attached to it.

    Column values are read with ``record["name"]`` or ``get`` and written with
    ``record["name"] = value`` or ``set``. Related records are reached through
    ``reference``, ``reverse`` and ``many``, which never touch the store; use
    the ``load_*`` methods to fetch relationships a query did not select.
    """

    def __init__(self, db: Database, table: TableDefinition) -> None:
        self._db = db
        self._table = table
        self._values: dict[str, Any] = {}
        self._loaded: set[str] = set()
        self._dirty: set[str] = set()
        self._original: dict[str, Any] = {}
        self._is_new = True

        # Attached relationships, keyed by relationship name
        self._references: dict[str, Record | None] = {}
        self._reverse: dict[str, Record | None | list[Record]] = {}
        self._many: dict[str, list[Record]] = {}
        self._aliases: dict[str, Any] = {}

        # Relationship slots whose stored contents must be replaced on save
        self._set_reverse: set[str] = set()
        self._set_many: set[str] = set()
        self._many_added: dict[str, list[Record]] = {}
        self._displaced: dict[str, list[Record]] = {}

    @classmethod
    def _create(cls, db: Database, table: TableDefinition) -> Record:
        """Create a new record with every column at its default.

        Keys and foreign keys without a declared default start as None,
        meaning they are not set yet.
        """
        record = cls(db, table)
        for column in table.columns:
            if column.name == table.lock_column:
                continue
            unset = column.is_pk or table.forward_for_column(column.name) is not None
            if column.default is None and unset:
                record._values[column.name] = None
            else:
                record._values[column.name] = column.default_value()
            record._loaded.add(column.name)
        return record

    @classmethod
    def _from_row(cls, db: Database, table: TableDefinition, values: dict[str, Any]) -> Record:
        """Create a record for a row read from the store."""
        record = cls(db, table)
        record._values = dict(values)
        record._loaded = set(values)
        record._original = dict(values)
        record._is_new = False
        return record

    # Metadata

    @property
    def table(self) -> str:
        return self._table.name

    @property
    def table_def(self) -> TableDefinition:
        return self._table

    @property
    def db(self) -> Database:
        return self._db

    @property
    def is_new(self) -> bool:
        """Return whether the record has not been written to the store yet."""
        return self._is_new

    @property
    def is_dirty(self) -> bool:
        return bool(self._dirty)

    @property
    def dirty_fields(self) -> set[str]:
        return set(self._dirty)

    @property
    def primary_key(self) -> Any:
        """Return the key value, or a tuple of values for a composite key."""
        key = self._key()
        return key[0] if len(key) == 1 else key

    @property
    def lock_token(self) -> Any:
        if self._table.lock_column is None:
            return None
        return self._values.get(self._table.lock_column)

    def is_loaded(self, column: str) -> bool:
        return column in self._loaded

    def _key(self) -> tuple[Any, ...]:
        return tuple(self._values.get(c) for c in self._table.primary_key)

    def _key_filter(self) -> dict[str, Any]:
        """Return the stored key of the row, before any unsaved key change."""
        return {c: self._original.get(c, self._values.get(c)) for c in self._table.primary_key}

    def _needs_save(self) -> bool:
        return bool(
            self._is_new
            or self._dirty
            or self._set_reverse
            or self._set_many
            or any(self._many_added.values())
        )

    # Columns

    def get(self, column: str) -> Any:
        """Return the value of a column.

        Raises:
            KeyError: If the table has no such column.
            FieldNotLoadedError: If the column was not loaded and strict
                loading is on.
        """
        self._table.get_column_or_raise(column)
        if column not in self._loaded:
            if self._db.config.strict_loading:
                raise FieldNotLoadedError(self.table, column)
            return None
        return self._values.get(column)

    def set(self, column: str, value: Any) -> None:
        """Set the value of a column, marking it dirty if it changes.

        Raises:
            KeyError: If the table has no such column.
            ValueError: If the column cannot be set or the value does not fit.
        """
        col = self._table.get_column_or_raise(column)
        if col.is_pk and col.is_auto:
            raise ValueError(f"{self.table}.{column} is generated by the store and cannot be set")
        if column == self._table.lock_column:
            raise ValueError(f"{self.table}.{column} is managed by the persistence engine")
        if value is None and not col.nullable:
            raise ValueError(f"{self.table}.{column} cannot be None")
        if col.type is ColumnType.FLOAT and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        if not col.type.accepts(value):
            raise ValueError(
                f"{value!r} is not a valid value for {self.table}.{column} ({col.type.value})"
            )

        rel = self._table.forward_for_column(column)
        if rel is not None:
            attached = self._references.get(rel.name)
            if attached is not None and (attached.is_new or attached.primary_key != value):
                attached._drop_reverse(rel.inverse, self)
                del self._references[rel.name]
        self._assign(column, value)

    def _assign(self, column: str, value: Any) -> None:
        if column in self._loaded and self._values.get(column) == value:
            return
        self._values[column] = value
        self._loaded.add(column)
        # Dirty means different from the value last read or written
        if column in self._original and self._original[column] == value:
            self._dirty.discard(column)
        else:
            self._dirty.add(column)

    def __getitem__(self, column: str) -> Any:
        return self.get(column)

    def __setitem__(self, column: str, value: Any) -> None:
        self.set(column, value)

    def to_dict(self) -> dict[str, Any]:
        """Return the loaded column values."""
        return {c.name: self._values[c.name] for c in self._table.columns if c.name in self._loaded}

    def alias(self, name: str) -> Any:
        """Return the value of a calculation the query attached to this record."""
        if name not in self._aliases:
            raise KeyError(f"Alias '{name}' was not loaded on {self.table}")
        return self._aliases[name]

    # Relationships

    def _relationship(self, name: str, kind: RelationshipKind) -> RelationshipDefinition:
        rel = self._table.get_relationship_or_raise(name)
        if rel.kind is not kind:
            raise InvalidNodeError(f"{self.table}.{name} is a {rel.kind.value} relationship")
        return rel

    def _check_target(self, rel: RelationshipDefinition, record: Any) -> None:
        if not isinstance(record, Record) or record.table != rel.target_table:
            raise ValueError(f"{self.table}.{rel.name} holds '{rel.target_table}' records, not {record!r}")

    def reference(self, name: str) -> Record | None:
        """Return the record a forward reference points at, if attached."""
        self._relationship(name, RelationshipKind.FORWARD)
        return self._references.get(name)

    def set_reference(self, name: str, target: Record | None) -> None:
        """Point a forward reference at ``target``.

        Raises:
            MissingReferenceError: If ``target`` is None and the reference is
                required.
        """
        rel = self._relationship(name, RelationshipKind.FORWARD)
        if target is None:
            if not rel.nullable:
                raise MissingReferenceError(self.table, name)
        else:
            self._check_target(rel, target)

        old = self._references.get(name)
        if old is not None and old is not target:
            old._drop_reverse(rel.inverse, self)
        self._references[name] = target
        if target is None:
            self._assign(rel.column, None)
            return
        if not target.is_new:
            self._assign(rel.column, target.primary_key)
        target._add_reverse_link(rel.inverse, self)

    def reverse(self, name: str) -> Record | None | list[Record]:
        """Return the attached records that refer to this one.

        A unique reverse relationship returns one record or None, others a
        list.
        """
        rel = self._relationship(name, RelationshipKind.REVERSE)
        slot = self._reverse.get(name)
        if rel.unique:
            return slot  # type: ignore[return-value]
        return list(slot) if slot is not None else []  # type: ignore[arg-type]

    def _reverse_children(self, name: str) -> list[Record]:
        slot = self._reverse.get(name)
        if slot is None:
            return []
        if isinstance(slot, Record):
            return [slot]
        return list(slot)

    def set_reverse(self, name: str, value: Record | None | Iterable[Record]) -> None:
        """Replace the records that refer to this one.

        On save, records that referred to this one before and are not in the
        new value are displaced: their key is cleared when the relationship
        is nullable, and they are deleted otherwise.
        """
        rel = self._relationship(name, RelationshipKind.REVERSE)
        if rel.unique:
            new = [] if value is None else [value]
        else:
            new = list(value or [])  # type: ignore[arg-type]
        for child in new:
            self._check_target(rel, child)

        displaced = self._displaced.setdefault(name, [])
        for child in self._reverse_children(name):
            if not any(child is c for c in new):
                if child._references.get(rel.inverse) is self:
                    del child._references[rel.inverse]
                displaced.append(child)
        for child in new:
            child._link_parent(rel, self)

        self._reverse[name] = (new[0] if new else None) if rel.unique else new
        self._set_reverse.add(name)

    def add_reverse(self, name: str, child: Record) -> None:
        """Attach one more record to a non-unique reverse relationship."""
        rel = self._relationship(name, RelationshipKind.REVERSE)
        if rel.unique:
            raise InvalidNodeError(f"{self.table}.{name} holds one record; use set_reverse")
        self._check_target(rel, child)
        child._link_parent(rel, self)
        slot = self._reverse.setdefault(name, [])
        if not any(child is c for c in slot):  # type: ignore[union-attr]
            slot.append(child)  # type: ignore[union-attr]

    def _link_parent(self, rel: RelationshipDefinition, parent: Record) -> None:
        """Make this record's forward side of ``rel`` point at ``parent``."""
        previous = self._references.get(rel.inverse)
        if previous is not None and previous is not parent:
            previous._drop_reverse(rel.name, self)
        self._references[rel.inverse] = parent
        if not parent.is_new:
            self._assign(rel.column, parent.primary_key)

    def _add_reverse_link(self, name: str, child: Record) -> None:
        # Only slots that are already attached are kept in step
        if name not in self._reverse:
            return
        slot = self._reverse[name]
        if isinstance(slot, list):
            if not any(child is c for c in slot):
                slot.append(child)
        elif slot is None:
            self._reverse[name] = child

    def _drop_reverse(self, name: str, child: Record) -> None:
        slot = self._reverse.get(name)
        if isinstance(slot, list):
            slot[:] = [c for c in slot if c is not child]
        elif slot is child:
            self._reverse[name] = None

    def many(self, name: str) -> list[Record]:
        """Return the attached records of a many-to-many relationship."""
        self._relationship(name, RelationshipKind.MANY_MANY)
        return list(self._many.get(name, []))

    def set_many(self, name: str, records: Iterable[Record]) -> None:
        """Replace the associated records; on save the join rows are rewritten."""
        rel = self._relationship(name, RelationshipKind.MANY_MANY)
        members: list[Record] = []
        for record in records:
            self._check_target(rel, record)
            if not any(record is m for m in members):
                members.append(record)
        self._many[name] = members
        self._set_many.add(name)
        self._many_added.pop(name, None)

    def add_many(self, name: str, record: Record) -> None:
        """Associate one more record; on save a join row is added if missing."""
        rel = self._relationship(name, RelationshipKind.MANY_MANY)
        self._check_target(rel, record)
        members = self._many.setdefault(name, [])
        if any(record is m for m in members):
            return
        members.append(record)
        if name not in self._set_many:
            self._many_added.setdefault(name, []).append(record)

    # Explicit loading

    def load_reference(self, name: str, ctx: Context | None = None) -> Record | None:
        """Fetch the record a forward reference points at and attach it."""
        rel = self._relationship(name, RelationshipKind.FORWARD)
        key = self.get(rel.column)
        target = None
        if key is not None:
            target = self._db.load(rel.target_table, key, ctx=ctx)
        self._references[name] = target
        return target

    def load_reverse(self, name: str, ctx: Context | None = None) -> Record | None | list[Record]:
        """Fetch the records that refer to this one and attach them."""
        rel = self._relationship(name, RelationshipKind.REVERSE)
        children: list[Record] = []
        if not self._is_new:
            builder = self._db.query(rel.target_table, ctx=ctx)
            keys = [builder.root[c] for c in self._db.get_table(rel.target_table).primary_key]
            column = builder.root[rel.column]
            children = builder.where(op.equal(column, self.primary_key)).order_by(*keys).load()
        for child in children:
            child._references[rel.inverse] = self
        self._reverse[name] = (children[0] if children else None) if rel.unique else children
        return self.reverse(name)

    def load_many(self, name: str, ctx: Context | None = None) -> list[Record]:
        """Fetch the associated records of a many-to-many relationship and attach them."""
        rel = self._relationship(name, RelationshipKind.MANY_MANY)
        members: list[Record] = []
        if not self._is_new:
            record = self._db.load(self.table, self.primary_key, self._db.node(self.table)[name], ctx=ctx)
            if record is not None:
                members = record.many(name)
        self._many[name] = members
        return list(members)

    # Persistence

    def save(self, ctx: Context | None = None) -> None:
        self._db.save(self, ctx=ctx)

    def delete(self, ctx: Context | None = None) -> None:
        self._db.delete(self, ctx=ctx)

    # Snapshot of the state the persistence engine changes, so a rolled back
    # cascade can put the record back as it was
    _SAVE_STATE = (
        "values",
        "loaded",
        "dirty",
        "original",
        "is_new",
        "set_reverse",
        "set_many",
        "many_added",
        "displaced",
    )

    def _snapshot(self) -> dict[str, Any]:
        return {name: copy.copy(getattr(self, "_" + name)) for name in self._SAVE_STATE}

    def _restore(self, snapshot: dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, "_" + name, value)

    def _mark_written(self) -> None:
        """Record that the row now holds the current values."""
        self._is_new = False
        self._dirty.clear()
        self._original = {c: self._values[c] for c in self._loaded if c in self._values}

    def _clear_pending(self) -> None:
        self._set_reverse.clear()
        self._set_many.clear()
        self._many_added.clear()
        self._displaced.clear()

    def _mark_detached(self) -> None:
        """Turn the record back into an unsaved one after its row was deleted."""
        self._is_new = True
        for column in self._table.columns:
            if column.is_pk and column.is_auto:
                self._values[column.name] = None
        if self._table.lock_column is not None:
            self._values.pop(self._table.lock_column, None)
            self._loaded.discard(self._table.lock_column)
        self._original = {}
        self._dirty = set(self._loaded)
        self._clear_pending()

    def __repr__(self) -> str:
        state = "new" if self._is_new else f"key={self.primary_key!r}"
        return f"Record({self.table} {state})"

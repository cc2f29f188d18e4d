"""Schema metadata for the typed_orm library."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from typed_orm.node import Node


# Name of the column that holds the optimistic lock token on locked tables
LOCK_COLUMN = "lock_token"

# Database key used when a schema does not name its database
DEFAULT_DB_KEY = "default"


class ColumnType(Enum):
    """Value types a column can hold."""

    INT = "int"
    FLOAT = "float"
    STRING = "string"
    BOOL = "bool"
    BYTES = "bytes"
    DATETIME = "datetime"
    JSON = "json"

    @property
    def zero_value(self) -> Any:
        """Return the value a non-nullable column starts with."""
        zeros = {
            ColumnType.INT: 0,
            ColumnType.FLOAT: 0.0,
            ColumnType.STRING: "",
            ColumnType.BOOL: False,
            ColumnType.BYTES: b"",
            ColumnType.DATETIME: None,
            ColumnType.JSON: None,
        }
        return zeros[self]

    def accepts(self, value: Any) -> bool:
        """Check whether a Python value can be stored in a column of this type."""
        if value is None:
            return True
        if self is ColumnType.INT:
            return isinstance(value, int) and not isinstance(value, bool)
        if self is ColumnType.FLOAT:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if self is ColumnType.STRING:
            return isinstance(value, str)
        if self is ColumnType.BOOL:
            return isinstance(value, bool)
        if self is ColumnType.BYTES:
            return isinstance(value, (bytes, bytearray))
        if self is ColumnType.DATETIME:
            return isinstance(value, datetime.datetime)
        return True


# Mapping from type name strings to ColumnType enum values
COLUMN_TYPE_NAMES: dict[str, ColumnType] = {ct.value: ct for ct in ColumnType}


@dataclass
class ColumnDefinition:
    """Definition of a column within a table."""

    name: str
    type: ColumnType
    nullable: bool = False
    is_pk: bool = False
    is_auto: bool = False
    is_unique: bool = False
    default: Any = None

    def default_value(self) -> Any:
        """Return the value a new record holds before anything is set."""
        if self.default is not None:
            return self.default
        if self.nullable or self.is_auto:
            return None
        return self.type.zero_value


class RelationshipKind(Enum):
    """The shapes a relationship between two tables can take."""

    FORWARD = "forward"
    REVERSE = "reverse"
    MANY_MANY = "manymany"


@dataclass
class RelationshipDefinition:
    """One side of a relationship, as seen from ``table``.

    For FORWARD and REVERSE relationships ``column`` is the foreign key
    column, which lives in ``table`` for a forward reference and in
    ``target_table`` for a reverse reference. MANY_MANY relationships go
    through ``assn_table``, whose ``assn_parent_column`` points at ``table``
    and whose ``assn_ref_column`` points at ``target_table``.
    """

    name: str
    kind: RelationshipKind
    table: str
    target_table: str
    column: str = ""
    nullable: bool = False
    unique: bool = False
    manual_key_target: bool = False
    inverse: str = ""
    assn_table: str = ""
    assn_parent_column: str = ""
    assn_ref_column: str = ""

    @property
    def is_many(self) -> bool:
        """Return whether the relationship holds a list of records."""
        if self.kind is RelationshipKind.MANY_MANY:
            return True
        return self.kind is RelationshipKind.REVERSE and not self.unique


@dataclass
class TableDefinition:
    """Definition of a table: its columns, keys and relationships."""

    name: str
    db_key: str = DEFAULT_DB_KEY
    columns: list[ColumnDefinition] = field(default_factory=list)
    unique_constraints: list[tuple[str, ...]] = field(default_factory=list)
    relationships: list[RelationshipDefinition] = field(default_factory=list)
    lock_column: str | None = None

    @property
    def primary_key(self) -> tuple[str, ...]:
        """Return the primary key column names."""
        return tuple(c.name for c in self.columns if c.is_pk)

    @property
    def has_composite_key(self) -> bool:
        return len(self.primary_key) > 1

    @property
    def has_auto_key(self) -> bool:
        """Return whether the store generates the primary key."""
        pk = [c for c in self.columns if c.is_pk]
        return len(pk) == 1 and pk[0].is_auto

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def get_column(self, name: str) -> ColumnDefinition | None:
        """Get a column by name."""
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def get_column_or_raise(self, name: str) -> ColumnDefinition:
        column = self.get_column(name)
        if column is None:
            raise KeyError(f"Column '{name}' not found in table '{self.name}'")
        return column

    def get_relationship(self, name: str) -> RelationshipDefinition | None:
        """Get a relationship by name."""
        for rel in self.relationships:
            if rel.name == name:
                return rel
        return None

    def get_relationship_or_raise(self, name: str) -> RelationshipDefinition:
        rel = self.get_relationship(name)
        if rel is None:
            raise KeyError(f"Relationship '{name}' not found in table '{self.name}'")
        return rel

    def forward_for_column(self, column: str) -> RelationshipDefinition | None:
        """Get the forward reference whose foreign key is ``column``."""
        for rel in self.relationships:
            if rel.kind is RelationshipKind.FORWARD and rel.column == column:
                return rel
        return None


@dataclass
class AssociationDefinition:
    """A join table backing a many-to-many relationship."""

    name: str
    db_key: str = DEFAULT_DB_KEY
    columns: tuple[str, str] = ("", "")


class SchemaMetadata(Protocol):
    """What the query builder and persistence engine need to know about a schema."""

    def columns(self, table: str) -> list[ColumnDefinition]: ...

    def relationships(self, table: str) -> list[RelationshipDefinition]: ...

    def lock_column(self, table: str) -> str | None: ...

    def primary_key(self, table: str) -> tuple[str, ...]: ...

    def unique_constraints(self, table: str) -> list[tuple[str, ...]]: ...


class SchemaRegistry:
    """Registry of all tables and associations of a schema."""

    def __init__(self) -> None:
        self._tables: dict[str, TableDefinition] = {}
        self._associations: dict[str, AssociationDefinition] = {}

    def register_table(self, table_def: TableDefinition) -> None:
        """Register a table definition.

        Raises:
            ValueError: If the name is taken or the table is malformed.
        """
        if table_def.name in self._tables or table_def.name in self._associations:
            raise ValueError(f"Table '{table_def.name}' is already defined")
        if not table_def.primary_key:
            raise ValueError(f"Table '{table_def.name}' has no primary key")
        seen: set[str] = set()
        for column in table_def.columns:
            if column.name in seen:
                raise ValueError(
                    f"Column '{column.name}' is defined twice in table '{table_def.name}'"
                )
            seen.add(column.name)
            if column.is_auto and not column.is_pk:
                raise ValueError(
                    f"Column '{table_def.name}.{column.name}' is auto but not a primary key"
                )
            if column.is_auto and column.type not in (ColumnType.INT, ColumnType.STRING):
                raise ValueError(
                    f"Auto key '{table_def.name}.{column.name}' must be int or string"
                )
            if column.is_pk and column.nullable:
                raise ValueError(
                    f"Primary key '{table_def.name}.{column.name}' cannot be nullable"
                )
        if table_def.has_composite_key and any(c.is_auto for c in table_def.columns):
            raise ValueError(f"Composite key of '{table_def.name}' cannot be auto generated")
        for constraint in table_def.unique_constraints:
            for name in constraint:
                if name not in seen:
                    raise ValueError(
                        f"Unique constraint on '{table_def.name}' names unknown column '{name}'"
                    )
        for column in table_def.columns:
            if column.is_unique and (column.name,) not in table_def.unique_constraints:
                table_def.unique_constraints.append((column.name,))
        self._tables[table_def.name] = table_def

    def register_reference(
        self,
        table: str,
        column: str,
        target_table: str,
        name: str | None = None,
        reverse_name: str | None = None,
    ) -> RelationshipDefinition:
        """Register a foreign key and both sides of the relationship it creates.

        Args:
            table: Table holding the foreign key.
            column: Foreign key column in ``table``.
            target_table: Table the key points at.
            name: Name of the forward side. Defaults to ``column`` without a
                trailing ``_id``.
            reverse_name: Name of the reverse side on ``target_table``.
                Defaults to ``table`` (unique keys) or ``table + "s"``.

        Returns:
            The forward relationship.
        """
        owner = self.get_or_raise(table)
        target = self.get_or_raise(target_table)
        fk = owner.get_column_or_raise(column)

        if target.has_composite_key:
            raise ValueError(
                f"Reference {table}.{column} cannot point at '{target_table}', "
                "which has a composite primary key"
            )
        target_pk = target.get_column_or_raise(target.primary_key[0])
        if fk.type is not target_pk.type:
            raise ValueError(
                f"Reference {table}.{column} has type '{fk.type.value}' but "
                f"{target_table}.{target_pk.name} is '{target_pk.type.value}'"
            )

        unique = fk.is_unique or (column,) in owner.unique_constraints
        if name is None:
            name = column[:-3] if column.endswith("_id") and len(column) > 3 else f"{column}_ref"
        if reverse_name is None:
            reverse_name = table if unique else f"{table}s"

        forward = RelationshipDefinition(
            name=name,
            kind=RelationshipKind.FORWARD,
            table=table,
            target_table=target_table,
            column=column,
            nullable=fk.nullable,
            unique=unique,
            manual_key_target=not target.has_auto_key,
            inverse=reverse_name,
        )
        reverse = RelationshipDefinition(
            name=reverse_name,
            kind=RelationshipKind.REVERSE,
            table=target_table,
            target_table=table,
            column=column,
            nullable=fk.nullable,
            unique=unique,
            manual_key_target=not owner.has_auto_key,
            inverse=name,
        )
        self._add_relationship(owner, forward)
        self._add_relationship(target, reverse)
        return forward

    def register_association(
        self,
        name: str,
        first: tuple[str, str, str],
        second: tuple[str, str, str],
        db_key: str = DEFAULT_DB_KEY,
    ) -> AssociationDefinition:
        """Register a join table and the two many-to-many relationships it backs.

        Each side is a ``(column, table, collection_name)`` triple. The
        collection name is how the table on the *other* side refers to
        records of ``table``.
        """
        if name in self._tables or name in self._associations:
            raise ValueError(f"Table '{name}' is already defined")
        col1, table1, coll1 = first
        col2, table2, coll2 = second
        if col1 == col2:
            raise ValueError(f"Association '{name}' uses column '{col1}' twice")
        for table in (table1, table2):
            if self.get_or_raise(table).has_composite_key:
                raise ValueError(
                    f"Association '{name}' cannot point at '{table}', "
                    "which has a composite primary key"
                )

        assn = AssociationDefinition(name=name, db_key=db_key, columns=(col1, col2))
        # table2 sees table1 records as coll1, through col2 -> col1
        self._add_relationship(
            self.get_or_raise(table2),
            RelationshipDefinition(
                name=coll1,
                kind=RelationshipKind.MANY_MANY,
                table=table2,
                target_table=table1,
                nullable=True,
                manual_key_target=not self.get_or_raise(table1).has_auto_key,
                inverse=coll2,
                assn_table=name,
                assn_parent_column=col2,
                assn_ref_column=col1,
            ),
        )
        self._add_relationship(
            self.get_or_raise(table1),
            RelationshipDefinition(
                name=coll2,
                kind=RelationshipKind.MANY_MANY,
                table=table1,
                target_table=table2,
                nullable=True,
                manual_key_target=not self.get_or_raise(table2).has_auto_key,
                inverse=coll1,
                assn_table=name,
                assn_parent_column=col1,
                assn_ref_column=col2,
            ),
        )
        self._associations[name] = assn
        return assn

    def _add_relationship(self, table_def: TableDefinition, rel: RelationshipDefinition) -> None:
        if table_def.get_column(rel.name) is not None:
            raise ValueError(
                f"Relationship '{rel.name}' collides with a column of '{table_def.name}'"
            )
        if table_def.get_relationship(rel.name) is not None:
            raise ValueError(
                f"Relationship '{rel.name}' is defined twice on '{table_def.name}'"
            )
        table_def.relationships.append(rel)

    def get(self, name: str) -> TableDefinition | None:
        """Get a table by name."""
        return self._tables.get(name)

    def get_or_raise(self, name: str) -> TableDefinition:
        """Get a table by name, raising if not found."""
        table_def = self._tables.get(name)
        if table_def is None:
            raise KeyError(f"Table '{name}' not found")
        return table_def

    def get_association(self, name: str) -> AssociationDefinition | None:
        return self._associations.get(name)

    def list_tables(self) -> list[str]:
        """List all registered table names."""
        return list(self._tables)

    def list_associations(self) -> list[str]:
        return list(self._associations)

    def relationship(self, table: str, name: str) -> RelationshipDefinition:
        return self.get_or_raise(table).get_relationship_or_raise(name)

    # SchemaMetadata

    def columns(self, table: str) -> list[ColumnDefinition]:
        return list(self.get_or_raise(table).columns)

    def relationships(self, table: str) -> list[RelationshipDefinition]:
        return list(self.get_or_raise(table).relationships)

    def lock_column(self, table: str) -> str | None:
        return self.get_or_raise(table).lock_column

    def primary_key(self, table: str) -> tuple[str, ...]:
        if table in self._associations:
            return ()
        return self.get_or_raise(table).primary_key

    def unique_constraints(self, table: str) -> list[tuple[str, ...]]:
        if table in self._associations:
            return [self._associations[table].columns]
        return list(self.get_or_raise(table).unique_constraints)

    def node(self, table: str) -> Node:
        """Return the root query node of a table, able to navigate by name."""
        from typed_orm.node import table_node

        return table_node(self.get_or_raise(table), registry=self)

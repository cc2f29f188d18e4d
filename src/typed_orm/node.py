"""Query nodes: immutable descriptions of one step in a query path.

A node is a single tagged dataclass rather than a class hierarchy, so that
structural equality and serialization are defined once. Path nodes (table,
column, reference, reverse, many-many) form a tree rooted at a table node;
operation, value and alias nodes stand on their own and hold operands.

Example::

    person = registry.node("person")
    person["projects"]["manager"]["last_name"]
"""

from __future__ import annotations

import base64
import dataclasses
import datetime
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from typed_orm.errors import InvalidNodeError
from typed_orm.types import RelationshipKind

if TYPE_CHECKING:
    from typed_orm.types import (
        ColumnDefinition,
        RelationshipDefinition,
        SchemaRegistry,
        TableDefinition,
    )


# Version of the serialized node format
NODE_FORMAT_VERSION = 1


class NodeKind(Enum):
    """The kinds of query node."""

    TABLE = "table"
    COLUMN = "column"
    REFERENCE = "reference"
    REVERSE = "reverse"
    MANY_MANY = "manymany"
    OPERATION = "operation"
    VALUE = "value"
    ALIAS = "alias"


# Kinds that stand for rows of a table
TABLE_KINDS = frozenset(
    {NodeKind.TABLE, NodeKind.REFERENCE, NodeKind.REVERSE, NodeKind.MANY_MANY}
)

# Kinds that sit in a path below a parent node
LINKED_KINDS = frozenset(
    {NodeKind.COLUMN, NodeKind.REFERENCE, NodeKind.REVERSE, NodeKind.MANY_MANY}
)


@dataclass(frozen=True)
class Node:
    """One step of a query path, or an expression over such steps.

    Field usage by kind:

    * TABLE: ``table``, ``db_key``, ``name`` (= table), ``pk``.
    * COLUMN: ``name`` / ``column`` (the column), ``column_type``; ``table``
      is the table holding the column.
    * REFERENCE: ``table`` is the referenced table, ``column`` the foreign key
      in the parent's table.
    * REVERSE: ``table`` is the referring table, ``column`` its foreign key.
    * MANY_MANY: ``table`` is the associated table; ``assn_*`` the join table.
    * OPERATION: ``operator``, ``operands``, ``function``, ``aggregate``,
      ``distinct``.
    * VALUE: ``value``. ALIAS: ``name``.

    Equality is structural. The sort direction and the registry used for
    navigation do not take part in it.
    """

    kind: NodeKind
    table: str = ""
    db_key: str = ""
    name: str = ""
    parent: Node | None = None
    column: str = ""
    column_type: str = ""
    pk: tuple[str, ...] = ()
    unique: bool = False
    nullable: bool = False
    assn_table: str = ""
    assn_parent_column: str = ""
    assn_ref_column: str = ""
    operator: str = ""
    operands: tuple[Node, ...] = ()
    function: str = ""
    aggregate: bool = False
    distinct: bool = False
    value: Any = None
    sort_descending: bool = field(default=False, compare=False)
    registry: Any = field(default=None, compare=False, repr=False)

    def __hash__(self) -> int:
        key = (self.kind, self.table, self.name, self.column, self.parent, self.operands)
        return hash((*key, _frozen(self.value)))

    @property
    def is_table_like(self) -> bool:
        return self.kind in TABLE_KINDS

    @property
    def is_many(self) -> bool:
        """Return whether the node yields a list of records on its parent."""
        if self.kind is NodeKind.MANY_MANY:
            return True
        return self.kind is NodeKind.REVERSE and not self.unique

    @property
    def path(self) -> tuple[str, ...]:
        """Return the names from the root table down to this node."""
        if self.kind not in TABLE_KINDS and self.kind is not NodeKind.COLUMN:
            return ()
        names: list[str] = []
        node: Node | None = self
        while node is not None:
            names.append(node.name)
            node = node.parent
        return tuple(reversed(names))

    @property
    def path_key(self) -> str:
        return ".".join(self.path)

    def root(self) -> Node | None:
        """Return the table node at the top of the path, or None."""
        if self.kind not in TABLE_KINDS and self.kind is not NodeKind.COLUMN:
            return None
        node = self
        while node.parent is not None:
            node = node.parent
        return node

    def table_node(self) -> Node | None:
        """Return the table-like node whose rows hold this node's value."""
        if self.kind is NodeKind.COLUMN:
            return self.parent
        if self.is_table_like:
            return self
        return None

    def matches(self, other: Node) -> bool:
        """Check whether two nodes describe the same thing.

        Path nodes match when their kind, table and path from the root are
        the same. Other nodes match when they are equal.
        """
        if not isinstance(other, Node) or self.kind is not other.kind:
            return False
        if self.kind in TABLE_KINDS or self.kind is NodeKind.COLUMN:
            return (
                self.table == other.table
                and self.db_key == other.db_key
                and self.path == other.path
            )
        return self == other

    def contained_nodes(self) -> list[Node]:
        """Return the path nodes used by this node, looking through operations."""
        if self.kind is NodeKind.OPERATION:
            nodes: list[Node] = []
            for operand in self.operands:
                nodes.extend(operand.contained_nodes())
            return nodes
        if self.kind in (NodeKind.VALUE, NodeKind.ALIAS):
            return []
        return [self]

    def has_aggregate(self) -> bool:
        if self.kind is not NodeKind.OPERATION:
            return False
        return self.aggregate or any(o.has_aggregate() for o in self.operands)

    def ascending(self) -> Node:
        """Return a copy that sorts ascending in an order_by clause."""
        return dataclasses.replace(self, sort_descending=False)

    def descending(self) -> Node:
        """Return a copy that sorts descending in an order_by clause."""
        return dataclasses.replace(self, sort_descending=True)

    def primary_key_node(self) -> Node:
        """Return the column node of a table-like node's primary key.

        Raises:
            InvalidNodeError: If the node is not table-like or its table has a
                composite key, which has no single scalar value.
        """
        if not self.is_table_like:
            raise InvalidNodeError(f"{self!r} has no primary key")
        if len(self.pk) != 1:
            raise InvalidNodeError(
                f"Table '{self.table}' has a composite primary key {self.pk}; "
                "use its key columns instead of the table node as a value"
            )
        return Node(
            kind=NodeKind.COLUMN,
            table=self.table,
            db_key=self.db_key,
            name=self.pk[0],
            parent=self,
            column=self.pk[0],
            registry=self.registry,
        )

    def child(self, name: str) -> Node:
        """Return the column or relationship node called ``name`` below this node.

        Raises:
            InvalidNodeError: If this node cannot be navigated or has no such
                child.
        """
        if not self.is_table_like:
            raise InvalidNodeError(f"Cannot navigate below {self!r}")
        if self.registry is None:
            raise InvalidNodeError(
                f"{self!r} is not attached to a schema registry; "
                "decode it with a registry to navigate"
            )
        table_def = self.registry.get(self.table)
        if table_def is None:
            raise InvalidNodeError(f"Table '{self.table}' is not in the registry")

        column_def = table_def.get_column(name)
        if column_def is not None:
            return column_node(self, column_def)
        rel = table_def.get_relationship(name)
        if rel is not None:
            return relationship_node(self, rel, self.registry.get_or_raise(rel.target_table))
        raise InvalidNodeError(f"Table '{self.table}' has no column or relationship '{name}'")

    def __getitem__(self, name: str) -> Node:
        return self.child(name)

    def column_nodes(self) -> list[Node]:
        """Return a node for every column of a table-like node."""
        if not self.is_table_like or self.registry is None:
            raise InvalidNodeError(f"Cannot list columns of {self!r}")
        table_def = self.registry.get_or_raise(self.table)
        return [column_node(self, c) for c in table_def.columns]

    def encode(self) -> bytes:
        """Serialize the node into a portable byte string."""
        document = {"format": NODE_FORMAT_VERSION, "node": _node_to_dict(self)}
        return json.dumps(document, separators=(",", ":")).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes, registry: SchemaRegistry | None = None) -> Node:
        """Rebuild a node from ``encode`` output.

        Args:
            data: Bytes produced by ``Node.encode``.
            registry: Optional registry to attach, so the decoded node can be
                navigated further.

        Raises:
            ValueError: If the data is not a serialized node.
        """
        try:
            document = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"Not a serialized node: {e}") from e
        if not isinstance(document, dict) or document.get("format") != NODE_FORMAT_VERSION:
            raise ValueError("Unsupported serialized node format")
        return _node_from_dict(document["node"], registry)

    def __repr__(self) -> str:
        if self.kind is NodeKind.OPERATION:
            label = self.function or self.operator
            return f"Node(operation {label} {list(self.operands)!r})"
        if self.kind is NodeKind.VALUE:
            return f"Node(value {self.value!r})"
        if self.kind is NodeKind.ALIAS:
            return f"Node(alias {self.name})"
        suffix = " desc" if self.sort_descending else ""
        return f"Node({self.kind.value} {self.path_key}{suffix})"


def table_node(table_def: TableDefinition, registry: SchemaRegistry | None = None) -> Node:
    """Create the root node of a table."""
    return Node(
        kind=NodeKind.TABLE,
        table=table_def.name,
        db_key=table_def.db_key,
        name=table_def.name,
        pk=table_def.primary_key,
        registry=registry,
    )


def column_node(parent: Node, column_def: ColumnDefinition) -> Node:
    """Create a column node below a table-like node."""
    if not parent.is_table_like:
        raise InvalidNodeError(f"Columns can only follow table nodes, not {parent!r}")
    return Node(
        kind=NodeKind.COLUMN,
        table=parent.table,
        db_key=parent.db_key,
        name=column_def.name,
        parent=parent,
        column=column_def.name,
        column_type=column_def.type.value,
        nullable=column_def.nullable,
        unique=column_def.is_unique,
        registry=parent.registry,
    )


def relationship_node(
    parent: Node, rel: RelationshipDefinition, target_def: TableDefinition
) -> Node:
    """Create a reference, reverse or many-many node below a table-like node."""
    if not parent.is_table_like:
        raise InvalidNodeError(f"Relationships can only follow table nodes, not {parent!r}")
    kinds = {
        RelationshipKind.FORWARD: NodeKind.REFERENCE,
        RelationshipKind.REVERSE: NodeKind.REVERSE,
        RelationshipKind.MANY_MANY: NodeKind.MANY_MANY,
    }
    return Node(
        kind=kinds[rel.kind],
        table=target_def.name,
        db_key=target_def.db_key,
        name=rel.name,
        parent=parent,
        column=rel.column,
        pk=target_def.primary_key,
        unique=rel.unique,
        nullable=rel.nullable,
        assn_table=rel.assn_table,
        assn_parent_column=rel.assn_parent_column,
        assn_ref_column=rel.assn_ref_column,
        registry=parent.registry,
    )


def value_node(value: Any) -> Node:
    """Wrap a literal so it can be used as an operand."""
    if isinstance(value, Node):
        return value
    return Node(kind=NodeKind.VALUE, value=value)


def alias_node(name: str) -> Node:
    """Refer to a calculation added to the query under ``name``."""
    return Node(kind=NodeKind.ALIAS, name=name)


# Serialization

_ENCODED_FIELDS = (
    "table",
    "db_key",
    "name",
    "column",
    "column_type",
    "unique",
    "nullable",
    "assn_table",
    "assn_parent_column",
    "assn_ref_column",
    "operator",
    "function",
    "aggregate",
    "distinct",
    "sort_descending",
)


def _node_to_dict(node: Node) -> dict[str, Any]:
    data: dict[str, Any] = {"kind": node.kind.value}
    for name in _ENCODED_FIELDS:
        value = getattr(node, name)
        if value:
            data[name] = value
    if node.pk:
        data["pk"] = list(node.pk)
    if node.kind is NodeKind.VALUE:
        data["value"] = _encode_value(node.value)
    if node.operands:
        data["operands"] = [_node_to_dict(o) for o in node.operands]
    if node.parent is not None:
        data["parent"] = _node_to_dict(node.parent)
    return data


def _node_from_dict(data: dict[str, Any], registry: SchemaRegistry | None) -> Node:
    try:
        kind = NodeKind(data["kind"])
    except (KeyError, ValueError) as e:
        raise ValueError(f"Serialized node has an invalid kind: {data.get('kind')!r}") from e

    kwargs: dict[str, Any] = {name: data[name] for name in _ENCODED_FIELDS if name in data}
    if "pk" in data:
        kwargs["pk"] = tuple(data["pk"])
    if kind is NodeKind.VALUE:
        kwargs["value"] = _decode_value(data.get("value"))
    if "operands" in data:
        kwargs["operands"] = tuple(_node_from_dict(o, registry) for o in data["operands"])
    if "parent" in data:
        kwargs["parent"] = _node_from_dict(data["parent"], registry)
    if kind in TABLE_KINDS or kind is NodeKind.COLUMN:
        kwargs["registry"] = registry
    return Node(kind=kind, **kwargs)


def _encode_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime.datetime):
        return {"$datetime": value.isoformat()}
    if isinstance(value, datetime.date):
        return {"$date": value.isoformat()}
    if isinstance(value, (bytes, bytearray)):
        return {"$bytes": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, tuple):
        return {"$tuple": [_encode_value(v) for v in value]}
    if isinstance(value, (dict, list)):
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise TypeError(f"Cannot serialize node value: {e}") from e
        return {"$json": value}
    raise TypeError(f"Cannot serialize node value of type {type(value).__name__}")


def _decode_value(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    if "$datetime" in value:
        return datetime.datetime.fromisoformat(value["$datetime"])
    if "$date" in value:
        return datetime.date.fromisoformat(value["$date"])
    if "$bytes" in value:
        return base64.b64decode(value["$bytes"])
    if "$tuple" in value:
        return tuple(_decode_value(v) for v in value["$tuple"])
    if "$json" in value:
        return value["$json"]
    raise ValueError(f"Unknown serialized value: {value!r}")


def _frozen(value: Any) -> Any:
    # Hashable stand-in for json literals
    if isinstance(value, dict):
        return tuple(sorted((k, _frozen(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_frozen(v) for v in value)
    return value

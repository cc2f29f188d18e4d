"""Query builder: collects clauses as nodes, compiles them and unpacks results."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterator

from typed_orm import op
from typed_orm.context import Context
from typed_orm.errors import InvalidNodeError
from typed_orm.node import LINKED_KINDS, Node, NodeKind
from typed_orm.record import Record
from typed_orm.rowstore import ALIAS_PATH, Join, QueryPlan, Row, RowCursor

if TYPE_CHECKING:
    from typed_orm.database import Database

logger = logging.getLogger(__name__)


@dataclass
class CompiledQuery:
    """A query plan plus what is needed to turn its rows into records."""

    plan: QueryPlan
    attached: list[Join] = field(default_factory=list)
    columns: dict[str, list[str]] = field(default_factory=dict)
    alias_paths: dict[str, str] = field(default_factory=dict)
    grouped: bool = False
    many_joined: bool = False


class QueryBuilder:
    """Accumulates the clauses of a query against one table.

    Clause methods validate their nodes immediately, raising
    ``InvalidNodeError``, and return the builder so calls can be chained::

        db.query("person").where(op.equal(person["last_name"], "Smith")) \\
            .select(person["projects"]).order_by(person["id"]).load()
    """

    def __init__(self, db: Database, table: str, ctx: Context | None = None) -> None:
        self._db = db
        self._ctx = ctx
        self.root = db.node(table)
        self._where: list[Node] = []
        self._selects: list[Node] = []
        self._order_by: list[Node] = []
        self._group_by: list[Node] = []
        self._calculations: dict[str, tuple[Node, Node]] = {}
        self._having: list[Node] = []
        self._offset = 0
        self._limit: int | None = None
        self._limit_set = False
        self._distinct = False

    @property
    def table(self) -> str:
        return self.root.table

    def _check_root(self, node: Node) -> None:
        for n in node.contained_nodes():
            root = n.root()
            if root is None or root.table != self.root.table or root.db_key != self.root.db_key:
                raise InvalidNodeError(f"{n!r} does not start at table '{self.root.table}'")

    # Clauses

    def where(self, condition: Node) -> QueryBuilder:
        """Add a condition; several conditions must all hold."""
        if not isinstance(condition, Node) or condition.kind is not NodeKind.OPERATION:
            raise InvalidNodeError(f"where() needs an operation node, not {condition!r}")
        if condition.has_aggregate():
            raise InvalidNodeError("Aggregates are not allowed in where(); use having()")
        self._check_root(condition)
        self._where.append(condition)
        return self

    def select(self, *nodes: Node) -> QueryBuilder:
        """Choose the columns and relationships to load."""
        for node in nodes:
            if not isinstance(node, Node) or node.kind not in LINKED_KINDS:
                raise InvalidNodeError(
                    f"select() takes column, reference, reverse or many-many nodes, not {node!r}"
                )
            self._check_root(node)
            self._selects.append(node)
        return self

    def order_by(self, *nodes: Node) -> QueryBuilder:
        """Sort by the given nodes, left to right; use ``node.descending()`` to reverse one."""
        for node in nodes:
            if not isinstance(node, Node) or node.kind is NodeKind.VALUE:
                raise InvalidNodeError(f"Cannot order by {node!r}")
            if node.is_table_like:
                key = node.primary_key_node()
                node = key.descending() if node.sort_descending else key
            self._check_root(node)
            self._order_by.append(node)
        return self

    def group_by(self, *nodes: Node) -> QueryBuilder:
        for node in nodes:
            if not isinstance(node, Node) or not (node.kind is NodeKind.COLUMN or node.is_table_like):
                raise InvalidNodeError(f"group_by() takes column or table nodes, not {node!r}")
            if node.is_table_like:
                node = node.primary_key_node()
            self._check_root(node)
            self._group_by.append(node)
        return self

    def calculation(self, base: Node, alias: str, operation: Node) -> QueryBuilder:
        """Compute ``operation`` for each result and attach it to the record at ``base``.

        The value is read back with ``record.alias(alias)``.
        """
        if not isinstance(base, Node) or not base.is_table_like:
            raise InvalidNodeError(f"Calculation base must be a table node, not {base!r}")
        self._check_root(base)
        if not alias or alias in self._calculations:
            raise InvalidNodeError(f"Calculation alias '{alias}' is empty or already used")
        if not isinstance(operation, Node) or operation.kind not in (
            NodeKind.OPERATION,
            NodeKind.COLUMN,
            NodeKind.VALUE,
        ):
            raise InvalidNodeError(f"Cannot calculate {operation!r}")
        self._check_root(operation)
        self._calculations[alias] = (base, operation)
        return self

    def having(self, condition: Node) -> QueryBuilder:
        """Add a condition on grouped results; it may use aggregates and aliases."""
        if not isinstance(condition, Node) or condition.kind is not NodeKind.OPERATION:
            raise InvalidNodeError(f"having() needs an operation node, not {condition!r}")
        self._check_root(condition)
        self._having.append(condition)
        return self

    def limit(self, offset: int, count: int) -> QueryBuilder:
        """Skip ``offset`` results and return at most ``count``.

        Raises:
            ValueError: If a value is negative or a limit was already set.
        """
        if self._limit_set:
            raise ValueError("Query limit is already set")
        if offset < 0 or count < 0:
            raise ValueError("Query limit values cannot be negative")
        self._offset = offset
        self._limit = count
        self._limit_set = True
        return self

    def distinct(self) -> QueryBuilder:
        self._distinct = True
        return self

    # Compilation

    def compile(self) -> CompiledQuery:
        """Validate the clauses together and build the query plan."""
        grouped = (
            bool(self._group_by)
            or self._distinct
            or any(n.has_aggregate() for _, n in self._calculations.values())
            or any(n.has_aggregate() for n in self._having)
        )
        self._check_grouping()
        for alias_node in self._alias_uses([*self._where, *self._having, *self._order_by]):
            if alias_node.name not in self._calculations:
                raise InvalidNodeError(f"Unknown alias '{alias_node.name}'")
        for alias_node in self._alias_uses(self._where):
            if self._calculations[alias_node.name][1].has_aggregate():
                raise InvalidNodeError(
                    f"Alias '{alias_node.name}' is an aggregate and cannot be used in where(); use having()"
                )

        root = self.root
        root_path = root.path_key
        joins: dict[str, Join] = {}

        def ensure_join(node: Node) -> str:
            if node.kind is NodeKind.TABLE:
                return node.path_key
            parent_path = ensure_join(node.parent)  # type: ignore[arg-type]
            path = node.path_key
            if path not in joins:
                joins[path] = Join(path=path, parent_path=parent_path, node=node)
            return path

        attached: list[str] = []

        def attach(node: Node) -> None:
            n: Node | None = node
            chain = []
            while n is not None and n.kind is not NodeKind.TABLE:
                chain.append(n)
                n = n.parent
            for n in reversed(chain):
                ensure_join(n)
                if n.path_key not in attached:
                    attached.append(n.path_key)

        explicit: dict[str, list[str]] = {}
        whole: set[str] = set()
        selects = list(self._selects)
        if not selects and self._group_by:
            selects = list(self._group_by)
        for node in selects:
            if node.kind is NodeKind.COLUMN:
                table_node = node.parent
                attach(table_node)  # type: ignore[arg-type]
                columns = explicit.setdefault(table_node.path_key, [])  # type: ignore[union-attr]
                if node.column not in columns:
                    columns.append(node.column)
            else:
                attach(node)
                whole.add(node.path_key)

        alias_paths: dict[str, str] = {}
        for alias, (base, _) in self._calculations.items():
            if base.kind is not NodeKind.TABLE:
                attach(base)
            alias_paths[alias] = base.path_key

        conditions = [*self._where, *self._having, *self._order_by, *self._group_by]
        conditions.extend(op_node for _, op_node in self._calculations.values())
        for condition in conditions:
            for n in condition.contained_nodes():
                table_node = n.table_node()
                if table_node is not None:
                    ensure_join(table_node)

        # Columns loaded per attached path
        columns_by_path: dict[str, list[str]] = {}
        for path, table in [(root_path, root.table)] + [
            (p, joins[p].node.table) for p in attached
        ]:
            table_def = self._db.registry.get_or_raise(table)
            if grouped:
                if path in whole or (path == root_path and not selects):
                    columns_by_path[path] = list(table_def.column_names)
                else:
                    columns_by_path[path] = list(explicit.get(path, []))
            elif path in explicit:
                columns_by_path[path] = _with_keys(table_def, explicit[path])
            elif path in whole or path == root_path:
                columns_by_path[path] = list(table_def.column_names)
            else:
                columns_by_path[path] = _with_keys(table_def, [])

        where = None
        if self._where:
            where = self._where[0] if len(self._where) == 1 else op.and_(*self._where)
        having = None
        if self._having:
            having = self._having[0] if len(self._having) == 1 else op.and_(*self._having)

        # Joins in insertion order already list parents before children
        plan = QueryPlan(
            table=root.table,
            db_key=root.db_key,
            joins=list(joins.values()),
            columns=[(p, c) for p, cols in columns_by_path.items() for c in cols],
            where=where,
            group_by=list(self._group_by),
            calculations={alias: op_node for alias, (_, op_node) in self._calculations.items()},
            having=having,
            order_by=[(n, n.sort_descending) for n in self._order_by],
            distinct=self._distinct,
        )
        many_joined = any(j.node.is_many for j in joins.values())
        if not (many_joined and not grouped):
            plan.offset = self._offset
            plan.limit = self._limit

        return CompiledQuery(
            plan=plan,
            attached=[joins[p] for p in attached],
            columns=columns_by_path,
            alias_paths=alias_paths,
            grouped=grouped,
            many_joined=many_joined,
        )

    def _alias_uses(self, clauses: list[Node]) -> list[Node]:
        found: list[Node] = []

        def walk(node: Node) -> None:
            if node.kind is NodeKind.ALIAS:
                found.append(node)
            for operand in node.operands:
                walk(operand)

        for node in clauses:
            walk(node)
        return found

    def _check_grouping(self) -> None:
        if not self._group_by:
            return
        for node in self._selects:
            if not any(node.matches(g) for g in self._group_by):
                raise InvalidNodeError(f"Selected {node!r} is not in group_by()")

        def check(node: Node) -> None:
            if node.kind is NodeKind.OPERATION:
                if node.aggregate:
                    return
                for operand in node.operands:
                    check(operand)
            elif node.kind is NodeKind.COLUMN:
                if not any(node.matches(g) for g in self._group_by):
                    raise InvalidNodeError(
                        f"{node!r} must be grouped or used inside an aggregate"
                    )

        for _, op_node in self._calculations.values():
            check(op_node)

    # Terminals

    def _context(self) -> Context:
        return self._db.resolve_context(self._ctx)

    def load(self) -> list[Record]:
        """Run the query and return its root records."""
        return self._load(self._offset, self._limit)

    def get(self) -> Record | None:
        """Run the query and return the first root record, or None."""
        records = self.load() if self._limit_set else self._load(0, 1)
        return records[0] if records else None

    def _load(self, offset: int, limit: int | None) -> list[Record]:
        compiled = self.compile()
        # Rows repeat a root once per many-valued match, so such limits apply to roots
        limit_roots = compiled.many_joined and not compiled.grouped
        if not limit_roots:
            compiled.plan.offset = offset
            compiled.plan.limit = limit
        rows = self._db.store.select(self._context(), compiled.plan)
        records = self._unpack(compiled, rows)
        if limit_roots:
            end = None if limit is None else offset + limit
            records = records[offset:end]
        logger.debug("Loaded %d %s record(s)", len(records), self.table)
        return records

    def count(self) -> int:
        """Return the number of root records the query matches, ignoring any limit."""
        compiled = self.compile()
        plan = compiled.plan
        plan.offset = 0
        plan.limit = None
        if not compiled.grouped:
            table_def = self._db.registry.get_or_raise(self.table)
            plan.columns = [(self.root.path_key, c) for c in table_def.primary_key]
            # Conditions may still refer to calculations by alias
            used = {n.name for n in self._alias_uses(self._where)}
            plan.calculations = {a: c for a, c in plan.calculations.items() if a in used}
            plan.order_by = []
            plan.distinct = compiled.many_joined
        return self._db.store.count(self._context(), plan)

    def load_cursor(self) -> RecordCursor:
        """Return a cursor that builds one root record per row as it is read.

        Raises:
            InvalidNodeError: If the query selects a many-valued relationship,
                which cannot be assembled one row at a time.
        """
        compiled = self.compile()
        for join in compiled.attached:
            if join.node.is_many:
                raise InvalidNodeError(
                    f"load_cursor() cannot select the many-valued {join.node!r}"
                )
        ctx = self._context()
        rows = self._db.store.select_cursor(ctx, compiled.plan)
        if compiled.many_joined and not compiled.grouped:
            return RecordCursor(self, compiled, ctx, rows, self._offset, self._limit)
        return RecordCursor(self, compiled, ctx, rows)

    # Unpacking

    def _unpack(self, compiled: CompiledQuery, rows: list[Row]) -> list[Record]:
        roots: list[Record] = []
        by_key: dict[tuple, Record] = {}
        for row in rows:
            record = self._unpack_row(compiled, row, by_key)
            if record is not None:
                roots.append(record)
        return roots

    def _unpack_row(
        self, compiled: CompiledQuery, row: Row, by_key: dict[tuple, Record]
    ) -> Record | None:
        """Merge one row into the record tree, returning a root seen for the first time."""
        registry = self._db.registry
        root_path = self.root.path_key
        root_def = registry.get_or_raise(self.table)
        values = {c: row[(root_path, c)] for c in compiled.columns[root_path]}

        first_seen = None
        if compiled.grouped:
            root = Record._from_row(self._db, root_def, values)
            first_seen = root
        else:
            key = tuple(values[c] for c in root_def.primary_key)
            root = by_key.get(key)  # type: ignore[assignment]
            if root is None:
                root = Record._from_row(self._db, root_def, values)
                by_key[key] = root
                first_seen = root

        records: dict[str, Record | None] = {root_path: root}
        for join in compiled.attached:
            parent = records.get(join.parent_path)
            if parent is None:
                records[join.path] = None
                continue
            node = join.node
            child_values = {c: row[(join.path, c)] for c in compiled.columns[join.path]}
            if compiled.grouped:
                present = any(v is not None for v in child_values.values())
                key = ()
            else:
                key = tuple(child_values.get(c) for c in node.pk)
                present = all(v is not None for v in key)
            if not present:
                _attach_empty(parent, node)
                records[join.path] = None
                continue

            child = None if compiled.grouped else _find_attached(parent, node, key)
            if child is None:
                child = Record._from_row(self._db, registry.get_or_raise(node.table), child_values)
                rel = registry.relationship(parent.table, node.name)
                _attach(parent, node, child, rel.inverse)
            records[join.path] = child

        for alias, path in compiled.alias_paths.items():
            target = records.get(path)
            if target is not None:
                target._aliases[alias] = row[(ALIAS_PATH, alias)]
        return first_seen


class RecordCursor:
    """Lazy, forward-only sequence of root records.

    The underlying row cursor is closed when the rows run out, when ``close``
    is called, when a ``with`` block exits and when reading a row fails.
    """

    def __init__(
        self,
        builder: QueryBuilder,
        compiled: CompiledQuery,
        ctx: Context,
        rows: RowCursor,
        offset: int = 0,
        limit: int | None = None,
    ) -> None:
        self._builder = builder
        self._compiled = compiled
        self._ctx = ctx
        self._rows = rows
        self._seen: dict[tuple, Record] = {}
        self._closed = False
        self._skip = offset
        self._remaining = limit

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[Record]:
        return self

    def __next__(self) -> Record:
        if self._closed:
            raise StopIteration
        try:
            while True:
                self._ctx.check()
                row = next(self._rows)
                record = self._builder._unpack_row(self._compiled, row, self._seen)
                if record is None:
                    continue
                if self._skip:
                    self._skip -= 1
                    continue
                if self._remaining is not None:
                    if self._remaining == 0:
                        raise StopIteration
                    self._remaining -= 1
                return record
        except BaseException:
            self.close()
            raise

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._rows.close()

    def __enter__(self) -> RecordCursor:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def _with_keys(table_def: Any, columns: list[str]) -> list[str]:
    """Return ``columns`` plus the key and lock columns of the table."""
    result = list(table_def.primary_key)
    for column in columns:
        if column not in result:
            result.append(column)
    if table_def.lock_column is not None and table_def.lock_column not in result:
        result.append(table_def.lock_column)
    return result


def _attach(parent: Record, node: Node, child: Record, inverse: str) -> None:
    if node.kind is NodeKind.REFERENCE:
        parent._references[node.name] = child
    elif node.kind is NodeKind.REVERSE:
        child._references[inverse] = parent
        if node.unique:
            parent._reverse[node.name] = child
        else:
            slot = parent._reverse.setdefault(node.name, [])
            slot.append(child)  # type: ignore[union-attr]
    else:
        parent._many.setdefault(node.name, []).append(child)


def _attach_empty(parent: Record, node: Node) -> None:
    if node.kind is NodeKind.REFERENCE:
        parent._references.setdefault(node.name, None)
    elif node.kind is NodeKind.REVERSE:
        parent._reverse.setdefault(node.name, None if node.unique else [])
    else:
        parent._many.setdefault(node.name, [])


def _find_attached(parent: Record, node: Node, key: tuple) -> Record | None:
    if node.kind is NodeKind.REFERENCE:
        candidates = [parent._references.get(node.name)]
    elif node.kind is NodeKind.REVERSE:
        candidates = parent._reverse_children(node.name)
    else:
        candidates = parent._many.get(node.name, [])
    for candidate in candidates:
        if candidate is not None and candidate._key() == key:
            return candidate
    return None

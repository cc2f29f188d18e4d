"""An in-memory row-store.

Tables are lists of row dicts held in insertion order. Query plans are run
by building joined rows (one dict of path -> row per combination, with
``None`` for a left join that found nothing), filtering, grouping, sorting
and then projecting the requested columns.

Comparisons follow SQL NULL rules: any comparison with ``None`` is unknown,
and unknown conditions do not match.
"""

from __future__ import annotations

import copy
import logging
import re
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from typed_orm.context import Context
from typed_orm.errors import InvalidNodeError
from typed_orm.node import Node, NodeKind
from typed_orm.op import Operator
from typed_orm.rowstore import ALIAS_PATH, QueryPlan, Row, UniqueConstraintViolation
from typed_orm.types import ColumnType, SchemaMetadata

logger = logging.getLogger(__name__)

# One combination of joined rows, keyed by join path
JoinedRow = dict[str, "dict[str, Any] | None"]


class MemoryRowCursor:
    """Iterates over the rows of one select, checking the context on each step."""

    def __init__(self, ctx: Context, rows: list[Row]) -> None:
        self._ctx = ctx
        self._rows = iter(rows)
        self.closed = False

    def __iter__(self) -> MemoryRowCursor:
        return self

    def __next__(self) -> Row:
        if self.closed:
            raise StopIteration
        self._ctx.check()
        try:
            return next(self._rows)
        except StopIteration:
            self.close()
            raise

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._rows = iter(())


class MemoryRowStore:
    """Row-store keeping every table in memory.

    All operations are serialized by one re-entrant lock, which a
    ``transaction()`` holds until it ends.
    """

    def __init__(self, schema: SchemaMetadata) -> None:
        self._schema = schema
        self._lock = threading.RLock()
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._counters: dict[str, int] = {}
        self._tx_depth = 0

    # Inspection

    def rows(self, table: str) -> list[dict[str, Any]]:
        """Return copies of the stored rows of a table."""
        with self._lock:
            return [dict(row) for row in self._table(table)]

    def find(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        """Return copies of the stored rows whose columns equal ``filters``."""
        with self._lock:
            return [dict(row) for row in self._table(table) if _row_matches(row, filters)]

    def _table(self, table: str) -> list[dict[str, Any]]:
        return self._tables.setdefault(table, [])

    # Writes

    def insert(self, ctx: Context, table: str, values: dict[str, Any]) -> Any:
        ctx.check()
        with self._lock:
            rows = self._table(table)
            row = dict(values)
            generated = None
            pk = self._schema.primary_key(table)
            if pk:
                for column in self._schema.columns(table):
                    row.setdefault(column.name, None)
                auto = [c for c in self._schema.columns(table) if c.is_pk and c.is_auto]
                if auto and row.get(auto[0].name) is None:
                    generated = self._next_key(table, auto[0].type)
                    row[auto[0].name] = generated

            self._check_unique(table, rows + [row], {id(row)})
            rows.append(row)
            logger.debug("Inserted into %s: %r", table, row)
            return generated

    def update(
        self,
        ctx: Context,
        table: str,
        values: dict[str, Any],
        key_filter: dict[str, Any],
        lock_filter: dict[str, Any] | None = None,
    ) -> int:
        ctx.check()
        filters = {**key_filter, **(lock_filter or {})}
        with self._lock:
            rows = self._table(table)
            candidates = []
            changed: set[int] = set()
            for row in rows:
                if _row_matches(row, filters):
                    new_row = {**row, **values}
                    changed.add(id(new_row))
                    candidates.append(new_row)
                else:
                    candidates.append(row)
            if changed:
                self._check_unique(table, candidates, changed)
                rows[:] = candidates
            logger.debug(
                "Updated %d row(s) of %s where %r: %r", len(changed), table, filters, values
            )
            return len(changed)

    def delete(
        self,
        ctx: Context,
        table: str,
        key_filter: dict[str, Any],
        lock_filter: dict[str, Any] | None = None,
    ) -> int:
        ctx.check()
        filters = {**key_filter, **(lock_filter or {})}
        with self._lock:
            rows = self._table(table)
            kept = [row for row in rows if not _row_matches(row, filters)]
            removed = len(rows) - len(kept)
            rows[:] = kept
            logger.debug("Deleted %d row(s) of %s where %r", removed, table, filters)
            return removed

    def _next_key(self, table: str, column_type: ColumnType) -> Any:
        counter = self._counters.get(table, 0) + 1
        self._counters[table] = counter
        if column_type is ColumnType.STRING:
            return str(counter)
        return counter

    def _check_unique(self, table: str, rows: list[dict[str, Any]], changed: set[int]) -> None:
        """Raise if a changed row shares a unique value with any other row."""
        constraints = list(self._schema.unique_constraints(table))
        pk = self._schema.primary_key(table)
        if pk:
            constraints.insert(0, pk)
        for columns in constraints:
            seen: dict[tuple, int] = {}
            for row in rows:
                key = tuple(row.get(c) for c in columns)
                if any(v is None for v in key):
                    continue
                other = seen.get(key)
                if other is not None and (id(row) in changed or other in changed):
                    logger.debug("Unique violation on %s%r: %r", table, columns, key)
                    raise UniqueConstraintViolation(table, tuple(columns))
                seen[key] = id(row)

    @contextmanager
    def transaction(self, ctx: Context) -> Iterator[None]:
        """Run the enclosed calls atomically, restoring every table on error.

        Nested transactions join the outermost one.
        """
        ctx.check()
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield
                finally:
                    self._tx_depth -= 1
                return

            snapshot = copy.deepcopy(self._tables)
            counters = dict(self._counters)
            self._tx_depth = 1
            try:
                yield
            except BaseException:
                self._tables = snapshot
                self._counters = counters
                logger.debug("Transaction rolled back")
                raise
            finally:
                self._tx_depth = 0

    # Reads

    def select(self, ctx: Context, plan: QueryPlan) -> list[Row]:
        ctx.check()
        with self._lock:
            rows = self._execute(ctx, plan)
        logger.debug("Selected %d row(s) from %s", len(rows), plan.table)
        return rows

    def select_cursor(self, ctx: Context, plan: QueryPlan) -> MemoryRowCursor:
        return MemoryRowCursor(ctx, self.select(ctx, plan))

    def count(self, ctx: Context, plan: QueryPlan) -> int:
        ctx.check()
        with self._lock:
            return len(self._execute(ctx, plan))

    def _execute(self, ctx: Context, plan: QueryPlan) -> list[Row]:
        joined: list[JoinedRow] = [{plan.root_path: row} for row in self._table(plan.table)]
        for join in plan.joins:
            ctx.check()
            expanded: list[JoinedRow] = []
            for jr in joined:
                parent = jr.get(join.parent_path)
                related = self._related(join.node, parent) if parent is not None else []
                if not related:
                    expanded.append({**jr, join.path: None})
                for child in related:
                    expanded.append({**jr, join.path: child})
            joined = expanded

        evaluator = _Evaluator(plan.calculations)
        if plan.where is not None:
            joined = [jr for jr in joined if _is_true(evaluator.evaluate(plan.where, [jr]))]

        aggregated = any(
            n.has_aggregate() for n in [*plan.calculations.values(), plan.having] if n is not None
        )
        groups: list[list[JoinedRow]]
        if plan.group_by:
            keyed: dict[str, list[JoinedRow]] = {}
            for jr in joined:
                key = repr([evaluator.evaluate(n, [jr]) for n in plan.group_by])
                keyed.setdefault(key, []).append(jr)
            groups = list(keyed.values())
        elif aggregated:
            groups = [joined]
        else:
            groups = [[jr] for jr in joined]

        if plan.having is not None:
            groups = [g for g in groups if _is_true(evaluator.evaluate(plan.having, g))]

        for node, desc in reversed(plan.order_by):
            groups.sort(key=lambda g, n=node: _sort_key(evaluator.evaluate(n, g)), reverse=desc)

        result: list[Row] = []
        for group in groups:
            first = group[0] if group else {}
            out: Row = {}
            for path, column in plan.columns:
                source = first.get(path)
                out[(path, column)] = source.get(column) if source is not None else None
            for alias, node in plan.calculations.items():
                out[(ALIAS_PATH, alias)] = evaluator.evaluate(node, group)
            if plan.distinct and out in result:
                continue
            result.append(out)

        end = None if plan.limit is None else plan.offset + plan.limit
        return result[plan.offset:end]

    def _related(self, node: Node, parent: dict[str, Any]) -> list[dict[str, Any]]:
        if node.kind is NodeKind.REFERENCE:
            key = parent.get(node.column)
            if key is None:
                return []
            return [r for r in self._table(node.table) if r.get(node.pk[0]) == key]
        parent_key = parent.get(node.parent.pk[0])
        if parent_key is None:
            return []
        if node.kind is NodeKind.REVERSE:
            return [r for r in self._table(node.table) if r.get(node.column) == parent_key]
        if node.kind is NodeKind.MANY_MANY:
            related = []
            for link in self._table(node.assn_table):
                if link.get(node.assn_parent_column) != parent_key:
                    continue
                ref = link.get(node.assn_ref_column)
                related.extend(r for r in self._table(node.table) if r.get(node.pk[0]) == ref)
            return related
        raise InvalidNodeError(f"Cannot join through {node!r}")


def _row_matches(row: dict[str, Any], filters: dict[str, Any]) -> bool:
    return all(row.get(column) == value for column, value in filters.items())


def _is_true(value: Any) -> bool:
    return value is not None and bool(value)


def _sort_key(value: Any) -> tuple:
    # NULLs sort first ascending
    if value is None:
        return (0,)
    return (1, value)


def _like(pattern: str) -> re.Pattern[str]:
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.DOTALL)


class _Evaluator:
    """Evaluates nodes over a group of joined rows.

    Column values come from the first row of the group; aggregates run over
    every row of the group.
    """

    def __init__(self, calculations: dict[str, Node]) -> None:
        self._calculations = calculations

    def evaluate(self, node: Node, rows: list[JoinedRow]) -> Any:
        kind = node.kind
        if kind is NodeKind.COLUMN:
            if not rows:
                return None
            source = rows[0].get(node.parent.path_key)
            return source.get(node.column) if source is not None else None
        if kind is NodeKind.VALUE:
            return node.value
        if kind is NodeKind.ALIAS:
            if node.name not in self._calculations:
                raise InvalidNodeError(f"Unknown alias '{node.name}'")
            return self.evaluate(self._calculations[node.name], rows)
        if node.is_table_like:
            return self.evaluate(node.primary_key_node(), rows)
        if node.aggregate:
            return self._aggregate(node, rows)
        return self._operate(node, rows)

    def _aggregate(self, node: Node, rows: list[JoinedRow]) -> Any:
        if not node.operands:
            return len(rows)
        values = [self.evaluate(node.operands[0], [r]) for r in rows]
        values = [v for v in values if v is not None]
        if node.distinct:
            unique: list[Any] = []
            for v in values:
                if v not in unique:
                    unique.append(v)
            values = unique
        name = node.function
        if name == "COUNT":
            return len(values)
        if not values:
            return None
        if name == "SUM":
            return sum(values)
        if name == "MIN":
            return min(values)
        if name == "MAX":
            return max(values)
        if name == "AVG":
            return sum(values) / len(values)
        raise ValueError(f"Unsupported aggregate '{name}'")

    def _operate(self, node: Node, rows: list[JoinedRow]) -> Any:
        operator = Operator(node.operator)
        if operator is Operator.ALL:
            return True
        if operator is Operator.NONE:
            return False
        if operator is Operator.AND:
            results = [self.evaluate(o, rows) for o in node.operands]
            if any(r is not None and not r for r in results):
                return False
            return None if any(r is None for r in results) else True
        if operator is Operator.OR:
            results = [self.evaluate(o, rows) for o in node.operands]
            if any(_is_true(r) for r in results):
                return True
            return None if any(r is None for r in results) else False

        args = [self.evaluate(o, rows) for o in node.operands]
        if operator is Operator.FUNCTION:
            return self._function(node.function, args)
        if operator is Operator.IS_NULL:
            return args[0] is None
        if operator is Operator.IS_NOT_NULL:
            return args[0] is not None
        if any(a is None for a in args):
            return None

        if operator is Operator.EQUAL:
            return args[0] == args[1]
        if operator is Operator.NOT_EQUAL:
            return args[0] != args[1]
        if operator is Operator.GREATER:
            return args[0] > args[1]
        if operator is Operator.GREATER_OR_EQUAL:
            return args[0] >= args[1]
        if operator is Operator.LESS:
            return args[0] < args[1]
        if operator is Operator.LESS_OR_EQUAL:
            return args[0] <= args[1]
        if operator is Operator.BETWEEN:
            return args[1] <= args[0] <= args[2]
        if operator is Operator.NOT:
            return not args[0]
        if operator is Operator.XOR:
            return bool(args[0]) != bool(args[1])
        if operator is Operator.IN:
            return args[0] in args[1]
        if operator is Operator.NOT_IN:
            return args[0] not in args[1]
        if operator is Operator.LIKE:
            return _like(args[1]).fullmatch(args[0]) is not None
        if operator is Operator.NOT_LIKE:
            return _like(args[1]).fullmatch(args[0]) is None
        if operator is Operator.STARTS_WITH:
            return args[0].startswith(args[1])
        if operator is Operator.ENDS_WITH:
            return args[0].endswith(args[1])
        if operator is Operator.CONTAINS:
            return args[1] in args[0]
        if operator is Operator.NEGATE:
            return -args[0]
        return self._arithmetic(operator, args)

    @staticmethod
    def _arithmetic(operator: Operator, args: list[Any]) -> Any:
        result = args[0]
        for arg in args[1:]:
            if operator is Operator.ADD:
                result = result + arg
            elif operator is Operator.SUBTRACT:
                result = result - arg
            elif operator is Operator.MULTIPLY:
                result = result * arg
            elif operator is Operator.DIVIDE:
                if arg == 0:
                    return None
                result = result / arg
            elif operator is Operator.MODULO:
                if arg == 0:
                    return None
                result = result % arg
            else:
                raise ValueError(f"Unsupported operator '{operator.value}'")
        return result

    @staticmethod
    def _function(name: str, args: list[Any]) -> Any:
        if name == "COALESCE":
            return next((a for a in args if a is not None), None)
        if any(a is None for a in args):
            return None
        if name == "LOWER":
            return args[0].lower()
        if name == "UPPER":
            return args[0].upper()
        if name == "LENGTH":
            return len(args[0])
        if name == "ABS":
            return abs(args[0])
        if name == "ROUND":
            return round(args[0], *args[1:])
        raise ValueError(f"Unsupported function '{name}'")

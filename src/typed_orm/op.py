"""Constructors for operation nodes.

Operands may be nodes or plain Python values; values are wrapped in VALUE
nodes. A table-like node used as an operand stands for its primary key.

Example::

    person = db.node("person")
    op.and_(op.equal(person["last_name"], "Smith"), op.greater(person["id"], 2))
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable

from typed_orm.errors import InvalidNodeError
from typed_orm.node import Node, NodeKind, value_node


class Operator(str, Enum):
    """Operators an OPERATION node can carry."""

    EQUAL = "="
    NOT_EQUAL = "<>"
    GREATER = ">"
    GREATER_OR_EQUAL = ">="
    LESS = "<"
    LESS_OR_EQUAL = "<="
    AND = "AND"
    OR = "OR"
    XOR = "XOR"
    NOT = "NOT"
    ADD = "+"
    SUBTRACT = "-"
    MULTIPLY = "*"
    DIVIDE = "/"
    MODULO = "%"
    NEGATE = "NEG"
    LIKE = "LIKE"
    NOT_LIKE = "NOT LIKE"
    IN = "IN"
    NOT_IN = "NOT IN"
    IS_NULL = "IS NULL"
    IS_NOT_NULL = "IS NOT NULL"
    BETWEEN = "BETWEEN"
    STARTS_WITH = "STARTS WITH"
    ENDS_WITH = "ENDS WITH"
    CONTAINS = "CONTAINS"
    ALL = "ALL"
    NONE = "NONE"
    FUNCTION = "FUNC"


# Aggregate functions understood by the built-in row-store
AGGREGATES = frozenset({"COUNT", "SUM", "MIN", "MAX", "AVG"})

# Scalar functions understood by the built-in row-store
FUNCTIONS = frozenset({"LOWER", "UPPER", "LENGTH", "ABS", "COALESCE", "ROUND"})


def operand(value: Any) -> Node:
    """Turn a node or literal into an operand node."""
    if isinstance(value, Node):
        if value.is_table_like:
            return value.primary_key_node()
        return value
    if value is None:
        raise InvalidNodeError("Use is_null()/is_not_null() to compare with None")
    return value_node(value)


def _operation(operator: Operator, *operands: Any, function: str = "", aggregate: bool = False,
               distinct: bool = False) -> Node:
    return Node(
        kind=NodeKind.OPERATION,
        operator=operator.value,
        operands=tuple(operand(o) for o in operands),
        function=function,
        aggregate=aggregate,
        distinct=distinct,
    )


def _condition(value: Any) -> Node:
    if not isinstance(value, Node) or value.kind not in (NodeKind.OPERATION, NodeKind.COLUMN):
        raise InvalidNodeError(f"{value!r} is not a condition")
    return value


# Comparison

def equal(left: Any, right: Any) -> Node:
    return _operation(Operator.EQUAL, left, right)


def not_equal(left: Any, right: Any) -> Node:
    return _operation(Operator.NOT_EQUAL, left, right)


def greater(left: Any, right: Any) -> Node:
    return _operation(Operator.GREATER, left, right)


def greater_or_equal(left: Any, right: Any) -> Node:
    return _operation(Operator.GREATER_OR_EQUAL, left, right)


def less(left: Any, right: Any) -> Node:
    return _operation(Operator.LESS, left, right)


def less_or_equal(left: Any, right: Any) -> Node:
    return _operation(Operator.LESS_OR_EQUAL, left, right)


def between(value: Any, low: Any, high: Any) -> Node:
    return _operation(Operator.BETWEEN, value, low, high)


def is_null(value: Any) -> Node:
    return _operation(Operator.IS_NULL, value)


def is_not_null(value: Any) -> Node:
    return _operation(Operator.IS_NOT_NULL, value)


def in_(value: Any, values: Iterable[Any]) -> Node:
    """Check whether ``value`` is one of ``values``."""
    return Node(
        kind=NodeKind.OPERATION,
        operator=Operator.IN.value,
        operands=(operand(value), value_node(tuple(values))),
    )


def not_in(value: Any, values: Iterable[Any]) -> Node:
    return Node(
        kind=NodeKind.OPERATION,
        operator=Operator.NOT_IN.value,
        operands=(operand(value), value_node(tuple(values))),
    )


def like(value: Any, pattern: str) -> Node:
    """SQL LIKE: ``%`` matches any run of characters, ``_`` any one character."""
    return _operation(Operator.LIKE, value, pattern)


def not_like(value: Any, pattern: str) -> Node:
    return _operation(Operator.NOT_LIKE, value, pattern)


def starts_with(value: Any, prefix: str) -> Node:
    return _operation(Operator.STARTS_WITH, value, prefix)


def ends_with(value: Any, suffix: str) -> Node:
    return _operation(Operator.ENDS_WITH, value, suffix)


def contains(value: Any, part: str) -> Node:
    return _operation(Operator.CONTAINS, value, part)


# Logic

def and_(*conditions: Any) -> Node:
    """Combine conditions so all of them must hold."""
    if not conditions:
        raise InvalidNodeError("and_() needs at least one condition")
    if len(conditions) == 1:
        return _condition(conditions[0])
    return Node(
        kind=NodeKind.OPERATION,
        operator=Operator.AND.value,
        operands=tuple(_condition(c) for c in conditions),
    )


def or_(*conditions: Any) -> Node:
    """Combine conditions so at least one of them must hold."""
    if not conditions:
        raise InvalidNodeError("or_() needs at least one condition")
    if len(conditions) == 1:
        return _condition(conditions[0])
    return Node(
        kind=NodeKind.OPERATION,
        operator=Operator.OR.value,
        operands=tuple(_condition(c) for c in conditions),
    )


def xor(left: Any, right: Any) -> Node:
    return Node(
        kind=NodeKind.OPERATION,
        operator=Operator.XOR.value,
        operands=(_condition(left), _condition(right)),
    )


def not_(condition: Any) -> Node:
    return Node(
        kind=NodeKind.OPERATION,
        operator=Operator.NOT.value,
        operands=(_condition(condition),),
    )


def all_() -> Node:
    """A condition that always holds."""
    return Node(kind=NodeKind.OPERATION, operator=Operator.ALL.value)


def none_() -> Node:
    """A condition that never holds."""
    return Node(kind=NodeKind.OPERATION, operator=Operator.NONE.value)


# Arithmetic

def add(*operands: Any) -> Node:
    return _operation(Operator.ADD, *operands)


def subtract(*operands: Any) -> Node:
    return _operation(Operator.SUBTRACT, *operands)


def multiply(*operands: Any) -> Node:
    return _operation(Operator.MULTIPLY, *operands)


def divide(*operands: Any) -> Node:
    return _operation(Operator.DIVIDE, *operands)


def modulo(left: Any, right: Any) -> Node:
    return _operation(Operator.MODULO, left, right)


def negate(value: Any) -> Node:
    return _operation(Operator.NEGATE, value)


# Aggregates

def count(value: Any = None, distinct: bool = False) -> Node:
    """Count rows, or the non-null values of ``value``.

    A table-like node counts its records by key.
    """
    if value is None:
        return _operation(Operator.FUNCTION, function="COUNT", aggregate=True, distinct=distinct)
    return _operation(Operator.FUNCTION, value, function="COUNT", aggregate=True, distinct=distinct)


def sum_(value: Any, distinct: bool = False) -> Node:
    return _operation(Operator.FUNCTION, value, function="SUM", aggregate=True, distinct=distinct)


def min_(value: Any) -> Node:
    return _operation(Operator.FUNCTION, value, function="MIN", aggregate=True)


def max_(value: Any) -> Node:
    return _operation(Operator.FUNCTION, value, function="MAX", aggregate=True)


def avg(value: Any, distinct: bool = False) -> Node:
    return _operation(Operator.FUNCTION, value, function="AVG", aggregate=True, distinct=distinct)


# Functions

def func(name: str, *operands: Any) -> Node:
    """Call a scalar function by name, e.g. ``func("LOWER", person["last_name"])``."""
    name = name.upper()
    if name in AGGREGATES:
        raise InvalidNodeError(f"Use the {name.lower()} aggregate constructor instead of func()")
    return _operation(Operator.FUNCTION, *operands, function=name)


def lower(value: Any) -> Node:
    return func("LOWER", value)


def upper(value: Any) -> Node:
    return func("UPPER", value)


def coalesce(*values: Any) -> Node:
    """Return the first non-null operand. ``None`` literals are allowed here."""
    return Node(
        kind=NodeKind.OPERATION,
        operator=Operator.FUNCTION.value,
        operands=tuple(value_node(v) if v is None else operand(v) for v in values),
        function="COALESCE",
    )

"""Typed ORM - Typed records, composable query nodes and cascading persistence."""

from typed_orm import op
from typed_orm.builder import QueryBuilder, RecordCursor
from typed_orm.changes import Change, ChangeKind
from typed_orm.config import OrmConfig
from typed_orm.context import Context
from typed_orm.database import Database
from typed_orm.errors import (
    ConflictError,
    ContextCancelledError,
    DeadlineExceededError,
    FieldNotLoadedError,
    InvalidNodeError,
    MissingPrimaryKeyError,
    MissingReferenceError,
    OptimisticLockError,
    OrmError,
    ProgrammingError,
    RecordNotFoundError,
    UniqueValueError,
)
from typed_orm.memory_store import MemoryRowStore
from typed_orm.node import Node, NodeKind
from typed_orm.parsing import SchemaParser
from typed_orm.record import Record
from typed_orm.rowstore import QueryPlan, RowStore, UniqueConstraintViolation
from typed_orm.types import (
    ColumnDefinition,
    ColumnType,
    RelationshipDefinition,
    RelationshipKind,
    SchemaRegistry,
    TableDefinition,
)

__all__ = [
    # Main API
    "Database",
    "SchemaParser",
    "Record",
    "QueryBuilder",
    "RecordCursor",
    "Node",
    "NodeKind",
    "op",
    "Context",
    "OrmConfig",
    "Change",
    "ChangeKind",
    # Storage
    "RowStore",
    "MemoryRowStore",
    "QueryPlan",
    "UniqueConstraintViolation",
    # Schema definitions
    "ColumnType",
    "ColumnDefinition",
    "RelationshipKind",
    "RelationshipDefinition",
    "TableDefinition",
    "SchemaRegistry",
    # Errors
    "OrmError",
    "ConflictError",
    "UniqueValueError",
    "OptimisticLockError",
    "RecordNotFoundError",
    "ContextCancelledError",
    "DeadlineExceededError",
    "ProgrammingError",
    "InvalidNodeError",
    "MissingReferenceError",
    "MissingPrimaryKeyError",
    "FieldNotLoadedError",
]

__version__ = "0.1.0"

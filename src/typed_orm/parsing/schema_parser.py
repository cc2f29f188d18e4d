"""Parser for the schema definition DSL."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import ply.yacc as yacc

from typed_orm.parsing.schema_lexer import SchemaLexer
from typed_orm.types import (
    COLUMN_TYPE_NAMES,
    DEFAULT_DB_KEY,
    LOCK_COLUMN,
    ColumnDefinition,
    ColumnType,
    SchemaRegistry,
    TableDefinition,
)


@dataclass
class ReferenceSpec:
    """The ``-> table [as name] [reverse name]`` part of a column."""

    target: str
    name: str | None = None
    reverse_name: str | None = None


@dataclass
class ColumnSpec:
    """A column as written, before resolution."""

    name: str
    type_name: str
    modifiers: list[tuple[str, Any]] = field(default_factory=list)
    reference: ReferenceSpec | None = None
    lineno: int = 0


@dataclass
class UniqueSpec:
    """A multi-column unique constraint."""

    columns: list[str]


@dataclass
class TableSpec:
    """A table as written, before resolution."""

    name: str
    locked: bool
    members: list[ColumnSpec | UniqueSpec]
    db_key: str = DEFAULT_DB_KEY


@dataclass
class AssociationSideSpec:
    column: str
    table: str
    collection: str


@dataclass
class AssociationSpec:
    """A many-to-many join table as written, before resolution."""

    name: str
    sides: list[AssociationSideSpec]
    db_key: str = DEFAULT_DB_KEY


@dataclass
class DatabaseSpec:
    """Sets the database key of the statements that follow it."""

    key: str


class SchemaParser:
    """Parser for the schema definition DSL."""

    tokens = SchemaLexer.tokens

    def __init__(self) -> None:
        self.lexer = SchemaLexer()
        self.lexer.build()
        self.parser: yacc.LRParser = None  # type: ignore
        self.registry: SchemaRegistry = SchemaRegistry()

    def p_schema(self, p: yacc.YaccProduction) -> None:
        """schema : statement_list"""
        p[0] = p[1]

    def p_schema_empty(self, p: yacc.YaccProduction) -> None:
        """schema :"""
        p[0] = []

    def p_statement_list_single(self, p: yacc.YaccProduction) -> None:
        """statement_list : statement"""
        p[0] = [p[1]]

    def p_statement_list_multiple(self, p: yacc.YaccProduction) -> None:
        """statement_list : statement_list statement"""
        p[0] = p[1]
        p[0].append(p[2])

    def p_statement(self, p: yacc.YaccProduction) -> None:
        """statement : database_def
                     | table_def
                     | association_def"""
        p[0] = p[1]

    def p_database_def(self, p: yacc.YaccProduction) -> None:
        """database_def : DATABASE IDENTIFIER"""
        p[0] = DatabaseSpec(key=p[2])

    def p_table_def(self, p: yacc.YaccProduction) -> None:
        """table_def : TABLE IDENTIFIER LBRACE member_list RBRACE"""
        p[0] = TableSpec(name=p[2], locked=False, members=p[4])

    def p_table_def_locked(self, p: yacc.YaccProduction) -> None:
        """table_def : TABLE IDENTIFIER LOCK LBRACE member_list RBRACE"""
        p[0] = TableSpec(name=p[2], locked=True, members=p[5])

    def p_member_list_single(self, p: yacc.YaccProduction) -> None:
        """member_list : member"""
        p[0] = [p[1]]

    def p_member_list_multiple(self, p: yacc.YaccProduction) -> None:
        """member_list : member_list member"""
        p[0] = p[1] + [p[2]]

    def p_member(self, p: yacc.YaccProduction) -> None:
        """member : column_def
                  | unique_def"""
        p[0] = p[1]

    def p_column_def(self, p: yacc.YaccProduction) -> None:
        """column_def : IDENTIFIER COLON IDENTIFIER modifier_list reference"""
        p[0] = ColumnSpec(
            name=p[1], type_name=p[3], modifiers=p[4], reference=p[5], lineno=p.lineno(1)
        )

    def p_modifier_list_empty(self, p: yacc.YaccProduction) -> None:
        """modifier_list :"""
        p[0] = []

    def p_modifier_list_multiple(self, p: yacc.YaccProduction) -> None:
        """modifier_list : modifier_list modifier"""
        p[0] = p[1] + [p[2]]

    def p_modifier_flag(self, p: yacc.YaccProduction) -> None:
        """modifier : AUTO
                    | PRIMARY
                    | NULLABLE
                    | UNIQUE"""
        p[0] = (p[1], True)

    def p_modifier_default(self, p: yacc.YaccProduction) -> None:
        """modifier : DEFAULT literal"""
        p[0] = ("default", p[2])

    def p_literal(self, p: yacc.YaccProduction) -> None:
        """literal : INTEGER
                   | FLOAT
                   | STRING"""
        p[0] = p[1]

    def p_literal_bool(self, p: yacc.YaccProduction) -> None:
        """literal : TRUE
                   | FALSE"""
        p[0] = p[1] == "true"

    def p_literal_null(self, p: yacc.YaccProduction) -> None:
        """literal : NULL"""
        p[0] = None

    def p_reference_none(self, p: yacc.YaccProduction) -> None:
        """reference :"""
        p[0] = None

    def p_reference(self, p: yacc.YaccProduction) -> None:
        """reference : ARROW IDENTIFIER reference_name reverse_name"""
        p[0] = ReferenceSpec(target=p[2], name=p[3], reverse_name=p[4])

    def p_reference_name(self, p: yacc.YaccProduction) -> None:
        """reference_name : AS IDENTIFIER"""
        p[0] = p[2]

    def p_reference_name_none(self, p: yacc.YaccProduction) -> None:
        """reference_name :"""
        p[0] = None

    def p_reverse_name(self, p: yacc.YaccProduction) -> None:
        """reverse_name : REVERSE IDENTIFIER"""
        p[0] = p[2]

    def p_reverse_name_none(self, p: yacc.YaccProduction) -> None:
        """reverse_name :"""
        p[0] = None

    def p_unique_def(self, p: yacc.YaccProduction) -> None:
        """unique_def : UNIQUE_GROUP name_list RPAREN"""
        p[0] = UniqueSpec(columns=p[2])

    def p_name_list_single(self, p: yacc.YaccProduction) -> None:
        """name_list : IDENTIFIER"""
        p[0] = [p[1]]

    def p_name_list_multiple(self, p: yacc.YaccProduction) -> None:
        """name_list : name_list COMMA IDENTIFIER"""
        p[0] = p[1] + [p[3]]

    def p_association_def(self, p: yacc.YaccProduction) -> None:
        """association_def : ASSOCIATION IDENTIFIER LBRACE association_side association_side RBRACE"""
        p[0] = AssociationSpec(name=p[2], sides=[p[4], p[5]])

    def p_association_side(self, p: yacc.YaccProduction) -> None:
        """association_side : IDENTIFIER ARROW IDENTIFIER AS IDENTIFIER"""
        p[0] = AssociationSideSpec(column=p[1], table=p[3], collection=p[5])

    def p_error(self, p: yacc.YaccProduction) -> None:
        if p:
            raise SyntaxError(f"Syntax error at '{p.value}' (line {p.lineno})")
        else:
            raise SyntaxError("Syntax error at end of input")

    def build(self, **kwargs: Any) -> None:
        """Build the parser."""
        self.parser = yacc.yacc(module=self, **kwargs)

    def parse(self, data: str) -> SchemaRegistry:
        """Parse schema definitions and return a populated SchemaRegistry.

        Raises:
            SyntaxError: If the text does not follow the grammar.
            ValueError: If the schema is inconsistent, e.g. a reference names
                an unknown table or a type name is not a column type.
        """
        if self.parser is None:
            self.build(debug=False, write_tables=False)

        self.registry = SchemaRegistry()
        self.lexer.lexer.lineno = 1
        statements = self.parser.parse(data, lexer=self.lexer.lexer) or []

        # Apply database keys to the statements that follow them
        db_key = DEFAULT_DB_KEY
        tables: list[TableSpec] = []
        associations: list[AssociationSpec] = []
        for statement in statements:
            if isinstance(statement, DatabaseSpec):
                db_key = statement.key
            elif isinstance(statement, TableSpec):
                statement.db_key = db_key
                tables.append(statement)
            else:
                statement.db_key = db_key
                associations.append(statement)

        # Tables first, so references may point forward in the file
        for spec in tables:
            self._resolve_table(spec)
        for spec in tables:
            self._resolve_references(spec)
        for spec in associations:
            self._resolve_association(spec)

        return self.registry

    def _resolve_table(self, spec: TableSpec) -> None:
        columns: list[ColumnDefinition] = []
        unique_constraints: list[tuple[str, ...]] = []
        for member in spec.members:
            if isinstance(member, UniqueSpec):
                unique_constraints.append(tuple(member.columns))
            else:
                columns.append(self._resolve_column(spec.name, member))

        lock_column = None
        if spec.locked:
            if any(c.name == LOCK_COLUMN for c in columns):
                raise ValueError(
                    f"Table '{spec.name}' is locked and cannot declare a '{LOCK_COLUMN}' column"
                )
            columns.append(ColumnDefinition(name=LOCK_COLUMN, type=ColumnType.STRING, nullable=True))
            lock_column = LOCK_COLUMN

        self.registry.register_table(
            TableDefinition(
                name=spec.name,
                db_key=spec.db_key,
                columns=columns,
                unique_constraints=unique_constraints,
                lock_column=lock_column,
            )
        )

    def _resolve_column(self, table: str, spec: ColumnSpec) -> ColumnDefinition:
        column_type = COLUMN_TYPE_NAMES.get(spec.type_name)
        if column_type is None:
            raise ValueError(
                f"Unknown type '{spec.type_name}' for column '{table}.{spec.name}' "
                f"(line {spec.lineno})"
            )

        column = ColumnDefinition(name=spec.name, type=column_type)
        for modifier, value in spec.modifiers:
            if modifier == "auto":
                column.is_auto = True
            elif modifier == "primary":
                column.is_pk = True
            elif modifier == "nullable":
                column.nullable = True
            elif modifier == "unique":
                column.is_unique = True
            else:
                if column_type is ColumnType.FLOAT and isinstance(value, int):
                    value = float(value)
                if not column_type.accepts(value):
                    raise ValueError(
                        f"Default {value!r} does not fit column '{table}.{spec.name}' "
                        f"of type '{column_type.value}'"
                    )
                column.default = value
        return column

    def _resolve_references(self, spec: TableSpec) -> None:
        for member in spec.members:
            if not isinstance(member, ColumnSpec) or member.reference is None:
                continue
            ref = member.reference
            if self.registry.get(ref.target) is None:
                raise ValueError(
                    f"Column '{spec.name}.{member.name}' references unknown table "
                    f"'{ref.target}' (line {member.lineno})"
                )
            self.registry.register_reference(
                spec.name,
                member.name,
                ref.target,
                name=ref.name,
                reverse_name=ref.reverse_name,
            )

    def _resolve_association(self, spec: AssociationSpec) -> None:
        for side in spec.sides:
            if self.registry.get(side.table) is None:
                raise ValueError(
                    f"Association '{spec.name}' references unknown table '{side.table}'"
                )
        first, second = spec.sides
        self.registry.register_association(
            spec.name,
            (first.column, first.table, first.collection),
            (second.column, second.table, second.collection),
            db_key=spec.db_key,
        )

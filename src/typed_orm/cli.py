"""Command line tool for inspecting schema files."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from typed_orm.parsing import SchemaParser
from typed_orm.types import RelationshipKind, SchemaRegistry

logger = logging.getLogger(__name__)


def load_schema(path: Path) -> SchemaRegistry:
    """Parse a schema file into a registry."""
    logger.debug("Parsing schema file %s", path)
    return SchemaParser().parse(path.read_text())


def describe(registry: SchemaRegistry) -> str:
    """Return a readable listing of the tables, columns and relationships."""
    lines: list[str] = []
    for name in registry.list_tables():
        table = registry.get_or_raise(name)
        header = f"table {name}"
        if table.db_key != "default":
            header += f" (database {table.db_key})"
        if table.lock_column is not None:
            header += " [locked]"
        lines.append(header)

        for column in table.columns:
            flags = []
            if column.is_pk:
                flags.append("primary")
            if column.is_auto:
                flags.append("auto")
            if column.nullable:
                flags.append("nullable")
            if column.is_unique:
                flags.append("unique")
            if column.default is not None:
                flags.append(f"default {column.default!r}")
            suffix = f" ({', '.join(flags)})" if flags else ""
            lines.append(f"  {column.name}: {column.type.value}{suffix}")

        for constraint in table.unique_constraints:
            if len(constraint) > 1:
                lines.append(f"  unique({', '.join(constraint)})")

        for rel in table.relationships:
            if rel.kind is RelationshipKind.FORWARD:
                detail = f"-> {rel.target_table} via {rel.column}"
            elif rel.kind is RelationshipKind.REVERSE:
                cardinality = "one" if rel.unique else "many"
                detail = f"<- {rel.target_table}.{rel.column} ({cardinality})"
            else:
                detail = f"<-> {rel.target_table} through {rel.assn_table}"
            optional = ", nullable" if rel.nullable and rel.kind is not RelationshipKind.MANY_MANY else ""
            lines.append(f"  .{rel.name} {detail}{optional}")
        lines.append("")

    for name in registry.list_associations():
        assn = registry.get_association(name)
        lines.append(f"association {name} ({', '.join(assn.columns)})")  # type: ignore[union-attr]
    return "\n".join(lines).rstrip() + "\n"


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    arg_parser = argparse.ArgumentParser(
        prog="typed-orm",
        description="Inspect and validate typed_orm schema files",
    )
    arg_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log parsing details to stderr",
    )
    subparsers = arg_parser.add_subparsers(dest="command", required=True)
    describe_parser = subparsers.add_parser("describe", help="Print tables, columns and relationships")
    describe_parser.add_argument("schema", type=Path, help="Path to the schema file")
    check_parser = subparsers.add_parser("check", help="Validate a schema file")
    check_parser.add_argument("schema", type=Path, help="Path to the schema file")

    args = arg_parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.schema.exists():
        print(f"Error: File not found: {args.schema}", file=sys.stderr)
        return 1
    try:
        registry = load_schema(args.schema)
    except (SyntaxError, ValueError, KeyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.command == "describe":
        print(describe(registry), end="")
    else:
        tables = len(registry.list_tables())
        associations = len(registry.list_associations())
        print(f"OK: {tables} table(s), {associations} association(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())

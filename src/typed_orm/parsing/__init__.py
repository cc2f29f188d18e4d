"""Parsing module for the schema DSL."""

from typed_orm.parsing.schema_parser import SchemaParser

__all__ = ["SchemaParser"]

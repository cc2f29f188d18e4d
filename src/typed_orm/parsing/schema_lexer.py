"""Lexer for the schema definition DSL."""

import re

import ply.lex as lex

_ESCAPE = re.compile(r"\\(.)")


class SchemaLexer:
    """Lexer for tokenizing schema definition DSL."""

    # Reserved keywords
    reserved = {
        "database": "DATABASE",
        "table": "TABLE",
        "association": "ASSOCIATION",
        "lock": "LOCK",
        "auto": "AUTO",
        "primary": "PRIMARY",
        "nullable": "NULLABLE",
        "unique": "UNIQUE",
        "default": "DEFAULT",
        "as": "AS",
        "reverse": "REVERSE",
        "true": "TRUE",
        "false": "FALSE",
        "null": "NULL",
    }

    # Token list
    tokens = [
        "IDENTIFIER",
        "INTEGER",
        "FLOAT",
        "STRING",
        "UNIQUE_GROUP",
        "ARROW",
        "LBRACE",
        "RBRACE",
        "RPAREN",
        "COLON",
        "COMMA",
    ] + list(reserved.values())

    # Simple tokens
    t_ARROW = r"->"
    t_LBRACE = r"\{"
    t_RBRACE = r"\}"
    t_RPAREN = r"\)"
    t_COLON = r":"
    t_COMMA = r","

    # Ignored characters (spaces, tabs, and newlines)
    t_ignore = " \t\r"

    # Comments
    t_ignore_COMMENT = r"\#[^\n]*"

    def __init__(self) -> None:
        self.lexer: lex.LexToken = None  # type: ignore

    # "unique(" opens a multi-column constraint; a bare "unique" is a modifier
    def t_UNIQUE_GROUP(self, t: lex.LexToken) -> lex.LexToken:
        r"unique[ \t]*\("
        return t

    def t_FLOAT(self, t: lex.LexToken) -> lex.LexToken:
        r"-?\d+\.\d+"
        t.value = float(t.value)
        return t

    def t_INTEGER(self, t: lex.LexToken) -> lex.LexToken:
        r"-?\d+"
        t.value = int(t.value)
        return t

    def t_STRING(self, t: lex.LexToken) -> lex.LexToken:
        r'"([^"\\\n]|\\.)*"'
        t.value = _ESCAPE.sub(r"\1", t.value[1:-1])
        return t

    def t_IDENTIFIER(self, t: lex.LexToken) -> lex.LexToken:
        r"[a-zA-Z_][a-zA-Z0-9_]*"
        t.type = self.reserved.get(t.value, "IDENTIFIER")
        return t

    def t_NEWLINE(self, t: lex.LexToken) -> None:
        r"\n+"
        t.lexer.lineno += len(t.value)

    def t_error(self, t: lex.LexToken) -> None:
        raise SyntaxError(f"Illegal character '{t.value[0]}' at line {t.lineno}")

    def build(self, **kwargs) -> None:  # type: ignore
        """Build the lexer."""
        self.lexer = lex.lex(module=self, **kwargs)

    def tokenize(self, data: str) -> list[lex.LexToken]:
        """Tokenize the input and return all tokens."""
        self.lexer.input(data)
        self.lexer.lineno = 1
        tokens = []
        while True:
            tok = self.lexer.token()
            if tok is None:
                break
            tokens.append(tok)
        return tokens

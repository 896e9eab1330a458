"""
SQL identifier and expression guards.

Table and column names arrive from clients, so every identifier that ends
up in SQL text is validated here and double-quoted. Values are never
interpolated; they are always bound as parameters.
"""

from __future__ import annotations

import re

from ..errors import ValidationError

IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MAX_IDENT_LEN = 64

# CHECK expressions may only use these words besides the column itself
_CHECK_KEYWORDS = frozenset(
    {
        "and", "or", "not", "in", "between", "like", "glob", "is", "null",
        "true", "false", "length", "lower", "upper", "abs", "trim", "typeof",
    }
)

_CHECK_TOKEN_RE = re.compile(
    r"""
    \s+
    | '(?:[^']|'')*'
    | \d+(?:\.\d+)?
    | [A-Za-z_][A-Za-z0-9_]*
    | <=|>=|<>|!=|\|\||[=<>+\-*/%(),]
    """,
    re.VERBOSE,
)


def validate_identifier(name: str, what: str = "identifier") -> str:
    """Validate a SQL identifier.

    Raises:
        ValidationError: If name is not a safe identifier
    """
    if not isinstance(name, str) or not IDENT_RE.match(name) or len(name) > MAX_IDENT_LEN:
        raise ValidationError(
            f"Invalid {what} name: {name!r}",
            details={"name": repr(name), "pattern": IDENT_RE.pattern},
        )
    return name


def validate_table_name(name: str) -> str:
    """Validate a user table name; '_' and 'sqlite_' prefixes are internal."""
    validate_identifier(name, "table")
    if name.startswith("_") or name.lower().startswith("sqlite_"):
        raise ValidationError(
            f"Table name {name!r} is reserved for internal use",
            details={"name": name},
        )
    return name


def quote_ident(name: str) -> str:
    """Quote a validated identifier for use in SQL text."""
    return f'"{validate_identifier(name)}"'


def validate_check_expression(expr: str, column: str) -> str:
    """Allow-list a CHECK expression that may only reference column.

    Raises:
        ValidationError: On any token outside the allowed grammar
    """
    pos = 0
    depth = 0
    while pos < len(expr):
        match = _CHECK_TOKEN_RE.match(expr, pos)
        if not match:
            raise ValidationError(
                f"Unsupported character in CHECK for '{column}': {expr[pos]!r}",
                details={"column": column, "check": expr},
            )
        token = match.group(0)
        pos = match.end()
        if token == "(":
            depth += 1
        elif token == ")":
            depth -= 1
            if depth < 0:
                break
        elif IDENT_RE.match(token):
            lowered = token.lower()
            if lowered != column.lower() and lowered not in _CHECK_KEYWORDS:
                raise ValidationError(
                    f"CHECK for '{column}' may not reference {token!r}",
                    details={"column": column, "check": expr},
                )
    if depth != 0:
        raise ValidationError(
            f"Unbalanced parentheses in CHECK for '{column}'",
            details={"column": column, "check": expr},
        )
    if not expr.strip():
        raise ValidationError(f"Empty CHECK for '{column}'", details={"column": column})
    return expr

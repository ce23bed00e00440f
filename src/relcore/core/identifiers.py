"""
SQL identifier validation.

Values are always bound as parameters. Table and column names cannot be, so
they are restricted to plain identifiers and double-quoted.
"""

import re
from typing import List

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def validate_identifier(name: str) -> str:
    """
    Validate a table or column name.

    A single dot is allowed to qualify a table with its schema.

    Raises:
        ValueError: If the name contains anything but letters, digits and underscores
    """
    if not isinstance(name, str):
        raise ValueError(f"Identifier must be a string, got {type(name).__name__}")
    parts = name.split('.')
    if len(parts) > 2 or not all(_IDENTIFIER.match(part) for part in parts):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def quote_identifier(name: str) -> str:
    """Validate and double-quote an identifier (``schema.table`` -> ``"schema"."table"``)."""
    validate_identifier(name)
    return '.'.join(f'"{part}"' for part in name.split('.'))


def _code_positions(sql: str):
    """Yield (index, char) for characters outside literals, quoted identifiers and comments."""
    i = 0
    length = len(sql)
    while i < length:
        ch = sql[i]
        if ch in ("'", '"'):
            # Skip to the closing quote; doubled quotes escape themselves
            i += 1
            while i < length:
                if sql[i] == ch:
                    if i + 1 < length and sql[i + 1] == ch:
                        i += 2
                        continue
                    break
                i += 1
        elif ch == '-' and sql.startswith('--', i):
            newline = sql.find('\n', i)
            i = length if newline == -1 else newline
            continue
        elif ch == '/' and sql.startswith('/*', i):
            end = sql.find('*/', i + 2)
            i = length if end == -1 else end + 2
            continue
        else:
            yield i, ch
        i += 1


def count_placeholders(sql: str) -> int:
    """Count ``?`` placeholders outside string literals, quoted identifiers and comments."""
    return sum(1 for _, ch in _code_positions(sql) if ch == '?')


def split_statements(script: str) -> List[str]:
    """Split a SQL script on semicolons that are not inside literals or comments."""
    statements = []
    start = 0
    for index, ch in _code_positions(script):
        if ch == ';':
            statements.append(script[start:index])
            start = index + 1
    statements.append(script[start:])
    return [stmt.strip() for stmt in statements if stmt.strip()]

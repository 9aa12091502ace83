# pgvector_sdk/vector/identifiers.py
# SPDX-License-Identifier: Apache-2.0
"""
SQL identifier escaping for dynamically composed statements.

Names made only of ASCII word characters and dots pass through unchanged so
that `schema.table` keeps working; anything else is double-quoted with
embedded quotes doubled. Values never go through here; they are always bound
as parameters.
"""

from __future__ import annotations

import re
from typing import Any, List, Optional

from pgvector_sdk.vector.vector_base import InvalidIdentifier

_SIMPLE_IDENTIFIER = re.compile(r"^[\w.]+$", re.ASCII)
_ALIASED = re.compile(r"^(?P<expr>.+?)\s+as\s+(?P<alias>\S+)$", re.IGNORECASE | re.DOTALL)


def escape_identifier(name: Any) -> str:
    """
    >>> escape_identifier("users")
    'users'
    >>> escape_identifier("my-table")
    '"my-table"'
    >>> escape_identifier('table"name')
    '"table""name"'
    """
    if not isinstance(name, str) or name == "":
        raise InvalidIdentifier("Invalid identifier", details={"type": type(name).__name__})
    if _SIMPLE_IDENTIFIER.match(name):
        return name
    return '"' + name.replace('"', '""') + '"'


def escape_select_clause(clause: Optional[str]) -> str:
    """
    Escape a comma-separated projection list.

    `*`, empty and None yield `*`. For `expr AS alias` only the alias is
    escaped; plain word/dot tokens are escaped as identifiers; any other
    expression (function calls, casts) is passed through as written.
    """
    if clause is None or not str(clause).strip() or str(clause).strip() == "*":
        return "*"

    parts: List[str] = []
    for raw in str(clause).split(","):
        token = raw.strip()
        if not token:
            continue
        if token == "*":
            parts.append(token)
            continue
        aliased = _ALIASED.match(token)
        if aliased:
            alias = aliased.group("alias")
            parts.append(f"{aliased.group('expr').strip()} AS {escape_identifier(alias)}")
            continue
        if _SIMPLE_IDENTIFIER.match(token):
            parts.append(escape_identifier(token))
            continue
        parts.append(token)
    return ", ".join(parts) if parts else "*"


__all__ = ["escape_identifier", "escape_select_clause"]

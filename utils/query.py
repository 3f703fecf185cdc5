"""Shared SQL fragment builders for the analytics query compiler.

Fragments are written with ``?`` as the parameter marker and carry their
own parameter list; :func:`render` turns the assembled text into the
target dialect (``?`` for SQLite, ``$1..$n`` for PostgreSQL).  Values are
never interpolated into SQL text.

PostgreSQL binds collections as a single array parameter (``= ANY(?)``,
``LIKE ANY(?)``); SQLite has no arrays, so collections expand to one
marker per element.
"""

import re
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, NamedTuple


class Dialect(str, Enum):
    POSTGRES = "postgres"
    SQLITE = "sqlite"


class Fragment(NamedTuple):
    """A piece of SQL text and the parameters its markers bind, in order."""
    sql: str
    params: tuple[Any, ...] = ()


_MARKER = re.compile(r"\?")


def placeholders(count: int) -> str:
    """Return ``"?,?,?"`` for *count* markers."""
    return ",".join("?" * count)


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so *value* matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def in_clause(column: str, values: list[Any], dialect: Dialect,
              negate: bool = False) -> Fragment:
    """Membership test of *column* against *values*.

    Args:
        column: Qualified column expression (trusted, never user input).
        values: Non-empty list of values to bind.
        dialect: Target SQL dialect.
        negate: Emit the NOT form.
    """
    if not values:
        raise ValueError(f"in_clause requires values for {column}")
    if dialect is Dialect.POSTGRES:
        sql = f"{column} = ANY(?)"
        if negate:
            sql = f"NOT ({sql})"
        return Fragment(sql, (list(values),))
    op = "NOT IN" if negate else "IN"
    return Fragment(f"{column} {op} ({placeholders(len(values))})", tuple(values))


def like_any_clause(column: str, prefixes: list[str], dialect: Dialect,
                    negate: bool = False) -> Fragment:
    """Prefix match of *column* against any of *prefixes*."""
    if not prefixes:
        raise ValueError(f"like_any_clause requires prefixes for {column}")
    patterns = [escape_like(p) + "%" for p in prefixes]
    if dialect is Dialect.POSTGRES:
        sql = f"{column} LIKE ANY(?)"
        if negate:
            sql = f"NOT ({sql})"
        return Fragment(sql, (patterns,))
    alternatives = " OR ".join(f"{column} LIKE ? ESCAPE '\\'" for _ in patterns)
    sql = f"NOT ({alternatives})" if negate else f"({alternatives})"
    return Fragment(sql, tuple(patterns))


def null_safe_not(column: str, fragment: Fragment) -> Fragment:
    """Wrap a negated predicate so rows with a NULL *column* still pass."""
    return Fragment(f"({column} IS NULL OR {fragment.sql})", fragment.params)


def join_fragments(fragments: list[Fragment], separator: str) -> Fragment:
    sql = separator.join(f.sql for f in fragments)
    params: tuple[Any, ...] = ()
    for f in fragments:
        params += f.params
    return Fragment(sql, params)


def _sqlite_value(value: Any) -> Any:
    # Decimals travel as exact strings; sqlite3's date adapter is deprecated
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def render(fragment: Fragment, dialect: Dialect) -> tuple[str, list[Any]]:
    """Return ``(sql, params)`` with markers in the dialect's style.

    Raises:
        ValueError: If the marker count does not match the parameter count.
    """
    markers = len(_MARKER.findall(fragment.sql))
    if markers != len(fragment.params):
        raise ValueError(
            f"SQL has {markers} parameter markers but {len(fragment.params)} values"
        )
    if dialect is Dialect.SQLITE:
        return fragment.sql, [_sqlite_value(p) for p in fragment.params]
    counter = iter(range(1, markers + 1))
    return _MARKER.sub(lambda _: f"${next(counter)}", fragment.sql), list(fragment.params)


def build_order_clause(
    sort: list[tuple[str, str]],
    allowed_sorts: dict[str, str],
    default_sort: tuple[str, str] = ("amount", "DESC"),
) -> str:
    """Build a safe SQL ORDER BY clause.

    Args:
        sort: ``(field, direction)`` pairs in priority order.
        allowed_sorts: Maps public field names to SQL expressions.  Fields
            not in the map are skipped.
        default_sort: Used when no requested field is allowed.

    Returns:
        ORDER BY clause string, e.g. "ORDER BY amount DESC, name ASC".
    """
    parts = []
    for field, direction in sort:
        if field not in allowed_sorts:
            continue
        dir_sql = "DESC" if direction.upper() == "DESC" else "ASC"
        parts.append(f"{allowed_sorts[field]} {dir_sql}")
    if not parts:
        field, direction = default_sort
        parts.append(f"{allowed_sorts.get(field, field)} {direction}")
    return "ORDER BY " + ", ".join(parts)

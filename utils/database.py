"""Database utilities for the budget analytics tools.

Provides reusable functions for:
- Schema creation for the SQLite rendition of the budget store
- Exact decimal arithmetic inside SQLite
- Batch insert operations
- SQLite implementations of the analytics storage and lookup ports

SQLite has no exact numeric type: a NUMERIC column stores ``0.1`` as a
binary float and ``SUM`` adds floats.  Amount columns are therefore TEXT
holding decimal strings, and every connection from :func:`connect`
registers Python ``Decimal`` functions the compiler uses for them:

- ``decimal_sum(x)``: aggregate sum, returns a decimal string ('0' when
  every input is NULL)
- ``decimal_div(x, n)``: ``x / n`` as a decimal string, '0' when n is 0 or NULL
- ``decimal_cmp(a, b)``: -1, 0 or 1; NULL when either side is NULL
- collation ``DECIMAL``: numeric ordering of decimal strings
"""

import logging
import sqlite3
import time
from decimal import Decimal
from pathlib import Path
from typing import List, Any

from analytics.errors import CompilationError, StorageError
from utils.cache import ResultCache
from utils.query import Dialect

logger = logging.getLogger(__name__)

sqlite3.register_adapter(Decimal, str)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS UATs (
    id INTEGER PRIMARY KEY,
    uat_key TEXT,
    uat_code TEXT NOT NULL UNIQUE,
    siruta_code TEXT NOT NULL,
    name TEXT NOT NULL,
    county_code TEXT,
    county_name TEXT,
    region TEXT,
    population INTEGER
);

CREATE TABLE IF NOT EXISTS Entities (
    cui TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    entity_type TEXT,
    uat_id INTEGER REFERENCES UATs(id),
    is_uat BOOLEAN NOT NULL DEFAULT 0,
    address TEXT,
    main_creditor_1_cui TEXT REFERENCES Entities(cui),
    main_creditor_2_cui TEXT REFERENCES Entities(cui)
);

CREATE TABLE IF NOT EXISTS Reports (
    report_id TEXT PRIMARY KEY,
    entity_cui TEXT NOT NULL REFERENCES Entities(cui),
    report_type TEXT NOT NULL,
    main_creditor_cui TEXT,
    report_date TEXT NOT NULL,
    reporting_year INTEGER NOT NULL,
    reporting_period TEXT NOT NULL,
    budget_sector_id INTEGER
);

CREATE TABLE IF NOT EXISTS FunctionalClassifications (
    functional_code TEXT PRIMARY KEY,
    functional_name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS EconomicClassifications (
    economic_code TEXT PRIMARY KEY,
    economic_name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS FundingSources (
    source_id INTEGER PRIMARY KEY,
    source_description TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS BudgetSectors (
    sector_id INTEGER PRIMARY KEY,
    sector_description TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ExecutionLineItems (
    line_item_id INTEGER PRIMARY KEY AUTOINCREMENT,
    report_id TEXT NOT NULL,
    report_type TEXT,
    entity_cui TEXT NOT NULL,
    main_creditor_cui TEXT,
    budget_sector_id INTEGER,
    funding_source_id INTEGER,
    functional_code TEXT NOT NULL,
    economic_code TEXT,
    account_category TEXT NOT NULL CHECK (account_category IN ('vn', 'ch')),
    program_code TEXT,
    expense_type TEXT,
    year INTEGER NOT NULL,
    month INTEGER,
    quarter INTEGER,
    ytd_amount TEXT NOT NULL DEFAULT '0',
    monthly_amount TEXT NOT NULL DEFAULT '0',
    quarterly_amount TEXT,
    is_yearly BOOLEAN NOT NULL DEFAULT 0,
    is_quarterly BOOLEAN NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_eli_year_category
    ON ExecutionLineItems (year, account_category);
CREATE INDEX IF NOT EXISTS idx_eli_entity ON ExecutionLineItems (entity_cui);
CREATE INDEX IF NOT EXISTS idx_eli_functional ON ExecutionLineItems (functional_code);
CREATE INDEX IF NOT EXISTS idx_eli_economic ON ExecutionLineItems (economic_code);
CREATE INDEX IF NOT EXISTS idx_uats_county ON UATs (county_code);
CREATE INDEX IF NOT EXISTS idx_entities_uat ON Entities (uat_id);
"""


# ── Decimal arithmetic ────────────────────────────────────────────────────────

def _as_decimal(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class DecimalSum:
    """``decimal_sum`` aggregate: exact sum of decimal strings."""

    def __init__(self) -> None:
        self.total = Decimal(0)

    def step(self, value: Any) -> None:
        if value is not None:
            self.total += _as_decimal(value)

    def finalize(self) -> str:
        return str(self.total)


def decimal_div(value: Any, divisor: Any) -> str:
    if value is None or not divisor:
        return "0"
    return str(_as_decimal(value) / _as_decimal(divisor))


def decimal_cmp(left: Any, right: Any) -> int | None:
    if left is None or right is None:
        return None
    a, b = _as_decimal(left), _as_decimal(right)
    return (a > b) - (a < b)


def _decimal_collation(left: str, right: str) -> int:
    return decimal_cmp(left, right)


def register_decimal_functions(conn: sqlite3.Connection) -> None:
    """Install the exact decimal functions and collation on *conn*."""
    conn.create_aggregate("decimal_sum", 1, DecimalSum)
    conn.create_function("decimal_div", 2, decimal_div, deterministic=True)
    conn.create_function("decimal_cmp", 2, decimal_cmp, deterministic=True)
    conn.create_collation("DECIMAL", _decimal_collation)


# ── Connections and schema ────────────────────────────────────────────────────

def create_schema(conn: sqlite3.Connection) -> None:
    """Create the budget tables and indexes if they don't exist."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def connect(db_path: Path, read_only: bool = False) -> sqlite3.Connection:
    """Open a SQLite connection with ``sqlite3.Row`` rows and decimal functions.

    Args:
        db_path: Path to the SQLite database file.
        read_only: If True, open in read-only mode via URI.
    """
    if read_only:
        conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True,
                               check_same_thread=False, timeout=10)
    else:
        conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout=5000")
    register_decimal_functions(conn)
    return conn


def batch_insert(conn: sqlite3.Connection, query: str, rows: List[tuple],
                 batch_size: int = 1000) -> int:
    """Execute batch insert operations efficiently.

    Inserts rows in batches to balance memory usage and performance.
    Commits after each batch to prevent transaction bloat.

    Args:
        conn: SQLite connection
        query: SQL INSERT query with ? placeholders
        rows: List of tuples to insert
        batch_size: Number of rows per batch (default: 1000)

    Returns:
        Total number of rows inserted
    """
    total_inserted = 0

    for i in range(0, len(rows), batch_size):
        batch = rows[i:i + batch_size]
        conn.executemany(query, batch)
        conn.commit()
        total_inserted += len(batch)

    return total_inserted


# ── Storage port ──────────────────────────────────────────────────────────────

class SQLiteStorage:
    """Executes compiled ``sqlite`` plans against a database file.

    A fresh connection is opened per call so the row and count queries can
    run on separate worker threads.  Errors propagate as ``sqlite3.Error``;
    the aggregation service turns them into StorageError.
    """

    def __init__(self, db_path: Path, read_only: bool = True,
                 slow_query_ms: float = 500.0) -> None:
        self._db_path = Path(db_path)
        self._read_only = read_only
        self._slow_query_ms = slow_query_ms

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _run(self, sql: str, params: list[Any]) -> list[sqlite3.Row]:
        start = time.monotonic()
        conn = connect(self._db_path, read_only=self._read_only)
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        duration_ms = (time.monotonic() - start) * 1000
        if duration_ms > self._slow_query_ms:
            logger.warning("slow_query duration_ms=%.1f sql=%s", duration_ms, sql[:200])
        return rows

    @staticmethod
    def _check_dialect(plan: Any) -> None:
        if plan.dialect is not Dialect.SQLITE:
            raise CompilationError(
                f"SQLiteStorage cannot run a {plan.dialect.value} plan"
            )

    def execute(self, plan: Any) -> list[dict[str, Any]]:
        self._check_dialect(plan)
        return [dict(r) for r in self._run(plan.sql, plan.params)]

    def execute_count(self, plan: Any) -> int:
        self._check_dialect(plan)
        if plan.count_sql is None:
            raise CompilationError("plan has no count query")
        rows = self._run(plan.count_sql, plan.count_params)
        return int(rows[0][0]) if rows else 0


# ── Classification lookup port ────────────────────────────────────────────────

class SQLiteClassificationLookup:
    """Resolves functional/economic codes to names, caching reference data."""

    def __init__(self, db_path: Path, ttl_seconds: float = 3600.0) -> None:
        self._db_path = Path(db_path)
        self._cache = ResultCache(max_items=20_000, ttl_seconds=ttl_seconds)

    def _name(self, table: str, code_col: str, name_col: str, code: str) -> str | None:
        key = f"{table}:{code}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached or None
        try:
            conn = connect(self._db_path, read_only=True)
            try:
                row = conn.execute(
                    f"SELECT {name_col} FROM {table} WHERE {code_col} = ?", (code,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StorageError("classification lookup failed") from exc
        name = row[0] if row else None
        # Unknown codes are cached as "" so they are not looked up again
        self._cache.set(key, name or "")
        return name

    def functional_name(self, code: str) -> str | None:
        return self._name("FunctionalClassifications", "functional_code",
                          "functional_name", code)

    def economic_name(self, code: str) -> str | None:
        return self._name("EconomicClassifications", "economic_code",
                          "economic_name", code)

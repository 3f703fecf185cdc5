"""Tests for utils/database.py - schema, decimal functions and SQLite ports."""
import sqlite3
import sys
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from analytics.compiler import compile_query
from analytics.errors import CompilationError, StorageError
from analytics.filters import GroupingDimension, parse_filter
from utils.database import (
    SQLiteClassificationLookup,
    SQLiteStorage,
    connect,
)
from utils.query import Dialect


def _plan(dialect=Dialect.SQLITE, **fields):
    flt = parse_filter({"account_category": "ch", "years": [2023], **fields})
    return compile_query(flt, GroupingDimension.UAT, dialect)


class TestSchemaHelpers:
    def test_tables_created(self, budget_db):
        conn = connect(budget_db, read_only=True)
        tables = {r[0] for r in conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'")}
        count = conn.execute("SELECT COUNT(*) FROM UATs").fetchone()[0]
        conn.close()
        assert {"UATs", "Entities", "Reports", "ExecutionLineItems",
                "FunctionalClassifications", "EconomicClassifications"} <= tables
        assert count == 5

    def test_amounts_stored_as_text(self, budget_db):
        conn = connect(budget_db, read_only=True)
        kinds = {r[0] for r in conn.execute(
            "SELECT DISTINCT typeof(ytd_amount) FROM ExecutionLineItems")}
        conn.close()
        assert kinds == {"text"}

    def test_read_only_connection_rejects_writes(self, budget_db):
        conn = connect(budget_db, read_only=True)
        with pytest.raises(sqlite3.OperationalError):
            conn.execute("DELETE FROM UATs")
        conn.close()


class TestDecimalFunctions:
    @pytest.fixture()
    def conn(self):
        conn = connect(Path(":memory:"))
        conn.execute("CREATE TABLE t (v TEXT)")
        conn.executemany("INSERT INTO t VALUES (?)",
                         [(Decimal("0.1"),), (Decimal("0.2"),), (None,), ("10",)])
        yield conn
        conn.close()

    def test_sum_is_exact(self, conn):
        assert conn.execute("SELECT decimal_sum(v) FROM t").fetchone()[0] == "10.3"
        assert conn.execute(
            "SELECT decimal_sum(v) FROM t WHERE v IN ('0.1', '0.2')").fetchone()[0] == "0.3"

    def test_sum_of_nothing_is_zero(self, conn):
        assert conn.execute("SELECT decimal_sum(v) FROM t WHERE v IS NULL").fetchone()[0] == "0"

    def test_div_guards_zero_and_null(self, conn):
        row = conn.execute(
            "SELECT decimal_div('0.3', 3), decimal_div('5', 0), decimal_div('5', NULL)"
        ).fetchone()
        assert tuple(row) == ("0.1", "0", "0")

    def test_cmp(self, conn):
        row = conn.execute(
            "SELECT decimal_cmp('0.3', '0.30000000000000001'), "
            "decimal_cmp('10', '9'), decimal_cmp('2.50', '2.5'), decimal_cmp(NULL, '1')"
        ).fetchone()
        assert tuple(row) == (-1, 1, 0, None)

    def test_collation_orders_numerically(self, conn):
        rows = conn.execute(
            "SELECT v FROM t WHERE v IS NOT NULL ORDER BY v COLLATE DECIMAL DESC").fetchall()
        assert [r[0] for r in rows] == ["10", "0.2", "0.1"]

    def test_decimal_parameters_bind_as_text(self, conn):
        assert conn.execute("SELECT typeof(?)", (Decimal("1.5"),)).fetchone()[0] == "text"


class TestSQLiteStorage:
    def test_execute_and_count(self, budget_db):
        storage = SQLiteStorage(budget_db)
        plan = _plan(county_codes=["AB"])
        rows = storage.execute(plan)
        assert {r["code"] for r in rows} == {"4562583", "4562850"}
        assert storage.execute_count(plan) == 2

    def test_rejects_postgres_plan(self, budget_db):
        with pytest.raises(CompilationError):
            SQLiteStorage(budget_db).execute(_plan(Dialect.POSTGRES))

    def test_euro_plan_has_no_count(self, budget_db):
        with pytest.raises(CompilationError):
            SQLiteStorage(budget_db).execute_count(_plan(normalization="total_euro"))

    def test_errors_propagate_as_sqlite_errors(self, tmp_path):
        with pytest.raises(sqlite3.Error):
            SQLiteStorage(tmp_path / "missing.sqlite").execute(_plan())


class TestClassificationLookup:
    def test_names(self, budget_db):
        lookup = SQLiteClassificationLookup(budget_db)
        assert lookup.functional_name("65.02") == "Invatamant"
        assert lookup.economic_name("20.01.01") == "Furnituri de birou"

    def test_unknown_code(self, budget_db):
        lookup = SQLiteClassificationLookup(budget_db)
        assert lookup.economic_name("99.99.99") is None
        # Second lookup is served from the cache
        assert lookup.economic_name("99.99.99") is None

    def test_cached_after_first_lookup(self, budget_db):
        lookup = SQLiteClassificationLookup(budget_db)
        assert lookup.functional_name("66.02") == "Sanatate"
        budget_db.unlink()
        assert lookup.functional_name("66.02") == "Sanatate"

    def test_missing_database(self, tmp_path):
        lookup = SQLiteClassificationLookup(tmp_path / "missing.sqlite")
        with pytest.raises(StorageError):
            lookup.functional_name("65.02")

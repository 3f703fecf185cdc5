"""
Pytest fixtures for the budget analytics tests.

Provides a small but realistic SQLite budget database (three counties,
Bucharest included), filter helpers, and fake storage ports for exercising
the aggregation service without a database.
"""

import sqlite3
import sys
import threading
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from utils.database import batch_insert, create_schema  # noqa: E402


# ── Fixture data ──────────────────────────────────────────────────────────────
# (id, uat_code, siruta_code, name, county_code, county_name, region, population)
UATS = [
    (1, "4305857", "54975", "Municipiul Cluj-Napoca", "CJ", "Cluj", "Nord-Vest", 1000),
    (2, "4267117", "179132", "Municipiul Bucuresti", "B", "Bucuresti", "Bucuresti-Ilfov", 1_700_000),
    (3, "4505008", "179141", "Sector 1", "B", "Bucuresti", "Bucuresti-Ilfov", 200_000),
    (4, "4562583", "AB", "Judetul Alba", "AB", "Alba", "Centru", 300_000),
    (5, "4562850", "1017", "Municipiul Alba Iulia", "AB", "Alba", "Centru", 60_000),
]

# (cui, name, entity_type, uat_id, is_uat)
ENTITIES = [
    ("4305857", "Municipiul Cluj-Napoca", "admin_municipality", 1, 1),
    ("4267117", "Municipiul Bucuresti", "admin_municipality", 2, 1),
    ("4505008", "Sector 1", "admin_sector", 3, 1),
    ("4562583", "Consiliul Judetean Alba", "admin_county_council", 4, 1),
    ("4562850", "Municipiul Alba Iulia", "admin_municipality", 5, 1),
    ("9000001", "Scoala Gimnaziala Nr 1 Cluj", "school", 1, 0),
]

# (report_id, entity_cui, report_type, report_date, reporting_year)
REPORTS = [
    ("R-CJ-2022", "4305857", "PRINCIPAL_AGGREGATED", "2022-12-31", 2022),
    ("R-CJ-2023", "4305857", "PRINCIPAL_AGGREGATED", "2023-12-31", 2023),
    ("R-B-2023", "4267117", "PRINCIPAL_AGGREGATED", "2023-12-31", 2023),
    ("R-S1-2023", "4505008", "PRINCIPAL_AGGREGATED", "2023-12-31", 2023),
    ("R-AB-2023", "4562583", "PRINCIPAL_AGGREGATED", "2023-12-31", 2023),
    ("R-ABI-2023", "4562850", "PRINCIPAL_AGGREGATED", "2023-12-31", 2023),
    ("R-SC-2023", "9000001", "DETAILED", "2023-12-31", 2023),
]

# (report_id, entity_cui, account_category, functional_code, economic_code,
#  funding_source_id, year, ytd_amount)
LINE_ITEMS = [
    ("R-CJ-2022", "4305857", "ch", "65.02", "10.01.01", 1, 2022, 10_000),
    ("R-CJ-2023", "4305857", "ch", "65.02", "10.01.01", 1, 2023, 30_000),
    ("R-CJ-2023", "4305857", "ch", "66.02", "20.01.01", 2, 2023, 20_000),
    ("R-CJ-2023", "4305857", "vn", "07.02", None, 1, 2023, 70_000),
    ("R-B-2023", "4267117", "ch", "65.02", "10.01.01", 1, 2023, 3_400_000),
    ("R-S1-2023", "4505008", "ch", "65.02", None, 1, 2023, 400_000),
    ("R-AB-2023", "4562583", "ch", "66.02", "20.01.01", 1, 2023, 300_000),
    ("R-ABI-2023", "4562850", "ch", "65.02", "10.01.01", 1, 2023, 120_000),
    ("R-SC-2023", "9000001", "ch", "65.02", "10.01.01", 1, 2023, 5_000),
]

FUNCTIONAL = [("65.02", "Invatamant"), ("66.02", "Sanatate"), ("07.02", "Impozite pe proprietate")]
ECONOMIC = [("10.01.01", "Salarii de baza"), ("20.01.01", "Furnituri de birou")]


def populate(conn: sqlite3.Connection) -> None:
    """Load the fixture rows into an empty schema."""
    create_schema(conn)
    batch_insert(
        conn,
        "INSERT INTO UATs (id, uat_code, siruta_code, name, county_code, county_name,"
        " region, population) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        UATS,
    )
    batch_insert(
        conn,
        "INSERT INTO Entities (cui, name, entity_type, uat_id, is_uat) VALUES (?, ?, ?, ?, ?)",
        ENTITIES,
    )
    batch_insert(
        conn,
        "INSERT INTO Reports (report_id, entity_cui, report_type, report_date,"
        " reporting_year, reporting_period) VALUES (?, ?, ?, ?, ?, 'YEAR')",
        REPORTS,
    )
    batch_insert(conn, "INSERT INTO FunctionalClassifications VALUES (?, ?)", FUNCTIONAL)
    batch_insert(conn, "INSERT INTO EconomicClassifications VALUES (?, ?)", ECONOMIC)
    batch_insert(
        conn,
        "INSERT INTO ExecutionLineItems (report_id, entity_cui, account_category,"
        " functional_code, economic_code, funding_source_id, year, ytd_amount,"
        " monthly_amount, is_yearly, is_quarterly)"
        " VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 1, 0)",
        LINE_ITEMS,
    )


@pytest.fixture()
def budget_db(tmp_path) -> Path:
    """Path to a SQLite file loaded with the fixture budget data."""
    db_path = tmp_path / "budget.sqlite"
    conn = sqlite3.connect(str(db_path))
    populate(conn)
    conn.close()
    return db_path


@pytest.fixture()
def base_filter() -> dict:
    return {"account_category": "ch", "years": [2023]}


# ── Fake storage ports ────────────────────────────────────────────────────────

class CountingStorage:
    """Storage port returning canned rows and recording every call.

    ``fail_times`` makes the first N row queries raise; ``delay`` makes
    every row query sleep; ``gate`` (a threading.Event) makes row queries
    block until it is set.
    """

    def __init__(self, rows=None, count=None, fail_times=0, fail_count=False,
                 delay=0.0, gate=None):
        self.rows = rows if rows is not None else [{
            "uat_id": 1, "code": "4305857", "name": "Municipiul Cluj-Napoca",
            "population": 1000, "total_amount": 50_000,
            "per_capita_amount": 50.0, "amount": 50_000,
        }]
        self.count = len(self.rows) if count is None else count
        self.fail_times = fail_times
        self.fail_count = fail_count
        self.delay = delay
        self.gate = gate
        self.started = threading.Event()
        self.execute_calls = 0
        self.count_calls = 0
        self.plans = []
        self._lock = threading.Lock()

    def execute(self, plan):
        with self._lock:
            self.execute_calls += 1
            self.plans.append(plan)
            should_fail = self.fail_times > 0
            if should_fail:
                self.fail_times -= 1
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.delay:
            time.sleep(self.delay)
        if should_fail:
            raise sqlite3.OperationalError("database is locked")
        return [dict(r) for r in self.rows]

    def execute_count(self, plan):
        with self._lock:
            self.count_calls += 1
        if self.fail_count:
            raise sqlite3.OperationalError("disk I/O error")
        return self.count


@pytest.fixture()
def counting_storage() -> CountingStorage:
    return CountingStorage()


@pytest.fixture()
def make_storage():
    """Factory for CountingStorage with custom behaviour."""
    return CountingStorage

"""
Budget Aggregation Tool

Run one aggregation against the SQLite budget database and print the
result as a table or JSON.  Uses the same analytics core as the API.

Usage:
    python aggregate_budget.py county --year 2023
    python aggregate_budget.py uat --year 2023 --county CJ --normalization per_capita
    python aggregate_budget.py functional --year 2022 --year 2023 --prefix 65.
    python aggregate_budget.py entity --filter-json filter.json --top 20 --json
"""

import argparse
import json
import logging
import sys
import textwrap
from decimal import Decimal
from pathlib import Path

from analytics.errors import AnalyticsError
from analytics.filters import GroupingDimension, Normalization
from api.database import build_service
from utils.config import AppConfig

DEFAULT_DB_PATH = AppConfig.from_env().db_path


def build_filter(args: argparse.Namespace) -> dict:
    """Merge --filter-json with the individual filter flags (flags win)."""
    flt: dict = {}
    if args.filter_json:
        with open(args.filter_json, "r") as f:
            flt = json.load(f)
    if args.category:
        flt["account_category"] = args.category
    flt.setdefault("account_category", "ch")
    if args.year:
        flt["years"] = args.year
    if args.normalization:
        flt["normalization"] = args.normalization
    if args.county:
        flt["county_codes"] = args.county
    if args.prefix:
        flt["functional_prefixes"] = args.prefix
    if args.min_amount is not None:
        flt["aggregate_min_amount"] = args.min_amount
    return flt


def _fmt(value) -> str:
    if isinstance(value, Decimal):
        return f"{value:,.2f}"
    return "" if value is None else str(value)


def display_rows(rows: list[dict], total_count: int, dimension: str) -> None:
    """Print rows as a fixed-width table."""
    if not rows:
        print("\n  No results.")
        return
    print(f"\n  {dimension.upper()} aggregates ({len(rows)} of {total_count:,})")
    print("  " + "-" * 88)
    print(f"  {'Code':<14} {'Name':<36} {'Population':>12} {'Amount':>22}")
    print("  " + "-" * 88)
    for r in rows:
        name = (r.get("name") or "")[:36]
        print(f"  {_fmt(r.get('code')):<14} {name:<36} "
              f"{_fmt(r.get('population')):>12} {_fmt(r.get('amount')):>22}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Aggregate Romanian budget execution data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""
            Examples:
              python aggregate_budget.py county --year 2023
              python aggregate_budget.py uat --year 2023 --county CJ --normalization per_capita
              python aggregate_budget.py economic --year 2023 --category ch --json
        """),
    )
    parser.add_argument("dimension", choices=[d.value for d in GroupingDimension],
                        help="Grouping dimension")
    parser.add_argument("--db", type=Path, default=DEFAULT_DB_PATH,
                        help="Database path")
    parser.add_argument("--filter-json", type=Path, default=None,
                        help="JSON file with a full filter object")
    parser.add_argument("--category", choices=["vn", "ch"], default=None,
                        help="Account category: vn (income) or ch (expense, default)")
    parser.add_argument("--year", type=int, action="append", default=None,
                        help="Year to include (repeatable)")
    parser.add_argument("--normalization", choices=[n.value for n in Normalization],
                        default=None, help="Amount normalization (default: total)")
    parser.add_argument("--county", action="append", default=None,
                        help="County code filter (repeatable)")
    parser.add_argument("--prefix", action="append", default=None,
                        help="Functional code prefix filter (repeatable)")
    parser.add_argument("--min-amount", type=Decimal, default=None,
                        help="Minimum aggregated amount")
    parser.add_argument("--top", type=int, default=25,
                        help="Number of rows (default: 25)")
    parser.add_argument("--json", action="store_true",
                        help="Print JSON instead of a table")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Log queries and cache activity")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(levelname)s %(name)s %(message)s")

    if not args.db.exists():
        print(f"ERROR: Database not found: {args.db}")
        sys.exit(1)

    with build_service(AppConfig.from_env(), db_path=args.db) as service:
        try:
            result = service.get_aggregates(build_filter(args), args.dimension,
                                            limit=args.top)
        except AnalyticsError as exc:
            print(f"ERROR: {exc}")
            sys.exit(2)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        display_rows(result.rows, result.total_count, args.dimension)


if __name__ == "__main__":
    main()

"""Filter-to-SQL compiler for budget execution aggregates.

One compiler serves every grouping dimension (UAT, county, entity,
functional code, economic code).  Given a validated filter it decides:

- which tables to join: Reports, Entities and UATs are joined only when a
  filter field or the requested output needs them;
- the row-level predicates (WHERE), evaluated before aggregation;
- the GROUP BY projection;
- the post-aggregation predicates (HAVING) for aggregate amount bounds,
  written against the same amount expression surfaced as ``amount``.

Every value is bound as a parameter.  Predicates are built with ``?``
markers and rendered for the target dialect at the end.

Euro normalizations cannot be finished in SQL because the exchange rate is
per year: such plans group by (dimension, year) and leave thresholds,
sorting, counting and pagination to the application pass
(``plan.app_pass``).
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from analytics.errors import CompilationError
from analytics.filters import (
    DEFAULT_LIMIT,
    DEFAULT_SORT,
    SORT_FIELDS,
    AccountCategory,
    AnalyticsFilter,
    GroupingDimension,
    PeriodType,
    SortOption,
)
from utils.query import (
    Dialect,
    Fragment,
    build_order_clause,
    escape_like,
    in_clause,
    join_fragments,
    like_any_clause,
    null_safe_not,
    render,
)

logger = logging.getLogger(__name__)

# Bucharest is a county ('B') whose representative unit is the municipality,
# SIRUTA 179132; every other county is represented by the unit whose SIRUTA
# code equals the county code.
BUCHAREST_COUNTY_CODE = "B"
BUCHAREST_SIRUTA_CODE = "179132"

UNKNOWN_ECONOMIC_CODE = "00.00.00"

AMOUNT_COLUMNS: dict[PeriodType, str] = {
    PeriodType.YEAR: "ytd_amount",
    PeriodType.QUARTER: "quarterly_amount",
    PeriodType.MONTH: "monthly_amount",
}

_SUB_PERIOD_COLUMNS: dict[PeriodType, str] = {
    PeriodType.QUARTER: "eli.quarter",
    PeriodType.MONTH: "eli.month",
}

_PERIOD_FLAGS: dict[PeriodType, str] = {
    PeriodType.YEAR: "eli.is_yearly = TRUE",
    PeriodType.QUARTER: "eli.is_quarterly = TRUE",
}


@dataclass(frozen=True)
class Join:
    name: str
    sql: str


@dataclass
class QueryPlan:
    """Compiled aggregate query for one filter and grouping dimension.

    ``sql``/``params`` fetch the page of grouped rows; ``count_sql``/
    ``count_params`` count all groups that pass the HAVING predicates.
    When ``app_pass`` is set the rows are per (group, year), unsorted and
    unpaginated, and ``count_sql`` is None.
    """
    dimension: GroupingDimension
    dialect: Dialect
    amount_column: str
    joins: list[Join]
    where: list[Fragment]
    group_by: list[str]
    having: list[Fragment]
    sql: str
    params: list[Any]
    count_sql: str | None
    count_params: list[Any]
    app_pass: bool = False
    sort: tuple[SortOption, ...] = DEFAULT_SORT
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    group_keys: tuple[str, ...] = field(default_factory=tuple)

    @property
    def join_names(self) -> list[str]:
        return [j.name for j in self.joins]


@dataclass
class _Shape:
    """Per-dimension projection details."""
    select: list[str]
    group_by: list[str]
    population: str
    keys: tuple[str, ...]


# ── Period predicates ─────────────────────────────────────────────────────────

def _period_predicates(flt: AnalyticsFilter, dialect: Dialect) -> list[Fragment]:
    period = flt.period
    preds: list[Fragment] = []
    if period.type in _PERIOD_FLAGS:
        preds.append(Fragment(_PERIOD_FLAGS[period.type]))

    sub_col = _SUB_PERIOD_COLUMNS.get(period.type)
    interval = period.parsed_interval()
    if interval is None:
        dates = period.parsed_dates()
        if sub_col is None:
            preds.append(in_clause("eli.year", sorted({y for y, _ in dates}), dialect))
        else:
            pairs = sorted(set(dates))
            alternatives = [
                Fragment(f"(eli.year = ? AND {sub_col} = ?)", (y, s)) for y, s in pairs
            ]
            joined = join_fragments(alternatives, " OR ")
            preds.append(Fragment(f"({joined.sql})", joined.params))
        return preds

    (start_year, start_sub), (end_year, end_sub) = interval
    if sub_col is None:
        preds.append(Fragment("eli.year >= ?", (start_year,)))
        preds.append(Fragment("eli.year <= ?", (end_year,)))
    else:
        preds.append(Fragment(f"(eli.year, {sub_col}) >= (?, ?)", (start_year, start_sub)))
        preds.append(Fragment(f"(eli.year, {sub_col}) <= (?, ?)", (end_year, end_sub)))
    return preds


# ── Joins ─────────────────────────────────────────────────────────────────────

def _needs_reports(flt: AnalyticsFilter) -> bool:
    return bool(flt.report_type or flt.report_date_start or flt.report_date_end)


def _excluded(flt: AnalyticsFilter, name: str) -> Any:
    return getattr(flt.exclude, name) if flt.exclude is not None else None


def _has_territorial_filters(flt: AnalyticsFilter) -> bool:
    return bool(
        flt.has_territorial_scope()
        or _excluded(flt, "uat_ids")
        or _excluded(flt, "county_codes")
        or _excluded(flt, "regions")
    )


def _needs_entities(flt: AnalyticsFilter, dimension: GroupingDimension) -> bool:
    if dimension is GroupingDimension.ENTITY:
        return True
    if flt.entity_types or flt.is_uat is not None or flt.search:
        return True
    if _excluded(flt, "entity_types"):
        return True
    # Categories reach the UAT table through the reporting entity
    return not dimension.is_territorial and _has_territorial_filters(flt)


def _build_joins(flt: AnalyticsFilter, dimension: GroupingDimension) -> list[Join]:
    joins: list[Join] = []
    if _needs_reports(flt):
        joins.append(Join("reports", "JOIN Reports r ON r.report_id = eli.report_id"))
    if _needs_entities(flt, dimension):
        joins.append(Join("entities", "JOIN Entities e ON e.cui = eli.entity_cui"))

    if dimension.is_territorial:
        joins.append(Join("uats", "JOIN UATs u ON u.uat_code = eli.entity_cui"))
    elif dimension is GroupingDimension.ENTITY or _has_territorial_filters(flt):
        joins.append(Join("uats", "LEFT JOIN UATs u ON u.id = e.uat_id"))

    if dimension is GroupingDimension.COUNTY:
        # Outer join: county rows first, line item totals attached per county
        joins.append(Join("county_info",
                          "LEFT JOIN county_totals ct ON ct.county_code = ci.county_code"))
    elif not dimension.is_territorial and dimension is not GroupingDimension.ENTITY:
        joins.append(Join("scope_population", "CROSS JOIN scope_population sp"))
    return joins


# ── CTEs ──────────────────────────────────────────────────────────────────────

def _representative_case(value_col: str, otherwise: str) -> Fragment:
    """CASE expression selecting *value_col* of the county-representative unit."""
    return Fragment(
        f"CASE WHEN county_code = ? AND siruta_code = ? THEN {value_col} "
        f"WHEN siruta_code = county_code THEN {value_col} "
        f"ELSE {otherwise} END",
        (BUCHAREST_COUNTY_CODE, BUCHAREST_SIRUTA_CODE),
    )


def _county_info_cte() -> Fragment:
    population = _representative_case("population", "0")
    cui = _representative_case("uat_code", "NULL")
    return Fragment(
        "county_info AS ("
        f"SELECT county_code, MAX(county_name) AS county_name, MAX(region) AS region, "
        f"MAX({population.sql}) AS county_population, "
        f"MAX({cui.sql}) AS county_entity_cui "
        "FROM UATs WHERE county_code IS NOT NULL GROUP BY county_code)",
        population.params + cui.params,
    )


def _county_totals_cte(joins: list[Join], where: list[Fragment], dialect: Dialect,
                       amount_col: str, euro: bool) -> Fragment:
    """Line item totals per county (and per year for euro plans)."""
    total, _ = amount_expressions(amount_col, "0", dialect)
    year_select = ", eli.year AS year" if euro else ""
    year_group = ", eli.year" if euro else ""
    line_joins = "".join(f" {j.sql}" for j in joins if j.name != "county_info")
    preds = join_fragments(where, " AND ")
    return Fragment(
        f"county_totals AS (SELECT u.county_code AS county_code{year_select}, "
        f"{total} AS total_amount FROM ExecutionLineItems eli{line_joins} "
        f"WHERE {preds.sql} GROUP BY u.county_code{year_group})",
        preds.params,
    )


def _scope_population_ctes(flt: AnalyticsFilter, dialect: Dialect) -> list[Fragment]:
    """Population of the territorial scope a category aggregate covers.

    Without territorial selection this is the country population (sum of
    county-representative populations).  Otherwise it is the representative
    population of the selected counties/regions plus the population of
    selected UATs that fall outside those counties.
    """
    population = _representative_case("population", "0")
    county_pop = Fragment(
        "county_pop AS ("
        f"SELECT county_code, MAX(region) AS region, MAX({population.sql}) AS population "
        "FROM UATs GROUP BY county_code)",
        population.params,
    )

    uat_codes = flt.entity_cuis
    if not (flt.county_codes or flt.regions or flt.uat_ids or uat_codes):
        scope = Fragment(
            "scope_population AS ("
            "SELECT COALESCE(SUM(population), 0) AS population FROM county_pop)"
        )
        return [county_pop, scope]

    parts: list[Fragment] = []
    county_preds: list[Fragment] = []
    if flt.county_codes:
        county_preds.append(in_clause("county_code", flt.county_codes, dialect))
    if flt.regions:
        county_preds.append(in_clause("region", flt.regions, dialect))
    if county_preds:
        where = join_fragments(county_preds, " AND ")
        parts.append(Fragment(
            f"COALESCE((SELECT SUM(population) FROM county_pop WHERE {where.sql}), 0)",
            where.params,
        ))

    if flt.uat_ids or uat_codes:
        selectors: list[Fragment] = []
        if flt.uat_ids:
            selectors.append(in_clause("id", flt.uat_ids, dialect))
        if uat_codes:
            selectors.append(in_clause("uat_code", uat_codes, dialect))
        chosen = join_fragments(selectors, " OR ")
        preds = [Fragment(f"({chosen.sql})", chosen.params)]
        # UATs inside an already-counted county are not added twice
        if flt.county_codes:
            preds.append(in_clause("county_code", flt.county_codes, dialect, negate=True))
        if flt.regions:
            preds.append(null_safe_not(
                "region", in_clause("region", flt.regions, dialect, negate=True)))
        where = join_fragments(preds, " AND ")
        parts.append(Fragment(
            f"COALESCE((SELECT SUM(COALESCE(population, 0)) FROM UATs WHERE {where.sql}), 0)",
            where.params,
        ))

    total = join_fragments(parts, " + ")
    scope = Fragment(f"scope_population AS (SELECT {total.sql} AS population)", total.params)
    return [county_pop, scope]


# ── Row-level predicates ──────────────────────────────────────────────────────

def _population_column(dimension: GroupingDimension) -> str:
    """Population a min/max_population bound is checked against.

    A unit with unknown population counts as 0, except for the entity
    dimension, where entities of such units are left out.
    """
    if dimension is GroupingDimension.COUNTY:
        return "COALESCE(ci.county_population, 0)"
    if dimension is GroupingDimension.ENTITY:
        return "u.population"
    return "COALESCE(u.population, 0)"


def _compare_amount(expr: str, op: str, value: Any, dialect: Dialect) -> Fragment:
    """``expr <op> value`` for an amount; SQLite compares decimal strings exactly."""
    if dialect is Dialect.POSTGRES:
        return Fragment(f"{expr} {op} ?", (value,))
    return Fragment(f"decimal_cmp({expr}, ?) {op} 0", (value,))


def _where_predicates(flt: AnalyticsFilter, dimension: GroupingDimension,
                      dialect: Dialect, amount_col: str) -> list[Fragment]:
    preds: list[Fragment] = [
        Fragment("eli.account_category = ?", (flt.account_category.value,)),
    ]
    preds.extend(_period_predicates(flt, dialect))

    # Line item dimensions
    if flt.report_ids:
        preds.append(in_clause("eli.report_id", flt.report_ids, dialect))
    if flt.report_type:
        preds.append(Fragment("r.report_type = ?", (flt.report_type,)))
    if flt.report_date_start:
        preds.append(Fragment("r.report_date >= ?", (flt.report_date_start,)))
    if flt.report_date_end:
        preds.append(Fragment("r.report_date <= ?", (flt.report_date_end,)))
    if flt.main_creditor_cui:
        preds.append(Fragment("eli.main_creditor_cui = ?", (flt.main_creditor_cui,)))
    if flt.entity_cuis:
        preds.append(in_clause("eli.entity_cui", flt.entity_cuis, dialect))
    if flt.functional_codes:
        preds.append(in_clause("eli.functional_code", flt.functional_codes, dialect))
    if flt.functional_prefixes:
        preds.append(like_any_clause("eli.functional_code", flt.functional_prefixes, dialect))
    if flt.economic_codes:
        preds.append(in_clause("eli.economic_code", flt.economic_codes, dialect))
    if flt.economic_prefixes:
        preds.append(like_any_clause("eli.economic_code", flt.economic_prefixes, dialect))
    if flt.funding_source_ids:
        preds.append(in_clause("eli.funding_source_id", flt.funding_source_ids, dialect))
    if flt.budget_sector_ids:
        preds.append(in_clause("eli.budget_sector_id", flt.budget_sector_ids, dialect))
    if flt.expense_types:
        preds.append(in_clause("eli.expense_type", flt.expense_types, dialect))
    if flt.program_codes:
        preds.append(in_clause("eli.program_code", flt.program_codes, dialect))

    # Entity attributes
    if flt.entity_types:
        preds.append(in_clause("e.entity_type", flt.entity_types, dialect))
    if flt.is_uat is not None:
        preds.append(Fragment("e.is_uat = ?", (flt.is_uat,)))
    if flt.search:
        pattern = f"%{escape_like(flt.search)}%"
        if dialect is Dialect.POSTGRES:
            preds.append(Fragment("e.name ILIKE ?", (pattern,)))
        else:
            preds.append(Fragment("e.name LIKE ? ESCAPE '\\'", (pattern,)))

    # Territorial scope
    if flt.uat_ids:
        preds.append(in_clause("u.id", flt.uat_ids, dialect))
    if flt.county_codes:
        preds.append(in_clause("u.county_code", flt.county_codes, dialect))
    if flt.regions:
        preds.append(in_clause("u.region", flt.regions, dialect))
    # County population bounds apply to the county row, after aggregation
    if dimension is not GroupingDimension.COUNTY:
        preds.extend(_population_predicates(flt, dimension))

    # Per line item amount bounds
    if flt.item_min_amount is not None:
        preds.append(_compare_amount(f"eli.{amount_col}", ">=", flt.item_min_amount, dialect))
    if flt.item_max_amount is not None:
        preds.append(_compare_amount(f"eli.{amount_col}", "<=", flt.item_max_amount, dialect))

    preds.extend(_exclusion_predicates(flt, dialect))
    return preds


def _population_predicates(flt: AnalyticsFilter,
                           dimension: GroupingDimension) -> list[Fragment]:
    pop_col = _population_column(dimension)
    preds: list[Fragment] = []
    if flt.min_population is not None:
        preds.append(Fragment(f"{pop_col} >= ?", (flt.min_population,)))
    if flt.max_population is not None:
        preds.append(Fragment(f"{pop_col} <= ?", (flt.max_population,)))
    return preds


def _county_predicates(flt: AnalyticsFilter, dialect: Dialect) -> list[Fragment]:
    """Predicates on the county rows themselves.

    Every county in scope is listed, with 0 when no line item matches, so
    the territorial selection has to be applied to ``county_info`` too.
    """
    preds: list[Fragment] = []
    if flt.county_codes:
        preds.append(in_clause("ci.county_code", flt.county_codes, dialect))
    if flt.regions:
        preds.append(in_clause("ci.region", flt.regions, dialect))
    if flt.uat_ids:
        ids = in_clause("id", flt.uat_ids, dialect)
        preds.append(Fragment(
            f"ci.county_code IN (SELECT county_code FROM UATs WHERE {ids.sql})", ids.params))
    excluded_counties = _excluded(flt, "county_codes")
    if excluded_counties:
        preds.append(in_clause("ci.county_code", excluded_counties, dialect, negate=True))
    excluded_regions = _excluded(flt, "regions")
    if excluded_regions:
        preds.append(null_safe_not(
            "ci.region", in_clause("ci.region", excluded_regions, dialect, negate=True)))
    preds.extend(_population_predicates(flt, GroupingDimension.COUNTY))
    return preds


# (filter field, column, nullable)
_EXCLUSIONS = (
    ("report_ids", "eli.report_id", False),
    ("entity_cuis", "eli.entity_cui", False),
    ("functional_codes", "eli.functional_code", False),
    ("funding_source_ids", "eli.funding_source_id", False),
    ("budget_sector_ids", "eli.budget_sector_id", False),
    ("expense_types", "eli.expense_type", True),
    ("program_codes", "eli.program_code", True),
    ("entity_types", "e.entity_type", True),
    ("uat_ids", "u.id", True),
    ("county_codes", "u.county_code", True),
    ("regions", "u.region", True),
)


def _exclusion_predicates(flt: AnalyticsFilter, dialect: Dialect) -> list[Fragment]:
    exclude = flt.exclude
    if exclude is None:
        return []
    preds: list[Fragment] = []
    for name, column, nullable in _EXCLUSIONS:
        values = getattr(exclude, name)
        if not values:
            continue
        pred = in_clause(column, values, dialect, negate=True)
        preds.append(null_safe_not(column, pred) if nullable else pred)
    if exclude.functional_prefixes:
        preds.append(like_any_clause(
            "eli.functional_code", exclude.functional_prefixes, dialect, negate=True))

    # Economic classification only exists on the expense side
    if flt.account_category is AccountCategory.EXPENSE:
        if exclude.economic_codes:
            preds.append(null_safe_not("eli.economic_code", in_clause(
                "eli.economic_code", exclude.economic_codes, dialect, negate=True)))
        if exclude.economic_prefixes:
            preds.append(null_safe_not("eli.economic_code", like_any_clause(
                "eli.economic_code", exclude.economic_prefixes, dialect, negate=True)))
    return preds


# ── Projection ────────────────────────────────────────────────────────────────

def _shape(dimension: GroupingDimension) -> _Shape:
    if dimension is GroupingDimension.UAT:
        cols = ["u.id", "u.uat_code", "u.name", "u.siruta_code", "u.county_code",
                "u.county_name", "u.region", "u.population"]
        return _Shape(
            select=["u.id AS uat_id", "u.uat_code AS code", "u.name AS name",
                    "u.siruta_code AS siruta_code", "u.county_code AS county_code",
                    "u.county_name AS county_name", "u.region AS region"],
            group_by=cols,
            population="COALESCE(u.population, 0)",
            keys=("uat_id",),
        )
    if dimension is GroupingDimension.COUNTY:
        return _Shape(
            select=["ci.county_code AS code", "ci.county_name AS name",
                    "ci.county_entity_cui AS county_entity_cui"],
            group_by=["ci.county_code", "ci.county_name", "ci.county_population",
                      "ci.county_entity_cui"],
            population="COALESCE(ci.county_population, 0)",
            keys=("code",),
        )
    if dimension is GroupingDimension.ENTITY:
        return _Shape(
            select=["e.cui AS code", "e.name AS name", "e.entity_type AS entity_type",
                    "e.is_uat AS is_uat", "e.uat_id AS uat_id",
                    "u.county_code AS county_code", "u.county_name AS county_name"],
            group_by=["e.cui", "e.name", "e.entity_type", "e.is_uat", "e.uat_id",
                      "u.county_code", "u.county_name", "u.population"],
            population="COALESCE(u.population, 0)",
            keys=("code",),
        )
    if dimension is GroupingDimension.FUNCTIONAL:
        return _Shape(
            select=["eli.functional_code AS code"],
            group_by=["eli.functional_code", "sp.population"],
            population="COALESCE(sp.population, 0)",
            keys=("code",),
        )
    if dimension is GroupingDimension.ECONOMIC:
        code = f"COALESCE(eli.economic_code, '{UNKNOWN_ECONOMIC_CODE}')"
        return _Shape(
            select=[f"{code} AS code"],
            group_by=[code, "sp.population"],
            population="COALESCE(sp.population, 0)",
            keys=("code",),
        )
    raise CompilationError(f"No projection for dimension {dimension!r}")


def amount_expressions(amount_col: str, population: str,
                       dialect: Dialect, table: str = "eli") -> tuple[str, str]:
    """Return ``(total_expr, per_capita_expr)`` for a grouped query.

    The per-capita expression yields 0 when the population is 0 or NULL.
    PostgreSQL sums NUMERIC columns exactly; SQLite amounts are decimal
    strings handled by the ``decimal_*`` functions of
    :func:`utils.database.connect`.
    """
    column = f"{table}.{amount_col}"
    if dialect is Dialect.POSTGRES:
        total = f"COALESCE(SUM({column}), 0)"
        per_capita = f"COALESCE({total} / NULLIF({population}, 0), 0)"
    else:
        total = f"decimal_sum({column})"
        per_capita = f"decimal_div({total}, {population})"
    return total, per_capita


_AMOUNT_SORTS = frozenset({"amount", "total_amount", "per_capita_amount"})


def _order_fields(dimension: GroupingDimension, dialect: Dialect) -> dict[str, str]:
    fields = {name: name for name in SORT_FIELDS[dimension]}
    if dialect is Dialect.SQLITE:
        for name in _AMOUNT_SORTS & fields.keys():
            fields[name] = f"{name} COLLATE DECIMAL"
    return fields


# ── Entry point ───────────────────────────────────────────────────────────────

def compile_query(
    flt: AnalyticsFilter,
    dimension: GroupingDimension,
    dialect: Dialect | str = Dialect.POSTGRES,
    sort: tuple[SortOption, ...] = DEFAULT_SORT,
    limit: int = DEFAULT_LIMIT,
    offset: int = 0,
) -> QueryPlan:
    """Compile *flt* into an aggregate query grouped by *dimension*.

    Args:
        flt: A validated filter (see :func:`analytics.filters.parse_filter`).
        dimension: Grouping dimension.
        dialect: ``"postgres"`` or ``"sqlite"``.
        sort: Validated sort options, in priority order.
        limit: Page size.
        offset: Page offset.

    Returns:
        A :class:`QueryPlan`.

    Raises:
        CompilationError: If the plan violates an internal invariant.
    """
    dialect = Dialect(dialect)
    amount_col = AMOUNT_COLUMNS[flt.period.type]
    euro = flt.normalization.is_euro
    county = dimension is GroupingDimension.COUNTY
    shape = _shape(dimension)
    joins = _build_joins(flt, dimension)
    where = _where_predicates(flt, dimension, dialect, amount_col)
    outer = _county_predicates(flt, dialect) if county else []
    _check_joins(joins, where + outer, dimension)

    ctes: list[Fragment] = []
    if county:
        ctes.append(_county_info_cte())
        ctes.append(_county_totals_cte(joins, where, dialect, amount_col, euro))
        total_expr, per_capita_expr = amount_expressions(
            "total_amount", shape.population, dialect, table="ct")
        source = f"FROM county_info ci {joins[-1].sql}"
        filters = outer
        year_col = "ct.year"
    else:
        if "scope_population" in [j.name for j in joins]:
            ctes.extend(_scope_population_ctes(flt, dialect))
        total_expr, per_capita_expr = amount_expressions(amount_col, shape.population, dialect)
        source = "FROM ExecutionLineItems eli" + "".join(f" {j.sql}" for j in joins)
        filters = where
        year_col = "eli.year"
    amount_expr = per_capita_expr if flt.normalization.is_per_capita else total_expr

    select = list(shape.select)
    group_by = list(shape.group_by)
    having: list[Fragment] = []
    if euro:
        select.append(f"{year_col} AS year")
        group_by.append(year_col)
    else:
        if flt.aggregate_min_amount is not None:
            having.append(_compare_amount(amount_expr, ">=", flt.aggregate_min_amount, dialect))
        if flt.aggregate_max_amount is not None:
            having.append(_compare_amount(amount_expr, "<=", flt.aggregate_max_amount, dialect))
    select += [
        f"{shape.population} AS population",
        f"{total_expr} AS total_amount",
        f"{per_capita_expr} AS per_capita_amount",
        f"{amount_expr} AS amount",
    ]

    with_clause = Fragment("")
    if ctes:
        joined = join_fragments(ctes, ", ")
        with_clause = Fragment(f"WITH {joined.sql} ", joined.params)

    core_sql = f"SELECT {', '.join(select)} {source} "
    core_params: tuple[Any, ...] = ()
    if filters:
        filter_frag = join_fragments(filters, " AND ")
        core_sql += f"WHERE {filter_frag.sql} "
        core_params = filter_frag.params
    core_sql += f"GROUP BY {', '.join(group_by)}"
    if having:
        having_frag = join_fragments(having, " AND ")
        core_sql += f" HAVING {having_frag.sql}"
        core_params += having_frag.params

    if euro:
        rows = Fragment(with_clause.sql + core_sql, with_clause.params + core_params)
        count = None
    else:
        order_by = build_order_clause(
            [(s.by, s.order.value) for s in sort], _order_fields(dimension, dialect))
        if not any(s.by == "code" for s in sort):
            order_by += ", code ASC"
        rows = Fragment(
            f"{with_clause.sql}{core_sql} {order_by} LIMIT ? OFFSET ?",
            with_clause.params + core_params + (limit, offset),
        )
        count = Fragment(
            f"{with_clause.sql}SELECT COUNT(*) AS total_count FROM ({core_sql}) t",
            with_clause.params + core_params,
        )

    sql, params = render(rows, dialect)
    count_sql, count_params = render(count, dialect) if count is not None else (None, [])
    logger.debug("compiled %s plan joins=%s predicates=%d",
                 dimension.value, [j.name for j in joins], len(where))

    return QueryPlan(
        dimension=dimension,
        dialect=dialect,
        amount_column=amount_col,
        joins=joins,
        where=where + outer,
        group_by=group_by,
        having=having,
        sql=sql,
        params=params,
        count_sql=count_sql,
        count_params=count_params,
        app_pass=euro,
        sort=sort,
        limit=limit,
        offset=offset,
        group_keys=shape.keys,
    )


_ALIAS_TABLES = {
    re.compile(r"\br\."): "reports",
    re.compile(r"\be\."): "entities",
    re.compile(r"\bu\."): "uats",
    re.compile(r"\bci\."): "county_info",
}


def _check_joins(joins: list[Join], where: list[Fragment],
                 dimension: GroupingDimension) -> None:
    """Every table alias a predicate references must be joined."""
    names = {j.name for j in joins}
    for pred in where:
        for alias, table in _ALIAS_TABLES.items():
            if alias.search(pred.sql) and table not in names:
                raise CompilationError(
                    f"{dimension.value} plan references {table} without joining it"
                )

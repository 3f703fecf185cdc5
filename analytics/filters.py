"""Analytics filter model.

A filter is a sparse set of optional predicates plus two mandatory fields:
the account category and the reporting period.  It is validated once, up
front, by :func:`parse_filter`; everything downstream (cache key builder,
query compiler, orchestrator) can rely on a well-formed value.

Period selection accepts either the ``years`` shorthand or a structured
``report_period``::

    {"account_category": "ch", "years": [2023]}
    {"account_category": "ch",
     "report_period": {"type": "QUARTER",
                       "selection": {"interval": {"start": "2023-Q1",
                                                  "end": "2024-Q2"}}}}

Two kinds of amount bounds exist and must not be conflated:
``item_min_amount``/``item_max_amount`` filter individual line items before
aggregation; ``aggregate_min_amount``/``aggregate_max_amount`` filter the
aggregated (and normalized) amount after grouping.
"""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from analytics.errors import ValidationError


# ── Enumerations ──────────────────────────────────────────────────────────────

class AccountCategory(str, Enum):
    INCOME = "vn"
    EXPENSE = "ch"


class Normalization(str, Enum):
    TOTAL = "total"
    PER_CAPITA = "per_capita"
    TOTAL_EURO = "total_euro"
    PER_CAPITA_EURO = "per_capita_euro"

    @property
    def is_euro(self) -> bool:
        return self in (Normalization.TOTAL_EURO, Normalization.PER_CAPITA_EURO)

    @property
    def is_per_capita(self) -> bool:
        return self in (Normalization.PER_CAPITA, Normalization.PER_CAPITA_EURO)


class PeriodType(str, Enum):
    YEAR = "YEAR"
    QUARTER = "QUARTER"
    MONTH = "MONTH"


class GroupingDimension(str, Enum):
    UAT = "uat"
    COUNTY = "county"
    ENTITY = "entity"
    FUNCTIONAL = "functional"
    ECONOMIC = "economic"

    @property
    def is_territorial(self) -> bool:
        return self in (GroupingDimension.UAT, GroupingDimension.COUNTY)


class SortOrder(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


# Sortable output fields per grouping dimension
SORT_FIELDS: dict[GroupingDimension, frozenset[str]] = {
    GroupingDimension.UAT: frozenset({
        "amount", "total_amount", "per_capita_amount", "name", "code",
        "population", "county_code", "county_name",
    }),
    GroupingDimension.COUNTY: frozenset({
        "amount", "total_amount", "per_capita_amount", "name", "code",
        "population",
    }),
    GroupingDimension.ENTITY: frozenset({
        "amount", "total_amount", "per_capita_amount", "name", "code",
        "entity_type", "population", "county_code", "county_name",
    }),
    GroupingDimension.FUNCTIONAL: frozenset({
        "amount", "total_amount", "per_capita_amount", "code",
    }),
    GroupingDimension.ECONOMIC: frozenset({
        "amount", "total_amount", "per_capita_amount", "code",
    }),
}

DEFAULT_LIMIT = 50
MAX_LIMIT = 100_000

_DATE_PATTERNS: dict[PeriodType, re.Pattern[str]] = {
    PeriodType.YEAR: re.compile(r"^(\d{4})$"),
    PeriodType.QUARTER: re.compile(r"^(\d{4})-Q([1-4])$"),
    PeriodType.MONTH: re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$"),
}


def parse_period_date(value: str, period_type: PeriodType) -> tuple[int, int | None]:
    """Split a period date string into ``(year, sub_period)``.

    ``sub_period`` is the quarter (1-4) or month (1-12), or ``None`` for
    yearly periods.

    Raises:
        ValueError: If *value* does not match the format for *period_type*.
    """
    match = _DATE_PATTERNS[period_type].match(value)
    if match is None:
        raise ValueError(
            f"Invalid {period_type.value} period date '{value}'"
        )
    year = int(match.group(1))
    sub = int(match.group(2)) if period_type is not PeriodType.YEAR else None
    return year, sub


# ── Period selection ──────────────────────────────────────────────────────────

class PeriodInterval(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    start: str
    end: str


class PeriodSelection(BaseModel):
    """Either an explicit list of dates or a closed interval."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    dates: list[str] | None = None
    interval: PeriodInterval | None = None

    @model_validator(mode="after")
    def _one_of(self) -> "PeriodSelection":
        if self.dates is None and self.interval is None:
            raise ValueError("period selection requires dates or interval")
        if self.dates is not None and self.interval is not None:
            raise ValueError("period selection accepts dates or interval, not both")
        if self.dates is not None and not self.dates:
            raise ValueError("period dates must not be empty")
        return self


class ReportPeriod(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: PeriodType
    selection: PeriodSelection

    @model_validator(mode="after")
    def _check_formats(self) -> "ReportPeriod":
        if self.selection.dates is not None:
            for value in self.selection.dates:
                parse_period_date(value, self.type)
        else:
            start = parse_period_date(self.selection.interval.start, self.type)
            end = parse_period_date(self.selection.interval.end, self.type)
            if start > end:
                raise ValueError("period interval start is after end")
        return self

    def parsed_dates(self) -> list[tuple[int, int | None]]:
        return [parse_period_date(d, self.type) for d in self.selection.dates or []]

    def parsed_interval(self) -> tuple[tuple[int, int | None], tuple[int, int | None]] | None:
        interval = self.selection.interval
        if interval is None:
            return None
        return (
            parse_period_date(interval.start, self.type),
            parse_period_date(interval.end, self.type),
        )


# ── Filters ───────────────────────────────────────────────────────────────────

_OPTIONAL_LIST_FIELDS = (
    "report_ids", "entity_cuis", "functional_codes", "functional_prefixes",
    "economic_codes", "economic_prefixes", "funding_source_ids",
    "budget_sector_ids", "expense_types", "program_codes", "entity_types",
    "uat_ids", "county_codes", "regions",
)


class ExcludeFilter(BaseModel):
    """Collections whose matching rows are removed before aggregation."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    report_ids: list[str] | None = None
    entity_cuis: list[str] | None = None
    functional_codes: list[str] | None = None
    functional_prefixes: list[str] | None = None
    economic_codes: list[str] | None = None
    economic_prefixes: list[str] | None = None
    funding_source_ids: list[int] | None = None
    budget_sector_ids: list[int] | None = None
    expense_types: list[str] | None = None
    program_codes: list[str] | None = None
    entity_types: list[str] | None = None
    uat_ids: list[int] | None = None
    county_codes: list[str] | None = None
    regions: list[str] | None = None

    @field_validator(*_OPTIONAL_LIST_FIELDS)
    @classmethod
    def _empty_to_none(cls, value: list | None) -> list | None:
        return value or None

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in _OPTIONAL_LIST_FIELDS)


class AnalyticsFilter(BaseModel):
    """Validated analytics filter.

    ``account_category`` and one of ``years`` / ``report_period`` are
    required.  Optional collections that arrive empty are treated as absent.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    account_category: AccountCategory
    years: list[int] | None = None
    report_period: ReportPeriod | None = None
    normalization: Normalization = Normalization.TOTAL

    # Line item dimensions
    report_ids: list[str] | None = None
    report_type: str | None = None
    report_date_start: date | None = None
    report_date_end: date | None = None
    main_creditor_cui: str | None = None
    entity_cuis: list[str] | None = None
    functional_codes: list[str] | None = None
    functional_prefixes: list[str] | None = None
    economic_codes: list[str] | None = None
    economic_prefixes: list[str] | None = None
    funding_source_ids: list[int] | None = None
    budget_sector_ids: list[int] | None = None
    expense_types: list[str] | None = None
    program_codes: list[str] | None = None

    # Entity attributes
    entity_types: list[str] | None = None
    is_uat: bool | None = None
    search: str | None = None

    # Territorial scope
    uat_ids: list[int] | None = None
    county_codes: list[str] | None = None
    regions: list[str] | None = None
    min_population: int | None = Field(None, ge=0)
    max_population: int | None = Field(None, ge=0)

    # Amount bounds: per line item (WHERE) and per aggregate (HAVING)
    item_min_amount: Decimal | None = None
    item_max_amount: Decimal | None = None
    aggregate_min_amount: Decimal | None = None
    aggregate_max_amount: Decimal | None = None

    exclude: ExcludeFilter | None = None

    @field_validator(*_OPTIONAL_LIST_FIELDS)
    @classmethod
    def _empty_to_none(cls, value: list | None) -> list | None:
        return value or None

    @field_validator("years")
    @classmethod
    def _years_not_empty(cls, value: list[int] | None) -> list[int] | None:
        if value is not None:
            if not value:
                raise ValueError("years must not be empty")
            for year in value:
                if not 1900 <= year <= 2999:
                    raise ValueError(f"Invalid year: {year}")
        return value

    @field_validator("search", "report_type", "main_creditor_cui")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("exclude")
    @classmethod
    def _drop_empty_exclude(cls, value: ExcludeFilter | None) -> ExcludeFilter | None:
        if value is not None and value.is_empty():
            return None
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> "AnalyticsFilter":
        if self.years is None and self.report_period is None:
            raise ValueError("one of years or report_period is required")
        if self.years is not None and self.report_period is not None:
            raise ValueError("years and report_period are mutually exclusive")
        for low, high in (
            ("item_min_amount", "item_max_amount"),
            ("aggregate_min_amount", "aggregate_max_amount"),
            ("min_population", "max_population"),
            ("report_date_start", "report_date_end"),
        ):
            lo, hi = getattr(self, low), getattr(self, high)
            if lo is not None and hi is not None and lo > hi:
                raise ValueError(f"{low} must not exceed {high}")
        return self

    @property
    def period(self) -> ReportPeriod:
        """The reporting period, with the ``years`` shorthand expanded."""
        if self.report_period is not None:
            return self.report_period
        return ReportPeriod(
            type=PeriodType.YEAR,
            selection=PeriodSelection(dates=[str(y) for y in self.years]),
        )

    def canonical(self) -> "AnalyticsFilter":
        """Equivalent filter with ``years`` folded into ``report_period``.

        ``years=[2023]`` and a YEAR period over ``["2023"]`` select the same
        rows; cache keys are built from this form so they collide.
        """
        if self.years is None:
            return self
        return self.model_copy(update={"years": None, "report_period": self.period})

    def has_population_bounds(self) -> bool:
        return self.min_population is not None or self.max_population is not None

    def has_territorial_scope(self) -> bool:
        return bool(self.uat_ids or self.county_codes or self.regions
                    or self.has_population_bounds())


class SortOption(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    by: str
    order: SortOrder = SortOrder.DESC

    @field_validator("order", mode="before")
    @classmethod
    def _order_any_case(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


DEFAULT_SORT = (SortOption(by="amount", order=SortOrder.DESC),)


# ── Validation entry points ───────────────────────────────────────────────────

def _describe(exc: PydanticValidationError) -> tuple[str, str | None]:
    """Flatten the first pydantic error into a message and a field path."""
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    msg = err.get("msg", "invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    return (f"{loc}: {msg}" if loc else msg), (loc or None)


def parse_filter(data: AnalyticsFilter | dict[str, Any]) -> AnalyticsFilter:
    """Validate raw filter input.

    Args:
        data: A mapping of filter fields, or an already-built filter.

    Returns:
        The validated :class:`AnalyticsFilter`.

    Raises:
        ValidationError: On missing required fields, empty required
            collections, malformed period dates or unknown fields.
    """
    if isinstance(data, AnalyticsFilter):
        return data
    if not isinstance(data, dict):
        raise ValidationError("filter must be an object")
    try:
        return AnalyticsFilter.model_validate(data)
    except PydanticValidationError as exc:
        message, field = _describe(exc)
        raise ValidationError(message, field=field) from exc


def parse_dimension(value: GroupingDimension | str) -> GroupingDimension:
    try:
        return GroupingDimension(value)
    except ValueError:
        allowed = sorted(d.value for d in GroupingDimension)
        raise ValidationError(
            f"dimension must be one of: {allowed}", field="dimension"
        ) from None


def parse_sort(
    sort: list[SortOption | dict[str, Any]] | None,
    dimension: GroupingDimension,
) -> tuple[SortOption, ...]:
    """Validate sort options against the fields *dimension* exposes."""
    if not sort:
        return DEFAULT_SORT
    allowed = SORT_FIELDS[dimension]
    options: list[SortOption] = []
    for item in sort:
        try:
            option = item if isinstance(item, SortOption) else SortOption.model_validate(item)
        except PydanticValidationError as exc:
            message, _ = _describe(exc)
            raise ValidationError(f"sort: {message}", field="sort") from exc
        if option.by not in allowed:
            raise ValidationError(
                f"Cannot sort {dimension.value} by '{option.by}'. "
                f"Must be one of: {', '.join(sorted(allowed))}",
                field="sort",
            )
        options.append(option)
    return tuple(options)


def parse_pagination(limit: int | None, offset: int | None) -> tuple[int, int]:
    limit = DEFAULT_LIMIT if limit is None else limit
    offset = 0 if offset is None else offset
    if not 1 <= limit <= MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}", field="limit")
    if offset < 0:
        raise ValidationError("offset must not be negative", field="offset")
    return limit, offset

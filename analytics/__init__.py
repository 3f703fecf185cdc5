"""Budget execution analytics core.

Filter model, cache keys, query compiler, normalization and the
aggregation service built from them.
"""

from analytics.errors import (
    AnalyticsError,
    ValidationError,
    CompilationError,
    StorageError,
)
from analytics.filters import (
    AccountCategory,
    AnalyticsFilter,
    GroupingDimension,
    Normalization,
    PeriodType,
    SortOption,
    parse_filter,
)
from analytics.cache_key import build_cache_key
from analytics.compiler import QueryPlan, compile_query
from analytics.exchange_rates import ExchangeRateTable
from analytics.service import AggregateResult, AggregationService

__all__ = [
    "AnalyticsError",
    "ValidationError",
    "CompilationError",
    "StorageError",
    "AccountCategory",
    "AnalyticsFilter",
    "GroupingDimension",
    "Normalization",
    "PeriodType",
    "SortOption",
    "parse_filter",
    "build_cache_key",
    "QueryPlan",
    "compile_query",
    "ExchangeRateTable",
    "AggregateResult",
    "AggregationService",
]

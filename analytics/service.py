"""Aggregation orchestrator.

``AggregationService.get_aggregates`` is the single entry point the
transport layer calls::

    service = AggregationService(SQLiteStorage(db_path), dialect="sqlite")
    result = service.get_aggregates(
        {"account_category": "ch", "years": [2023], "county_codes": ["CJ"],
         "normalization": "per_capita"},
        "uat",
    )
    result.rows[0]["per_capita_amount"], result.total_count

Flow: validate -> derive cache key -> on a hit return a copy of the cached
result; on a miss compile the plan, fetch rows and count concurrently,
normalize, cache and return.  Identical concurrent requests share one
computation.  Failures are raised as StorageError and never cached.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from analytics.cache_key import KEY_PREFIX, build_cache_key
from analytics.compiler import UNKNOWN_ECONOMIC_CODE, QueryPlan, compile_query
from analytics.errors import StorageError
from analytics.exchange_rates import ExchangeRateTable
from analytics.filters import (
    AnalyticsFilter,
    GroupingDimension,
    SortOption,
    parse_dimension,
    parse_filter,
    parse_pagination,
    parse_sort,
)
from analytics.normalization import (
    apply_aggregate_bounds,
    merge_yearly_rows,
    normalize_row,
    sort_rows,
)
from analytics.ports import ClassificationLookupPort, ExchangeRatePort, StoragePort
from utils.cache import ResultCache
from utils.query import Dialect

logger = logging.getLogger(__name__)

UNKNOWN_ECONOMIC_NAME = "Unknown economic classification"


@dataclass(frozen=True)
class AggregateResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    total_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"rows": self.rows, "total_count": self.total_count}

    def copy(self) -> "AggregateResult":
        """Copy with fresh row dicts; row values are immutable scalars."""
        return AggregateResult(rows=[dict(r) for r in self.rows], total_count=self.total_count)


class AggregationService:
    """Validates, compiles, executes, normalizes and caches aggregate queries.

    Args:
        storage: Executes compiled plans (see :class:`analytics.ports.StoragePort`).
        rates: Year -> RON/EUR rate lookup; BNR defaults when omitted.
        lookup: Resolves classification names for functional/economic rows.
        cache: Result cache; a default-sized one is created when omitted.
        dialect: SQL dialect the storage understands.
        query_timeout: Seconds to wait for the row and count queries.
        max_workers: Size of the thread pool used for storage calls.
    """

    def __init__(
        self,
        storage: StoragePort,
        rates: ExchangeRatePort | None = None,
        lookup: ClassificationLookupPort | None = None,
        cache: ResultCache | None = None,
        dialect: Dialect | str = Dialect.SQLITE,
        query_timeout: float = 30.0,
        max_workers: int = 8,
        key_prefix: str = KEY_PREFIX,
    ) -> None:
        self._storage = storage
        self._rates = rates if rates is not None else ExchangeRateTable()
        self._lookup = lookup
        self._cache = cache if cache is not None else ResultCache()
        self._dialect = Dialect(dialect)
        self._timeout = query_timeout
        self._key_prefix = key_prefix
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="aggregates")
        # Maps cache key -> Future of the computation currently running
        self._inflight: dict[str, Future] = {}
        self._inflight_lock = threading.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def close(self) -> None:
        """Shut down the worker pool (pending storage calls are cancelled)."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "AggregationService":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def cache(self) -> ResultCache:
        return self._cache

    def clear_cache(self, dimension: GroupingDimension | str | None = None) -> int:
        """Drop cached results, for one dimension or all of them."""
        if dimension is None:
            removed = self._cache.stats()["size"]
            self._cache.clear()
            return removed
        dim = parse_dimension(dimension)
        return self._cache.clear_prefix(f"{self._key_prefix}:{dim.value}:")

    # ── Public API ────────────────────────────────────────────────────────────

    def get_aggregates(
        self,
        filter: AnalyticsFilter | dict[str, Any],
        dimension: GroupingDimension | str,
        sort: list[SortOption | dict[str, Any]] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> AggregateResult:
        """Return one page of aggregated rows and the total group count.

        Raises:
            ValidationError: The filter, dimension, sort or pagination is
                invalid.  Nothing is compiled or executed.
            StorageError: The row or count query failed or timed out.
        """
        flt = parse_filter(filter)
        dim = parse_dimension(dimension)
        sort_opts = parse_sort(sort, dim)
        limit, offset = parse_pagination(limit, offset)

        key = build_cache_key(
            dim.value,
            {"filter": flt.canonical(), "sort": sort_opts, "limit": limit, "offset": offset},
            prefix=self._key_prefix,
        )
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("cache hit %s", key)
            return cached.copy()

        with self._inflight_lock:
            if self._cache.has(key):
                cached = self._cache.get(key)
                if cached is not None:
                    return cached.copy()
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if not owner:
            logger.debug("joining in-flight aggregation %s", key)
            return future.result().copy()

        try:
            result = self._compute(flt, dim, sort_opts, limit, offset)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            # The cached entry is never handed out; callers get copies
            self._cache.set(key, result)
            future.set_result(result)
            return result.copy()
        finally:
            with self._inflight_lock:
                self._inflight.pop(key, None)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _fetch(self, plan: QueryPlan) -> tuple[list[dict[str, Any]], int | None]:
        """Run the row and count queries concurrently; both must succeed."""
        rows_future = self._executor.submit(self._storage.execute, plan)
        futures = [rows_future]
        count_future = None
        if plan.count_sql is not None:
            count_future = self._executor.submit(self._storage.execute_count, plan)
            futures.append(count_future)

        done, pending = wait(futures, timeout=self._timeout, return_when=FIRST_EXCEPTION)
        for f in done:
            exc = f.exception()
            if exc is not None:
                for p in pending:
                    p.cancel()
                logger.warning("storage query failed for %s aggregation",
                               plan.dimension.value, exc_info=exc)
                raise StorageError() from exc
        if pending:
            for p in pending:
                p.cancel()
            logger.warning("storage query for %s aggregation timed out after %.1fs",
                           plan.dimension.value, self._timeout)
            raise StorageError("aggregation timed out")

        count = count_future.result() if count_future is not None else None
        return rows_future.result(), count

    def _compute(
        self,
        flt: AnalyticsFilter,
        dim: GroupingDimension,
        sort_opts: tuple[SortOption, ...],
        limit: int,
        offset: int,
    ) -> AggregateResult:
        start = time.monotonic()
        plan = compile_query(flt, dim, self._dialect, sort_opts, limit, offset)
        raw_rows, count = self._fetch(plan)

        if plan.app_pass:
            merged = merge_yearly_rows(raw_rows, plan.group_keys, self._rates,
                                       flt.normalization)
            merged = apply_aggregate_bounds(merged, flt.aggregate_min_amount,
                                            flt.aggregate_max_amount)
            total_count = len(merged)
            rows = sort_rows(merged, sort_opts)[offset:offset + limit]
        else:
            rows = [normalize_row(r, flt.normalization) for r in raw_rows]
            total_count = int(count or 0)

        if dim in (GroupingDimension.FUNCTIONAL, GroupingDimension.ECONOMIC):
            self._attach_names(rows, dim)

        logger.info(
            "aggregated dimension=%s normalization=%s rows=%d total=%d duration_ms=%.1f",
            dim.value, flt.normalization.value, len(rows), total_count,
            (time.monotonic() - start) * 1000,
        )
        return AggregateResult(rows=rows, total_count=total_count)

    def _attach_names(self, rows: list[dict[str, Any]], dim: GroupingDimension) -> None:
        names: dict[str, str | None] = {}
        for row in rows:
            code = row.get("code")
            if code not in names:
                names[code] = self._lookup_name(code, dim)
            row["name"] = names[code]

    def _lookup_name(self, code: str | None, dim: GroupingDimension) -> str | None:
        name = None
        if code is not None and self._lookup is not None:
            if dim is GroupingDimension.FUNCTIONAL:
                name = self._lookup.functional_name(code)
            else:
                name = self._lookup.economic_name(code)
        if name is None and dim is GroupingDimension.ECONOMIC and code == UNKNOWN_ECONOMIC_CODE:
            return UNKNOWN_ECONOMIC_NAME
        return name

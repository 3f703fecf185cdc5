"""
POST /api/v1/aggregations/{dimension} endpoint.

Groups budget execution line items by UAT, county, entity, functional code
or economic code, and returns total / per-capita / euro-normalized amounts.
All filtering, caching and SQL lives in the analytics core; this route
only maps HTTP to AggregationService.get_aggregates.

Errors (handled in api/app.py):
    400  invalid filter, dimension, sort or pagination
    503  storage failure or timeout ("aggregation failed", retryable)
"""

from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends

from analytics.service import AggregationService
from api.database import get_service
from api.models import (
    AggregationRequest,
    AggregationResponse,
    CacheStatsOut,
    ErrorResponse,
)

router = APIRouter(prefix="/aggregations", tags=["aggregations"])


def _json_row(row: dict[str, Any]) -> dict[str, Any]:
    # Amounts are Decimal in the core; JSON clients expect numbers
    return {k: float(v) if isinstance(v, Decimal) else v for k, v in row.items()}


@router.post(
    "/{dimension}",
    response_model=AggregationResponse,
    summary="Aggregate budget execution data",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid filter, sort or pagination"},
        503: {"model": ErrorResponse, "description": "Aggregation failed (retryable)"},
    },
)
def aggregate(
    dimension: str,
    body: AggregationRequest,
    service: AggregationService = Depends(get_service),
) -> AggregationResponse:
    """Aggregate amounts for *dimension* (uat, county, entity, functional, economic).

    Results are cached per equivalent filter; list order inside set-like
    filter fields does not matter, sort order does.
    """
    sort = None
    if body.sort:
        sort = [{"by": s.by, "order": s.order.upper()} for s in body.sort]
    result = service.get_aggregates(
        body.filter, dimension, sort=sort, limit=body.limit, offset=body.offset,
    )
    return AggregationResponse(
        dimension=dimension,
        total_count=result.total_count,
        rows=[_json_row(r) for r in result.rows],
    )


@router.get("/cache/stats", response_model=CacheStatsOut, summary="Result cache statistics")
def cache_stats(service: AggregationService = Depends(get_service)) -> CacheStatsOut:
    """Return hit/miss counters and current size of the aggregation cache."""
    return CacheStatsOut(**service.cache.stats())

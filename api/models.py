"""
Pydantic request/response models for the API.

Filters are passed through as plain objects and validated by the
analytics core, so that validation errors are reported the same way for
every caller (API, CLI, library).
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# ── Aggregation models ────────────────────────────────────────────────────────

class SortOptionIn(BaseModel):
    """One sort key; earlier entries take priority."""
    by: str = Field(..., description="Output field to sort by", examples=["amount"])
    order: str = Field("DESC", description="ASC or DESC", examples=["DESC"])


class AggregationRequest(BaseModel):
    """Body of an aggregation request."""
    filter: dict[str, Any] = Field(
        ...,
        description="Analytics filter. account_category and years/report_period are required.",
        examples=[{"account_category": "ch", "years": [2023], "county_codes": ["CJ"],
                   "normalization": "per_capita"}],
    )
    sort: list[SortOptionIn] | None = Field(None, description="Sort options in priority order")
    limit: int | None = Field(None, description="Page size (default 50)", examples=[50])
    offset: int | None = Field(None, description="Page offset (default 0)", examples=[0])


class AggregationResponse(BaseModel):
    """Aggregated rows for one grouping dimension."""
    dimension: str = Field(..., description="Grouping dimension", examples=["county"])
    total_count: int = Field(..., description="Number of groups across all pages", examples=[42])
    rows: list[dict[str, Any]] = Field(
        default_factory=list,
        description=(
            "One row per group with dimension fields plus population, "
            "total_amount, per_capita_amount and amount (the selected normalization)"
        ),
    )


class CacheStatsOut(BaseModel):
    """Result cache statistics."""
    hits: int
    misses: int
    size: int
    bytes: int
    evictions: int


# ── Error model ───────────────────────────────────────────────────────────────

class ErrorResponse(BaseModel):
    """Standard error response body."""
    error: str = Field(..., description="Short error category", examples=["Bad request"])
    detail: str | None = Field(None, description="Extended error detail")
    status_code: int = Field(..., ge=400, le=599, description="HTTP status code", examples=[400])

"""Interfaces the aggregation service depends on.

The service never talks to a database directly; it is given objects that
satisfy these protocols.  ``utils.database`` provides SQLite
implementations, and tests substitute in-memory fakes.
"""

from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from analytics.compiler import QueryPlan


class StoragePort(Protocol):
    """Read-only execution of compiled plans."""

    def execute(self, plan: "QueryPlan") -> list[dict[str, Any]]:
        """Run ``plan.sql`` and return the rows as dicts."""
        ...

    def execute_count(self, plan: "QueryPlan") -> int:
        """Run ``plan.count_sql`` and return the group count."""
        ...


class ClassificationLookupPort(Protocol):
    """Resolves classification codes to names."""

    def functional_name(self, code: str) -> str | None:
        ...

    def economic_name(self, code: str) -> str | None:
        ...


class ExchangeRatePort(Protocol):
    def rate_for(self, year: int) -> Decimal:
        ...

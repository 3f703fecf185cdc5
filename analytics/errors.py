"""Error taxonomy for the analytics core.

ValidationError    Missing/empty/malformed filter input. Raised before any
                   query is compiled; surfaced to the caller, never retried.
CompilationError   Internal invariant violated while building a query plan
                   (programming error, not user-facing).
StorageError       Downstream query failure or timeout. Retryable by the
                   caller; never cached.

A zero population is not an error: per-capita amounts resolve to 0.
"""


class AnalyticsError(Exception):
    """Base class for all analytics core errors."""


class ValidationError(AnalyticsError, ValueError):
    """Raised when a filter is missing required fields or is malformed."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class CompilationError(AnalyticsError, RuntimeError):
    """Raised when a query plan cannot be built for a valid filter."""


class StorageError(AnalyticsError):
    """Raised when the storage port fails or exceeds its deadline."""

    retryable = True

    def __init__(self, message: str = "aggregation failed") -> None:
        super().__init__(message)

"""RON to EUR exchange rates, indexed by year.

Defaults are the yearly average rates published by the National Bank of
Romania (BNR).  A JSON file can extend or override them::

    {"2024": "4.9746", "2025": "5.0500"}

A year with no rate converts at 1 (amounts stay in RON) and logs a warning
once per year.
"""

import json
import logging
import threading
from decimal import Decimal, InvalidOperation
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_RON_EUR_RATES: dict[int, Decimal] = {
    2016: Decimal("4.4908"),
    2017: Decimal("4.5681"),
    2018: Decimal("4.6535"),
    2019: Decimal("4.7452"),
    2020: Decimal("4.8371"),
    2021: Decimal("4.9204"),
    2022: Decimal("4.9315"),
    2023: Decimal("4.9465"),
    2024: Decimal("4.9746"),
}

FALLBACK_RATE = Decimal(1)


class ExchangeRateTable:
    """Year -> RON per EUR lookup."""

    def __init__(self, rates: dict[int, Decimal] | None = None,
                 include_defaults: bool = True) -> None:
        self._rates: dict[int, Decimal] = dict(DEFAULT_RON_EUR_RATES) if include_defaults else {}
        for year, rate in (rates or {}).items():
            self._rates[int(year)] = _to_rate(rate, year)
        self._warned: set[int] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_json(cls, path: Path) -> "ExchangeRateTable":
        """Load rates from a JSON object of ``{"year": rate}`` on top of the defaults.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            ValueError: If the file is not valid JSON or holds a bad rate.
        """
        with open(path, "r") as f:
            data = json.load(f, parse_float=Decimal)
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a JSON object of year -> rate")
        return cls({int(year): rate for year, rate in data.items()})

    def rate_for(self, year: int) -> Decimal:
        rate = self._rates.get(year)
        if rate is not None:
            return rate
        with self._lock:
            if year not in self._warned:
                self._warned.add(year)
                logger.warning("no RON/EUR rate for %s, converting at %s", year, FALLBACK_RATE)
        return FALLBACK_RATE

    def years(self) -> list[int]:
        return sorted(self._rates)


def _to_rate(value: object, year: object) -> Decimal:
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid exchange rate for {year}: {value!r}") from None
    if not rate.is_finite() or rate <= 0:
        raise ValueError(f"Exchange rate for {year} must be positive, got {value!r}")
    return rate

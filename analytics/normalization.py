"""Amount normalization for aggregated rows.

Every aggregate is reported three ways: ``total_amount`` (sum),
``per_capita_amount`` (sum / population, 0 when the population is missing
or zero) and ``amount`` (whichever of the two the normalization selects).

Euro modes are a second pass over rows grouped by (dimension, year): each
yearly subtotal is converted with that year's rate, and the converted
subtotals are summed.  Converting a multi-year RON total with a single
rate is wrong and never done here.

All arithmetic uses Decimal; database values (decimal strings from SQLite,
Decimals from PostgreSQL) are converted without going through float.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from analytics.filters import Normalization, SortOption, SortOrder
from analytics.ports import ExchangeRatePort

ZERO = Decimal(0)

AMOUNT_FIELDS = ("total_amount", "per_capita_amount", "amount")


@dataclass(frozen=True)
class NormalizedAmount:
    total: Decimal
    per_capita: Decimal
    selected: Decimal


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def per_capita(total: Decimal, population: int | None) -> Decimal:
    """Divide *total* by *population*, returning 0 for a missing or zero population."""
    if not population or population <= 0:
        return ZERO
    return total / Decimal(population)


def normalize(total: Any, population: int | None, mode: Normalization) -> NormalizedAmount:
    """Compute the three amount variants for one aggregated row.

    For euro modes *total* must already be in EUR (see :func:`euro_total`).
    """
    total = to_decimal(total)
    pc = per_capita(total, population)
    selected = pc if mode.is_per_capita else total
    return NormalizedAmount(total=total, per_capita=pc, selected=selected)


def euro_total(yearly: Iterable[tuple[int, Any]], rates: ExchangeRatePort) -> Decimal:
    """Convert ``(year, ron_subtotal)`` pairs to EUR per year and sum them."""
    total = ZERO
    for year, amount in yearly:
        total += to_decimal(amount) / rates.rate_for(int(year))
    return total


def _population(row: dict[str, Any]) -> int | None:
    value = row.get("population")
    return int(value) if value is not None else None


def normalize_row(row: dict[str, Any], mode: Normalization) -> dict[str, Any]:
    """Return a copy of a database-aggregated *row* with Decimal amounts."""
    out = dict(row)
    population = _population(row)
    amounts = normalize(row.get("total_amount"), population, mode)
    out["population"] = population
    out["total_amount"] = amounts.total
    out["per_capita_amount"] = amounts.per_capita
    out["amount"] = amounts.selected
    return out


def merge_yearly_rows(
    rows: Iterable[dict[str, Any]],
    keys: tuple[str, ...],
    rates: ExchangeRatePort,
    mode: Normalization,
) -> list[dict[str, Any]]:
    """Collapse per-(group, year) rows into one EUR-normalized row per group.

    Args:
        rows: Rows carrying ``year`` and ``total_amount`` (RON) plus the
            group fields.
        keys: Fields identifying a group.
        rates: Exchange rate lookup.
        mode: ``total_euro`` or ``per_capita_euro``.

    Returns:
        One row per group, in first-seen order, without the ``year`` field.
    """
    groups: dict[tuple, dict[str, Any]] = {}
    yearly: dict[tuple, list[tuple[int, Any]]] = {}
    for row in rows:
        group = tuple(row.get(k) for k in keys)
        if group not in groups:
            groups[group] = {k: v for k, v in row.items() if k != "year"}
            yearly[group] = []
        # A group with no matching line items comes back once, with no year
        if row.get("year") is not None:
            yearly[group].append((row["year"], row.get("total_amount")))

    merged = []
    for group, base in groups.items():
        population = _population(base)
        amounts = normalize(euro_total(yearly[group], rates), population, mode)
        base["population"] = population
        base["total_amount"] = amounts.total
        base["per_capita_amount"] = amounts.per_capita
        base["amount"] = amounts.selected
        merged.append(base)
    return merged


def apply_aggregate_bounds(
    rows: list[dict[str, Any]],
    minimum: Decimal | None,
    maximum: Decimal | None,
) -> list[dict[str, Any]]:
    """Keep rows whose selected ``amount`` lies within the bounds."""
    return [
        r for r in rows
        if (minimum is None or r["amount"] >= minimum)
        and (maximum is None or r["amount"] <= maximum)
    ]


def sort_rows(rows: list[dict[str, Any]], sort: tuple[SortOption, ...]) -> list[dict[str, Any]]:
    """Stable multi-field sort; None values go last in either direction."""
    result = list(rows)
    options = list(sort)
    if not any(o.by == "code" for o in options):
        options.append(SortOption(by="code", order=SortOrder.ASC))
    for option in reversed(options):
        present = [r for r in result if r.get(option.by) is not None]
        missing = [r for r in result if r.get(option.by) is None]
        present.sort(key=lambda r: r[option.by], reverse=option.order is SortOrder.DESC)
        result = present + missing
    return result

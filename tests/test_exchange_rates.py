"""Tests for analytics/exchange_rates.py - RON/EUR rate table."""
import json
import sys
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from analytics.exchange_rates import (
    DEFAULT_RON_EUR_RATES,
    FALLBACK_RATE,
    ExchangeRateTable,
)


class TestExchangeRateTable:
    def test_defaults(self):
        table = ExchangeRateTable()
        assert table.rate_for(2023) == DEFAULT_RON_EUR_RATES[2023]
        assert table.years() == sorted(DEFAULT_RON_EUR_RATES)

    def test_override(self):
        table = ExchangeRateTable({2023: "5.1"})
        assert table.rate_for(2023) == Decimal("5.1")
        assert table.rate_for(2022) == DEFAULT_RON_EUR_RATES[2022]

    def test_without_defaults(self):
        table = ExchangeRateTable({2030: Decimal("6")}, include_defaults=False)
        assert table.years() == [2030]

    def test_unknown_year_falls_back(self):
        assert ExchangeRateTable().rate_for(1990) == FALLBACK_RATE

    @pytest.mark.parametrize("bad", ["0", "-4.9", "abc", "NaN"])
    def test_invalid_rate(self, bad):
        with pytest.raises(ValueError):
            ExchangeRateTable({2023: bad})

    def test_from_json(self, tmp_path):
        path = tmp_path / "rates.json"
        path.write_text(json.dumps({"2025": "5.05", "2023": 4.95}))
        table = ExchangeRateTable.from_json(path)
        assert table.rate_for(2025) == Decimal("5.05")
        assert table.rate_for(2023) == Decimal("4.95")
        assert 2016 in table.years()

    def test_from_json_not_object(self, tmp_path):
        path = tmp_path / "rates.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError, match="expected a JSON object"):
            ExchangeRateTable.from_json(path)

    def test_from_json_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ExchangeRateTable.from_json(tmp_path / "nope.json")

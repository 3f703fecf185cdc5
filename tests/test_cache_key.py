"""Tests for analytics/cache_key.py - canonical cache keys."""
import sys
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from analytics.cache_key import SET_LIKE_FIELDS, build_cache_key, canonicalize, serialize
from analytics.filters import parse_filter, parse_sort, GroupingDimension


def _key(payload, namespace="uat"):
    return build_cache_key(namespace, payload)


class TestKeyFormat:
    def test_prefix_namespace_digest(self):
        key = _key({"account_category": "ch", "years": [2023]}, "county")
        prefix, namespace, digest = key.split(":")
        assert prefix == "analytics"
        assert namespace == "county"
        assert len(digest) == 64

    def test_custom_prefix(self):
        key = build_cache_key("uat", {"a": 1}, prefix="test")
        assert key.startswith("test:uat:")

    def test_namespace_separates_keys(self):
        payload = {"account_category": "ch", "years": [2023]}
        assert _key(payload, "uat") != _key(payload, "county")

    def test_deterministic(self):
        payload = {"account_category": "ch", "years": [2023], "county_codes": ["CJ"]}
        assert _key(payload) == _key(dict(payload))


class TestSetLikeFields:
    @pytest.mark.parametrize("field,values", [
        ("years", [2023, 2021, 2022]),
        ("report_ids", ["R3", "R1", "R2"]),
        ("entity_cuis", ["4305857", "4267117"]),
        ("functional_codes", ["66.02", "65.02"]),
        ("functional_prefixes", ["70.", "65."]),
        ("economic_codes", ["20.01.01", "10.01.01"]),
        ("economic_prefixes", ["20.", "10."]),
        ("funding_source_ids", [3, 1, 2]),
        ("budget_sector_ids", [2, 1]),
        ("expense_types", ["functionare", "dezvoltare"]),
        ("program_codes", ["P2", "P1"]),
        ("entity_types", ["school", "admin_municipality"]),
        ("uat_ids", [5, 1, 3]),
        ("county_codes", ["CJ", "B", "AB"]),
        ("regions", ["Centru", "Nord-Vest"]),
    ])
    def test_top_level_permutation_invariant(self, field, values):
        base = {"account_category": "ch"}
        assert _key({**base, field: values}) == _key({**base, field: list(reversed(values))})

    @pytest.mark.parametrize("field", sorted(SET_LIKE_FIELDS - {"years", "dates"}))
    def test_exclude_permutation_invariant(self, field):
        a = {"account_category": "ch", "years": [2023], "exclude": {field: ["x", "y", "z"]}}
        b = {"account_category": "ch", "years": [2023], "exclude": {field: ["z", "x", "y"]}}
        assert _key(a) == _key(b)

    def test_period_dates_permutation_invariant(self):
        def period(dates):
            return {"account_category": "ch",
                    "report_period": {"type": "MONTH", "selection": {"dates": dates}}}
        assert _key(period(["2024-01", "2024-03"])) == _key(period(["2024-03", "2024-01"]))

    def test_duplicates_ignored(self):
        assert _key({"county_codes": ["CJ", "CJ", "B"]}) == _key({"county_codes": ["B", "CJ"]})

    def test_different_sets_differ(self):
        assert _key({"county_codes": ["CJ"]}) != _key({"county_codes": ["B"]})


class TestOrderSensitivity:
    def test_object_key_order_ignored(self):
        a = {"account_category": "ch", "years": [2023], "normalization": "per_capita"}
        b = {"normalization": "per_capita", "years": [2023], "account_category": "ch"}
        assert _key(a) == _key(b)

    def test_nested_key_order_ignored(self):
        a = {"report_period": {"type": "YEAR", "selection": {"dates": ["2023"]}}}
        b = {"report_period": {"selection": {"dates": ["2023"]}, "type": "YEAR"}}
        assert _key(a) == _key(b)

    def test_sort_order_matters(self):
        by_amount = [{"by": "amount", "order": "DESC"}, {"by": "name", "order": "ASC"}]
        by_name = list(reversed(by_amount))
        assert _key({"sort": by_amount}) != _key({"sort": by_name})

    def test_sort_options_from_models(self):
        s1 = parse_sort([{"by": "amount"}, {"by": "code", "order": "ASC"}], GroupingDimension.UAT)
        s2 = parse_sort([{"by": "code", "order": "ASC"}, {"by": "amount"}], GroupingDimension.UAT)
        assert _key({"sort": s1}) != _key({"sort": s2})


class TestCanonicalize:
    def test_none_values_dropped(self):
        assert canonicalize({"a": 1, "b": None}) == {"a": 1}

    def test_decimal_normalized(self):
        assert serialize({"x": Decimal("50")}) == serialize({"x": Decimal("50.00")})

    def test_parsed_filter_matches_raw_equivalent(self):
        a = parse_filter({"account_category": "ch", "years": [2023, 2022],
                          "county_codes": ["CJ", "B"]})
        b = parse_filter({"county_codes": ["B", "CJ"], "years": [2022, 2023],
                          "account_category": "ch"})
        assert _key({"filter": a}) == _key({"filter": b})

    def test_absent_and_empty_collection_collide(self):
        a = parse_filter({"account_category": "ch", "years": [2023]})
        b = parse_filter({"account_category": "ch", "years": [2023], "county_codes": []})
        assert _key({"filter": a}) == _key({"filter": b})

    def test_years_shorthand_matches_year_period(self):
        a = parse_filter({"account_category": "ch", "years": [2023, 2022]})
        b = parse_filter({"account_category": "ch",
                          "report_period": {"type": "YEAR",
                                            "selection": {"dates": ["2022", "2023"]}}})
        assert _key({"filter": a}) != _key({"filter": b})
        assert _key({"filter": a.canonical()}) == _key({"filter": b.canonical()})
        assert b.canonical() is b

    def test_enum_serialized_by_value(self):
        flt = parse_filter({"account_category": "vn", "years": [2023]})
        assert canonicalize(flt)["account_category"] == "vn"

"""Canonical cache keys for analytics results.

Two filters that mean the same thing must map to the same key, so the
payload is canonicalized before hashing:

- object keys are sorted recursively;
- set-like collections (code/id lists, years, period dates) are
  de-duplicated and sorted, so ``["CJ", "B"]`` and ``["B", "CJ"]`` collide;
- sequence-like collections (``sort``) keep their order, since the order of
  sort options changes the result.

Keys have the form ``{prefix}:{namespace}:{sha256 hex}``.
"""

import hashlib
import json
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel

KEY_PREFIX = "analytics"

# Collections with set semantics; matched by field name at any depth
# (top-level filter fields, ``exclude.*`` and ``report_period.selection``).
SET_LIKE_FIELDS = frozenset({
    "years", "dates",
    "report_ids", "entity_cuis",
    "functional_codes", "functional_prefixes",
    "economic_codes", "economic_prefixes",
    "funding_source_ids", "budget_sector_ids",
    "expense_types", "program_codes", "entity_types",
    "uat_ids", "county_codes", "regions",
})

# Collections whose order is significant
SEQUENCE_FIELDS = frozenset({"sort"})


def _scalar(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        # normalize() so 50, 50.0 and 50.00 hash alike
        return format(value.normalize(), "f")
    if isinstance(value, date):
        return value.isoformat()
    return value


def canonicalize(value: Any, field: str | None = None) -> Any:
    """Return a JSON-ready canonical form of *value*.

    Args:
        value: Filter payload (dicts, lists, pydantic models, scalars).
        field: Name of the field *value* was found under, used to pick
            set or sequence semantics for lists.
    """
    if isinstance(value, BaseModel):
        value = value.model_dump(exclude_none=True)
    if isinstance(value, dict):
        return {
            str(k): canonicalize(v, str(k))
            for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))
            if v is not None
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [canonicalize(v) for v in value]
        if field in SET_LIKE_FIELDS:
            unique = {json.dumps(i, sort_keys=True): i for i in items}
            return [unique[k] for k in sorted(unique)]
        return items
    return _scalar(value)


def serialize(payload: Any) -> str:
    return json.dumps(canonicalize(payload), sort_keys=True,
                      separators=(",", ":"), ensure_ascii=False)


def build_cache_key(namespace: str, payload: Any, prefix: str = KEY_PREFIX) -> str:
    """Derive a stable key for *payload* under *namespace*.

    Usage::

        key = build_cache_key("county", {"filter": f, "sort": sort})
        # "analytics:county:3f1c..."
    """
    digest = hashlib.sha256(serialize(payload).encode("utf-8")).hexdigest()
    return f"{prefix}:{namespace}:{digest}"

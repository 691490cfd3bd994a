"""Canonical JSON and content hashing for decision payloads."""

import hashlib
import json
from datetime import datetime
from decimal import Decimal
from typing import Any


def _canonical_value(obj: Any) -> Any:
    """Convert value for canonical representation."""
    if obj is None or isinstance(obj, (bool, str)):
        return obj
    if isinstance(obj, int):
        return obj
    if isinstance(obj, (float, Decimal)):
        return float(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k): _canonical_value(v) for k, v in sorted(obj.items())}
    if isinstance(obj, (list, tuple)):
        return [_canonical_value(v) for v in obj]
    return str(obj)


def canonical_json(obj: Any) -> str:
    """Produce canonical JSON string (sorted keys, compact separators)."""
    return json.dumps(_canonical_value(obj), sort_keys=True, separators=(",", ":"))


def content_hash(obj: Any) -> str:
    """SHA256 of the canonical JSON; stable across key order."""
    return hashlib.sha256(canonical_json(obj).encode()).hexdigest()

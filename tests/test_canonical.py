"""Unit tests for canonical JSON and hashing."""

from datetime import datetime, timezone

from decisionos.utils.canonical import canonical_json, content_hash


def test_canonical_json_sorts_keys():
    """Canonical JSON sorts keys."""
    obj = {"b": 1, "a": 2}
    assert canonical_json(obj) == '{"a":2,"b":1}'


def test_canonical_json_nested_and_datetime():
    """Nested dicts are sorted and datetimes become ISO strings."""
    obj = {"z": {"y": 1, "x": [3, 2]}, "at": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)}
    assert canonical_json(obj) == '{"at":"2026-03-01T12:00:00+00:00","z":{"x":[3,2],"y":1}}'


def test_content_hash_ignores_key_order():
    """Content hash is stable across key order."""
    h1 = content_hash({"meal": "tacos", "minutes": 20})
    h2 = content_hash({"minutes": 20, "meal": "tacos"})
    assert h1 == h2
    assert len(h1) == 64  # SHA256 hex


def test_content_hash_differs_on_value():
    """Different payloads hash differently."""
    assert content_hash({"meal": "tacos"}) != content_hash({"meal": "pasta"})

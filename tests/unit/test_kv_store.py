"""Tests for the sqlite-backed key-value store"""

from __future__ import annotations

import pytest

from swipeq.observability.telemetry import counter
from swipeq.storage import KeyValueStore


def test_item_roundtrip(store):
    store.set_item("automation_last_sync", "2025-01-01T00:00:00+00:00")
    assert store.get_item("automation_last_sync") == "2025-01-01T00:00:00+00:00"
    assert store.get_item("missing") is None


def test_set_item_overwrites(store):
    store.set_item("k", "one")
    store.set_item("k", "two")
    assert store.get_item("k") == "two"
    assert store.keys() == ["k"]


def test_json_helpers(store):
    store.set_json("automation_profile_map", {"p1": {"id": "a1"}})
    assert store.get_json("automation_profile_map") == {"p1": {"id": "a1"}}
    assert store.get_json("absent", default=[]) == []


def test_corrupt_json_is_treated_as_absent(store):
    store.set_item("swiped_jobs_cache", "{not json")
    assert store.get_json("swiped_jobs_cache", default={}) == {}
    assert counter("storage.decode_error", 0) == 1


def test_remove_item(store):
    store.set_item("k", "v")
    store.remove_item("k")
    assert store.get_item("k") is None
    store.remove_item("k")  # removing twice is fine


def test_keys_prefix_treats_underscore_literally(store):
    store.set_item("swipe_batch_pending_jobs:p1", "[]")
    store.set_item("swipe_batch_pending_jobs:p2", "[]")
    store.set_item("swipeXbatch_pending_jobs:p3", "[]")

    assert store.keys("swipe_batch_pending_jobs:") == [
        "swipe_batch_pending_jobs:p1",
        "swipe_batch_pending_jobs:p2",
    ]


def test_open_is_idempotent_and_close_resets(store):
    store.open()
    assert store.is_open
    store.close()
    assert not store.is_open
    with pytest.raises(RuntimeError, match="not open"):
        store.get_item("k")


def test_file_backed_store_survives_reopen(tmp_path):
    db_path = tmp_path / "nested" / "state.db"

    first = KeyValueStore(db_path)
    first.open()
    first.set_json("automation_pending_urls", [{"url": "https://example.com/1"}])
    first.close()

    second = KeyValueStore(db_path)
    second.open()
    try:
        assert second.get_json("automation_pending_urls") == [{"url": "https://example.com/1"}]
    finally:
        second.close()

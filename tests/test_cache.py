import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from itsjustintv.cache import CacheEntry, CacheManager


@pytest.fixture
def cache_file(tmp_path):
    return tmp_path / "cache.json"


@pytest.fixture
def manager(cache_file):
    mgr = CacheManager(cache_file, timedelta(hours=2))
    yield mgr
    mgr._stop_event.set()


def test_unknown_key_is_not_duplicate(manager):
    assert manager.is_duplicate("missing") is False


def test_added_event_is_duplicate(manager):
    manager.add_event("k1", b"payload")
    assert manager.is_duplicate("k1") is True
    assert manager.size() == 1
    assert len(manager) == 1


def test_expired_entry_is_removed_on_lookup(cache_file):
    mgr = CacheManager(cache_file, timedelta(seconds=-1))
    mgr.add_event("k1", b"payload")
    assert mgr.is_duplicate("k1") is False
    assert mgr.size() == 0


def test_generate_event_key_is_deterministic(manager):
    ts = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    first = manager.generate_event_key("123", "evt", ts)
    second = manager.generate_event_key("123", "evt", ts)
    assert first == second
    assert len(first) == 64
    assert all(c in "0123456789abcdef" for c in first)


def test_generate_event_key_ignores_subsecond_part(manager):
    ts = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    later = ts + timedelta(milliseconds=500)
    assert manager.generate_event_key("1", "e", ts) == manager.generate_event_key("1", "e", later)


@pytest.mark.parametrize(
    "other",
    [
        ("2", "e", 0),
        ("1", "f", 0),
        ("1", "e", 1),
    ],
)
def test_generate_event_key_varies_with_input(manager, other):
    base_ts = datetime(2024, 1, 2, tzinfo=timezone.utc)
    base = manager.generate_event_key("1", "e", base_ts)
    streamer, event, offset = other
    changed = manager.generate_event_key(streamer, event, base_ts + timedelta(seconds=offset))
    assert base != changed
    assert len(changed) == len(base)


def test_stats_counts_active_and_expired(cache_file):
    mgr = CacheManager(cache_file, timedelta(hours=2))
    mgr.add_event("active", b"a")
    mgr.ttl = timedelta(seconds=-1)
    mgr.add_event("expired", b"b")
    mgr.ttl = timedelta(hours=2)
    stats = mgr.stats()
    assert stats["total_entries"] == 2
    assert stats["active_entries"] == 1
    assert stats["expired_entries"] == 1
    assert stats["ttl_seconds"] == 7200


def test_cleanup_removes_only_expired(cache_file):
    mgr = CacheManager(cache_file, timedelta(hours=1))
    mgr.add_event("keep", b"a")
    mgr.ttl = timedelta(seconds=-1)
    mgr.add_event("drop1", b"b")
    mgr.add_event("drop2", b"c")
    assert mgr.cleanup() == 2
    assert mgr.size() == 1
    assert mgr.cleanup() == 0


def test_stop_writes_json_and_start_reloads(cache_file):
    first = CacheManager(cache_file, timedelta(hours=2))
    first.start()
    first.add_event("k1", b"\x00\x01data")
    first.stop()

    saved = json.loads(cache_file.read_text())
    assert [item["key"] for item in saved] == ["k1"]
    assert base64.b64decode(saved[0]["data"]) == b"\x00\x01data"

    second = CacheManager(cache_file, timedelta(hours=2))
    second.start()
    try:
        assert second.is_duplicate("k1") is True
        assert second._entries["k1"].data == b"\x00\x01data"
    finally:
        second.stop()


def test_load_skips_expired_entries(cache_file):
    now = datetime.now(timezone.utc)
    entries = [
        CacheEntry("fresh", b"x", now + timedelta(hours=1), now).to_dict(),
        CacheEntry("stale", b"y", now - timedelta(hours=1), now - timedelta(hours=3)).to_dict(),
    ]
    cache_file.write_text(json.dumps(entries))
    mgr = CacheManager(cache_file, timedelta(hours=2))
    mgr.start()
    try:
        assert mgr.size() == 1
        assert mgr.is_duplicate("fresh") is True
        assert mgr.is_duplicate("stale") is False
    finally:
        mgr.stop()


def test_load_accepts_nanosecond_timestamps(cache_file):
    cache_file.write_text(
        json.dumps(
            [
                {
                    "key": "k",
                    "data": base64.b64encode(b"v").decode(),
                    "expires_at": "2999-01-01T00:00:00.123456789Z",
                    "created_at": "2024-01-01T00:00:00.987654321+01:00",
                }
            ]
        )
    )
    mgr = CacheManager(cache_file, timedelta(hours=2))
    mgr.start()
    try:
        assert mgr.is_duplicate("k") is True
        assert mgr._entries["k"].expires_at.year == 2999
    finally:
        mgr.stop()


def test_corrupt_cache_file_is_tolerated(cache_file):
    cache_file.write_text("not json")
    mgr = CacheManager(cache_file, timedelta(hours=2))
    mgr.start()
    try:
        assert mgr.size() == 0
    finally:
        mgr.stop()
    assert json.loads(cache_file.read_text()) == []


def test_stop_raises_when_file_cannot_be_written(tmp_path):
    mgr = CacheManager(tmp_path / "missing" / "cache.json", timedelta(hours=2))
    mgr.add_event("k", b"v")
    with pytest.raises(OSError):
        mgr.stop()


def test_entry_round_trip():
    now = datetime(2024, 5, 6, 7, 8, 9, 123456, tzinfo=timezone.utc)
    entry = CacheEntry("key", b"bytes", now + timedelta(hours=2), now)
    assert CacheEntry.from_dict(entry.to_dict()) == entry
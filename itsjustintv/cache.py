"""Time-limited deduplication cache for incoming events, persisted as JSON."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import math
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL = timedelta(minutes=10)

_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(text: str) -> datetime:
    text = _EXCESS_FRACTION.sub(r"\1", text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class CacheEntry:
    key: str
    data: bytes
    expires_at: datetime
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "data": base64.b64encode(self.data).decode("ascii"),
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CacheEntry:
        data = raw.get("data")
        return cls(
            key=raw["key"],
            data=base64.b64decode(data) if data else b"",
            expires_at=_parse_time(raw["expires_at"]),
            created_at=_parse_time(raw["created_at"]),
        )


class CacheManager:
    """Remembers event keys for a fixed time so repeated events can be skipped."""

    def __init__(self, cache_file: str | Path, ttl: timedelta) -> None:
        self.cache_file = Path(cache_file)
        self.ttl = ttl
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._cleanup_thread: threading.Thread | None = None

    def start(self) -> None:
        """Load the persisted cache and start periodic cleanup."""
        try:
            self._load()
        except (OSError, ValueError, KeyError, TypeError) as err:
            logger.warning("Failed to load cache: %s", err)

        if self._cleanup_thread is None or not self._cleanup_thread.is_alive():
            self._stop_event.clear()
            self._cleanup_thread = threading.Thread(
                target=self._cleanup_loop, name="cache-cleanup", daemon=True
            )
            self._cleanup_thread.start()
        logger.info("Cache manager started (ttl=%s)", self.ttl)

    def stop(self) -> None:
        """Stop periodic cleanup and write the cache to disk."""
        self._stop_event.set()
        if self._cleanup_thread is not None:
            self._cleanup_thread.join(timeout=1)
            self._cleanup_thread = None
        try:
            self._save()
        except OSError as err:
            logger.error("Failed to save cache: %s", err)
            raise
        logger.info("Cache manager stopped")

    def is_duplicate(self, event_key: str) -> bool:
        """Return True if the key is cached and not expired; expired keys are dropped."""
        with self._lock:
            entry = self._entries.get(event_key)
            if entry is None:
                return False
            if _now() > entry.expires_at:
                del self._entries[event_key]
                return False
            return True

    def add_event(self, event_key: str, event_data: bytes) -> None:
        """Remember an event for the cache's time to live."""
        now = _now()
        entry = CacheEntry(
            key=event_key,
            data=bytes(event_data),
            expires_at=now + self.ttl,
            created_at=now,
        )
        with self._lock:
            self._entries[event_key] = entry
        logger.debug("Added event to cache key=%s expires_at=%s", event_key, entry.expires_at)

    def generate_event_key(self, streamer_id: str, event_id: str, timestamp: datetime) -> str:
        """Return a SHA-256 hex key built from streamer, event and Unix time."""
        unix = math.floor(timestamp.timestamp())
        text = f"{streamer_id}:{event_id}:{unix}"
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def size(self) -> int:
        """Return the number of entries, expired ones included."""
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def stats(self) -> dict[str, int]:
        """Return counts of total, active and expired entries and the TTL."""
        now = _now()
        with self._lock:
            expired = sum(1 for e in self._entries.values() if now > e.expires_at)
            total = len(self._entries)
        return {
            "total_entries": total,
            "active_entries": total - expired,
            "expired_entries": expired,
            "ttl_seconds": int(self.ttl.total_seconds()),
        }

    def cleanup(self) -> int:
        """Remove expired entries and return how many were removed."""
        now = _now()
        with self._lock:
            stale = [k for k, e in self._entries.items() if now > e.expires_at]
            for key in stale:
                del self._entries[key]
            remaining = len(self._entries)
        if stale:
            logger.debug(
                "Cache cleanup completed removed=%d remaining=%d", len(stale), remaining
            )
        return len(stale)

    def _cleanup_loop(self) -> None:
        while not self._stop_event.wait(CLEANUP_INTERVAL.total_seconds()):
            self.cleanup()

    def _load(self) -> None:
        if not self.cache_file.exists():
            return
        raw = json.loads(self.cache_file.read_text(encoding="utf-8"))
        entries = [CacheEntry.from_dict(item) for item in raw or []]
        now = _now()
        with self._lock:
            loaded = 0
            for entry in entries:
                if now < entry.expires_at:
                    self._entries[entry.key] = entry
                    loaded += 1
        logger.info("Loaded cache from disk total=%d loaded=%d", len(entries), loaded)

    def _save(self) -> None:
        with self._lock:
            payload = [entry.to_dict() for entry in self._entries.values()]
        self.cache_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        logger.debug("Saved cache to disk entries=%d", len(payload))
"""Keeps a bounded JSON log of dispatched webhook payloads."""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from itsjustintv.config import Config

logger = logging.getLogger(__name__)

_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def _format_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_time(text: str) -> datetime:
    text = _EXCESS_FRACTION.sub(r"\1", text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class OutputEntry:
    timestamp: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    success: bool = False
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "timestamp": _format_time(self.timestamp),
            "payload": self.payload,
            "success": self.success,
        }
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> OutputEntry:
        return cls(
            timestamp=_parse_time(raw["timestamp"]),
            payload=dict(raw.get("payload") or {}),
            success=bool(raw.get("success", False)),
            error=raw.get("error", "") or "",
        )


class OutputWriter:
    """Records webhook payloads and their outcome in a JSON file."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self._entries: list[OutputEntry] = []
        self._lock = threading.Lock()

    @property
    def _path(self) -> Path:
        return Path(self.config.output.file_path)

    def start(self) -> None:
        """Load existing entries from disk when output is enabled."""
        if not self.config.output.enabled:
            logger.info("File output disabled")
            return
        try:
            self._load()
        except (OSError, ValueError, KeyError, TypeError) as err:
            logger.warning("Failed to load existing output data: %s", err)
        logger.info("Output writer started file_path=%s", self.config.output.file_path)

    def stop(self) -> None:
        """Write the current entries to disk when output is enabled."""
        if not self.config.output.enabled:
            return
        with self._lock:
            try:
                self._save()
            except OSError as err:
                logger.error("Failed to save output data: %s", err)
                raise
        logger.info("Output writer stopped")

    def write_payload(
        self, payload: Mapping[str, Any], success: bool, error: str = ""
    ) -> None:
        """Append a payload with its outcome, trim to the limit and save."""
        if not self.config.output.enabled:
            return
        entry = OutputEntry(
            timestamp=datetime.now(timezone.utc),
            payload=dict(payload),
            success=success,
            error=error,
        )
        with self._lock:
            self._entries.append(entry)
            self._trim()
            self._save()
            total = len(self._entries)
        logger.debug(
            "Wrote payload to output file streamer_login=%s success=%s total_entries=%d",
            entry.payload.get("streamer_login"),
            success,
            total,
        )

    def recent_payloads(self, limit: int = 0) -> list[OutputEntry]:
        """Return the last ``limit`` entries; all of them when limit is not positive."""
        with self._lock:
            if limit <= 0 or limit > len(self._entries):
                limit = len(self._entries)
            return list(self._entries[len(self._entries) - limit:])

    def stats(self) -> dict[str, Any]:
        """Return counts of recorded, successful and failed sends."""
        with self._lock:
            total = len(self._entries)
            successful = sum(1 for entry in self._entries if entry.success)
        return {
            "enabled": self.config.output.enabled,
            "total_entries": total,
            "successful_sends": successful,
            "failed_sends": total - successful,
            "max_lines": self.config.output.max_lines,
            "file_path": self.config.output.file_path,
        }

    def update_config(self, new_config: Config) -> None:
        """Switch to a new configuration."""
        self.config = new_config

    def _trim(self) -> None:
        limit = self.config.output.max_lines
        if len(self._entries) > limit:
            self._entries = self._entries[len(self._entries) - max(limit, 0):]

    def _load(self) -> None:
        path = self._path
        if not path.exists():
            return
        raw = json.loads(path.read_text(encoding="utf-8"))
        entries = [OutputEntry.from_dict(item) for item in raw or []]
        with self._lock:
            self._entries = entries
            self._trim()
            count = len(self._entries)
        logger.info(
            "Loaded existing output data entries=%d file_path=%s", count, path
        )

    def _save(self) -> None:
        data = [entry.to_dict() for entry in self._entries]
        self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")
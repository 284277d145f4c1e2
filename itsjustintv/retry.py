"""Retry queue for failed webhook dispatches with exponential backoff."""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping, Protocol, runtime_checkable

from itsjustintv.config import Config

logger = logging.getLogger(__name__)

CHECK_INTERVAL = timedelta(seconds=30)

_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def _now() -> datetime:
    return datetime.now(timezone.utc)


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
class DispatchRequest:
    webhook_url: str
    payload: dict[str, Any] = field(default_factory=dict)
    webhook_secret: str = ""
    webhook_header: str = ""
    webhook_hashing: str = ""
    streamer_key: str = ""
    attempt: int = 0
    next_retry: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "webhook_url": self.webhook_url,
            "payload": self.payload,
            "webhook_secret": self.webhook_secret,
            "webhook_header": self.webhook_header,
            "webhook_hashing": self.webhook_hashing,
            "streamer_key": self.streamer_key,
            "attempt": self.attempt,
            "next_retry": _format_time(self.next_retry) if self.next_retry else None,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> DispatchRequest:
        next_retry = raw.get("next_retry")
        return cls(
            webhook_url=raw["webhook_url"],
            payload=dict(raw.get("payload") or {}),
            webhook_secret=raw.get("webhook_secret", ""),
            webhook_header=raw.get("webhook_header", ""),
            webhook_hashing=raw.get("webhook_hashing", ""),
            streamer_key=raw.get("streamer_key", ""),
            attempt=int(raw.get("attempt", 0)),
            next_retry=_parse_time(next_retry) if next_retry else None,
        )


@dataclass
class DispatchResult:
    success: bool
    error: str = ""
    status_code: int = 0
    response_time: timedelta = timedelta(0)


@runtime_checkable
class Dispatcher(Protocol):
    """Sends a webhook request and reports the outcome."""

    def dispatch(self, request: DispatchRequest) -> DispatchResult:
        """Send ``request`` and return its result."""
        ...


class RetryManager:
    """Holds failed dispatches and retries them with exponential backoff."""

    def __init__(self, config: Config, dispatcher: Dispatcher) -> None:
        self.config = config
        self.dispatcher = dispatcher
        self._queue: list[DispatchRequest] = []
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Load persisted state and start the background retry loop."""
        try:
            self._load()
        except (OSError, ValueError, KeyError, TypeError) as err:
            logger.warning("Failed to load retry state: %s", err)

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="retry-manager", daemon=True
        )
        self._thread.start()
        logger.info("Retry manager started")

    def stop(self) -> None:
        """Stop the background loop and persist the queue."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        try:
            self._save()
        except OSError as err:
            logger.error("Failed to save retry state: %s", err)
            raise
        logger.info("Retry manager stopped")

    def add_request(self, request: DispatchRequest) -> None:
        """Count another attempt, schedule the next retry and queue the request."""
        with self._lock:
            request.attempt += 1
            request.next_retry = self.calculate_next_retry(request.attempt)
            self._queue.append(request)
        logger.info(
            "Added request to retry queue webhook_url=%s streamer_key=%s attempt=%d next_retry=%s",
            request.webhook_url,
            request.streamer_key,
            request.attempt,
            request.next_retry,
        )

    def queue_size(self) -> int:
        """Return the number of queued requests."""
        with self._lock:
            return len(self._queue)

    def process_ready_retries(self) -> list[DispatchRequest]:
        """Dispatch due requests in the background, drop exhausted ones, return the due ones."""
        now = _now()
        max_attempts = self.config.retry.max_attempts
        ready: list[DispatchRequest] = []
        remaining: list[DispatchRequest] = []

        with self._lock:
            for request in self._queue:
                if request.attempt > max_attempts:
                    logger.warning(
                        "Dropping request after max attempts webhook_url=%s streamer_key=%s attempts=%d",
                        request.webhook_url,
                        request.streamer_key,
                        request.attempt,
                    )
                elif request.next_retry is None or now > request.next_retry:
                    ready.append(request)
                else:
                    remaining.append(request)
            self._queue = remaining

        for request in ready:
            threading.Thread(
                target=self._retry_request, args=(request,), daemon=True
            ).start()

        if ready:
            logger.info(
                "Processing retry requests ready_count=%d remaining_count=%d",
                len(ready),
                len(remaining),
            )
        return ready

    def calculate_next_retry(self, attempt: int) -> datetime:
        """Return when the given attempt should run, using capped exponential backoff."""
        retry = self.config.retry
        max_seconds = retry.max_delay.total_seconds()
        try:
            seconds = retry.initial_delay.total_seconds() * (
                retry.backoff_factor ** (attempt - 1)
            )
        except OverflowError:
            seconds = max_seconds
        delay = timedelta(seconds=min(seconds, max_seconds))
        return _now() + delay

    def update_config(self, new_config: Config) -> None:
        """Switch to a new configuration."""
        self.config = new_config

    def _run(self) -> None:
        while not self._stop_event.wait(CHECK_INTERVAL.total_seconds()):
            self.process_ready_retries()

    def _retry_request(self, request: DispatchRequest) -> None:
        try:
            result = self.dispatcher.dispatch(request)
        except Exception as err:
            logger.error("Retry dispatch raised: %s", err)
            result = DispatchResult(success=False, error=str(err))

        if result.success:
            logger.info(
                "Retry successful webhook_url=%s streamer_key=%s attempt=%d",
                request.webhook_url,
                request.streamer_key,
                request.attempt,
            )
        else:
            self.add_request(request)

    def _load(self) -> None:
        path = Path(self.config.retry.state_file)
        if not path.exists():
            return
        raw = json.loads(path.read_text(encoding="utf-8"))
        queue = [DispatchRequest.from_dict(item) for item in (raw or {}).get("queue") or []]
        with self._lock:
            self._queue = queue
        logger.info("Loaded retry state queue_size=%d", len(queue))

    def _save(self) -> None:
        with self._lock:
            state = {"queue": [request.to_dict() for request in self._queue]}
        Path(self.config.retry.state_file).write_text(
            json.dumps(state, indent=2), encoding="utf-8"
        )
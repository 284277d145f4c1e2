import json
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from itsjustintv.config import default_config
from itsjustintv.retry import DispatchRequest, DispatchResult, RetryManager


class FakeDispatcher:
    def __init__(self, success):
        self.success = success
        self.attempts = []
        self.called = threading.Event()

    def dispatch(self, request):
        self.attempts.append(request.attempt)
        self.called.set()
        return DispatchResult(success=self.success)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def config(tmp_path):
    cfg = default_config()
    cfg.retry.state_file = str(tmp_path / "retry_state.json")
    return cfg


def _request(attempt=1):
    return DispatchRequest(
        webhook_url="https://example.com/webhook",
        payload={"streamer_login": "alice"},
        streamer_key="alice",
        attempt=attempt,
    )


def test_add_request_increments_attempt_and_schedules(config):
    manager = RetryManager(config, FakeDispatcher(True))
    request = _request(attempt=1)
    before = datetime.now(timezone.utc)
    manager.add_request(request)

    assert request.attempt == 2
    assert manager.queue_size() == 1
    assert request.next_retry > before


def test_first_attempt_waits_initial_delay(config):
    manager = RetryManager(config, FakeDispatcher(True))
    before = datetime.now(timezone.utc)
    when = manager.calculate_next_retry(1)
    after = datetime.now(timezone.utc)
    assert before + config.retry.initial_delay <= when <= after + config.retry.initial_delay


def test_backoff_grows_and_is_capped(config):
    manager = RetryManager(config, FakeDispatcher(True))
    delays = [manager.calculate_next_retry(n) - datetime.now(timezone.utc) for n in (1, 2, 3)]
    assert delays[0] < delays[1] < delays[2]

    capped = manager.calculate_next_retry(5000) - datetime.now(timezone.utc)
    assert capped <= config.retry.max_delay
    assert capped > config.retry.max_delay - timedelta(seconds=1)


def test_exhausted_requests_are_dropped(config):
    dispatcher = FakeDispatcher(True)
    manager = RetryManager(config, dispatcher)
    manager.add_request(_request(attempt=config.retry.max_attempts))

    assert manager.queue_size() == 1
    assert manager.process_ready_retries() == []
    assert manager.queue_size() == 0
    assert dispatcher.attempts == []


def test_requests_not_yet_due_stay_queued(config):
    dispatcher = FakeDispatcher(True)
    manager = RetryManager(config, dispatcher)
    manager.add_request(_request())

    assert manager.process_ready_retries() == []
    assert manager.queue_size() == 1


def test_successful_retry_leaves_queue(config):
    dispatcher = FakeDispatcher(True)
    manager = RetryManager(config, dispatcher)
    request = _request()
    manager.add_request(request)
    request.next_retry = datetime.now(timezone.utc) - timedelta(seconds=1)

    ready = manager.process_ready_retries()
    assert ready == [request]
    assert dispatcher.called.wait(5)
    assert manager.queue_size() == 0


def test_failed_retry_is_requeued(config):
    dispatcher = FakeDispatcher(False)
    manager = RetryManager(config, dispatcher)
    request = _request()
    manager.add_request(request)
    attempt_before = request.attempt
    request.next_retry = datetime.now(timezone.utc) - timedelta(seconds=1)

    manager.process_ready_retries()
    assert _wait_for(lambda: manager.queue_size() == 1)
    assert dispatcher.attempts == [attempt_before]
    assert request.attempt == attempt_before + 1


def test_state_persists_across_restart(config):
    manager = RetryManager(config, FakeDispatcher(True))
    manager.start()
    manager.add_request(_request())
    manager.stop()

    saved = json.loads(open(config.retry.state_file).read())
    assert saved["queue"][0]["webhook_url"] == "https://example.com/webhook"
    assert saved["queue"][0]["attempt"] == 2

    restored = RetryManager(config, FakeDispatcher(True))
    restored.start()
    try:
        assert restored.queue_size() == 1
    finally:
        restored.stop()


def test_request_round_trip():
    request = _request(attempt=3)
    request.next_retry = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert DispatchRequest.from_dict(request.to_dict()) == request


def test_update_config_changes_limit(config):
    manager = RetryManager(config, FakeDispatcher(True))
    request = _request(attempt=1)
    manager.add_request(request)
    request.next_retry = datetime.now(timezone.utc) - timedelta(seconds=1)

    stricter = default_config()
    stricter.retry.max_attempts = 1
    manager.update_config(stricter)
    assert manager.process_ready_retries() == []
    assert manager.queue_size() == 0
from pathlib import Path
import sys
import threading
import time

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import server_clock
from server_clock import ClockUnavailableError, ServerClock, fetch_server_date


def test_offset_is_cached_after_first_call() -> None:
    calls = []
    local = {"now": 1000.0}

    def fetcher(origin: str) -> float:
        calls.append(origin)
        return 1012.5

    clock = ServerClock("https://example.test", fetcher=fetcher, time_fn=lambda: local["now"])
    assert clock.now() == pytest.approx(1012.5)
    local["now"] = 1001.0
    assert clock.now() == pytest.approx(1013.5)
    assert calls == ["https://example.test"]
    assert clock.offset == pytest.approx(12.5)


def test_failure_falls_back_to_local_clock_without_retry() -> None:
    calls = []

    def fetcher(origin: str) -> float:
        calls.append(origin)
        raise ClockUnavailableError("offline")

    clock = ServerClock("https://example.test", fetcher=fetcher, time_fn=lambda: 500.0)
    assert clock.now() == 500.0
    assert clock.now() == 500.0
    assert not clock.synced
    assert len(calls) == 1


def test_concurrent_callers_share_one_request() -> None:
    calls = []

    def slow_fetcher(origin: str) -> float:
        calls.append(origin)
        time.sleep(0.05)
        return time.time() + 3

    clock = ServerClock("https://example.test", fetcher=slow_fetcher)
    results = []
    threads = [threading.Thread(target=lambda: results.append(clock.now())) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(calls) == 1
    assert len(results) == 5


class _Response:
    def __init__(self, headers, status_code: int = 200) -> None:
        self.headers = headers
        self.status_code = status_code


def test_fetch_server_date_parses_date_header(monkeypatch: pytest.MonkeyPatch) -> None:
    seen = {}

    def fake_head(url, **kwargs):
        seen["url"] = url
        return _Response({"Date": "Wed, 24 Sep 2025 01:02:03 GMT"})

    monkeypatch.setattr(server_clock.requests, "head", fake_head)
    assert fetch_server_date("https://ticket.example") == 1758675723.0
    assert seen["url"] == "https://ticket.example/"


def test_fetch_server_date_raises_without_header(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(server_clock.requests, "head", lambda url, **kwargs: _Response({}, 204))
    with pytest.raises(ClockUnavailableError, match="no Date header"):
        fetch_server_date("https://ticket.example")


def test_fetch_server_date_wraps_network_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def boom(url, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(server_clock.requests, "head", boom)
    with pytest.raises(ClockUnavailableError):
        fetch_server_date("https://ticket.example")

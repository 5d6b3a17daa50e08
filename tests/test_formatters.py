"""Tests for formatters, rate limiter, keyed locks and the HTTP client."""
import pytest
import time
import threading
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timezone, timedelta
from unittest.mock import MagicMock, patch

import requests

from utils.formatters import format_timestamp, format_duration, format_confidence, format_value, time_ago
from utils.rate_limiter import RateLimiter
from utils.locks import KeyedLock
from utils.http_client import HTTPClient, APIError


def test_format_timestamp():
    assert format_timestamp(datetime(2026, 3, 2, 8, 5, tzinfo=timezone.utc)) == "2026-03-02 08:05 UTC"
    assert format_timestamp(None) == "N/A"


def test_format_duration():
    assert format_duration(45) == "45m"
    assert format_duration(135) == "2h 15m"
    assert format_duration(120) == "2h"
    assert format_duration(3000) == "2d 2h"
    assert format_duration(None) == "-"


def test_format_confidence_and_value():
    assert format_confidence(0.7) == "70%"
    assert format_confidence(None) == "N/A"
    assert format_value(4.5) == "4.5"
    assert format_value(None) == "-"


def test_time_ago():
    now = datetime.now(timezone.utc)
    assert "s ago" in time_ago(now - timedelta(seconds=30))
    assert "m ago" in time_ago(now - timedelta(minutes=5))
    assert "h ago" in time_ago(now - timedelta(hours=2))
    assert "d ago" in time_ago(now - timedelta(days=3))


def test_rate_limiter():
    rl = RateLimiter(600)  # 10/sec
    start = time.monotonic()
    for _ in range(5):
        rl.wait()
    elapsed = time.monotonic() - start
    assert elapsed < 2  # Should be fast at 10/sec


def test_rate_limiter_burst():
    rl = RateLimiter(60, burst=2)
    assert rl.try_acquire()
    assert rl.try_acquire()
    assert not rl.try_acquire()


def test_rate_limiter_rejects_zero():
    with pytest.raises(ValueError):
        RateLimiter(0)


def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    inside = []
    overlap = []

    def work():
        with locks.hold(("R1", "PUMP_001")):
            inside.append(1)
            if len(inside) > 1:
                overlap.append(True)
            time.sleep(0.01)
            inside.pop()

    threads = [threading.Thread(target=work) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert overlap == []
    assert len(locks) == 0


def test_keyed_lock_different_keys_do_not_block():
    locks = KeyedLock()
    with locks.hold("a"):
        done = threading.Event()

        def other():
            with locks.hold("b"):
                done.set()

        threading.Thread(target=other).start()
        assert done.wait(1)


def _response(status, body=None, headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.text = str(body)
    resp.headers = headers or {}
    return resp


def test_http_client_success():
    client = HTTPClient("http://provider/api/")
    with patch.object(client.session, "request", return_value=_response(200, {"ok": True})) as req:
        assert client.get("/health") == {"ok": True}
    assert req.call_args[0][1] == "http://provider/api/health"
    assert client.session.headers["User-Agent"].startswith("alertmon/")


def test_http_client_404_not_retried():
    client = HTTPClient("http://provider", max_retries=3, backoff_seconds=0)
    with patch.object(client.session, "request", return_value=_response(404, "missing")) as req:
        with pytest.raises(APIError) as exc:
            client.get("/x")
    assert exc.value.status_code == 404
    assert req.call_count == 1


def test_http_client_retries_5xx():
    client = HTTPClient("http://provider", max_retries=2, backoff_seconds=0)
    responses = [_response(503), _response(200, {"v": 1})]
    with patch.object(client.session, "request", side_effect=responses):
        assert client.get("/x") == {"v": 1}


def test_http_client_gives_up_on_connection_errors():
    client = HTTPClient("http://provider", max_retries=1, backoff_seconds=0)
    with patch.object(client.session, "request", side_effect=requests.ConnectionError("refused")) as req:
        with pytest.raises(requests.ConnectionError):
            client.get("/x")
    assert req.call_count == 2

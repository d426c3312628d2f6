"""
tests.test_rate_limit
~~~~~~~~~~~~~~~~~~~~~

WebSocketRateLimiter 单元测试。
"""
from __future__ import annotations

from unittest.mock import patch

from livecast.core.rate_limit import WebSocketRateLimiter


def test_first_message_always_allowed() -> None:
    limiter = WebSocketRateLimiter(interval_seconds=0.5)
    assert limiter.is_allowed("p1") is True


def test_websocket_rate_limiter_interval() -> None:
    """间隔内的第二条被拦截，超过间隔后放行。"""
    limiter = WebSocketRateLimiter(interval_seconds=0.5)

    with patch("livecast.core.rate_limit.time.monotonic", side_effect=[100.0, 100.1, 100.7]):
        assert limiter.is_allowed("p1") is True
        assert limiter.is_allowed("p1") is False
        assert limiter.is_allowed("p1") is True


def test_clients_are_independent() -> None:
    limiter = WebSocketRateLimiter(interval_seconds=60)
    assert limiter.is_allowed("p1") is True
    assert limiter.is_allowed("p2") is True
    assert limiter.is_allowed("p1") is False


def test_remove_client() -> None:
    limiter = WebSocketRateLimiter(interval_seconds=60)
    limiter.is_allowed("p1")
    limiter.remove_client("p1")

    assert "p1" not in limiter._last_message_time
    assert limiter.is_allowed("p1") is True

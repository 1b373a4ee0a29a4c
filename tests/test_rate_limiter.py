from __future__ import annotations

import time

import pytest

from sunrise.services.rate_limiter import LIMITER_PRESETS, RateLimiter, RateLimiters


def test_allows_up_to_limit_then_blocks():
    lim = RateLimiter(limit=3, interval_s=60)
    results = [lim.check("ip") for _ in range(4)]
    assert [r.success for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert all(r.limit == 3 for r in results)


def test_tokens_are_independent():
    lim = RateLimiter(limit=1, interval_s=60)
    assert lim.check("a").success
    assert not lim.check("a").success
    assert lim.check("b").success


def test_window_expires():
    lim = RateLimiter(limit=1, interval_s=0.05)
    assert lim.check("ip").success
    assert not lim.check("ip").success
    time.sleep(0.1)
    assert lim.check("ip").success


def test_peek_does_not_consume():
    lim = RateLimiter(limit=2, interval_s=60)
    lim.check("ip")
    p1 = lim.peek("ip")
    p2 = lim.peek("ip")
    assert p1.remaining == p2.remaining == 1
    assert lim.check("ip").success


def test_reset_and_clear():
    lim = RateLimiter(limit=1, interval_s=60)
    lim.check("a")
    lim.check("b")
    lim.reset("a")
    assert lim.check("a").success
    assert not lim.check("b").success
    lim.clear()
    assert lim.check("b").success


def test_lru_bounds_tracked_tokens():
    lim = RateLimiter(limit=1, interval_s=60, max_tokens=2)
    lim.check("a")
    lim.check("b")
    lim.check("c")
    # "a" was evicted, so it starts fresh
    assert lim.check("a").success


def test_headers_and_retry_after():
    lim = RateLimiter(limit=1, interval_s=30)
    result = lim.check("ip")
    headers = result.headers()
    assert headers["X-RateLimit-Limit"] == "1"
    assert headers["X-RateLimit-Remaining"] == "0"
    assert int(headers["X-RateLimit-Reset"]) >= int(time.time())
    assert 1 <= result.retry_after() <= 31


def test_named_presets():
    limiters = RateLimiters()
    for name, (limit, _interval) in LIMITER_PRESETS.items():
        assert limiters.get(name).limit == limit
    assert limiters["auth"].limit == 5
    with pytest.raises(KeyError):
        limiters.get("nope")

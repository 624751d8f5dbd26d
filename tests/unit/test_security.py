from ragsync.services.security import InMemoryRateLimiter, client_key


def test_client_key_prefers_first_forwarded_hop():
    assert client_key("203.0.113.9, 10.0.0.1", "10.0.0.1") == "203.0.113.9"
    assert client_key(" , 10.0.0.1", "172.16.0.4") == "172.16.0.4"
    assert client_key(None, None) == "unknown"


def test_rate_limiter_enforces_per_key_limit():
    limiter = InMemoryRateLimiter(window_seconds=60, per_key_limit=2, burst_limit=10)
    assert limiter.allow("10.0.0.1", now=0.0) is True
    assert limiter.allow("10.0.0.1", now=5.0) is True
    assert limiter.allow("10.0.0.1", now=10.0) is False
    assert limiter.allow("10.0.0.1", now=61.0) is True


def test_rate_limiter_enforces_burst_control():
    limiter = InMemoryRateLimiter(window_seconds=60, per_key_limit=100, burst_limit=2)
    assert limiter.allow("10.0.0.1", now=0.0) is True
    assert limiter.allow("10.0.0.1", now=0.1) is True
    assert limiter.allow("10.0.0.1", now=0.2) is False
    assert limiter.allow("10.0.0.2", now=0.2) is True
    assert limiter.allow("10.0.0.1", now=1.5) is True


def test_rate_limiter_bounds_tracked_keys():
    limiter = InMemoryRateLimiter(window_seconds=60, per_key_limit=1, burst_limit=10, max_keys=2)
    for key in ("a", "b", "c"):
        assert limiter.allow(key, now=0.0) is True

    # "a" was evicted, so its quota starts over
    assert limiter.allow("a", now=1.0) is True
    assert limiter.allow("c", now=1.0) is False


def test_reset_clears_state():
    limiter = InMemoryRateLimiter(window_seconds=60, per_key_limit=1, burst_limit=10)
    limiter.allow("a", now=0.0)
    limiter.reset()
    assert limiter.allow("a", now=0.0) is True

from datetime import datetime, timedelta, timezone

from lib.rate_limiter import RateLimiter

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

def test_attempts_within_limit_are_allowed(storage):
    limiter = RateLimiter(storage)
    remaining = [limiter.check_limit('ip:1', 'login', 3, 15, now=NOW).remaining for _ in range(3)]
    assert remaining == [2, 1, 0]

def test_attempt_over_limit_is_blocked_until_window_ends(storage):
    limiter = RateLimiter(storage)
    for _ in range(3):
        limiter.check_limit('ip:1', 'login', 3, 15, now=NOW)

    decision = limiter.check_limit('ip:1', 'login', 3, 15, now=NOW + timedelta(minutes=5))
    assert decision.allowed is False
    assert decision.blocked_until == NOW + timedelta(minutes=15)

def test_window_resets(storage):
    limiter = RateLimiter(storage)
    for _ in range(4):
        limiter.check_limit('ip:1', 'login', 3, 15, now=NOW)

    decision = limiter.check_limit('ip:1', 'login', 3, 15, now=NOW + timedelta(minutes=15))
    assert decision.allowed is True
    assert decision.remaining == 2

def test_endpoints_are_counted_separately(storage):
    limiter = RateLimiter(storage)
    for _ in range(3):
        limiter.check_limit('ip:1', 'login', 3, 15, now=NOW)
    assert limiter.check_limit('ip:1', 'signup', 3, 15, now=NOW).allowed is True

"""Tests for the per-team sliding-window rate limiter."""

import uuid

from teamchat.rate_limit import RateLimiter


def test_limit_then_retry_after():
    limiter = RateLimiter(max_requests=2, window_sec=60)
    team = uuid.uuid4()

    assert limiter.check(team, now=100.0) == (True, None)
    assert limiter.check(team, now=110.0) == (True, None)
    allowed, retry_after = limiter.check(team, now=120.0)

    assert allowed is False
    assert retry_after == 40.0


def test_window_slides():
    limiter = RateLimiter(max_requests=1, window_sec=60)
    team = uuid.uuid4()

    assert limiter.check(team, now=0.0)[0]
    assert not limiter.check(team, now=59.0)[0]
    assert limiter.check(team, now=60.5)[0]


def test_teams_are_independent():
    limiter = RateLimiter(max_requests=1, window_sec=60)
    a, b = uuid.uuid4(), uuid.uuid4()

    assert limiter.check(a, now=0.0)[0]
    assert limiter.check(b, now=1.0)[0]
    assert not limiter.check(a, now=2.0)[0]


def test_idle_teams_are_dropped():
    limiter = RateLimiter(max_requests=5, window_sec=60)
    for _ in range(10):
        limiter.check(uuid.uuid4(), now=0.0)
    assert limiter.tracked_teams == 10

    active = uuid.uuid4()
    limiter.check(active, now=120.0)

    assert limiter.tracked_teams == 1


def test_reset():
    limiter = RateLimiter(max_requests=1, window_sec=60)
    team = uuid.uuid4()
    limiter.check(team, now=0.0)
    limiter.reset()
    assert limiter.check(team, now=1.0)[0]
    assert limiter.tracked_teams == 1

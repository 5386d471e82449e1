"""Unit tests for the in-memory rate limiter."""

from __future__ import annotations

from datetime import timedelta

import pytest

from accounts.rate_limiter import InMemoryRateLimiter
from errors import RateLimitError


def test_requests_within_budget_are_allowed(clock) -> None:
    """Remaining capacity counts down within a window."""
    limiter = InMemoryRateLimiter(60, 3, now_provider=clock.now)

    decisions = [limiter.hit("10.0.0.1") for _ in range(3)]

    assert all(decision.allowed for decision in decisions)
    assert [decision.remaining for decision in decisions] == [2, 1, 0]
    assert limiter.remaining("10.0.0.1") == 0


def test_check_raises_with_retry_after(clock, caplog) -> None:
    """Exceeding the budget raises with seconds until the window resets."""
    limiter = InMemoryRateLimiter(900, 2, name="auth", now_provider=clock.now)
    limiter.check("client")
    clock.advance(seconds=100)
    limiter.check("client")

    with pytest.raises(RateLimitError) as excinfo:
        limiter.check("client")

    assert excinfo.value.retry_after == 800
    assert excinfo.value.to_dict()["details"]["retry_after"] == 800
    assert "Rate limit auth exceeded" in caplog.text


def test_window_resets_after_expiry(clock) -> None:
    """A new window starts once the old one has elapsed."""
    limiter = InMemoryRateLimiter(60, 1, now_provider=clock.now)
    limiter.hit("client")
    assert limiter.hit("client").allowed is False

    clock.advance(seconds=60)

    assert limiter.hit("client").allowed is True
    assert limiter.reset_at("client") == clock.now() + timedelta(seconds=60)


def test_cleanup_drops_only_expired_windows(clock) -> None:
    """Cleanup removes windows whose reset time has passed."""
    limiter = InMemoryRateLimiter(60, 5, now_provider=clock.now)
    limiter.hit("old")
    clock.advance(seconds=30)
    limiter.hit("fresh")
    clock.advance(seconds=30)

    assert limiter.cleanup() == 1
    assert limiter.reset_at("old") is None
    assert limiter.reset_at("fresh") is not None


def test_cleanup_thread_starts_and_stops(clock) -> None:
    """The background sweep stops promptly and clears state."""
    limiter = InMemoryRateLimiter(60, 5, now_provider=clock.now)
    limiter.hit("client")

    limiter.start_cleanup(0.01)
    limiter.stop_cleanup(timeout=1.0)

    assert limiter.remaining("client") == 5


def test_invalid_configuration_is_rejected() -> None:
    """Windows and budgets must be positive."""
    with pytest.raises(ValueError):
        InMemoryRateLimiter(0, 5)

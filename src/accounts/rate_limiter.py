"""In-memory fixed-window rate limiting for a single process."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Event, Lock, Thread
from typing import Callable

from errors import RateLimitError
from time_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of counting one request against a window."""

    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: int


@dataclass
class _Window:
    count: int
    reset_at: datetime


class InMemoryRateLimiter:
    """Count requests per identifier in fixed windows.

    Counts are approximate across processes and reset on restart.
    """

    def __init__(
        self,
        window_seconds: int,
        max_requests: int,
        *,
        name: str = "default",
        now_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the limiter with its window and request budget."""
        if window_seconds < 1 or max_requests < 1:
            raise ValueError("Rate limit window and max requests must be positive.")
        self.name = name
        self._window = timedelta(seconds=window_seconds)
        self._max_requests = max_requests
        self._now = now_provider
        self._lock = Lock()
        self._windows: dict[str, _Window] = {}
        self._stop_event = Event()
        self._cleanup_thread: Thread | None = None

    def hit(self, identifier: str) -> RateLimitDecision:
        """Count one request and report whether it is within budget."""
        now = self._now()
        with self._lock:
            window = self._windows.get(identifier)
            if window is None or now >= window.reset_at:
                window = _Window(count=0, reset_at=now + self._window)
                self._windows[identifier] = window
            window.count += 1
            allowed = window.count <= self._max_requests
            remaining = max(0, self._max_requests - window.count)
            reset_at = window.reset_at
        retry_after = 0 if allowed else max(1, math.ceil((reset_at - now).total_seconds()))
        return RateLimitDecision(allowed, remaining, reset_at, retry_after)

    def check(self, identifier: str) -> RateLimitDecision:
        """Count one request, raising RateLimitError when over budget."""
        decision = self.hit(identifier)
        if not decision.allowed:
            logger.warning("Rate limit %s exceeded for %s", self.name, identifier)
            raise RateLimitError(identifier, decision.retry_after)
        return decision

    def remaining(self, identifier: str) -> int:
        """Return how many requests remain in the current window."""
        now = self._now()
        with self._lock:
            window = self._windows.get(identifier)
            if window is None or now >= window.reset_at:
                return self._max_requests
            return max(0, self._max_requests - window.count)

    def reset_at(self, identifier: str) -> datetime | None:
        """Return when the identifier's window resets, if it has one."""
        now = self._now()
        with self._lock:
            window = self._windows.get(identifier)
            if window is None or now >= window.reset_at:
                return None
            return window.reset_at

    def cleanup(self) -> int:
        """Drop expired windows and return how many were removed."""
        now = self._now()
        with self._lock:
            expired = [key for key, window in self._windows.items() if now >= window.reset_at]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug("Rate limiter %s dropped %s expired windows", self.name, len(expired))
        return len(expired)

    def start_cleanup(self, interval_seconds: float) -> None:
        """Start a daemon thread that periodically drops expired windows."""
        if self._cleanup_thread and self._cleanup_thread.is_alive():
            return
        self._stop_event.clear()
        self._cleanup_thread = Thread(
            target=self._cleanup_loop,
            args=(interval_seconds,),
            name=f"rate-limit-cleanup-{self.name}",
            daemon=True,
        )
        self._cleanup_thread.start()

    def stop_cleanup(self, timeout: float | None = 5.0) -> None:
        """Stop the cleanup thread and release all windows."""
        self._stop_event.set()
        if self._cleanup_thread:
            self._cleanup_thread.join(timeout=timeout)
            self._cleanup_thread = None
        with self._lock:
            self._windows.clear()

    def _cleanup_loop(self, interval_seconds: float) -> None:
        while not self._stop_event.wait(interval_seconds):
            try:
                self.cleanup()
            except Exception:
                logger.exception("Rate limiter %s cleanup failed", self.name)

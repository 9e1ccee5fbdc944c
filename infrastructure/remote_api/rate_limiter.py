import time
from collections import deque
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from core.errors import RateLimited


class RateLimiter:
    """Thread-safe client-side limiter for the remote work-tracking API.

    Enforces a concurrency ceiling, a rolling cost budget per window and an
    optional per-day request cap, and honours server pauses reported via
    ``Retry-After`` / ``X-RateLimit-*`` headers. ``acquire`` waits at most
    ``max_wait`` seconds; when the slot would open later it raises
    :class:`RateLimited` carrying the resume time.
    """

    def __init__(
        self,
        max_concurrent: int = 4,
        max_cost_per_window: int = 100,
        window_seconds: float = 60.0,
        max_requests_per_day: Optional[int] = None,
        max_wait: float = 30.0,
        clock: Callable[[], float] = time.time,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self._lock = Lock()
        self._clock = clock
        self._sleeper = sleeper
        self.max_concurrent = max(1, max_concurrent)
        self.max_cost_per_window = max(1, max_cost_per_window)
        self.window_seconds = window_seconds
        self.max_requests_per_day = max_requests_per_day
        self.max_wait = max_wait
        self._next_ts = 0.0
        self._in_flight = 0
        self._costs: Deque[Tuple[float, int]] = deque()
        self._day: Optional[str] = None
        self._day_count = 0
        self.last_remaining: Optional[int] = None
        self.last_reset_epoch: Optional[float] = None
        self.last_wait: float = 0.0

    def _window_cost(self, now: float) -> int:
        while self._costs and now - self._costs[0][0] >= self.window_seconds:
            self._costs.popleft()
        return sum(cost for _, cost in self._costs)

    def _roll_day(self, now: float) -> None:
        day = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d")
        if day != self._day:
            self._day = day
            self._day_count = 0

    @staticmethod
    def _next_midnight(now: float) -> float:
        current = datetime.fromtimestamp(now, tz=timezone.utc)
        tomorrow = (current + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return tomorrow.timestamp()

    def _blocked_until(self, now: float, cost: int) -> Tuple[float, str]:
        """Earliest time this request may start (<= now when it may start now)."""
        self._roll_day(now)
        if self.max_requests_per_day is not None and self._day_count >= self.max_requests_per_day:
            return self._next_midnight(now), "daily request cap reached"
        if self._next_ts > now:
            return self._next_ts, "server requested a pause"
        if self._in_flight >= self.max_concurrent:
            # no deterministic release time; poll again shortly
            return now + 0.05, "too many concurrent requests"
        used = self._window_cost(now)
        if self._costs and used + cost > self.max_cost_per_window:
            freed = used
            for ts, spent in self._costs:
                freed -= spent
                if freed + cost <= self.max_cost_per_window:
                    return ts + self.window_seconds, "cost budget exhausted"
        return now, ""

    def acquire(self, cost: int = 1) -> None:
        deadline = self._clock() + self.max_wait
        while True:
            with self._lock:
                now = self._clock()
                ready_at, reason = self._blocked_until(now, cost)
                if ready_at <= now:
                    self._in_flight += 1
                    self._costs.append((now, cost))
                    self._day_count += 1
                    self.last_wait = 0.0
                    return
                self.last_wait = ready_at - now
            if ready_at > deadline:
                raise RateLimited(f"Client rate limit: {reason}", resume_at=ready_at)
            self._sleeper(min(ready_at - now, 2.0))

    def release(self) -> None:
        with self._lock:
            if self._in_flight > 0:
                self._in_flight -= 1

    def update(self, headers: Dict[str, Any]) -> None:
        """Absorb rate-limit hints from a response's headers."""
        retry_after = _header_number(headers, "Retry-After")
        remaining = _header_number(headers, "X-RateLimit-Remaining")
        reset_epoch = _header_number(headers, "X-RateLimit-Reset")
        with self._lock:
            now = self._clock()
            if retry_after is not None:
                self._next_ts = max(self._next_ts, now + retry_after)
            if reset_epoch is not None:
                self.last_reset_epoch = reset_epoch
            if remaining is not None:
                self.last_remaining = int(remaining)
                if remaining <= 1:
                    # quota almost spent: hold off until the advertised reset
                    resume = reset_epoch if reset_epoch and reset_epoch > now else now + 60
                    self._next_ts = max(self._next_ts, resume)
            self.last_wait = max(0.0, self._next_ts - now)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            self._roll_day(now)
            return {
                "in_flight": self._in_flight,
                "window_cost": self._window_cost(now),
                "requests_today": self._day_count,
                "paused_for": max(0.0, self._next_ts - now),
                "last_remaining": self.last_remaining,
                "last_reset_epoch": self.last_reset_epoch,
            }


def _header_number(headers: Dict[str, Any], name: str) -> Optional[float]:
    raw = headers.get(name)
    if raw is None:
        raw = headers.get(name.lower())
    if raw in (None, ""):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None

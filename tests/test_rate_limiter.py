import pytest

from core.errors import RateLimited
from infrastructure.remote_api.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.start = start
        self.now = start
        self.slept = []

    def time(self):
        return self.now

    def sleep(self, seconds):
        self.slept.append(seconds)
        self.now += seconds


def _limiter(clock, **kwargs):
    return RateLimiter(clock=clock.time, sleeper=clock.sleep, **kwargs)


def test_acquire_within_budget_does_not_wait():
    clock = FakeClock()
    limiter = _limiter(clock, max_cost_per_window=10)

    for _ in range(5):
        limiter.acquire(2)
        limiter.release()

    assert clock.slept == []
    assert limiter.snapshot()["window_cost"] == 10


def test_cost_budget_waits_for_window():
    clock = FakeClock()
    limiter = _limiter(clock, max_cost_per_window=10, window_seconds=60, max_wait=120)

    limiter.acquire(6)
    limiter.release()
    limiter.acquire(6)
    limiter.release()

    assert clock.now - clock.start >= 60
    assert limiter.snapshot()["window_cost"] == 6


def test_wait_beyond_max_wait_raises_with_resume_time():
    clock = FakeClock()
    limiter = _limiter(clock, max_cost_per_window=10, window_seconds=60, max_wait=5)

    limiter.acquire(10)
    limiter.release()
    with pytest.raises(RateLimited) as info:
        limiter.acquire(1)

    assert info.value.resume_at == pytest.approx(clock.start + 60)
    assert clock.slept == []


def test_concurrency_ceiling():
    clock = FakeClock()
    limiter = _limiter(clock, max_concurrent=1, max_wait=0.01)

    limiter.acquire()
    with pytest.raises(RateLimited):
        limiter.acquire()
    limiter.release()
    limiter.acquire()
    assert limiter.snapshot()["in_flight"] == 1


def test_retry_after_header_pauses_requests():
    clock = FakeClock()
    limiter = _limiter(clock)

    limiter.update({"Retry-After": "5"})
    assert limiter.snapshot()["paused_for"] == pytest.approx(5)

    limiter.acquire()
    assert clock.now - clock.start >= 5


def test_exhausted_remaining_waits_until_reset():
    clock = FakeClock()
    limiter = _limiter(clock, max_wait=60)
    reset = clock.now + 20

    limiter.update({"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": str(reset)})

    assert limiter.last_remaining == 0
    assert limiter.last_reset_epoch == reset
    limiter.acquire()
    assert clock.now >= reset


def test_daily_cap():
    clock = FakeClock()
    limiter = _limiter(clock, max_requests_per_day=2)

    limiter.acquire()
    limiter.release()
    limiter.acquire()
    limiter.release()
    with pytest.raises(RateLimited) as info:
        limiter.acquire()
    assert info.value.resume_at > clock.now
    assert limiter.snapshot()["requests_today"] == 2

import threading

import pytest

from routecast.backend.weather_providers import RateLimiter

from conftest import FakeClock


def test_first_acquire_does_not_wait():
    clock = FakeClock()
    limiter = RateLimiter(10, clock=clock, sleep=clock.sleep)
    assert limiter.acquire() == 0.0
    assert clock.sleeps == []
    assert limiter.last_request_ts == 100.0


def test_back_to_back_calls_are_spaced_by_min_interval():
    clock = FakeClock()
    limiter = RateLimiter(5, clock=clock, sleep=clock.sleep)
    stamps = []
    for _ in range(4):
        limiter.acquire()
        stamps.append(clock.now)
    gaps = [b - a for a, b in zip(stamps, stamps[1:])]
    assert gaps == pytest.approx([0.2, 0.2, 0.2])


def test_no_wait_after_idle_period():
    clock = FakeClock()
    limiter = RateLimiter(1, clock=clock, sleep=clock.sleep)
    limiter.acquire()
    clock.now += 5.0
    assert limiter.acquire() == 0.0


def test_partial_wait():
    clock = FakeClock()
    limiter = RateLimiter(1, clock=clock, sleep=clock.sleep)
    limiter.acquire()
    clock.now += 0.25
    assert limiter.acquire() == pytest.approx(0.75)


def test_reset_forgets_last_dispatch():
    clock = FakeClock()
    limiter = RateLimiter(1, clock=clock, sleep=clock.sleep)
    limiter.acquire()
    limiter.reset()
    assert limiter.acquire() == 0.0


@pytest.mark.parametrize('rps', [0, -1])
def test_non_positive_rate_rejected(rps):
    with pytest.raises(ValueError):
        RateLimiter(rps)


def test_concurrent_callers_are_serialized():
    clock = FakeClock()
    limiter = RateLimiter(10, clock=clock, sleep=clock.sleep)

    def worker():
        limiter.acquire()

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    # every caller after the first waits one full interval
    assert clock.sleeps == pytest.approx([0.1] * 5)
    assert clock.now == pytest.approx(100.5)

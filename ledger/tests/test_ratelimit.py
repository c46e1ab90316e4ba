import pytest

from ledger.ratelimit import SlidingWindowRateLimiter


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_allows_up_to_limit_within_window():
    ticks = FakeMonotonic()
    limiter = SlidingWindowRateLimiter(3, 60, clock=ticks)

    assert [limiter.allow("10.0.0.1") for _ in range(4)] == [True, True, True, False]


def test_window_slides():
    ticks = FakeMonotonic()
    limiter = SlidingWindowRateLimiter(2, 60, clock=ticks)
    limiter.allow("k")
    ticks.now += 30
    limiter.allow("k")
    assert not limiter.allow("k")

    # The first hit falls out of the window, the second is still inside
    ticks.now += 31
    assert limiter.allow("k")
    assert not limiter.allow("k")


def test_keys_are_independent():
    limiter = SlidingWindowRateLimiter(1, 60, clock=FakeMonotonic())

    assert limiter.allow("a")
    assert limiter.allow("b")
    assert not limiter.allow("a")


def test_idle_keys_evicted():
    ticks = FakeMonotonic()
    limiter = SlidingWindowRateLimiter(5, 10, clock=ticks)
    for key in ("a", "b", "c"):
        limiter.allow(key)
    assert len(limiter) == 3

    ticks.now += 11
    limiter.allow("d")

    assert len(limiter) == 1


def test_retry_after():
    ticks = FakeMonotonic()
    limiter = SlidingWindowRateLimiter(1, 60, clock=ticks)
    limiter.allow("k")
    ticks.now += 15

    assert limiter.retry_after("k") == pytest.approx(45)
    assert limiter.retry_after("unknown") == 0.0


def test_rejects_bad_configuration():
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(0, 60)

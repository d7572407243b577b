import threading

from conftest import FakeClock

from paperchat.core.rate_limit import TierLimit, TierRateLimiter, load_tier_limits


def make_limiter(clock, requests=3, per_minutes=1, delay_ms=100, margin_ms=1000):
    limits = {"test": TierLimit(requests=requests, per_minutes=per_minutes, delay_between_chunks_ms=delay_ms)}
    return TierRateLimiter(limits=limits, safety_margin_ms=margin_ms, clock=clock, sleep=clock.sleep)


class TestTierRateLimiter:
    """Tests for the fixed-window tier limiter."""

    def test_under_limit_does_not_sleep(self):
        clock = FakeClock()
        limiter = make_limiter(clock)

        limiter.acquire("test")
        limiter.acquire("test")

        assert clock.sleeps == []
        assert limiter.snapshot("test").request_count == 2

    def test_full_window_sleeps_remaining_time_plus_margin(self):
        clock = FakeClock()
        limiter = make_limiter(clock, requests=2)

        limiter.acquire("test")
        limiter.acquire("test")
        clock.advance(10)
        limiter.acquire("test")

        assert clock.sleeps == [51.0]
        assert limiter.snapshot("test").request_count == 1

    def test_count_never_exceeds_limit(self):
        clock = FakeClock()
        limiter = make_limiter(clock, requests=3)

        for _ in range(7):
            limiter.acquire("test")
            assert limiter.snapshot("test").request_count <= 3

        assert len(clock.sleeps) == 2

    def test_window_rollover_resets_counter(self):
        clock = FakeClock()
        limiter = make_limiter(clock, requests=2)

        limiter.acquire("test")
        limiter.acquire("test")
        clock.advance(61)
        limiter.acquire("test")

        assert clock.sleeps == []
        budget = limiter.snapshot("test")
        assert budget.request_count == 1
        assert budget.window_start == clock.now * 1000.0

    def test_unknown_tier_uses_free_limits(self):
        clock = FakeClock()
        limiter = TierRateLimiter(clock=clock, sleep=clock.sleep)

        limiter.acquire("platinum")

        assert limiter.snapshot("free").request_count == 1
        assert limiter.snapshot("free").limit == 15

    def test_delay_for_tier(self):
        limiter = TierRateLimiter()

        assert limiter.delay_for("free") == 4.0
        assert limiter.delay_for("pro") == 1.0
        assert limiter.delay_for("enterprise") == 0.25

    def test_snapshot_is_a_copy(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        limiter.acquire("test")

        snap = limiter.snapshot("test")
        snap.request_count = 99

        assert limiter.snapshot("test").request_count == 1

    def test_concurrent_acquires_are_counted_exactly(self):
        clock = FakeClock()
        limiter = make_limiter(clock, requests=100)

        threads = [threading.Thread(target=limiter.acquire, args=("test",)) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert limiter.snapshot("test").request_count == 20


def test_load_tier_limits_from_table():
    limits = load_tier_limits({"x": {"requests": 5, "per_minutes": 2, "delay_between_chunks_ms": 10}})

    assert limits["x"].requests == 5
    assert limits["x"].window_ms == 120_000

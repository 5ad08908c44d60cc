"""
Market Intel - Resilience Helper Tests
Tests for retry with jitter, token-bucket rate limiting, the circuit
breaker state machine and the fixed-window operation limiter.
"""
import asyncio
import pytest
import sys
import os
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from resilience import (  # noqa: E402
    CircuitBreaker,
    CircuitOpenError,
    FixedWindowRateLimiter,
    RateLimitExceededError,
    TokenBucketRateLimiter,
    backoff_delay_ms,
    ensure_rate_limit,
    get_breaker_states,
    get_circuit_breaker,
    retry_with_jitter,
)

pytestmark = pytest.mark.timeout(10)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# ==============================================================================
# Retry
# ==============================================================================

class TestBackoff:

    @pytest.mark.parametrize("attempt,ceiling", [(0, 200), (1, 400), (2, 800), (3, 1500), (6, 1500)])
    def test_delay_is_jittered_below_ceiling(self, attempt, ceiling):
        for _ in range(20):
            delay = backoff_delay_ms(attempt, base_ms=200, max_ms=1500)
            assert ceiling * 0.5 <= delay <= ceiling


class TestRetryWithJitter:

    @pytest.fixture(autouse=True)
    def no_sleep(self):
        with patch("resilience.backoff_delay_ms", return_value=0):
            yield

    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        calls = []

        async def fn():
            calls.append(1)
            return "ok"

        assert await retry_with_jitter(fn) == "ok"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        calls = []

        async def fn():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("boom")
            return "ok"

        assert await retry_with_jitter(fn, retries=2) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        calls = []

        async def fn():
            calls.append(1)
            raise ConnectionError("still down")

        with pytest.raises(ConnectionError):
            await retry_with_jitter(fn, retries=2)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_no_retry_on_rate_limit(self):
        calls = []

        async def fn():
            calls.append(1)
            raise RateLimitExceededError("ai:openai", 1.0)

        with pytest.raises(RateLimitExceededError):
            await retry_with_jitter(fn, retries=5)
        assert len(calls) == 1


# ==============================================================================
# Token bucket
# ==============================================================================

class TestTokenBucket:

    def test_allows_up_to_limit_then_blocks(self):
        clock = FakeClock()
        limiter = TokenBucketRateLimiter(limit=3, interval_ms=3000, clock=clock)
        assert [limiter.try_acquire("k")[0] for _ in range(3)] == [True, True, True]
        allowed, wait = limiter.try_acquire("k")
        assert allowed is False
        assert wait == pytest.approx(1.0)

    def test_refills_over_time(self):
        clock = FakeClock()
        limiter = TokenBucketRateLimiter(limit=2, interval_ms=2000, clock=clock)
        limiter.try_acquire("k")
        limiter.try_acquire("k")
        assert limiter.try_acquire("k")[0] is False
        clock.advance(1.0)
        assert limiter.try_acquire("k")[0] is True

    def test_refill_never_exceeds_limit(self):
        clock = FakeClock()
        limiter = TokenBucketRateLimiter(limit=2, interval_ms=1000, clock=clock)
        limiter.try_acquire("k")
        clock.advance(60)
        assert limiter.remaining("k") == 2

    def test_keys_are_independent(self):
        limiter = TokenBucketRateLimiter(limit=1, interval_ms=10_000, clock=FakeClock())
        assert limiter.try_acquire("a")[0] is True
        assert limiter.try_acquire("b")[0] is True
        assert limiter.try_acquire("a")[0] is False

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            TokenBucketRateLimiter(limit=0, interval_ms=1000)

    def test_ensure_rate_limit_raises_when_exhausted(self):
        for _ in range(2):
            ensure_rate_limit("ai:test", limit=2, interval_ms=60_000)
        with pytest.raises(RateLimitExceededError) as exc:
            ensure_rate_limit("ai:test", limit=2, interval_ms=60_000)
        assert exc.value.key == "ai:test"
        assert exc.value.retry_after > 0


# ==============================================================================
# Circuit breaker
# ==============================================================================

async def _fail():
    raise RuntimeError("provider down")


async def _succeed():
    return "ok"


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker("ai:x", failure_threshold=3, cooldown_ms=15_000, clock=FakeClock())
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.execute(_fail)
        assert breaker.state == CircuitBreaker.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.execute(_succeed)

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("ai:x", failure_threshold=3, clock=FakeClock())
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.execute(_fail)
        assert await breaker.execute(_succeed) == "ok"
        assert breaker.failures == 0
        assert breaker.state == CircuitBreaker.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_after_cooldown_then_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker("ai:x", failure_threshold=1, cooldown_ms=15_000, clock=clock)
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)
        assert breaker.state == CircuitBreaker.OPEN

        clock.advance(15)
        assert breaker.state == CircuitBreaker.HALF_OPEN
        assert await breaker.execute(_succeed) == "ok"
        assert breaker.state == CircuitBreaker.CLOSED

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("ai:x", failure_threshold=3, cooldown_ms=1000, clock=clock)
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.execute(_fail)
        clock.advance(1)
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)
        assert breaker.state == CircuitBreaker.OPEN

    @pytest.mark.asyncio
    async def test_ignored_exceptions_are_not_failures(self):
        breaker = CircuitBreaker("ai:x", failure_threshold=1, clock=FakeClock())

        async def over_budget():
            raise ValueError("budget")

        with pytest.raises(ValueError):
            await breaker.execute(over_budget, ignore=(ValueError,))
        assert breaker.failures == 0
        assert breaker.state == CircuitBreaker.CLOSED

    @pytest.mark.asyncio
    async def test_ignored_exception_frees_half_open_trial(self):
        clock = FakeClock()
        breaker = CircuitBreaker("ai:x", failure_threshold=1, cooldown_ms=1000, clock=clock)
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)
        clock.advance(1)

        async def over_budget():
            raise ValueError("budget")

        with pytest.raises(ValueError):
            await breaker.execute(over_budget, ignore=(ValueError,))
        assert breaker.state == CircuitBreaker.HALF_OPEN
        assert await breaker.execute(_succeed) == "ok"
        assert breaker.state == CircuitBreaker.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_trial_frees_slot(self):
        clock = FakeClock()
        breaker = CircuitBreaker("ai:x", failure_threshold=1, cooldown_ms=1000, clock=clock)
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)
        clock.advance(1)

        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await breaker.execute(cancelled)
        assert breaker.state == CircuitBreaker.HALF_OPEN
        assert await breaker.execute(_succeed) == "ok"

    def test_registry_shares_breakers_and_reports_states(self):
        a = get_circuit_breaker("ai:openai", failure_threshold=3, cooldown_ms=15_000)
        assert get_circuit_breaker("ai:openai") is a
        states = get_breaker_states()
        assert states["ai:openai"] == {
            "state": "closed", "failures": 0, "failure_threshold": 3, "cooldown_ms": 15_000,
        }


# ==============================================================================
# Fixed window
# ==============================================================================

class TestFixedWindowRateLimiter:

    def test_counts_within_window(self):
        clock = FakeClock(start=120.0)  # 120000 ms, start of a 60s window
        limiter = FixedWindowRateLimiter(clock=clock)
        results = [limiter.check("1", "export", 60_000, 2) for _ in range(3)]
        assert [r["allowed"] for r in results] == [True, True, False]
        assert results[0]["count"] == 1
        assert results[2]["count"] == 2
        assert results[0]["reset_time"] == 180_000

    def test_new_window_resets_count(self):
        clock = FakeClock(start=120.0)
        limiter = FixedWindowRateLimiter(clock=clock)
        limiter.check("1", "export", 60_000, 1)
        assert limiter.check("1", "export", 60_000, 1)["allowed"] is False
        clock.advance(60)
        assert limiter.check("1", "export", 60_000, 1)["allowed"] is True

    def test_subjects_and_operations_are_isolated(self):
        limiter = FixedWindowRateLimiter(clock=FakeClock())
        assert limiter.check("1", "export", 60_000, 1)["allowed"] is True
        assert limiter.check("2", "export", 60_000, 1)["allowed"] is True
        assert limiter.check("1", "search", 60_000, 1)["allowed"] is True
        assert limiter.check("1", "export", 60_000, 1)["allowed"] is False

"""
Market Intel - Resilience Helpers

Three independent in-process utilities used around outbound provider calls:
- retry_with_jitter: exponential backoff with random jitter
- TokenBucketRateLimiter / ensure_rate_limit: per-key token buckets
- CircuitBreaker / get_circuit_breaker: per-key failure isolation

Plus FixedWindowRateLimiter, which backs the /api/rate-limit/check endpoint.

State is kept in module-level registries guarded by a lock. It is per-process
and best-effort: nothing here is coordinated across server instances.

Usage:
    from resilience import ensure_rate_limit, get_circuit_breaker, retry_with_jitter

    ensure_rate_limit("ai:openai", limit=5, interval_ms=10_000)
    breaker = get_circuit_breaker("ai:openai", failure_threshold=3, cooldown_ms=15_000)
    result = await breaker.execute(lambda: retry_with_jitter(call_provider))
"""

import asyncio
import logging
import math
import random
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class RateLimitExceededError(Exception):
    """Raised when a rate-limit bucket has no tokens left."""

    def __init__(self, key: str, retry_after: float):
        self.key = key
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {key}, retry in {retry_after:.1f}s"
        )


class CircuitOpenError(Exception):
    """Raised when a call is attempted while the circuit is open."""

    def __init__(self, key: str, retry_after: float):
        self.key = key
        self.retry_after = retry_after
        super().__init__(
            f"Circuit open for {key}, retry in {retry_after:.1f}s"
        )


# =============================================================================
# RETRY WITH JITTER
# =============================================================================

def backoff_delay_ms(attempt: int, base_ms: int = 200, max_ms: int = 1500) -> float:
    """Delay before retry number `attempt` (0-based), jittered to 50-100%."""
    ceiling = min(max_ms, base_ms * (2 ** attempt))
    return ceiling * (0.5 + random.random() / 2)


async def retry_with_jitter(
    fn: Callable[[], Awaitable[Any]],
    retries: int = 2,
    base_ms: int = 200,
    max_ms: int = 1500,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    no_retry_on: Tuple[Type[BaseException], ...] = (RateLimitExceededError, CircuitOpenError),
) -> Any:
    """
    Await fn(), retrying up to `retries` extra times on failure.

    Args:
        fn: Zero-argument coroutine factory. Called once per attempt.
        retries: Extra attempts after the first one.
        base_ms: Base delay, doubled per attempt.
        max_ms: Upper bound for a single delay.
        retry_on: Exception types that trigger a retry.
        no_retry_on: Exception types re-raised immediately.

    Returns:
        Whatever fn() returns on the first successful attempt.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except no_retry_on:
            raise
        except retry_on as e:
            if attempt >= retries:
                raise
            delay = backoff_delay_ms(attempt, base_ms, max_ms)
            logger.info(
                f"Attempt {attempt + 1}/{retries + 1} failed ({type(e).__name__}: {e}); "
                f"retrying in {delay:.0f}ms"
            )
            attempt += 1
            await asyncio.sleep(delay / 1000)


# =============================================================================
# TOKEN BUCKET RATE LIMITER
# =============================================================================

class TokenBucketRateLimiter:
    """
    Per-key token buckets.

    Each bucket holds up to `limit` tokens and refills continuously at
    `limit` tokens per `interval_ms`. A call consumes one token.
    """

    def __init__(self, limit: int, interval_ms: int, clock: Callable[[], float] = time.monotonic):
        if limit < 1 or interval_ms < 1:
            raise ValueError("limit and interval_ms must be positive")
        self.limit = limit
        self.interval_ms = interval_ms
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}  # key -> (tokens, last_refill)
        self._lock = threading.Lock()

    @property
    def _refill_per_second(self) -> float:
        return self.limit / (self.interval_ms / 1000)

    def _refill(self, key: str, now: float) -> float:
        tokens, last = self._buckets.get(key, (float(self.limit), now))
        tokens = min(float(self.limit), tokens + (now - last) * self._refill_per_second)
        return tokens

    def try_acquire(self, key: str) -> Tuple[bool, float]:
        """Consume a token. Returns (allowed, seconds_until_next_token)."""
        now = self._clock()
        with self._lock:
            tokens = self._refill(key, now)
            if tokens >= 1:
                self._buckets[key] = (tokens - 1, now)
                return True, 0.0
            self._buckets[key] = (tokens, now)
            wait = (1 - tokens) / self._refill_per_second
            return False, wait

    def remaining(self, key: str) -> int:
        """Whole tokens currently available for key."""
        with self._lock:
            return int(self._refill(key, self._clock()))

    def reset(self, key: Optional[str] = None):
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)


_limiters: Dict[Tuple[int, int], TokenBucketRateLimiter] = {}
_registry_lock = threading.Lock()


def get_rate_limiter(limit: int = 5, interval_ms: int = 10_000) -> TokenBucketRateLimiter:
    """Shared limiter for a (limit, interval) configuration."""
    with _registry_lock:
        limiter = _limiters.get((limit, interval_ms))
        if limiter is None:
            limiter = TokenBucketRateLimiter(limit, interval_ms)
            _limiters[(limit, interval_ms)] = limiter
        return limiter


def ensure_rate_limit(key: str, limit: int = 5, interval_ms: int = 10_000) -> None:
    """Consume a token for key or raise RateLimitExceededError."""
    allowed, wait = get_rate_limiter(limit, interval_ms).try_acquire(key)
    if not allowed:
        from metrics import track_rate_limit_rejection
        track_rate_limit_rejection(key)
        logger.warning(f"Rate limit hit for {key} ({limit}/{interval_ms}ms)")
        raise RateLimitExceededError(key, wait)


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitBreaker:
    """
    Stops calling a failing dependency for a cooldown period.

    closed    -> calls pass; consecutive failures are counted
    open      -> calls rejected with CircuitOpenError until cooldown elapses
    half_open -> one trial call; success closes, failure re-opens
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        key: str,
        failure_threshold: int = 3,
        cooldown_ms: int = 15_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key = key
        self.failure_threshold = failure_threshold
        self.cooldown_ms = cooldown_ms
        self._clock = clock
        self._state = self.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def _maybe_half_open(self):
        if self._state == self.OPEN:
            if (self._clock() - self._opened_at) * 1000 >= self.cooldown_ms:
                self._transition(self.HALF_OPEN)

    def _transition(self, new_state: str):
        if new_state != self._state:
            logger.info(f"Circuit {self.key}: {self._state} -> {new_state}")
            from metrics import track_circuit_transition
            track_circuit_transition(self.key, new_state)
        self._state = new_state

    def _before_call(self) -> bool:
        """Admit a call; True when it holds the half-open trial slot."""
        with self._lock:
            self._maybe_half_open()
            if self._state == self.OPEN:
                elapsed_ms = (self._clock() - self._opened_at) * 1000
                raise CircuitOpenError(self.key, (self.cooldown_ms - elapsed_ms) / 1000)
            if self._state == self.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.key, self.cooldown_ms / 1000)
                self._trial_in_flight = True
                return True
        return False

    def record_success(self):
        with self._lock:
            self._failures = 0
            self._trial_in_flight = False
            self._transition(self.CLOSED)

    def record_failure(self):
        with self._lock:
            self._trial_in_flight = False
            self._failures += 1
            if self._state == self.HALF_OPEN or self._failures >= self.failure_threshold:
                self._opened_at = self._clock()
                self._transition(self.OPEN)

    async def execute(
        self,
        fn: Callable[[], Awaitable[Any]],
        ignore: Tuple[Type[BaseException], ...] = (),
    ) -> Any:
        """
        Run fn() through the breaker.

        Exceptions listed in `ignore` propagate without counting as failures.
        The half-open trial slot is released however the call ends, including
        cancellation.
        """
        trial = self._before_call()
        try:
            result = await fn()
        except ignore:
            raise
        except Exception:
            self.record_failure()
            raise
        else:
            self.record_success()
            return result
        finally:
            if trial:
                with self._lock:
                    self._trial_in_flight = False

    def reset(self):
        with self._lock:
            self._failures = 0
            self._trial_in_flight = False
            self._state = self.CLOSED

    def snapshot(self) -> Dict[str, Any]:
        state = self.state
        return {
            "state": state,
            "failures": self._failures,
            "failure_threshold": self.failure_threshold,
            "cooldown_ms": self.cooldown_ms,
        }


_breakers: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(
    key: str, failure_threshold: int = 3, cooldown_ms: int = 15_000
) -> CircuitBreaker:
    """Shared breaker for key. Settings apply on first creation only."""
    with _registry_lock:
        breaker = _breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(key, failure_threshold, cooldown_ms)
            _breakers[key] = breaker
        return breaker


def get_breaker_states() -> Dict[str, Dict[str, Any]]:
    """Snapshot of every registered breaker, for health endpoints."""
    with _registry_lock:
        breakers = list(_breakers.items())
    return {key: breaker.snapshot() for key, breaker in breakers}


# =============================================================================
# FIXED WINDOW RATE LIMITER
# =============================================================================

class FixedWindowRateLimiter:
    """
    Counts requests per `user:operation:window` key.

    The window index is floor(now / window_ms). Expired windows are pruned
    on each check so the map does not grow without bound.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}  # key -> (count, reset_at)
        self._lock = threading.Lock()

    def check(self, subject: str, operation: str, window_ms: int, max_requests: int) -> Dict[str, Any]:
        """Count one request. Returns {allowed, count, reset_time} (reset_time in epoch ms)."""
        now_ms = self._clock() * 1000
        window_index = math.floor(now_ms / window_ms)
        key = f"{subject}:{operation}:{window_index}"
        reset_at = (window_index + 1) * window_ms

        with self._lock:
            self._prune(now_ms)
            count, _ = self._windows.get(key, (0, reset_at))
            if count >= max_requests:
                return {"allowed": False, "count": count, "reset_time": int(reset_at)}
            self._windows[key] = (count + 1, reset_at)
            return {"allowed": True, "count": count + 1, "reset_time": int(reset_at)}

    def _prune(self, now_ms: float):
        expired = [k for k, (_, reset_at) in self._windows.items() if reset_at <= now_ms]
        for k in expired:
            del self._windows[k]

    def reset(self):
        with self._lock:
            self._windows.clear()


operation_limiter = FixedWindowRateLimiter()


def reset_resilience_state():
    """Clear every limiter and breaker (tests, admin reset)."""
    with _registry_lock:
        _limiters.clear()
        _breakers.clear()
    operation_limiter.reset()

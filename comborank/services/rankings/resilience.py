"""Shared resilience primitives for search-index calls.

One process-wide ResilienceCoordinator owns a token bucket, a circuit breaker
and the in-flight registry. Their state is mutated only inside await-free
sections (or under the limiter's lock), so concurrent requests on the event
loop never lose updates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, TypeVar

from comborank.config import Settings, settings
from comborank.core.exceptions import (
    BreakerOpenError,
    ExternalAPIError,
    FetchFailedError,
    RateLimitExceededError,
    TransientFetchError,
)

logger = logging.getLogger(__name__)

_ResultT = TypeVar("_ResultT")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

SEARCH_INDEX_NAME = "itunes_search"


@dataclass(frozen=True, slots=True)
class RateLimiterState:
    name: str
    capacity: int
    tokens: float
    refill_per_second: float
    last_refill: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "capacity": self.capacity,
            "tokens": round(self.tokens, 3),
            "refill_per_second": self.refill_per_second,
        }


class TokenBucketRateLimiter:
    """Token bucket with a bounded wait.

    Waiters queue on one lock in arrival order. A caller that would have to
    wait longer than `max_wait_seconds` in total is rejected with
    RateLimitExceededError instead of sleeping.
    """

    def __init__(
        self,
        *,
        name: str = SEARCH_INDEX_NAME,
        capacity: int = 20,
        refill_per_second: float = 2.0,
        max_wait_seconds: float = 10.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_per_second <= 0:
            raise ValueError("refill_per_second must be > 0")
        self.name = name
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.refill_per_second)
        self._last_refill = now

    async def acquire(self) -> float:
        """Take one token, waiting if needed; returns seconds spent waiting."""
        started = self._clock()
        async with self._lock:
            while True:
                now = self._clock()
                self._refill(now)
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return now - started

                waited = now - started
                needed = (1.0 - self._tokens) / self.refill_per_second
                if waited + needed > self.max_wait_seconds:
                    logger.warning(
                        "Rate limiter rejected call",
                        extra={"limiter": self.name, "waited_seconds": round(waited, 3)},
                    )
                    raise RateLimitExceededError(self.name, waited)
                await self._sleep(needed)

    def snapshot(self) -> RateLimiterState:
        self._refill(self._clock())
        return RateLimiterState(
            name=self.name,
            capacity=self.capacity,
            tokens=self._tokens,
            refill_per_second=self.refill_per_second,
            last_refill=self._last_refill,
        )


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class CircuitBreakerState:
    name: str
    state: BreakerState
    consecutive_failures: int
    failure_threshold: int
    cooldown_seconds: float
    retry_in_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "cooldown_seconds": self.cooldown_seconds,
            "retry_in_seconds": round(self.retry_in_seconds, 3),
        }


class CircuitBreaker:
    """CLOSED -> OPEN after `failure_threshold` consecutive counted failures.

    After the cooldown one trial call is let through (HALF_OPEN). Success
    closes the breaker; failure re-opens it with the cooldown multiplied,
    capped at `max_cooldown_seconds`. Only `failure_types` count as failures.
    """

    def __init__(
        self,
        *,
        name: str = SEARCH_INDEX_NAME,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        cooldown_multiplier: float = 2.0,
        max_cooldown_seconds: float = 600.0,
        failure_types: tuple[type[BaseException], ...] = (ExternalAPIError,),
        clock: Clock = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.base_cooldown_seconds = cooldown_seconds
        self.cooldown_multiplier = cooldown_multiplier
        self.max_cooldown_seconds = max_cooldown_seconds
        self._failure_types = failure_types
        self._clock = clock

        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._cooldown_seconds = cooldown_seconds
        self._opened_until = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        return self._state

    def _admit(self) -> bool:
        """Raise if the call must be rejected; return True when it is the HALF_OPEN trial."""
        now = self._clock()
        if self._state is BreakerState.OPEN:
            if now < self._opened_until:
                raise BreakerOpenError(self.name, self._opened_until - now)
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit breaker half-open", extra={"breaker": self.name})

        if self._state is BreakerState.HALF_OPEN:
            if self._trial_in_flight:
                raise BreakerOpenError(self.name, 0.0)
            self._trial_in_flight = True
            return True
        return False

    def _open(self, now: float) -> None:
        self._state = BreakerState.OPEN
        self._opened_until = now + self._cooldown_seconds
        logger.warning(
            "Circuit breaker opened",
            extra={
                "breaker": self.name,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_seconds": self._cooldown_seconds,
            },
        )

    def _record_success(self, is_trial: bool) -> None:
        if is_trial:
            self._state = BreakerState.CLOSED
            self._consecutive_failures = 0
            self._cooldown_seconds = self.base_cooldown_seconds
            self._trial_in_flight = False
            logger.info("Circuit breaker closed", extra={"breaker": self.name})
        elif self._state is BreakerState.CLOSED:
            self._consecutive_failures = 0

    def _record_failure(self, is_trial: bool) -> None:
        now = self._clock()
        if is_trial:
            self._trial_in_flight = False
            self._consecutive_failures += 1
            self._cooldown_seconds = min(
                self._cooldown_seconds * self.cooldown_multiplier,
                self.max_cooldown_seconds,
            )
            self._open(now)
            return
        if self._state is BreakerState.CLOSED:
            self._consecutive_failures += 1
            if self._consecutive_failures >= self.failure_threshold:
                self._open(now)

    async def call(self, operation: Callable[[], Awaitable[_ResultT]]) -> _ResultT:
        is_trial = self._admit()
        try:
            result = await operation()
        except BaseException as exc:
            if isinstance(exc, self._failure_types):
                self._record_failure(is_trial)
            elif is_trial:
                # Not the upstream's fault; let the next caller run the trial.
                self._trial_in_flight = False
            raise
        self._record_success(is_trial)
        return result

    def snapshot(self) -> CircuitBreakerState:
        retry_in = 0.0
        if self._state is BreakerState.OPEN:
            retry_in = max(0.0, self._opened_until - self._clock())
        return CircuitBreakerState(
            name=self.name,
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            failure_threshold=self.failure_threshold,
            cooldown_seconds=self._cooldown_seconds,
            retry_in_seconds=retry_in,
        )


class InFlightRegistry:
    """Request key -> shared task, so concurrent identical lookups hit upstream once.

    The shared task is shielded from caller cancellation and removes its own
    entry when it finishes. Callers still awaiting a key are counted so the
    shared task can give up before dispatching work nobody will receive.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._waiters: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, key: object) -> bool:
        return key in self._tasks

    def waiters(self, key: str) -> int:
        return self._waiters.get(key, 0)

    def ensure_awaited(self, key: str) -> None:
        """Abandon the shared work for `key` when every caller has been cancelled.

        Raises CancelledError inside the shared task and drops its entry so a
        later caller starts fresh instead of joining an abandoned task.
        """
        if self._waiters.get(key):
            return
        task = self._tasks.pop(key, None)
        logger.info(
            "In-flight lookup abandoned",
            extra={"request_key": key, "had_task": task is not None},
        )
        raise asyncio.CancelledError(f"no callers left for {key}")

    def _discard(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled():
            # Mark the exception retrieved even if every caller went away.
            task.exception()

    def _leave(self, key: str) -> None:
        remaining = self._waiters.get(key, 0) - 1
        if remaining > 0:
            self._waiters[key] = remaining
        else:
            self._waiters.pop(key, None)

    async def run(
        self,
        key: str,
        factory: Callable[[], Awaitable[_ResultT]],
    ) -> tuple[_ResultT, bool]:
        """Await the shared task for `key`; returns (result, joined_existing)."""
        task = self._tasks.get(key)
        if task is not None and task.done():
            task = None
        joined = task is not None
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            if task is None:
                task = asyncio.ensure_future(factory())
                self._tasks[key] = task
                task.add_done_callback(partial(self._discard, key))
            return await asyncio.shield(task), joined
        finally:
            self._leave(key)


def is_transient_fetch_error(exc: BaseException) -> bool:
    return isinstance(exc, TransientFetchError)


def backoff_delay(
    attempt: int,
    *,
    base_delay_seconds: float,
    max_delay_seconds: float,
    retry_after: float | None = None,
) -> float:
    """Exponential delay after `attempt` (1-based); a Retry-After hint wins when larger."""
    delay = base_delay_seconds * (2 ** (attempt - 1))
    if retry_after is not None:
        delay = max(delay, retry_after)
    return min(delay, max_delay_seconds)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[_ResultT]],
    *,
    api_name: str = SEARCH_INDEX_NAME,
    attempts: int = 3,
    base_delay_seconds: float = 1.0,
    max_delay_seconds: float = 30.0,
    timeout_seconds: float | None = 10.0,
    is_retryable: Callable[[BaseException], bool] = is_transient_fetch_error,
    before_retry: Callable[[int], Awaitable[Any]] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> _ResultT:
    """Run `operation` with a per-attempt timeout, retrying transient failures.

    Non-retryable errors propagate immediately. When every attempt fails
    transiently a FetchFailedError is raised. `before_retry` runs before each
    attempt after the first (used to take a fresh rate-limit token).
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        if attempt > 1 and before_retry is not None:
            await before_retry(attempt)
        try:
            if timeout_seconds is None:
                return await operation()
            return await asyncio.wait_for(operation(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            last_error = TransientFetchError(api_name, f"timed out after {timeout_seconds}s")
        except Exception as exc:
            if not is_retryable(exc):
                raise
            last_error = exc

        if attempt >= attempts:
            break
        delay = backoff_delay(
            attempt,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            retry_after=getattr(last_error, "retry_after", None),
        )
        logger.warning(
            "Transient fetch failure, retrying",
            extra={
                "api": api_name,
                "attempt": attempt,
                "max_attempts": attempts,
                "delay_seconds": round(delay, 3),
                "error": str(last_error),
            },
        )
        await sleep(delay)

    assert last_error is not None
    raise FetchFailedError(api_name, attempts, str(last_error)) from last_error


@dataclass
class ResilienceCoordinator:
    limiter: TokenBucketRateLimiter
    breaker: CircuitBreaker
    registry: InFlightRegistry

    @classmethod
    def from_settings(cls, config: Settings) -> ResilienceCoordinator:
        return cls(
            limiter=TokenBucketRateLimiter(
                capacity=config.rate_limit_capacity,
                refill_per_second=config.rate_limit_refill_per_second,
                max_wait_seconds=config.rate_limit_max_wait_seconds,
            ),
            breaker=CircuitBreaker(
                failure_threshold=config.breaker_failure_threshold,
                cooldown_seconds=config.breaker_cooldown_seconds,
                cooldown_multiplier=config.breaker_cooldown_multiplier,
                max_cooldown_seconds=config.breaker_max_cooldown_seconds,
            ),
            registry=InFlightRegistry(),
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "breaker": self.breaker.snapshot().to_dict(),
            "rate_limiter": self.limiter.snapshot().to_dict(),
            "in_flight": len(self.registry),
        }


_coordinator: ResilienceCoordinator | None = None


def get_resilience_coordinator() -> ResilienceCoordinator:
    """Process-wide coordinator shared by every request."""
    global _coordinator
    if _coordinator is None:
        _coordinator = ResilienceCoordinator.from_settings(settings)
    return _coordinator


def reset_resilience_coordinator() -> None:
    global _coordinator
    _coordinator = None

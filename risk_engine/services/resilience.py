"""
Reliability primitives guarding the engine and its dependencies.

Key patterns:
- Fixed-window rate limiting keyed by caller identity
- Per-dependency circuit breakers (closed -> open -> half-open -> closed)
- Bounded TTL cache with oldest-entry eviction
- Exponential backoff with jitter, and timeouts raced against the operation

All state is process-local. Rate-limit buckets and cache entries sit behind
small store protocols so a shared store can be substituted when the service
runs as more than one instance.
"""

import asyncio
import hashlib
import json
import math
import random
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, TypeVar

import structlog

from risk_engine.config import ResilienceConfig
from risk_engine.domain.errors import (
    NON_RETRYABLE,
    OperationTimeoutError,
    RateLimitError,
    ServiceUnavailableError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")
Clock = Callable[[], float]
BreakerStatus = Literal["closed", "open", "half-open"]


# Rate limiting


@dataclass
class RateLimitBucket:
    key: str
    count: int
    window_start: float


class RateLimitStore(Protocol):
    """Storage for rate-limit buckets."""

    def get(self, key: str) -> RateLimitBucket | None: ...

    def put(self, bucket: RateLimitBucket) -> None: ...

    def purge(self, older_than: float) -> int: ...

    def __len__(self) -> int: ...


class LocalRateLimitStore:
    """In-process bucket storage."""

    def __init__(self) -> None:
        self._buckets: dict[str, RateLimitBucket] = {}

    def get(self, key: str) -> RateLimitBucket | None:
        return self._buckets.get(key)

    def put(self, bucket: RateLimitBucket) -> None:
        self._buckets[bucket.key] = bucket

    def purge(self, older_than: float) -> int:
        stale = [k for k, b in self._buckets.items() if b.window_start < older_than]
        for key in stale:
            del self._buckets[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._buckets)


class RateLimiter:
    """
    Fixed-window counter per caller.

    Every check increments the caller's counter exactly once, whether the
    request is admitted or rejected. A request is rejected when the counter
    had already reached `max_requests` in the current window.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Clock = time.monotonic,
        store: RateLimitStore | None = None,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._store: RateLimitStore = store if store is not None else LocalRateLimitStore()
        self.rejected_total = 0
        self.logger = logger.bind(component="rate_limiter")

    def check(self, key: str) -> int:
        """Admit or reject one request for `key`. Returns remaining requests in the window."""
        now = self._clock()
        bucket = self._store.get(key)

        if bucket is None or now > bucket.window_start + self.window_seconds:
            bucket = RateLimitBucket(key=key, count=0, window_start=now)

        over_limit = bucket.count >= self.max_requests
        bucket.count += 1
        self._store.put(bucket)

        if over_limit:
            self.rejected_total += 1
            reset_at = bucket.window_start + self.window_seconds
            retry_after = max(1, math.ceil(reset_at - now))
            self.logger.warning(
                "rate_limit_exceeded", caller=key, count=bucket.count, retry_after=retry_after
            )
            raise RateLimitError(
                f"Rate limit exceeded for {key}; retry in {retry_after}s",
                retry_after_seconds=retry_after,
                caller=key,
            )

        return self.max_requests - bucket.count

    def cleanup(self) -> int:
        """Drop buckets whose window has fully elapsed."""
        removed = self._store.purge(self._clock() - self.window_seconds)
        if removed:
            self.logger.debug("rate_limit_buckets_purged", removed=removed)
        return removed

    @property
    def tracked_callers(self) -> int:
        return len(self._store)


# Circuit breaking


@dataclass
class CircuitBreakerState:
    dependency: str
    status: BreakerStatus = "closed"
    consecutive_failures: int = 0
    last_failure_time: float | None = None


class CircuitBreaker:
    """Circuit breaker for one dependency."""

    def __init__(
        self,
        dependency: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitBreakerState(dependency=dependency)
        self.logger = logger.bind(component="circuit_breaker", dependency=dependency)

    @property
    def dependency(self) -> str:
        return self._state.dependency

    @property
    def state(self) -> BreakerStatus:
        """Current status, moving open -> half-open once the recovery timeout has elapsed."""
        s = self._state
        if s.status == "open" and s.last_failure_time is not None:
            if self._clock() - s.last_failure_time >= self.recovery_timeout:
                s.status = "half-open"
                self.logger.info("circuit_half_open")
        return s.status

    @property
    def consecutive_failures(self) -> int:
        return self._state.consecutive_failures

    def snapshot(self) -> CircuitBreakerState:
        status = self.state
        s = self._state
        return CircuitBreakerState(s.dependency, status, s.consecutive_failures, s.last_failure_time)

    def can_execute(self) -> bool:
        return self.state != "open"

    def record_success(self) -> None:
        if self._state.status != "closed":
            self.logger.info("circuit_closed")
        self._state.consecutive_failures = 0
        self._state.status = "closed"

    def record_failure(self) -> None:
        s = self._state
        s.consecutive_failures += 1
        s.last_failure_time = self._clock()

        if s.status == "half-open" or s.consecutive_failures >= self.failure_threshold:
            if s.status != "open":
                self.logger.warning("circuit_opened", failures=s.consecutive_failures)
            s.status = "open"

    def reset(self) -> None:
        self._state = CircuitBreakerState(dependency=self._state.dependency)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run `operation` unless the breaker is open. Open breakers never invoke it."""
        if not self.can_execute():
            raise ServiceUnavailableError(
                f"Circuit breaker open for {self.dependency}",
                dependency=self.dependency,
                reason="circuit_open",
            )

        try:
            result = await operation()
        except NON_RETRYABLE:
            # Caller errors say nothing about the dependency's health.
            raise
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result


class CircuitBreakerRegistry:
    """Lazily creates one breaker per dependency name."""

    def __init__(
        self, failure_threshold: int = 5, recovery_timeout: float = 60.0, clock: Clock = time.monotonic
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, dependency: str) -> CircuitBreaker:
        breaker = self._breakers.get(dependency)
        if breaker is None:
            breaker = CircuitBreaker(
                dependency, self.failure_threshold, self.recovery_timeout, self._clock
            )
            self._breakers[dependency] = breaker
        return breaker

    def states(self) -> dict[str, BreakerStatus]:
        return {name: b.state for name, b in self._breakers.items()}

    def open_breakers(self) -> list[str]:
        return [name for name, status in self.states().items() if status == "open"]

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()


# Caching


@dataclass
class CacheEntry:
    key: str
    value: Any
    stored_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


class CacheStore(Protocol):
    """Ordered storage for cache entries, oldest first."""

    def get(self, key: str) -> CacheEntry | None: ...

    def put(self, entry: CacheEntry) -> None: ...

    def delete(self, key: str) -> bool: ...

    def pop_oldest(self) -> CacheEntry | None: ...

    def keys(self) -> list[str]: ...

    def clear(self) -> None: ...

    def __len__(self) -> int: ...


class LocalCacheStore:
    def __init__(self) -> None:
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def get(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def put(self, entry: CacheEntry) -> None:
        self._entries.pop(entry.key, None)
        self._entries[entry.key] = entry

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def pop_oldest(self) -> CacheEntry | None:
        if not self._entries:
            return None
        _, entry = self._entries.popitem(last=False)
        return entry

    def keys(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class TTLCache:
    """Key/value cache with per-entry TTL and a hard size bound."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_size: int = 1000,
        clock: Clock = time.monotonic,
        store: CacheStore | None = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._store: CacheStore = store if store is not None else LocalCacheStore()
        self.stats = CacheStats()

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            self.stats.misses += 1
            return None
        if entry.expired(self._clock()):
            self._store.delete(key)
            self.stats.misses += 1
            self.stats.expirations += 1
            return None
        self.stats.hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._store.put(CacheEntry(key=key, value=value, stored_at=self._clock(), ttl=ttl))
        while len(self._store) > self.max_size:
            evicted = self._store.pop_oldest()
            if evicted is None:
                break
            self.stats.evictions += 1

    def invalidate(self, key: str) -> bool:
        return self._store.delete(key)

    def invalidate_prefix(self, prefix: str) -> int:
        keys = [k for k in self._store.keys() if k.startswith(prefix)]
        for key in keys:
            self._store.delete(key)
        return len(keys)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


def make_cache_key(prefix: str, payload: Any) -> str:
    """Stable key from a prefix and a JSON-serializable payload."""
    canonical = json.dumps(payload, sort_keys=True, default=str)
    digest = hashlib.md5(canonical.encode("utf-8"), usedforsecurity=False).hexdigest()
    return f"{prefix}:{digest}"


# Retries and timeouts


async def with_timeout(awaitable: Awaitable[T], timeout_seconds: float, dependency: str) -> T:
    """Race `awaitable` against a timer."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except TimeoutError as e:
        raise OperationTimeoutError(dependency, timeout_seconds) from e


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number `attempt` (1-based)."""
    return min(max_delay, base_delay * (2 ** (attempt - 1))) + rng() * jitter


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    dependency: str,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    jitter: float = 0.25,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` up to `max_attempts` times with exponential backoff.

    Caller errors and open breakers are raised immediately. Exhausting every
    attempt raises ServiceUnavailableError with reason ``retries_exhausted``.
    """
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except NON_RETRYABLE:
            raise
        except ServiceUnavailableError as e:
            if e.reason == "circuit_open":
                raise
            last_error = e
        except Exception as e:
            last_error = e

        logger.warning(
            "dependency_call_failed",
            dependency=dependency,
            attempt=attempt,
            max_attempts=max_attempts,
            error=str(last_error),
        )
        if attempt < max_attempts:
            await sleep(backoff_delay(attempt, base_delay, max_delay, jitter))

    raise ServiceUnavailableError(
        f"{dependency} unavailable after {max_attempts} attempts: {last_error}",
        dependency=dependency,
        reason="retries_exhausted",
    ) from last_error


class ResilienceLayer:
    """Bundles the primitives the facade uses for every request."""

    def __init__(
        self,
        config: ResilienceConfig,
        clock: Clock = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rate_limit_store: RateLimitStore | None = None,
        cache_store: CacheStore | None = None,
    ) -> None:
        self.config = config
        self._sleep = sleep
        self.rate_limiter = RateLimiter(
            config.rate_limit.max_requests,
            config.rate_limit.window_seconds,
            clock=clock,
            store=rate_limit_store,
        )
        self.breakers = CircuitBreakerRegistry(
            config.circuit_breaker.failure_threshold,
            config.circuit_breaker.recovery_timeout_seconds,
            clock=clock,
        )
        self.cache = TTLCache(
            config.cache.ttl_seconds, config.cache.max_size, clock=clock, store=cache_store
        )

    async def guarded(self, dependency: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Retry `operation` through the dependency's breaker, each attempt under a timeout."""
        breaker = self.breakers.get(dependency)
        timeout = self.config.timeout.operation_timeout_seconds

        async def attempt() -> T:
            return await breaker.call(lambda: with_timeout(operation(), timeout, dependency))

        retry = self.config.retry
        return await retry_async(
            attempt,
            dependency=dependency,
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay_seconds,
            max_delay=retry.max_delay_seconds,
            jitter=retry.jitter_seconds,
            sleep=self._sleep,
        )

    async def guarded_once(self, dependency: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Breaker and timeout without retries, for dependencies that must not be retried."""
        breaker = self.breakers.get(dependency)
        timeout = self.config.timeout.operation_timeout_seconds
        return await breaker.call(lambda: with_timeout(operation(), timeout, dependency))

    def status(self) -> dict[str, Any]:
        stats = self.cache.stats
        return {
            "circuit_breakers": self.breakers.states(),
            "open_breakers": self.breakers.open_breakers(),
            "cache": {
                "size": len(self.cache),
                "max_size": self.cache.max_size,
                "hits": stats.hits,
                "misses": stats.misses,
                "evictions": stats.evictions,
                "hit_rate": round(stats.hit_rate, 4),
            },
            "rate_limit": {
                "tracked_callers": self.rate_limiter.tracked_callers,
                "rejected_total": self.rate_limiter.rejected_total,
                "max_requests": self.rate_limiter.max_requests,
                "window_seconds": self.rate_limiter.window_seconds,
            },
        }

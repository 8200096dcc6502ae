"""Fixed-window request counting per client identity and route class."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple

import redis

from core.config import RateLimitSettings
from core.errors import BackendUnavailable, ClientIdentityUnavailable
from core.logging import get_logger
from services import metrics

logger = get_logger(__name__)

_KEY_PREFIX = "rate"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate limit evaluation."""

    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class CounterBackend(Protocol):
    name: str

    def increment(self, key: str, window_seconds: int) -> int:
        """Atomically increment ``key`` and return the post-increment count."""
        ...


class RedisCounterBackend:
    """Shared counter store for multi-instance deployments."""

    name = "redis"

    def __init__(self, client: Optional["redis.Redis"]) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: Optional[str], *, timeout_seconds: float) -> "RedisCounterBackend":
        if not url:
            logger.error("Rate limiter requires Redis but RATE_LIMIT_REDIS_URL is not set.")
            return cls(None)
        client = redis.Redis.from_url(
            url,
            decode_responses=False,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client)

    def increment(self, key: str, window_seconds: int) -> int:
        if self._client is None:
            raise BackendUnavailable("Rate limiter not configured")
        try:
            pipeline = self._client.pipeline()
            pipeline.incr(key)
            pipeline.ttl(key)
            count, ttl = pipeline.execute()
            if ttl is None or int(ttl) < 0:
                self._client.expire(key, window_seconds)
            return int(count)
        except redis.RedisError as exc:
            logger.error("Rate limiter backend failed for %s: %s", key, exc, exc_info=True)
            raise BackendUnavailable("Rate limiter unavailable") from exc


class InMemoryCounterBackend:
    """Per-process counter map; counts are not shared across instances.

    Expired entries are evicted lazily: a sweep runs at most once per window,
    piggybacking on an increment call.
    """

    name = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._counters.items() if now > reset_at]
        for key in expired:
            self._counters.pop(key, None)
        self._last_sweep = now
        if expired:
            logger.debug("Evicted %d expired rate limit counters.", len(expired))

    def increment(self, key: str, window_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            if now - self._last_sweep > window_seconds:
                self._sweep(now)
            entry = self._counters.get(key)
            if entry is None or now > entry[1]:
                self._counters[key] = (1, now + window_seconds)
                return 1
            count = entry[0] + 1
            self._counters[key] = (count, entry[1])
            return count


class RateLimiter:
    """Admit or reject requests using fixed, non-overlapping windows.

    Constructed once per process and passed to request handlers explicitly.
    """

    def __init__(
        self,
        backend: CounterBackend,
        limits: Mapping[str, int],
        *,
        window_seconds: int = 60,
        require_client_identity: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.backend = backend
        self.limits = dict(limits)
        self.window_seconds = window_seconds
        self.require_client_identity = require_client_identity
        self._clock = clock

    def limit_for(self, route_class: str) -> int:
        try:
            return self.limits[route_class]
        except KeyError:
            raise ValueError(f"Unknown route class: {route_class}") from None

    def admit(self, client_identity: Optional[str], route_class: str) -> RateLimitDecision:
        limit = self.limit_for(route_class)
        now = self._clock()
        window_id = math.floor(now / self.window_seconds)
        reset_seconds = max(1, math.ceil(self.window_seconds - (now % self.window_seconds)))

        if not client_identity:
            if self.require_client_identity:
                logger.warning("Rejecting %s request without a client address.", route_class)
                raise ClientIdentityUnavailable()
            logger.debug("No client address for %s request; admitting without counting.", route_class)
            return RateLimitDecision(allowed=True, limit=limit, remaining=limit, reset_seconds=reset_seconds)

        key = f"{_KEY_PREFIX}:{route_class}:{client_identity}:{window_id}"
        count = self.backend.increment(key, self.window_seconds)
        allowed = count <= limit
        remaining = max(limit - count, 0)

        metrics.record_rate_limit(route_class, allowed)
        metrics.record_rate_limit_remaining(route_class, remaining)
        if not allowed:
            logger.info("Rate limit exceeded for %s on %s (count=%d limit=%d).", client_identity, route_class, count, limit)
        return RateLimitDecision(allowed=allowed, limit=limit, remaining=remaining, reset_seconds=reset_seconds)


def build_backend(settings: RateLimitSettings) -> CounterBackend:
    if settings.backend == "redis":
        return RedisCounterBackend.from_url(settings.redis_url, timeout_seconds=settings.redis_timeout_seconds)
    if settings.backend == "memory":
        if settings.production:
            logger.warning("Rate limiter uses per-process counters in production by explicit configuration.")
        return InMemoryCounterBackend()
    if settings.redis_url:
        return RedisCounterBackend.from_url(settings.redis_url, timeout_seconds=settings.redis_timeout_seconds)
    if settings.production:
        # No silent downgrade to per-instance counting.
        return RedisCounterBackend(None)
    return InMemoryCounterBackend()


def build_rate_limiter(settings: Optional[RateLimitSettings] = None) -> RateLimiter:
    settings = settings or RateLimitSettings.load()
    backend = build_backend(settings)
    logger.info("Rate limiter initialised with %s backend (window=%ds).", backend.name, settings.window_seconds)
    return RateLimiter(
        backend,
        settings.limits,
        window_seconds=settings.window_seconds,
        require_client_identity=settings.require_client_identity,
    )


__all__ = [
    "CounterBackend",
    "InMemoryCounterBackend",
    "RateLimitDecision",
    "RateLimiter",
    "RedisCounterBackend",
    "build_backend",
    "build_rate_limiter",
]

"""Prometheus collectors for rate limiting, code generation and cleanup."""

from __future__ import annotations

from typing import Mapping, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge

from core.logging import get_logger

logger = get_logger(__name__)


def _counter(name: str, documentation: str, labels: tuple, registry: CollectorRegistry = REGISTRY) -> Counter:
    try:
        return Counter(name, documentation, labels, registry=registry)
    except ValueError:
        # Metrics might already be registered if code reloads; reuse the existing collector.
        logger.debug("Prometheus collector %s already registered; reusing.", name)
        return registry._names_to_collectors[name]  # type: ignore[attr-defined]


def _gauge(name: str, documentation: str, labels: tuple, registry: CollectorRegistry = REGISTRY) -> Gauge:
    try:
        return Gauge(name, documentation, labels, registry=registry)
    except ValueError:
        logger.debug("Prometheus collector %s already registered; reusing.", name)
        return registry._names_to_collectors[name]  # type: ignore[attr-defined]


_RATE_LIMIT_COUNTER = _counter("deaddrop_rate_limit_total", "Rate limiter decisions", ("route", "result"))
_RATE_LIMIT_REMAINING_GAUGE = _gauge("deaddrop_rate_limit_remaining", "Latest remaining quota per route class.", ("route",))
_CODE_EXHAUSTED_COUNTER = _counter("deaddrop_code_space_exhausted_total", "Code reservations that ran out of attempts", ("namespace",))
_CLEANUP_COUNTER = _counter("deaddrop_cleanup_removed_total", "Rows and blobs removed by the cleanup job", ("kind",))
_CLEANUP_FAILURE_COUNTER = _counter("deaddrop_cleanup_step_failures_total", "Cleanup sub-steps that raised", ("step",))


def record_rate_limit(route: str, allowed: bool) -> None:
    """Increment the rate limit counter for ``route``."""

    result = "allowed" if allowed else "blocked"
    _RATE_LIMIT_COUNTER.labels(route=route, result=result).inc()


def record_rate_limit_remaining(route: str, remaining: Optional[int]) -> None:
    if remaining is None:
        return
    _RATE_LIMIT_REMAINING_GAUGE.labels(route=route).set(float(remaining))


def record_code_space_exhausted(namespace: str) -> None:
    _CODE_EXHAUSTED_COUNTER.labels(namespace=namespace).inc()


def record_cleanup(stats: Mapping[str, int]) -> None:
    for kind, value in stats.items():
        if value:
            _CLEANUP_COUNTER.labels(kind=kind).inc(value)


def record_cleanup_failure(step: str) -> None:
    _CLEANUP_FAILURE_COUNTER.labels(step=step).inc()


__all__ = [
    "record_cleanup",
    "record_cleanup_failure",
    "record_code_space_exhausted",
    "record_rate_limit",
    "record_rate_limit_remaining",
]

"""Shared FastAPI dependencies."""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Type, TypeVar

from fastapi import Depends, HTTPException, Request, status

from core.logging import get_logger
from schemas.requests import Err, parse_payload
from services.blob_storage import BlobStorage
from services.metadata_store import MetadataStore
from services.rate_limiter import RateLimitDecision, RateLimiter

logger = get_logger(__name__)

RATE_LIMIT_STATE_KEY = "rate_limit"

ModelT = TypeVar("ModelT")


def get_store(request: Request) -> MetadataStore:
    return request.app.state.store


def get_blobs(request: Request) -> BlobStorage:
    return request.app.state.blobs


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_client_ip(request: Request) -> Optional[str]:
    """Best-effort client address: socket peer, then proxy headers."""
    if request.client and request.client.host:
        return request.client.host
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return None


def require_payload(model: Type[ModelT], raw: Any) -> ModelT:
    """Validate ``raw`` into ``model`` or raise the carried ``ValidationError``."""
    result = parse_payload(model, raw)  # type: ignore[type-var]
    if isinstance(result, Err):
        raise result.error
    return result.value


def rate_limit_headers(decision: RateLimitDecision) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_seconds),
    }


def enforce_rate_limit(route_class: str) -> Callable[..., RateLimitDecision]:
    """Dependency factory that counts the request against ``route_class``.

    ``ClientIdentityUnavailable`` and ``BackendUnavailable`` propagate to the
    application error handler (400 / 503).
    """

    def _dependency(
        request: Request,
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitDecision:
        decision = limiter.admit(get_client_ip(request), route_class)
        setattr(request.state, RATE_LIMIT_STATE_KEY, decision)
        if not decision.allowed:
            headers = rate_limit_headers(decision)
            headers["Retry-After"] = str(decision.reset_seconds)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "code": "rate_limit.exceeded",
                    "message": "Too many requests, please try again later",
                    "retryAfter": decision.reset_seconds,
                },
                headers=headers,
            )
        return decision

    return _dependency


__all__ = [
    "RATE_LIMIT_STATE_KEY",
    "enforce_rate_limit",
    "get_blobs",
    "get_client_ip",
    "get_rate_limiter",
    "get_store",
    "rate_limit_headers",
    "require_payload",
]

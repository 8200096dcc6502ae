"""Health-related API endpoints."""

from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter, Request

from core.errors import BackendUnavailable
from services.metadata_store import MetadataStore

router = APIRouter(prefix="/health", tags=["Health"])


def ping_database(store: MetadataStore) -> Tuple[bool, Optional[str]]:
    """Return database connectivity status and optional error message."""
    try:
        store.ping()
        return True, None
    except BackendUnavailable as exc:
        return False, exc.message


@router.get(
    "/status",
    summary="Service runtime status",
    description="Aggregated health of the metadata store, blob storage and rate limiter.",
)
def read_service_status(request: Request):
    state = request.app.state
    db_ok, db_error = ping_database(state.store)
    payload = {
        "status": "ok" if db_ok else "degraded",
        "database": {"ok": db_ok},
        "storage": {"configured": state.blobs.is_configured()},
        "rateLimiter": {"backend": state.rate_limiter.backend.name},
    }
    if db_error:
        payload["database"]["error"] = db_error
    return payload


__all__ = ["router", "ping_database"]

"""Cleanup trigger for external schedulers."""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from core.errors import BackendUnavailable, FeatureDisabledError
from core.logging import get_logger
from services import cleanup_service
from services.blob_storage import BlobStorage
from services.metadata_store import MetadataStore, utcnow
from web.deps import get_blobs, get_store

logger = get_logger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


def _authorized(secret: Optional[str], authorization: Optional[str]) -> bool:
    if not secret:
        return True
    expected = f"Bearer {secret}"
    return hmac.compare_digest((authorization or "").encode(), expected.encode())


@router.get("/cleanup", summary="Remove expired uploads, shares and tokens")
def run_cleanup(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    store: MetadataStore = Depends(get_store),
    blobs: BlobStorage = Depends(get_blobs),
):
    settings = request.app.state.cleanup_settings
    if not _authorized(settings.cron_secret, authorization):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "auth.unauthorized", "message": "Unauthorized"},
        )
    if not settings.enabled:
        raise FeatureDisabledError("Cleanup is disabled")

    now = utcnow()
    try:
        stats = cleanup_service.run_cleanup(store, blobs, now, batch_size=settings.batch_size)
    except BackendUnavailable:
        logger.error("Cleanup aborted: metadata store unavailable.")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": {"code": "cleanup.failed", "message": "Cleanup failed"}},
            headers={"Cache-Control": "no-store, private"},
        )
    return {"success": True, "stats": stats.as_dict(), "timestamp": now.isoformat()}


__all__ = ["router"]

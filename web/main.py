"""FastAPI application factory for the dead-drop service."""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.config import CleanupSettings, ShareSettings, StorageSettings, UploadSettings
from core.errors import AppError
from core.logging import get_logger, setup_logging
from database import SessionLocal
from services.blob_storage import BlobStorage
from services.metadata_store import MetadataStore
from services.rate_limiter import RateLimiter, build_rate_limiter
from web import routers
from web.deps import RATE_LIMIT_STATE_KEY, rate_limit_headers

logger = get_logger(__name__)

NO_STORE = "no-store, private"


def create_app(
    *,
    store: Optional[MetadataStore] = None,
    blobs: Optional[BlobStorage] = None,
    rate_limiter: Optional[RateLimiter] = None,
    upload_settings: Optional[UploadSettings] = None,
    share_settings: Optional[ShareSettings] = None,
    storage_settings: Optional[StorageSettings] = None,
    cleanup_settings: Optional[CleanupSettings] = None,
) -> FastAPI:
    """Build the application; collaborators default to the environment configuration."""
    setup_logging()
    storage_settings = storage_settings or StorageSettings.load()

    app = FastAPI(title="Dead Drop API", version="1.0.0")
    app.state.store = store or MetadataStore(SessionLocal)
    app.state.blobs = blobs or BlobStorage.from_settings(storage_settings)
    app.state.rate_limiter = rate_limiter or build_rate_limiter()
    app.state.upload_settings = upload_settings or UploadSettings.load()
    app.state.share_settings = share_settings or ShareSettings.load()
    app.state.storage_settings = storage_settings
    app.state.cleanup_settings = cleanup_settings or CleanupSettings.load()

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
        else:
            logger.debug("%s %s rejected: %s", request.method, request.url.path, exc.code)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.to_detail()},
            headers={"Cache-Control": NO_STORE},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": {"code": "server.error", "message": "Internal server error"}},
            headers={"Cache-Control": NO_STORE},
        )

    @app.middleware("http")
    async def apply_response_headers(request: Request, call_next):
        """Mark every response uncacheable and surface the rate limit quota."""
        response = await call_next(request)
        response.headers.setdefault("Cache-Control", NO_STORE)
        decision = getattr(request.state, RATE_LIMIT_STATE_KEY, None)
        if decision is not None:
            for header, value in rate_limit_headers(decision).items():
                response.headers.setdefault(header, value)
        return response

    @app.get("/healthz", include_in_schema=False)
    def health_probe():
        """Lightweight health probe."""
        db_ok, db_error = routers.health.ping_database(app.state.store)
        payload = {"status": "ok" if db_ok else "unhealthy", "database": {"ok": db_ok}}
        if db_error:
            payload["database"]["error"] = db_error
        status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=status_code, content=payload)

    @app.get("/metrics", include_in_schema=False)
    def prometheus_metrics():
        """Expose Prometheus metrics."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(routers.upload.router, prefix="/api")
    app.include_router(routers.download.router, prefix="/api")
    app.include_router(routers.share.router, prefix="/api")
    app.include_router(routers.cron.router, prefix="/api")
    app.include_router(routers.health.router, prefix="/api")
    return app


app = create_app()

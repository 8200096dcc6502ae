"""Celery tasks for periodic maintenance."""

from __future__ import annotations

from typing import Any, Dict

from celery import shared_task

from core.logging import get_logger
from database import SessionLocal
from services import cleanup_service
from services.blob_storage import BlobStorage
from services.metadata_store import MetadataStore

logger = get_logger(__name__)


@shared_task(name="jobs.tasks.cleanup_expired_resources")
def cleanup_expired_resources() -> Dict[str, Any]:
    """Sweep expired tokens, sessions, uploads and shares."""

    stats = cleanup_service.run_scheduled_cleanup(MetadataStore(SessionLocal), BlobStorage.from_settings())
    if stats is None:
        return {"skipped": True}
    return {"skipped": False, "stats": stats.as_dict()}


__all__ = ["cleanup_expired_resources"]

"""Periodic sweep of expired uploads, shares, sessions and download tokens.

Steps run in a fixed order: download tokens, upload sessions, uploads with
their blobs, then shares together with their contents. A failing step is
logged and zero-filled so later steps still run; an unreachable metadata store
fails the whole run.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple, TypeVar

from core.config import CleanupSettings
from core.errors import BackendUnavailable
from core.logging import get_logger
from services import metrics
from services.blob_storage import BlobStorage
from services.metadata_store import (
    DOWNLOAD_TOKENS,
    NAMESPACES,
    SHARE_CONTENTS,
    SHARES,
    UPLOAD_SESSIONS,
    UPLOADS,
    MetadataStore,
    utcnow,
)

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100

T = TypeVar("T")


@dataclass
class CleanupStats:
    uploads: int = 0
    upload_sessions: int = 0
    shares: int = 0
    download_tokens: int = 0
    storage_deleted: int = 0
    storage_failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "uploads": self.uploads,
            "uploadSessions": self.upload_sessions,
            "shares": self.shares,
            "downloadTokens": self.download_tokens,
            "storageDeleted": self.storage_deleted,
            "storageFailed": self.storage_failed,
        }


def _run_step(step: str, action: Callable[[], T], fallback: T) -> T:
    try:
        return action()
    except BackendUnavailable:
        raise
    except Exception as exc:
        logger.error("Cleanup step %s failed: %s", step, exc, exc_info=True)
        metrics.record_cleanup_failure(step)
        return fallback


def delete_expired(store: MetadataStore, namespace: str, now: datetime, limit: Optional[int] = None) -> int:
    key_column = NAMESPACES[namespace].key_column
    expired = store.query_expired(namespace, now, limit)
    return store.delete_many(namespace, [getattr(record, key_column) for record in expired])


def purge_expired_uploads(
    store: MetadataStore,
    blobs: BlobStorage,
    now: datetime,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> Tuple[int, int, int]:
    """Delete one batch of expired uploads. Returns ``(rows, blobs_deleted, blobs_failed)``.

    Rows are removed whatever happened to their blobs; a blob that could not
    be deleted is left behind and only counted.
    """

    expired = store.query_expired(UPLOADS, now, batch_size)
    if not expired:
        return 0, 0, 0

    deleted = failed = 0
    for record in expired:
        try:
            ok = blobs.delete(record.storage_key).success
        except Exception as exc:
            logger.warning("Blob delete raised for %s: %s", record.storage_key, exc)
            ok = False
        if ok:
            deleted += 1
        else:
            failed += 1
            logger.warning("Failed to delete blob %s for upload %s.", record.storage_key, record.code)

    store.delete_many(UPLOADS, [record.code for record in expired])
    return len(expired), deleted, failed


def purge_expired_shares(store: MetadataStore, now: datetime, limit: Optional[int] = None) -> int:
    """Delete expired shares, removing their ``share_contents`` rows first."""

    expired = store.query_expired(SHARES, now, limit)
    if not expired:
        return 0
    content_ids = sorted({share.content_id for share in expired if share.content_id})
    store.delete_many(SHARE_CONTENTS, content_ids)
    # Cascading databases may already have dropped the shares with their contents.
    store.delete_many(SHARES, [share.code for share in expired])
    return len(expired)


def run_cleanup(
    store: MetadataStore,
    blobs: BlobStorage,
    now: Optional[datetime] = None,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> CleanupStats:
    now = now or utcnow()
    store.ping()

    stats = CleanupStats()
    stats.download_tokens = _run_step(
        "download_tokens", lambda: delete_expired(store, DOWNLOAD_TOKENS, now), 0
    )
    stats.upload_sessions = _run_step(
        "upload_sessions", lambda: delete_expired(store, UPLOAD_SESSIONS, now), 0
    )
    stats.uploads, stats.storage_deleted, stats.storage_failed = _run_step(
        "uploads", lambda: purge_expired_uploads(store, blobs, now, batch_size), (0, 0, 0)
    )
    stats.shares = _run_step("shares", lambda: purge_expired_shares(store, now), 0)

    metrics.record_cleanup(asdict(stats))
    logger.info("Cleanup completed: %s", stats.as_dict())
    return stats


def run_scheduled_cleanup(
    store: MetadataStore,
    blobs: BlobStorage,
    *,
    settings: Optional[CleanupSettings] = None,
    now: Optional[datetime] = None,
) -> Optional[CleanupStats]:
    """Entry point for schedulers; returns ``None`` when cleanup is switched off."""

    settings = settings or CleanupSettings.load()
    if not settings.enabled:
        logger.info("Cleanup disabled; skipping run.")
        return None
    return run_cleanup(store, blobs, now, batch_size=settings.batch_size)


__all__ = [
    "CleanupStats",
    "DEFAULT_BATCH_SIZE",
    "delete_expired",
    "purge_expired_shares",
    "purge_expired_uploads",
    "run_cleanup",
    "run_scheduled_cleanup",
]

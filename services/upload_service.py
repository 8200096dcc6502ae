"""Upload creation and redemption.

Creation reserves an upload session under a fresh numeric code, writes the
blob and promotes the session into a ``file_metadata`` row. Redemption checks
logical death, the optional password, and bumps ``download_count`` with a
compare-and-set so concurrent downloads cannot exceed ``max_downloads``.
"""

from __future__ import annotations

import re
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import BinaryIO, Iterator, Optional, Tuple, Union

from core.config import (
    ALLOWED_MAX_DOWNLOADS,
    ALLOWED_MIME_TYPES,
    MB,
    UNLIMITED_DOWNLOADS,
    UploadSettings,
)
from core.errors import (
    AuthRequiredError,
    ConflictError,
    CredentialMismatchError,
    FeatureDisabledError,
    GoneError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from core.logging import get_logger
from models import DownloadToken, UploadRecord, UploadSession
from schemas.requests import UploadInitRequest
from services import code_generator
from services.blob_storage import BlobStorage
from services.metadata_store import UPLOAD_SESSIONS, UPLOADS, MetadataStore, as_utc, utcnow
from services.password_service import hash_password, verify_password

logger = get_logger(__name__)

MAX_REDEEM_ATTEMPTS = 3
FALLBACK_FILENAME = "upload.bin"
DEFAULT_MIME_TYPE = "application/octet-stream"

_PATH_SEPARATORS = re.compile(r"[/\\]")
_RESERVED_CHARS = re.compile(r'[<>:"|?*]')


@dataclass(frozen=True)
class UploadTicket:
    code: str
    expires_at: datetime
    upload_url: Optional[str] = None


@dataclass(frozen=True)
class UploadSummary:
    name: str
    size: int
    expires_at: datetime
    requires_password: bool
    downloads_remaining: Union[int, str]


class DownloadPayload:
    """An authorized blob stream.

    ``release`` closes the blob stream and, for the final allowed download,
    removes the blob. It runs when ``stream`` finishes or is closed and may be
    called again safely, e.g. from a response background task when the client
    went away before streaming started.
    """

    def __init__(self, record: UploadRecord, chunks: Iterator[bytes], blobs: BlobStorage, delete_after: bool) -> None:
        self.record = record
        self.delete_after = delete_after
        self._chunks = chunks
        self._blobs = blobs
        self._lock = threading.Lock()
        self._released = False
        self.stream = self._iterate()

    def _iterate(self) -> Iterator[bytes]:
        if self._released:
            return
        try:
            yield from self._chunks
        finally:
            self.release()

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        close = getattr(self._chunks, "close", None)
        if close is not None:
            close()
        if not self.delete_after:
            return
        key = self.record.storage_key
        result = self._blobs.delete(key)
        if not result.success:
            logger.warning("Blob %s could not be removed after final download: %s", key, result.error)


@dataclass(frozen=True)
class DownloadGrant:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class _ValidatedUpload:
    name: str
    size: int
    mime_type: str
    expiry_minutes: int
    max_downloads: int
    password: Optional[str]


def sanitize_filename(filename: Optional[str]) -> str:
    """Strip path traversal and reserved characters from a client filename."""

    cleaned = _PATH_SEPARATORS.sub("_", filename or "")
    cleaned = cleaned.replace("..", "_")
    cleaned = _RESERVED_CHARS.sub("_", cleaned)
    return cleaned[:255] or FALLBACK_FILENAME


def is_allowed_mime_type(mime_type: Optional[str]) -> bool:
    # Declared type only; file contents are not sniffed.
    if not mime_type:
        return False
    for allowed in ALLOWED_MIME_TYPES:
        if allowed.endswith("/*"):
            if mime_type.startswith(allowed[:-1]):
                return True
        elif mime_type == allowed:
            return True
    return False


def build_storage_key(code: str, sanitized_name: str) -> str:
    return f"{code}-{secrets.token_hex(4)}-{sanitized_name}"


def is_logically_dead(record: UploadRecord, now: Optional[datetime] = None) -> bool:
    return _death_reason(record, now or utcnow()) is not None


def downloads_remaining(record: UploadRecord) -> Union[int, str]:
    if record.max_downloads == UNLIMITED_DOWNLOADS:
        return "unlimited"
    return max(record.max_downloads - record.download_count, 0)


def _death_reason(record: UploadRecord, now: datetime) -> Optional[str]:
    if now > as_utc(record.expires_at):
        return "File has expired"
    if record.max_downloads != UNLIMITED_DOWNLOADS and record.download_count >= record.max_downloads:
        return "Download limit reached"
    return None


def _is_final_download(record: UploadRecord) -> bool:
    return record.max_downloads != UNLIMITED_DOWNLOADS and record.download_count >= record.max_downloads


def _require_valid_code(code: str) -> None:
    if not code_generator.is_valid_upload_code(code):
        raise ValidationError("Invalid code format", field="code")


def _validate_request(request: UploadInitRequest, settings: UploadSettings) -> _ValidatedUpload:
    if not request.filename:
        raise ValidationError("Invalid file name", field="files")
    if request.size <= 0:
        raise ValidationError("Invalid file size", field="files")
    if request.size > settings.max_file_size:
        raise ValidationError(
            f"File size exceeds {round(settings.max_file_size / MB)} MB limit",
            field="files",
        )
    if request.size > settings.max_upload_size:
        raise ValidationError(
            f"Total file size exceeds {round(settings.max_upload_size / MB)} MB limit",
            field="files",
        )
    mime_type = request.mimeType or DEFAULT_MIME_TYPE
    if not is_allowed_mime_type(mime_type):
        raise ValidationError("File type is not allowed", field="files")

    if request.expiryMinutes is None:
        expiry_minutes = settings.default_expiry_minutes
    else:
        expiry_minutes = min(max(request.expiryMinutes, 1), settings.max_expiry_minutes)
    max_downloads = (
        request.maxDownloads
        if request.maxDownloads in ALLOWED_MAX_DOWNLOADS
        else settings.default_max_downloads
    )
    return _ValidatedUpload(
        name=sanitize_filename(request.filename),
        size=request.size,
        mime_type=mime_type,
        expiry_minutes=expiry_minutes,
        max_downloads=max_downloads,
        password=request.password,
    )


def _reserve_session(
    store: MetadataStore,
    upload: _ValidatedUpload,
    settings: UploadSettings,
    now: datetime,
) -> UploadSession:
    password_hash = hash_password(upload.password) if upload.password else None
    expires_at = now + timedelta(minutes=upload.expiry_minutes)
    session_expires_at = now + timedelta(minutes=settings.session_ttl_minutes)
    reserved: dict = {}

    def _persist(code: str) -> bool:
        candidate = UploadSession(
            code=code,
            storage_key=build_storage_key(code, upload.name),
            original_name=upload.name,
            size=upload.size,
            mime_type=upload.mime_type,
            expires_at=expires_at,
            max_downloads=upload.max_downloads,
            password_hash=password_hash,
            session_expires_at=session_expires_at,
        )
        if not store.reserve_upload_session(candidate):
            return False
        reserved["session"] = candidate
        return True

    code_generator.reserve(
        code_generator.generate_upload_code,
        store.upload_code_in_use,
        persist=_persist,
        namespace=UPLOADS,
    )
    return reserved["session"]


def _check_enabled(settings: UploadSettings, blobs: BlobStorage) -> None:
    if not settings.enabled:
        raise FeatureDisabledError("File uploads are temporarily disabled")
    if not blobs.is_configured():
        raise StorageError("Storage not configured")


def create_upload(
    store: MetadataStore,
    blobs: BlobStorage,
    request: UploadInitRequest,
    stream: BinaryIO,
    *,
    settings: Optional[UploadSettings] = None,
    now: Optional[datetime] = None,
) -> UploadTicket:
    """Store ``stream`` and return the code recipients use to redeem it."""

    settings = settings or UploadSettings.load()
    _check_enabled(settings, blobs)
    upload = _validate_request(request, settings)
    now = now or utcnow()

    session = _reserve_session(store, upload, settings, now)
    try:
        blobs.put(session.storage_key, stream, upload.mime_type, upload.size)
    except StorageError:
        store.delete(UPLOAD_SESSIONS, session.code)
        raise

    record = store.finalize_upload(session.code, now=now)
    if record is None:
        blobs.delete(session.storage_key)
        raise StorageError("Upload session expired before completion")

    logger.info("Upload %s stored (%d bytes, expires %s).", record.code, record.size, record.expires_at)
    return UploadTicket(code=record.code, expires_at=as_utc(record.expires_at))


def init_upload(
    store: MetadataStore,
    blobs: BlobStorage,
    request: UploadInitRequest,
    *,
    settings: Optional[UploadSettings] = None,
    presign_ttl_seconds: int = 900,
    now: Optional[datetime] = None,
) -> UploadTicket:
    """Reserve a code and hand back a presigned URL for a direct blob PUT."""

    settings = settings or UploadSettings.load()
    _check_enabled(settings, blobs)
    upload = _validate_request(request, settings)
    now = now or utcnow()

    session = _reserve_session(store, upload, settings, now)
    try:
        upload_url = blobs.presigned_put_url(session.storage_key, presign_ttl_seconds)
    except StorageError:
        store.delete(UPLOAD_SESSIONS, session.code)
        raise

    logger.info("Upload session %s created (%d bytes).", session.code, upload.size)
    return UploadTicket(code=session.code, expires_at=as_utc(session.expires_at), upload_url=upload_url)


def complete_upload(store: MetadataStore, code: str, *, now: Optional[datetime] = None) -> UploadTicket:
    _require_valid_code(code)
    record = store.finalize_upload(code, now=now or utcnow())
    if record is None:
        raise NotFoundError("Upload session not found or expired")
    logger.info("Upload %s finalized.", code)
    return UploadTicket(code=record.code, expires_at=as_utc(record.expires_at))


def describe_upload(store: MetadataStore, code: str, *, now: Optional[datetime] = None) -> UploadSummary:
    _require_valid_code(code)
    record = store.get(UPLOADS, code)
    if record is None:
        raise NotFoundError("File not found or expired")
    reason = _death_reason(record, now or utcnow())
    if reason:
        raise GoneError(reason)
    return UploadSummary(
        name=record.original_name,
        size=record.size,
        expires_at=as_utc(record.expires_at),
        requires_password=record.password_hash is not None,
        downloads_remaining=downloads_remaining(record),
    )


def _check_password(store: MetadataStore, record: UploadRecord, password: Optional[str]) -> None:
    if not record.password_hash:
        return
    if not password:
        raise AuthRequiredError()
    result = verify_password(password, record.password_hash)
    if not result.verified:
        logger.debug("Password mismatch for upload %s.", record.code)
        raise CredentialMismatchError()
    if result.needs_rehash and result.new_credential:
        store.update_password_hash(UPLOADS, record.code, result.new_credential)
        logger.info("Upgraded legacy credential for upload %s.", record.code)


def _authorize_and_count(
    store: MetadataStore,
    code: str,
    password: Optional[str],
    now: datetime,
) -> Tuple[UploadRecord, bool]:
    for _ in range(MAX_REDEEM_ATTEMPTS):
        record = store.get(UPLOADS, code)
        if record is None:
            raise NotFoundError("File not found or expired")
        reason = _death_reason(record, now)
        if reason:
            raise GoneError(reason)
        _check_password(store, record, password)

        updated = store.increment_download_count(code, record.download_count)
        if updated is not None:
            return updated, _is_final_download(updated)
        logger.debug("Download count for %s changed concurrently, retrying.", code)

    raise ConflictError("Download busy, retry")


def redeem_upload(
    store: MetadataStore,
    blobs: BlobStorage,
    code: str,
    password: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> DownloadPayload:
    """Authorize one download of ``code`` and open its blob stream.

    The blob of the final allowed download is removed once the stream is
    exhausted or the payload is released; the row stays as a dead record until cleanup runs.
    """

    _require_valid_code(code)
    record, final = _authorize_and_count(store, code, password, now or utcnow())
    payload = DownloadPayload(record, blobs.get(record.storage_key), blobs, final)
    logger.info("Upload %s downloaded (%d/%s).", code, record.download_count, record.max_downloads)
    return payload


def issue_download_token(
    store: MetadataStore,
    code: str,
    password: Optional[str] = None,
    *,
    settings: Optional[UploadSettings] = None,
    now: Optional[datetime] = None,
) -> DownloadGrant:
    """Spend one download and return a single-use token for fetching it."""

    settings = settings or UploadSettings.load()
    _require_valid_code(code)
    now = now or utcnow()
    record, final = _authorize_and_count(store, code, password, now)

    token = DownloadToken(
        token=secrets.token_urlsafe(32),
        file_code=record.code,
        delete_after=final,
        expires_at=now + timedelta(seconds=settings.download_token_ttl_seconds),
    )
    store.create_download_token(token)
    return DownloadGrant(token=token.token, expires_at=token.expires_at)


def redeem_download_token(
    store: MetadataStore,
    blobs: BlobStorage,
    token: str,
    *,
    now: Optional[datetime] = None,
) -> DownloadPayload:
    now = now or utcnow()
    consumed = store.consume_download_token(token) if token else None
    if consumed is None:
        raise NotFoundError("Download link not found or already used")
    if as_utc(consumed.expires_at) < now:
        raise GoneError("Download link has expired")

    record = store.get(UPLOADS, consumed.file_code)
    if record is None:
        raise NotFoundError("File not found or expired")
    if now > as_utc(record.expires_at):
        raise GoneError("File has expired")
    return DownloadPayload(record, blobs.get(record.storage_key), blobs, consumed.delete_after)


__all__ = [
    "DownloadGrant",
    "DownloadPayload",
    "UploadSummary",
    "UploadTicket",
    "build_storage_key",
    "complete_upload",
    "create_upload",
    "describe_upload",
    "downloads_remaining",
    "init_upload",
    "is_allowed_mime_type",
    "is_logically_dead",
    "issue_download_token",
    "redeem_download_token",
    "redeem_upload",
    "sanitize_filename",
]

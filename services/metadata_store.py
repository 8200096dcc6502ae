"""Metadata store over SQLAlchemy for uploads, shares and download tokens.

Namespaces map to tables. Besides the generic ``get``/``put``/``delete``/
``query_expired``/``delete_many`` contract the store offers the few
conditional writes the request handlers need (unique inserts and
compare-and-set counters). Connectivity failures surface as
``BackendUnavailable``; unique-constraint violations become a ``False`` or
``None`` result so callers can retry with another code.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Type

from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from core.errors import BackendUnavailable
from core.logging import get_logger
from models import DownloadToken, ShareContent, ShareRecord, UploadRecord, UploadSession

logger = get_logger(__name__)

UTC = timezone.utc

UPLOAD_SESSIONS = "upload_sessions"
UPLOADS = "file_metadata"
SHARES = "shares"
SHARE_CONTENTS = "share_contents"
DOWNLOAD_TOKENS = "download_tokens"


@dataclass(frozen=True)
class Namespace:
    model: Type[Any]
    key_column: str
    expiry_column: Optional[str]


NAMESPACES: Dict[str, Namespace] = {
    UPLOAD_SESSIONS: Namespace(UploadSession, "code", "session_expires_at"),
    UPLOADS: Namespace(UploadRecord, "code", "expires_at"),
    SHARES: Namespace(ShareRecord, "code", "expires_at"),
    SHARE_CONTENTS: Namespace(ShareContent, "id", None),
    DOWNLOAD_TOKENS: Namespace(DownloadToken, "token", "expires_at"),
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


def _namespace(name: str) -> Namespace:
    try:
        return NAMESPACES[name]
    except KeyError:
        raise ValueError(f"Unknown namespace: {name}") from None


class MetadataStore:
    """Thin repository around a SQLAlchemy session factory."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except (OperationalError, InterfaceError) as exc:
            session.rollback()
            logger.error("Metadata store unreachable: %s", exc, exc_info=True)
            raise BackendUnavailable() from exc
        except DBAPIError as exc:
            session.rollback()
            if exc.connection_invalidated:
                logger.error("Metadata store connection invalidated: %s", exc, exc_info=True)
                raise BackendUnavailable() from exc
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Generic contract
    # ------------------------------------------------------------------
    def ping(self) -> None:
        with self._session() as session:
            session.execute(text("SELECT 1"))

    def get(self, namespace: str, key: str) -> Optional[Any]:
        ns = _namespace(namespace)
        column = getattr(ns.model, ns.key_column)
        with self._session() as session:
            record = session.execute(select(ns.model).where(column == key)).scalar_one_or_none()
            if record is not None:
                session.expunge(record)
            return record

    def put(self, namespace: str, key: str, record: Any) -> Any:
        ns = _namespace(namespace)
        if not isinstance(record, ns.model):
            raise TypeError(f"{namespace} expects {ns.model.__name__}, got {type(record).__name__}")
        setattr(record, ns.key_column, key)
        with self._session() as session:
            merged = session.merge(record)
            session.flush()
            session.refresh(merged)
            session.expunge(merged)
            return merged

    def exists(self, namespace: str, key: str) -> bool:
        ns = _namespace(namespace)
        column = getattr(ns.model, ns.key_column)
        with self._session() as session:
            return session.execute(select(column).where(column == key).limit(1)).first() is not None

    def delete(self, namespace: str, key: str) -> bool:
        return self.delete_many(namespace, [key]) > 0

    def query_expired(self, namespace: str, cutoff: datetime, limit: Optional[int] = None) -> List[Any]:
        ns = _namespace(namespace)
        if ns.expiry_column is None:
            raise ValueError(f"Namespace {namespace} has no expiry field")
        expiry = getattr(ns.model, ns.expiry_column)
        stmt = select(ns.model).where(expiry < cutoff).order_by(expiry)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session() as session:
            records = list(session.execute(stmt).scalars())
            for record in records:
                session.expunge(record)
            return records

    def delete_many(self, namespace: str, keys: Sequence[str]) -> int:
        """Delete rows by key; missing keys are ignored. Returns rows removed."""

        if not keys:
            return 0
        ns = _namespace(namespace)
        column = getattr(ns.model, ns.key_column)
        with self._session() as session:
            result = session.execute(delete(ns.model).where(column.in_(list(keys))))
            return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------
    def upload_code_in_use(self, code: str) -> bool:
        return self.exists(UPLOAD_SESSIONS, code) or self.exists(UPLOADS, code)

    def reserve_upload_session(self, upload_session: UploadSession) -> bool:
        try:
            with self._session() as session:
                session.add(upload_session)
                session.flush()
                session.expunge(upload_session)
            return True
        except IntegrityError:
            logger.debug("Upload session code %s already taken.", upload_session.code)
            return False

    def finalize_upload(self, code: str, *, now: Optional[datetime] = None) -> Optional[UploadRecord]:
        """Move a live session into ``file_metadata`` within one transaction."""

        now = now or utcnow()
        try:
            with self._session() as session:
                pending = session.get(UploadSession, code)
                if pending is None or as_utc(pending.session_expires_at) < now:
                    return None
                record = UploadRecord(
                    code=pending.code,
                    storage_key=pending.storage_key,
                    original_name=pending.original_name,
                    size=pending.size,
                    mime_type=pending.mime_type,
                    expires_at=pending.expires_at,
                    max_downloads=pending.max_downloads,
                    download_count=0,
                    password_hash=pending.password_hash,
                    downloaded=False,
                )
                session.add(record)
                session.delete(pending)
                session.flush()
                session.refresh(record)
                session.expunge(record)
                return record
        except IntegrityError:
            logger.info("Upload %s was already finalized.", code)
            return None

    def increment_download_count(self, code: str, expected_count: int) -> Optional[UploadRecord]:
        """Compare-and-set ``download_count``; ``None`` when another request won."""

        with self._session() as session:
            result = session.execute(
                update(UploadRecord)
                .where(UploadRecord.code == code, UploadRecord.download_count == expected_count)
                .values(download_count=expected_count + 1, downloaded=True, updated_at=utcnow())
            )
            if not result.rowcount:
                return None
            record = session.execute(select(UploadRecord).where(UploadRecord.code == code)).scalar_one()
            session.expunge(record)
            return record

    def update_password_hash(self, namespace: str, key: str, password_hash: str) -> bool:
        ns = _namespace(namespace)
        if namespace not in (UPLOADS, SHARES):
            raise ValueError(f"Namespace {namespace} does not hold credentials")
        column = getattr(ns.model, ns.key_column)
        with self._session() as session:
            result = session.execute(update(ns.model).where(column == key).values(password_hash=password_hash))
            return bool(result.rowcount)

    # ------------------------------------------------------------------
    # Shares
    # ------------------------------------------------------------------
    def create_share_atomic(self, share: ShareRecord, content: str) -> bool:
        """Insert content and share together; ``False`` on code collision."""

        try:
            with self._session() as session:
                payload = ShareContent(content=content)
                session.add(payload)
                session.flush()
                share.content_id = payload.id
                session.add(share)
                session.flush()
                session.expunge(share)
            return True
        except IntegrityError:
            logger.debug("Share code %s already taken.", share.code)
            return False

    def get_share_content(self, content_id: str) -> Optional[str]:
        record = self.get(SHARE_CONTENTS, content_id)
        return record.content if record is not None else None

    def increment_share_view(self, code: str, expected_count: int, burn_after_reading: bool) -> Optional[ShareRecord]:
        values: Dict[str, Any] = {"view_count": expected_count + 1}
        if burn_after_reading:
            values["burned"] = True
        with self._session() as session:
            result = session.execute(
                update(ShareRecord)
                .where(
                    ShareRecord.code == code,
                    ShareRecord.view_count == expected_count,
                    ShareRecord.burned.is_(False),
                )
                .values(**values)
            )
            if not result.rowcount:
                return None
            record = session.execute(select(ShareRecord).where(ShareRecord.code == code)).scalar_one()
            session.expunge(record)
            return record

    # ------------------------------------------------------------------
    # Download tokens
    # ------------------------------------------------------------------
    def create_download_token(self, token: DownloadToken) -> None:
        with self._session() as session:
            session.add(token)
            session.flush()
            session.expunge(token)

    def consume_download_token(self, token: str) -> Optional[DownloadToken]:
        """Delete and return a token so it can be used at most once."""

        with self._session() as session:
            record = session.get(DownloadToken, token)
            if record is None:
                return None
            session.expunge(record)
            result = session.execute(
                delete(DownloadToken)
                .where(DownloadToken.token == token)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                return None
            return record


__all__ = [
    "DOWNLOAD_TOKENS",
    "MetadataStore",
    "NAMESPACES",
    "SHARES",
    "SHARE_CONTENTS",
    "UPLOADS",
    "UPLOAD_SESSIONS",
    "as_utc",
    "utcnow",
]

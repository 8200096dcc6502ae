"""Blob storage collaborator backed by a MinIO / S3-compatible bucket."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, BinaryIO, Optional, Protocol, Union, cast

from minio import Minio
from minio.error import S3Error

from core.config import StorageSettings
from core.errors import StorageError
from core.logging import get_logger

logger = get_logger(__name__)

CHUNK_SIZE_BYTES = 1024 * 1024
_MULTIPART_PART_SIZE = 10 * 1024 * 1024
_MISSING_KEY_CODES = {"NoSuchKey", "NoSuchObject"}


class MinioClientProtocol(Protocol):
    """Subset of MinIO client methods used within the project."""

    def bucket_exists(self, bucket_name: str) -> bool:
        ...

    def make_bucket(self, bucket_name: str) -> None:
        ...

    def put_object(self, bucket_name: str, object_name: str, data: BinaryIO, length: int, **kwargs: Any) -> Any:
        ...

    def get_object(self, bucket_name: str, object_name: str) -> Any:
        ...

    def remove_object(self, bucket_name: str, object_name: str) -> None:
        ...

    def presigned_put_object(self, bucket_name: str, object_name: str, expires: timedelta = ...) -> str:
        ...


class BlobStream:
    """Chunk iterator over one object; ``close`` returns the connection to the pool."""

    def __init__(self, response: Any, chunk_size: int = CHUNK_SIZE_BYTES) -> None:
        self._response = response
        self._chunks = iter(response.stream(chunk_size))
        self._closed = False

    def __iter__(self) -> "BlobStream":
        return self

    def __next__(self) -> bytes:
        if self._closed:
            raise StopIteration
        try:
            return next(self._chunks)
        except StopIteration:
            self.close()
            raise

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._response.close()
        finally:
            self._response.release_conn()


@dataclass(frozen=True)
class DeleteResult:
    success: bool
    error: Optional[str] = None


class BlobStorage:
    """``put``/``get``/``delete`` over one bucket.

    ``put`` and ``get`` raise :class:`StorageError`; ``delete`` never raises and
    treats a missing key as success.
    """

    def __init__(self, client: Optional[MinioClientProtocol], bucket: str) -> None:
        self._client = client
        self.bucket = bucket
        self._bucket_checked = False

    @classmethod
    def from_settings(cls, settings: Optional[StorageSettings] = None) -> "BlobStorage":
        settings = settings or StorageSettings.load()
        if not (settings.endpoint and settings.access_key and settings.secret_key):
            logger.warning("Storage credentials missing. Blob operations will fail.")
            return cls(None, settings.bucket)
        client = cast(
            MinioClientProtocol,
            Minio(
                settings.endpoint,
                access_key=settings.access_key,
                secret_key=settings.secret_key,
                secure=settings.secure,
            ),
        )
        logger.info("Blob storage client initialised for %s.", settings.endpoint)
        return cls(client, settings.bucket)

    def is_configured(self) -> bool:
        return self._client is not None and bool(self.bucket)

    def _require_client(self) -> MinioClientProtocol:
        if self._client is None or not self.bucket:
            raise StorageError("Storage not configured")
        return self._client

    def _ensure_bucket(self, client: MinioClientProtocol) -> None:
        if self._bucket_checked:
            return
        if not client.bucket_exists(self.bucket):
            client.make_bucket(self.bucket)
        self._bucket_checked = True

    def put(self, key: str, stream: BinaryIO, content_type: str, size_hint: Optional[int] = None) -> str:
        client = self._require_client()
        length = size_hint if size_hint is not None and size_hint >= 0 else -1
        try:
            self._ensure_bucket(client)
            client.put_object(
                self.bucket,
                key,
                stream,
                length,
                content_type=content_type or "application/octet-stream",
                part_size=_MULTIPART_PART_SIZE if length < 0 else 0,
            )
        except (S3Error, OSError, ValueError) as exc:
            logger.error("Blob upload failed for %s: %s", key, exc, exc_info=True)
            raise StorageError("Upload failed") from exc
        logger.debug("Stored blob %s (%s bytes).", key, size_hint)
        return key

    def get(self, key: str) -> BlobStream:
        """Open ``key`` and return a closeable iterator over its chunks."""

        client = self._require_client()
        try:
            response = client.get_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in _MISSING_KEY_CODES:
                raise StorageError("File not found", status_code=404) from exc
            logger.error("Blob download failed for %s: %s", key, exc, exc_info=True)
            raise StorageError("Download failed") from exc
        except OSError as exc:
            logger.error("Blob download failed for %s: %s", key, exc, exc_info=True)
            raise StorageError("Download failed") from exc
        return BlobStream(response)

    def delete(self, key: str) -> DeleteResult:
        if self._client is None or not self.bucket:
            return DeleteResult(success=False, error="Storage not configured")
        try:
            self._client.remove_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in _MISSING_KEY_CODES:
                return DeleteResult(success=True)
            logger.warning("Blob delete failed for %s: %s", key, exc)
            return DeleteResult(success=False, error=exc.code or str(exc))
        except Exception as exc:  # transient transport failures are reported, not raised
            logger.warning("Blob delete failed for %s: %s", key, exc)
            return DeleteResult(success=False, error=str(exc))
        return DeleteResult(success=True)

    def presigned_put_url(self, key: str, expires: Union[int, timedelta] = 900) -> str:
        client = self._require_client()
        if not isinstance(expires, timedelta):
            expires = timedelta(seconds=max(1, min(int(expires), 604800)))
        try:
            self._ensure_bucket(client)
            return client.presigned_put_object(self.bucket, key, expires=expires)
        except (S3Error, OSError, ValueError) as exc:
            logger.error("Failed to create presigned upload URL for %s: %s", key, exc, exc_info=True)
            raise StorageError("Failed to prepare upload") from exc


__all__ = ["BlobStorage", "BlobStream", "CHUNK_SIZE_BYTES", "DeleteResult", "MinioClientProtocol"]

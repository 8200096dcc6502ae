import os
from typing import Dict, Generator, Iterator, Optional, Set

import pytest

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  (registers tables on Base.metadata)
from core.errors import StorageError
from database import Base
from services.blob_storage import DeleteResult
from services.metadata_store import MetadataStore


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "postgres: requires a PostgreSQL database")


class FakeBlobStorage:
    """In-memory stand-in for the MinIO-backed blob storage."""

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.fail_put = False
        self.fail_delete: Set[str] = set()
        self.deleted: list = []
        self.configured = True

    def is_configured(self) -> bool:
        return self.configured

    def put(self, key: str, stream, content_type: str, size_hint: Optional[int] = None) -> str:
        if self.fail_put:
            raise StorageError("Upload failed")
        self.objects[key] = stream.read()
        self.content_types[key] = content_type
        return key

    def get(self, key: str) -> Iterator[bytes]:
        if key not in self.objects:
            raise StorageError("File not found", status_code=404)
        data = self.objects[key]
        return iter([data[index:index + 4] for index in range(0, len(data), 4)] or [b""])

    def delete(self, key: str) -> DeleteResult:
        self.deleted.append(key)
        if key in self.fail_delete:
            return DeleteResult(success=False, error="boom")
        self.objects.pop(key, None)
        return DeleteResult(success=True)

    def presigned_put_url(self, key: str, expires=900) -> str:
        return f"https://storage.test/dead-drop/{key}?X-Amz-Expires={expires}"


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    test_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record) -> None:  # pragma: no cover - SQLAlchemy callback
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture()
def store(engine: Engine) -> MetadataStore:
    return MetadataStore(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))


@pytest.fixture()
def blobs() -> FakeBlobStorage:
    return FakeBlobStorage()

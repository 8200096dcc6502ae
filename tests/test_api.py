from __future__ import annotations

from typing import Iterator, Optional

import pytest
from fastapi.testclient import TestClient

from core.config import MB, CleanupSettings, ShareSettings, StorageSettings, UploadSettings
from core.errors import BackendUnavailable
from services.metadata_store import UPLOADS, MetadataStore
from services.rate_limiter import InMemoryCounterBackend, RateLimiter, RedisCounterBackend
from web.main import create_app

CRON_SECRET = "s3cret"


def _limiter(**limits: int) -> RateLimiter:
    merged = {"upload": 10, "download": 60, "share": 60}
    merged.update(limits)
    return RateLimiter(InMemoryCounterBackend(), merged, window_seconds=60, require_client_identity=True)


def _client(
    store,
    blobs,
    *,
    rate_limiter: Optional[RateLimiter] = None,
    cleanup_enabled: bool = True,
) -> TestClient:
    app = create_app(
        store=store,
        blobs=blobs,
        rate_limiter=rate_limiter or _limiter(),
        upload_settings=UploadSettings(
            enabled=True,
            max_file_size=100 * MB,
            max_upload_size=1024 * MB,
            default_expiry_minutes=60,
            max_expiry_minutes=10080,
            default_max_downloads=1,
            session_ttl_minutes=30,
            download_token_ttl_seconds=300,
        ),
        share_settings=ShareSettings(
            enabled=True,
            max_text_bytes=MB,
            max_image_bytes=5 * MB,
            default_expiry_minutes=60,
            max_expiry_minutes=43200,
        ),
        storage_settings=StorageSettings(
            endpoint=None,
            access_key=None,
            secret_key=None,
            bucket="dead-drop",
            secure=False,
            presign_ttl_seconds=900,
        ),
        cleanup_settings=CleanupSettings(
            enabled=cleanup_enabled,
            cron_secret=CRON_SECRET,
            interval_minutes=15,
            batch_size=100,
        ),
    )
    return TestClient(app)


@pytest.fixture()
def client(store: MetadataStore, blobs) -> Iterator[TestClient]:
    test_client = _client(store, blobs)
    try:
        yield test_client
    finally:
        test_client.close()


def _upload(client: TestClient, **form) -> str:
    response = client.post(
        "/api/upload",
        files={"file": ("notes.txt", b"hello world", "text/plain")},
        data={"maxDownloads": "1", **form},
    )
    assert response.status_code == 200, response.text
    return response.json()["code"]


def test_upload_describe_and_download_once(client: TestClient) -> None:
    code = _upload(client)

    meta = client.get(f"/api/download/{code}")
    assert meta.status_code == 200
    assert meta.json()["name"] == "notes.txt"
    assert meta.json()["downloadsRemaining"] == 1
    assert meta.json()["requiresPassword"] is False

    download = client.post(f"/api/download/{code}", json={})
    assert download.status_code == 200
    assert download.content == b"hello world"
    assert download.headers["content-disposition"] == 'attachment; filename="notes.txt"'
    assert download.headers["cache-control"] == "no-store, private"

    again = client.post(f"/api/download/{code}", json={})
    assert again.status_code == 410
    assert again.json()["detail"]["message"] == "Download limit reached"


def test_password_errors_map_to_401_and_403(client: TestClient) -> None:
    code = _upload(client, password="pw")

    assert client.post(f"/api/download/{code}").status_code == 401
    assert client.post(f"/api/download/{code}", json={"password": "no"}).status_code == 403
    assert client.post(f"/api/download/{code}", json={"password": "pw"}).status_code == 200


def test_invalid_code_and_unknown_code(client: TestClient) -> None:
    invalid = client.get("/api/download/12ab")
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["field"] == "code"
    assert client.get("/api/download/00000000").status_code == 404


def test_disallowed_file_type_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/api/upload",
        files={"file": ("tool.exe", b"MZ", "application/x-msdownload")},
    )
    assert response.status_code == 400
    assert response.json()["detail"]["message"] == "File type is not allowed"


def test_presigned_upload_endpoints(client: TestClient, store: MetadataStore) -> None:
    init = client.post(
        "/api/upload/init",
        json={"filename": "photo.png", "size": 2048, "mimeType": "image/png", "maxDownloads": 5},
    )
    assert init.status_code == 200
    body = init.json()
    assert body["uploadUrl"].startswith("https://storage.test/")

    complete = client.post(f"/api/upload/{body['code']}/complete")
    assert complete.status_code == 200
    assert store.get(UPLOADS, body["code"]).max_downloads == 5


def test_download_token_endpoints(client: TestClient) -> None:
    code = _upload(client, maxDownloads="5")

    issued = client.post(f"/api/download/{code}/token", json={})
    assert issued.status_code == 200
    url = issued.json()["url"]

    first = client.get(url)
    assert first.status_code == 200
    assert first.content == b"hello world"
    assert client.get(url).status_code == 404


def test_share_create_and_read(client: TestClient) -> None:
    created = client.post("/api/share", json={"type": "note", "content": "remember the milk"})
    assert created.status_code == 200
    code = created.json()["code"]
    assert created.json()["url"].endswith(f"/s/{code}")

    view = client.get(f"/api/share/{code}")
    assert view.status_code == 200
    assert view.json()["content"] == "remember the milk"
    assert view.json()["requiresPassword"] is False


def test_password_share_requires_post_with_password(client: TestClient) -> None:
    code = client.post("/api/share", json={"type": "paste", "content": "x", "password": "pw"}).json()["code"]

    locked = client.get(f"/api/share/{code}")
    assert locked.status_code == 401
    assert locked.json()["detail"]["requiresPassword"] is True

    assert client.post(f"/api/share/{code}", json={"password": "bad"}).status_code == 403
    assert client.post(f"/api/share/{code}", json={"password": "pw"}).json()["content"] == "x"


def test_lone_surrogate_password_is_a_mismatch(client: TestClient) -> None:
    code = client.post("/api/share", json={"type": "paste", "content": "x", "password": "pw"}).json()["code"]
    body = '{"password": "\\ud800"}'
    headers = {"Content-Type": "application/json"}

    response = client.post(f"/api/share/{code}", content=body, headers=headers)
    assert response.status_code == 403

    rejected = client.post("/api/share", content='{"type": "paste", "content": "x", "password": "\\ud800"}', headers=headers)
    assert rejected.status_code == 400
    assert rejected.json()["detail"]["field"] == "password"


def test_share_body_validation(client: TestClient) -> None:
    missing = client.post("/api/share", json={"type": "paste"})
    assert missing.status_code == 400
    assert missing.json()["detail"]["message"] == "Content and type required"

    not_an_object = client.post("/api/share", json=["paste"])
    assert not_an_object.status_code == 400
    assert not_an_object.json()["detail"]["message"] == "Invalid request body"


def test_rate_limit_headers_and_rejection(store: MetadataStore, blobs) -> None:
    with _client(store, blobs, rate_limiter=_limiter(share=2)) as client:
        first = client.post("/api/share", json={"type": "note", "content": "a"})
        assert first.headers["x-ratelimit-limit"] == "2"
        assert first.headers["x-ratelimit-remaining"] == "1"

        client.post("/api/share", json={"type": "note", "content": "b"})
        rejected = client.post("/api/share", json={"type": "note", "content": "c"})

    assert rejected.status_code == 429
    assert 1 <= int(rejected.headers["retry-after"]) <= 60
    assert rejected.headers["x-ratelimit-remaining"] == "0"
    assert rejected.json()["detail"]["code"] == "rate_limit.exceeded"


def test_rate_limiter_backend_outage_is_503(store: MetadataStore, blobs) -> None:
    limiter = RateLimiter(RedisCounterBackend(None), {"upload": 10, "download": 60, "share": 60})
    with _client(store, blobs, rate_limiter=limiter) as client:
        response = client.post("/api/share", json={"type": "note", "content": "a"})

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "backend.unavailable"


def test_cron_requires_secret_and_returns_stats(client: TestClient) -> None:
    assert client.get("/api/cron/cleanup").status_code == 401
    assert client.get("/api/cron/cleanup", headers={"Authorization": "Bearer wrong"}).status_code == 401

    response = client.get("/api/cron/cleanup", headers={"Authorization": f"Bearer {CRON_SECRET}"})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert set(body["stats"]) == {
        "uploads",
        "uploadSessions",
        "shares",
        "downloadTokens",
        "storageDeleted",
        "storageFailed",
    }
    assert body["timestamp"]


def test_cron_disabled_is_503(store: MetadataStore, blobs) -> None:
    with _client(store, blobs, cleanup_enabled=False) as client:
        response = client.get("/api/cron/cleanup", headers={"Authorization": f"Bearer {CRON_SECRET}"})
    assert response.status_code == 503


def test_cron_with_unreachable_store_is_generic_500(blobs) -> None:
    class DownStore:
        def ping(self) -> None:
            raise BackendUnavailable("connection refused to db-primary:5432")

    with _client(DownStore(), blobs) as client:
        response = client.get("/api/cron/cleanup", headers={"Authorization": f"Bearer {CRON_SECRET}"})

    assert response.status_code == 500
    assert response.json() == {"detail": {"code": "cleanup.failed", "message": "Cleanup failed"}}


def test_health_and_metrics(client: TestClient) -> None:
    health = client.get("/healthz")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    client.post("/api/share", json={"type": "note", "content": "a"})
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "deaddrop_rate_limit_total" in metrics.text

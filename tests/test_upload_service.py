from __future__ import annotations

import dataclasses
import hashlib
import io
from datetime import datetime, timedelta, timezone

import pytest

from core.config import MB, UploadSettings
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
from schemas.requests import UploadInitRequest
from services import upload_service
from services.metadata_store import UPLOAD_SESSIONS, UPLOADS, MetadataStore, as_utc

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

SETTINGS = UploadSettings(
    enabled=True,
    max_file_size=100 * MB,
    max_upload_size=1024 * MB,
    default_expiry_minutes=60,
    max_expiry_minutes=10080,
    default_max_downloads=1,
    session_ttl_minutes=30,
    download_token_ttl_seconds=300,
)


def _request(**overrides) -> UploadInitRequest:
    values = {"filename": "report.pdf", "size": 11, "mimeType": "application/pdf"}
    values.update(overrides)
    return UploadInitRequest(**values)


def _upload(store: MetadataStore, blobs, **overrides) -> str:
    ticket = upload_service.create_upload(
        store,
        blobs,
        _request(**overrides),
        io.BytesIO(b"hello world"),
        settings=SETTINGS,
        now=NOW,
    )
    return ticket.code


def _drain(payload: upload_service.DownloadPayload) -> bytes:
    return b"".join(payload.stream)


def test_single_download_upload_becomes_unreachable_before_cleanup(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, maxDownloads=1)

    first = upload_service.redeem_upload(store, blobs, code, now=NOW)
    assert _drain(first) == b"hello world"
    assert first.record.download_count == 1

    with pytest.raises(GoneError) as exc:
        upload_service.redeem_upload(store, blobs, code, now=NOW)
    assert exc.value.status_code == 410
    assert store.get(UPLOADS, code) is not None
    assert first.record.storage_key not in blobs.objects


def test_final_download_released_before_streaming_removes_blob_once(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, maxDownloads=1)

    payload = upload_service.redeem_upload(store, blobs, code, now=NOW)
    payload.release()
    payload.release()

    assert payload.record.storage_key not in blobs.objects
    assert blobs.deleted == [payload.record.storage_key]
    assert list(payload.stream) == []


def test_release_keeps_blob_when_downloads_remain(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, maxDownloads=5)

    payload = upload_service.redeem_upload(store, blobs, code, now=NOW)
    payload.release()

    assert blobs.objects[payload.record.storage_key] == b"hello world"
    assert blobs.deleted == []


def test_create_upload_stores_blob_under_code_prefixed_key(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, filename="../etc/pass?wd")

    record = store.get(UPLOADS, code)
    assert len(code) == 8 and code.isdigit()
    assert record.original_name == "__etc_pass_wd"
    assert record.storage_key.startswith(f"{code}-")
    assert record.storage_key.endswith("-__etc_pass_wd")
    assert blobs.objects[record.storage_key] == b"hello world"
    assert store.get(UPLOAD_SESSIONS, code) is None


def test_invalid_max_downloads_falls_back_to_default_and_expiry_is_clamped(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, maxDownloads=3, expiryMinutes=999999)

    record = store.get(UPLOADS, code)
    assert record.max_downloads == 1
    assert as_utc(record.expires_at) == NOW + timedelta(minutes=10080)


def test_unlimited_downloads_are_described_as_unlimited(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, maxDownloads=-1)

    for _ in range(3):
        _drain(upload_service.redeem_upload(store, blobs, code, now=NOW))

    summary = upload_service.describe_upload(store, code, now=NOW)
    assert summary.downloads_remaining == "unlimited"
    assert summary.requires_password is False


def test_describe_reports_remaining_downloads(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, maxDownloads=5)
    _drain(upload_service.redeem_upload(store, blobs, code, now=NOW))

    summary = upload_service.describe_upload(store, code, now=NOW)

    assert summary.name == "report.pdf"
    assert summary.size == 11
    assert summary.downloads_remaining == 4


def test_expired_upload_is_gone(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, expiryMinutes=1)

    with pytest.raises(GoneError):
        upload_service.describe_upload(store, code, now=NOW + timedelta(minutes=2))
    with pytest.raises(GoneError):
        upload_service.redeem_upload(store, blobs, code, now=NOW + timedelta(minutes=2))


def test_unknown_and_malformed_codes(store: MetadataStore, blobs) -> None:
    with pytest.raises(NotFoundError):
        upload_service.describe_upload(store, "99999999", now=NOW)
    with pytest.raises(ValidationError):
        upload_service.redeem_upload(store, blobs, "abc", now=NOW)


def test_password_protected_upload(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, password="  hunter2  ", maxDownloads=5)

    with pytest.raises(AuthRequiredError) as missing:
        upload_service.redeem_upload(store, blobs, code, now=NOW)
    assert missing.value.status_code == 401
    with pytest.raises(CredentialMismatchError) as wrong:
        upload_service.redeem_upload(store, blobs, code, "nope", now=NOW)
    assert wrong.value.status_code == 403

    payload = upload_service.redeem_upload(store, blobs, code, "hunter2", now=NOW)
    assert _drain(payload) == b"hello world"
    assert store.get(UPLOADS, code).download_count == 1


def test_legacy_password_is_upgraded_on_successful_download(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, maxDownloads=5)
    store.update_password_hash(UPLOADS, code, hashlib.sha256(b"secret").hexdigest())

    _drain(upload_service.redeem_upload(store, blobs, code, "secret", now=NOW))

    assert store.get(UPLOADS, code).password_hash.startswith("scrypt$")
    _drain(upload_service.redeem_upload(store, blobs, code, "secret", now=NOW))


def test_lost_compare_and_set_races_end_in_conflict(store: MetadataStore, blobs, monkeypatch) -> None:
    code = _upload(store, blobs, maxDownloads=5)
    attempts = []

    def always_lose(code_arg: str, expected: int):
        attempts.append(expected)
        return None

    monkeypatch.setattr(store, "increment_download_count", always_lose)

    with pytest.raises(ConflictError) as exc:
        upload_service.redeem_upload(store, blobs, code, now=NOW)
    assert exc.value.status_code == 409
    assert len(attempts) == 3


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"filename": ""}, "Invalid file name"),
        ({"size": 0}, "Invalid file size"),
        ({"size": 101 * MB}, "File size exceeds 100 MB limit"),
        ({"mimeType": "application/x-msdownload"}, "File type is not allowed"),
    ],
)
def test_invalid_uploads_are_rejected(store: MetadataStore, blobs, overrides, message) -> None:
    with pytest.raises(ValidationError) as exc:
        _upload(store, blobs, **overrides)
    assert exc.value.message == message


def test_missing_mime_type_defaults_to_octet_stream_and_is_rejected(store: MetadataStore, blobs) -> None:
    with pytest.raises(ValidationError):
        _upload(store, blobs, mimeType="")


def test_blob_write_failure_releases_the_session(store: MetadataStore, blobs) -> None:
    blobs.fail_put = True

    with pytest.raises(StorageError):
        _upload(store, blobs)

    assert store.query_expired(UPLOAD_SESSIONS, NOW + timedelta(days=1)) == []


def test_disabled_uploads_and_unconfigured_storage(store: MetadataStore, blobs) -> None:
    disabled = dataclasses.replace(SETTINGS, enabled=False)
    with pytest.raises(FeatureDisabledError):
        upload_service.create_upload(store, blobs, _request(), io.BytesIO(b"x"), settings=disabled, now=NOW)

    blobs.configured = False
    with pytest.raises(StorageError):
        _upload(store, blobs)


def test_presigned_upload_flow(store: MetadataStore, blobs) -> None:
    ticket = upload_service.init_upload(store, blobs, _request(), settings=SETTINGS, now=NOW)

    assert ticket.upload_url and ticket.code in ticket.upload_url
    assert store.get(UPLOAD_SESSIONS, ticket.code) is not None
    assert store.get(UPLOADS, ticket.code) is None

    completed = upload_service.complete_upload(store, ticket.code, now=NOW)
    assert completed.code == ticket.code
    assert store.get(UPLOADS, ticket.code) is not None
    with pytest.raises(NotFoundError):
        upload_service.complete_upload(store, ticket.code, now=NOW)


def test_stale_presigned_session_cannot_complete(store: MetadataStore, blobs) -> None:
    ticket = upload_service.init_upload(store, blobs, _request(), settings=SETTINGS, now=NOW)

    with pytest.raises(NotFoundError):
        upload_service.complete_upload(store, ticket.code, now=NOW + timedelta(minutes=31))


def test_download_token_is_single_use(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, maxDownloads=5)

    grant = upload_service.issue_download_token(store, code, settings=SETTINGS, now=NOW)
    assert grant.expires_at == NOW + timedelta(seconds=300)
    assert store.get(UPLOADS, code).download_count == 1

    payload = upload_service.redeem_download_token(store, blobs, grant.token, now=NOW)
    assert _drain(payload) == b"hello world"
    with pytest.raises(NotFoundError):
        upload_service.redeem_download_token(store, blobs, grant.token, now=NOW)


def test_final_download_token_removes_blob_after_streaming(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, maxDownloads=1)
    key = store.get(UPLOADS, code).storage_key

    grant = upload_service.issue_download_token(store, code, settings=SETTINGS, now=NOW)
    with pytest.raises(GoneError):
        upload_service.issue_download_token(store, code, settings=SETTINGS, now=NOW)

    _drain(upload_service.redeem_download_token(store, blobs, grant.token, now=NOW))
    assert key not in blobs.objects


def test_expired_download_token_is_gone(store: MetadataStore, blobs) -> None:
    code = _upload(store, blobs, maxDownloads=5)
    grant = upload_service.issue_download_token(store, code, settings=SETTINGS, now=NOW)

    with pytest.raises(GoneError):
        upload_service.redeem_download_token(store, blobs, grant.token, now=NOW + timedelta(minutes=6))


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("photo.jpg", "photo.jpg"),
        ("a/b\\c.txt", "a_b_c.txt"),
        ("..hidden", "_hidden"),
        ('bad<>:"|?*.txt', "bad_______.txt"),
        ("", "upload.bin"),
        ("x" * 300, "x" * 255),
    ],
)
def test_sanitize_filename(raw, expected) -> None:
    assert upload_service.sanitize_filename(raw) == expected


def test_mime_type_patterns() -> None:
    assert upload_service.is_allowed_mime_type("image/png")
    assert upload_service.is_allowed_mime_type("text/csv")
    assert upload_service.is_allowed_mime_type("application/json")
    assert not upload_service.is_allowed_mime_type("application/octet-stream")
    assert not upload_service.is_allowed_mime_type("")

"""Download endpoints: metadata lookup, streamed redemption and single-use links."""

from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from core.config import ROUTE_DOWNLOAD
from schemas.requests import RedeemRequest
from services import upload_service
from services.blob_storage import BlobStorage
from services.metadata_store import MetadataStore
from web.deps import enforce_rate_limit, get_blobs, get_store, require_payload

router = APIRouter(prefix="/download", tags=["Download"], dependencies=[Depends(enforce_rate_limit(ROUTE_DOWNLOAD))])


def _password_from(body: Any) -> Optional[str]:
    return require_payload(RedeemRequest, body if isinstance(body, dict) else {}).password


def _stream_response(payload: upload_service.DownloadPayload) -> StreamingResponse:
    record = payload.record
    return StreamingResponse(
        payload.stream,
        media_type=record.mime_type or upload_service.DEFAULT_MIME_TYPE,
        background=BackgroundTask(payload.release),
        headers={
            "Content-Disposition": f"attachment; filename=\"{quote(record.original_name)}\"",
            "Content-Length": str(record.size),
        },
    )


@router.get("/token/{token}", summary="Fetch a file with a single-use download link")
def redeem_token(
    token: str,
    store: MetadataStore = Depends(get_store),
    blobs: BlobStorage = Depends(get_blobs),
):
    return _stream_response(upload_service.redeem_download_token(store, blobs, token))


@router.get("/{code}", summary="Describe an upload")
def describe_upload(code: str, store: MetadataStore = Depends(get_store)):
    summary = upload_service.describe_upload(store, code)
    return {
        "name": summary.name,
        "size": summary.size,
        "expiresAt": summary.expires_at.isoformat(),
        "requiresPassword": summary.requires_password,
        "downloadsRemaining": summary.downloads_remaining,
    }


@router.post("/{code}", summary="Download an upload")
def download_upload(
    code: str,
    body: Any = Body(default=None),
    store: MetadataStore = Depends(get_store),
    blobs: BlobStorage = Depends(get_blobs),
):
    payload = upload_service.redeem_upload(store, blobs, code, _password_from(body))
    return _stream_response(payload)


@router.post("/{code}/token", summary="Spend a download and issue a single-use link")
def issue_token(
    code: str,
    request: Request,
    body: Any = Body(default=None),
    store: MetadataStore = Depends(get_store),
):
    grant = upload_service.issue_download_token(
        store,
        code,
        _password_from(body),
        settings=request.app.state.upload_settings,
    )
    return {
        "token": grant.token,
        "url": f"/api/download/token/{grant.token}",
        "expiresAt": grant.expires_at.isoformat(),
    }


__all__ = ["router"]

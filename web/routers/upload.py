"""Upload endpoints: direct multipart uploads and presigned upload sessions."""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, File, Form, Request, UploadFile

from core.config import ROUTE_UPLOAD
from schemas.requests import UploadInitRequest
from services import upload_service
from services.blob_storage import BlobStorage
from services.metadata_store import MetadataStore
from web.deps import enforce_rate_limit, get_blobs, get_store, require_payload

router = APIRouter(prefix="/upload", tags=["Upload"], dependencies=[Depends(enforce_rate_limit(ROUTE_UPLOAD))])


def _ticket_payload(ticket: upload_service.UploadTicket) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"code": ticket.code, "expiresAt": ticket.expires_at.isoformat()}
    if ticket.upload_url:
        payload["uploadUrl"] = ticket.upload_url
    return payload


def _file_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    handle = upload.file
    position = handle.tell()
    handle.seek(0, os.SEEK_END)
    size = handle.tell()
    handle.seek(position)
    return size


@router.post("", summary="Upload a file directly")
def create_upload(
    request: Request,
    file: UploadFile = File(...),
    expiryMinutes: Optional[str] = Form(default=None),
    maxDownloads: Optional[str] = Form(default=None),
    password: Optional[str] = Form(default=None),
    store: MetadataStore = Depends(get_store),
    blobs: BlobStorage = Depends(get_blobs),
):
    payload = require_payload(
        UploadInitRequest,
        {
            "filename": file.filename or "",
            "size": _file_size(file),
            "mimeType": file.content_type or "",
            "expiryMinutes": expiryMinutes,
            "maxDownloads": maxDownloads,
            "password": password,
        },
    )
    ticket = upload_service.create_upload(
        store,
        blobs,
        payload,
        file.file,
        settings=request.app.state.upload_settings,
    )
    return _ticket_payload(ticket)


@router.post("/init", summary="Reserve a code and get a presigned upload URL")
def init_upload(
    request: Request,
    body: Any = Body(default=None),
    store: MetadataStore = Depends(get_store),
    blobs: BlobStorage = Depends(get_blobs),
):
    payload = require_payload(UploadInitRequest, body if body is not None else {})
    ticket = upload_service.init_upload(
        store,
        blobs,
        payload,
        settings=request.app.state.upload_settings,
        presign_ttl_seconds=request.app.state.storage_settings.presign_ttl_seconds,
    )
    return _ticket_payload(ticket)


@router.post("/{code}/complete", summary="Finalize a presigned upload")
def complete_upload(code: str, store: MetadataStore = Depends(get_store)):
    return _ticket_payload(upload_service.complete_upload(store, code))


__all__ = ["router"]

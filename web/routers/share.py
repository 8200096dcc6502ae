"""Share endpoints: create a share and redeem it by code."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Request

from core.config import ROUTE_SHARE
from schemas.requests import RedeemRequest, ShareCreateRequest
from services import share_service
from services.metadata_store import MetadataStore
from web.deps import enforce_rate_limit, get_store, require_payload

router = APIRouter(prefix="/share", tags=["Share"], dependencies=[Depends(enforce_rate_limit(ROUTE_SHARE))])


def _view_payload(view: share_service.ShareView) -> Dict[str, Any]:
    return {
        "type": view.type,
        "content": view.content,
        "language": view.language,
        "originalName": view.original_name,
        "mimeType": view.mime_type,
        "expiresAt": view.expires_at.isoformat(),
        "burnAfterReading": view.burn_after_reading,
        "burned": view.burned,
        "requiresPassword": view.requires_password,
    }


@router.post("", summary="Create a share")
def create_share(
    request: Request,
    body: Any = Body(default=None),
    store: MetadataStore = Depends(get_store),
):
    payload = require_payload(ShareCreateRequest, body)
    ticket = share_service.create_share(store, payload, settings=request.app.state.share_settings)
    base_url = str(request.base_url).rstrip("/")
    return {
        "code": ticket.code,
        "url": f"{base_url}/s/{ticket.code}",
        "expiresAt": ticket.expires_at.isoformat(),
    }


@router.get("/{code}", summary="Open a share without a password")
def read_share(code: str, store: MetadataStore = Depends(get_store)):
    return _view_payload(share_service.view_share(store, code))


@router.post("/{code}", summary="Open a password protected share")
def unlock_share(
    code: str,
    body: Any = Body(default=None),
    store: MetadataStore = Depends(get_store),
):
    password = require_payload(RedeemRequest, body if isinstance(body, dict) else {}).password
    return _view_payload(share_service.view_share(store, code, password))


__all__ = ["router"]

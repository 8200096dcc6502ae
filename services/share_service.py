"""Text, link and image shares."""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple
from urllib.parse import urlparse

from core.config import MB, ShareSettings
from core.errors import (
    AuthRequiredError,
    ConflictError,
    CredentialMismatchError,
    FeatureDisabledError,
    GoneError,
    NotFoundError,
    ValidationError,
)
from core.logging import get_logger
from models import ShareRecord
from schemas.requests import ShareCreateRequest
from services import code_generator
from services.metadata_store import SHARES, MetadataStore, as_utc, utcnow
from services.password_service import hash_password, verify_password

logger = get_logger(__name__)

SHARE_TYPES = ("link", "paste", "image", "note", "code", "json", "csv")
SHARE_TYPE_ALIASES = {"code-snippet": "code"}
MAX_VIEW_ATTEMPTS = 3

_DATA_URL = re.compile(r"^data:([^;]+);base64,(.*)$", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class ShareTicket:
    code: str
    expires_at: datetime


@dataclass(frozen=True)
class ShareView:
    type: str
    content: str
    language: Optional[str]
    original_name: Optional[str]
    mime_type: Optional[str]
    size: Optional[int]
    expires_at: datetime
    burn_after_reading: bool
    burned: bool
    view_count: int
    requires_password: bool


def normalize_share_type(value: str) -> str:
    normalized = SHARE_TYPE_ALIASES.get(value, value)
    if normalized not in SHARE_TYPES:
        raise ValidationError("Invalid share type", field="type")
    return normalized


def normalize_share_code(code: Optional[str]) -> str:
    normalized = (code or "").lower()
    if not code_generator.is_valid_share_code(normalized):
        raise ValidationError("Invalid share code", field="code")
    return normalized


def is_valid_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def parse_data_url(value: str) -> Optional[Tuple[str, str]]:
    match = _DATA_URL.match(value)
    if not match:
        return None
    return match.group(1), match.group(2)


def _decoded_length(payload: str) -> int:
    try:
        return len(base64.b64decode(payload, validate=True))
    except (binascii.Error, ValueError):
        return 0


def _validate_image(content: str, settings: ShareSettings) -> Tuple[str, int]:
    parsed = parse_data_url(content)
    if parsed is None:
        raise ValidationError("Invalid image data", field="content")
    mime_type, payload = parsed
    if not mime_type.lower().startswith("image/"):
        raise ValidationError("Invalid image type", field="content")
    size = _decoded_length(payload)
    if size <= 0:
        raise ValidationError("Invalid image data", field="content")
    if size > settings.max_image_bytes:
        raise ValidationError(
            f"Image too large (max {round(settings.max_image_bytes / MB)}MB)",
            field="content",
        )
    return mime_type, size


def create_share(
    store: MetadataStore,
    request: ShareCreateRequest,
    *,
    settings: Optional[ShareSettings] = None,
    now: Optional[datetime] = None,
) -> ShareTicket:
    settings = settings or ShareSettings.load()
    if not settings.enabled:
        raise FeatureDisabledError("Share creation is temporarily disabled")

    share_type = normalize_share_type(request.type)
    content = request.content if share_type == "image" else request.content.strip()
    if not content:
        raise ValidationError("Content and type required", field="content")

    if share_type == "link" and not is_valid_url(content):
        raise ValidationError("Invalid URL", field="content")

    mime_type = request.mimeType
    size: Optional[int] = None
    if share_type == "image":
        mime_type, size = _validate_image(content, settings)
    elif len(content.encode("utf-8")) > settings.max_text_bytes:
        raise ValidationError(
            f"Content too large (max {round(settings.max_text_bytes / MB)}MB)",
            field="content",
        )

    if share_type == "json":
        try:
            json.loads(content)
        except (ValueError, RecursionError):
            raise ValidationError("Invalid JSON", field="content") from None

    if request.expiryMinutes is None:
        expiry_minutes = settings.default_expiry_minutes
    else:
        expiry_minutes = min(max(request.expiryMinutes, 1), settings.max_expiry_minutes)
    now = now or utcnow()
    expires_at = now + timedelta(minutes=expiry_minutes)
    password_hash = hash_password(request.password) if request.password else None

    def _persist(code: str) -> bool:
        share = ShareRecord(
            code=code,
            type=share_type,
            original_name=request.originalName,
            mime_type=mime_type,
            size=size,
            language=request.language,
            expires_at=expires_at,
            password_hash=password_hash,
            burn_after_reading=request.burnAfterReading,
            view_count=0,
            burned=False,
        )
        return store.create_share_atomic(share, content)

    code = code_generator.reserve(
        code_generator.generate_share_code,
        lambda candidate: store.exists(SHARES, candidate),
        persist=_persist,
        namespace=SHARES,
    )
    logger.info("Share %s created (type=%s, expires %s).", code, share_type, expires_at.isoformat())
    return ShareTicket(code=code, expires_at=expires_at)


def _check_password(store: MetadataStore, share: ShareRecord, password: Optional[str]) -> None:
    if not share.password_hash:
        return
    if not password:
        raise AuthRequiredError(
            extra={
                "requiresPassword": True,
                "type": share.type,
                "burnAfterReading": bool(share.burn_after_reading),
            }
        )
    result = verify_password(password, share.password_hash)
    if not result.verified:
        logger.debug("Password mismatch for share %s.", share.code)
        raise CredentialMismatchError()
    if result.needs_rehash and result.new_credential:
        store.update_password_hash(SHARES, share.code, result.new_credential)
        logger.info("Upgraded legacy credential for share %s.", share.code)


def view_share(
    store: MetadataStore,
    code: str,
    password: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> ShareView:
    """Return the share payload and count the view; burns one-shot shares."""

    code = normalize_share_code(code)
    now = now or utcnow()

    for _ in range(MAX_VIEW_ATTEMPTS):
        share = store.get(SHARES, code)
        if share is None:
            raise NotFoundError("Share not found")
        if as_utc(share.expires_at) < now:
            raise GoneError("Share has expired")
        if share.burned:
            raise GoneError("This share has been destroyed")
        _check_password(store, share, password)

        updated = store.increment_share_view(code, share.view_count, bool(share.burn_after_reading))
        if updated is None:
            logger.debug("View count for share %s changed concurrently, retrying.", code)
            continue

        content = store.get_share_content(updated.content_id)
        return ShareView(
            type=updated.type,
            content=content or "",
            language=updated.language,
            original_name=updated.original_name,
            mime_type=updated.mime_type,
            size=updated.size,
            expires_at=as_utc(updated.expires_at),
            burn_after_reading=bool(updated.burn_after_reading),
            burned=bool(updated.burned),
            view_count=updated.view_count,
            requires_password=updated.password_hash is not None,
        )

    raise ConflictError("Share busy, retry")


__all__ = [
    "SHARE_TYPES",
    "ShareTicket",
    "ShareView",
    "create_share",
    "is_valid_url",
    "normalize_share_code",
    "normalize_share_type",
    "parse_data_url",
    "view_share",
]

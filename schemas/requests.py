"""Request bodies accepted by the upload, download and share endpoints."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Generic, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError

from core.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


def _require_utf8(value: str) -> str:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise ValueError("text is not valid UTF-8") from None
    return value


def _optional_password(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = _require_utf8(value).strip()
    return trimmed or None


def _lenient_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value)) if isinstance(value, (int, float)) else int(str(value).strip())
    except (TypeError, ValueError):
        return None


class RequestModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # Per-field messages shown to the requester when validation fails.
    invalid_messages: ClassVar[Dict[str, str]] = {}


class UploadInitRequest(RequestModel):
    filename: str = ""
    size: int = 0
    mimeType: str = ""
    expiryMinutes: Optional[int] = None
    maxDownloads: Optional[int] = None
    password: Optional[str] = None

    invalid_messages: ClassVar[Dict[str, str]] = {
        "filename": "Invalid file name",
        "size": "Invalid file size",
        "mimeType": "File type is not allowed",
        "password": "Invalid password",
    }

    @field_validator("expiryMinutes", "maxDownloads", mode="before")
    def _parse_int(cls, value: Any) -> Optional[int]:
        return _lenient_int(value)

    @field_validator("password", mode="before")
    def _strip_password(cls, value: Any) -> Optional[str]:
        return _optional_password(value)


class ShareCreateRequest(RequestModel):
    type: str
    content: str
    expiryMinutes: Optional[int] = None
    password: Optional[str] = None
    burnAfterReading: bool = False
    language: Optional[str] = None
    originalName: Optional[str] = None
    mimeType: Optional[str] = None

    invalid_messages: ClassVar[Dict[str, str]] = {
        "type": "Content and type required",
        "content": "Content and type required",
        "password": "Invalid password",
    }

    @field_validator("expiryMinutes", mode="before")
    def _parse_expiry(cls, value: Any) -> Optional[int]:
        return _lenient_int(value)

    @field_validator("password", mode="before")
    def _strip_password(cls, value: Any) -> Optional[str]:
        return _optional_password(value)

    @field_validator("content")
    def _encodable_content(cls, value: str) -> str:
        return _require_utf8(value)

    @field_validator("burnAfterReading", mode="before")
    def _coerce_flag(cls, value: Any) -> bool:
        return bool(value)

    @field_validator("language", "originalName", "mimeType", mode="before")
    def _optional_text(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return None
        return value.strip() or None


class RedeemRequest(RequestModel):
    password: Optional[str] = None

    @field_validator("password", mode="before")
    def _password_or_none(cls, value: Any) -> Optional[str]:
        return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class Ok(Generic[ModelT]):
    value: ModelT


@dataclass(frozen=True)
class Err:
    error: ValidationError


ParseResult = Union[Ok[ModelT], Err]


def parse_payload(model: Type[ModelT], raw: Any) -> ParseResult:
    """Validate an untrusted JSON body into ``model`` without raising."""

    if not isinstance(raw, Mapping):
        return Err(ValidationError("Invalid request body"))
    try:
        return Ok(model.model_validate(dict(raw)))
    except PydanticValidationError as exc:
        errors = exc.errors()
        location = errors[0].get("loc", ()) if errors else ()
        field = str(location[0]) if location else None
        messages = getattr(model, "invalid_messages", {})
        message = messages.get(field or "", f"Invalid {field}" if field else "Invalid request body")
        return Err(ValidationError(message, field=field))


__all__ = [
    "Err",
    "Ok",
    "ParseResult",
    "RedeemRequest",
    "ShareCreateRequest",
    "UploadInitRequest",
    "parse_payload",
]

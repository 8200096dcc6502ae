"""Runtime settings for uploads, shares, rate limiting and cleanup."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from core.env import env_bool, env_choice, env_float, env_int, env_str, is_production

MB = 1024 * 1024

UPLOAD_CODE_LENGTH = 8
SHARE_CODE_LENGTH = 8
CODE_MAX_ATTEMPTS = 10

UNLIMITED_DOWNLOADS = -1
ALLOWED_MAX_DOWNLOADS: Tuple[int, ...] = (1, 5, 10, UNLIMITED_DOWNLOADS)

ALLOWED_MIME_TYPES: Tuple[str, ...] = (
    "image/*",
    "video/*",
    "audio/*",
    "application/pdf",
    "application/zip",
    "application/x-rar-compressed",
    "application/x-7z-compressed",
    "text/*",
    "application/json",
    "application/xml",
)

ROUTE_UPLOAD = "upload"
ROUTE_DOWNLOAD = "download"
ROUTE_SHARE = "share"


@dataclass(frozen=True)
class UploadSettings:
    enabled: bool
    max_file_size: int
    max_upload_size: int
    default_expiry_minutes: int
    max_expiry_minutes: int
    default_max_downloads: int
    session_ttl_minutes: int
    download_token_ttl_seconds: int

    @classmethod
    def load(cls) -> "UploadSettings":
        return cls(
            enabled=env_bool("UPLOADS_ENABLED", True),
            max_file_size=env_int("MAX_FILE_SIZE", 100 * MB, minimum=1),
            max_upload_size=env_int("MAX_UPLOAD_SIZE", 1024 * MB, minimum=1),
            default_expiry_minutes=env_int("UPLOAD_DEFAULT_EXPIRY_MINUTES", 60, minimum=1),
            max_expiry_minutes=env_int("UPLOAD_MAX_EXPIRY_MINUTES", 60 * 24 * 7, minimum=1),
            default_max_downloads=1,
            session_ttl_minutes=env_int("UPLOAD_SESSION_TTL_MINUTES", 30, minimum=1),
            download_token_ttl_seconds=env_int("DOWNLOAD_TOKEN_TTL_SECONDS", 300, minimum=10),
        )


@dataclass(frozen=True)
class ShareSettings:
    enabled: bool
    max_text_bytes: int
    max_image_bytes: int
    default_expiry_minutes: int
    max_expiry_minutes: int

    @classmethod
    def load(cls) -> "ShareSettings":
        return cls(
            enabled=env_bool("SHARES_ENABLED", True),
            max_text_bytes=env_int("MAX_SHARE_TEXT_SIZE", 1 * MB, minimum=1),
            max_image_bytes=env_int("MAX_SHARE_IMAGE_BYTES", 5 * MB, minimum=1),
            default_expiry_minutes=60,
            max_expiry_minutes=env_int("SHARE_MAX_EXPIRY_MINUTES", 60 * 24 * 30, minimum=1),
        )


@dataclass(frozen=True)
class RateLimitSettings:
    """Rate limiter configuration.

    ``backend`` is one of ``redis``, ``memory`` or ``auto``. ``auto`` picks
    Redis when a URL is configured; otherwise it uses the in-process map
    unless ``APP_ENV=production``, in which case every request is rejected as
    backend-unavailable rather than silently counting per instance.
    """

    backend: str
    redis_url: Optional[str]
    window_seconds: int
    redis_timeout_seconds: float
    require_client_identity: bool
    production: bool
    limits: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def load(cls) -> "RateLimitSettings":
        production = is_production()
        return cls(
            backend=env_choice("RATE_LIMIT_BACKEND", "auto", ("redis", "memory", "auto")),
            redis_url=env_str("RATE_LIMIT_REDIS_URL") or None,
            window_seconds=env_int("RATE_LIMIT_WINDOW_SECONDS", 60, minimum=1),
            redis_timeout_seconds=env_float("RATE_LIMIT_REDIS_TIMEOUT_SECONDS", 0.5, minimum=0.01),
            require_client_identity=env_bool("RATE_LIMIT_REQUIRE_CLIENT_IP", production),
            production=production,
            limits={
                ROUTE_UPLOAD: env_int("RATE_LIMIT_UPLOAD", 10, minimum=1),
                ROUTE_DOWNLOAD: env_int("RATE_LIMIT_DOWNLOAD", 60, minimum=1),
                ROUTE_SHARE: env_int("RATE_LIMIT_SHARE", 60, minimum=1),
            },
        )


@dataclass(frozen=True)
class StorageSettings:
    endpoint: Optional[str]
    access_key: Optional[str]
    secret_key: Optional[str]
    bucket: str
    secure: bool
    presign_ttl_seconds: int

    @classmethod
    def load(cls) -> "StorageSettings":
        return cls(
            endpoint=env_str("STORAGE_ENDPOINT"),
            access_key=env_str("STORAGE_ACCESS_KEY"),
            secret_key=env_str("STORAGE_SECRET_KEY"),
            bucket=env_str("STORAGE_BUCKET", "dead-drop") or "dead-drop",
            secure=env_bool("STORAGE_SECURE", True),
            presign_ttl_seconds=env_int("STORAGE_PRESIGN_TTL_SECONDS", 900, minimum=60),
        )


@dataclass(frozen=True)
class CleanupSettings:
    enabled: bool
    cron_secret: Optional[str]
    interval_minutes: int
    batch_size: int

    @classmethod
    def load(cls) -> "CleanupSettings":
        return cls(
            enabled=env_bool("CLEANUP_ENABLED", True),
            cron_secret=env_str("CRON_SECRET") or None,
            interval_minutes=env_int("CLEANUP_INTERVAL_MINUTES", 15, minimum=1),
            batch_size=100,
        )


__all__ = [
    "ALLOWED_MAX_DOWNLOADS",
    "ALLOWED_MIME_TYPES",
    "CODE_MAX_ATTEMPTS",
    "CleanupSettings",
    "MB",
    "RateLimitSettings",
    "ROUTE_DOWNLOAD",
    "ROUTE_SHARE",
    "ROUTE_UPLOAD",
    "SHARE_CODE_LENGTH",
    "ShareSettings",
    "StorageSettings",
    "UNLIMITED_DOWNLOADS",
    "UPLOAD_CODE_LENGTH",
    "UploadSettings",
]

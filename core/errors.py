"""Error taxonomy shared by the service layer and the HTTP surface."""

from __future__ import annotations

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base class for expected, operational failures.

    ``code`` is a stable machine-readable identifier, ``message`` is safe to
    show to the requester and ``status_code`` is the HTTP mapping used by the
    web layer.
    """

    code = "app.error"
    status_code = 500
    default_message = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.extra = dict(extra or {})

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        detail.update(self.extra)
        return detail


class ValidationError(AppError):
    code = "request.invalid"
    status_code = 400
    default_message = "Invalid request"

    def __init__(self, message: Optional[str] = None, *, field: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field
        if field:
            self.extra.setdefault("field", field)


class NotFoundError(AppError):
    code = "resource.not_found"
    status_code = 404
    default_message = "Resource not found"


class GoneError(AppError):
    """The record still exists physically but is logically expired or consumed."""

    code = "resource.gone"
    status_code = 410
    default_message = "Resource has expired"


class AuthRequiredError(AppError):
    code = "auth.password_required"
    status_code = 401
    default_message = "Password required"


class CredentialMismatchError(AppError):
    code = "auth.password_incorrect"
    status_code = 403
    default_message = "Incorrect password"


class ConflictError(AppError):
    code = "resource.busy"
    status_code = 409
    default_message = "Resource busy, retry"


class FeatureDisabledError(AppError):
    code = "feature.disabled"
    status_code = 503
    default_message = "This feature is temporarily disabled"


class CodeSpaceExhausted(AppError):
    """No unused code was found within the attempt budget."""

    code = "code.exhausted"
    status_code = 500
    default_message = "Failed to generate unique code"


class StorageError(AppError):
    """Blob storage put/get failure."""

    code = "storage.error"
    status_code = 500
    default_message = "Storage error"


class BackendUnavailable(AppError):
    """Metadata store or shared rate-limit backend is unreachable."""

    code = "backend.unavailable"
    status_code = 503
    default_message = "Service temporarily unavailable"


class ClientIdentityUnavailable(AppError):
    code = "request.client_ip_unavailable"
    status_code = 400
    default_message = "Client IP unavailable"


__all__ = [
    "AppError",
    "AuthRequiredError",
    "BackendUnavailable",
    "ClientIdentityUnavailable",
    "CodeSpaceExhausted",
    "ConflictError",
    "CredentialMismatchError",
    "FeatureDisabledError",
    "GoneError",
    "NotFoundError",
    "StorageError",
    "ValidationError",
]

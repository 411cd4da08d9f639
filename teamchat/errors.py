"""Failure kinds shared by the delivery engine and the HTTP layer.

Dispatch, upload and claim paths return these values instead of raising, so
callers can branch on `window_closed` vs. a retryable provider failure without
parsing error text.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class ErrorKind(str, enum.Enum):
    SIGNATURE_INVALID = "signature_invalid"
    TENANT_NOT_FOUND = "tenant_not_found"
    TENANT_INACTIVE = "tenant_inactive"
    CREDENTIALS_MISSING = "credentials_missing"
    INVALID_RECIPIENT = "invalid_recipient"
    WINDOW_CLOSED = "window_closed"
    MEDIA_TOO_LARGE = "media_too_large"
    MEDIA_DOWNLOAD_FAILED = "media_download_failed"
    MEDIA_SOURCE_UNAVAILABLE = "media_source_unavailable"
    MEDIA_UPLOAD_FAILED = "media_upload_failed"
    PROVIDER_REQUEST_FAILED = "provider_request_failed"
    DUPLICATE_MESSAGE = "duplicate_message"


_RETRYABLE = frozenset(
    {ErrorKind.PROVIDER_REQUEST_FAILED, ErrorKind.MEDIA_UPLOAD_FAILED, ErrorKind.MEDIA_SOURCE_UNAVAILABLE}
)

HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.SIGNATURE_INVALID: 400,
    ErrorKind.TENANT_NOT_FOUND: 404,
    ErrorKind.TENANT_INACTIVE: 404,
    ErrorKind.CREDENTIALS_MISSING: 400,
    ErrorKind.INVALID_RECIPIENT: 400,
    ErrorKind.WINDOW_CLOSED: 409,
    ErrorKind.MEDIA_TOO_LARGE: 413,
    ErrorKind.MEDIA_DOWNLOAD_FAILED: 502,
    ErrorKind.MEDIA_SOURCE_UNAVAILABLE: 502,
    ErrorKind.MEDIA_UPLOAD_FAILED: 502,
    ErrorKind.PROVIDER_REQUEST_FAILED: 502,
    ErrorKind.DUPLICATE_MESSAGE: 200,
}


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    detail: str = ""

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE

    @property
    def http_status(self) -> int:
        return HTTP_STATUS.get(self.kind, 400)

    def as_detail(self) -> dict[str, str]:
        """Body for HTTPException(detail=...)."""
        return {"error": self.kind.value, "message": self.detail or self.kind.value}

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}" if self.detail else self.kind.value


@dataclass(frozen=True)
class SendResult:
    """Outcome of one provider send: the provider message id, or a failure."""

    provider_message_id: str | None = None
    failure: Failure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and bool(self.provider_message_id)

    @classmethod
    def success(cls, provider_message_id: str) -> "SendResult":
        return cls(provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, kind: ErrorKind, detail: str = "") -> "SendResult":
        return cls(failure=Failure(kind, detail))


@dataclass(frozen=True)
class UploadResult:
    media_id: str | None = None
    failure: Failure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and bool(self.media_id)

    @classmethod
    def success(cls, media_id: str) -> "UploadResult":
        return cls(media_id=media_id)

    @classmethod
    def failed(cls, kind: ErrorKind, detail: str = "") -> "UploadResult":
        return cls(failure=Failure(kind, detail))

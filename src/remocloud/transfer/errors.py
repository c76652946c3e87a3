"""Error taxonomy shared by every transfer component.

Every failure that crosses a public boundary is a :class:`TransferError`
carrying a closed :class:`ErrorKind`.  Backend error bodies have the shape
``{"error": {"code": ..., "message": ..., ...details}}``; the ``code`` is
mapped to a kind through :data:`CODE_TO_KIND`, falling back to the HTTP
status when the code is unknown or missing.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Canonical failure kinds."""

    VALIDATION = "validation"
    AUTH = "auth"
    NETWORK = "network"
    TIMEOUT = "timeout"
    STORAGE = "storage"
    TRANSFORM_FAILED = "transform_failed"
    DATABASE = "database"
    UPLOAD_FAILED = "upload_failed"
    INTERNAL = "internal"
    SIGNED_URL_EXPIRED = "signed_url_expired"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"
    HASH_UNAVAILABLE = "hash_unavailable"
    CANCELLED = "cancelled"


class ErrorCategory(str, Enum):
    """Handling policy groups for error kinds."""

    VALIDATION = "validation"
    AUTH = "auth"
    TRANSIENT_NETWORK = "transient_network"
    TRANSIENT_SERVICE = "transient_service"
    SIGNED_URL_EXPIRED = "signed_url_expired"
    RATE_LIMITED = "rate_limited"
    QUOTA = "quota"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    CANCELLED = "cancelled"


_CATEGORY: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.VALIDATION: ErrorCategory.VALIDATION,
    ErrorKind.AUTH: ErrorCategory.AUTH,
    ErrorKind.NETWORK: ErrorCategory.TRANSIENT_NETWORK,
    ErrorKind.TIMEOUT: ErrorCategory.TRANSIENT_NETWORK,
    ErrorKind.STORAGE: ErrorCategory.TRANSIENT_SERVICE,
    ErrorKind.TRANSFORM_FAILED: ErrorCategory.TRANSIENT_SERVICE,
    ErrorKind.DATABASE: ErrorCategory.TRANSIENT_SERVICE,
    ErrorKind.UPLOAD_FAILED: ErrorCategory.TRANSIENT_SERVICE,
    ErrorKind.INTERNAL: ErrorCategory.TRANSIENT_SERVICE,
    ErrorKind.SIGNED_URL_EXPIRED: ErrorCategory.SIGNED_URL_EXPIRED,
    ErrorKind.RATE_LIMITED: ErrorCategory.RATE_LIMITED,
    ErrorKind.QUOTA_EXCEEDED: ErrorCategory.QUOTA,
    ErrorKind.NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorKind.HASH_UNAVAILABLE: ErrorCategory.UNAVAILABLE,
    ErrorKind.CANCELLED: ErrorCategory.CANCELLED,
}

_missing = set(ErrorKind) - set(_CATEGORY)
if _missing:
    raise RuntimeError(f"ErrorKind members without a category: {sorted(_missing)}")

# Categories that a call site may opt into retrying.
_RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.TRANSIENT_NETWORK,
        ErrorCategory.TRANSIENT_SERVICE,
        ErrorCategory.SIGNED_URL_EXPIRED,
        ErrorCategory.RATE_LIMITED,
    }
)

CODE_TO_KIND: dict[str, ErrorKind] = {
    # Authentication & authorization
    "INVALID_API_KEY": ErrorKind.AUTH,
    "INSUFFICIENT_PERMISSIONS": ErrorKind.AUTH,
    "BUCKET_ACCESS_DENIED": ErrorKind.AUTH,
    "PERMISSION_DENIED": ErrorKind.AUTH,
    # Validation
    "INVALID_FILE_TYPE": ErrorKind.VALIDATION,
    "FILE_TOO_LARGE": ErrorKind.VALIDATION,
    "INVALID_TRANSFORM_PARAMS": ErrorKind.VALIDATION,
    "BUCKET_NAME_TAKEN": ErrorKind.VALIDATION,
    "INVALID_REQUEST": ErrorKind.VALIDATION,
    # Upload
    "UPLOAD_FAILED": ErrorKind.UPLOAD_FAILED,
    "UPLOAD_TIMEOUT": ErrorKind.TIMEOUT,
    "SIGNED_URL_EXPIRED": ErrorKind.SIGNED_URL_EXPIRED,
    "UPLOAD_SESSION_NOT_FOUND": ErrorKind.NOT_FOUND,
    # Transport
    "NETWORK_ERROR": ErrorKind.NETWORK,
    "TIMEOUT_ERROR": ErrorKind.TIMEOUT,
    # Storage & processing
    "STORAGE_ERROR": ErrorKind.STORAGE,
    "TRANSFORM_FAILED": ErrorKind.TRANSFORM_FAILED,
    "TRANSFORM_TIMEOUT": ErrorKind.TIMEOUT,
    "DATABASE_ERROR": ErrorKind.DATABASE,
    "DATABASE_TIMEOUT": ErrorKind.TIMEOUT,
    "INTERNAL_ERROR": ErrorKind.INTERNAL,
    "SERVICE_UNAVAILABLE": ErrorKind.STORAGE,
    # Limits
    "RATE_LIMIT_EXCEEDED": ErrorKind.RATE_LIMITED,
    "RATE_LIMITED": ErrorKind.RATE_LIMITED,
    "QUOTA_EXCEEDED": ErrorKind.QUOTA_EXCEEDED,
    # Not found
    "FILE_NOT_FOUND": ErrorKind.NOT_FOUND,
    "BUCKET_NOT_FOUND": ErrorKind.NOT_FOUND,
}


def category_of(kind: ErrorKind) -> ErrorCategory:
    """Return the handling category for *kind*."""
    return _CATEGORY[kind]


class TransferError(Exception):
    """Structured failure raised by every transfer component.

    Attributes:
        kind: Canonical :class:`ErrorKind`.
        message: Human-readable description.
        retryable: Whether the kind is retryable in principle.  A call site
            still decides via its own policy; exhausted retries clear it.
        details: Extra context (backend details, attempt counts, ids).
        retry_after: Server-supplied retry hint in seconds, if any.
        status_code: HTTP status of the failing response, if any.
        code: Raw backend error code, if any.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        retry_after: float | None = None,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details: dict[str, Any] = dict(details or {})
        self.retry_after = retry_after
        self.status_code = status_code
        self.code = code
        self.retryable = category_of(kind) in _RETRYABLE_CATEGORIES

    @property
    def category(self) -> ErrorCategory:
        return category_of(self.kind)

    def to_dict(self) -> dict[str, Any]:
        """Serializable view used by callbacks and the CLI."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": dict(self.details),
            "retry_after": self.retry_after,
            "status_code": self.status_code,
            "code": self.code,
        }

    def __repr__(self) -> str:
        return f"TransferError({self.kind.value!r}, {self.message!r})"


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------


def kind_for_status(status_code: int) -> ErrorKind:
    """Fallback classification when a response carries no known code."""
    if status_code in (400, 409, 413, 415, 422):
        return ErrorKind.VALIDATION
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if status_code == 410:
        return ErrorKind.SIGNED_URL_EXPIRED
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code == 507:
        return ErrorKind.QUOTA_EXCEEDED
    if status_code in (502, 503, 504):
        return ErrorKind.STORAGE
    if status_code >= 500:
        return ErrorKind.INTERNAL
    return ErrorKind.UPLOAD_FAILED


def _parse_retry_after(value: Any) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def error_from_response(
    response: httpx.Response, *, context: dict[str, Any] | None = None
) -> TransferError:
    """Build a :class:`TransferError` from a non-2xx backend/storage response."""
    body: Any = None
    try:
        body = response.json()
    except ValueError:
        body = None

    error_body = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error_body, dict):
        error_body = {}

    code = error_body.get("code")
    kind = CODE_TO_KIND.get(code) if code else None
    if kind is None:
        kind = kind_for_status(response.status_code)

    message = (
        error_body.get("message")
        or response.reason_phrase
        or f"HTTP {response.status_code}"
    )
    details = {
        k: v for k, v in error_body.items() if k not in ("code", "message")
    }
    if isinstance(details.get("details"), dict):
        nested = details.pop("details")
        details = {**nested, **details}
    if context:
        details.update(context)

    retry_after = _parse_retry_after(error_body.get("retryAfter"))
    if retry_after is None:
        retry_after = _parse_retry_after(response.headers.get("retry-after"))

    return TransferError(
        kind,
        message,
        details=details,
        retry_after=retry_after,
        status_code=response.status_code,
        code=code,
    )


def error_from_exception(
    exc: BaseException, *, context: dict[str, Any] | None = None
) -> TransferError:
    """Convert a transport-level exception into a :class:`TransferError`."""
    if isinstance(exc, TransferError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        kind = ErrorKind.TIMEOUT
    elif isinstance(exc, httpx.TransportError):
        kind = ErrorKind.NETWORK
    else:
        kind = ErrorKind.INTERNAL
    error = TransferError(kind, str(exc) or type(exc).__name__, details=context)
    error.__cause__ = exc
    return error

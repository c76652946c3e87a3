"""RemoCloud REST backend client.

Implements the bucket-scoped contract consumed by the transfer engine:

  1. ``POST /buckets/{bucketId}/uploads``         -- request an upload session
  2. ``POST /uploads/{uploadId}/complete``        -- finalize after the PUT
  3. ``DELETE /uploads/{uploadId}``               -- release a session
  4. ``POST /buckets/{bucketId}/check-duplicate`` -- digest lookup
  5. ``POST /files/{fileId}/signed-url``          -- time-limited download URL
  6. ``GET /files/{fileId}/public-url``           -- CDN URL for public files

plus image transforms, upload status and integrity verification.

Each method performs exactly one HTTP call and raises :class:`TransferError`
on failure.  Retries belong to the caller's call-site policy, except for the
transform endpoints whose call site lives here.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from remocloud.constants import REQUEST_TIMEOUT_SECONDS
from remocloud.models import FileRef
from remocloud.transfer.errors import (
    ErrorKind,
    TransferError,
    error_from_exception,
    error_from_response,
)
from remocloud.transfer.retry import TRANSFORM_POLICY, RetryPolicy, SleepFn, call_with_retry
from remocloud.transfer.schemas import (
    DuplicateCheckResponse,
    PublicUrlResponse,
    SignedUrlResponse,
    TransformResponse,
    UploadStatusResponse,
    UploadTicket,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# Common image transform presets understood by the backend.
TRANSFORM_PRESETS: dict[str, dict[str, Any]] = {
    "thumbnail": {"w": 150, "h": 150, "q": 80, "format": "webp"},
    "small": {"w": 300, "h": 300, "q": 85, "format": "webp"},
    "medium": {"w": 600, "h": 600, "q": 85, "format": "webp"},
    "large": {"w": 1200, "h": 1200, "q": 90, "format": "webp"},
    "thumbnail-jpg": {"w": 150, "h": 150, "q": 80, "format": "jpeg"},
    "small-jpg": {"w": 300, "h": 300, "q": 85, "format": "jpeg"},
    "medium-jpg": {"w": 600, "h": 600, "q": 85, "format": "jpeg"},
    "large-jpg": {"w": 1200, "h": 1200, "q": 90, "format": "jpeg"},
}


class StorageApiClient:
    """Async wrapper around the RemoCloud REST API.

    Safe for concurrent use: it holds no per-request state besides the
    pooled ``httpx.AsyncClient``.

    Usage::

        async with StorageApiClient("https://api.example.com/api", api_key) as api:
            ticket = await api.initiate_upload("b1", file_ref)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        transform_policy: RetryPolicy = TRANSFORM_POLICY,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._transform_policy = transform_policy
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> StorageApiClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Upload sessions
    # ------------------------------------------------------------------

    async def initiate_upload(
        self, bucket_id: str, file_ref: FileRef, client_hash: str | None = None
    ) -> UploadTicket:
        """Request an upload session and its signed PUT URL."""
        payload: dict[str, Any] = {
            "filename": file_ref.name,
            "size": file_ref.size,
            "contentType": file_ref.content_type,
        }
        if client_hash:
            payload["clientHash"] = client_hash
        data = await self._request(
            "POST", f"/buckets/{bucket_id}/uploads", json=payload
        )
        ticket = self._parse(UploadTicket, data, "initiate")
        logger.debug(
            "Initiated upload %s for %s in bucket %s",
            ticket.upload_id,
            file_ref.name,
            bucket_id,
        )
        return ticket

    async def complete_upload(
        self,
        upload_id: str,
        *,
        etag: str | None,
        actual_size: int,
        client_hash: str | None = None,
        enable_versioning: bool | None = None,
    ) -> dict[str, Any]:
        """Finalize an upload once its bytes are written to storage."""
        payload: dict[str, Any] = {"etag": etag, "actualSize": actual_size}
        if client_hash:
            payload["clientHash"] = client_hash
        if enable_versioning is not None:
            payload["enableVersioning"] = enable_versioning
        return await self._request(
            "POST", f"/uploads/{upload_id}/complete", json=payload
        )

    async def cancel_upload(self, upload_id: str) -> dict[str, Any]:
        """Release a server-side upload session."""
        return await self._request("DELETE", f"/uploads/{upload_id}")

    async def get_upload_status(self, upload_id: str) -> UploadStatusResponse:
        data = await self._request("GET", f"/uploads/{upload_id}")
        return self._parse(UploadStatusResponse, data, "upload status")

    # ------------------------------------------------------------------
    # Deduplication & integrity
    # ------------------------------------------------------------------

    async def check_duplicate(self, bucket_id: str, digest: str) -> DuplicateCheckResponse:
        data = await self._request(
            "POST", f"/buckets/{bucket_id}/check-duplicate", json={"hash": digest}
        )
        return self._parse(DuplicateCheckResponse, data, "duplicate check")

    async def verify_integrity(
        self, file_id: str, client_hash: str | None = None
    ) -> dict[str, Any]:
        return await self._request(
            "POST", f"/files/{file_id}/verify", json={"clientHash": client_hash}
        )

    # ------------------------------------------------------------------
    # Download URLs
    # ------------------------------------------------------------------

    async def get_signed_url(
        self, file_id: str, *, expiry: int, purpose: str
    ) -> SignedUrlResponse:
        data = await self._request(
            "POST",
            f"/files/{file_id}/signed-url",
            json={"expiry": expiry, "purpose": purpose},
        )
        return self._parse(SignedUrlResponse, data, "signed url")

    async def get_public_url(self, file_id: str) -> PublicUrlResponse:
        data = await self._request("GET", f"/files/{file_id}/public-url")
        return self._parse(PublicUrlResponse, data, "public url")

    # ------------------------------------------------------------------
    # Image transforms
    # ------------------------------------------------------------------

    async def get_transformed_url(
        self,
        file_id: str,
        *,
        w: int | None = None,
        h: int | None = None,
        q: int | None = None,
        format: str | None = None,
        preset: str | None = None,
    ) -> TransformResponse:
        """Request a transformed image URL (retried under the transform policy).

        A *preset* takes precedence over explicit dimensions.
        """
        if preset:
            params: dict[str, Any] = {"preset": preset}
        else:
            params = {
                k: v
                for k, v in (("w", w), ("h", h), ("q", q), ("format", format))
                if v is not None
            }

        async def _call() -> dict[str, Any]:
            return await self._request(
                "GET", f"/files/{file_id}/transform", params=params
            )

        data = await self._with_transform_retry(
            _call, {"operation": "transform", "file_id": file_id}
        )
        return self._parse(TransformResponse, data, "transform")

    async def get_srcset(
        self,
        file_id: str,
        *,
        breakpoints: tuple[int, ...] = (300, 600, 900, 1200),
        format: str = "webp",
    ) -> dict[str, Any]:
        params = {
            "breakpoints": ",".join(str(b) for b in breakpoints),
            "format": format,
        }

        async def _call() -> dict[str, Any]:
            return await self._request("GET", f"/files/{file_id}/srcset", params=params)

        return await self._with_transform_retry(
            _call, {"operation": "srcset", "file_id": file_id}
        )

    async def get_transform_presets(self) -> dict[str, Any]:
        return await self._request("GET", "/transform/presets")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _with_transform_retry(self, call: Any, context: dict[str, Any]) -> Any:
        return await call_with_retry(
            call, self._transform_policy, context=context, sleep=self._sleep
        )

    @staticmethod
    def _parse(model: type[M], data: dict[str, Any], what: str) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise TransferError(
                ErrorKind.INTERNAL,
                f"Malformed {what} response: {exc.error_count()} invalid field(s)",
                details={"response": what},
            ) from exc

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one request and return its JSON body.

        Raises:
            TransferError: On transport failure or any non-2xx response.
        """
        started = time.monotonic()
        context = {"method": method, "path": path}
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            logger.error(
                "API call %s %s failed after %.0fms: %s",
                method,
                path,
                (time.monotonic() - started) * 1000,
                exc,
            )
            raise error_from_exception(exc, context=context) from exc

        elapsed_ms = (time.monotonic() - started) * 1000
        if not response.is_success:
            error = error_from_response(response, context=context)
            logger.warning(
                "API call %s %s -> %d (%s) in %.0fms",
                method,
                path,
                response.status_code,
                error.kind.value,
                elapsed_ms,
            )
            raise error

        logger.debug(
            "API call %s %s -> %d in %.0fms",
            method,
            path,
            response.status_code,
            elapsed_ms,
        )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise TransferError(
                ErrorKind.INTERNAL,
                f"Invalid JSON from {method} {path}",
                details=context,
                status_code=response.status_code,
            ) from exc
        return data if isinstance(data, dict) else {"data": data}

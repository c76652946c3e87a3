"""Direct PUT of raw file bytes to a signed storage URL.

This is the only module that touches the storage transport.  Two
:class:`TransferBackend` implementations are selected at construction time:

* :class:`StreamingTransferBackend` -- streams chunks straight from the
  source with a declared ``Content-Length``.
* :class:`BufferedTransferBackend` -- drains the source into memory first,
  for transports that need the whole body up front.

Both report progress as bytes are handed to the transport, never by polling.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Protocol

import httpx

from remocloud.constants import CHUNK_SIZE_BYTES, TRANSFER_TIMEOUT_SECONDS
from remocloud.models import FileRef, TransferResult
from remocloud.transfer.errors import (
    ErrorKind,
    TransferError,
    error_from_exception,
    error_from_response,
)

logger = logging.getLogger(__name__)

# on_progress(bytes_loaded, bytes_total)
ByteProgress = Callable[[int, int], None]


class TransferBackend(Protocol):
    """Capability interface for sending one PUT body.

    ``send`` returns the response together with the number of body bytes
    actually handed to the transport.
    """

    async def send(
        self,
        url: str,
        file_ref: FileRef,
        headers: dict[str, str],
        on_progress: ByteProgress | None,
    ) -> tuple[httpx.Response, int]: ...

    async def aclose(self) -> None: ...


class _CountingBody:
    """Async body that tallies bytes as the transport takes them."""

    def __init__(
        self, chunks: AsyncIterator[bytes], total: int, on_progress: ByteProgress | None
    ) -> None:
        self._chunks = chunks
        self._total = total
        self._on_progress = on_progress
        self.loaded = 0

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for chunk in self._chunks:
            self.loaded += len(chunk)
            yield chunk
            if self._on_progress is not None:
                self._on_progress(self.loaded, max(self._total, self.loaded))


async def _memory_chunks(data: bytes, chunk_size: int) -> AsyncIterator[bytes]:
    view = memoryview(data)
    for offset in range(0, len(view), chunk_size):
        yield bytes(view[offset : offset + chunk_size])


class _HttpxBackend:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        chunk_size: int = CHUNK_SIZE_BYTES,
    ) -> None:
        # Signed URLs carry their own auth; never send API credentials.
        self._client = client or httpx.AsyncClient(transport=transport, timeout=None)
        self._owns_client = client is None
        self.chunk_size = chunk_size

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _put(
        self,
        url: str,
        body: _CountingBody,
        size: int,
        headers: dict[str, str],
    ) -> tuple[httpx.Response, int]:
        final_headers = dict(headers)
        final_headers["Content-Length"] = str(size)
        response = await self._client.put(url, content=body, headers=final_headers)
        return response, body.loaded


class StreamingTransferBackend(_HttpxBackend):
    """Streams the source without buffering it."""

    async def send(
        self,
        url: str,
        file_ref: FileRef,
        headers: dict[str, str],
        on_progress: ByteProgress | None,
    ) -> tuple[httpx.Response, int]:
        body = _CountingBody(file_ref.iter_chunks(self.chunk_size), file_ref.size, on_progress)
        return await self._put(url, body, file_ref.size, headers)


class BufferedTransferBackend(_HttpxBackend):
    """Reads the whole source into memory, then sends it."""

    async def send(
        self,
        url: str,
        file_ref: FileRef,
        headers: dict[str, str],
        on_progress: ByteProgress | None,
    ) -> tuple[httpx.Response, int]:
        data = await file_ref.read_all()
        body = _CountingBody(_memory_chunks(data, self.chunk_size), len(data), on_progress)
        return await self._put(url, body, len(data), headers)


def create_transfer_backend(
    mode: str = "streaming",
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    chunk_size: int = CHUNK_SIZE_BYTES,
) -> TransferBackend:
    """Build the backend for *mode* (``streaming`` or ``buffered``)."""
    if mode == "streaming":
        return StreamingTransferBackend(transport=transport, chunk_size=chunk_size)
    if mode == "buffered":
        return BufferedTransferBackend(transport=transport, chunk_size=chunk_size)
    raise ValueError(f"Unknown transfer mode {mode!r}. Choose from: streaming, buffered")


class DirectTransferClient:
    """Uploads raw bytes to a signed URL with progress and a hard timeout.

    Args:
        backend: Transport capability chosen at construction time.
        timeout: Ceiling in seconds for the whole PUT.
    """

    def __init__(
        self,
        backend: TransferBackend,
        timeout: float = TRANSFER_TIMEOUT_SECONDS,
    ) -> None:
        self._backend = backend
        self._timeout = timeout

    async def aclose(self) -> None:
        await self._backend.aclose()

    async def put(
        self,
        signed_url: str,
        file_ref: FileRef,
        headers: dict[str, str] | None = None,
        on_progress: ByteProgress | None = None,
    ) -> TransferResult:
        """PUT *file_ref* to *signed_url*.

        Args:
            signed_url: Pre-authorized storage URL.
            file_ref: Source bytes.
            headers: Headers the backend required for this URL.
            on_progress: Called as ``on_progress(loaded, total)``.

        Returns:
            :class:`TransferResult` with the storage ``etag``.

        Raises:
            TransferError: ``TIMEOUT`` past the ceiling, ``NETWORK`` on
                transport failure, ``SIGNED_URL_EXPIRED`` on HTTP 410, or the
                status-derived kind for any other non-2xx response.
        """
        final_headers = dict(headers or {})
        if not any(k.lower() == "content-type" for k in final_headers):
            final_headers["Content-Type"] = file_ref.content_type

        context = {"filename": file_ref.name, "size": file_ref.size}
        try:
            response, bytes_sent = await asyncio.wait_for(
                self._backend.send(signed_url, file_ref, final_headers, on_progress),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransferError(
                ErrorKind.TIMEOUT,
                f"Upload timed out after {self._timeout:.0f}s",
                details={**context, "timeout": self._timeout},
            ) from exc
        except httpx.HTTPError as exc:
            raise error_from_exception(exc, context=context) from exc
        except OSError as exc:
            raise TransferError(
                ErrorKind.VALIDATION,
                f"Could not read {file_ref.name}: {exc}",
                details=context,
            ) from exc

        if response.status_code == 410:
            raise TransferError(
                ErrorKind.SIGNED_URL_EXPIRED,
                "Upload URL expired",
                details=context,
                status_code=410,
            )
        if not response.is_success:
            raise error_from_response(response, context=context)

        if bytes_sent != file_ref.size:
            logger.warning(
                "PUT %s sent %d bytes but %d were declared",
                file_ref.name,
                bytes_sent,
                file_ref.size,
            )
        logger.debug(
            "PUT %s -> %d (%d bytes)", file_ref.name, response.status_code, bytes_sent
        )
        return TransferResult(
            ok=True,
            status=response.status_code,
            etag=response.headers.get("etag"),
            bytes_sent=bytes_sent,
        )

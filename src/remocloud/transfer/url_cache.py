"""Signed download URL cache with proactive refresh.

Entries are keyed by ``(file_id, purpose)``.  A cached entry is served only
while ``now < expires_at``; after a successful fetch of a non-public entry a
single-shot timer refreshes it ``refresh_lead_seconds`` before it expires.
A new fetch for the same key replaces (and cancels) the pending timer, so
two timers never race on one key.

Concurrent :meth:`SignedUrlCache.get` calls for a key that is already being
fetched await that fetch instead of issuing a second request.

:meth:`SignedUrlCache.download_stream` and :meth:`SignedUrlCache.download_file`
read file bytes through the cached ``download`` URL, sending the entry's
cache headers.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable, Protocol

import httpx

from remocloud.constants import (
    CHUNK_SIZE_BYTES,
    PURPOSE_EXPIRY_SECONDS,
    REFRESH_LEAD_SECONDS,
    TRANSFER_TIMEOUT_SECONDS,
)
from remocloud.models import SignedUrlEntry, UrlPurpose
from remocloud.transfer.api import StorageApiClient
from remocloud.transfer.errors import (
    TransferError,
    error_from_exception,
    error_from_response,
)
from remocloud.transfer.retry import API_POLICY, RetryPolicy, SleepFn, call_with_retry

logger = logging.getLogger(__name__)

CacheKey = tuple[str, UrlPurpose]
Clock = Callable[[], datetime]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


# call_later(delay_seconds, callback) -> handle
Scheduler = Callable[[float, Callable[[], None]], TimerHandle]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SignedUrlCache:
    """Caches signed URLs and refreshes them before they expire.

    Usage::

        cache = SignedUrlCache(api)
        url = await cache.get_preview_url("file-1")
        ...
        await cache.aclose()

    Args:
        api: Backend client.
        clock: Returns the current aware UTC time.
        policy: Retry policy for signed-URL fetches.
        refresh_lead_seconds: How long before expiry a refresh fires.
        call_later: Timer factory; defaults to the running loop's
            ``call_later``.
        sleep: Backoff sleep (injected by tests).
        http: Client used for downloads; created on first use when omitted.
        transport: Transport for the download client created here.
    """

    def __init__(
        self,
        api: StorageApiClient,
        *,
        clock: Clock = _utcnow,
        policy: RetryPolicy = API_POLICY,
        refresh_lead_seconds: float = REFRESH_LEAD_SECONDS,
        call_later: Scheduler | None = None,
        sleep: SleepFn = asyncio.sleep,
        http: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api = api
        self._clock = clock
        self._policy = policy
        self._lead = timedelta(seconds=refresh_lead_seconds)
        self._call_later = call_later
        self._sleep = sleep
        self._http = http
        self._owns_http = http is None
        self._transport = transport

        self._entries: dict[CacheKey, SignedUrlEntry] = {}
        self._public: dict[str, SignedUrlEntry] = {}
        self._timers: dict[CacheKey, TimerHandle] = {}
        self._due: dict[CacheKey, datetime] = {}
        self._inflight: dict[CacheKey, asyncio.Task[SignedUrlEntry]] = {}
        self._refresh_tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get(
        self,
        file_id: str,
        purpose: UrlPurpose | str = UrlPurpose.PREVIEW,
        *,
        force_refresh: bool = False,
        expiry: int | None = None,
    ) -> SignedUrlEntry:
        """Return a servable signed URL entry for *file_id*.

        Args:
            file_id: Stored file id.
            purpose: ``download``, ``preview`` or ``stream``; selects the
                requested expiry window.
            force_refresh: Skip the cache even when the entry is fresh.
            expiry: Override the purpose's expiry window, in seconds.

        Raises:
            TransferError: When the fetch fails after retries.
        """
        key = (file_id, UrlPurpose(purpose))
        if not force_refresh:
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock()):
                logger.debug("Signed URL cache hit for %s/%s", file_id, key[1].value)
                return entry

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(key, expiry))
            self._inflight[key] = task
            task.add_done_callback(lambda t, key=key: self._forget_inflight(key, t))
        return await asyncio.shield(task)

    def _forget_inflight(self, key: CacheKey, task: asyncio.Task[SignedUrlEntry]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            # Marks the exception retrieved when every waiter was cancelled.
            logger.debug("Signed URL fetch for %s/%s failed", key[0], key[1].value)

    async def _fetch(self, key: CacheKey, expiry: int | None) -> SignedUrlEntry:
        file_id, purpose = key
        seconds = expiry or PURPOSE_EXPIRY_SECONDS[purpose.value]
        response = await call_with_retry(
            lambda: self._api.get_signed_url(
                file_id, expiry=seconds, purpose=purpose.value
            ),
            self._policy,
            context={"operation": "signed_url", "file_id": file_id},
            sleep=self._sleep,
        )

        expires_at = response.expires_at
        if response.is_public:
            expires_at = None
        elif expires_at is None:
            expires_at = self._clock() + timedelta(seconds=seconds)

        entry = SignedUrlEntry(
            file_id=file_id,
            purpose=purpose,
            url=response.url,
            is_public=response.is_public,
            expires_at=expires_at,
            cache_headers=dict(response.cache_headers),
        )
        # Cleared while in flight: hand the entry to the waiters, keep nothing.
        if self._inflight.get(key) is not asyncio.current_task():
            return entry

        self._entries[key] = entry
        self._schedule(entry)
        logger.info(
            "Cached signed URL for %s/%s (expires %s)",
            file_id,
            purpose.value,
            expires_at.isoformat() if expires_at else "never",
        )
        return entry

    # ------------------------------------------------------------------
    # Refresh scheduling
    # ------------------------------------------------------------------

    def refresh_due(
        self, file_id: str, purpose: UrlPurpose | str = UrlPurpose.PREVIEW
    ) -> datetime | None:
        """When the pending refresh for a key fires, or None."""
        return self._due.get((file_id, UrlPurpose(purpose)))

    def _cancel_timer(self, key: CacheKey) -> None:
        handle = self._timers.pop(key, None)
        self._due.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _schedule(self, entry: SignedUrlEntry) -> None:
        key = (entry.file_id, entry.purpose)
        self._cancel_timer(key)
        if entry.is_public or entry.expires_at is None:
            return

        due = entry.expires_at - self._lead
        delay = (due - self._clock()).total_seconds()
        if delay <= 0:
            # Inside the lead window already; the next get() refetches lazily.
            return

        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._timers[key] = call_later(delay, lambda: self._on_timer(key))
        self._due[key] = due
        logger.debug(
            "Refresh for %s/%s scheduled in %.0fs", key[0], key[1].value, delay
        )

    def _on_timer(self, key: CacheKey) -> None:
        self._timers.pop(key, None)
        self._due.pop(key, None)
        task = asyncio.ensure_future(self._refresh(key))
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh(self, key: CacheKey) -> None:
        if key not in self._entries:
            return
        file_id, purpose = key
        try:
            await self.get(file_id, purpose, force_refresh=True)
        except TransferError as exc:
            logger.warning(
                "Background refresh of %s/%s failed: %s", file_id, purpose.value, exc
            )

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def clear(self, file_id: str | None = None) -> None:
        """Evict one file's entries (or everything) and cancel their timers."""
        keys = [
            k
            for k in set(self._entries) | set(self._timers) | set(self._inflight)
            if file_id is None or k[0] == file_id
        ]
        for key in keys:
            self._cancel_timer(key)
            self._entries.pop(key, None)
            self._inflight.pop(key, None)
        if file_id is None:
            self._public.clear()
        else:
            self._public.pop(file_id, None)
        logger.debug("Cleared %d signed URL entr(ies)", len(keys))

    async def aclose(self) -> None:
        """Clear the cache and stop background refreshes."""
        self.clear()
        tasks = list(self._refresh_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    async def get_download_url(self, file_id: str, expiry: int | None = None) -> str:
        return (await self.get(file_id, UrlPurpose.DOWNLOAD, expiry=expiry)).url

    async def get_preview_url(self, file_id: str, expiry: int | None = None) -> str:
        return (await self.get(file_id, UrlPurpose.PREVIEW, expiry=expiry)).url

    async def get_stream_url(self, file_id: str, expiry: int | None = None) -> str:
        return (await self.get(file_id, UrlPurpose.STREAM, expiry=expiry)).url

    async def get_public_url(self, file_id: str) -> str:
        """CDN URL of a public file; cached without expiry."""
        entry = self._public.get(file_id)
        if entry is not None:
            return entry.url
        response = await call_with_retry(
            lambda: self._api.get_public_url(file_id),
            self._policy,
            context={"operation": "public_url", "file_id": file_id},
            sleep=self._sleep,
        )
        if response.is_public:
            self._public[file_id] = SignedUrlEntry(
                file_id=file_id,
                purpose=UrlPurpose.DOWNLOAD,
                url=response.url,
                is_public=True,
            )
        return response.url

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    def _download_client(self) -> httpx.AsyncClient:
        if self._http is None:
            # Signed URLs carry their own auth; never send API credentials.
            self._http = httpx.AsyncClient(
                transport=self._transport, timeout=TRANSFER_TIMEOUT_SECONDS
            )
        return self._http

    async def download_stream(
        self,
        file_id: str,
        *,
        expiry: int | None = None,
        chunk_size: int = CHUNK_SIZE_BYTES,
    ) -> AsyncIterator[bytes]:
        """Yield the bytes of *file_id* fetched through its download URL.

        Raises:
            TransferError: When the URL cannot be obtained, the transport
                fails, or storage answers with a non-2xx status.
        """
        entry = await self.get(file_id, UrlPurpose.DOWNLOAD, expiry=expiry)
        context = {"operation": "download", "file_id": file_id}
        try:
            async with self._download_client().stream(
                "GET", entry.url, headers=entry.cache_headers
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise error_from_response(response, context=context)
                async for chunk in response.aiter_bytes(chunk_size):
                    yield chunk
        except httpx.HTTPError as exc:
            raise error_from_exception(exc, context=context) from exc

    async def download_file(
        self,
        file_id: str,
        dest: str | Path,
        *,
        expiry: int | None = None,
    ) -> int:
        """Write *file_id* to *dest*; returns the number of bytes written.

        A partially written file is removed when the download fails.
        """
        path = Path(dest)
        written = 0
        handle = await asyncio.to_thread(open, path, "wb")
        try:
            async for chunk in self.download_stream(file_id, expiry=expiry):
                await asyncio.to_thread(handle.write, chunk)
                written += len(chunk)
        except BaseException:
            await asyncio.to_thread(handle.close)
            await asyncio.to_thread(path.unlink, True)
            raise
        await asyncio.to_thread(handle.close)
        logger.info("Downloaded %s to %s (%d bytes)", file_id, path, written)
        return written

    async def preload(
        self,
        file_ids: Iterable[str],
        purpose: UrlPurpose | str = UrlPurpose.PREVIEW,
    ) -> dict[str, SignedUrlEntry | TransferError]:
        """Warm the cache; one failing file does not stop the others."""
        ids = list(dict.fromkeys(file_ids))
        results = await asyncio.gather(
            *(self.get(file_id, purpose) for file_id in ids), return_exceptions=True
        )
        outcome: dict[str, SignedUrlEntry | TransferError] = {}
        for file_id, result in zip(ids, results):
            if isinstance(result, TransferError):
                logger.warning("Preload of %s failed: %s", file_id, result)
            elif isinstance(result, BaseException):
                raise result
            outcome[file_id] = result
        return outcome

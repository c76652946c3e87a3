"""Shared pytest fixtures for the RemoCloud transfer engine tests.

Provides an in-memory fake of the RemoCloud REST API and storage endpoint
(served through ``httpx.MockTransport``), an instant sleep recorder for retry
loops, and wired client fixtures built on top of them.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from remocloud.models import FileRef
from remocloud.transfer.api import StorageApiClient
from remocloud.transfer.direct import DirectTransferClient, StreamingTransferBackend
from remocloud.transfer.orchestrator import UploadManager

API_BASE = "http://api.test/api"
STORAGE_HOST = "storage.test"
CDN_HOST = "cdn.test"


class FakeBackend:
    """In-memory stand-in for the RemoCloud API and its storage endpoint.

    Every handled request is recorded in :attr:`calls` by route name
    (``initiate``, ``put``, ``complete``, ``cancel``, ``status``, ``check``,
    ``verify``, ``signed``, ``public``, ``transform``, ``srcset``,
    ``presets``, ``download``).  Responses queued in :attr:`queued` under a route name are
    returned (in order) before the default behaviour kicks in.
    """

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.calls: list[str] = []
        self.requests: dict[str, list[httpx.Request]] = {}
        self.queued: dict[str, list[Any]] = {}
        self.duplicates: dict[str, list[dict[str, Any]]] = {}
        self.put_bodies: list[bytes] = []
        self.stored: dict[str, bytes] = {}
        self.signed_url_ttl: int | None = None
        self.signed_url_public = False
        self._uploads = 0
        self._signed = 0

    # ------------------------------------------------------------------
    # Helpers for tests
    # ------------------------------------------------------------------

    def count(self, route: str) -> int:
        return self.calls.count(route)

    def queue(self, route: str, *responses: Any) -> None:
        """Queue responses (or exceptions to raise) for *route*."""
        self.queued.setdefault(route, []).extend(responses)

    def body(self, route: str, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[route][index].content)

    # ------------------------------------------------------------------
    # Transport handler
    # ------------------------------------------------------------------

    def __call__(self, request: httpx.Request) -> httpx.Response:
        route, params = self._route(request)
        self.calls.append(route)
        self.requests.setdefault(route, []).append(request)

        pending = self.queued.get(route)
        if pending:
            queued = pending.pop(0)
            if isinstance(queued, Exception):
                raise queued
            return queued

        return getattr(self, f"_handle_{route}")(request, *params)

    def _route(self, request: httpx.Request) -> tuple[str, tuple[str, ...]]:
        if request.url.host == STORAGE_HOST:
            return "put", (request.url.path.rsplit("/", 1)[-1],)
        if request.url.host == CDN_HOST:
            return "download", (request.url.path.rsplit("/", 1)[-1],)

        parts = request.url.path.removeprefix("/api/").split("/")
        method = request.method
        if parts[0] == "buckets" and parts[2] == "uploads":
            return "initiate", (parts[1],)
        if parts[0] == "buckets" and parts[2] == "check-duplicate":
            return "check", (parts[1],)
        if parts[0] == "uploads" and len(parts) == 3 and parts[2] == "complete":
            return "complete", (parts[1],)
        if parts[0] == "uploads" and method == "DELETE":
            return "cancel", (parts[1],)
        if parts[0] == "uploads":
            return "status", (parts[1],)
        if parts[0] == "transform":
            return "presets", ()
        if parts[0] == "files":
            action = {
                "signed-url": "signed",
                "public-url": "public",
                "verify": "verify",
                "transform": "transform",
                "srcset": "srcset",
            }[parts[2]]
            return action, (parts[1],)
        raise AssertionError(f"Unrouted request {method} {request.url}")

    def _handle_initiate(self, request: httpx.Request, bucket_id: str) -> httpx.Response:
        self._uploads += 1
        upload_id = f"up-{self._uploads}"
        return httpx.Response(
            200,
            json={
                "uploadId": upload_id,
                "signedUrl": f"http://{STORAGE_HOST}/objects/{upload_id}",
                "headersToInclude": {"x-amz-meta-bucket": bucket_id},
                "expiresAt": (self.now + timedelta(hours=1)).isoformat(),
            },
        )

    def _handle_put(self, request: httpx.Request, upload_id: str) -> httpx.Response:
        self.put_bodies.append(request.content)
        return httpx.Response(200, headers={"ETag": f'"etag-{upload_id}"'})

    def _handle_complete(self, request: httpx.Request, upload_id: str) -> httpx.Response:
        payload = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": f"file-{upload_id}",
                "uploadId": upload_id,
                "size": payload["actualSize"],
                "etag": payload["etag"],
            },
        )

    def _handle_cancel(self, request: httpx.Request, upload_id: str) -> httpx.Response:
        return httpx.Response(200, json={"cancelled": True})

    def _handle_status(self, request: httpx.Request, upload_id: str) -> httpx.Response:
        return httpx.Response(200, json={"uploadId": upload_id, "status": "pending"})

    def _handle_check(self, request: httpx.Request, bucket_id: str) -> httpx.Response:
        digest = json.loads(request.content)["hash"]
        existing = self.duplicates.get(digest, [])
        return httpx.Response(
            200,
            json={
                "isDuplicate": bool(existing),
                "existingFiles": existing,
                "message": "Duplicate content found" if existing else None,
            },
        )

    def _handle_verify(self, request: httpx.Request, file_id: str) -> httpx.Response:
        return httpx.Response(200, json={"fileId": file_id, "verified": True})

    def _handle_signed(self, request: httpx.Request, file_id: str) -> httpx.Response:
        self._signed += 1
        payload = json.loads(request.content)
        ttl = self.signed_url_ttl or payload["expiry"]
        body: dict[str, Any] = {
            "url": f"https://cdn.test/{file_id}?purpose={payload['purpose']}&v={self._signed}",
            "isPublic": self.signed_url_public,
            "cacheHeaders": {"Cache-Control": "private, max-age=300"},
        }
        if not self.signed_url_public:
            body["expiresAt"] = (self.now + timedelta(seconds=ttl)).isoformat()
        return httpx.Response(200, json=body)

    def _handle_download(self, request: httpx.Request, file_id: str) -> httpx.Response:
        if file_id not in self.stored:
            return error_response(404, "FILE_NOT_FOUND")
        return httpx.Response(200, content=self.stored[file_id])

    def _handle_public(self, request: httpx.Request, file_id: str) -> httpx.Response:
        return httpx.Response(
            200, json={"url": f"https://cdn.test/public/{file_id}", "isPublic": True}
        )

    def _handle_transform(self, request: httpx.Request, file_id: str) -> httpx.Response:
        query = "&".join(f"{k}={v}" for k, v in sorted(request.url.params.items()))
        return httpx.Response(
            200, json={"url": f"https://cdn.test/t/{file_id}?{query}", "format": "webp"}
        )

    def _handle_srcset(self, request: httpx.Request, file_id: str) -> httpx.Response:
        return httpx.Response(
            200, json={"srcset": f"https://cdn.test/{file_id}?w=300 300w"}
        )

    def _handle_presets(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"presets": ["thumbnail", "small"]})


def error_response(status: int, code: str | None = None, **extra: Any) -> httpx.Response:
    """Build a ``{error:{code,message,...}}`` response."""
    error: dict[str, Any] = {"message": f"simulated {status}"}
    if code is not None:
        error["code"] = code
    error.update(extra)
    return httpx.Response(status, json={"error": error})


class SleepRecorder:
    """Async sleep replacement that returns immediately and records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ======================================================================
# Fixtures
# ======================================================================


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def transport(backend: FakeBackend) -> httpx.MockTransport:
    return httpx.MockTransport(backend)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
async def api(transport: httpx.MockTransport, sleeps: SleepRecorder):
    client = StorageApiClient(API_BASE, "test-key", transport=transport, sleep=sleeps)
    yield client
    await client.aclose()


@pytest.fixture
async def direct(transport: httpx.MockTransport):
    client = DirectTransferClient(StreamingTransferBackend(transport=transport))
    yield client
    await client.aclose()


@pytest.fixture
async def manager(api: StorageApiClient, direct: DirectTransferClient, sleeps: SleepRecorder):
    mgr = UploadManager(api, direct=direct, sleep=sleeps)
    yield mgr
    await mgr.aclose()


@pytest.fixture
def text_file() -> FileRef:
    """A 50 KB text file held in memory."""
    return FileRef.from_bytes("notes.txt", b"remocloud test line\n" * 2560)

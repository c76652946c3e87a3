"""Data models and enums for the RemoCloud transfer engine."""

from __future__ import annotations

import asyncio
import mimetypes
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from remocloud.constants import (
    CHUNK_SIZE_BYTES,
    DEFAULT_BASE_URL,
    DEFAULT_CONTENT_TYPE,
    HASH_CEILING_BYTES,
    MAX_FILE_SIZE_BYTES,
    QUICK_HASH_LIMIT_BYTES,
    REFRESH_LEAD_SECONDS,
    REQUEST_TIMEOUT_SECONDS,
    TRANSFER_TIMEOUT_SECONDS,
)


class UploadStatus(str, Enum):
    """Status of an upload session."""

    PENDING = "pending"
    HASHING = "hashing"
    CHECKING_DUPLICATES = "checking-duplicates"
    DUPLICATE_FOUND = "duplicate-found"
    INITIATING = "initiating"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.ERROR)


class UrlPurpose(str, Enum):
    """What a signed download URL will be used for."""

    DOWNLOAD = "download"
    PREVIEW = "preview"
    STREAM = "stream"


class DuplicateAction(str, Enum):
    """Caller decision after a duplicate was reported."""

    CONTINUE = "continue"
    REUSE = "reuse"
    CANCEL = "cancel"


# ---------------------------------------------------------------------------
# Source bytes
# ---------------------------------------------------------------------------

StreamFactory = Callable[[], AsyncIterator[bytes]]


@dataclass(frozen=True)
class FileRef:
    """Handle to the bytes of one file.

    Exactly one of ``data``, ``path`` or ``stream_factory`` is set.  Size,
    name and content type are known up front.
    """

    name: str
    size: int
    content_type: str = DEFAULT_CONTENT_TYPE
    data: bytes | None = None
    path: Path | None = None
    stream_factory: StreamFactory | None = None

    def __post_init__(self) -> None:
        sources = [s for s in (self.data, self.path, self.stream_factory) if s is not None]
        if len(sources) != 1:
            raise ValueError("FileRef needs exactly one of data, path or stream_factory")
        if self.size < 0:
            raise ValueError("FileRef size must be >= 0")

    @classmethod
    def from_bytes(
        cls, name: str, data: bytes, content_type: str | None = None
    ) -> FileRef:
        return cls(
            name=name,
            size=len(data),
            content_type=content_type or _guess_type(name),
            data=bytes(data),
        )

    @classmethod
    def from_path(cls, path: str | Path, content_type: str | None = None) -> FileRef:
        path = Path(path)
        return cls(
            name=path.name,
            size=path.stat().st_size,
            content_type=content_type or _guess_type(path.name),
            path=path,
        )

    @classmethod
    def from_stream(
        cls,
        name: str,
        size: int,
        stream_factory: StreamFactory,
        content_type: str | None = None,
    ) -> FileRef:
        return cls(
            name=name,
            size=size,
            content_type=content_type or _guess_type(name),
            stream_factory=stream_factory,
        )

    @property
    def is_buffered(self) -> bool:
        """True when the bytes are already in memory."""
        return self.data is not None

    async def iter_chunks(self, chunk_size: int = CHUNK_SIZE_BYTES) -> AsyncIterator[bytes]:
        """Yield the file content in chunks of at most *chunk_size* bytes.

        Disk reads run in a worker thread so the event loop is never blocked.
        """
        if self.data is not None:
            view = memoryview(self.data)
            for offset in range(0, len(view), chunk_size):
                yield bytes(view[offset : offset + chunk_size])
                await asyncio.sleep(0)
        elif self.path is not None:
            handle = await asyncio.to_thread(open, self.path, "rb")
            try:
                while True:
                    block = await asyncio.to_thread(handle.read, chunk_size)
                    if not block:
                        break
                    yield block
            finally:
                await asyncio.to_thread(handle.close)
        elif self.stream_factory is not None:
            async for block in self.stream_factory():
                if block:
                    yield block

    async def read_all(self) -> bytes:
        """Return the full content, draining streams into memory."""
        if self.data is not None:
            return self.data
        if self.path is not None:
            return await asyncio.to_thread(self.path.read_bytes)
        parts = [block async for block in self.iter_chunks()]
        return b"".join(parts)


def _guess_type(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name)
    return guessed or DEFAULT_CONTENT_TYPE


# ---------------------------------------------------------------------------
# Backend records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FileSummary:
    """Minimal description of a stored file reported by the backend."""

    id: str
    filename: str
    size: int | None = None
    bucket_id: str | None = None
    created_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileSummary:
        return cls(
            id=str(data.get("id", "")),
            filename=str(
                data.get("filename")
                or data.get("original_name")
                or data.get("originalName")
                or ""
            ),
            size=data.get("size"),
            bucket_id=data.get("bucket_id") or data.get("bucketId"),
            created_at=data.get("created_at") or data.get("createdAt"),
        )


@dataclass(frozen=True, slots=True)
class DuplicateInfo:
    """Result of a duplicate check.  Never mutated."""

    digest: str
    existing_files: tuple[FileSummary, ...]
    recommendation: str

    @property
    def is_duplicate(self) -> bool:
        return bool(self.existing_files)


@dataclass(frozen=True, slots=True)
class TransferResult:
    """Outcome of a direct PUT to a signed URL."""

    ok: bool
    status: int
    etag: str | None
    bytes_sent: int = 0


@dataclass(slots=True)
class SignedUrlEntry:
    """One cached download URL for a ``(file_id, purpose)`` pair."""

    file_id: str
    purpose: UrlPurpose
    url: str
    is_public: bool = False
    expires_at: datetime | None = None
    cache_headers: dict[str, str] = field(default_factory=dict)

    def is_fresh(self, now: datetime) -> bool:
        """True while the entry may be served."""
        if self.expires_at is None:
            return self.is_public
        return now < self.expires_at


@dataclass(slots=True)
class UploadSession:
    """State of one in-flight upload, owned by its orchestrator."""

    file_ref: FileRef
    bucket_id: str
    id: str = field(default_factory=lambda: f"upload_{uuid.uuid4().hex}")
    status: UploadStatus = UploadStatus.PENDING
    progress_percent: float = 0.0
    retry_count: int = 0
    client_digest: str | None = None
    server_upload_id: str | None = None
    signed_url: str | None = None
    required_headers: dict[str, str] = field(default_factory=dict)
    url_expires_at: datetime | None = None
    last_error: Any | None = None
    duplicate_info: DuplicateInfo | None = None
    result: dict[str, Any] | None = None

    def snapshot(self) -> UploadSession:
        """Shallow copy handed to listeners."""
        return replace(self, required_headers=dict(self.required_headers))


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class ClientConfig:
    """Configuration for the RemoCloud transfer client.

    Controls the backend endpoint, timeouts, hashing thresholds, upload
    concurrency, and signed-URL refresh behavior.
    """

    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    request_timeout: float = REQUEST_TIMEOUT_SECONDS
    transfer_timeout: float = TRANSFER_TIMEOUT_SECONDS
    hash_ceiling: int = HASH_CEILING_BYTES
    quick_hash_limit: int = QUICK_HASH_LIMIT_BYTES
    chunk_size: int = CHUNK_SIZE_BYTES
    max_concurrent_uploads: int = 4
    transfer_mode: str = "streaming"
    enable_versioning: bool = True
    refresh_lead_seconds: float = REFRESH_LEAD_SECONDS
    max_file_size: int = MAX_FILE_SIZE_BYTES
    allowed_types: list[str] = field(default_factory=lambda: ["*"])

    def __post_init__(self) -> None:
        if self.transfer_mode not in ("streaming", "buffered"):
            raise ValueError(
                f"Unknown transfer mode {self.transfer_mode!r}. "
                "Choose from: streaming, buffered"
            )
        if self.max_concurrent_uploads < 1:
            raise ValueError("max_concurrent_uploads must be >= 1")

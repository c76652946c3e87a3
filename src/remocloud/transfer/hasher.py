"""Client-side content hashing for duplicate detection and integrity checks.

Digests are SHA-256, lowercase hex, and independent of the chunk size used
to compute them.  Streamed hashing reads fixed-size chunks and yields to the
event loop between them, so memory stays bounded by the chunk size.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging

from remocloud.constants import CHUNK_SIZE_BYTES, HASH_CEILING_BYTES, QUICK_HASH_LIMIT_BYTES
from remocloud.models import FileRef
from remocloud.transfer.errors import ErrorKind, TransferError

logger = logging.getLogger(__name__)

DIGEST_ALGORITHM = "sha256"


class ContentHasher:
    """Computes stable content digests for :class:`FileRef` sources.

    Args:
        chunk_size: Read size for the streaming path.
        hash_ceiling: Files larger than this are not hashed before upload.
        quick_hash_limit: Largest file :meth:`quick_hash` will buffer.
    """

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE_BYTES,
        hash_ceiling: int = HASH_CEILING_BYTES,
        quick_hash_limit: int = QUICK_HASH_LIMIT_BYTES,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self.hash_ceiling = hash_ceiling
        self.quick_hash_limit = quick_hash_limit

    @staticmethod
    def _new_digest() -> "hashlib._Hash":
        try:
            return hashlib.new(DIGEST_ALGORITHM)
        except ValueError as exc:
            raise TransferError(
                ErrorKind.HASH_UNAVAILABLE,
                f"{DIGEST_ALGORITHM} is not available in this runtime",
            ) from exc

    @property
    def available(self) -> bool:
        """Whether the runtime exposes the digest primitive."""
        return DIGEST_ALGORITHM in hashlib.algorithms_available

    def should_hash(self, file_ref: FileRef) -> bool:
        """True when *file_ref* is small enough for pre-upload hashing."""
        return file_ref.size <= self.hash_ceiling

    async def hash(self, file_ref: FileRef) -> str:
        """Stream *file_ref* through SHA-256 and return the hex digest.

        Raises:
            TransferError: ``HASH_UNAVAILABLE`` when SHA-256 is missing, or
                ``VALIDATION`` when the source cannot be read.
        """
        digest = self._new_digest()
        total = 0
        try:
            async for chunk in file_ref.iter_chunks(self.chunk_size):
                digest.update(chunk)
                total += len(chunk)
                await asyncio.sleep(0)
        except OSError as exc:
            raise TransferError(
                ErrorKind.VALIDATION,
                f"Could not read {file_ref.name}: {exc}",
                details={"filename": file_ref.name},
            ) from exc
        logger.debug("Hashed %s (%d bytes)", file_ref.name, total)
        return digest.hexdigest()

    async def quick_hash(self, file_ref: FileRef) -> str:
        """Hash a small file in one buffered read.

        Raises:
            TransferError: ``VALIDATION`` if the file exceeds the quick-hash
                limit.
        """
        if file_ref.size > self.quick_hash_limit:
            raise TransferError(
                ErrorKind.VALIDATION,
                "File too large for quick hash",
                details={"size": file_ref.size, "limit": self.quick_hash_limit},
            )
        digest = self._new_digest()
        digest.update(await file_ref.read_all())
        return digest.hexdigest()

    @staticmethod
    def verify_integrity(expected: str, actual: str) -> bool:
        """Case-insensitive digest comparison."""
        return expected.strip().lower() == actual.strip().lower()

    @staticmethod
    def format_digest(digest: str | None, length: int = 16) -> str:
        """Abbreviate a digest for display."""
        if not digest:
            return ""
        return f"{digest[:length]}..." if len(digest) > length else digest

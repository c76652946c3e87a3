"""High-level RemoCloud client wiring the transfer engine together.

One :class:`RemoCloud` owns exactly one backend client, one upload manager
and one signed-URL cache.  Construct it explicitly (or via
:meth:`RemoCloud.from_config`) and close it with :meth:`RemoCloud.aclose`
or ``async with``.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx

from remocloud.config import load_config
from remocloud.models import ClientConfig, FileRef, UploadSession
from remocloud.transfer.api import StorageApiClient
from remocloud.transfer.direct import DirectTransferClient, create_transfer_backend
from remocloud.transfer.orchestrator import ProgressCallback, UploadManager
from remocloud.transfer.retry import SleepFn
from remocloud.transfer.url_cache import SignedUrlCache

logger = logging.getLogger(__name__)


class RemoCloud:
    """Facade over uploads, signed URLs and image transforms.

    Usage::

        async with RemoCloud.from_config() as cloud:
            session = await cloud.upload("report.pdf", "b1")
            url = await cloud.urls.get_download_url(session.result["file"]["id"])

    Args:
        config: Client configuration.
        transport: Optional httpx transport shared by the API and storage
            clients (tests pass ``httpx.MockTransport``).
        sleep: Backoff sleep for every retry loop.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.config = config or ClientConfig()
        self.api = StorageApiClient(
            self.config.base_url,
            self.config.api_key,
            timeout=self.config.request_timeout,
            transport=transport,
            sleep=sleep,
        )
        direct = DirectTransferClient(
            create_transfer_backend(
                self.config.transfer_mode,
                transport=transport,
                chunk_size=self.config.chunk_size,
            ),
            timeout=self.config.transfer_timeout,
        )
        self.uploads = UploadManager(
            self.api, config=self.config, direct=direct, sleep=sleep
        )
        self._direct = direct
        self.urls = SignedUrlCache(
            self.api,
            refresh_lead_seconds=self.config.refresh_lead_seconds,
            sleep=sleep,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config_path: Path | None = None, **kwargs: Any) -> RemoCloud:
        """Build a client from a JSON config file plus keyring/env API key."""
        return cls(load_config(config_path), **kwargs)

    async def aclose(self) -> None:
        """Cancel live uploads, stop URL refreshes and close HTTP clients."""
        await self.uploads.aclose()
        await self.urls.aclose()
        await self._direct.aclose()
        await self.api.aclose()
        logger.debug("RemoCloud client closed")

    async def __aenter__(self) -> RemoCloud:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def upload(
        self,
        source: FileRef | str | Path,
        bucket_id: str,
        *,
        skip_duplicate_check: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> UploadSession:
        """Upload a file (a :class:`FileRef` or a local path)."""
        file_ref = source if isinstance(source, FileRef) else FileRef.from_path(source)
        return await self.uploads.upload(
            file_ref,
            bucket_id,
            skip_duplicate_check=skip_duplicate_check,
            on_progress=on_progress,
        )

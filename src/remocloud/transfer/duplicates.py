"""Backend duplicate lookup by content digest.

Pure read against the backend: no local state, idempotent, and safe to
call concurrently for different digests.  A hit is information for the
caller, not an error.
"""

from __future__ import annotations

import asyncio
import logging

from remocloud.models import DuplicateInfo, FileSummary
from remocloud.transfer.api import StorageApiClient
from remocloud.transfer.retry import API_POLICY, RetryPolicy, SleepFn, call_with_retry

logger = logging.getLogger(__name__)

NO_DUPLICATE = "No existing file shares this content; upload normally."
DUPLICATE_SAME_NAME = "An identical file with the same name exists; reuse it."
DUPLICATE_OTHER_NAME = (
    "Identical content exists under a different name; reuse it or upload anyway."
)


class DuplicateDetector:
    """Asks the backend whether a digest already exists in a bucket.

    Args:
        api: Backend client.
        policy: Retry policy of the duplicate-check call site.
        sleep: Backoff sleep (injected by tests).
    """

    def __init__(
        self,
        api: StorageApiClient,
        policy: RetryPolicy = API_POLICY,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._api = api
        self._policy = policy
        self._sleep = sleep

    async def check_duplicate(
        self, bucket_id: str, digest: str, filename: str | None = None
    ) -> DuplicateInfo:
        """Return what the backend knows about *digest* in *bucket_id*.

        Args:
            bucket_id: Target bucket.
            digest: Lowercase hex SHA-256 of the file content.
            filename: Name of the file about to be uploaded; only used to
                shape the recommendation.
        """
        response = await call_with_retry(
            lambda: self._api.check_duplicate(bucket_id, digest),
            self._policy,
            context={"operation": "check_duplicate", "bucket_id": bucket_id},
            sleep=self._sleep,
        )
        existing = tuple(FileSummary.from_dict(f) for f in response.existing_files)
        if not response.is_duplicate:
            existing = ()

        if not existing:
            recommendation = NO_DUPLICATE
        elif filename and any(f.filename == filename for f in existing):
            recommendation = DUPLICATE_SAME_NAME
        else:
            recommendation = response.message or DUPLICATE_OTHER_NAME

        info = DuplicateInfo(
            digest=digest, existing_files=existing, recommendation=recommendation
        )
        if info.is_duplicate:
            logger.info(
                "Digest %s already in bucket %s (%d file(s))",
                digest[:16],
                bucket_id,
                len(existing),
            )
        return info

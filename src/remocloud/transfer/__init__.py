"""Client-side transfer engine for RemoCloud object storage.

Public API
----------
.. autoclass:: StorageApiClient
.. autoclass:: ContentHasher
.. autoclass:: DuplicateDetector
.. autoclass:: DirectTransferClient
.. autoclass:: TransferOrchestrator
.. autoclass:: UploadManager
.. autoclass:: SignedUrlCache
.. autoclass:: RetryPolicy
.. autoclass:: TransferError
.. autoclass:: UploadProgressTracker
"""

from remocloud.transfer.api import TRANSFORM_PRESETS, StorageApiClient
from remocloud.transfer.direct import (
    BufferedTransferBackend,
    DirectTransferClient,
    StreamingTransferBackend,
    TransferBackend,
    create_transfer_backend,
)
from remocloud.transfer.duplicates import DuplicateDetector
from remocloud.transfer.errors import ErrorCategory, ErrorKind, TransferError
from remocloud.transfer.hasher import ContentHasher
from remocloud.transfer.orchestrator import TransferOrchestrator, UploadManager
from remocloud.transfer.progress import UploadProgressTracker
from remocloud.transfer.retry import (
    API_POLICY,
    DIRECT_POLICY,
    TRANSFORM_POLICY,
    UPLOAD_POLICY,
    RetryPolicy,
    call_with_retry,
    delay_for,
    should_retry,
)
from remocloud.transfer.url_cache import SignedUrlCache
from remocloud.transfer.validation import check_file, validate_file

__all__ = [
    "API_POLICY",
    "BufferedTransferBackend",
    "ContentHasher",
    "DIRECT_POLICY",
    "DirectTransferClient",
    "DuplicateDetector",
    "ErrorCategory",
    "ErrorKind",
    "RetryPolicy",
    "SignedUrlCache",
    "StorageApiClient",
    "StreamingTransferBackend",
    "TRANSFORM_POLICY",
    "TRANSFORM_PRESETS",
    "TransferBackend",
    "TransferError",
    "TransferOrchestrator",
    "UPLOAD_POLICY",
    "UploadManager",
    "UploadProgressTracker",
    "call_with_retry",
    "check_file",
    "create_transfer_backend",
    "delay_for",
    "should_retry",
    "validate_file",
]

"""RemoCloud object storage client: uploads, dedup and signed URLs."""

__version__ = "0.1.0"

from remocloud.client import RemoCloud
from remocloud.models import (
    ClientConfig,
    DuplicateAction,
    FileRef,
    SignedUrlEntry,
    UploadSession,
    UploadStatus,
    UrlPurpose,
)
from remocloud.transfer.errors import ErrorKind, TransferError

__all__ = [
    "ClientConfig",
    "DuplicateAction",
    "ErrorKind",
    "FileRef",
    "RemoCloud",
    "SignedUrlEntry",
    "TransferError",
    "UploadSession",
    "UploadStatus",
    "UrlPurpose",
    "__version__",
]

"""Project-wide named constants.

Constants defined here replace inline magic numbers across the transfer
engine.  Values mirror the limits enforced by the RemoCloud backend.
"""

KIB: int = 1024
MIB: int = 1024 * KIB

# Files at or below this size are hashed before upload so the backend can
# report duplicates.  Larger files go straight to ``initiating``.
HASH_CEILING_BYTES: int = 10 * MIB

# ``ContentHasher.quick_hash`` buffers the whole file; refuse anything larger.
QUICK_HASH_LIMIT_BYTES: int = 1 * MIB

# Read size for streamed hashing and streamed PUT bodies.
CHUNK_SIZE_BYTES: int = 64 * KIB

# Backend default ceiling for a single upload.
MAX_FILE_SIZE_BYTES: int = 100 * MIB

# Direct PUT ceiling (seconds).  Exceeding it raises TIMEOUT, not NETWORK.
TRANSFER_TIMEOUT_SECONDS: float = 300.0

# REST call ceiling (seconds).
REQUEST_TIMEOUT_SECONDS: float = 30.0

# Direct-transfer progress fills 0-90%; finalization owns the remaining 10%.
UPLOAD_PROGRESS_SHARE: float = 90.0

# Signed-URL expiry windows requested per purpose (seconds).
PURPOSE_EXPIRY_SECONDS: dict[str, int] = {
    "download": 900,
    "preview": 300,
    "stream": 1800,
}

# Cached signed URLs are refreshed this long before they expire.
REFRESH_LEAD_SECONDS: float = 120.0

DEFAULT_BASE_URL: str = "http://localhost:5000/api"
DEFAULT_CONTENT_TYPE: str = "application/octet-stream"

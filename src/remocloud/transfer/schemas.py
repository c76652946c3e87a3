"""Pydantic v2 models for RemoCloud backend responses.

Validate the JSON bodies of the REST contract at the HTTP seam.  Separate
from remocloud.models (dataclasses used inside the engine).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class UploadTicket(_WireModel):
    """Response of ``POST /buckets/{bucketId}/uploads``."""

    upload_id: str = Field(alias="uploadId")
    signed_url: str = Field(alias="signedUrl")
    headers_to_include: dict[str, str] = Field(default_factory=dict, alias="headersToInclude")
    expires_at: datetime | None = Field(default=None, alias="expiresAt")

    @field_validator("headers_to_include", mode="before")
    @classmethod
    def _null_headers(cls, value: Any) -> Any:
        return value or {}

    @field_validator("expires_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class DuplicateCheckResponse(_WireModel):
    """Response of ``POST /buckets/{bucketId}/check-duplicate``."""

    is_duplicate: bool = Field(default=False, alias="isDuplicate")
    existing_files: list[dict[str, Any]] = Field(default_factory=list, alias="existingFiles")
    message: str | None = None


class SignedUrlResponse(_WireModel):
    """Response of ``POST /files/{fileId}/signed-url``."""

    url: str
    expires_at: datetime | None = Field(default=None, alias="expiresAt")
    is_public: bool = Field(default=False, alias="isPublic")
    cache_headers: dict[str, str] = Field(default_factory=dict, alias="cacheHeaders")

    @field_validator("cache_headers", mode="before")
    @classmethod
    def _null_headers(cls, value: Any) -> Any:
        return {str(k): str(v) for k, v in (value or {}).items()}

    @field_validator("expires_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class PublicUrlResponse(_WireModel):
    """Response of ``GET /files/{fileId}/public-url``."""

    url: str
    is_public: bool = Field(default=True, alias="isPublic")


class UploadStatusResponse(_WireModel):
    """Response of ``GET /uploads/{uploadId}``."""

    upload_id: str | None = Field(default=None, alias="uploadId")
    status: str
    expires_at: datetime | None = Field(default=None, alias="expiresAt")

    @field_validator("expires_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class TransformResponse(_WireModel):
    """Response of ``GET /files/{fileId}/transform``."""

    url: str
    width: int | None = None
    height: int | None = None
    format: str | None = None

"""Client-side pre-upload checks: size ceiling and allowed types.

Allowed-type entries may be ``*``, a MIME family (``image/*``), an exact
MIME type (``application/pdf``) or a file extension (``.csv`` or ``csv``).
A file matches when either its declared content type or the type implied
by its extension matches an entry.
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Sequence

from remocloud.constants import DEFAULT_CONTENT_TYPE, MAX_FILE_SIZE_BYTES
from remocloud.models import FileRef
from remocloud.transfer.errors import ErrorKind, TransferError


@dataclass
class ValidationResult:
    """Outcome of :func:`check_file`."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def format_file_size(size: int) -> str:
    """Human-readable byte count (``1.5 MB``)."""
    if not size:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def _extension(name: str) -> str:
    return PurePath(name).suffix.lower().lstrip(".")


def _type_allowed(file_ref: FileRef, allowed_types: Sequence[str]) -> bool:
    declared = (file_ref.content_type or "").lower()
    expected = (mimetypes.guess_type(file_ref.name)[0] or DEFAULT_CONTENT_TYPE).lower()
    extension = _extension(file_ref.name)
    for entry in allowed_types:
        entry = entry.strip().lower()
        if entry == "*":
            return True
        if entry.endswith("/*"):
            family = entry[:-1]
            if declared.startswith(family) or expected.startswith(family):
                return True
        elif "/" in entry:
            if entry in (declared, expected):
                return True
        elif entry.lstrip(".") == extension:
            return True
    return False


def check_file(
    file_ref: FileRef,
    max_size: int = MAX_FILE_SIZE_BYTES,
    allowed_types: Sequence[str] | None = None,
) -> ValidationResult:
    """Collect every problem with *file_ref* without raising."""
    result = ValidationResult()
    if file_ref.size > max_size:
        result.errors.append(
            f"File size ({format_file_size(file_ref.size)}) exceeds limit "
            f"({format_file_size(max_size)})"
        )
    if allowed_types and not _type_allowed(file_ref, allowed_types):
        result.errors.append(
            f"File type {file_ref.content_type} is not allowed. "
            f"Allowed types: {', '.join(allowed_types)}"
        )

    expected = mimetypes.guess_type(file_ref.name)[0]
    if (
        expected
        and file_ref.content_type
        and file_ref.content_type.split("/")[0] != expected.split("/")[0]
    ):
        result.warnings.append(
            f"File extension of {file_ref.name} doesn't match declared type "
            f"{file_ref.content_type}"
        )
    return result


def validate_file(
    file_ref: FileRef,
    max_size: int = MAX_FILE_SIZE_BYTES,
    allowed_types: Sequence[str] | None = None,
) -> ValidationResult:
    """Check *file_ref* and raise if any rule fails.

    Raises:
        TransferError: ``VALIDATION`` with every error in ``details``.
    """
    result = check_file(file_ref, max_size, allowed_types)
    if not result.is_valid:
        raise TransferError(
            ErrorKind.VALIDATION,
            result.errors[0],
            details={
                "filename": file_ref.name,
                "size": file_ref.size,
                "content_type": file_ref.content_type,
                "errors": list(result.errors),
            },
        )
    return result

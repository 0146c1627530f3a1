from __future__ import annotations

from ._store import ClipStore
from .types import (
    CONTENT_TYPES,
    FILEREF,
    IMAGE,
    TEXT,
    Clip,
    ClipPayload,
    StorageStats,
    UpsertResult,
    validate_content_type,
)

__all__ = [
    "CONTENT_TYPES",
    "FILEREF",
    "IMAGE",
    "TEXT",
    "Clip",
    "ClipPayload",
    "ClipStore",
    "StorageStats",
    "UpsertResult",
    "validate_content_type",
]

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Final

from ..errors import InvalidArgument
from ..fingerprint import fingerprint

TEXT: Final = "text"
IMAGE: Final = "image"
FILEREF: Final = "fileref"
CONTENT_TYPES: Final[tuple[str, ...]] = (TEXT, IMAGE, FILEREF)


def validate_content_type(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized in CONTENT_TYPES:
        return normalized
    raise InvalidArgument(
        f"Invalid content type '{value}'. Allowed types: {', '.join(CONTENT_TYPES)}"
    )


@dataclass(frozen=True)
class ClipPayload:
    """One clipboard reading, before it is stored.

    ``data`` is the raw payload: UTF-8 text, raw RGBA pixels for images, or
    the newline-joined UTF-8 path list for file references.
    """

    content_type: str
    data: bytes
    text: str | None = None
    width: int | None = None
    height: int | None = None

    @classmethod
    def from_text(cls, text: str) -> ClipPayload:
        return cls(content_type=TEXT, data=text.encode("utf-8"), text=text)

    @classmethod
    def from_image(cls, rgba: bytes, width: int, height: int) -> ClipPayload:
        return cls(content_type=IMAGE, data=rgba, width=width, height=height)

    @classmethod
    def from_paths(cls, paths: list[str]) -> ClipPayload:
        joined = "\n".join(paths)
        return cls(content_type=FILEREF, data=joined.encode("utf-8"), text=joined)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.content_type, self.data)

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass
class Clip:
    id: int
    content_type: str
    text_content: str | None
    image_path: str | None
    image_width: int | None
    image_height: int | None
    hash: str
    size_bytes: int
    pinned: bool
    created_at: str
    updated_at: str
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UpsertResult:
    clip: Clip
    created: bool


@dataclass(frozen=True)
class StorageStats:
    total_clips: int
    text_clips: int
    image_clips: int
    fileref_clips: int
    total_size: int
    oldest: str | None
    newest: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

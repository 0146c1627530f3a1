from __future__ import annotations

import logging
import sys
import threading
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

import pyperclip
from PIL import Image, ImageGrab

from .errors import SourceUnavailable
from .store.types import ClipPayload

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ClipboardSource(Protocol):
    def read(self) -> ClipPayload | None: ...

    def change_token(self) -> int | None: ...

    def write_text(self, text: str) -> None: ...


def _windows_sequence_number() -> int | None:
    import ctypes

    try:
        return int(ctypes.windll.user32.GetClipboardSequenceNumber())  # type: ignore[attr-defined]
    except (AttributeError, OSError):
        return None


class SystemClipboard:
    """The host clipboard, read through pyperclip (text) and Pillow (images, files)."""

    def __init__(self, read_timeout_s: float = 2.0) -> None:
        self.read_timeout_s = read_timeout_s
        self._pending: threading.Thread | None = None

    def change_token(self) -> int | None:
        if sys.platform == "win32":
            return _windows_sequence_number()
        return None

    def read(self) -> ClipPayload | None:
        return self._bounded(self._read_now)

    def write_text(self, text: str) -> None:
        self._bounded(lambda: self._copy(text))

    def _bounded(self, fn: Callable[[], T]) -> T:
        # Clipboard backends shell out (xclip, pbpaste) and can hang on a wedged
        # display server; a stuck call is abandoned on a daemon thread.
        if self._pending is not None and self._pending.is_alive():
            raise SourceUnavailable("previous clipboard call is still pending")
        result: dict[str, Any] = {}

        def target() -> None:
            try:
                result["value"] = fn()
            except BaseException as exc:
                result["error"] = exc

        thread = threading.Thread(target=target, name="clipmem-clipboard", daemon=True)
        thread.start()
        thread.join(self.read_timeout_s)
        if thread.is_alive():
            self._pending = thread
            raise SourceUnavailable(f"clipboard call timed out after {self.read_timeout_s}s")
        self._pending = None
        if "error" in result:
            raise result["error"]
        return result.get("value")  # type: ignore[return-value]

    @staticmethod
    def _copy(text: str) -> None:
        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as exc:
            raise SourceUnavailable(f"clipboard write failed: {exc}") from exc

    @staticmethod
    def _read_now() -> ClipPayload | None:
        try:
            text = pyperclip.paste()
        except pyperclip.PyperclipException as exc:
            raise SourceUnavailable(f"clipboard read failed: {exc}") from exc
        if text:
            return ClipPayload.from_text(text)

        try:
            grabbed = ImageGrab.grabclipboard()
        except (OSError, NotImplementedError) as exc:
            logger.debug("image clipboard unavailable: %s", exc)
            return None
        if isinstance(grabbed, Image.Image):
            rgba = grabbed.convert("RGBA")
            width, height = rgba.size
            return ClipPayload.from_image(rgba.tobytes(), width, height)
        if isinstance(grabbed, list):
            paths = [str(item) for item in grabbed if item]
            if paths:
                return ClipPayload.from_paths(paths)
        return None


class MemorySource:
    """In-process clipboard with a real change counter."""

    def __init__(self, payload: ClipPayload | None = None) -> None:
        self._payload = payload
        self._counter = 0 if payload is None else 1
        self.unavailable = False
        self.reads = 0
        self.writes: list[str] = []

    def set_payload(self, payload: ClipPayload | None) -> None:
        self._payload = payload
        self._counter += 1

    def set_text(self, text: str) -> None:
        self.set_payload(ClipPayload.from_text(text))

    def change_token(self) -> int | None:
        return self._counter

    def read(self) -> ClipPayload | None:
        self.reads += 1
        if self.unavailable:
            raise SourceUnavailable("clipboard access denied")
        return self._payload

    def write_text(self, text: str) -> None:
        if self.unavailable:
            raise SourceUnavailable("clipboard access denied")
        self.writes.append(text)
        self.set_text(text)

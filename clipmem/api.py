from __future__ import annotations

import contextlib
from collections.abc import Iterator
from typing import Any

from . import daemon
from .config import ClipmemConfig, load_config
from .errors import SourceUnavailable
from .source import ClipboardSource, SystemClipboard
from .store import IMAGE, ClipPayload, ClipStore


def _action(success: bool, message: str, **extra: Any) -> dict[str, Any]:
    return {"success": success, "message": message, **extra}


def error_payload(exc: BaseException) -> dict[str, str]:
    return {"error": str(exc)}


class ClipHistory:
    """Request/response surface over the clip store and the watcher daemon.

    Every call opens its own store connection and closes it before returning,
    so a ``ClipHistory`` can be used from a short-lived CLI process while the
    watcher writes to the same database.
    """

    def __init__(
        self,
        cfg: ClipmemConfig | None = None,
        source: ClipboardSource | None = None,
    ) -> None:
        self.cfg = cfg or load_config()
        self._source = source

    @property
    def source(self) -> ClipboardSource:
        if self._source is None:
            self._source = SystemClipboard(read_timeout_s=self.cfg.read_timeout_s)
        return self._source

    @contextlib.contextmanager
    def _store(self) -> Iterator[ClipStore]:
        store = ClipStore.from_config(self.cfg)
        try:
            yield store
        finally:
            store.close()

    # -- queries ----------------------------------------------------------

    def list_clips(
        self,
        limit: int = 10,
        offset: int = 0,
        *,
        content_type: str | None = None,
        pinned: bool | None = None,
        tag: str | None = None,
    ) -> list[dict[str, Any]]:
        with self._store() as store:
            clips = store.list_clips(
                limit, offset, content_type=content_type, pinned=pinned, tag=tag
            )
        return [clip.to_dict() for clip in clips]

    def search(self, query: str, limit: int = 10) -> list[dict[str, Any]]:
        with self._store() as store:
            return [clip.to_dict() for clip in store.search(query, limit=limit)]

    def get(self, clip_id: int) -> dict[str, Any]:
        with self._store() as store:
            return store.get(clip_id).to_dict()

    def stats(self) -> dict[str, Any]:
        with self._store() as store:
            data = store.stats().to_dict()
        status = daemon.daemon_status(self.cfg)
        data["daemon_running"] = status.running
        data["daemon_pid"] = status.pid
        return data

    # -- actions ----------------------------------------------------------

    def copy(self, clip_id: int) -> dict[str, Any]:
        """Put a stored clip back on the clipboard and bump its recency."""
        with self._store() as store:
            clip = store.get(clip_id)
            if clip.content_type == IMAGE:
                return _action(False, "Copying images to the clipboard is not supported")
            text = clip.text_content or ""
            # The watcher will see this write as a text payload.
            digest = ClipPayload.from_text(text).fingerprint
            store.record_self_write(digest)
            try:
                self.source.write_text(text)
            except SourceUnavailable:
                store.consume_self_write(digest)
                raise
            store.touch(clip_id)
        return _action(True, f"Copied clip {clip_id} to clipboard")

    def delete(self, clip_id: int) -> dict[str, Any]:
        with self._store() as store:
            warning = store.delete(clip_id)
        message = f"Deleted clip {clip_id}"
        if warning:
            message = f"{message} (warning: {warning})"
        return _action(True, message)

    def pin(self, clip_id: int) -> dict[str, Any]:
        with self._store() as store:
            store.pin(clip_id)
        return _action(True, f"Pinned clip {clip_id}")

    def unpin(self, clip_id: int) -> dict[str, Any]:
        with self._store() as store:
            store.unpin(clip_id)
        return _action(True, f"Unpinned clip {clip_id}")

    def tag(self, clip_id: int, tag: str) -> dict[str, Any]:
        with self._store() as store:
            added = store.add_tag(clip_id, tag)
        tag = tag.strip()
        if added:
            return _action(True, f"Tagged clip {clip_id} with '{tag}'")
        return _action(True, f"Clip {clip_id} is already tagged '{tag}'")

    def untag(self, clip_id: int, tag: str) -> dict[str, Any]:
        with self._store() as store:
            removed = store.remove_tag(clip_id, tag)
        tag = tag.strip()
        if removed:
            return _action(True, f"Removed tag '{tag}' from clip {clip_id}")
        return _action(True, f"Clip {clip_id} was not tagged '{tag}'")

    def clear(self, days: int = 30) -> dict[str, Any]:
        with self._store() as store:
            removed = store.clear_older_than(days)
        return _action(
            True, f"Removed {removed} unpinned clip(s) older than {days} days", removed=removed
        )

    # -- daemon -----------------------------------------------------------

    def daemon_start(self) -> dict[str, Any]:
        status = daemon.start_daemon(self.cfg)
        return _action(True, f"Daemon started (pid {status.pid})", pid=status.pid)

    def daemon_stop(self) -> dict[str, Any]:
        result = daemon.stop_daemon(self.cfg)
        if result.stopped:
            return _action(True, f"Daemon stopped (pid {result.pid})", pid=result.pid)
        if result.reason == "timeout":
            message = f"Daemon (pid {result.pid}) did not exit within {self.cfg.stop_timeout_s}s"
        else:
            message = f"Failed to signal daemon (pid {result.pid})"
        return _action(False, message, pid=result.pid)

    def daemon_status(self) -> dict[str, Any]:
        return daemon.daemon_status(self.cfg).to_dict()


__all__ = ["ClipHistory", "error_payload"]

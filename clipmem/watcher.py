from __future__ import annotations

import logging
import os
import signal
import sqlite3
import threading
from typing import Any, Final

from . import daemon
from .config import ClipmemConfig
from .errors import Busy, IOFailure, SourceUnavailable
from .source import ClipboardSource, SystemClipboard
from .store import TEXT, ClipPayload, ClipStore

logger = logging.getLogger(__name__)

IDLE: Final = "idle"
POLLING: Final = "polling"
PERSISTING: Final = "persisting"

UNCHANGED: Final = "unchanged"
EMPTY: Final = "empty"
FAILED: Final = "failed"
SKIPPED: Final = "skipped"
SELF_WRITE: Final = "self_write"
STORED: Final = "stored"
TOUCHED: Final = "touched"


class Watcher:
    """Single-threaded clipboard poller.

    Each tick moves idle -> polling -> (persisting) -> idle. Ticks never
    overlap: ``run`` waits out the interval only after a tick has returned,
    and a reentrant ``tick`` call is refused.
    """

    def __init__(
        self,
        store: ClipStore,
        source: ClipboardSource,
        *,
        interval_s: float = 0.5,
        max_text_bytes: int = 1_048_576,
    ) -> None:
        self.store = store
        self.source = source
        self.interval_s = interval_s
        self.max_text_bytes = max_text_bytes
        self.state = IDLE
        self._in_tick = False
        self._last_token: int | None = None
        self._last_fingerprint: str | None = None

    def tick(self) -> str:
        if self._in_tick:
            raise RuntimeError("watcher tick is already in progress")
        self._in_tick = True
        try:
            return self._tick()
        finally:
            self._in_tick = False
            self.state = IDLE

    def _tick(self) -> str:
        self.state = POLLING
        token = self.source.change_token()
        if token is not None and token == self._last_token:
            return UNCHANGED

        try:
            payload = self.source.read()
        except SourceUnavailable as exc:
            logger.warning("clipboard unavailable: %s", exc)
            return FAILED
        except OSError as exc:
            logger.warning("clipboard read failed: %s", exc)
            return FAILED

        outcome = self._ingest(payload, token_changed=token is not None)
        if outcome != FAILED:
            self._last_token = token
        return outcome

    def _ingest(self, payload: ClipPayload | None, *, token_changed: bool) -> str:
        if payload is None:
            return EMPTY
        digest = payload.fingerprint
        # Without an OS change counter an identical payload is indistinguishable
        # from "nothing happened"; with one, it is a genuine re-copy.
        if digest == self._last_fingerprint and not token_changed:
            return UNCHANGED
        if payload.content_type == TEXT and payload.size_bytes > self.max_text_bytes:
            logger.info(
                "skipping %s byte text clip (limit %s)", payload.size_bytes, self.max_text_bytes
            )
            self._last_fingerprint = digest
            return SKIPPED

        self.state = PERSISTING
        try:
            if self.store.consume_self_write(digest):
                logger.debug("ignoring clipboard write made by copy (%s)", digest[:16])
                self._last_fingerprint = digest
                return SELF_WRITE
            result = self.store.upsert(payload)
        except (Busy, IOFailure, sqlite3.Error, OSError) as exc:
            logger.warning("failed to persist clip: %s", exc)
            return FAILED

        self._last_fingerprint = digest
        if result.created:
            logger.info("stored %s clip %s", result.clip.content_type, result.clip.id)
            return STORED
        logger.debug("touched clip %s", result.clip.id)
        return TOUCHED

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("watcher tick failed")
            stop_event.wait(self.interval_s)


def _install_stop_handlers(stop_event: threading.Event) -> dict[int, Any]:
    if threading.current_thread() is not threading.main_thread():
        return {}

    def _handle(signum: int, _frame: object) -> None:
        logger.info("received signal %s, finishing current tick", signum)
        stop_event.set()

    previous: dict[int, Any] = {}
    for signum in (signal.SIGTERM, signal.SIGINT):
        previous[signum] = signal.signal(signum, _handle)
    return previous


def run_watcher(
    cfg: ClipmemConfig,
    *,
    source: ClipboardSource | None = None,
    stop_event: threading.Event | None = None,
) -> None:
    """Daemon body: own the pid file, poll until signalled, then clean up."""

    paths = cfg.paths
    paths.base_dir.mkdir(parents=True, exist_ok=True)
    paths.images_dir.mkdir(parents=True, exist_ok=True)
    pid = os.getpid()
    daemon.claim_pid_file(paths.pid_file, pid)

    stop = stop_event or threading.Event()
    previous = _install_stop_handlers(stop)
    store = ClipStore.from_config(cfg)
    try:
        watcher = Watcher(
            store,
            source or SystemClipboard(read_timeout_s=cfg.read_timeout_s),
            interval_s=max(cfg.poll_interval_ms, 1) / 1000.0,
            max_text_bytes=cfg.max_text_bytes,
        )
        logger.info("watching clipboard (pid %s)", pid)
        watcher.run(stop)
    finally:
        store.close()
        daemon.release_pid_file(paths.pid_file, pid)
        for signum, handler in previous.items():
            signal.signal(signum, handler)
        logger.info("shutting down")

import os
import threading

import pytest

from clipmem import daemon, watcher
from clipmem.api import ClipHistory
from clipmem.config import ClipmemConfig
from clipmem.errors import AlreadyRunning, Busy
from clipmem.source import MemorySource
from clipmem.store import ClipPayload, ClipStore
from clipmem.watcher import Watcher, run_watcher


class _NoTokenSource(MemorySource):
    """A host clipboard without a change counter (X11, macOS)."""

    def change_token(self) -> int | None:
        return None


def test_new_text_is_stored_once(store: ClipStore) -> None:
    source = MemorySource()
    w = Watcher(store, source)

    assert w.tick() == watcher.EMPTY
    source.set_text("hello")
    assert w.tick() == watcher.STORED
    reads = source.reads
    assert w.tick() == watcher.UNCHANGED
    assert source.reads == reads

    clips = store.list_clips(limit=10)
    assert [clip.text_content for clip in clips] == ["hello"]
    assert w.state == watcher.IDLE


def test_recopy_touches_existing_clip(store: ClipStore) -> None:
    source = MemorySource(ClipPayload.from_text("again"))
    w = Watcher(store, source)
    assert w.tick() == watcher.STORED
    before = store.list_clips(limit=1)[0]

    source.set_text("again")
    assert w.tick() == watcher.TOUCHED

    after = store.get(before.id)
    assert after.updated_at > before.updated_at
    assert store.stats().total_clips == 1


def test_without_change_token_identical_content_is_unchanged(store: ClipStore) -> None:
    source = _NoTokenSource(ClipPayload.from_text("one"))
    w = Watcher(store, source)

    assert w.tick() == watcher.STORED
    assert w.tick() == watcher.UNCHANGED
    source.set_text("two")
    assert w.tick() == watcher.STORED
    assert store.stats().total_clips == 2


def test_unavailable_clipboard_is_retried(store: ClipStore) -> None:
    source = MemorySource(ClipPayload.from_text("later"))
    source.unavailable = True
    w = Watcher(store, source)

    assert w.tick() == watcher.FAILED
    assert store.stats().total_clips == 0

    source.unavailable = False
    assert w.tick() == watcher.STORED


def test_busy_store_does_not_lose_the_clip(
    store: ClipStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    source = MemorySource(ClipPayload.from_text("contended"))
    w = Watcher(store, source)
    real_upsert = store.upsert
    calls = {"n": 0}

    def _flaky(payload: ClipPayload):
        calls["n"] += 1
        if calls["n"] == 1:
            raise Busy("database is locked")
        return real_upsert(payload)

    monkeypatch.setattr(store, "upsert", _flaky)

    assert w.tick() == watcher.FAILED
    assert w.tick() == watcher.STORED
    assert store.list_clips(limit=1)[0].text_content == "contended"


def test_oversized_text_is_skipped(store: ClipStore) -> None:
    source = MemorySource(ClipPayload.from_text("x" * 64))
    w = Watcher(store, source, max_text_bytes=16)

    assert w.tick() == watcher.SKIPPED
    assert store.stats().total_clips == 0


def test_images_and_file_references_are_captured(store: ClipStore) -> None:
    source = MemorySource(ClipPayload.from_image(b"\x10" * 16, 2, 2))
    w = Watcher(store, source)
    assert w.tick() == watcher.STORED

    source.set_payload(ClipPayload.from_paths(["/tmp/a.txt", "/tmp/b.txt"]))
    assert w.tick() == watcher.STORED

    stats = store.stats()
    assert stats.image_clips == 1
    assert stats.fileref_clips == 1


def test_copy_action_is_not_recaptured(cfg: ClipmemConfig, store: ClipStore) -> None:
    source = MemorySource(ClipPayload.from_text("first"))
    w = Watcher(store, source)
    assert w.tick() == watcher.STORED
    source.set_text("second")
    assert w.tick() == watcher.STORED
    first = store.list_clips(limit=10)[-1]

    history = ClipHistory(cfg, source=source)
    assert history.copy(first.id)["success"] is True
    assert source.writes == ["first"]
    touched = store.get(first.id)

    assert w.tick() == watcher.SELF_WRITE
    assert store.get(first.id).updated_at == touched.updated_at
    assert store.stats().total_clips == 2

    # A later genuine copy of the same text is still seen.
    source.set_text("first")
    assert w.tick() == watcher.TOUCHED


def test_stale_self_write_record_is_cleared(cfg: ClipmemConfig, store: ClipStore) -> None:
    store.record_self_write(ClipPayload.from_text("never arrived").fingerprint)
    source = MemorySource(ClipPayload.from_text("something else"))
    w = Watcher(store, source)

    assert w.tick() == watcher.STORED
    assert store.last_self_write() is None


def test_tick_is_not_reentrant(store: ClipStore) -> None:
    w: Watcher

    class _Reentrant(MemorySource):
        def read(self) -> ClipPayload | None:
            return w.tick()  # type: ignore[return-value]

    w = Watcher(store, _Reentrant(ClipPayload.from_text("x")))
    with pytest.raises(RuntimeError, match="already in progress"):
        w.tick()
    assert w.state == watcher.IDLE


def test_run_stops_between_ticks(store: ClipStore) -> None:
    stop = threading.Event()

    class _Counting(MemorySource):
        def read(self) -> ClipPayload | None:
            payload = super().read()
            if self.reads >= 3:
                stop.set()
            self.set_text(f"clip {self.reads}")
            return payload

    source = _Counting(ClipPayload.from_text("clip 0"))
    Watcher(store, source, interval_s=0.001).run(stop)

    assert source.reads == 3
    assert store.stats().total_clips == 3


def test_run_watcher_owns_pid_file(cfg: ClipmemConfig) -> None:
    stop = threading.Event()
    seen: list[str] = []

    class _Once(MemorySource):
        def read(self) -> ClipPayload | None:
            seen.append(cfg.paths.pid_file.read_text().strip())
            stop.set()
            return super().read()

    cfg.poll_interval_ms = 1
    run_watcher(cfg, source=_Once(ClipPayload.from_text("from daemon")), stop_event=stop)

    assert seen == [str(os.getpid())]
    assert not cfg.paths.pid_file.exists()
    with ClipStore.from_config(cfg) as store:
        assert store.list_clips(limit=1)[0].text_content == "from daemon"


def test_run_watcher_refuses_second_instance(
    cfg: ClipmemConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    other = os.getppid()
    cfg.paths.base_dir.mkdir(parents=True)
    cfg.paths.pid_file.write_text(f"{other}\n")
    monkeypatch.setattr(daemon, "_pid_is_watcher", lambda pid: pid == other)

    with pytest.raises(AlreadyRunning):
        run_watcher(cfg, source=MemorySource(), stop_event=threading.Event())
    assert cfg.paths.pid_file.read_text().strip() == str(other)

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from clipmem.config import ClipmemConfig
from clipmem.store import ClipStore


@pytest.fixture(autouse=True)
def _isolate_clipmem_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CLIPMEM_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("CLIPMEM_CONFIG", str(tmp_path / "config.json"))
    for name in (
        "CLIPMEM_POLL_INTERVAL_MS",
        "CLIPMEM_READ_TIMEOUT_S",
        "CLIPMEM_BUSY_RETRIES",
        "CLIPMEM_BUSY_BACKOFF_MS",
        "CLIPMEM_BUSY_TIMEOUT_MS",
        "CLIPMEM_STOP_TIMEOUT_S",
        "CLIPMEM_LOG_LEVEL",
        "CLIPMEM_MAX_TEXT_BYTES",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def cfg(tmp_path: Path) -> ClipmemConfig:
    return ClipmemConfig(home=str(tmp_path / "home"), stop_timeout_s=3.0)


@pytest.fixture
def store(cfg: ClipmemConfig) -> Iterator[ClipStore]:
    clip_store = ClipStore.from_config(cfg)
    try:
        yield clip_store
    finally:
        clip_store.close()

import os
import shutil
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

from clipmem import daemon
from clipmem.config import ClipmemConfig
from clipmem.errors import AlreadyRunning, IOFailure, NotRunning

MARKER = "clipmem-test-watcher"


def _fake_watcher(
    monkeypatch: pytest.MonkeyPatch, code: str = "import time; time.sleep(30)"
) -> None:
    monkeypatch.setattr(daemon, "_watcher_command", lambda: [sys.executable, "-c", code, MARKER])
    monkeypatch.setattr(daemon, "_is_watcher_command", lambda command: MARKER in command)


def _reap_in_background(pid: int) -> None:
    def _wait() -> None:
        try:
            os.waitpid(pid, 0)
        except ChildProcessError:
            return

    threading.Thread(target=_wait, daemon=True).start()


def _kill(pid: int) -> None:
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    try:
        os.waitpid(pid, 0)
    except ChildProcessError:
        return


def test_status_without_pid_file(cfg: ClipmemConfig) -> None:
    status = daemon.daemon_status(cfg)
    assert status.running is False
    assert status.to_dict() == {"running": False}


def test_start_twice_then_stop(cfg: ClipmemConfig, monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_watcher(monkeypatch)

    started = daemon.start_daemon(cfg)
    assert started.running is True
    assert started.pid is not None
    try:
        assert cfg.paths.pid_file.read_text().strip() == str(started.pid)
        assert cfg.paths.log_file.exists()
        assert daemon.daemon_status(cfg).to_dict() == {"running": True, "pid": started.pid}

        with pytest.raises(AlreadyRunning, match=str(started.pid)):
            daemon.start_daemon(cfg)

        _reap_in_background(started.pid)
        result = daemon.stop_daemon(cfg)
        assert result.stopped is True
        assert result.pid == started.pid
        assert not cfg.paths.pid_file.exists()
    finally:
        _kill(started.pid)


def test_start_recovers_after_kill_without_cleanup(
    cfg: ClipmemConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    _fake_watcher(monkeypatch)
    first = daemon.start_daemon(cfg)
    assert first.pid is not None
    _kill(first.pid)
    assert cfg.paths.pid_file.exists()

    second = daemon.start_daemon(cfg)
    try:
        assert second.pid is not None
        assert second.pid != first.pid
        assert daemon.daemon_status(cfg).running is True
    finally:
        _kill(second.pid or 0)


def test_concurrent_starts_launch_one_watcher(
    cfg: ClipmemConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    _fake_watcher(monkeypatch)
    reserve = daemon._reserve_pid_path

    def _slow_reserve(pid_path: Path) -> bool:
        reserved = reserve(pid_path)
        time.sleep(0.2)
        return reserved

    monkeypatch.setattr(daemon, "_reserve_pid_path", _slow_reserve)
    barrier = threading.Barrier(2)
    started: list[daemon.DaemonStatus] = []
    refused: list[AlreadyRunning] = []

    def _start() -> None:
        barrier.wait()
        try:
            started.append(daemon.start_daemon(cfg))
        except AlreadyRunning as exc:
            refused.append(exc)

    threads = [threading.Thread(target=_start) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    try:
        assert len(started) == 1
        assert len(refused) == 1
        assert refused[0].pid == started[0].pid
        assert cfg.paths.pid_file.read_text().strip() == str(started[0].pid)
    finally:
        for status in started:
            _kill(status.pid or 0)


def test_start_waits_out_held_lock_then_refuses(
    cfg: ClipmemConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    _fake_watcher(monkeypatch)
    monkeypatch.setattr(daemon, "START_LOCK_TIMEOUT_S", 0.2)

    def _no_spawn(*args: object, **kwargs: object) -> None:
        raise AssertionError("watcher must not be spawned")

    monkeypatch.setattr(daemon.subprocess, "Popen", _no_spawn)

    with daemon._start_lock(cfg.paths.pid_file):
        with pytest.raises(AlreadyRunning, match="already starting"):
            daemon.start_daemon(cfg)
    assert not cfg.paths.pid_file.exists()


def test_start_recovers_from_empty_pid_file(
    cfg: ClipmemConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    _fake_watcher(monkeypatch)
    cfg.paths.base_dir.mkdir(parents=True)
    cfg.paths.pid_file.write_text("")

    started = daemon.start_daemon(cfg)
    try:
        assert started.pid is not None
        assert cfg.paths.pid_file.read_text().strip() == str(started.pid)
    finally:
        _kill(started.pid or 0)


def test_status_removes_stale_pid_file(cfg: ClipmemConfig) -> None:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    cfg.paths.base_dir.mkdir(parents=True)
    cfg.paths.pid_file.write_text(f"{proc.pid}\n")

    status = daemon.daemon_status(cfg)

    assert status.running is False
    assert not cfg.paths.pid_file.exists()


@pytest.mark.skipif(shutil.which("ps") is None, reason="needs ps")
def test_recycled_pid_is_not_a_watcher(cfg: ClipmemConfig) -> None:
    # The test runner itself is alive but is not a clipmem watcher.
    cfg.paths.base_dir.mkdir(parents=True)
    cfg.paths.pid_file.write_text(f"{os.getpid()}\n")

    assert daemon.daemon_status(cfg).running is False
    with pytest.raises(NotRunning):
        daemon.stop_daemon(cfg)


def test_stop_when_not_running(cfg: ClipmemConfig) -> None:
    with pytest.raises(NotRunning, match="Daemon is not running"):
        daemon.stop_daemon(cfg)


def test_stop_reports_timeout(
    cfg: ClipmemConfig, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    ready = tmp_path / "ready"
    code = (
        "import pathlib, signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        f"pathlib.Path({str(ready)!r}).write_text('1')\n"
        "time.sleep(30)\n"
    )
    _fake_watcher(monkeypatch, code)
    cfg.stop_timeout_s = 0.3
    started = daemon.start_daemon(cfg)
    try:
        deadline = time.monotonic() + 10
        while not ready.exists() and time.monotonic() < deadline:
            time.sleep(0.02)
        assert ready.exists()

        result = daemon.stop_daemon(cfg)

        assert result.stopped is False
        assert result.reason == "timeout"
        assert cfg.paths.pid_file.exists()
    finally:
        _kill(started.pid or 0)


def test_start_spawn_failure_releases_pid_file(
    cfg: ClipmemConfig, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr(daemon, "_watcher_command", lambda: [str(tmp_path / "missing-binary")])

    with pytest.raises(IOFailure):
        daemon.start_daemon(cfg)
    assert not cfg.paths.pid_file.exists()


def test_claim_and_release_pid_file(tmp_path: Path) -> None:
    pid_file = tmp_path / "clipmem.pid"
    daemon.claim_pid_file(pid_file, os.getpid())
    assert pid_file.read_text().strip() == str(os.getpid())

    daemon.release_pid_file(pid_file, os.getpid() + 1)
    assert pid_file.exists()
    daemon.release_pid_file(pid_file, os.getpid())
    assert not pid_file.exists()


def test_identity_check_falls_back_to_liveness_without_ps(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _no_ps(*args: object, **kwargs: object) -> None:
        raise FileNotFoundError("ps")

    monkeypatch.setattr(daemon.subprocess, "run", _no_ps)

    assert daemon._pid_command_status(os.getpid()) == (None, "ps_unavailable")
    assert daemon._pid_is_watcher(os.getpid()) is True


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("/usr/bin/python3 -m clipmem.cli daemon run", True),
        ("python -m clipmem daemon run", True),
        ("/home/me/.local/bin/clipmem daemon run", True),
        ("C:\\Python311\\python.exe -m clipmem.cli daemon run", True),
        ("clipmem daemon start", False),
        ("python -m pytest tests", False),
        ("vim clipmem daemon run.txt", False),
        ("[python3] <defunct>", False),
    ],
)
def test_is_watcher_command(command: str, expected: bool) -> None:
    assert daemon._is_watcher_command(command) is expected

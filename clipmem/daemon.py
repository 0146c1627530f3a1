from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath
from typing import Any

from .config import ClipmemConfig, ClipmemPaths
from .errors import AlreadyRunning, IOFailure, NotRunning

logger = logging.getLogger(__name__)

WATCHER_MODULES = {"clipmem", "clipmem.cli"}
WATCHER_BINARIES = {"clipmem"}
START_LOCK_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class DaemonStatus:
    running: bool
    pid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"running": self.running}
        if self.pid is not None:
            data["pid"] = self.pid
        return data


@dataclass(frozen=True)
class StopResult:
    stopped: bool
    reason: str
    pid: int | None = None


def _pid_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _read_pid(pid_path: Path) -> int | None:
    try:
        raw = pid_path.read_text().strip()
    except FileNotFoundError:
        return None
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _write_pid(pid_path: Path, pid: int) -> None:
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(f"{pid}\n")


def _clear_pid(pid_path: Path) -> None:
    try:
        pid_path.unlink()
    except FileNotFoundError:
        return


def _reserve_pid_path(pid_path: Path) -> bool:
    """Create the pid file exclusively; False if another start got there first."""
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(pid_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    os.close(fd)
    return True


@contextmanager
def _start_lock(pid_path: Path) -> Iterator[None]:
    """Serialize starts across processes for the check, spawn and pid write."""
    import fcntl

    lock_path = pid_path.with_name(f"{pid_path.name}.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o600)
    deadline = time.monotonic() + START_LOCK_TIMEOUT_S
    try:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise AlreadyRunning(None) from None
                time.sleep(0.05)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def _pid_command_status(pid: int) -> tuple[str | None, str]:
    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "command="],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        return None, "ps_unavailable"
    if result.returncode != 0:
        return None, "command_unavailable"
    command = (result.stdout or "").strip()
    if not command:
        return None, "command_unavailable"
    return command, "ok"


def _normalized_binary_name(token: str) -> str:
    posix_name = Path(token).name
    windows_name = PureWindowsPath(token).name
    name = windows_name if len(windows_name) < len(posix_name) else posix_name
    return name.lower().removesuffix(".exe")


def _is_watcher_command(command: str) -> bool:
    tokens = command.split()
    lowered = [token.lower() for token in tokens]
    for start in range(len(tokens)):
        binary = _normalized_binary_name(tokens[start])
        rest = lowered[start + 1 :]
        if binary in WATCHER_BINARIES and rest[:2] == ["daemon", "run"]:
            return True
        if (
            (binary == "py" or binary.startswith("python"))
            and len(rest) >= 4
            and rest[0] == "-m"
            and rest[1] in WATCHER_MODULES
            and rest[2:4] == ["daemon", "run"]
        ):
            return True
    return False


def _pid_is_watcher(pid: int) -> bool:
    """Alive and running a clipmem watcher; a recycled pid does not count."""
    if not _pid_running(pid):
        return False
    command, status = _pid_command_status(pid)
    if status == "ps_unavailable":
        # No way to check identity here; fall back to liveness.
        return True
    return status == "ok" and command is not None and _is_watcher_command(command)


def _watcher_command() -> list[str]:
    return [sys.executable, "-m", "clipmem.cli", "daemon", "run"]


def claim_pid_file(pid_path: Path, pid: int) -> None:
    """Record ``pid`` as the live watcher, refusing if another watcher holds the file."""
    existing = _read_pid(pid_path)
    if existing is not None and existing != pid and _pid_is_watcher(existing):
        raise AlreadyRunning(existing)
    _write_pid(pid_path, pid)


def release_pid_file(pid_path: Path, pid: int) -> None:
    if _read_pid(pid_path) == pid:
        _clear_pid(pid_path)


def daemon_status(cfg: ClipmemConfig) -> DaemonStatus:
    pid_path = cfg.paths.pid_file
    pid = _read_pid(pid_path)
    if pid is None:
        return DaemonStatus(False)
    if _pid_is_watcher(pid):
        return DaemonStatus(True, pid=pid)
    if not _pid_running(pid):
        logger.info("removed stale pid file for pid %s", pid)
        _clear_pid(pid_path)
    return DaemonStatus(False)


def start_daemon(cfg: ClipmemConfig) -> DaemonStatus:
    paths = cfg.paths
    pid_path = paths.pid_file
    with _start_lock(pid_path):
        pid = _read_pid(pid_path)
        if pid is not None and _pid_is_watcher(pid):
            raise AlreadyRunning(pid)
        if pid_path.exists():
            logger.info("removing stale pid file %s", pid_path)
            _clear_pid(pid_path)
        if not _reserve_pid_path(pid_path):
            raise AlreadyRunning(_read_pid(pid_path))
        return _spawn_watcher(paths)


def _spawn_watcher(paths: ClipmemPaths) -> DaemonStatus:
    pid_path = paths.pid_file
    env = os.environ.copy()
    env["CLIPMEM_HOME"] = str(paths.base_dir)
    try:
        paths.log_file.parent.mkdir(parents=True, exist_ok=True)
        with paths.log_file.open("ab") as log:
            proc = subprocess.Popen(
                _watcher_command(),
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=log,
                start_new_session=True,
                env=env,
            )
    except OSError as exc:
        _clear_pid(pid_path)
        raise IOFailure(f"failed to launch watcher: {exc}") from exc
    _write_pid(pid_path, int(proc.pid))
    logger.info("started watcher (pid %s)", proc.pid)
    return DaemonStatus(True, pid=int(proc.pid))


def stop_daemon(cfg: ClipmemConfig) -> StopResult:
    pid_path = cfg.paths.pid_file
    pid = _read_pid(pid_path)
    if pid is None:
        raise NotRunning()
    if not _pid_is_watcher(pid):
        if not _pid_running(pid):
            _clear_pid(pid_path)
        raise NotRunning(f"Daemon is not running (stale pid {pid})")
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        _clear_pid(pid_path)
        raise NotRunning(f"Daemon is not running (pid {pid} exited)") from None
    except OSError:
        return StopResult(False, "signal_failed", pid=pid)

    # SIGTERM only sets the watcher's stop event, so the in-flight tick finishes first.
    deadline = time.monotonic() + cfg.stop_timeout_s
    while time.monotonic() < deadline:
        if not _pid_is_watcher(pid):
            _clear_pid(pid_path)
            logger.info("stopped watcher (pid %s)", pid)
            return StopResult(True, "stopped", pid=pid)
        time.sleep(0.05)
    return StopResult(False, "timeout", pid=pid)

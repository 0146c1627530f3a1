from __future__ import annotations


class ClipError(Exception):
    """Base class for errors surfaced through the retrieval API."""


class NotFound(ClipError, LookupError):
    def __init__(self, clip_id: int) -> None:
        super().__init__(f"Clip with id {clip_id} not found")
        self.clip_id = clip_id


class InvalidArgument(ClipError, ValueError):
    pass


class AlreadyRunning(ClipError):
    def __init__(self, pid: int | None = None) -> None:
        if pid is None:
            super().__init__("Daemon is already starting")
        else:
            super().__init__(f"Daemon already running (pid {pid})")
        self.pid = pid


class NotRunning(ClipError):
    def __init__(self, message: str = "Daemon is not running") -> None:
        super().__init__(message)


class Busy(ClipError):
    """Storage lock contention outlasted the retry budget."""


class SourceUnavailable(ClipError):
    """The clipboard could not be read (denied, missing backend, or timed out)."""


class IOFailure(ClipError, OSError):
    pass

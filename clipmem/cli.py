from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import typer
from rich import print
from rich.console import Console

from . import __version__
from .api import ClipHistory, error_payload
from .config import load_config
from .errors import ClipError
from .logging_setup import configure_logging
from .watcher import run_watcher

app = typer.Typer(help="clipmem: searchable clipboard history", no_args_is_help=True)
daemon_app = typer.Typer(help="Run and supervise the clipboard watcher")
app.add_typer(daemon_app, name="daemon")

# JSON goes out unstyled so clip text is never read as rich markup.
_out = Console(highlight=False)


def _history() -> ClipHistory:
    return ClipHistory(load_config())


def _emit(data: Any) -> None:
    _out.out(json.dumps(data, indent=2, ensure_ascii=False))


def _run(fn: Callable[[], Any]) -> None:
    try:
        result = fn()
    except ClipError as exc:
        _emit(error_payload(exc))
        raise typer.Exit(code=1) from None
    _emit(result)
    if isinstance(result, dict) and result.get("success") is False:
        raise typer.Exit(code=1)


def _version_callback(value: bool) -> None:
    if value:
        print(f"clipmem {__version__}")
        raise typer.Exit()


@app.callback()
def _root(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version"
    ),
) -> None:
    """Searchable clipboard history."""


@app.command("list")
def list_cmd(
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum clips to return"),
    offset: int = typer.Option(0, help="Skip this many clips"),
    content_type: str = typer.Option(None, "--type", help="text, image or fileref"),
    pinned: bool = typer.Option(None, "--pinned/--unpinned", help="Filter by pin state"),
    tag: str = typer.Option(None, help="Only clips carrying this tag"),
) -> None:
    """List recent clips, newest first."""
    _run(
        lambda: _history().list_clips(
            limit, offset, content_type=content_type, pinned=pinned, tag=tag
        )
    )


@app.command()
def search(
    query: str,
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum clips to return"),
) -> None:
    """Full-text search over text clips."""
    _run(lambda: _history().search(query, limit=limit))


@app.command()
def get(clip_id: int) -> None:
    """Show one clip as JSON."""
    _run(lambda: _history().get(clip_id))


@app.command()
def copy(clip_id: int) -> None:
    """Put a stored clip back on the clipboard."""
    _run(lambda: _history().copy(clip_id))


@app.command()
def delete(clip_id: int) -> None:
    """Delete a clip and its image file."""
    _run(lambda: _history().delete(clip_id))


@app.command()
def pin(
    clip_id: int,
    unpin: bool = typer.Option(False, "--unpin", help="Remove the pin instead"),
) -> None:
    """Pin a clip so retention sweeps keep it."""
    history = _history()
    _run(lambda: history.unpin(clip_id) if unpin else history.pin(clip_id))


@app.command()
def tag(
    clip_id: int,
    name: str,
    remove: bool = typer.Option(False, "--remove", help="Remove the tag instead"),
) -> None:
    """Attach a tag to a clip."""
    history = _history()
    _run(lambda: history.untag(clip_id, name) if remove else history.tag(clip_id, name))


@app.command()
def clear(
    days: int = typer.Option(30, "--days", help="Remove unpinned clips older than this"),
) -> None:
    """Delete unpinned clips older than N days."""
    _run(lambda: _history().clear(days))


@app.command()
def stats() -> None:
    """Storage totals and daemon state."""
    _run(lambda: _history().stats())


@daemon_app.command("start")
def daemon_start() -> None:
    """Start the watcher in the background."""
    _run(lambda: _history().daemon_start())


@daemon_app.command("stop")
def daemon_stop() -> None:
    """Stop the background watcher."""
    _run(lambda: _history().daemon_stop())


@daemon_app.command("status")
def daemon_status() -> None:
    """Report whether the watcher is running."""
    _run(lambda: _history().daemon_status())


@daemon_app.command("run", hidden=True)
def daemon_run() -> None:
    """Run the watcher in the foreground (used by `daemon start`)."""
    cfg = load_config()
    configure_logging(cfg.log_level)
    try:
        run_watcher(cfg)
    except ClipError as exc:
        _emit(error_payload(exc))
        raise typer.Exit(code=1) from None


def main() -> None:
    app()


if __name__ == "__main__":
    main()

from __future__ import annotations

import contextlib
import sqlite3
from collections.abc import Iterator
from pathlib import Path

from .config import ClipmemPaths

DEFAULT_DB_PATH = ClipmemPaths.from_base("~/.clipmem").db_path

LOCK_ERROR_MARKERS = ("database is locked", "database table is locked", "database is busy")


def _casefold(value: object) -> object:
    return value.casefold() if isinstance(value, str) else value


def connect(
    db_path: Path | str,
    *,
    busy_timeout_ms: int = 250,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    # Autocommit mode: write transactions are opened explicitly with BEGIN IMMEDIATE.
    conn = sqlite3.connect(
        path,
        timeout=max(0, busy_timeout_ms) / 1000.0,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    conn.create_function("casefold", 1, _casefold, deterministic=True)
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS clips (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            content_type TEXT NOT NULL,
            text_content TEXT,
            image_path TEXT,
            image_width INTEGER,
            image_height INTEGER,
            hash TEXT NOT NULL,
            size_bytes INTEGER NOT NULL,
            pinned INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(content_type, hash)
        );
        CREATE INDEX IF NOT EXISTS idx_clips_hash ON clips(hash);
        CREATE INDEX IF NOT EXISTS idx_clips_created_at ON clips(created_at);
        CREATE INDEX IF NOT EXISTS idx_clips_updated_at ON clips(updated_at DESC, id DESC);

        CREATE TABLE IF NOT EXISTS tags (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            clip_id INTEGER NOT NULL REFERENCES clips(id) ON DELETE CASCADE,
            tag TEXT NOT NULL,
            UNIQUE(clip_id, tag)
        );
        CREATE INDEX IF NOT EXISTS idx_tags_tag ON tags(tag);
        CREATE INDEX IF NOT EXISTS idx_tags_clip_id ON tags(clip_id);

        CREATE VIRTUAL TABLE IF NOT EXISTS clips_fts USING fts5(
            text_content,
            content='clips',
            content_rowid='id'
        );

        CREATE TRIGGER IF NOT EXISTS clips_ai AFTER INSERT ON clips
        WHEN new.text_content IS NOT NULL BEGIN
            INSERT INTO clips_fts(rowid, text_content) VALUES (new.id, new.text_content);
        END;

        CREATE TRIGGER IF NOT EXISTS clips_ad AFTER DELETE ON clips
        WHEN old.text_content IS NOT NULL BEGIN
            INSERT INTO clips_fts(clips_fts, rowid, text_content)
            VALUES('delete', old.id, old.text_content);
        END;

        CREATE TRIGGER IF NOT EXISTS clips_au AFTER UPDATE OF text_content ON clips BEGIN
            INSERT INTO clips_fts(clips_fts, rowid, text_content)
            SELECT 'delete', old.id, old.text_content WHERE old.text_content IS NOT NULL;
            INSERT INTO clips_fts(rowid, text_content)
            SELECT new.id, new.text_content WHERE new.text_content IS NOT NULL;
        END;

        CREATE TABLE IF NOT EXISTS clip_state (
            key TEXT PRIMARY KEY,
            value TEXT,
            updated_at TEXT NOT NULL
        );
        """
    )


def is_lock_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in LOCK_ERROR_MARKERS)


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the body inside a single write transaction.

    BEGIN IMMEDIATE takes the write lock up front so contention surfaces here,
    before any statement of the body has run.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise

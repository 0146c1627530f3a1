from __future__ import annotations

import logging
import os
import sqlite3
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, TypeVar

from PIL import Image

from .. import db
from ..config import ClipmemConfig
from ..errors import Busy, InvalidArgument, IOFailure, NotFound
from . import maintenance as store_maintenance
from . import search as store_search
from . import tags as store_tags
from .types import IMAGE, Clip, ClipPayload, StorageStats, UpsertResult, validate_content_type
from .utils import advance_iso, now_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

SELF_WRITE_KEY = "self_write_hash"


class ClipStore:
    MAX_BACKOFF_S = 1.0

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        images_dir: Path | str | None = None,
        busy_retries: int = 5,
        busy_backoff_ms: int = 50,
        busy_timeout_ms: int = 250,
        check_same_thread: bool = True,
    ):
        self.db_path = Path(db_path).expanduser()
        self.images_dir = (
            Path(images_dir).expanduser() if images_dir else self.db_path.parent / "images"
        )
        self.busy_retries = max(0, busy_retries)
        self.busy_backoff_s = max(0, busy_backoff_ms) / 1000.0
        self.conn = db.connect(
            self.db_path,
            busy_timeout_ms=busy_timeout_ms,
            check_same_thread=check_same_thread,
        )
        self._retrying(lambda: db.initialize_schema(self.conn))

    @classmethod
    def from_config(cls, cfg: ClipmemConfig) -> ClipStore:
        paths = cfg.paths
        return cls(
            paths.db_path,
            images_dir=paths.images_dir,
            busy_retries=cfg.busy_retries,
            busy_backoff_ms=cfg.busy_backoff_ms,
            busy_timeout_ms=cfg.busy_timeout_ms,
        )

    def __enter__(self) -> ClipStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    # -- transactions -----------------------------------------------------

    def _retrying(self, fn: Callable[[], T]) -> T:
        delay = self.busy_backoff_s
        attempt = 0
        while True:
            try:
                return fn()
            except sqlite3.OperationalError as exc:
                if not db.is_lock_error(exc):
                    raise
                if attempt >= self.busy_retries:
                    raise Busy(f"database is locked after {attempt + 1} attempts") from exc
                attempt += 1
                logger.debug("database locked, retry %s/%s", attempt, self.busy_retries)
                time.sleep(delay)
                delay = min(max(delay * 2, 0.001), self.MAX_BACKOFF_S)

    def _write(self, fn: Callable[[], T]) -> T:
        def run() -> T:
            with db.transaction(self.conn):
                return fn()

        return self._retrying(run)

    # -- row mapping ------------------------------------------------------

    def _rows_to_clips(self, rows: Iterable[sqlite3.Row]) -> list[Clip]:
        rows = list(rows)
        tags_by_clip = store_tags.tags_for_clips(self.conn, [int(row["id"]) for row in rows])
        return [
            Clip(
                id=int(row["id"]),
                content_type=row["content_type"],
                text_content=row["text_content"],
                image_path=row["image_path"],
                image_width=row["image_width"],
                image_height=row["image_height"],
                hash=row["hash"],
                size_bytes=int(row["size_bytes"]),
                pinned=bool(row["pinned"]),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
                tags=tags_by_clip.get(int(row["id"]), []),
            )
            for row in rows
        ]

    def _require_row(self, clip_id: int, columns: str = "id") -> sqlite3.Row:
        row = self.conn.execute(f"SELECT {columns} FROM clips WHERE id = ?", (clip_id,)).fetchone()
        if row is None:
            raise NotFound(clip_id)
        return row

    # -- capture ----------------------------------------------------------

    def upsert(self, payload: ClipPayload) -> UpsertResult:
        """Insert ``payload`` or touch the clip that already holds the same content."""
        content_type = validate_content_type(payload.content_type)
        if content_type == IMAGE and (not payload.width or not payload.height):
            raise InvalidArgument("image payloads need a width and height")
        digest = payload.fingerprint
        written: list[Path] = []

        def _upsert() -> tuple[int, bool]:
            row = self.conn.execute(
                "SELECT id, updated_at FROM clips WHERE content_type = ? AND hash = ?",
                (content_type, digest),
            ).fetchone()
            if row is not None:
                self.conn.execute(
                    "UPDATE clips SET updated_at = ? WHERE id = ?",
                    (advance_iso(row["updated_at"]), row["id"]),
                )
                return int(row["id"]), False
            image_path = None
            if content_type == IMAGE:
                image_path = self._write_image(payload, digest, written)
            now = now_iso()
            cur = self.conn.execute(
                """
                INSERT INTO clips(
                    content_type, text_content, image_path, image_width, image_height,
                    hash, size_bytes, pinned, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    content_type,
                    payload.text,
                    str(image_path) if image_path else None,
                    payload.width if content_type == IMAGE else None,
                    payload.height if content_type == IMAGE else None,
                    digest,
                    payload.size_bytes,
                    now,
                    now,
                ),
            )
            return int(cur.lastrowid), True

        try:
            clip_id, created = self._write(_upsert)
        except BaseException:
            for path in written:
                path.unlink(missing_ok=True)
            raise
        return UpsertResult(clip=self.get(clip_id), created=created)

    def _write_image(self, payload: ClipPayload, digest: str, written: list[Path]) -> Path:
        path = self.images_dir / f"{digest[:16]}.png"
        existed = path.exists()
        tmp_path = path.with_suffix(".png.tmp")
        try:
            self.images_dir.mkdir(parents=True, exist_ok=True)
            image = Image.frombytes("RGBA", (int(payload.width), int(payload.height)), payload.data)
            image.save(tmp_path, format="PNG")
            os.replace(tmp_path, path)
        except (OSError, ValueError) as exc:
            tmp_path.unlink(missing_ok=True)
            raise IOFailure(f"failed to write image {path}: {exc}") from exc
        if not existed:
            written.append(path)
        return path

    def find_by_hash(self, content_type: str, digest: str) -> Clip | None:
        rows = self._retrying(
            lambda: self.conn.execute(
                "SELECT * FROM clips WHERE content_type = ? AND hash = ?",
                (validate_content_type(content_type), digest),
            ).fetchall()
        )
        clips = self._rows_to_clips(rows)
        return clips[0] if clips else None

    # -- retrieval --------------------------------------------------------

    def get(self, clip_id: int) -> Clip:
        rows = self._retrying(
            lambda: self.conn.execute("SELECT * FROM clips WHERE id = ?", (clip_id,)).fetchall()
        )
        if not rows:
            raise NotFound(clip_id)
        return self._rows_to_clips(rows)[0]

    def list_clips(
        self,
        limit: int = 10,
        offset: int = 0,
        *,
        content_type: str | None = None,
        pinned: bool | None = None,
        tag: str | None = None,
    ) -> list[Clip]:
        if limit <= 0:
            raise InvalidArgument(f"limit must be positive, got {limit}")
        if offset < 0:
            raise InvalidArgument(f"offset must not be negative, got {offset}")
        where: list[str] = []
        params: list[Any] = []
        if content_type is not None:
            where.append("clips.content_type = ?")
            params.append(validate_content_type(content_type))
        if pinned is not None:
            where.append("clips.pinned = ?")
            params.append(1 if pinned else 0)
        if tag is not None:
            where.append(
                "EXISTS (SELECT 1 FROM tags WHERE tags.clip_id = clips.id AND tags.tag = ?)"
            )
            params.append(store_tags.normalize_tag(tag))
        where_clause = f"WHERE {' AND '.join(where)}" if where else ""
        sql = f"""
            SELECT clips.* FROM clips
            {where_clause}
            ORDER BY clips.updated_at DESC, clips.id DESC
            LIMIT ? OFFSET ?
        """
        rows = self._retrying(
            lambda: self.conn.execute(sql, (*params, limit, offset)).fetchall()
        )
        return self._rows_to_clips(rows)

    def search(self, query: str, limit: int = 10) -> list[Clip]:
        return store_search.search(self, query, limit=limit)

    # -- mutation ---------------------------------------------------------

    def touch(self, clip_id: int) -> None:
        def _touch() -> None:
            row = self._require_row(clip_id, "id, updated_at")
            self.conn.execute(
                "UPDATE clips SET updated_at = ? WHERE id = ?",
                (advance_iso(row["updated_at"]), clip_id),
            )

        self._write(_touch)

    def delete(self, clip_id: int) -> str | None:
        """Delete a clip; returns a warning if its image file could not be removed."""

        def _delete() -> str | None:
            row = self._require_row(clip_id, "id, image_path")
            self.conn.execute("DELETE FROM clips WHERE id = ?", (clip_id,))
            return row["image_path"]

        image_path = self._write(_delete)
        return self.remove_owned_file(image_path)

    def remove_owned_file(self, image_path: str | None) -> str | None:
        if not image_path:
            return None
        try:
            Path(image_path).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("failed to remove image file %s: %s", image_path, exc)
            return f"image file {image_path} could not be removed: {exc}"
        return None

    def pin(self, clip_id: int) -> None:
        self._set_pinned(clip_id, True)

    def unpin(self, clip_id: int) -> None:
        self._set_pinned(clip_id, False)

    def _set_pinned(self, clip_id: int, pinned: bool) -> None:
        def _update() -> None:
            row = self._require_row(clip_id, "id, updated_at")
            self.conn.execute(
                "UPDATE clips SET pinned = ?, updated_at = ? WHERE id = ?",
                (1 if pinned else 0, advance_iso(row["updated_at"]), clip_id),
            )

        self._write(_update)

    def add_tag(self, clip_id: int, tag: str) -> bool:
        return store_tags.add_tag(self, clip_id, tag)

    def remove_tag(self, clip_id: int, tag: str) -> bool:
        return store_tags.remove_tag(self, clip_id, tag)

    def clear_older_than(self, days: int) -> int:
        return store_maintenance.clear_older_than(self, days)

    def stats(self) -> StorageStats:
        return store_maintenance.stats(self)

    # -- watcher bookkeeping ----------------------------------------------

    def record_self_write(self, digest: str) -> None:
        self._write(
            lambda: self.conn.execute(
                """
                INSERT INTO clip_state(key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (SELF_WRITE_KEY, digest, now_iso()),
            )
        )

    def last_self_write(self) -> str | None:
        row = self._retrying(
            lambda: self.conn.execute(
                "SELECT value FROM clip_state WHERE key = ?", (SELF_WRITE_KEY,)
            ).fetchone()
        )
        return row["value"] if row else None

    def consume_self_write(self, digest: str) -> bool:
        """Clear the recorded self-write; True if it matched ``digest``."""
        if self.last_self_write() is None:
            return False

        def _consume() -> bool:
            row = self.conn.execute(
                "SELECT value FROM clip_state WHERE key = ?", (SELF_WRITE_KEY,)
            ).fetchone()
            if row is None:
                return False
            self.conn.execute("DELETE FROM clip_state WHERE key = ?", (SELF_WRITE_KEY,))
            return row["value"] == digest

        return self._write(_consume)

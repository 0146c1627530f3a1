from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

from ..errors import InvalidArgument

if TYPE_CHECKING:
    from ._store import ClipStore


def normalize_tag(value: str) -> str:
    return (value or "").strip()


def _require_tag(value: str) -> str:
    tag = normalize_tag(value)
    if not tag:
        raise InvalidArgument("tag must not be empty")
    return tag


def add_tag(store: ClipStore, clip_id: int, tag: str) -> bool:
    """Attach ``tag`` to a clip. Returns False when it was already there."""
    tag = _require_tag(tag)

    def _add() -> bool:
        store._require_row(clip_id)
        cur = store.conn.execute(
            "INSERT OR IGNORE INTO tags(clip_id, tag) VALUES (?, ?)",
            (clip_id, tag),
        )
        return cur.rowcount > 0

    return store._write(_add)


def remove_tag(store: ClipStore, clip_id: int, tag: str) -> bool:
    """Detach ``tag`` from a clip. Returns False when it was not attached."""
    tag = _require_tag(tag)

    def _remove() -> bool:
        store._require_row(clip_id)
        cur = store.conn.execute(
            "DELETE FROM tags WHERE clip_id = ? AND tag = ?",
            (clip_id, tag),
        )
        return cur.rowcount > 0

    return store._write(_remove)


def tags_for_clips(conn: sqlite3.Connection, clip_ids: list[int]) -> dict[int, list[str]]:
    if not clip_ids:
        return {}
    placeholders = ",".join("?" for _ in clip_ids)
    rows = conn.execute(
        f"SELECT clip_id, tag FROM tags WHERE clip_id IN ({placeholders}) ORDER BY tag",
        clip_ids,
    ).fetchall()
    tags: dict[int, list[str]] = {}
    for row in rows:
        tags.setdefault(int(row["clip_id"]), []).append(row["tag"])
    return tags


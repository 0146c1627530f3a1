from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import InvalidArgument
from .types import StorageStats
from .utils import cutoff_iso

if TYPE_CHECKING:
    from ._store import ClipStore

logger = logging.getLogger(__name__)


def clear_older_than(store: ClipStore, days: int) -> int:
    """Retention sweep: delete unpinned clips created before ``now - days``."""
    if days < 0:
        raise InvalidArgument(f"days must not be negative, got {days}")
    cutoff = cutoff_iso(days)

    def _sweep() -> list[str | None]:
        rows = store.conn.execute(
            "SELECT id, image_path FROM clips WHERE created_at < ? AND pinned = 0",
            (cutoff,),
        ).fetchall()
        if not rows:
            return []
        ids = [int(row["id"]) for row in rows]
        placeholders = ",".join("?" for _ in ids)
        store.conn.execute(f"DELETE FROM clips WHERE id IN ({placeholders})", ids)
        return [row["image_path"] for row in rows]

    image_paths = store._write(_sweep)
    for image_path in image_paths:
        store.remove_owned_file(image_path)
    if image_paths:
        logger.info("retention sweep removed %s clip(s) older than %s days", len(image_paths), days)
    return len(image_paths)


def stats(store: ClipStore) -> StorageStats:
    row = store._retrying(
        lambda: store.conn.execute(
            """
            SELECT
                COUNT(*) AS total_clips,
                COUNT(CASE WHEN content_type = 'text' THEN 1 END) AS text_clips,
                COUNT(CASE WHEN content_type = 'image' THEN 1 END) AS image_clips,
                COUNT(CASE WHEN content_type = 'fileref' THEN 1 END) AS fileref_clips,
                COALESCE(SUM(size_bytes), 0) AS total_size,
                MIN(created_at) AS oldest,
                MAX(created_at) AS newest
            FROM clips
            """
        ).fetchone()
    )
    return StorageStats(
        total_clips=int(row["total_clips"]),
        text_clips=int(row["text_clips"]),
        image_clips=int(row["image_clips"]),
        fileref_clips=int(row["fileref_clips"]),
        total_size=int(row["total_size"]),
        oldest=row["oldest"],
        newest=row["newest"],
    )

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from ..errors import InvalidArgument
from .types import Clip
from .utils import LIKE_ESCAPE, escape_like

if TYPE_CHECKING:
    from ._store import ClipStore

TOKEN_RE = re.compile(r"[^\W_]+", re.UNICODE)


def _expand_query(query: str) -> str:
    """Build an FTS5 MATCH expression where every token is a quoted prefix literal.

    Tokens are letters and digits only, so quoting them is enough to keep
    operators like NEAR, AND or column filters in user input inert.
    """
    tokens = TOKEN_RE.findall(query)
    if not tokens:
        return ""
    return " OR ".join(f'"{token}"*' for token in tokens)


def search(store: ClipStore, query: str, limit: int = 10) -> list[Clip]:
    if limit <= 0:
        raise InvalidArgument(f"limit must be positive, got {limit}")
    needle = (query or "").strip()
    if not needle:
        return []

    rows = []
    expanded = _expand_query(needle)
    if expanded:
        rows = store._retrying(
            lambda: store.conn.execute(
                """
                SELECT clips.*, -bm25(clips_fts) AS score,
                    (1.0 / (1.0 + ((julianday('now') - julianday(clips.updated_at)) / 7.0)))
                        AS recency
                FROM clips_fts
                JOIN clips ON clips.id = clips_fts.rowid
                WHERE clips_fts MATCH ?
                ORDER BY (score * 1.5 + recency) DESC, clips.id DESC
                LIMIT ?
                """,
                (expanded, limit),
            ).fetchall()
        )

    seen = {int(row["id"]) for row in rows}
    if len(rows) < limit:
        # Substring hits the tokenizer cannot see ("ell" in "hello", punctuation).
        # Both sides are casefolded since LIKE only ignores ASCII case.
        pattern = f"%{escape_like(needle.casefold())}%"
        extra = store._retrying(
            lambda: store.conn.execute(
                f"""
                SELECT clips.* FROM clips
                WHERE casefold(clips.text_content) LIKE ? ESCAPE '{LIKE_ESCAPE}'
                ORDER BY clips.updated_at DESC, clips.id DESC
                LIMIT ?
                """,
                (pattern, limit + len(seen)),
            ).fetchall()
        )
        for row in extra:
            if len(rows) >= limit:
                break
            if int(row["id"]) in seen:
                continue
            seen.add(int(row["id"]))
            rows.append(row)

    return store._rows_to_clips(rows)

from __future__ import annotations

import hashlib


def fingerprint(content_type: str, data: bytes) -> str:
    """Hex sha256 over the payload bytes, scoped by content type.

    The type prefix keeps equal bytes declared as different types apart.
    """
    digest = hashlib.sha256()
    digest.update(content_type.encode("ascii"))
    digest.update(b"\0")
    digest.update(data)
    return digest.hexdigest()

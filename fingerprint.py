"""Content fingerprints used as artifact cache keys.

Only the first ``MAX_HASH_READ`` bytes of a file are hashed, which keeps the
cost flat for multi-gigabyte videos. Known limitation: two files that share
their first MiB and differ only afterwards get the same fingerprint and
therefore share thumbnails and previews. The hash is for deduplication only,
not for integrity or security.
"""
from __future__ import annotations

import hashlib
from pathlib import Path

from errors import IOFailure

MAX_HASH_READ = 1 * 1024 * 1024
_CHUNK = 64 * 1024


def content_fingerprint(path: Path | str, *, limit: int = MAX_HASH_READ) -> str:
    """Hex MD5 of at most ``limit`` leading bytes of ``path``."""
    h = hashlib.md5()
    remaining = int(limit)
    try:
        with open(path, "rb") as f:
            while remaining > 0:
                data = f.read(min(_CHUNK, remaining))
                if not data:
                    break
                h.update(data)
                remaining -= len(data)
    except OSError as e:
        raise IOFailure(f"failed to fingerprint {path}: {e}") from e
    return h.hexdigest()


__all__ = ["content_fingerprint", "MAX_HASH_READ"]

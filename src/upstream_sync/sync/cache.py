"""On-disk cache of tree-hash results.

One JSON file per (root, ignore-pattern set), named by the SHA-256 of that
pair.  Each entry records, per relative path, the digest together with the
size and ``st_mtime_ns`` it was computed from, so a later walk can reuse
digests of files whose stat has not changed.

Entries older than the expiry are deleted lazily, when looked up.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Iterable
from pathlib import Path
from typing import TypedDict

from upstream_sync.errors import FilesystemError
from upstream_sync.file_handler import read_json, remove_path, write_json_atomic

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400


class CachedFile(TypedDict):
    digest: str
    size: int
    mtime_ns: int


def cache_key(root: Path, patterns: Iterable[str]) -> str:
    """Stable key for *root* and an unordered set of ignore patterns."""
    payload = json.dumps([str(root.resolve()), sorted(set(patterns))])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class TreeHashCache:
    """Directory of cached tree-hash entries.

    Args:
        cache_dir: Where entry files live (created on first store).
        expiry_days: Entries older than this are discarded on lookup.
    """

    def __init__(self, cache_dir: Path, expiry_days: float = 7) -> None:
        self.cache_dir = cache_dir
        self.expiry_seconds = expiry_days * _SECONDS_PER_DAY

    def _entry_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    def lookup(self, root: Path, patterns: Iterable[str]) -> dict[str, CachedFile] | None:
        """Return the cached files for (root, patterns), or ``None``.

        An expired entry is deleted and ``None`` returned.  An unreadable
        entry is treated as a miss.
        """
        path = self._entry_path(cache_key(root, patterns))
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return None

        if age > self.expiry_seconds:
            logger.debug("Cache entry %s expired (%.0fs old), deleting", path.name, age)
            remove_path(path)
            return None

        try:
            data = read_json(path)
        except (FilesystemError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", path, exc)
            return None
        return data.get("files", {})

    def store(
        self, root: Path, patterns: Iterable[str], files: dict[str, CachedFile]
    ) -> None:
        patterns = list(patterns)
        path = self._entry_path(cache_key(root, patterns))
        write_json_atomic(
            path,
            {
                "root": str(root.resolve()),
                "patterns": sorted(set(patterns)),
                "files": files,
            },
        )

    def clear(self) -> int:
        """Delete every entry.  Returns the number removed."""
        if not self.cache_dir.is_dir():
            return 0
        removed = 0
        for entry in self.cache_dir.glob("*.json"):
            remove_path(entry)
            removed += 1
        return removed

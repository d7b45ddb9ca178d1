"""Content-addressed hash engine.

``hash_file`` streams a file through SHA-256 so memory use does not depend
on file size.  ``hash_tree`` walks a directory (pruning ignored subtrees
before they are listed) and hashes every regular file through the
session's ``WorkerPool``.  Results are keyed by POSIX path relative to the
walked root, so they are independent of traversal and completion order.

Symlinks are not hashed; they are never keys of a hash index.
"""

from __future__ import annotations

import hashlib
import logging
import os
import stat
from collections.abc import Iterable
from pathlib import Path

from upstream_sync.core.async_utils import WorkerPool
from upstream_sync.errors import FilesystemError, NotAFileError
from upstream_sync.sync.cache import CachedFile, TreeHashCache
from upstream_sync.sync.ignore import IgnoreRules

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 640 * 1024


def walk_files(root: Path, rules: IgnoreRules, include_links: bool = False) -> list[str]:
    """Relative POSIX paths of regular files under *root*.

    Ignored directories are pruned before descent.  Symlinks (to files
    or directories) are listed only with *include_links* and are never
    followed.
    """
    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else f"{rel_dir}/"
        descend = []
        for d in dirnames:
            rel = f"{prefix}{d}"
            if rules.matches(rel, is_dir=True):
                continue
            if os.path.islink(os.path.join(dirpath, d)):
                if include_links:
                    found.append(rel)
                continue
            descend.append(d)
        dirnames[:] = descend
        for name in filenames:
            rel = f"{prefix}{name}"
            if rules.matches(rel):
                continue
            if os.path.islink(os.path.join(dirpath, name)) and not include_links:
                continue
            found.append(rel)
    return found


class HashEngine:
    """Compute file and tree digests.

    Args:
        pool: Worker pool bounding concurrent hashing.  A private pool of
            size 5 is created when omitted.
        cache: Optional tree-hash cache.
        buffer_size: Read size for streaming.
    """

    def __init__(
        self,
        pool: WorkerPool | None = None,
        cache: TreeHashCache | None = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        self.pool = pool or WorkerPool(5)
        self.cache = cache
        self.buffer_size = buffer_size
        self.files_hashed = 0
        self.cache_hits = 0

    # ------------------------------------------------------------------
    # Single file
    # ------------------------------------------------------------------

    def hash_file(self, path: Path) -> str:
        """SHA-256 hex digest of the bytes at *path*.

        Raises:
            NotAFileError: *path* is a directory.
            FilesystemError: The file could not be read.
        """
        if path.is_dir():
            raise NotAFileError(f"Not a file: {path}", context={"path": str(path)})
        digest = hashlib.sha256()
        try:
            with open(path, "rb") as fh:
                while chunk := fh.read(self.buffer_size):
                    digest.update(chunk)
        except IsADirectoryError as exc:
            raise NotAFileError(f"Not a file: {path}", cause=exc) from exc
        except OSError as exc:
            raise FilesystemError(
                f"Failed to read {path}: {exc.strerror or exc}",
                cause=exc,
                context={"path": str(path)},
            ) from exc
        self.files_hashed += 1
        return digest.hexdigest()

    # ------------------------------------------------------------------
    # Tree
    # ------------------------------------------------------------------

    def list_files(
        self, root: Path, rules: IgnoreRules, include_links: bool = False
    ) -> list[str]:
        return walk_files(root, rules, include_links)

    async def hash_tree(
        self,
        root: Path,
        ignore: IgnoreRules | Iterable[str] | None = None,
        files: Iterable[str] | None = None,
    ) -> dict[str, str]:
        """Digest every regular file under *root*.

        Files that vanish between listing and hashing are skipped with a
        warning.  When a cache is configured, digests of files whose size
        and mtime are unchanged since the cached walk are reused.

        Args:
            root: Directory to hash.
            ignore: Ignore rules (or raw patterns) applied while walking.
            files: A listing of *root* the caller already has, used instead
                of walking again.  Symlinks in it are skipped.

        Returns:
            Mapping of relative POSIX path to hex digest.

        Raises:
            NotAFileError: *root* is not a directory.
        """
        if not root.is_dir():
            raise NotAFileError(f"Not a directory: {root}", context={"path": str(root)})
        rules = ignore if isinstance(ignore, IgnoreRules) else IgnoreRules(ignore or ())

        cached: dict[str, CachedFile] = {}
        if self.cache is not None:
            cached = self.cache.lookup(root, rules.patterns) or {}

        if files is None:
            files = await self.pool.run(self.list_files, root, rules)

        def _hash_one(rel: str) -> tuple[str, CachedFile] | None:
            path = root / rel
            try:
                st = path.lstat()
            except FileNotFoundError:
                logger.warning("File vanished before hashing: %s", path)
                return None
            if stat.S_ISLNK(st.st_mode):
                return None
            hit = cached.get(rel)
            if hit and hit["size"] == st.st_size and hit["mtime_ns"] == st.st_mtime_ns:
                self.cache_hits += 1
                return rel, hit
            try:
                digest = self.hash_file(path)
            except FilesystemError as exc:
                if isinstance(exc.cause, FileNotFoundError):
                    logger.warning("File vanished while hashing: %s", path)
                    return None
                raise
            return rel, {"digest": digest, "size": st.st_size, "mtime_ns": st.st_mtime_ns}

        results = await self.pool.map(_hash_one, files)
        entries = dict(r for r in results if r is not None)

        if self.cache is not None:
            self.cache.store(root, rules.patterns, entries)

        logger.debug("Hashed tree %s: %d files", root, len(entries))
        return {rel: entry["digest"] for rel, entry in entries.items()}

"""File handler module: type-aware stat, encoding-aware reads, chunked copies.

This is the filesystem collaborator used by the hash engine, the conflict
resolver, the sync orchestrator and the gray release manager.  Every
function is synchronous; async callers go through ``run_sync()`` or a
``WorkerPool``.  ``OSError`` is translated into ``FilesystemError`` (or
``PermissionDeniedError``) with the offending path in the context.
"""

from __future__ import annotations

import json
import os
import shutil
import stat
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Literal

from charset_normalizer import from_bytes

from upstream_sync.errors import FilesystemError, PermissionDeniedError

PathKind = Literal["file", "directory", "symlink"]

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024
DEFAULT_LARGE_FILE_THRESHOLD = 10 * 1024 * 1024

# Called with (relative posix path, is_dir); True means skip.
IgnoreFunc = Callable[[str, bool], bool]


@contextmanager
def _fs_errors(action: str, path: Path) -> Iterator[None]:
    try:
        yield
    except PermissionError as exc:
        raise PermissionDeniedError(
            f"Permission denied while trying to {action} {path}",
            cause=exc,
            context={"path": str(path)},
        ) from exc
    except OSError as exc:
        raise FilesystemError(
            f"Failed to {action} {path}: {exc.strerror or exc}",
            cause=exc,
            context={"path": str(path)},
        ) from exc


# =============================================================================
# Stat
# =============================================================================


def path_kind(path: Path) -> PathKind | None:
    """Return ``"file"``, ``"directory"``, ``"symlink"`` or ``None`` if absent.

    Symlinks are reported as such and never followed.
    """
    try:
        st = os.lstat(path)
    except (FileNotFoundError, NotADirectoryError):
        return None
    if stat.S_ISLNK(st.st_mode):
        return "symlink"
    if stat.S_ISDIR(st.st_mode):
        return "directory"
    return "file"


def file_mode(path: Path) -> int:
    """Permission bits of *path* (``stat.S_IMODE``), symlinks not followed."""
    with _fs_errors("stat", path):
        return stat.S_IMODE(os.lstat(path).st_mode)


def set_mode(path: Path, mode: int) -> None:
    with _fs_errors("chmod", path):
        os.chmod(path, mode)


# =============================================================================
# Read/Write
# =============================================================================


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Read a file with automatic encoding detection.

    Reads raw bytes first, then uses charset-normalizer to detect encoding.
    Defaults to UTF-8 for empty files or when detection fails.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    with _fs_errors("read", path):
        raw = path.read_bytes()
    if not raw:
        return ("", "utf-8")

    result = from_bytes(raw).best()
    if result is None:
        encoding = "utf-8"
        content = raw.decode(encoding, errors="replace")
    else:
        encoding = result.encoding
        # ascii is a strict subset of utf-8
        if encoding == "ascii":
            encoding = "utf-8"
        content = str(result)
    return (content, encoding)


def write_file(path: Path, content: str, encoding: str = "utf-8") -> int:
    """Write *content*, creating parent directories.  Returns bytes written.

    Raises:
        FilesystemError: *content* cannot be represented in *encoding*
            (nothing is written) or the write failed.
    """
    try:
        encoded = content.encode(encoding)
    except (UnicodeError, LookupError) as exc:
        raise FilesystemError(
            f"Cannot encode {path} as {encoding}: {exc}",
            cause=exc,
            context={"path": str(path), "encoding": encoding},
        ) from exc
    with _fs_errors("write", path):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(encoded)
    return len(encoded)


def write_json_atomic(path: Path, data: Any) -> None:
    """Write *data* as JSON via a temp file and ``os.replace()``.

    Readers never observe a partially written file.
    """
    with _fs_errors("write", path):
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


def read_json(path: Path) -> Any:
    with _fs_errors("read", path):
        with open(path, encoding="utf-8") as fh:
            return json.load(fh)


# =============================================================================
# Symlinks
# =============================================================================


def read_symlink(path: Path) -> str:
    with _fs_errors("read link", path):
        return os.readlink(path)


def write_symlink(path: Path, target: str) -> None:
    """Point *path* at *target*, replacing whatever is at *path*."""
    remove_path(path)
    with _fs_errors("create link", path):
        path.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(target, path)


# =============================================================================
# Copy / remove
# =============================================================================


def copy_file(
    src: Path,
    dst: Path,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    large_file_threshold: int = DEFAULT_LARGE_FILE_THRESHOLD,
) -> int:
    """Copy one regular file (or symlink) to *dst*, replacing it.

    Files above *large_file_threshold* are streamed in *chunk_size* pieces;
    smaller ones are copied whole.  Permission bits are preserved.

    Returns:
        Number of bytes copied (``0`` for symlinks).
    """
    if path_kind(src) == "symlink":
        write_symlink(dst, read_symlink(src))
        return 0

    with _fs_errors("copy", src):
        if path_kind(dst) == "directory":
            shutil.rmtree(dst)
        dst.parent.mkdir(parents=True, exist_ok=True)
        size = src.stat().st_size
        if size > large_file_threshold:
            with open(src, "rb") as fin, open(dst, "wb") as fout:
                while chunk := fin.read(chunk_size):
                    fout.write(chunk)
        else:
            dst.write_bytes(src.read_bytes())
        shutil.copymode(src, dst)
    return size


def copy_tree(
    src: Path,
    dst: Path,
    overwrite: bool = True,
    ignore: IgnoreFunc | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    large_file_threshold: int = DEFAULT_LARGE_FILE_THRESHOLD,
    _prefix: str = "",
) -> list[str]:
    """Recursively copy *src* into *dst*.

    Args:
        overwrite: When ``False`` anything already present at the
            destination is left untouched.
        ignore: Predicate on (relative path, is_dir); matches are skipped
            and ignored directories are not traversed.

    Returns:
        Relative POSIX paths of the files and links actually written.
    """
    written: list[str] = []
    with _fs_errors("create directory", dst):
        if path_kind(dst) not in (None, "directory"):
            if not overwrite:
                return written
            remove_path(dst)
        dst.mkdir(parents=True, exist_ok=True)

    with _fs_errors("list", src):
        entries = sorted(os.scandir(src), key=lambda e: e.name)

    for entry in entries:
        rel = f"{_prefix}{entry.name}"
        is_dir = entry.is_dir(follow_symlinks=False)
        if ignore is not None and ignore(rel, is_dir):
            continue
        target = dst / entry.name
        if is_dir:
            written.extend(
                copy_tree(
                    Path(entry.path),
                    target,
                    overwrite=overwrite,
                    ignore=ignore,
                    chunk_size=chunk_size,
                    large_file_threshold=large_file_threshold,
                    _prefix=f"{rel}/",
                )
            )
            continue
        if path_kind(target) is not None and not overwrite:
            continue
        copy_file(
            Path(entry.path),
            target,
            chunk_size=chunk_size,
            large_file_threshold=large_file_threshold,
        )
        written.append(rel)
    return written


def remove_path(path: Path) -> bool:
    """Remove a file, symlink or directory tree.  Returns ``False`` if absent."""
    kind = path_kind(path)
    if kind is None:
        return False
    with _fs_errors("remove", path):
        if kind == "directory":
            shutil.rmtree(path)
        else:
            path.unlink()
    return True


def make_directory(path: Path) -> None:
    with _fs_errors("create directory", path):
        path.mkdir(parents=True, exist_ok=True)

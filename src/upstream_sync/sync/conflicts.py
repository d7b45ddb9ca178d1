"""Conflict records.

One frozen pydantic model per conflict kind, combined into the tagged union
``Conflict`` (discriminated on ``kind``).  Every record exposes
``resolve(strategy, ctx)``: ``keep-target`` is always a no-op,
``use-source`` propagates the source's state onto the target, and
``auto-merge`` is only meaningful for text ``content`` conflicts.
``prompt-user`` never reaches a record; the resolver turns it into a
concrete strategy first.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from upstream_sync.errors import SyncError
from upstream_sync.file_handler import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_LARGE_FILE_THRESHOLD,
    PathKind,
    copy_file,
    copy_tree,
    path_kind,
    read_file_with_encoding,
    remove_path,
    set_mode,
    write_file,
    write_symlink,
)
from upstream_sync.sync.merger import attempt_merge, reconcile_lines
from upstream_sync.sync.models import ResolutionOutcome, ResolutionStrategy

logger = logging.getLogger(__name__)


@dataclass
class ResolutionContext:
    """Knobs shared by every resolution in one run.

    Attributes:
        text_extensions: Extensions eligible for ``auto-merge``.
        base_provider: Returns the common-ancestor text for a target path,
            enabling a true three-way merge.
    """

    chunk_size: int = DEFAULT_CHUNK_SIZE
    large_file_threshold: int = DEFAULT_LARGE_FILE_THRESHOLD
    text_extensions: frozenset[str] = field(default_factory=frozenset)
    base_provider: Callable[[Path], str | None] | None = None

    def copy(self, src: Path, dst: Path) -> None:
        copy_file(
            src,
            dst,
            chunk_size=self.chunk_size,
            large_file_threshold=self.large_file_threshold,
        )


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class ConflictBase(BaseModel):
    source: Path
    target: Path

    model_config = {"frozen": True}

    def apply_source(self, ctx: ResolutionContext) -> None:
        """Make the target reflect the source along this conflict's dimension."""
        raise NotImplementedError

    def auto_merge(self, ctx: ResolutionContext) -> tuple[bool, str | None]:
        return False, f"auto-merge is not supported for {self.kind} conflicts"  # type: ignore[attr-defined]

    def resolve(
        self, strategy: ResolutionStrategy, ctx: ResolutionContext
    ) -> ResolutionOutcome:
        """Apply a concrete strategy and report the outcome.

        Filesystem failures are reported as an unsuccessful outcome rather
        than raised, so one bad record never stops a batch.
        """
        success, message = True, None
        try:
            match strategy:
                case ResolutionStrategy.KEEP_TARGET:
                    pass
                case ResolutionStrategy.USE_SOURCE:
                    self.apply_source(ctx)
                case ResolutionStrategy.AUTO_MERGE:
                    success, message = self.auto_merge(ctx)
                case _:
                    success, message = False, f"strategy {strategy.value} cannot be applied directly"
        except SyncError as exc:
            success, message = False, exc.message
        return ResolutionOutcome(
            kind=self.kind,  # type: ignore[attr-defined]
            source=str(self.source),
            target=str(self.target),
            strategy=strategy,
            success=success,
            message=message,
        )


# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------


class ContentConflict(ConflictBase):
    """Both sides are regular files with different bytes."""

    kind: Literal["content"] = "content"
    source_digest: str
    target_digest: str

    def apply_source(self, ctx: ResolutionContext) -> None:
        ctx.copy(self.source, self.target)

    def auto_merge(self, ctx: ResolutionContext) -> tuple[bool, str | None]:
        if self.target.suffix.lower() not in ctx.text_extensions:
            return False, "auto-merge only applies to text files"
        source_text, _ = read_file_with_encoding(self.source)
        target_text, encoding = read_file_with_encoding(self.target)
        base = ctx.base_provider(self.target) if ctx.base_provider else None
        if base is not None:
            merged, conflicted = attempt_merge(base, source_text, target_text)
        else:
            merged, conflicted = reconcile_lines(source_text, target_text)
        write_file(self.target, merged, encoding)
        if conflicted:
            return False, "conflict markers written to target"
        return True, None


class TypeConflict(ConflictBase):
    """One side is a directory, the other a file."""

    kind: Literal["type"] = "type"
    source_type: PathKind
    target_type: PathKind

    def apply_source(self, ctx: ResolutionContext) -> None:
        remove_path(self.target)
        if path_kind(self.source) == "directory":
            copy_tree(
                self.source,
                self.target,
                chunk_size=ctx.chunk_size,
                large_file_threshold=ctx.large_file_threshold,
            )
        else:
            ctx.copy(self.source, self.target)


class RenameConflict(ConflictBase):
    """The source's new file carries the same bytes as a target file that
    exists under another name.

    ``target`` is the existing (old-name) target file; ``renamed_to`` is
    where the source's name maps in the target tree.
    """

    kind: Literal["rename"] = "rename"
    digest: str
    renamed_to: Path

    def apply_source(self, ctx: ResolutionContext) -> None:
        ctx.copy(self.source, self.renamed_to)
        remove_path(self.target)


class VersionConflict(ConflictBase):
    kind: Literal["version"] = "version"
    source_version: str
    target_version: str

    def apply_source(self, ctx: ResolutionContext) -> None:
        ctx.copy(self.source, self.target)


class PermissionConflict(ConflictBase):
    """Identical content, different permission bits."""

    kind: Literal["permission"] = "permission"
    source_mode: int
    target_mode: int

    def apply_source(self, ctx: ResolutionContext) -> None:
        set_mode(self.target, self.source_mode)

    @property
    def modes(self) -> tuple[str, str]:
        return oct(self.source_mode), oct(self.target_mode)


class LockConflict(ConflictBase):
    """The target differs from the source and is held by a lock file."""

    kind: Literal["lock"] = "lock"
    lock_path: Path
    owner: str = "unknown"
    timestamp: str | None = None
    pid: int | None = None

    def apply_source(self, ctx: ResolutionContext) -> None:
        logger.warning(
            "Breaking lock on %s held by %s (pid %s)", self.target, self.owner, self.pid
        )
        remove_path(self.lock_path)
        ctx.copy(self.source, self.target)


class SymlinkConflict(ConflictBase):
    """At least one side is a symlink and the two sides disagree.

    A ``None`` link means that side is not a symlink.
    """

    kind: Literal["symlink"] = "symlink"
    source_link: str | None = None
    target_link: str | None = None

    def apply_source(self, ctx: ResolutionContext) -> None:
        if self.source_link is not None:
            write_symlink(self.target, self.source_link)
            return
        remove_path(self.target)
        if path_kind(self.source) == "directory":
            copy_tree(self.source, self.target)
        else:
            ctx.copy(self.source, self.target)


Conflict = Annotated[
    Union[
        ContentConflict,
        TypeConflict,
        RenameConflict,
        VersionConflict,
        PermissionConflict,
        LockConflict,
        SymlinkConflict,
    ],
    Field(discriminator="kind"),
]

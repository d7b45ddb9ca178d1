"""Pydantic models shared by the sync modules.

- ``ResolutionStrategy``: how a conflict is resolved.
- ``ResolutionOutcome``: result of resolving one conflict.
- ``ChangeKind`` / ``DiffEntry`` / ``DiffPreview``: staging-vs-target listing.
- ``MappingResult`` / ``SyncReport``: aggregate results for one run.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from upstream_sync.release.models import ReleasePlan


class ResolutionStrategy(str, Enum):
    USE_SOURCE = "use-source"
    KEEP_TARGET = "keep-target"
    AUTO_MERGE = "auto-merge"
    PROMPT_USER = "prompt-user"


class ResolutionOutcome(BaseModel):
    """Outcome of resolving one conflict record.

    Attributes:
        kind: Conflict kind that was resolved.
        source: Source path.
        target: Target path.
        strategy: Concrete strategy applied (never ``prompt-user``).
        success: ``False`` when the conflict is still open afterwards.
        message: Short explanation, mostly for failures.
    """

    kind: str
    source: str
    target: str
    strategy: ResolutionStrategy | None = None
    success: bool
    message: str | None = None

    model_config = {"frozen": True}


class ChangeKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"
    TYPE_CHANGED = "type-changed"


class DiffEntry(BaseModel):
    path: str
    change: ChangeKind

    model_config = {"frozen": True}


class DiffPreview(BaseModel):
    """Symmetric-difference listing for one mapping."""

    mapping: str
    entries: list[DiffEntry] = Field(default_factory=list)

    model_config = {"frozen": True}

    def of_kind(self, change: ChangeKind) -> list[DiffEntry]:
        return [e for e in self.entries if e.change == change]

    @property
    def is_empty(self) -> bool:
        return not self.entries


class MappingResult(BaseModel):
    """What happened to one directory mapping during apply-changes.

    ``unresolved`` lists mapping-relative paths whose upstream content was
    not applied because their conflict stayed open.
    """

    source: str
    target: str
    conflicts: int = 0
    resolved: int = 0
    copied: list[str] = Field(default_factory=list)
    unresolved: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class SyncReport(BaseModel):
    """Aggregate report for one sync run.

    Attributes:
        session_id: Identifier of the run (temp branch suffix).
        preview_only: The run stopped after preview-diff.
        staged_files: Files copied into staging (incremental mode counts
            only changed ones).
        previews: One preview per mapping.
        mappings: Per-mapping apply results.
        outcomes: Every conflict resolution.
        commit: Commit hash, if a commit was made.
        pushed: Whether the push stage ran successfully.
        release: Gray or full release plan, when one replaced apply-changes.
        timings: Seconds spent per stage.
        started_at / completed_at: ISO 8601 timestamps.
    """

    session_id: str
    preview_only: bool = False
    staged_files: int = 0
    previews: list[DiffPreview] = Field(default_factory=list)
    mappings: list[MappingResult] = Field(default_factory=list)
    outcomes: list[ResolutionOutcome] = Field(default_factory=list)
    commit: str | None = None
    pushed: bool = False
    release: ReleasePlan | None = None
    timings: dict[str, float] = Field(default_factory=dict)
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    @property
    def unresolved(self) -> list[ResolutionOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def copied_count(self) -> int:
        return sum(len(m.copied) for m in self.mappings)

    def summary(self) -> str:
        lines = [
            f"Sync {self.session_id}" + (" (preview only)" if self.preview_only else ""),
            f"  Staged files:   {self.staged_files}",
            f"  Copied files:   {self.copied_count}",
            f"  Conflicts:      {len(self.outcomes)}",
            f"  Unresolved:     {len(self.unresolved)}",
            f"  Commit:         {self.commit or '-'}",
            f"  Pushed:         {'yes' if self.pushed else 'no'}",
        ]
        return "\n".join(lines)

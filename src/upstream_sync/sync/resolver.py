"""Conflict detection and resolution.

``ConflictResolver`` classifies divergences between a source tree (the
staged upstream content) and a target tree (the live working copy) and
resolves them with a ``ResolutionStrategy``.

Detection for one pair, in order:

1. either side absent -> no conflict;
2. either side a symlink -> ``symlink`` conflict when they disagree;
3. file vs directory -> ``type`` conflict;
4. two directories -> no conflict (contents are compared by the walk);
5. two regular files with equal digests -> ``permission`` conflict if
   enabled and the mode bits differ, otherwise nothing;
6. unequal digests -> ``lock`` if the target is locked, ``version`` if the
   version source tells them apart, otherwise ``content``.

The directory walk adds ``rename`` conflicts: a new source file whose bytes
match a target file that has no source counterpart.  When the source
directory holds only part of the source tree (incremental staging), the
caller passes the full source listing so that unchanged files are not
mistaken for orphans.

Prompting goes through an injectable ``DecisionSource`` so the resolver
itself never reads stdin.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Collection, Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, TypeAdapter

from upstream_sync.config_schema import ConflictConfig
from upstream_sync.errors import FilesystemError
from upstream_sync.file_handler import (
    file_mode,
    path_kind,
    read_file_with_encoding,
    read_symlink,
)
from upstream_sync.sync.conflicts import (
    Conflict,
    ContentConflict,
    LockConflict,
    PermissionConflict,
    RenameConflict,
    ResolutionContext,
    SymlinkConflict,
    TypeConflict,
    VersionConflict,
)
from upstream_sync.sync.hasher import HashEngine
from upstream_sync.sync.ignore import IgnoreRules
from upstream_sync.sync.merger import generate_diff
from upstream_sync.sync.models import ResolutionOutcome, ResolutionStrategy
from upstream_sync.sync.versions import VersionSource, create_version_source

logger = logging.getLogger(__name__)

PREVIEW_DIFF_LINES = 20
LOCK_SUFFIX = ".lock"

_conflict_adapter: TypeAdapter[Conflict] = TypeAdapter(Conflict)


# ---------------------------------------------------------------------------
# Prompting protocol
# ---------------------------------------------------------------------------


class ConflictPreview(BaseModel):
    """What an operator sees before choosing a strategy."""

    kind: str
    source: str
    target: str
    source_digest: str | None = None
    target_digest: str | None = None
    detail: str | None = None
    diff: str | None = None

    model_config = {"frozen": True}


class DecisionSource(Protocol):
    """Supplies a concrete strategy for a ``prompt-user`` resolution.

    Returning ``None`` leaves the conflict unresolved.
    """

    def choose(self, preview: ConflictPreview) -> ResolutionStrategy | None: ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ConflictResolver:
    """Detect and resolve conflicts for one sync run.

    Args:
        config: Conflict settings.
        engine: Hash engine used for content comparison.
        decisions: Answers ``prompt-user`` resolutions; ``None`` means
            non-interactive.
        version_source: Overrides the one built from
            ``config.version_pattern``.
        context: Copy and merge settings for resolutions.
        log_path: JSON-lines resolution log, written when
            ``config.log_resolutions`` is set.
    """

    def __init__(
        self,
        config: ConflictConfig,
        engine: HashEngine,
        decisions: DecisionSource | None = None,
        version_source: VersionSource | None = None,
        context: ResolutionContext | None = None,
        log_path: Path | None = None,
    ) -> None:
        self.config = config
        self.engine = engine
        self.decisions = decisions
        self.versions = version_source or create_version_source(config.version_pattern)
        self.context = context or ResolutionContext(
            text_extensions=frozenset(config.text_extensions)
        )
        self.log_path = log_path if config.log_resolutions else None
        self.outcomes: list[ResolutionOutcome] = []
        self._memo: dict[tuple[Path, Path], list[Conflict]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Detection: single pair
    # ------------------------------------------------------------------

    def detect_file_conflict(self, source: Path, target: Path) -> Conflict | None:
        """Classify the divergence between *source* and *target*, if any."""
        sk, tk = path_kind(source), path_kind(target)
        if sk is None or tk is None:
            return None

        if "symlink" in (sk, tk):
            s_link = read_symlink(source) if sk == "symlink" else None
            t_link = read_symlink(target) if tk == "symlink" else None
            if s_link == t_link:
                return None
            return SymlinkConflict(
                source=source, target=target, source_link=s_link, target_link=t_link
            )

        if (sk == "directory") != (tk == "directory"):
            return TypeConflict(
                source=source, target=target, source_type=sk, target_type=tk
            )
        if sk == "directory":
            return None

        source_digest = self.engine.hash_file(source)
        target_digest = self.engine.hash_file(target)

        if source_digest == target_digest:
            if self.config.check_permissions:
                s_mode, t_mode = file_mode(source), file_mode(target)
                if s_mode != t_mode:
                    return PermissionConflict(
                        source=source, target=target, source_mode=s_mode, target_mode=t_mode
                    )
            return None

        lock = self._read_lock(source, target)
        if lock is not None:
            return lock

        s_version = self.versions.version_of(source)
        t_version = self.versions.version_of(target)
        if s_version and t_version and s_version != t_version:
            return VersionConflict(
                source=source,
                target=target,
                source_version=s_version,
                target_version=t_version,
            )

        return ContentConflict(
            source=source,
            target=target,
            source_digest=source_digest,
            target_digest=target_digest,
        )

    def _read_lock(self, source: Path, target: Path) -> LockConflict | None:
        lock_path = target.with_name(target.name + LOCK_SUFFIX)
        if not lock_path.is_file():
            return None
        fields: dict = {}
        try:
            data = json.loads(lock_path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                fields = {
                    k: data[k] for k in ("owner", "timestamp", "pid") if data.get(k) is not None
                }
                if "owner" in fields:
                    fields["owner"] = str(fields["owner"])
                if "timestamp" in fields:
                    fields["timestamp"] = str(fields["timestamp"])
                if "pid" in fields and not str(fields["pid"]).isdigit():
                    del fields["pid"]
        except (OSError, ValueError) as exc:
            logger.debug("Unparsable lock file %s: %s", lock_path, exc)
        return LockConflict(source=source, target=target, lock_path=lock_path, **fields)

    # ------------------------------------------------------------------
    # Detection: directory walk
    # ------------------------------------------------------------------

    def _walk(
        self, source_dir: Path, target_dir: Path, rules: IgnoreRules
    ) -> tuple[list[str], list[str]]:
        """Relative paths present on both sides, and source-only files.

        Source-only directories are walked too, so files in a new directory
        are candidates for rename detection like any other new file.
        """
        both: list[str] = []
        added: list[str] = []
        for dirpath, dirnames, filenames in os.walk(source_dir):
            rel_dir = Path(dirpath).relative_to(source_dir).as_posix()
            prefix = "" if rel_dir == "." else f"{rel_dir}/"
            descend = []
            for name in dirnames:
                rel = f"{prefix}{name}"
                if rules.matches(rel, is_dir=True):
                    continue
                sk = path_kind(Path(dirpath) / name)
                tk = path_kind(target_dir / rel)
                if tk is None:
                    if sk == "directory":
                        descend.append(name)
                    continue
                if sk == "directory" and tk == "directory":
                    descend.append(name)
                else:
                    both.append(rel)
            dirnames[:] = descend
            for name in filenames:
                rel = f"{prefix}{name}"
                if rules.matches(rel):
                    continue
                if path_kind(target_dir / rel) is None:
                    added.append(rel)
                else:
                    both.append(rel)
        return both, added

    def _target_only_files(
        self,
        source_dir: Path,
        target_dir: Path,
        rules: IgnoreRules,
        source_files: Collection[str] | None = None,
    ) -> list[str]:
        """Target files with no counterpart in the source tree.

        With *source_files* the check is against that listing rather than
        against what exists in *source_dir*.
        """

        def _in_source(rel: str) -> bool:
            if source_files is not None:
                return rel in source_files
            return path_kind(source_dir / rel) is not None

        found: list[str] = []
        if not target_dir.is_dir():
            return found
        for dirpath, dirnames, filenames in os.walk(target_dir):
            rel_dir = Path(dirpath).relative_to(target_dir).as_posix()
            prefix = "" if rel_dir == "." else f"{rel_dir}/"
            dirnames[:] = [
                d for d in dirnames if not rules.matches(f"{prefix}{d}", is_dir=True)
            ]
            for name in filenames:
                rel = f"{prefix}{name}"
                if name.endswith(LOCK_SUFFIX) or rules.matches(rel):
                    continue
                if path_kind(Path(dirpath) / name) != "file":
                    continue
                if not _in_source(rel):
                    found.append(rel)
        return found

    def _detect_renames(
        self,
        source_dir: Path,
        target_dir: Path,
        added: list[str],
        rules: IgnoreRules,
        source_files: Collection[str] | None = None,
    ) -> list[Conflict]:
        orphans = self._target_only_files(source_dir, target_dir, rules, source_files)
        if not orphans or not added:
            return []
        by_digest: dict[str, list[str]] = {}
        for rel in orphans:
            by_digest.setdefault(self.engine.hash_file(target_dir / rel), []).append(rel)

        renames: list[Conflict] = []
        for rel in sorted(added):
            src = source_dir / rel
            if path_kind(src) != "file":
                continue
            candidates = by_digest.get(self.engine.hash_file(src))
            if not candidates:
                continue
            old = candidates.pop(0)
            renames.append(
                RenameConflict(
                    source=src,
                    target=target_dir / old,
                    digest=self.engine.hash_file(src),
                    renamed_to=target_dir / rel,
                )
            )
        return renames

    async def detect_directory_conflicts(
        self,
        source_dir: Path,
        target_dir: Path,
        ignore: IgnoreRules | Iterable[str] | None = None,
        source_files: Collection[str] | None = None,
    ) -> list[Conflict]:
        """All conflicts between two trees.

        Args:
            source_dir: Source tree, possibly only the changed part of it.
            target_dir: Live target tree.
            ignore: Ignore rules or raw patterns.
            source_files: Every relative path of the complete source tree.
                Required for correct rename detection when *source_dir*
                is a partial copy.

        Results are memoized per (source, target) for the lifetime of the
        resolver, i.e. one run.
        """
        key = (source_dir.resolve(), target_dir.resolve())
        if key in self._memo:
            return self._memo[key]

        rules = ignore if isinstance(ignore, IgnoreRules) else IgnoreRules(ignore or ())
        conflicts: list[Conflict] = []
        if source_dir.is_dir() and target_dir.exists():
            pool = self.engine.pool
            both, added = await pool.run(self._walk, source_dir, target_dir, rules)
            found = await pool.map(
                lambda rel: self.detect_file_conflict(source_dir / rel, target_dir / rel),
                both,
            )
            conflicts = [c for c in found if c is not None]
            if self.config.detect_renames:
                conflicts.extend(
                    await pool.run(
                        self._detect_renames, source_dir, target_dir, added, rules, source_files
                    )
                )

        logger.debug(
            "Detected %d conflicts between %s and %s", len(conflicts), source_dir, target_dir
        )
        self._memo[key] = conflicts
        return conflicts

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def effective_strategy(
        self, conflict: Conflict, override: ResolutionStrategy | None = None
    ) -> ResolutionStrategy:
        """Override, else default, except auto-resolve extensions always use
        the default (and never prompt)."""
        default = ResolutionStrategy(self.config.default_strategy)
        if conflict.source.suffix.lower() in self.config.auto_resolve_types:
            if default == ResolutionStrategy.PROMPT_USER:
                return ResolutionStrategy(self.config.auto_resolve_strategy)
            return default
        return override or default

    def preview(self, conflict: Conflict) -> ConflictPreview:
        """Digests, a short description and (for text) a truncated diff."""
        source_digest = target_digest = detail = diff = None
        match conflict:
            case ContentConflict():
                source_digest, target_digest = conflict.source_digest, conflict.target_digest
                if conflict.target.suffix.lower() in self.context.text_extensions:
                    try:
                        old, _ = read_file_with_encoding(conflict.target)
                        new, _ = read_file_with_encoding(conflict.source)
                        diff = generate_diff(old, new, max_lines=PREVIEW_DIFF_LINES)
                    except FilesystemError as exc:
                        logger.debug("No diff preview for %s: %s", conflict.target, exc)
            case TypeConflict():
                detail = f"source is a {conflict.source_type}, target is a {conflict.target_type}"
            case RenameConflict():
                detail = f"target has the same content at {conflict.target.name}"
                source_digest = target_digest = conflict.digest
            case VersionConflict():
                detail = f"version {conflict.source_version} vs {conflict.target_version}"
            case PermissionConflict():
                detail = "mode {} vs {}".format(*conflict.modes)
            case LockConflict():
                detail = f"locked by {conflict.owner} (pid {conflict.pid}, since {conflict.timestamp})"
            case SymlinkConflict():
                detail = f"link {conflict.source_link} vs {conflict.target_link}"
        return ConflictPreview(
            kind=conflict.kind,
            source=str(conflict.source),
            target=str(conflict.target),
            source_digest=source_digest,
            target_digest=target_digest,
            detail=detail,
            diff=diff,
        )

    def resolve_conflict(
        self, conflict: Conflict, strategy_override: ResolutionStrategy | None = None
    ) -> ResolutionOutcome:
        """Resolve one conflict and record the outcome."""
        strategy = self.effective_strategy(conflict, strategy_override)

        if strategy == ResolutionStrategy.PROMPT_USER:
            choice = self.decisions.choose(self.preview(conflict)) if self.decisions else None
            if choice is None or choice == ResolutionStrategy.PROMPT_USER:
                reason = "no decision source" if self.decisions is None else "skipped by user"
                outcome = ResolutionOutcome(
                    kind=conflict.kind,
                    source=str(conflict.source),
                    target=str(conflict.target),
                    strategy=None,
                    success=False,
                    message=f"unresolved: {reason}",
                )
                return self._record(outcome)
            return self.resolve_conflict(conflict, choice)

        outcome = conflict.resolve(strategy, self.context)
        if outcome.success:
            logger.info(
                "Resolved %s conflict on %s with %s", conflict.kind, conflict.target, strategy.value
            )
        else:
            logger.warning(
                "Could not resolve %s conflict on %s with %s: %s",
                conflict.kind,
                conflict.target,
                strategy.value,
                outcome.message,
            )
        return self._record(outcome)

    def resolve_conflicts(
        self,
        conflicts: Iterable[Conflict],
        strategy_override: ResolutionStrategy | None = None,
    ) -> int:
        """Resolve every record independently.  Returns the success count."""
        conflicts = list(conflicts)
        resolved = sum(
            1 for c in conflicts if self.resolve_conflict(c, strategy_override).success
        )
        if resolved < len(conflicts):
            logger.warning(
                "%d of %d conflicts left unresolved", len(conflicts) - resolved, len(conflicts)
            )
        return resolved

    def _record(self, outcome: ResolutionOutcome) -> ResolutionOutcome:
        with self._lock:
            self.outcomes.append(outcome)
            if self.log_path is not None:
                entry = {"ts": datetime.now(timezone.utc).isoformat(), **outcome.model_dump(mode="json")}
                try:
                    self.log_path.parent.mkdir(parents=True, exist_ok=True)
                    with open(self.log_path, "a", encoding="utf-8") as fh:
                        fh.write(json.dumps(entry) + "\n")
                except OSError as exc:
                    logger.warning("Could not write resolution log %s: %s", self.log_path, exc)
        return outcome


def conflict_from_dict(data: dict) -> Conflict:
    """Rebuild a conflict record from ``model_dump()`` output."""
    return _conflict_adapter.validate_python(data)

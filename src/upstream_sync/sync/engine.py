"""Sync orchestrator: the end-to-end pull -> diff -> apply -> commit pipeline.

Stages run strictly in order, each numbered and timed by the session:

1. configure-remote -- add or update the upstream remote (credentials
   embedded for ``user-pass`` / ``token`` auth).
2. fetch-upstream -- ``git fetch``, wrapped in the retry policy.
3. establish-branch-strategy -- optional working branch.
4. create-temp-branch -- check out ``temp-sync-<id>`` at the upstream head.
5. copy-to-staging -- hash each mapped upstream directory and copy it
   (fully with ``force_overwrite``, otherwise only files whose digest
   differs from the persisted HashIndex) into the staging directory, then
   check the target branch back out.
6. preview-diff -- added / removed / changed / type-changed listing, with
   operator confirmation in interactive mode.  Preview-only runs stop here.
7. apply-changes -- per mapping: detect and resolve conflicts, copy staging
   into the target without overwriting, stage the result.  In gray or
   full release mode this stage is replaced by the release manager.
8. commit -- only when something is staged; the updated HashIndex is
   persisted here, so a cancelled or failed run keeps the previous one.
   Entries for upstream files that did not reach the target (an open
   conflict, or a file a gray release did not select) keep their previous
   digest, so the next incremental run stages them again.
9. push -- only when configured and a commit was made; retried.
10. cleanup -- always; releases the temp branch and staging directory.

Any stage failure aborts the rest of the pipeline.  Partial application
of some mappings counts as a failed run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Literal

from upstream_sync.config_schema import SyncConfig
from upstream_sync.core.async_utils import WorkerPool, adaptive_limit, gather_all, run_sync
from upstream_sync.core.git import GitClient, embed_credentials
from upstream_sync.errors import (
    ConfigError,
    FilesystemError,
    SyncError,
    SyncProcessError,
    UserCancelled,
)
from upstream_sync.file_handler import copy_file, copy_tree, path_kind, read_symlink
from upstream_sync.retry import with_retry
from upstream_sync.sync.branching import BranchStrategyManager
from upstream_sync.sync.cache import TreeHashCache
from upstream_sync.sync.conflicts import RenameConflict, ResolutionContext
from upstream_sync.sync.hasher import HashEngine
from upstream_sync.sync.ignore import IgnoreRules
from upstream_sync.sync.mapper import MappedDirectory, PathMapper
from upstream_sync.sync.models import (
    ChangeKind,
    DiffEntry,
    DiffPreview,
    MappingResult,
    ResolutionStrategy,
    SyncReport,
)
from upstream_sync.sync.resolver import ConflictResolver, DecisionSource
from upstream_sync.sync.session import SyncSession
from upstream_sync.sync.state import HashIndexStore

if TYPE_CHECKING:
    from upstream_sync.release.manager import GrayReleaseManager
    from upstream_sync.release.models import ReleasePlan

logger = logging.getLogger(__name__)

# Receives the previews; returns False to cancel the run.
ConfirmCallback = Callable[[list[DiffPreview]], bool]


def revert_entries(index: dict[str, str], previous: dict[str, str], paths: list[str]) -> int:
    """Give each path, and every key below it, its *previous* digest back.

    Keys absent from *previous* are dropped.  Returns how many entries
    actually changed.
    """
    exact = set(paths)
    # Only paths that are not keys themselves can be directories.
    prefixes = tuple(f"{p}/" for p in exact if p not in index)
    changed = 0
    for key in list(index):
        if key not in exact and not key.startswith(prefixes):
            continue
        if key not in previous:
            del index[key]
            changed += 1
        elif index[key] != previous[key]:
            index[key] = previous[key]
            changed += 1
    return changed


class SyncOrchestrator:
    """Run one sync session against a repository.

    Args:
        config: Effective sync configuration.
        git: Version-control client for the local repository.
        repo_root: Working tree root (defaults to ``git.working_dir``).
        decisions: Answers ``prompt-user`` conflicts in interactive mode.
        confirm: Approves the diff preview in interactive mode.
        sleep: Injected into the retry policy (tests).
        session_id: Fixed session id (tests, webhook correlation).
        release_mode: ``apply`` runs apply-changes; ``gray`` and ``full``
            hand the staged tree to the gray release manager instead.
        release_manager: Overrides the manager built from *config*.
    """

    def __init__(
        self,
        config: SyncConfig,
        git: GitClient,
        repo_root: Path | None = None,
        decisions: DecisionSource | None = None,
        confirm: ConfirmCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
        session_id: str | None = None,
        release_mode: Literal["apply", "gray", "full"] = "apply",
        release_manager: GrayReleaseManager | None = None,
    ) -> None:
        if not config.upstream_repo:
            raise ConfigError("upstream_repo is required to run a sync")
        self.config = config
        self.git = git
        self.repo_root = repo_root or git.working_dir
        self.interactive = not config.non_interactive
        self.decisions = decisions if self.interactive else None
        self.confirm = confirm if self.interactive else None
        self.sleep = sleep
        self.session_id = session_id
        self.release_mode = release_mode
        self.release_manager = release_manager

        self.index_store = HashIndexStore(self.repo_root / config.state_dir)
        self.cache: TreeHashCache | None = None
        if config.cache.enabled:
            self.cache = TreeHashCache(
                self.repo_root / config.cache.dir, config.cache.expiry_days
            )
        self.rules = IgnoreRules.for_root(
            self.repo_root, [*config.ignore_patterns, f"**/{config.state_dir}/**"]
        )
        self.last_session: SyncSession | None = None

    def effective_concurrency(self) -> int:
        if self.config.adaptive_concurrency:
            return adaptive_limit(self.config.concurrency_limit)
        return self.config.concurrency_limit

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self) -> SyncReport:
        """Synchronous wrapper around ``run_async``."""
        return asyncio.run(self.run_async())

    async def run_async(self) -> SyncReport:
        """Execute every stage and return the report.

        Raises:
            SyncError: The failing stage's error (non-taxonomy exceptions
                are wrapped in ``SyncProcessError``).  Cleanup has already
                run when this propagates.
        """
        cfg = self.config
        session = SyncSession(
            upstream_url=embed_credentials(cfg.upstream_repo or "", cfg.auth),
            upstream_branch=cfg.upstream_branch,
            target_branch=cfg.target_branch,
            concurrency=self.effective_concurrency(),
            session_id=self.session_id,
        )
        self.last_session = session
        logger.info(
            "Starting sync %s: %s@%s -> %s (%d mappings, concurrency %d)",
            session.session_id,
            cfg.remote_name,
            cfg.upstream_branch,
            cfg.target_branch,
            len(cfg.mappings),
            session.concurrency,
        )
        try:
            return await self._pipeline(session)
        except SyncError:
            raise
        except Exception as exc:
            raise SyncProcessError(
                f"Sync failed during {session.current_stage}",
                cause=exc,
                context={"stage": session.current_stage, "session": session.session_id},
            ) from exc
        finally:
            with session.stage("cleanup"):
                errors = session.close()
            if errors:
                logger.warning("Cleanup finished with %d warnings", len(errors))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _pipeline(self, session: SyncSession) -> SyncReport:
        cfg = self.config
        pool = WorkerPool(session.concurrency)
        engine = HashEngine(pool=pool, cache=self.cache)
        context = ResolutionContext(
            chunk_size=cfg.chunk_size,
            large_file_threshold=cfg.large_file_threshold,
            text_extensions=frozenset(cfg.conflict.text_extensions),
        )
        resolver = ConflictResolver(
            cfg.conflict,
            engine,
            decisions=self.decisions,
            context=context,
            log_path=self.repo_root / cfg.conflict.resolution_log,
        )

        with session.stage("configure-remote"):
            await run_sync(self.git.configure_remote, cfg.remote_name, session.upstream_url)

        with session.stage("fetch-upstream"):
            await run_sync(
                with_retry,
                lambda: self.git.fetch(cfg.remote_name, cfg.upstream_branch),
                cfg.retry,
                description=f"fetch {cfg.remote_name}/{cfg.upstream_branch}",
                sleep=self.sleep,
            )

        if cfg.branch_strategy.enable:
            with session.stage("establish-branch-strategy"):
                manager = BranchStrategyManager(self.git, cfg.branch_strategy)
                session.target_branch = await run_sync(manager.establish)
                session.register_cleanup(f"finish branch {manager.branch_name}", manager.finish)

        with session.stage("create-temp-branch"):
            await run_sync(
                self.git.checkout_new_branch,
                session.temp_branch,
                f"{cfg.remote_name}/{cfg.upstream_branch}",
            )
            session.register_cleanup(
                f"delete temp branch {session.temp_branch}",
                lambda: self._release_temp_branch(session),
            )

        mapper = PathMapper(self.repo_root, session.create_staging_dir())
        mapped = mapper.resolve_all(cfg.mappings)

        with session.stage("copy-to-staging"):
            previous = await run_sync(self.index_store.load)
            index, listings = await self._copy_to_staging(session, engine, mapped, previous)
            await run_sync(self.git.checkout, session.target_branch)

        with session.stage("preview-diff"):
            previews = await gather_all([self._preview(engine, m) for m in mapped])
            self._confirm(previews)

        if cfg.preview_only:
            logger.info("Preview only: stopping before apply; hash index not persisted")
            return self._report(session, previews=previews, preview_only=True)

        results: list[MappingResult] = []
        release = None
        if self.release_mode == "apply":
            with session.stage("apply-changes"):
                results = await gather_all(
                    [self._apply(resolver, m, listings[m.mapping.target_path]) for m in mapped]
                )
        else:
            with session.stage(f"{self.release_mode}-release"):
                release = await run_sync(self._release, mapper.staging_root)
                for m in mapped:
                    await run_sync(self.git.add, m.mapping.target_path)

        commit: str | None = None
        with session.stage("commit"):
            staged = await run_sync(self.git.status, True)
            if staged:
                commit = await run_sync(self.git.commit, cfg.commit_message)
                logger.info("Committed %d staged paths as %s", len(staged), commit[:12])
            else:
                logger.info("Nothing to commit")
            self._hold_back_unapplied(index, previous, mapped, results, release)
            await run_sync(self.index_store.save, index)

        pushed = False
        if cfg.auto_push and commit:
            with session.stage("push"):
                await run_sync(
                    with_retry,
                    lambda: self.git.push(cfg.push_remote, session.target_branch),
                    cfg.retry,
                    description=f"push {cfg.push_remote}/{session.target_branch}",
                    sleep=self.sleep,
                )
                pushed = True

        return self._report(
            session,
            previews=previews,
            mappings=results,
            release=release,
            outcomes=resolver.outcomes,
            commit=commit,
            pushed=pushed,
        )

    def _release(self, staging_root: Path) -> ReleasePlan:
        from upstream_sync.release.manager import GrayReleaseManager

        manager = self.release_manager or GrayReleaseManager(self.config, self.repo_root)
        if self.release_mode == "gray":
            return manager.execute_canary_release(staging_root)
        return manager.full_release(staging_root)

    def _release_temp_branch(self, session: SyncSession) -> None:
        if self.git.current_branch() == session.temp_branch:
            self.git.checkout(session.target_branch)
        self.git.delete_local_branch(session.temp_branch)

    # ------------------------------------------------------------------
    # copy-to-staging
    # ------------------------------------------------------------------

    async def _copy_to_staging(
        self,
        session: SyncSession,
        engine: HashEngine,
        mapped: list[MappedDirectory],
        previous: dict[str, str],
    ) -> tuple[dict[str, str], dict[str, frozenset[str]]]:
        """Stage upstream files.

        Returns:
            The HashIndex updated with every upstream digest, and each
            mapping's complete upstream listing (symlinks included) keyed
            by target path.
        """
        mapped_prefixes = tuple(f"{m.mapping.target_path}/" for m in mapped)
        index = {k: v for k, v in previous.items() if not k.startswith(mapped_prefixes)}
        listings: dict[str, frozenset[str]] = {}

        async def _one(m: MappedDirectory) -> None:
            if path_kind(m.upstream) != "directory":
                raise FilesystemError(
                    f"Upstream directory not found: {m.mapping.source}",
                    context={"mapping": m.label},
                )
            entries = await engine.pool.run(
                engine.list_files, m.upstream, self.rules, True
            )
            digests = await engine.hash_tree(m.upstream, self.rules, files=entries)
            listings[m.mapping.target_path] = frozenset(entries)
            if self.config.force_overwrite:
                wanted = entries
            else:
                wanted = [
                    rel
                    for rel in entries
                    if rel not in digests or previous.get(m.index_key(rel)) != digests[rel]
                ]
            await engine.pool.map(
                lambda rel: copy_file(
                    m.upstream / rel,
                    m.staging / rel,
                    chunk_size=self.config.chunk_size,
                    large_file_threshold=self.config.large_file_threshold,
                ),
                wanted,
            )
            m.staging.mkdir(parents=True, exist_ok=True)
            index.update({m.index_key(rel): d for rel, d in digests.items()})
            session.metrics["staged_files"] += len(wanted)
            logger.info(
                "Staged %s: %d of %d files", m.label, len(wanted), len(entries)
            )

        await gather_all([_one(m) for m in mapped])
        return index, listings

    def _hold_back_unapplied(
        self,
        index: dict[str, str],
        previous: dict[str, str],
        mapped: list[MappedDirectory],
        results: list[MappingResult],
        release: ReleasePlan | None,
    ) -> None:
        """Keep the previous digest for upstream files that did not land."""
        unapplied = [
            m.index_key(rel) for m, result in zip(mapped, results) for rel in result.unresolved
        ]
        if release is not None and self.release_mode == "gray":
            selected = {str(PurePosixPath(p)) for p in release.selected}
            mapped_prefixes = tuple(f"{m.mapping.target_path}/" for m in mapped)
            unapplied.extend(
                key
                for key in index
                if key.startswith(mapped_prefixes) and key not in selected
            )
        count = revert_entries(index, previous, unapplied)
        if count:
            logger.info("%d upstream files not applied; they will be staged again", count)

    # ------------------------------------------------------------------
    # preview-diff
    # ------------------------------------------------------------------

    async def _preview(self, engine: HashEngine, m: MappedDirectory) -> DiffPreview:
        staged = await engine.pool.run(engine.list_files, m.staging, self.rules, True)

        def _classify(rel: str) -> list[DiffEntry]:
            s, t = m.staging / rel, m.target / rel
            tk = path_kind(t)
            if tk is None:
                for parent in PurePosixPath(rel).parents:
                    if str(parent) == ".":
                        break
                    if path_kind(m.target / parent) not in (None, "directory"):
                        return [DiffEntry(path=str(parent), change=ChangeKind.TYPE_CHANGED)]
                return [DiffEntry(path=rel, change=ChangeKind.ADDED)]
            sk = path_kind(s)
            if sk != tk:
                return [DiffEntry(path=rel, change=ChangeKind.TYPE_CHANGED)]
            if sk == "symlink":
                if read_symlink(s) != read_symlink(t):
                    return [DiffEntry(path=rel, change=ChangeKind.CHANGED)]
                return []
            if engine.hash_file(s) != engine.hash_file(t):
                return [DiffEntry(path=rel, change=ChangeKind.CHANGED)]
            return []

        found = await engine.pool.map(_classify, staged)
        entries = {e.path: e for group in found for e in group}

        if self.config.force_overwrite and m.target.is_dir():
            live = await engine.pool.run(engine.list_files, m.target, self.rules, True)
            for rel in live:
                if path_kind(m.staging / rel) is None and rel not in entries:
                    entries[rel] = DiffEntry(path=rel, change=ChangeKind.REMOVED)

        return DiffPreview(
            mapping=m.label, entries=sorted(entries.values(), key=lambda e: e.path)
        )

    def _confirm(self, previews: list[DiffPreview]) -> None:
        changes = sum(len(p.entries) for p in previews)
        logger.info("Preview: %d changes across %d mappings", changes, len(previews))
        if not self.interactive:
            logger.info("Non-interactive mode: skipping confirmation")
            return
        if self.confirm is None or changes == 0:
            return
        if not self.confirm(previews):
            raise UserCancelled("Sync cancelled at preview")

    # ------------------------------------------------------------------
    # apply-changes
    # ------------------------------------------------------------------

    async def _apply(
        self, resolver: ConflictResolver, m: MappedDirectory, upstream_files: frozenset[str]
    ) -> MappingResult:
        try:
            conflicts = await resolver.detect_directory_conflicts(
                m.staging, m.target, self.rules, source_files=upstream_files
            )
            outcomes = await run_sync(
                lambda: [resolver.resolve_conflict(c) for c in conflicts]
            )
            resolved = sum(1 for o in outcomes if o.success)
            unresolved = sorted(
                {
                    c.source.relative_to(m.staging).as_posix()
                    if isinstance(c, RenameConflict)
                    else c.target.relative_to(m.target).as_posix()
                    for c, o in zip(conflicts, outcomes)
                    if not o.success
                }
            )

            # A rename not applied with use-source keeps its old name only.
            held_back = {
                c.source.relative_to(m.staging).as_posix()
                for c, o in zip(conflicts, outcomes)
                if isinstance(c, RenameConflict)
                and not (o.success and o.strategy == ResolutionStrategy.USE_SOURCE)
            }

            copied = await resolver.engine.pool.run(
                copy_tree,
                m.staging,
                m.target,
                overwrite=False,
                ignore=lambda rel, is_dir: not is_dir and rel in held_back,
                chunk_size=self.config.chunk_size,
                large_file_threshold=self.config.large_file_threshold,
            )
            await run_sync(self.git.add, m.mapping.target_path)
        except UserCancelled:
            raise
        except Exception as exc:
            raise SyncProcessError(
                f"Failed to apply changes for {m.label}",
                cause=exc,
                context={"mapping": m.label, "stage": "apply-changes"},
            ) from exc

        logger.info(
            "Applied %s: %d conflicts (%d resolved), %d files copied",
            m.label,
            len(conflicts),
            resolved,
            len(copied),
        )
        return MappingResult(
            source=m.mapping.source,
            target=m.mapping.target_path,
            conflicts=len(conflicts),
            resolved=resolved,
            copied=copied,
            unresolved=unresolved,
        )

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def _report(self, session: SyncSession, **fields: object) -> SyncReport:
        return SyncReport(
            session_id=session.session_id,
            staged_files=session.metrics["staged_files"],
            timings=dict(session.timings),
            started_at=session.started_at,
            completed_at=datetime.now(timezone.utc).isoformat(),
            **fields,
        )

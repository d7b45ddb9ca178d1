"""Gray (canary) release manager.

Takes a staged tree -- one subdirectory per mapping target, as produced by
the sync orchestrator's copy-to-staging stage -- and exposes it to the live
working tree:

* ``execute_canary_release`` snapshots every synced directory, selects a
  subset of the staged files, copies them into the canary area, runs the
  validation command and either promotes the canary content or restores
  the snapshot;
* ``full_release`` snapshots and then applies all staged content;
* ``rollback`` restores the last snapshot on demand.

Restoring replaces each directory wholesale, so after a rollback every
synced directory is byte-identical to its snapshot.  The snapshot lives in
``rollback_dir`` with a ``manifest.json`` recording which directories
existed, and survives the process for a later ``rollback``.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from pathlib import Path

from upstream_sync.config_schema import SyncConfig
from upstream_sync.errors import (
    ConfigError,
    SyncError,
    SyncProcessError,
    ValidationFailedError,
)
from upstream_sync.file_handler import (
    copy_file,
    copy_tree,
    make_directory,
    path_kind,
    read_json,
    remove_path,
    write_json_atomic,
)
from upstream_sync.release.models import ReleasePlan, ReleaseStage
from upstream_sync.release.monitor import ReleaseMonitor
from upstream_sync.release.selection import select_files
from upstream_sync.release.validation import ValidationResult, ValidationRunner, run_validation
from upstream_sync.sync.hasher import walk_files
from upstream_sync.sync.ignore import IgnoreRules

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
SNAPSHOT_TREE = "tree"


class GrayReleaseManager:
    """Stage, validate and promote (or roll back) synced content.

    Args:
        config: Sync configuration; ``mappings`` name the directories
            covered and ``gray_release`` the release settings.
        repo_root: Working tree root.
        runner: Validation command runner (tests inject a fake).
        rng: Random source for selection; defaults to one seeded with
            ``gray_release.seed``.
    """

    def __init__(
        self,
        config: SyncConfig,
        repo_root: Path,
        runner: ValidationRunner = run_validation,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.settings = config.gray_release
        self.repo_root = repo_root
        self.canary_root = repo_root / self.settings.canary_dir
        self.rollback_root = repo_root / self.settings.rollback_dir
        self.directories = [m.target_path for m in config.mappings]
        self.rules = IgnoreRules.for_root(repo_root, config.ignore_patterns)
        self.runner = runner
        self.rng = rng or random.Random(self.settings.seed)
        self.plan: ReleasePlan | None = None

    def _copy_options(self) -> dict:
        return {
            "chunk_size": self.config.chunk_size,
            "large_file_threshold": self.config.large_file_threshold,
        }

    # ------------------------------------------------------------------
    # Snapshot / restore
    # ------------------------------------------------------------------

    def snapshot(self, release_id: str) -> dict[str, bool]:
        """Copy every synced directory into the rollback store.

        Returns:
            Directory -> whether it existed before the release.
        """
        remove_path(self.rollback_root)
        make_directory(self.rollback_root)
        existed: dict[str, bool] = {}
        for directory in self.directories:
            live = self.repo_root / directory
            existed[directory] = path_kind(live) == "directory"
            if existed[directory]:
                copy_tree(live, self.rollback_root / SNAPSHOT_TREE / directory, **self._copy_options())
                logger.info("  Saved %s for rollback", directory)
        write_json_atomic(
            self.rollback_root / MANIFEST_NAME,
            {
                "release_id": release_id,
                "created_at": datetime.now(timezone.utc).isoformat(),
                "directories": existed,
            },
        )
        return existed

    def read_manifest(self) -> dict | None:
        path = self.rollback_root / MANIFEST_NAME
        if path_kind(path) != "file":
            return None
        return read_json(path)

    def restore(self) -> int:
        """Put every directory back exactly as snapshotted.

        Raises:
            SyncProcessError: No snapshot exists.
            FilesystemError: A directory could not be restored.
        """
        manifest = self.read_manifest()
        if manifest is None:
            raise SyncProcessError(
                f"No rollback snapshot found in {self.rollback_root}",
                context={"rollback_dir": str(self.rollback_root)},
            )
        restored = 0
        for directory, existed in manifest["directories"].items():
            live = self.repo_root / directory
            remove_path(live)
            if existed:
                copy_tree(self.rollback_root / SNAPSHOT_TREE / directory, live, **self._copy_options())
            restored += 1
            logger.info("  Restored %s", directory)
        return restored

    # ------------------------------------------------------------------
    # Canary release
    # ------------------------------------------------------------------

    def candidates(self, staged_root: Path) -> list[str]:
        """Staged files eligible for exposure, relative to *staged_root*."""
        files: list[str] = []
        for directory in self.directories:
            root = staged_root / directory
            if path_kind(root) != "directory":
                logger.warning("Nothing staged for %s", directory)
                continue
            files.extend(f"{directory}/{rel}" for rel in walk_files(root, self.rules, True))
        return sorted(files)

    def _copy_to_canary(self, plan: ReleasePlan, staged_root: Path) -> None:
        remove_path(self.canary_root)
        make_directory(self.canary_root)
        for n, rel in enumerate(plan.selected, start=1):
            copy_file(staged_root / rel, self.canary_root / rel, **self._copy_options())
            plan.files_released = n
            plan.progress = max(plan.progress, 40 + n * 20 // len(plan.selected))
            logger.debug("  Canary file: %s", rel)

    def _validate(self, plan: ReleasePlan) -> ValidationResult:
        command = self.settings.validation_command
        if not command:
            logger.warning("No validation command configured; treating canary as valid")
            return ValidationResult(passed=True)
        result = self.runner(command, self.repo_root, self.canary_root, self.settings.validation_timeout)
        plan.validation_seconds = result.duration_seconds
        return result

    def _promote(self) -> None:
        for directory in self.directories:
            canary = self.canary_root / directory
            if path_kind(canary) == "directory":
                copy_tree(canary, self.repo_root / directory, overwrite=True, **self._copy_options())
                logger.info("  Promoted canary content to %s", directory)

    def execute_canary_release(self, staged_root: Path) -> ReleasePlan:
        """Expose a subset of *staged_root*, validate, then promote or roll back.

        Returns:
            The completed plan.

        Raises:
            ValidationFailedError: Validation failed; the snapshot has been
                restored (stage ``rolled-back``).
            SyncProcessError: Any other failure.  The stage is
                ``rolled-back`` after a successful restore, ``failed`` when
                the snapshot could not be taken (nothing was touched), or
                ``failed-to-rollback``.
        """
        plan = ReleasePlan(strategy=self.settings.strategy, directories=self.directories)
        self.plan = plan
        logger.info(
            "Starting gray release %s (strategy %s)", plan.release_id, self.settings.strategy
        )
        monitor = None
        if self.settings.enable_monitoring:
            monitor = ReleaseMonitor(
                plan, self.settings.alert_thresholds, self.settings.monitor_interval
            )
            monitor.start()
        try:
            self._prepare(plan)
            try:
                files = self.candidates(staged_root)
                plan.total_files = len(files)
                plan.progress = 30
                plan.selected = select_files(files, self.settings, self.rng)
                plan.advance(ReleaseStage.SELECTED, 40)
                logger.info("Selected %d of %d staged files", len(plan.selected), len(files))

                self._copy_to_canary(plan, staged_root)
                plan.advance(ReleaseStage.CANARY, 60)

                plan.advance(ReleaseStage.VALIDATING)
                result = self._validate(plan)
                plan.advance(ReleaseStage.VALIDATING, 80)
                if not result.passed:
                    raise ValidationFailedError(
                        f"Gray release {plan.release_id} failed validation: {result.describe()}",
                        context={"release_id": plan.release_id, "exit_code": result.exit_code},
                    )
                self._promote()
            except Exception as exc:
                self._recover(plan, exc)
            plan.advance(ReleaseStage.COMPLETED, 100)
            logger.info("Gray release %s completed", plan.release_id)
            return plan
        finally:
            if monitor is not None:
                monitor.stop()
            self._discard_canary()

    def full_release(self, staged_root: Path) -> ReleasePlan:
        """Apply all of *staged_root* at once (after taking a snapshot)."""
        plan = ReleasePlan(strategy="full", directories=self.directories)
        self.plan = plan
        logger.info("Starting full release %s", plan.release_id)
        self._prepare(plan)
        try:
            files = self.candidates(staged_root)
            plan.total_files = len(files)
            plan.selected = files
            for directory in self.directories:
                staged = staged_root / directory
                if path_kind(staged) == "directory":
                    copy_tree(staged, self.repo_root / directory, overwrite=True, **self._copy_options())
                    logger.info("  Released %s", directory)
            plan.files_released = len(files)
        except Exception as exc:
            self._recover(plan, exc)
        plan.advance(ReleaseStage.COMPLETED, 100)
        logger.info("Full release %s completed: %d files", plan.release_id, len(files))
        return plan

    def rollback(self) -> ReleasePlan:
        """Re-apply the last snapshot.

        Raises:
            SyncProcessError: No snapshot exists or restoring failed
                (stage ``failed-to-rollback``).
        """
        manifest = self.read_manifest() or {}
        plan = ReleasePlan(
            strategy="rollback",
            directories=list(manifest.get("directories", {})),
            **({"release_id": manifest["release_id"]} if "release_id" in manifest else {}),
        )
        self.plan = plan
        logger.info("Rolling back release %s", plan.release_id)
        try:
            count = self.restore()
        except SyncError as exc:
            plan.errors.append(exc.message)
            plan.advance(ReleaseStage.FAILED_TO_ROLLBACK)
            raise SyncProcessError(
                f"Rollback of {plan.release_id} failed: {exc.message}", cause=exc
            ) from exc
        plan.advance(ReleaseStage.ROLLED_BACK)
        logger.info("Rollback of %s finished: %d directories restored", plan.release_id, count)
        return plan

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prepare(self, plan: ReleasePlan) -> None:
        if not self.directories:
            plan.advance(ReleaseStage.FAILED)
            raise ConfigError("A release needs at least one directory mapping")
        try:
            self.snapshot(plan.release_id)
        except Exception as exc:
            plan.errors.append(str(exc))
            plan.advance(ReleaseStage.FAILED)
            raise SyncProcessError(
                f"Could not snapshot directories for {plan.release_id}",
                cause=exc,
                context={"release_id": plan.release_id},
            ) from exc
        plan.advance(ReleaseStage.PREPARED, 20)

    def _recover(self, plan: ReleasePlan, exc: Exception) -> None:
        """Restore the snapshot after *exc* and raise the resulting error."""
        plan.errors.append(str(exc))
        logger.error("Release %s failed: %s; rolling back", plan.release_id, exc)
        try:
            self.restore()
        except Exception as restore_exc:
            plan.errors.append(f"rollback failed: {restore_exc}")
            plan.advance(ReleaseStage.FAILED_TO_ROLLBACK)
            raise SyncProcessError(
                f"Release {plan.release_id} failed and could not be rolled back: {restore_exc}",
                cause=exc,
                context={"release_id": plan.release_id},
            ) from restore_exc
        plan.advance(ReleaseStage.ROLLED_BACK)
        logger.warning("Release %s rolled back", plan.release_id)
        if isinstance(exc, ValidationFailedError):
            raise exc
        raise SyncProcessError(
            f"Release {plan.release_id} failed: {exc}",
            cause=exc,
            context={"release_id": plan.release_id},
        ) from exc

    def _discard_canary(self) -> None:
        try:
            remove_path(self.canary_root)
        except SyncError as exc:
            logger.warning("Could not remove canary area %s: %s", self.canary_root, exc)

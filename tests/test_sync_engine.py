"""End-to-end tests for SyncOrchestrator against the fake git client."""

import hashlib

import pytest

from conftest import FakeGitClient, read_tree, write_tree
from upstream_sync.errors import (
    AuthenticationError,
    ConfigError,
    FilesystemError,
    NetworkError,
    RetryExhaustedError,
    SyncProcessError,
    UserCancelled,
)
from upstream_sync.file_handler import copy_tree
from upstream_sync.release.models import ReleasePlan, ReleaseStage
from upstream_sync.sync.engine import SyncOrchestrator, revert_entries
from upstream_sync.sync.models import ChangeKind
from upstream_sync.sync.state import HashIndexStore

UPSTREAM = {
    "lib/a.txt": "alpha\n",
    "lib/sub/b.txt": "beta\n",
    "other/ignored.txt": "not mapped\n",
}


def _sha(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


@pytest.fixture
def git(repo):
    write_tree(repo, {"README.md": "local repo\n"})
    return FakeGitClient(repo, upstream=UPSTREAM)


def _orchestrator(config, git, sleeps=None, **kwargs):
    sleeps = sleeps if sleeps is not None else []
    return SyncOrchestrator(config, git, sleep=sleeps.append, **kwargs)


def _index(repo):
    store = HashIndexStore(repo / ".upstream_sync")
    return store.load() if store.path.exists() else None


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestBasicRun:
    async def test_first_sync_copies_and_commits(self, repo, git, make_config):
        report = await _orchestrator(make_config(), git, session_id="s1").run_async()

        assert read_tree(repo) == {
            "README.md": b"local repo\n",
            "lib/a.txt": b"alpha\n",
            "lib/sub/b.txt": b"beta\n",
        }
        assert git.remotes == {"upstream": "https://example.com/acme/upstream.git"}
        assert git.commits == ["chore: sync upstream changes"]
        assert report.commit == f"{1:040x}"
        assert report.staged_files == 2
        assert set(report.mappings[0].copied) == {"a.txt", "sub/b.txt"}
        assert not report.pushed

    async def test_temp_branch_released(self, repo, git, make_config):
        await _orchestrator(make_config(), git, session_id="s1").run_async()
        assert git.branch == "main"
        assert git.deleted == ["temp-sync-s1"]
        assert "temp-sync-s1" not in git.trees

    async def test_index_persisted(self, repo, git, make_config):
        await _orchestrator(make_config(), git).run_async()
        assert _index(repo) == {"lib/a.txt": _sha("alpha\n"), "lib/sub/b.txt": _sha("beta\n")}

    async def test_preview_lists_additions(self, repo, git, make_config):
        report = await _orchestrator(make_config(), git).run_async()
        [preview] = report.previews
        assert preview.mapping == "lib"
        assert [(e.path, e.change) for e in preview.entries] == [
            ("a.txt", ChangeKind.ADDED),
            ("sub/b.txt", ChangeKind.ADDED),
        ]

    async def test_stages_are_timed(self, repo, git, make_config):
        report = await _orchestrator(make_config(), git).run_async()
        assert list(report.timings) == [
            "configure-remote",
            "fetch-upstream",
            "create-temp-branch",
            "copy-to-staging",
            "preview-diff",
            "apply-changes",
            "commit",
        ]

    async def test_renamed_target(self, repo, git, make_config):
        config = make_config(mappings=[{"source": "lib", "target": "vendor/lib"}])
        await _orchestrator(config, git).run_async()
        assert read_tree(repo)["vendor/lib/a.txt"] == b"alpha\n"
        assert "lib/a.txt" not in read_tree(repo)
        assert set(_index(repo)) == {"vendor/lib/a.txt", "vendor/lib/sub/b.txt"}

    async def test_ignore_patterns(self, repo, git, make_config):
        git.upstream["lib/debug.log"] = b"noise"
        await _orchestrator(make_config(ignore_patterns=["*.log"]), git).run_async()
        assert "lib/debug.log" not in read_tree(repo)

    async def test_auto_push(self, repo, git, make_config):
        report = await _orchestrator(make_config(auto_push=True), git).run_async()
        assert git.pushed == [("origin", "main")]
        assert report.pushed

    def test_sync_wrapper(self, repo, git, make_config):
        report = _orchestrator(make_config(), git).run()
        assert report.commit is not None

    def test_requires_upstream(self, repo, git, make_config):
        with pytest.raises(ConfigError):
            SyncOrchestrator(make_config(upstream_repo=None), git)


# ---------------------------------------------------------------------------
# Incremental runs and conflicts
# ---------------------------------------------------------------------------


class TestIncremental:
    async def test_rerun_stages_nothing(self, repo, git, make_config):
        await _orchestrator(make_config(), git, session_id="s1").run_async()
        report = await _orchestrator(make_config(), git, session_id="s2").run_async()

        assert report.staged_files == 0
        assert report.commit is None
        assert git.commits == ["chore: sync upstream changes"]
        assert report.previews[0].is_empty
        assert git.deleted == ["temp-sync-s1", "temp-sync-s2"]

    async def test_force_overwrite_restages_everything(self, repo, git, make_config):
        await _orchestrator(make_config(), git).run_async()
        report = await _orchestrator(make_config(force_overwrite=True), git).run_async()
        assert report.staged_files == 2
        assert report.commit is None

    async def test_force_overwrite_preview_lists_removals(self, repo, git, make_config):
        write_tree(repo, {"lib/local_only.txt": "mine\n"})
        git.head = read_tree(repo)
        git.trees["main"] = dict(git.head)
        report = await _orchestrator(
            make_config(force_overwrite=True, preview_only=True), git
        ).run_async()
        removed = report.previews[0].of_kind(ChangeKind.REMOVED)
        assert [e.path for e in removed] == ["local_only.txt"]

    async def test_upstream_change_use_source(self, repo, git, make_config):
        await _orchestrator(make_config(), git).run_async()
        git.upstream["lib/a.txt"] = b"alpha v2\n"

        config = make_config(conflict={"default_strategy": "use-source"})
        report = await _orchestrator(config, git).run_async()

        assert report.staged_files == 1
        assert (repo / "lib" / "a.txt").read_text() == "alpha v2\n"
        assert [o.kind for o in report.outcomes] == ["content"]
        assert report.outcomes[0].success
        assert len(git.commits) == 2
        assert _index(repo)["lib/a.txt"] == _sha("alpha v2\n")

    async def test_upstream_change_keep_target(self, repo, git, make_config):
        await _orchestrator(make_config(), git).run_async()
        git.upstream["lib/a.txt"] = b"alpha v2\n"

        config = make_config(conflict={"default_strategy": "keep-target"})
        report = await _orchestrator(config, git).run_async()

        assert (repo / "lib" / "a.txt").read_text() == "alpha\n"
        assert report.mappings[0].conflicts == 1
        assert report.mappings[0].resolved == 1
        assert report.commit is None

    async def test_prompt_user_non_interactive_leaves_conflict(self, repo, git, make_config):
        await _orchestrator(make_config(), git).run_async()
        git.upstream["lib/a.txt"] = b"alpha v2\n"
        git.upstream["lib/new.txt"] = b"new\n"

        report = await _orchestrator(make_config(), git).run_async()

        assert (repo / "lib" / "a.txt").read_text() == "alpha\n"
        assert (repo / "lib" / "new.txt").read_text() == "new\n"
        assert [o.message for o in report.unresolved] == ["unresolved: no decision source"]
        assert report.mappings[0].unresolved == ["a.txt"]
        assert report.commit is not None
        index = _index(repo)
        assert index["lib/a.txt"] == _sha("alpha\n")
        assert index["lib/new.txt"] == _sha("new\n")

    async def test_unresolved_conflict_is_offered_again(self, repo, git, make_config):
        await _orchestrator(make_config(), git).run_async()
        git.upstream["lib/a.txt"] = b"alpha v2\n"
        await _orchestrator(make_config(), git).run_async()
        assert (repo / "lib" / "a.txt").read_text() == "alpha\n"

        config = make_config(conflict={"default_strategy": "use-source"})
        report = await _orchestrator(config, git).run_async()

        assert report.staged_files == 1
        assert [(o.kind, o.success) for o in report.outcomes] == [("content", True)]
        assert (repo / "lib" / "a.txt").read_text() == "alpha v2\n"
        assert _index(repo)["lib/a.txt"] == _sha("alpha v2\n")

    async def test_markers_are_retried_next_run(self, repo, git, make_config):
        await _orchestrator(make_config(), git).run_async()
        git.upstream["lib/a.txt"] = b"alpha v2\n"
        (repo / "lib" / "a.txt").write_text("alpha local\n")

        config = make_config(conflict={"default_strategy": "auto-merge"})
        report = await _orchestrator(config, git).run_async()
        assert not report.outcomes[0].success
        assert "<<<<<<< SOURCE" in (repo / "lib" / "a.txt").read_text()
        assert _index(repo)["lib/a.txt"] == _sha("alpha\n")

        config = make_config(conflict={"default_strategy": "use-source"})
        report = await _orchestrator(config, git).run_async()
        assert report.staged_files == 1
        assert (repo / "lib" / "a.txt").read_text() == "alpha v2\n"

    @pytest.mark.parametrize("strategy", ["prompt-user", "use-source"])
    async def test_new_file_with_same_bytes_is_not_a_rename(self, repo, make_config, strategy):
        git = FakeGitClient(repo, upstream={"lib/__init__.py": "", "lib/x.py": "x = 1\n"})
        config = make_config(conflict={"default_strategy": strategy})
        await _orchestrator(config, git).run_async()
        git.upstream["lib/py.typed"] = b""

        report = await _orchestrator(config, git).run_async()

        assert report.staged_files == 1
        assert report.outcomes == []
        assert sorted(read_tree(repo)) == ["lib/__init__.py", "lib/py.typed", "lib/x.py"]
        assert set(_index(repo)) == {"lib/__init__.py", "lib/py.typed", "lib/x.py"}

    async def test_unresolved_rename_is_offered_again(self, repo, make_config):
        git = FakeGitClient(repo, upstream={"lib/old.txt": "moved\n"})
        await _orchestrator(make_config(), git).run_async()
        del git.upstream["lib/old.txt"]
        git.upstream["lib/new.txt"] = b"moved\n"

        report = await _orchestrator(make_config(), git).run_async()
        assert [(o.kind, o.success) for o in report.outcomes] == [("rename", False)]
        assert report.mappings[0].unresolved == ["new.txt"]
        assert sorted(read_tree(repo)) == ["lib/old.txt"]
        assert "lib/new.txt" not in _index(repo)

        config = make_config(conflict={"default_strategy": "use-source"})
        report = await _orchestrator(config, git).run_async()
        assert [(o.kind, o.success) for o in report.outcomes] == [("rename", True)]
        assert sorted(read_tree(repo)) == ["lib/new.txt"]
        assert set(_index(repo)) == {"lib/new.txt"}

    async def test_type_conflict_use_source(self, repo, git, make_config):
        write_tree(repo, {"lib/sub": "was a file\n"})
        config = make_config(conflict={"default_strategy": "use-source"})
        report = await _orchestrator(config, git).run_async()

        entries = {e.path: e.change for e in report.previews[0].entries}
        assert entries["sub"] == ChangeKind.TYPE_CHANGED
        assert [o.kind for o in report.outcomes] == ["type"]
        assert (repo / "lib" / "sub" / "b.txt").read_text() == "beta\n"


# ---------------------------------------------------------------------------
# Preview only / confirmation
# ---------------------------------------------------------------------------


class TestPreviewAndConfirm:
    async def test_preview_only_changes_nothing(self, repo, git, make_config):
        report = await _orchestrator(make_config(preview_only=True), git).run_async()

        assert report.preview_only
        assert len(report.previews[0].entries) == 2
        assert read_tree(repo) == {"README.md": b"local repo\n"}
        assert _index(repo) is None
        assert git.commits == []
        assert git.branch == "main"

    async def test_confirm_receives_previews(self, repo, git, make_config):
        seen = []

        def confirm(previews):
            seen.extend(previews)
            return True

        await _orchestrator(make_config(non_interactive=False), git, confirm=confirm).run_async()
        assert [p.mapping for p in seen] == ["lib"]
        assert git.commits

    async def test_confirm_declined(self, repo, git, make_config):
        orch = _orchestrator(
            make_config(non_interactive=False), git, session_id="s1", confirm=lambda p: False
        )
        with pytest.raises(UserCancelled):
            await orch.run_async()

        assert read_tree(repo) == {"README.md": b"local repo\n"}
        assert _index(repo) is None
        assert git.branch == "main"
        assert git.deleted == ["temp-sync-s1"]

    async def test_non_interactive_ignores_confirm(self, repo, git, make_config):
        orch = _orchestrator(make_config(), git, confirm=lambda p: False)
        report = await orch.run_async()
        assert report.commit is not None


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_missing_upstream_directory(self, repo, git, make_config):
        orch = _orchestrator(make_config(mappings=["lib", "nope"]), git, session_id="s1")
        with pytest.raises(FilesystemError, match="Upstream directory not found: nope"):
            await orch.run_async()

        assert git.branch == "main"
        assert git.deleted == ["temp-sync-s1"]
        assert read_tree(repo) == {"README.md": b"local repo\n"}
        assert _index(repo) is None
        assert git.commits == []

    async def test_fetch_retried(self, repo, git, make_config):
        git.failures["fetch"] = [NetworkError("timed out"), NetworkError("timed out")]
        sleeps = []
        report = await _orchestrator(make_config(), git, sleeps).run_async()
        assert git.fetches == 3
        assert sleeps == [2.0, 3.0]
        assert report.commit is not None

    async def test_fetch_retries_exhausted(self, repo, git, make_config):
        git.failures["fetch"] = [ConnectionError("reset")] * 3
        sleeps = []
        with pytest.raises(RetryExhaustedError) as excinfo:
            await _orchestrator(make_config(), git, sleeps).run_async()
        assert excinfo.value.attempts == 3
        assert sleeps == [2.0, 3.0]
        assert git.commits == []

    async def test_auth_failure_not_retried(self, repo, git, make_config):
        git.failures["fetch"] = [AuthenticationError("Authentication failed")]
        sleeps = []
        with pytest.raises(AuthenticationError):
            await _orchestrator(make_config(), git, sleeps).run_async()
        assert git.fetches == 1
        assert sleeps == []

    async def test_push_retried(self, repo, git, make_config):
        git.failures["push"] = [NetworkError("connection reset")]
        sleeps = []
        report = await _orchestrator(make_config(auto_push=True), git, sleeps).run_async()
        assert sleeps == [2.0]
        assert report.pushed

    async def test_unexpected_error_wrapped(self, repo, git, make_config):
        git.failures["commit"] = [RuntimeError("disk full")]
        with pytest.raises(SyncProcessError) as excinfo:
            await _orchestrator(make_config(), git).run_async()
        assert excinfo.value.context["stage"] == "commit"
        assert _index(repo) is None
        assert git.branch == "main"


# ---------------------------------------------------------------------------
# Release modes
# ---------------------------------------------------------------------------


class RecordingReleaseManager:
    """Applies the staged tree wholesale and reports a finished plan."""

    def __init__(self, repo):
        self.repo = repo
        self.calls = []

    def _apply(self, staging_root, strategy):
        copy_tree(staging_root, self.repo)
        plan = ReleasePlan(strategy=strategy, directories=["lib"], selected=sorted(read_tree(staging_root)))
        plan.advance(ReleaseStage.COMPLETED, 100)
        return plan

    def execute_canary_release(self, staging_root):
        self.calls.append("gray")
        return self._apply(staging_root, "percentage")

    def full_release(self, staging_root):
        self.calls.append("full")
        return self._apply(staging_root, "full")


class TestReleaseModes:
    @pytest.mark.parametrize("mode", ["gray", "full"])
    async def test_release_replaces_apply(self, repo, git, make_config, mode):
        manager = RecordingReleaseManager(repo)
        report = await _orchestrator(
            make_config(), git, release_mode=mode, release_manager=manager
        ).run_async()

        assert manager.calls == [mode]
        assert report.release.success
        assert report.mappings == []
        assert f"{mode}-release" in report.timings
        assert "apply-changes" not in report.timings
        assert (repo / "lib" / "a.txt").read_text() == "alpha\n"
        assert report.commit is not None

    @pytest.mark.parametrize("mode", ["gray", "full"])
    async def test_release_records_released_files(self, repo, git, make_config, mode):
        manager = RecordingReleaseManager(repo)
        await _orchestrator(make_config(), git, release_mode=mode, release_manager=manager).run_async()
        assert set(_index(repo)) == {"lib/a.txt", "lib/sub/b.txt"}

    async def test_gray_release_leaves_unselected_for_next_run(self, repo, make_config):
        upstream = {f"lib/f{i}.txt": f"file {i}\n" for i in range(10)}
        git = FakeGitClient(repo, upstream=upstream)
        config = make_config(gray_release={"percentage": 30, "seed": 1})

        report = await _orchestrator(config, git, release_mode="gray").run_async()

        selected = set(report.release.selected)
        assert 0 < len(selected) < len(upstream)
        assert set(read_tree(repo)) == selected
        assert set(_index(repo)) == selected

        report = await _orchestrator(config, git).run_async()

        assert report.staged_files == len(upstream) - len(selected)
        assert report.outcomes == []
        assert set(read_tree(repo)) == set(upstream)
        assert set(_index(repo)) == set(upstream)


# ---------------------------------------------------------------------------
# HashIndex bookkeeping
# ---------------------------------------------------------------------------


class TestRevertEntries:
    def test_files_and_subtrees(self):
        index = {"lib/a": "new", "lib/d/x": "new", "lib/d/y": "same", "lib/keep": "new", "lib/fresh": "new"}
        previous = {"lib/a": "old", "lib/d/y": "same", "lib/keep": "old"}

        assert revert_entries(index, previous, ["lib/a", "lib/d", "lib/fresh"]) == 3
        assert index == {"lib/a": "old", "lib/d/y": "same", "lib/keep": "new"}

    def test_nothing_to_revert(self):
        index = {"lib/a": "x"}
        assert revert_entries(index, {"lib/a": "x"}, ["lib/a"]) == 0
        assert revert_entries(index, {}, []) == 0
        assert index == {"lib/a": "x"}

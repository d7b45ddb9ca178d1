"""Tests for the upstream-sync command-line entry point."""

import json

import pytest

from upstream_sync import cli
from upstream_sync.errors import SyncProcessError, UserCancelled
from upstream_sync.release.models import ReleasePlan, ReleaseStage
from upstream_sync.sync.models import ResolutionOutcome, SyncReport

ENV_VARS = [
    "UPSTREAM_SYNC_CONFIG",
    "UPSTREAM_SYNC_REPO",
    "UPSTREAM_SYNC_BRANCH",
    "UPSTREAM_SYNC_TARGET_BRANCH",
    "UPSTREAM_SYNC_DIRS",
    "UPSTREAM_SYNC_MESSAGE",
    "UPSTREAM_SYNC_CONCURRENCY",
    "UPSTREAM_SYNC_TOKEN",
]


class FakeGit:
    def __init__(self, root, auth=None):
        self.working_dir = root
        self.auth = auth


class FakeOrchestrator:
    """Records how the CLI built it and returns a canned report."""

    instances: list["FakeOrchestrator"] = []
    error: Exception | None = None
    outcomes: list[ResolutionOutcome] = []

    def __init__(self, config, git, **kwargs):
        self.config = config
        self.git = git
        self.kwargs = kwargs
        FakeOrchestrator.instances.append(self)

    def run(self):
        if FakeOrchestrator.error is not None:
            raise FakeOrchestrator.error
        return SyncReport(
            session_id="cli-test",
            started_at="2026-01-01T00:00:00Z",
            commit="abc123",
            outcomes=FakeOrchestrator.outcomes,
        )


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    monkeypatch.setattr(cli, "GitPythonClient", FakeGit)
    monkeypatch.setattr(cli, "SyncOrchestrator", FakeOrchestrator)
    FakeOrchestrator.instances = []
    FakeOrchestrator.error = None
    FakeOrchestrator.outcomes = []
    return tmp_path


def _only_orchestrator():
    [orchestrator] = FakeOrchestrator.instances
    return orchestrator


class TestParseDirs:
    def test_plain_and_renamed(self):
        assert cli._parse_dirs("src/core, docs:vendor/docs,,") == [
            "src/core",
            {"source": "docs", "target": "vendor/docs"},
        ]


class TestMain:
    def test_version(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["--version"])
        assert excinfo.value.code == 0
        assert "upstream-sync version" in capsys.readouterr().out

    def test_missing_repo(self, capsys):
        assert cli.main(["--dirs", "lib"]) == 1
        assert "Upstream repository not set" in capsys.readouterr().err
        assert FakeOrchestrator.instances == []

    def test_flags_reach_orchestrator(self, capsys, isolated):
        code = cli.main(
            [
                "--repo", "https://example.com/up.git",
                "--dirs", "lib,docs:vendor/docs",
                "--branch", "develop",
                "--push",
                "--retry-max", "5",
                "--concurrency", "3",
            ]
        )
        assert code == 0
        orchestrator = _only_orchestrator()
        config = orchestrator.config
        assert config.upstream_repo == "https://example.com/up.git"
        assert config.upstream_branch == "develop"
        assert [m.target_path for m in config.mappings] == ["lib", "vendor/docs"]
        assert config.auto_push
        assert config.retry.max_retries == 5
        assert config.concurrency_limit == 3
        assert orchestrator.kwargs["release_mode"] == "apply"
        assert orchestrator.git.working_dir == isolated.resolve()
        assert "Sync report for session cli-test" in capsys.readouterr().out

    def test_non_tty_runs_non_interactively(self):
        cli.main(["--repo", "https://example.com/up.git", "--dirs", "lib"])
        orchestrator = _only_orchestrator()
        assert orchestrator.config.non_interactive
        assert orchestrator.kwargs["decisions"] is None
        assert orchestrator.kwargs["confirm"] is None

    @pytest.mark.parametrize("flag, mode", [("--gray-release", "gray"), ("--full-release", "full")])
    def test_release_modes(self, flag, mode):
        cli.main(["--repo", "https://example.com/up.git", "--dirs", "lib", flag])
        assert _only_orchestrator().kwargs["release_mode"] == mode

    def test_release_modes_exclusive(self):
        with pytest.raises(SystemExit):
            cli.main(["--gray-release", "--rollback"])

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("UPSTREAM_SYNC_REPO", "https://env.example.com/up.git")
        monkeypatch.setenv("UPSTREAM_SYNC_DIRS", "a,b")
        assert cli.main([]) == 0
        config = _only_orchestrator().config
        assert config.upstream_repo == "https://env.example.com/up.git"
        assert [m.source for m in config.mappings] == ["a", "b"]

    def test_config_file(self, isolated):
        path = isolated / "sync.yml"
        path.write_text(
            "sync:\n"
            "  upstream_repo: https://yaml.example.com/up.git\n"
            "  mappings: [lib]\n"
            "  commit_message: from yaml\n"
        )
        assert cli.main(["--config", str(path), "-m", "from cli"]) == 0
        config = _only_orchestrator().config
        assert config.upstream_repo == "https://yaml.example.com/up.git"
        assert config.commit_message == "from cli"

    def test_discovered_config(self, isolated):
        (isolated / ".upstream_sync").mkdir()
        (isolated / ".upstream_sync" / "config.yml").write_text(
            "sync:\n  upstream_repo: https://found.example.com/up.git\n  mappings: [lib]\n"
        )
        assert cli.main([]) == 0
        assert _only_orchestrator().config.upstream_repo == "https://found.example.com/up.git"

    def test_json_output(self, capsys):
        cli.main(["--repo", "https://example.com/up.git", "--dirs", "lib", "--json"])
        data = json.loads(capsys.readouterr().out)
        assert data["session_id"] == "cli-test"
        assert data["commit"] == "abc123"

    def test_sync_failure(self, capsys):
        FakeOrchestrator.error = SyncProcessError("Sync failed during fetch-upstream")
        assert cli.main(["--repo", "https://example.com/up.git", "--dirs", "lib"]) == 1
        assert "Sync failed during fetch-upstream" in capsys.readouterr().err

    def test_cancelled_exits_zero(self):
        FakeOrchestrator.error = UserCancelled("Sync cancelled at preview")
        assert cli.main(["--repo", "https://example.com/up.git", "--dirs", "lib"]) == 0

    def test_unresolved_conflicts_exit_zero(self, caplog):
        FakeOrchestrator.outcomes = [
            ResolutionOutcome(kind="content", source="s", target="t", success=False)
        ]
        assert cli.main(["--repo", "https://example.com/up.git", "--dirs", "lib"]) == 0
        assert "1 conflicts need attention" in caplog.text


class TestRollback:
    def test_rollback_needs_no_source(self, monkeypatch, capsys):
        calls = []

        class FakeManager:
            def __init__(self, config, repo_root):
                calls.append(repo_root)

            def rollback(self):
                plan = ReleasePlan(release_id="release-7", strategy="rollback")
                plan.advance(ReleaseStage.ROLLED_BACK)
                return plan

        monkeypatch.setattr(cli, "GrayReleaseManager", FakeManager)
        assert cli.main(["--rollback"]) == 0
        assert "Rolled back release release-7" in capsys.readouterr().out
        assert len(calls) == 1
        assert FakeOrchestrator.instances == []

    def test_rollback_without_snapshot(self, capsys):
        assert cli.main(["--rollback"]) == 1
        assert "No rollback snapshot" in capsys.readouterr().err

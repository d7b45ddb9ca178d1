"""Shared pytest fixtures for upstream-sync tests."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from upstream_sync.config_schema import SyncConfig

KEEP_DIRS = {".upstream_sync", ".git"}


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that need network access to a real upstream remote",
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# Fake version-control client
# ---------------------------------------------------------------------------


def write_tree(root: Path, files: dict[str, str | bytes]) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")


def read_tree(root: Path) -> dict[str, bytes]:
    """Every regular file under *root* except tool state, keyed by POSIX path."""
    tree: dict[str, bytes] = {}
    if not root.exists():
        return tree
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root)
        if rel.parts[0] in KEEP_DIRS or not path.is_file() or path.is_symlink():
            continue
        tree[rel.as_posix()] = path.read_bytes()
    return tree


class FakeGitClient:
    """In-memory stand-in for ``GitPythonClient``.

    Branches are whole-tree snapshots of the working directory; checking
    one out rewrites the working tree (tool state under ``.upstream_sync``
    survives, like an untracked directory).  Any ref containing ``/`` is
    served from ``upstream``.

    ``failures`` maps an operation name to exceptions raised by its next
    calls, in order.
    """

    def __init__(
        self,
        root: Path,
        upstream: dict[str, str | bytes] | None = None,
        branch: str = "main",
    ) -> None:
        self.root = root
        self.upstream = {
            k: v.encode() if isinstance(v, str) else v for k, v in (upstream or {}).items()
        }
        self.branch = branch
        self.trees: dict[str, dict[str, bytes]] = {}
        self.head = read_tree(root)
        self.remotes: dict[str, str] = {}
        self.staged: list[str] = []
        self.commits: list[str] = []
        self.pushed: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.fetches = 0
        self.failures: dict[str, list[Exception]] = {}
        self.revs: dict[str, str] = {}
        self.merge_bases: dict[tuple[str, str], str] = {}
        self.trees[branch] = dict(self.head)

    @property
    def working_dir(self) -> Path:
        return self.root

    def _maybe_fail(self, op: str) -> None:
        pending = self.failures.get(op)
        if pending:
            raise pending.pop(0)

    def _restore(self, tree: dict[str, bytes]) -> None:
        for child in self.root.iterdir():
            if child.name in KEEP_DIRS:
                continue
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        write_tree(self.root, tree)

    # -- remote ----------------------------------------------------------

    def configure_remote(self, name: str, url: str) -> None:
        self._maybe_fail("configure_remote")
        self.remotes[name] = url

    def fetch(self, remote: str, branch: str) -> None:
        self.fetches += 1
        self._maybe_fail("fetch")

    def push(self, remote: str, branch: str) -> None:
        self._maybe_fail("push")
        self.pushed.append((remote, branch))

    # -- branches --------------------------------------------------------

    def current_branch(self) -> str:
        return self.branch

    def branch_exists(self, name: str) -> bool:
        return name in self.trees

    def checkout_new_branch(self, name: str, base: str) -> None:
        self._maybe_fail("checkout_new_branch")
        self.trees[self.branch] = read_tree(self.root)
        tree = self.upstream if "/" in base else self.trees.get(base, {})
        self._restore(tree)
        self.trees[name] = dict(tree)
        self.branch = name

    def checkout(self, branch: str) -> None:
        self._maybe_fail("checkout")
        self.trees[self.branch] = read_tree(self.root)
        self._restore(self.trees[branch])
        self.branch = branch

    def delete_local_branch(self, name: str) -> None:
        self.trees.pop(name, None)
        self.deleted.append(name)

    def rev_parse(self, ref: str) -> str:
        return self.revs.get(ref, ref)

    def merge_base(self, a: str, b: str) -> str | None:
        return self.merge_bases.get((a, b))

    # -- index -----------------------------------------------------------

    def add(self, path: str) -> None:
        current = read_tree(self.root)
        prefix = f"{path.rstrip('/')}/"
        for key in set(current) | set(self.head):
            if key.startswith(prefix) and current.get(key) != self.head.get(key):
                if key not in self.staged:
                    self.staged.append(key)

    def status(self, staged_only: bool = False) -> list[str]:
        return list(self.staged)

    def commit(self, message: str) -> str:
        self._maybe_fail("commit")
        self.commits.append(message)
        self.head = read_tree(self.root)
        self.staged.clear()
        return f"{len(self.commits):040x}"


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def make_config():
    """Factory for a non-interactive ``SyncConfig`` syncing ``lib``."""

    def _make(**overrides) -> SyncConfig:
        values = {
            "upstream_repo": "https://example.com/acme/upstream.git",
            "mappings": ["lib"],
            "non_interactive": True,
            "retry": {"max_retries": 2, "initial_delay": 2000, "backoff_factor": 1.5},
        }
        values.update(overrides)
        return SyncConfig(**values)

    return _make

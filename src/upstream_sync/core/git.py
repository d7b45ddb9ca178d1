"""Version-control collaborator.

``GitClient`` is the protocol the orchestrator and branch manager depend
on; ``GitPythonClient`` implements it on top of GitPython.  Every
``GitCommandError`` is translated into the error taxonomy:

* rejected credentials -> ``AuthenticationError`` (fatal, never retried)
* connectivity problems -> ``NetworkError`` (retried by the caller)
* anything else -> ``VcsError``
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlsplit, urlunsplit

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from upstream_sync.config_schema import AuthConfig
from upstream_sync.errors import (
    AuthenticationError,
    ConfigError,
    NetworkError,
    VcsError,
)
from upstream_sync.retry import is_network_error

logger = logging.getLogger(__name__)

_AUTH_MARKERS = (
    "authentication failed",
    "permission denied (publickey",
    "could not read username",
    "could not read password",
    "invalid username or password",
    "access denied",
    "http basic: access denied",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class GitClient(Protocol):
    """Operations the sync pipeline needs from version control."""

    @property
    def working_dir(self) -> Path: ...  # pragma: no cover

    def configure_remote(self, name: str, url: str) -> None: ...  # pragma: no cover

    def fetch(self, remote: str, branch: str) -> None: ...  # pragma: no cover

    def checkout_new_branch(self, name: str, base: str) -> None: ...  # pragma: no cover

    def checkout(self, branch: str) -> None: ...  # pragma: no cover

    def current_branch(self) -> str: ...  # pragma: no cover

    def branch_exists(self, name: str) -> bool: ...  # pragma: no cover

    def add(self, path: str) -> None: ...  # pragma: no cover

    def commit(self, message: str) -> str: ...  # pragma: no cover

    def push(self, remote: str, branch: str) -> None: ...  # pragma: no cover

    def status(self, staged_only: bool = False) -> list[str]: ...  # pragma: no cover

    def delete_local_branch(self, name: str) -> None: ...  # pragma: no cover

    def rev_parse(self, ref: str) -> str: ...  # pragma: no cover

    def merge_base(self, a: str, b: str) -> str: ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def embed_credentials(url: str, auth: AuthConfig | None) -> str:
    """Return *url* with credentials for ``user-pass`` / ``token`` schemes.

    ``ssh`` auth (and no auth) leave the URL unchanged; the key is passed
    through ``GIT_SSH_COMMAND`` instead.

    Raises:
        ConfigError: Credentials were configured for a non-HTTP(S) URL.
    """
    if auth is None or auth.type == "ssh":
        return url

    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        raise ConfigError(
            f"{auth.type} authentication requires an http(s) repository URL",
            context={"scheme": parts.scheme},
        )

    if auth.type == "user-pass":
        user, secret = auth.username or "", auth.password or ""
    else:
        user, secret = auth.username or "oauth2", auth.token or ""

    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{quote(user, safe='')}:{quote(secret, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def redact_url(url: str) -> str:
    """Hide any password/token embedded in *url* for logging."""
    parts = urlsplit(url)
    if parts.password is None:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit(
        (parts.scheme, f"{parts.username}:***@{host}", parts.path, parts.query, parts.fragment)
    )


def ssh_environment(auth: AuthConfig | None) -> dict[str, str]:
    if auth is None or auth.type != "ssh" or not auth.ssh_key_path:
        return {}
    key = str(Path(auth.ssh_key_path).expanduser())
    return {"GIT_SSH_COMMAND": f"ssh -i {shlex.quote(key)} -o IdentitiesOnly=yes"}


def classify_git_error(exc: GitCommandError, action: str) -> Exception:
    """Map a failed git command onto the error taxonomy."""
    detail = f"{exc.stderr or ''} {exc.stdout or ''}".strip() or str(exc)
    lowered = detail.lower()
    context = {"action": action, "status": exc.status}
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthenticationError(
            f"Authentication failed during {action}", cause=exc, context=context
        )
    if is_network_error(exc):
        return NetworkError(f"Network error during {action}", cause=exc, context=context)
    return VcsError(f"git {action} failed: {detail}", cause=exc, context=context)


# ---------------------------------------------------------------------------
# GitPython implementation
# ---------------------------------------------------------------------------


class GitPythonClient:
    """``GitClient`` backed by a GitPython ``Repo``.

    Args:
        repo_path: Any path inside the working tree.
        auth: Optional credentials; ``ssh`` keys are applied to every
            command through the environment.
    """

    def __init__(self, repo_path: Path, auth: AuthConfig | None = None) -> None:
        try:
            self.repo = Repo(repo_path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise VcsError(f"Not a git repository: {repo_path}", cause=exc) from exc
        env = ssh_environment(auth)
        if env:
            self.repo.git.update_environment(**env)

    @property
    def working_dir(self) -> Path:
        return Path(self.repo.working_dir)

    def _git(self, action: str, *args: str) -> str:
        try:
            return getattr(self.repo.git, action.replace("-", "_"))(*args)
        except GitCommandError as exc:
            raise classify_git_error(exc, action) from exc

    # -- remotes --------------------------------------------------------

    def configure_remote(self, name: str, url: str) -> None:
        """Add remote *name* or update its URL if it already exists."""
        existing = {remote.name for remote in self.repo.remotes}
        if name in existing:
            logger.debug("Updating remote %s -> %s", name, redact_url(url))
            self._git("remote", "set-url", name, url)
        else:
            logger.debug("Adding remote %s -> %s", name, redact_url(url))
            self._git("remote", "add", name, url)

    def fetch(self, remote: str, branch: str) -> None:
        self._git("fetch", remote, branch)

    def push(self, remote: str, branch: str) -> None:
        self._git("push", remote, branch)

    # -- branches -------------------------------------------------------

    def checkout_new_branch(self, name: str, base: str) -> None:
        self._git("checkout", "-b", name, base)

    def checkout(self, branch: str) -> None:
        self._git("checkout", branch)

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").strip()

    def branch_exists(self, name: str) -> bool:
        return name in [head.name for head in self.repo.heads]

    def delete_local_branch(self, name: str) -> None:
        self._git("branch", "-D", name)

    def rev_parse(self, ref: str) -> str:
        return self._git("rev-parse", ref).strip()

    def merge_base(self, a: str, b: str) -> str:
        return self._git("merge-base", a, b).strip()

    # -- index ----------------------------------------------------------

    def add(self, path: str) -> None:
        """Stage additions, modifications and deletions under *path*."""
        self._git("add", "-A", "--", path)

    def commit(self, message: str) -> str:
        self._git("commit", "-m", message)
        return self.repo.head.commit.hexsha

    def status(self, staged_only: bool = False) -> list[str]:
        """Changed paths; with *staged_only* just what is in the index."""
        if staged_only:
            output = self._git("diff", "--cached", "--name-only")
            return [line for line in output.splitlines() if line.strip()]
        output = self._git("status", "--porcelain")
        return [line[3:] for line in output.splitlines() if len(line) > 3]

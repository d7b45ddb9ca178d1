"""Core collaborators: worker pool and the version-control client."""

from .async_utils import WorkerPool, adaptive_limit, gather_all, run_sync
from .git import GitClient, GitPythonClient, embed_credentials

__all__ = [
    "GitClient",
    "GitPythonClient",
    "WorkerPool",
    "adaptive_limit",
    "embed_credentials",
    "gather_all",
    "run_sync",
]

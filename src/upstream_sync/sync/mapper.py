"""Directory mapping resolution.

Each configured ``DirectoryMapping`` names an upstream directory and the
local directory it lands in.  ``PathMapper`` turns that into the three
concrete locations one run touches:

1. **upstream** -- the directory in the working tree while the temporary
   branch (upstream content) is checked out;
2. **staging** -- its copy inside the session's staging directory;
3. **target** -- the live local directory once the target branch is back.

HashIndex keys are repository-relative, built from the target path.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from upstream_sync.config_schema import DirectoryMapping


@dataclass(frozen=True)
class MappedDirectory:
    """Concrete locations for one mapping in one run."""

    mapping: DirectoryMapping
    upstream: Path
    staging: Path
    target: Path

    @property
    def label(self) -> str:
        if self.mapping.target_path == self.mapping.source:
            return self.mapping.source
        return f"{self.mapping.source} -> {self.mapping.target_path}"

    def index_key(self, rel: str) -> str:
        """Repository-relative HashIndex key for a path inside the mapping."""
        return str(PurePosixPath(self.mapping.target_path) / rel)

    def strip_key(self, key: str) -> str | None:
        """Inverse of ``index_key``; ``None`` for keys of other mappings."""
        prefix = f"{self.mapping.target_path}/"
        return key[len(prefix):] if key.startswith(prefix) else None


class PathMapper:
    """Resolve mappings against a repository root and a staging directory.

    Args:
        repo_root: Working tree root.
        staging_root: The session's staging directory.
    """

    def __init__(self, repo_root: Path, staging_root: Path) -> None:
        self.repo_root = repo_root
        self.staging_root = staging_root

    def resolve(self, mapping: DirectoryMapping) -> MappedDirectory:
        return MappedDirectory(
            mapping=mapping,
            upstream=self.repo_root / mapping.source,
            staging=self.staging_root / mapping.target_path,
            target=self.repo_root / mapping.target_path,
        )

    def resolve_all(self, mappings: list[DirectoryMapping]) -> list[MappedDirectory]:
        return [self.resolve(m) for m in mappings]

    def relative(self, path: Path) -> str:
        """*path* relative to the repository root, POSIX style."""
        return path.relative_to(self.repo_root).as_posix()

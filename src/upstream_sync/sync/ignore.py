"""Glob-style ignore rules.

Patterns match POSIX paths relative to the tree being walked.  A leading
``**/`` also matches at the top level, and a trailing ``/**`` also matches
the directory itself, so ``**/node_modules/**`` excludes ``node_modules``
at any depth before it is ever listed.
"""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Iterable
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_IGNORE_PATTERNS: tuple[str, ...] = (
    "**/node_modules/**",
    "**/.git/**",
    "**/dist/**",
    "**/build/**",
    "**/.upstream_sync/**",
)

IGNORE_FILE = ".syncignore"


def _variants(pattern: str) -> list[str]:
    variants = [pattern]
    if pattern.startswith("**/"):
        variants.append(pattern[3:])
    for candidate in list(variants):
        if candidate.endswith("/**"):
            variants.append(candidate[:-3])
    return variants


class IgnoreRules:
    """Compiled set of ignore patterns.

    Args:
        patterns: Glob patterns.  Order does not matter.
    """

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        self.patterns: tuple[str, ...] = tuple(sorted(set(patterns)))
        self._expanded = [v for p in self.patterns for v in _variants(p)]

    @classmethod
    def for_root(
        cls, root: Path, extra: Iterable[str] = (), use_defaults: bool = True
    ) -> IgnoreRules:
        """Defaults + *extra* + the root's ``.syncignore`` (if any)."""
        patterns = list(DEFAULT_IGNORE_PATTERNS) if use_defaults else []
        patterns.extend(extra)
        patterns.extend(load_ignore_file(root / IGNORE_FILE))
        return cls(patterns)

    def matches(self, rel_path: str, is_dir: bool = False) -> bool:
        path = rel_path.strip("/")
        if not path:
            return False
        for pattern in self._expanded:
            if fnmatch.fnmatchcase(path, pattern):
                return True
            if is_dir and fnmatch.fnmatchcase(f"{path}/", pattern):
                return True
        return False

    __call__ = matches


def load_ignore_file(path: Path) -> list[str]:
    """One pattern per line; blank lines and ``#`` comments are skipped."""
    if not path.is_file():
        return []
    patterns = []
    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            patterns.append(stripped)
    logger.debug("Loaded %d ignore patterns from %s", len(patterns), path)
    return patterns

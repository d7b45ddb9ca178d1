"""Pluggable version metadata for ``version`` conflicts.

A ``VersionSource`` returns a version identifier for a file, or ``None``
when it cannot tell.  A version conflict is raised only when both sides
yield an identifier and they differ, so the default ``NullVersionSource``
disables that conflict kind.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

_HEAD_BYTES = 64 * 1024


class VersionSource(Protocol):
    def version_of(self, path: Path) -> str | None: ...  # pragma: no cover


class NullVersionSource:
    """Never reports a version."""

    def version_of(self, path: Path) -> str | None:
        return None


class RegexVersionSource:
    """Extract a version string from the head of a file.

    Args:
        pattern: Regular expression.  The first group is used when the
            pattern has one, otherwise the whole match.
    """

    def __init__(self, pattern: str) -> None:
        self.regex = re.compile(pattern, re.MULTILINE)

    def version_of(self, path: Path) -> str | None:
        try:
            with open(path, "rb") as fh:
                head = fh.read(_HEAD_BYTES)
        except OSError as exc:
            logger.debug("Cannot read version from %s: %s", path, exc)
            return None
        match = self.regex.search(head.decode("utf-8", errors="replace"))
        if match is None:
            return None
        return match.group(1) if self.regex.groups else match.group(0)


def create_version_source(pattern: str | None) -> VersionSource:
    if pattern:
        return RegexVersionSource(pattern)
    return NullVersionSource()

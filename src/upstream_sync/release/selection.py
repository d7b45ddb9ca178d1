"""File selection strategies for canary exposure.

Every strategy takes the candidate files (POSIX paths relative to the
staged root, e.g. ``docs/guide.md``) and returns the subset to expose.
Randomised strategies draw from the ``random.Random`` they are given so a
seeded release picks the same files every time.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Sequence
from fnmatch import fnmatchcase
from pathlib import PurePosixPath

from upstream_sync.config_schema import GrayReleaseConfig, WeightedGroup
from upstream_sync.errors import ConfigError

logger = logging.getLogger(__name__)

Selector = Callable[[Sequence[str], GrayReleaseConfig, random.Random], list[str]]


def select_random_files(
    files: Sequence[str], percentage: float, rng: random.Random
) -> list[str]:
    """Uniform sample of ``max(1, floor(len * percentage / 100))`` files.

    Shuffles a copy (Fisher-Yates) and truncates.
    """
    count = max(1, int(len(files) * percentage // 100))
    shuffled = list(files)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    chosen = shuffled[:count]
    logger.debug("Selected %d of %d files (%.1f%%)", len(chosen), len(files), percentage)
    return chosen


def _by_percentage(
    files: Sequence[str], config: GrayReleaseConfig, rng: random.Random
) -> list[str]:
    return select_random_files(files, config.percentage, rng)


def _by_directory(
    files: Sequence[str], config: GrayReleaseConfig, rng: random.Random
) -> list[str]:
    if not config.canary_dirs:
        raise ConfigError("directory gray release requires canary_dirs")
    allowed = [PurePosixPath(d.strip("/")) for d in config.canary_dirs]
    chosen = [
        f for f in files if any(d == p for p in PurePosixPath(f).parents for d in allowed)
    ]
    for d in allowed:
        if not any(PurePosixPath(f).is_relative_to(d) for f in chosen):
            logger.warning("Canary directory has no staged files: %s", d)
    return chosen


def _by_pattern(
    files: Sequence[str], config: GrayReleaseConfig, rng: random.Random
) -> list[str]:
    if not config.file_patterns:
        raise ConfigError("file gray release requires file_patterns")
    return [f for f in files if any(fnmatchcase(f, p) for p in config.file_patterns)]


def _weighted_union(
    files: Sequence[str], groups: list[WeightedGroup], label: str, rng: random.Random
) -> list[str]:
    if not groups:
        raise ConfigError(f"{label} gray release requires at least one {label}")
    chosen: dict[str, None] = {}
    for group in groups:
        picked = select_random_files(files, group.percentage, rng)
        logger.info("  %s %s: %d files", label, group.name, len(picked))
        chosen.update(dict.fromkeys(picked))
    return list(chosen)


def _by_user_group(
    files: Sequence[str], config: GrayReleaseConfig, rng: random.Random
) -> list[str]:
    return _weighted_union(files, config.user_groups, "user group", rng)


def _by_region(
    files: Sequence[str], config: GrayReleaseConfig, rng: random.Random
) -> list[str]:
    return _weighted_union(files, config.regions, "region", rng)


SELECTORS: dict[str, Selector] = {
    "percentage": _by_percentage,
    "directory": _by_directory,
    "file": _by_pattern,
    "user-group": _by_user_group,
    "region": _by_region,
}


def select_files(
    files: Sequence[str], config: GrayReleaseConfig, rng: random.Random | None = None
) -> list[str]:
    """Apply the configured strategy.

    Raises:
        ConfigError: The strategy is unknown or missing its parameters.
    """
    try:
        selector = SELECTORS[config.strategy]
    except KeyError:
        raise ConfigError(f"Unsupported gray release strategy: {config.strategy}") from None
    if not files:
        return []
    return selector(files, config, rng or random.Random(config.seed))

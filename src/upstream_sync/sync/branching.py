"""Branch strategy automation.

When enabled, the sync lands on a working branch derived from a naming
pattern (``feature/{feature}-{date}`` and friends) instead of the
configured target branch.  The branch is created from ``base_branch`` if
it does not exist yet.  After the run the manager can switch back to the
branch that was checked out before, and delete the working branch once it
is merged into the base.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from datetime import date

from upstream_sync.config_schema import BranchStrategyConfig
from upstream_sync.core.git import GitClient

logger = logging.getLogger(__name__)

_DEFAULT_PATTERNS: dict[str, str] = {
    "feature": "feature/{feature}-{date}",
    "release": "release/v{release}-{date}",
    "hotfix": "hotfix/v{hotfix}-{date}",
    "develop": "develop",
}

# placeholder -> (environment variable, default)
_PLACEHOLDER_SOURCES: dict[str, tuple[str, str]] = {
    "feature": ("FEATURE_NAME", "feature"),
    "release": ("RELEASE_VERSION", "1.0.0"),
    "hotfix": ("HOTFIX_VERSION", "1.0.1"),
}


def render_branch_name(
    config: BranchStrategyConfig,
    env: Mapping[str, str] | None = None,
    today: date | None = None,
) -> str:
    """Fill the strategy's pattern.

    Placeholder values come from ``config.variables`` first, then the
    environment, then built-in defaults.
    """
    environ = os.environ if env is None else env
    pattern = config.branch_pattern or _DEFAULT_PATTERNS[config.strategy]
    values = {
        name: config.variables.get(name) or environ.get(var) or default
        for name, (var, default) in _PLACEHOLDER_SOURCES.items()
    }
    values["date"] = (today or date.today()).strftime("%Y%m%d")
    name = pattern
    for key, value in values.items():
        name = name.replace(f"{{{key}}}", value)
    return name


class BranchStrategyManager:
    """Establish and tear down the strategy's working branch.

    Args:
        git: Version-control client.
        config: Branch strategy settings.
    """

    def __init__(
        self,
        git: GitClient,
        config: BranchStrategyConfig,
        env: Mapping[str, str] | None = None,
        today: date | None = None,
    ) -> None:
        self.git = git
        self.config = config
        self.branch_name = render_branch_name(config, env, today)
        self.original_branch: str | None = None

    def establish(self) -> str:
        """Check out (creating if needed) the working branch and return it."""
        self.original_branch = self.git.current_branch()
        if self.git.branch_exists(self.branch_name):
            logger.info("Using existing %s branch %s", self.config.strategy, self.branch_name)
            self.git.checkout(self.branch_name)
        else:
            logger.info(
                "Creating %s branch %s from %s",
                self.config.strategy,
                self.branch_name,
                self.config.base_branch,
            )
            self.git.checkout_new_branch(self.branch_name, self.config.base_branch)
        return self.branch_name

    def is_merged(self, branch: str | None = None) -> bool:
        """True when *branch* is fully contained in the base branch."""
        name = branch or self.branch_name
        return self.git.merge_base(self.config.base_branch, name) == self.git.rev_parse(name)

    def finish(self) -> None:
        """Switch back and delete the merged working branch, as configured."""
        if self.config.auto_switch_back and self.original_branch:
            if self.git.current_branch() != self.original_branch:
                logger.info("Switching back to %s", self.original_branch)
                self.git.checkout(self.original_branch)

        if self.config.auto_delete_merged and self.branch_name != self.original_branch:
            if self.git.current_branch() == self.branch_name:
                logger.info("Not deleting %s: it is checked out", self.branch_name)
            elif self.is_merged():
                logger.info("Deleting merged branch %s", self.branch_name)
                self.git.delete_local_branch(self.branch_name)

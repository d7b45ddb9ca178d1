"""Gray release data contracts.

``ReleasePlan`` is the one mutable model in the project: the manager
advances its stage and progress while a release runs, and the monitor
thread reads it.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class ReleaseStage(str, Enum):
    PREPARING = "preparing"
    PREPARED = "prepared"
    SELECTED = "selected"
    CANARY = "canary"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"
    FAILED_TO_ROLLBACK = "failed-to-rollback"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {
        ReleaseStage.COMPLETED,
        ReleaseStage.FAILED,
        ReleaseStage.ROLLED_BACK,
        ReleaseStage.FAILED_TO_ROLLBACK,
    }
)


def new_release_id() -> str:
    return f"release-{datetime.now().strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(2)}"


class ReleasePlan(BaseModel):
    """State of one release attempt.

    Attributes:
        release_id: Identifier, also written to the rollback manifest.
        strategy: Selection strategy name (``full`` for a full release).
        directories: Repository-relative directories covered by the release.
        stage: Current stage.
        selected: Staged files chosen for canary exposure.
        total_files: Candidate files before selection.
        files_released: Files copied into the canary area so far.
        progress: Percent complete; never decreases.
        errors: Failure messages, oldest first.
        validation_seconds: Wall time of the validation command.
    """

    release_id: str = Field(default_factory=new_release_id)
    strategy: str
    directories: list[str] = Field(default_factory=list)
    stage: ReleaseStage = ReleaseStage.PREPARING
    selected: list[str] = Field(default_factory=list)
    total_files: int = 0
    files_released: int = 0
    progress: int = 0
    errors: list[str] = Field(default_factory=list)
    validation_seconds: float | None = None
    started_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    ended_at: str | None = None

    def advance(self, stage: ReleaseStage, progress: int | None = None) -> None:
        self.stage = stage
        if progress is not None:
            self.progress = max(self.progress, progress)
        if stage.is_terminal:
            self.ended_at = datetime.now(timezone.utc).isoformat()

    @property
    def success(self) -> bool:
        return self.stage == ReleaseStage.COMPLETED

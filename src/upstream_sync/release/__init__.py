"""Gray release: staged exposure, validation gating and rollback."""

from .manager import GrayReleaseManager
from .models import ReleasePlan, ReleaseStage
from .monitor import ReleaseMonitor, check_alerts
from .selection import SELECTORS, select_files, select_random_files
from .validation import ValidationResult, run_validation

__all__ = [
    "GrayReleaseManager",
    "ReleaseMonitor",
    "ReleasePlan",
    "ReleaseStage",
    "SELECTORS",
    "ValidationResult",
    "check_alerts",
    "run_validation",
    "select_files",
    "select_random_files",
]

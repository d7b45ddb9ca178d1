"""Release monitoring.

While a plan is in a non-terminal stage, ``ReleaseMonitor`` emits a status
snapshot every ``interval`` seconds and logs a warning for each alert
threshold it crosses.  It only observes: the plan's stage is never changed
from here.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TypedDict

from upstream_sync.config_schema import AlertThresholds
from upstream_sync.release.models import ReleasePlan

logger = logging.getLogger(__name__)


class StatusSnapshot(TypedDict):
    release_id: str
    stage: str
    progress: int
    files_released: int
    total_files: int
    error_count: int
    elapsed_seconds: float
    validation_seconds: float | None


def take_snapshot(plan: ReleasePlan, started: float, now: float | None = None) -> StatusSnapshot:
    elapsed = (time.monotonic() if now is None else now) - started
    return {
        "release_id": plan.release_id,
        "stage": plan.stage.value,
        "progress": plan.progress,
        "files_released": plan.files_released,
        "total_files": plan.total_files,
        "error_count": len(plan.errors),
        "elapsed_seconds": round(elapsed, 1),
        "validation_seconds": plan.validation_seconds,
    }


def check_alerts(snapshot: StatusSnapshot, thresholds: AlertThresholds) -> list[str]:
    """Alert messages for every threshold *snapshot* exceeds."""
    alerts: list[str] = []

    error_rate = snapshot["error_count"] / max(1, snapshot["total_files"]) * 100
    if error_rate > thresholds.error_rate:
        alerts.append(
            f"error rate {error_rate:.2f}% exceeds threshold {thresholds.error_rate:g}%"
        )

    validation = snapshot["validation_seconds"]
    baseline = thresholds.baseline_seconds
    if validation is not None and baseline:
        degradation = (validation - baseline) / baseline * 100
        if degradation > thresholds.performance_degradation:
            alerts.append(
                f"performance degraded {degradation:.2f}% over baseline "
                f"(threshold {thresholds.performance_degradation:g}%)"
            )

    if snapshot["elapsed_seconds"] > thresholds.max_duration_seconds:
        alerts.append(
            f"release running {snapshot['elapsed_seconds']:g}s, "
            f"over the {thresholds.max_duration_seconds:g}s limit"
        )
    return alerts


class ReleaseMonitor:
    """Background thread reporting on one release plan.

    Args:
        plan: Plan to observe.
        thresholds: Alert thresholds.
        interval: Seconds between snapshots.
    """

    def __init__(self, plan: ReleasePlan, thresholds: AlertThresholds, interval: float) -> None:
        self.plan = plan
        self.thresholds = thresholds
        self.interval = interval
        self.started = time.monotonic()
        self.snapshots: list[StatusSnapshot] = []
        self.alerts: list[str] = []
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self) -> StatusSnapshot:
        """Take one snapshot and log it along with any alerts."""
        snapshot = take_snapshot(self.plan, self.started)
        self.snapshots.append(snapshot)
        logger.info(
            "Gray release %s: stage=%s progress=%d%% files=%d/%d errors=%d elapsed=%.0fs",
            snapshot["release_id"],
            snapshot["stage"],
            snapshot["progress"],
            snapshot["files_released"],
            snapshot["total_files"],
            snapshot["error_count"],
            snapshot["elapsed_seconds"],
        )
        for alert in check_alerts(snapshot, self.thresholds):
            logger.warning("Alert for %s: %s", self.plan.release_id, alert)
            self.alerts.append(alert)
        return snapshot

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            if self.plan.stage.is_terminal:
                break
            self.tick()
        logger.info("Stopped monitoring %s", self.plan.release_id)

    def start(self) -> None:
        logger.info(
            "Monitoring %s every %gs", self.plan.release_id, self.interval
        )
        self._thread = threading.Thread(
            target=self._loop, name=f"monitor-{self.plan.release_id}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None

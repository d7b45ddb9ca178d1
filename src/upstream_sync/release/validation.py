"""Validation command runner for gray releases.

The configured command runs through the shell in the repository root with
``UPSTREAM_SYNC_CANARY_DIR`` pointing at the canary area.  A non-zero exit,
a timeout or a failure to start are all reported as a failed
``ValidationResult``; the runner itself never raises.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

OUTPUT_LIMIT = 5000


@dataclass(frozen=True)
class ValidationResult:
    passed: bool
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    error: str | None = None

    def describe(self) -> str:
        if self.error:
            return self.error
        return f"validation command exited with status {self.exit_code}"


ValidationRunner = Callable[[str, Path, Path, float], ValidationResult]


def run_validation(
    command: str, cwd: Path, canary_dir: Path, timeout: float
) -> ValidationResult:
    """Run *command* and report whether it passed."""
    env = {**os.environ, "UPSTREAM_SYNC_CANARY_DIR": str(canary_dir)}
    logger.info("Running validation command: %s", command)
    start = time.monotonic()
    try:
        proc = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return ValidationResult(
            passed=False,
            duration_seconds=timeout,
            error=f"validation command timed out after {timeout:g}s",
        )
    except OSError as exc:
        return ValidationResult(passed=False, error=f"validation command failed to start: {exc}")

    duration = round(time.monotonic() - start, 3)
    result = ValidationResult(
        passed=proc.returncode == 0,
        exit_code=proc.returncode,
        stdout=proc.stdout[:OUTPUT_LIMIT],
        stderr=proc.stderr[:OUTPUT_LIMIT],
        duration_seconds=duration,
    )
    if result.passed:
        logger.info("Validation passed in %.2fs", duration)
    else:
        logger.warning(
            "Validation failed (exit %s): %s", proc.returncode, result.stderr.strip()[:500]
        )
    return result

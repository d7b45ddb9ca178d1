"""Session-scoped context for one sync run.

A ``SyncSession`` owns everything a run creates: the temporary branch name,
the staging directory, stage timings, counters and the cleanup actions
that release its resources.  It is threaded explicitly through the
orchestrator instead of living in module state.

Resources are released by ``close()`` (or leaving the ``with`` block) in
reverse registration order.  Every cleanup action runs even if an earlier
one fails; failures are logged as warnings and kept in
``cleanup_errors``.
"""

from __future__ import annotations

import logging
import secrets
import shutil
import tempfile
import time
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

TEMP_BRANCH_PREFIX = "temp-sync-"


def new_session_id() -> str:
    return f"{datetime.now().strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(3)}"


class SyncSession:
    """State of one sync invocation.

    Args:
        upstream_url: Remote URL (credentials already embedded, if any).
        upstream_branch: Branch fetched from the remote.
        target_branch: Local branch receiving the changes.
        concurrency: Effective worker-pool size.
        session_id: Defaults to a timestamp plus random suffix.
    """

    def __init__(
        self,
        upstream_url: str,
        upstream_branch: str,
        target_branch: str,
        concurrency: int,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or new_session_id()
        self.upstream_url = upstream_url
        self.upstream_branch = upstream_branch
        self.target_branch = target_branch
        self.concurrency = concurrency
        self.temp_branch = f"{TEMP_BRANCH_PREFIX}{self.session_id}"
        self.staging_dir: Path | None = None

        self.step = 0
        self.current_stage: str | None = None
        self.timings: dict[str, float] = {}
        self.metrics: Counter[str] = Counter()
        self.started_at = datetime.now(timezone.utc).isoformat()
        self.cleanup_errors: list[str] = []
        self._cleanups: list[tuple[str, Callable[[], None]]] = []
        self._closed = False

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Number, log and time one pipeline stage."""
        self.step += 1
        self.current_stage = name
        logger.info("%d. %s", self.step, name)
        started = time.perf_counter()
        try:
            yield
        finally:
            self.timings[name] = round(time.perf_counter() - started, 3)

    # ------------------------------------------------------------------
    # Owned resources
    # ------------------------------------------------------------------

    def register_cleanup(self, label: str, action: Callable[[], None]) -> None:
        self._cleanups.append((label, action))

    def create_staging_dir(self) -> Path:
        """Create the staging directory outside the working tree."""
        if self.staging_dir is None:
            self.staging_dir = Path(
                tempfile.mkdtemp(prefix=f"upstream-sync-{self.session_id}-")
            )
            staging = self.staging_dir
            self.register_cleanup(
                f"remove staging directory {staging}",
                lambda: shutil.rmtree(staging) if staging.exists() else None,
            )
        return self.staging_dir

    def close(self) -> list[str]:
        """Run every cleanup action, newest first.  Safe to call twice."""
        if self._closed:
            return self.cleanup_errors
        self._closed = True
        while self._cleanups:
            label, action = self._cleanups.pop()
            try:
                action()
                logger.debug("Cleanup done: %s", label)
            except Exception as exc:
                message = f"{label}: {exc}"
                logger.warning("Cleanup step failed: %s", message)
                self.cleanup_errors.append(message)
        return self.cleanup_errors

    def __enter__(self) -> SyncSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

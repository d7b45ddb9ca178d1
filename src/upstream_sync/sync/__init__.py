"""Upstream subset sync engine.

Pulls selected directories from an upstream repository into the local
working tree, reconciles divergence, and stages the result for commit.

Architecture
------------
Change detection is **content-addressed**: every synced file's SHA-256
digest is persisted in a ``HashIndex`` after each run, so the next run
only stages files whose upstream bytes changed.  Divergence between the
staged upstream content and the live local tree is classified into typed
conflict records and resolved per record.

Modules:

- ``engine``    -- ``SyncOrchestrator``: runs the staged pipeline.
- ``session``   -- ``SyncSession``: per-run branch, staging dir, timings.
- ``hasher``    -- ``HashEngine``: streaming file and tree digests.
- ``cache``     -- ``TreeHashCache``: on-disk tree-hash cache with expiry.
- ``state``     -- ``HashIndexStore``: load/save the persisted index.
- ``ignore``    -- ``IgnoreRules``: glob ignore patterns and ``.syncignore``.
- ``mapper``    -- ``PathMapper``: upstream/staging/target locations.
- ``conflicts`` -- typed conflict records and their resolutions.
- ``resolver``  -- ``ConflictResolver``: detection and strategy selection.
- ``merger``    -- three-way merge via ``merge3`` and line reconciliation.
- ``versions``  -- pluggable version extraction.
- ``branching`` -- branch strategy automation.
- ``reporter``  -- human-readable and JSON report formatting.

Usage example
-------------
::

    from upstream_sync.config import load_config
    from upstream_sync.core import GitPythonClient
    from upstream_sync.sync import SyncOrchestrator, format_sync_report

    config = load_config().sync
    git = GitPythonClient(".", auth=config.auth)
    report = SyncOrchestrator(config, git).run()
    print(format_sync_report(report))
"""

from .engine import SyncOrchestrator
from .hasher import HashEngine
from .mapper import PathMapper
from .models import (
    ChangeKind,
    DiffEntry,
    DiffPreview,
    MappingResult,
    ResolutionOutcome,
    ResolutionStrategy,
    SyncReport,
)
from .reporter import (
    format_conflict_preview,
    format_diff_preview,
    format_sync_report,
    report_to_json,
)
from .resolver import ConflictPreview, ConflictResolver, DecisionSource
from .session import SyncSession
from .state import HashIndexStore

__all__ = [
    "ChangeKind",
    "ConflictPreview",
    "ConflictResolver",
    "DecisionSource",
    "DiffEntry",
    "DiffPreview",
    "HashEngine",
    "HashIndexStore",
    "MappingResult",
    "PathMapper",
    "ResolutionOutcome",
    "ResolutionStrategy",
    "SyncOrchestrator",
    "SyncReport",
    "SyncSession",
    "format_conflict_preview",
    "format_diff_preview",
    "format_sync_report",
    "report_to_json",
]

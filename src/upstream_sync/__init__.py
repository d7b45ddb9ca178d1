"""upstream-sync: pull a subset of an upstream repository into a local one.

Subsystems:

- ``upstream_sync.sync``    -- hash engine, conflict resolver and the sync
  orchestrator.
- ``upstream_sync.release`` -- gray (canary) release manager with rollback.
- ``upstream_sync.retry``   -- retry policy for network operations.
"""

__version__ = "0.4.0"

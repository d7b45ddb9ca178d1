"""HashIndex persistence.

The index maps repository-relative paths to the upstream digest recorded
by the last successful ``copy-to-staging`` stage.  It is stored as a plain
JSON object in ``<state_dir>/hash_index.json`` and written atomically, so
an interrupted run leaves the previous index intact.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from upstream_sync.errors import FilesystemError
from upstream_sync.file_handler import read_json, write_json_atomic

logger = logging.getLogger(__name__)

INDEX_FILE = "hash_index.json"


class HashIndexStore:
    """Load and save the persisted HashIndex.

    Args:
        state_dir: Directory holding the index (typically
            ``<repo>/.upstream_sync``).
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir

    @property
    def path(self) -> Path:
        return self._state_dir / INDEX_FILE

    def load(self) -> dict[str, str]:
        """Return the persisted index, or ``{}`` if none exists.

        A corrupt file is logged and treated as empty; the next
        successful run overwrites it.
        """
        if not self.path.exists():
            return {}
        try:
            data = read_json(self.path)
        except (FilesystemError, json.JSONDecodeError) as exc:
            logger.warning("Discarding unreadable hash index %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Discarding malformed hash index %s", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def save(self, index: dict[str, str]) -> None:
        write_json_atomic(self.path, index)
        logger.debug("Saved hash index with %d entries to %s", len(index), self.path)

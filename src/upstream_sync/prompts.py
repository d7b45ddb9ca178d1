"""Terminal prompts for interactive runs.

``TerminalDecisions`` answers ``prompt-user`` conflicts and
``confirm_preview`` approves the diff preview.  Both read one line at a
time from an injectable ``input`` function.  Conflicts are resolved from
worker threads, so prompts are serialised with a lock to keep one
question on screen at a time.

Non-interactive runs never construct these objects.
"""

from __future__ import annotations

import logging
import sys
import threading
from collections.abc import Callable
from typing import TextIO

from upstream_sync.sync.models import DiffPreview, ResolutionStrategy
from upstream_sync.sync.reporter import format_conflict_preview, format_diff_preview
from upstream_sync.sync.resolver import ConflictPreview

logger = logging.getLogger(__name__)

InputFunc = Callable[[str], str]

_CHOICES: dict[str, ResolutionStrategy | None] = {
    "s": ResolutionStrategy.USE_SOURCE,
    "k": ResolutionStrategy.KEEP_TARGET,
    "m": ResolutionStrategy.AUTO_MERGE,
    "x": None,
}

_lock = threading.Lock()


class TerminalDecisions:
    """Ask the operator how to resolve each conflict.

    Answers: ``s`` use source, ``k`` keep target, ``m`` auto-merge,
    ``x`` skip (leave unresolved).  ``S`` / ``K`` apply the choice to every
    remaining conflict without asking again.
    """

    def __init__(self, input_func: InputFunc = input, out: TextIO | None = None) -> None:
        self.input = input_func
        self.out = out or sys.stdout
        self.sticky: ResolutionStrategy | None = None

    def choose(self, preview: ConflictPreview) -> ResolutionStrategy | None:
        with _lock:
            if self.sticky is not None:
                return self.sticky
            print(format_conflict_preview(preview), file=self.out)
            while True:
                try:
                    answer = self.input(
                        "[s]ource / [k]eep target / [m]erge / [x] skip (S/K = all): "
                    ).strip()
                except EOFError:
                    logger.warning("No answer on stdin; leaving %s unresolved", preview.target)
                    return None
                if answer in ("S", "K"):
                    self.sticky = _CHOICES[answer.lower()]
                    return self.sticky
                if answer.lower() in _CHOICES:
                    return _CHOICES[answer.lower()]
                print(f"Unrecognised answer: {answer!r}", file=self.out)


def confirm_preview(
    previews: list[DiffPreview], input_func: InputFunc = input, out: TextIO | None = None
) -> bool:
    """Show the change listing and ask whether to apply it."""
    stream = out or sys.stdout
    with _lock:
        print(format_diff_preview(previews), file=stream)
        try:
            answer = input_func("Apply these changes? [y/N]: ").strip().lower()
        except EOFError:
            return False
    return answer in ("y", "yes")

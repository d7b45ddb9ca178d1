"""Text reconciliation and diff utilities for the ``auto-merge`` strategy.

Two modes:

* ``attempt_merge`` -- true three-way merge through ``merge3`` when a
  common ancestor is available.
* ``reconcile_lines`` -- two-way line reconciliation when it is not.
  Lines present on only one side are kept; regions both sides replaced
  differently become conflict hunks.

Conflict markers are ``<<<<<<< SOURCE``, ``=======``, ``>>>>>>> TARGET``.
Output containing markers counts as an unresolved merge.
"""

from __future__ import annotations

import difflib

from merge3 import Merge3

START_MARKER = "<<<<<<<"
MID_MARKER = "======="
END_MARKER = ">>>>>>>"
SOURCE_LABEL = "SOURCE"
TARGET_LABEL = "TARGET"


def has_conflict_markers(text: str) -> bool:
    return f"{START_MARKER} {SOURCE_LABEL}" in text


def attempt_merge(
    base_content: str,
    source_content: str,
    target_content: str,
) -> tuple[str, bool]:
    """Three-way merge of source and target changes against *base_content*.

    Returns:
        ``(merged_text, has_conflicts)``.
    """
    m3 = Merge3(
        base_content.splitlines(True),
        source_content.splitlines(True),
        target_content.splitlines(True),
    )
    merged_text = "".join(
        m3.merge_lines(
            name_a=SOURCE_LABEL,
            name_b=TARGET_LABEL,
            start_marker=START_MARKER,
            mid_marker=MID_MARKER,
            end_marker=END_MARKER,
        )
    )
    return merged_text, has_conflict_markers(merged_text)


def _terminated(lines: list[str]) -> list[str]:
    if lines and not lines[-1].endswith("\n"):
        return [*lines[:-1], lines[-1] + "\n"]
    return lines


def reconcile_lines(source_content: str, target_content: str) -> tuple[str, bool]:
    """Two-way reconciliation for files without a known common ancestor.

    Insertions and deletions seen from the target's point of view are
    resolved by keeping the extra lines (nothing is dropped).  Replaced
    regions produce a marker hunk with the source lines first.

    Returns:
        ``(merged_text, has_conflicts)``.
    """
    source_lines = source_content.splitlines(True)
    target_lines = target_content.splitlines(True)
    matcher = difflib.SequenceMatcher(None, target_lines, source_lines, autojunk=False)

    out: list[str] = []
    conflicted = False
    for tag, t1, t2, s1, s2 in matcher.get_opcodes():
        match tag:
            case "equal":
                out.extend(target_lines[t1:t2])
            case "insert":
                out.extend(source_lines[s1:s2])
            case "delete":
                out.extend(target_lines[t1:t2])
            case "replace":
                conflicted = True
                out.append(f"{START_MARKER} {SOURCE_LABEL}\n")
                out.extend(_terminated(source_lines[s1:s2]))
                out.append(f"{MID_MARKER}\n")
                out.extend(_terminated(target_lines[t1:t2]))
                out.append(f"{END_MARKER} {TARGET_LABEL}\n")
    return "".join(out), conflicted


def generate_diff(
    old_content: str,
    new_content: str,
    label_old: str = "target",
    label_new: str = "source",
    max_lines: int | None = None,
) -> str:
    """Unified diff between two strings, optionally truncated.

    Returns:
        The diff text; empty when the inputs are identical.  A truncated
        diff ends with a ``... (N more lines)`` line.
    """
    diff_lines = list(
        difflib.unified_diff(
            old_content.splitlines(True),
            new_content.splitlines(True),
            fromfile=label_old,
            tofile=label_new,
        )
    )
    if max_lines is not None and len(diff_lines) > max_lines:
        hidden = len(diff_lines) - max_lines
        diff_lines = _terminated(diff_lines[:max_lines])
        diff_lines.append(f"... ({hidden} more lines)\n")
    return "".join(diff_lines)

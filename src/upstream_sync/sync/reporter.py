"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync runs:

- ``format_sync_report`` -- full post-sync summary.
- ``format_diff_preview`` -- staging-vs-target listing shown before apply.
- ``format_conflict_preview`` -- one conflict for interactive review.
- ``report_to_json`` -- structured dict for ``--json`` output and webhooks.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import ChangeKind

if TYPE_CHECKING:
    from .models import DiffPreview, SyncReport
    from .resolver import ConflictPreview

CHANGE_SYMBOLS: dict[ChangeKind, str] = {
    ChangeKind.ADDED: "+",
    ChangeKind.REMOVED: "-",
    ChangeKind.CHANGED: "~",
    ChangeKind.TYPE_CHANGED: "!",
}

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_report(report: SyncReport) -> str:
    """Format a complete sync report as human-readable text.

    Sections are only included when they contain at least one entry.

    Args:
        report: The completed sync report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = f"Sync report for session {report.session_id}"
    if report.preview_only:
        header += " (PREVIEW ONLY)"
    lines.append(header)
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    changes = sum(len(p.entries) for p in report.previews)
    lines.append(
        f"Staged {report.staged_files} files, {changes} changes previewed, "
        f"{report.copied_count} copied, {len(report.outcomes)} conflicts "
        f"({len(report.unresolved)} unresolved)"
    )
    lines.append("")

    if report.mappings:
        lines.append("Mappings:")
        for m in report.mappings:
            arrow = m.source if m.source == m.target else f"{m.source} -> {m.target}"
            lines.append(
                f"  {arrow}: {len(m.copied)} copied, {m.resolved}/{m.conflicts} conflicts resolved"
            )
        lines.append("")

    if report.outcomes:
        lines.append("Conflicts:")
        for o in report.outcomes:
            strategy = o.strategy.value if o.strategy else "unresolved"
            status = "ok" if o.success else "FAILED"
            line = f"  [{o.kind}] {o.target}: {strategy} ({status})"
            if o.message and not o.success:
                line += f" -- {o.message}"
            lines.append(line)
        lines.append("")

    if report.release is not None:
        plan = report.release
        lines.append(
            f"Release {plan.release_id} ({plan.strategy}): {plan.stage.value}, "
            f"{len(plan.selected)} of {plan.total_files} files exposed"
        )
        for error in plan.errors:
            lines.append(f"  error: {error}")
        lines.append("")

    if not report.preview_only:
        lines.append(f"Commit: {report.commit or 'none (nothing staged)'}")
        lines.append(f"Pushed: {'yes' if report.pushed else 'no'}")
        lines.append("")

    if report.timings:
        lines.append("Timings:")
        for stage, seconds in report.timings.items():
            lines.append(f"  {stage}: {seconds:.3f}s")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Diff preview
# ------------------------------------------------------------------


def format_diff_preview(previews: list[DiffPreview]) -> str:
    """Format the per-mapping change listing.

    Each entry is shown as ``<symbol> path`` where the symbol is ``+``
    (added), ``-`` (removed), ``~`` (changed) or ``!`` (type changed).
    """
    lines: list[str] = []
    for preview in previews:
        lines.append(f"[{preview.mapping}]")
        if preview.is_empty:
            lines.append("  (no changes)")
        for entry in preview.entries:
            lines.append(f"  {CHANGE_SYMBOLS[entry.change]} {entry.path}")
        lines.append("")

    if not any(not p.is_empty for p in previews):
        lines.append("No changes needed.")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Conflict preview
# ------------------------------------------------------------------


def format_conflict_preview(preview: ConflictPreview) -> str:
    """Format a single conflict for interactive review."""
    lines = [f"Conflict ({preview.kind}): {preview.target}", f"  source: {preview.source}"]
    if preview.source_digest:
        lines.append(f"  source digest: {preview.source_digest[:12]}")
    if preview.target_digest:
        lines.append(f"  target digest: {preview.target_digest[:12]}")
    if preview.detail:
        lines.append(f"  {preview.detail}")
    if preview.diff:
        lines.append("")
        lines.append(preview.diff.rstrip())
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: SyncReport) -> dict:
    """Convert a sync report to a structured dict for JSON serialisation.

    Args:
        report: The sync report.

    Returns:
        Dict with session info, counts, and per-mapping details.
    """
    return {
        "session_id": report.session_id,
        "preview_only": report.preview_only,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "commit": report.commit,
        "pushed": report.pushed,
        "counts": {
            "staged": report.staged_files,
            "copied": report.copied_count,
            "conflicts": len(report.outcomes),
            "unresolved": len(report.unresolved),
        },
        "previews": {
            p.mapping: [{"path": e.path, "change": e.change.value} for e in p.entries]
            for p in report.previews
        },
        "mappings": [m.model_dump(mode="json") for m in report.mappings],
        "outcomes": [o.model_dump(mode="json") for o in report.outcomes],
        "release": report.release.model_dump(mode="json") if report.release else None,
        "timings": report.timings,
    }

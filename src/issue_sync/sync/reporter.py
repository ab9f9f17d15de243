"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync runs:

- ``format_sync_result`` -- post-run summary for one issue.
- ``format_dry_run_preview`` -- planned changes for a dry run.
- ``format_bulk_report`` -- one line per issue for ``sync_all``.
- ``format_conflict`` -- prompt text for interactive resolution.
- ``format_log_entries`` -- sync log query output.
- ``result_to_json`` / ``bulk_to_json`` -- structured dicts for MCP output.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Mapping

from .merger import generate_diff

if TYPE_CHECKING:
    from .models import Conflict, SyncLogEntry, SyncResult


def _show(value: Any) -> str:
    if value is None or value == "":
        return "(empty)"
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


# ------------------------------------------------------------------
# Human-readable reports
# ------------------------------------------------------------------


def format_sync_result(result: SyncResult) -> str:
    """Format a sync result as human-readable text.

    Sections are only included when they contain at least one entry.

    Args:
        result: The completed sync result.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = f"Sync of issue {result.issue_id}: {result.status.value.upper()}"
    if result.dry_run:
        header += " (DRY RUN)"
    lines.append(header)
    lines.append(f"Run: {result.run_id} ({result.final_state.value})")
    strategy = result.strategy.value
    if result.force:
        strategy += ", forced local"
    lines.append(f"Strategy: {strategy}")
    lines.append(f"Started: {result.started_at}")
    if result.completed_at:
        lines.append(f"Completed: {result.completed_at}")
    lines.append("")

    lines.append(
        f"{len(result.applied)} applied, {len(result.skipped)} skipped, "
        f"{len(result.errors)} errors"
    )
    lines.append("")

    if result.applied:
        lines.append("Planned:" if result.dry_run else "Applied:")
        for resolved in result.applied:
            targets = ", ".join(resolved.targets) if resolved.targets else "-"
            lines.append(
                f"  {resolved.field} = {_show(resolved.value)} "
                f"-> {targets} ({resolved.rationale})"
            )
        lines.append("")

    if result.skipped:
        lines.append("Skipped:")
        for conflict in result.skipped:
            note = f" ({conflict.note})" if conflict.note else ""
            lines.append(
                f"  {conflict.field}: local={_show(conflict.local_value)} "
                f"{conflict.system}={_show(conflict.remote_value)}{note}"
            )
        lines.append("")

    if result.errors:
        lines.append("Errors:")
        for error in result.errors:
            where = error.system or "-"
            fields = f" [{', '.join(error.fields)}]" if error.fields else ""
            lines.append(f"  [{error.kind}] {where}{fields}: {error.message}")
        lines.append("")

    if result.needs_relink:
        lines.append(
            "Needs re-linking: " + ", ".join(result.needs_relink)
        )
        lines.append("")

    if result.warnings:
        lines.append("Warnings:")
        for warning in result.warnings:
            lines.append(f"  {warning}")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def format_dry_run_preview(result: SyncResult) -> str:
    """Format the planned changes of a dry run.

    Args:
        result: A dry-run result.

    Returns:
        Multi-line formatted string listing what would change.
    """
    lines = [f"Dry run for issue {result.issue_id} -- no changes applied", ""]
    if not result.applied and not result.skipped:
        lines.append("Nothing to sync.")
    for resolved in result.applied:
        targets = ", ".join(resolved.targets) if resolved.targets else "-"
        lines.append(
            f"  would set {resolved.field} = {_show(resolved.value)} on {targets}"
        )
    for conflict in result.skipped:
        lines.append(f"  would skip {conflict.field} ({conflict.note or 'unresolved'})")
    return "\n".join(lines) + "\n"


def format_bulk_report(results: Mapping[str, SyncResult]) -> str:
    """One line per issue plus a status tally."""
    counts: dict[str, int] = {}
    lines: list[str] = []
    for issue_id, result in results.items():
        counts[result.status.value] = counts.get(result.status.value, 0) + 1
        lines.append(
            f"  {issue_id}: {result.status.value} "
            f"({len(result.applied)} applied, {len(result.skipped)} skipped, "
            f"{len(result.errors)} errors)"
        )
    tally = ", ".join(f"{n} {status}" for status, n in sorted(counts.items()))
    header = f"Synced {len(results)} issues: {tally or 'nothing to do'}"
    return "\n".join([header, *lines]) + "\n"


def format_conflict(conflict: Conflict) -> str:
    """Render a conflict for a human to decide on.

    Free-text values include a unified diff between the local and remote
    versions.
    """
    lines = [
        f"Conflict on '{conflict.field}' (local vs {conflict.system})",
        f"  base:   {_show(conflict.base_value)}",
        f"  local:  {_show(conflict.local_value)}",
        f"  remote: {_show(conflict.remote_value)}",
    ]
    if isinstance(conflict.local_value, str) and isinstance(
        conflict.remote_value, str
    ):
        if "\n" in conflict.local_value or "\n" in conflict.remote_value:
            diff = generate_diff(
                conflict.local_value,
                conflict.remote_value,
                label_old="local",
                label_new=conflict.system,
            )
            if diff:
                lines.append("")
                lines.append(diff.rstrip())
    lines.append("")
    lines.append("Choose: local, remote, skip, defer, or enter a value.")
    return "\n".join(lines)


def format_log_entries(entries: list[SyncLogEntry]) -> str:
    if not entries:
        return "No sync log entries found."
    lines = []
    for entry in entries:
        fields = ", ".join(change.field for change in entry.changes) or "-"
        lines.append(
            f"{entry.timestamp} {entry.issue_id} {entry.run_id} "
            f"{entry.status} [{entry.strategy}] fields: {fields}"
        )
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def result_to_json(result: SyncResult) -> dict[str, Any]:
    """Convert a sync result to a JSON-serialisable dict.

    Args:
        result: The sync result.

    Returns:
        Dict suitable for MCP ``structuredContent``.
    """
    data = result.model_dump(mode="json")
    data["exit_code"] = result.exit_code
    data["summary"] = {
        "applied": len(result.applied),
        "skipped": len(result.skipped),
        "errors": len(result.errors),
    }
    return data


def bulk_to_json(results: Mapping[str, SyncResult]) -> dict[str, Any]:
    return {
        "total": len(results),
        "results": {
            issue_id: result_to_json(result) for issue_id, result in results.items()
        },
    }

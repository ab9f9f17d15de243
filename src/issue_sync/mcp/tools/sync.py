"""MCP tool handlers for issue synchronization.

Defines three tools:

- ``issue_sync`` -- run one sync for an issue id (with optional dry-run).
- ``issue_sync_all`` -- sync several issue ids in parallel.
- ``issue_sync_log`` -- query the sync log by issue id and time range.

There is no resolution callback over MCP, so ``manual`` and
``interactive`` runs defer every conflict and report them for a later run.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import mcp.types as types

from ...core.async_utils import run_sync, run_sync_limited
from ...errors import IssueSyncError
from ...sync.engine import SyncEngine, SyncOptions
from ...sync.models import ResolutionStrategy, SyncStatus
from ...sync.reporter import (
    bulk_to_json,
    format_bulk_report,
    format_dry_run_preview,
    format_log_entries,
    format_sync_result,
    result_to_json,
)
from .errors import build_error_response, error_response_for

logger = logging.getLogger(__name__)

MAX_LOG_LIMIT = 500
_STRATEGIES = [s.value for s in ResolutionStrategy]


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


SYNC_TOOLS: list[types.Tool] = [
    types.Tool(
        name="issue_sync",
        description=(
            "Synchronize one issue between its local record, GitHub and Jira "
            "using three-way detection against the last synced state. "
            "Conflicts are resolved with the given strategy; manual and "
            "interactive strategies defer conflicts and report them."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=True,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "issue_id": {
                    "type": "string",
                    "description": "Local issue id (record file name without .md)",
                },
                "strategy": {
                    "type": "string",
                    "enum": _STRATEGIES,
                    "description": "Conflict strategy; defaults to the configured one",
                },
                "force": {
                    "type": "boolean",
                    "default": False,
                    "description": "Local values win every conflict; keep writes that succeeded",
                },
                "dry_run": {
                    "type": "boolean",
                    "default": False,
                    "description": "Preview changes without applying them",
                },
            },
            "required": ["issue_id"],
        },
    ),
    types.Tool(
        name="issue_sync_all",
        description=(
            "Synchronize several issues in parallel. Duplicate ids are "
            "synced once. Returns one result per issue."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=True,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "issue_ids": {
                    "type": "array",
                    "items": {"type": "string"},
                    "minItems": 1,
                    "description": "Local issue ids to sync",
                },
                "strategy": {
                    "type": "string",
                    "enum": _STRATEGIES,
                    "description": "Conflict strategy; defaults to the configured one",
                },
                "force": {
                    "type": "boolean",
                    "default": False,
                    "description": "Local values win every conflict; keep writes that succeeded",
                },
            },
            "required": ["issue_ids"],
        },
    ),
    types.Tool(
        name="issue_sync_log",
        description=(
            "Show past sync runs -- outcome, strategy and changed fields -- "
            "optionally filtered by issue id and time range."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "issue_id": {
                    "type": "string",
                    "description": "Only runs for this issue",
                },
                "since": {
                    "type": "string",
                    "description": "ISO 8601 timestamp; only runs at or after it",
                },
                "until": {
                    "type": "string",
                    "description": "ISO 8601 timestamp; only runs at or before it",
                },
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": MAX_LOG_LIMIT,
                    "default": 50,
                    "description": "Newest runs to return",
                },
            },
            "required": [],
        },
    ),
]

SYNC_TOOL_NAMES = frozenset(tool.name for tool in SYNC_TOOLS)


# ---------------------------------------------------------------------------
# Tool handler
# ---------------------------------------------------------------------------


async def handle_sync_tool(
    name: str,
    arguments: dict[str, Any] | None,
    engine: SyncEngine,
) -> types.CallToolResult:
    """Dispatch and execute a sync tool.

    Args:
        name: Tool name (``issue_sync``, ``issue_sync_all`` or ``issue_sync_log``).
        arguments: Tool arguments dict.
        engine: Configured SyncEngine instance.

    Returns:
        ``CallToolResult`` with tool output or error details.
    """
    args = arguments or {}

    try:
        match name:
            case "issue_sync":
                return await _handle_issue_sync(args, engine)
            case "issue_sync_all":
                return await _handle_issue_sync_all(args, engine)
            case "issue_sync_log":
                return await _handle_issue_sync_log(args, engine)
            case _:
                raise ValueError(f"Unknown sync tool: {name}")

    except ValueError as exc:
        return build_error_response(
            "validation_error",
            str(exc),
            "Check parameter values and retry.",
        )
    except IssueSyncError as exc:
        logger.warning("Sync tool %s failed: %s", name, exc)
        return error_response_for(exc)
    except Exception as exc:
        logger.exception("Sync tool error: %s", exc)
        return build_error_response(
            "server_error",
            str(exc),
            "Check the issue-sync configuration and remote connectivity.",
        )


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _options(args: dict[str, Any], *, dry_run: bool = False) -> SyncOptions:
    strategy = args.get("strategy")
    if strategy is not None:
        strategy = ResolutionStrategy.parse(strategy)
    return SyncOptions(
        strategy=strategy,
        force=bool(args.get("force", False)),
        dry_run=dry_run,
    )


def _timestamp(args: dict[str, Any], key: str) -> datetime | None:
    raw = args.get(key)
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"{key} must be an ISO 8601 timestamp, got '{raw}'") from None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Individual handlers
# ---------------------------------------------------------------------------


async def _handle_issue_sync(
    args: dict[str, Any],
    engine: SyncEngine,
) -> types.CallToolResult:
    """Handle the ``issue_sync`` tool."""
    issue_id = str(args.get("issue_id") or "").strip()
    if not issue_id:
        return build_error_response(
            "validation_error",
            "issue_id is required",
            "Provide the 'issue_id' parameter with a local issue id.",
        )

    dry_run = bool(args.get("dry_run", False))
    options = _options(args, dry_run=dry_run)

    result = await run_sync_limited(engine.sync, issue_id, options)

    if dry_run:
        text = format_dry_run_preview(result)
    else:
        text = format_sync_result(result)

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent=result_to_json(result),
        isError=result.status == SyncStatus.FAILED,
    )


async def _handle_issue_sync_all(
    args: dict[str, Any],
    engine: SyncEngine,
) -> types.CallToolResult:
    """Handle the ``issue_sync_all`` tool."""
    issue_ids = args.get("issue_ids")
    if not isinstance(issue_ids, list) or not issue_ids:
        return build_error_response(
            "validation_error",
            "issue_ids must be a non-empty list",
            "Provide 'issue_ids' as a list of local issue ids.",
        )
    cleaned = [str(i).strip() for i in issue_ids if str(i).strip()]
    if not cleaned:
        return build_error_response(
            "validation_error",
            "issue_ids contains only blank ids",
            "Provide at least one non-empty issue id.",
        )

    options = _options(args)
    # sync_all runs its own worker pool
    results = await run_sync(engine.sync_all, cleaned, options)

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=format_bulk_report(results))],
        structuredContent=bulk_to_json(results),
    )


async def _handle_issue_sync_log(
    args: dict[str, Any],
    engine: SyncEngine,
) -> types.CallToolResult:
    """Handle the ``issue_sync_log`` tool."""
    since = _timestamp(args, "since")
    until = _timestamp(args, "until")
    if since and until and since > until:
        raise ValueError("since must not be later than until")

    try:
        limit = int(args.get("limit", 50))
    except (TypeError, ValueError):
        raise ValueError(f"limit must be an integer, got {args.get('limit')!r}") from None
    if not 1 <= limit <= MAX_LOG_LIMIT:
        raise ValueError(f"limit must be between 1 and {MAX_LOG_LIMIT}")

    entries = await run_sync(
        engine.sync_log.query,
        issue_id=args.get("issue_id") or None,
        since=since,
        until=until,
        limit=limit,
    )

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=format_log_entries(entries))],
        structuredContent={
            "count": len(entries),
            "entries": [entry.model_dump(mode="json") for entry in entries],
        },
    )

"""Structured error responses for MCP tool handlers.

Every error carries a corrective action so an agent can recover without
human help.
"""

import mcp.types as types

from ...errors import (
    AuthError,
    IssueSyncError,
    NotFoundError,
    RecordNotFoundError,
    RemoteError,
    RunInProgressError,
)


def build_error_response(
    error_type: str, message: str, corrective_action: str
) -> types.CallToolResult:
    """Build a structured error response with corrective action.

    Args:
        error_type: Error category (validation_error, not_found, busy,
            auth_error, remote_error, server_error)
        message: Human-readable error description
        corrective_action: Specific action the agent can take to resolve the error

    Returns:
        CallToolResult with isError=True

    Examples:
        >>> build_error_response("not_found", "No local record for WID-9", "Check the issue id.")
        CallToolResult(content=[TextContent(...)], isError=True)
    """
    error_text = f"Error ({error_type}): {message}\n\nAction: {corrective_action}"

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=error_text)],
        isError=True,
    )


def error_response_for(exc: IssueSyncError) -> types.CallToolResult:
    """Translate a sync exception into a structured error response."""
    match exc:
        case RecordNotFoundError():
            return build_error_response(
                "not_found",
                str(exc),
                "Check the issue id against the records directory.",
            )
        case RunInProgressError():
            return build_error_response(
                "busy",
                str(exc),
                "Wait for the running sync of this issue to finish, then retry.",
            )
        case AuthError():
            return build_error_response(
                "auth_error",
                str(exc),
                f"Check the {exc.system or 'remote'} credentials in the environment or config.",
            )
        case NotFoundError():
            return build_error_response(
                "not_found",
                str(exc),
                "Fix the issue link in the local record's front matter.",
            )
        case RemoteError():
            return build_error_response(
                "remote_error",
                str(exc),
                "Retry later; check remote availability if the error persists.",
            )
        case _:
            return build_error_response(
                "server_error",
                str(exc),
                "Check the issue-sync configuration and log file.",
            )

"""MCP tool handlers for issue-sync.

Tools wrap the blocking ``SyncEngine`` with async handlers, text reports
and structured error responses.
"""

from .errors import build_error_response, error_response_for
from .sync import SYNC_TOOL_NAMES, SYNC_TOOLS, handle_sync_tool

__all__ = [
    "build_error_response",
    "error_response_for",
    "SYNC_TOOLS",
    "SYNC_TOOL_NAMES",
    "handle_sync_tool",
]

"""MCP Server for issue synchronization using stdio transport.

This module implements the Model Context Protocol server that lets AI
agents run three-way syncs between local issue records, GitHub and Jira.

Transport: stdio (for Claude Desktop/Code integration)
Protocol: JSON-RPC 2.0 over MCP
"""

import argparse
import asyncio
import logging
import sys

import mcp.server.stdio
import mcp.types as types
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from .. import __version__
from ..config_loader import ensure_config, load_unified_config
from ..logger import DEFAULT_MCP_LOG_FILE, setup_logging
from ..sync.engine import SyncEngine
from ..sync.models import ResolutionStrategy
from .lifespan import server_lifespan
from .tools import SYNC_TOOL_NAMES, SYNC_TOOLS, build_error_response, handle_sync_tool

logger = logging.getLogger(__name__)

# Initialize server instance
server = Server("issue-sync")

# Global engine instance (initialized in lifespan)
_engine: SyncEngine | None = None


# ---------------------------------------------------------------------------
# Global accessors
# ---------------------------------------------------------------------------


def get_engine() -> SyncEngine:
    """Get the global SyncEngine instance.

    Raises:
        RuntimeError: If the engine is not initialized
    """
    if _engine is None:
        raise RuntimeError("SyncEngine not initialized. Server lifespan not started.")
    return _engine


def set_engine(engine: SyncEngine | None) -> None:
    """Set the global SyncEngine instance, or None to clear it."""
    global _engine
    _engine = engine


# ---------------------------------------------------------------------------
# MCP protocol handlers
# ---------------------------------------------------------------------------


@server.list_tools()
async def handle_list_tools() -> list[types.Tool]:
    """List available sync tools."""
    return list(SYNC_TOOLS)


@server.call_tool()
async def handle_call_tool(
    name: str, arguments: dict | None
) -> types.CallToolResult:
    """Handle tool execution.

    Args:
        name: The name of the tool to execute.
        arguments: Tool arguments (optional).

    Returns:
        CallToolResult with tool output content and optional isError flag.
    """
    if name not in SYNC_TOOL_NAMES:
        return build_error_response(
            "unknown_tool",
            f"Unknown tool: {name}",
            "Use list_tools to see available tools.",
        )
    return await handle_sync_tool(name, arguments, get_engine())


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------


def _configure_logging(log_file: str | None, debug: bool) -> None:
    """Set up MCP-mode logging, honoring the YAML ``logging`` section."""
    level = None
    try:
        section = load_unified_config().logging
    except (OSError, ValueError):
        # The lifespan reports config errors once logging is up
        section = None
    if section is not None:
        if "level" in section.model_fields_set:
            level = section.level
        log_file = log_file or section.file
    setup_logging(mode="mcp", debug=debug, log_file=log_file, level=level)


async def main(config_overrides: dict | None = None):
    """Run the MCP server with stdio transport.

    Sets up logging for MCP mode (file only, never stdout), builds the
    sync engine via the lifespan manager, and serves JSON-RPC over stdio.

    Args:
        config_overrides: Optional dict with config values to override
            (strategy, records_dir, state_dir, insecure, debug, log_file)
    """
    overrides = dict(config_overrides or {})
    log_file = overrides.pop("log_file", None)

    # Must run before stdio_server so nothing reaches stdout
    _configure_logging(log_file, overrides.get("debug", False))

    # set_engine is called here rather than inside the lifespan so that
    # running this file as __main__ still updates the module-level engine.
    async with server_lifespan(config_overrides=overrides or None) as ctx:
        set_engine(ctx["engine"])
        try:
            async with mcp.server.stdio.stdio_server() as (
                read_stream,
                write_stream,
            ):
                init_options = InitializationOptions(
                    server_name="issue-sync",
                    server_version=__version__,
                    capabilities=server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                )
                await server.run(read_stream, write_stream, init_options)
        finally:
            set_engine(None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="issue-sync-mcp",
        description="Issue Sync MCP Server - three-way sync of local issue records with GitHub and Jira",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  # Run with default config (from .env or .issue_sync/config.yml)
  issue-sync-mcp

  # Resolve conflicts by merging unless a tool call says otherwise
  issue-sync-mcp --strategy merge

  # Custom record and state locations
  issue-sync-mcp --records-dir docs/issues --state-dir /var/lib/issue-sync

  # Write a commented starter config and exit
  issue-sync-mcp --init-config

Note: This server uses stdio transport for JSON-RPC communication with MCP clients.
All user-facing messages are written to stderr. Logs go to {DEFAULT_MCP_LOG_FILE}
unless --log-file or LOG_FILE says otherwise.
        """,
    )
    parser.add_argument(
        "--strategy",
        choices=[s.value for s in ResolutionStrategy],
        help="Default conflict strategy (takes precedence over ISSUE_SYNC_STRATEGY and config files)",
    )
    parser.add_argument(
        "--records-dir",
        help="Directory of local issue records (Markdown with YAML front matter)",
    )
    parser.add_argument(
        "--state-dir",
        help="Directory for base snapshots, backups and the sync log",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip SSL certificate verification (use only for development)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log at DEBUG level",
    )
    parser.add_argument(
        "--log-file",
        help=f"Log file path (default: {DEFAULT_MCP_LOG_FILE})",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Create .issue_sync/config.yml if no config file exists, then exit",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"issue-sync version {__version__}",
    )
    return parser


def run() -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    args = build_parser().parse_args()

    if args.init_config:
        path = ensure_config()
        print(f"Config file: {path}", file=sys.stderr)
        return

    config_overrides = {}
    if args.strategy:
        config_overrides["strategy"] = args.strategy
    if args.records_dir:
        config_overrides["records_dir"] = args.records_dir
    if args.state_dir:
        config_overrides["state_dir"] = args.state_dir
    if args.insecure:
        config_overrides["insecure"] = True
    if args.debug:
        config_overrides["debug"] = True
    if args.log_file:
        config_overrides["log_file"] = args.log_file

    if config_overrides:
        print(
            f"Config overrides from CLI: {', '.join(config_overrides)}",
            file=sys.stderr,
        )

    try:
        asyncio.run(main(config_overrides=config_overrides or None))
    except RuntimeError:
        # Error already printed to stderr by lifespan manager
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    run()

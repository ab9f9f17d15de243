"""Tests for the MCP server layer: tool listing, routing and the CLI entry.

Handler behavior is covered in tests/test_mcp/tools/test_sync.py; this
file only tests what server.py adds on top.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import mcp.types as types
import pytest

import issue_sync.mcp.server as server_module
from issue_sync import __version__
from issue_sync.config_schema import LoggingConfig, UnifiedConfig
from issue_sync.mcp.server import (
    build_parser,
    get_engine,
    handle_call_tool,
    handle_list_tools,
    run,
    set_engine,
)

MODULE = "issue_sync.mcp.server"


@pytest.fixture
def engine():
    engine = MagicMock()
    set_engine(engine)
    yield engine
    set_engine(None)


# ---------------------------------------------------------------------------
# Global accessors
# ---------------------------------------------------------------------------


def test_get_engine_before_startup():
    set_engine(None)
    with pytest.raises(RuntimeError, match="not initialized"):
        get_engine()


def test_set_and_get_engine(engine):
    assert get_engine() is engine


# ---------------------------------------------------------------------------
# Protocol handlers
# ---------------------------------------------------------------------------


async def test_list_tools():
    tools = await handle_list_tools()
    assert [t.name for t in tools] == ["issue_sync", "issue_sync_all", "issue_sync_log"]


async def test_unknown_tool(engine):
    result = await handle_call_tool("wiki_get", {})
    assert result.isError is True
    assert result.content[0].text.startswith("Error (unknown_tool): Unknown tool: wiki_get")


async def test_routes_to_sync_handler(engine):
    expected = types.CallToolResult(content=[])
    with patch(f"{MODULE}.handle_sync_tool", new=AsyncMock(return_value=expected)) as handler:
        result = await handle_call_tool("issue_sync", {"issue_id": "WID-1"})
    assert result is expected
    handler.assert_awaited_once_with("issue_sync", {"issue_id": "WID-1"}, engine)


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_yaml_level_and_file(self):
        unified = UnifiedConfig(logging=LoggingConfig(level="DEBUG", file="/tmp/x.log"))
        with (
            patch(f"{MODULE}.load_unified_config", return_value=unified),
            patch(f"{MODULE}.setup_logging") as setup,
        ):
            server_module._configure_logging(None, False)
        setup.assert_called_once_with(
            mode="mcp", debug=False, log_file="/tmp/x.log", level="DEBUG"
        )

    def test_default_level_left_to_mode(self):
        with (
            patch(f"{MODULE}.load_unified_config", return_value=UnifiedConfig()),
            patch(f"{MODULE}.setup_logging") as setup,
        ):
            server_module._configure_logging("/tmp/cli.log", True)
        setup.assert_called_once_with(
            mode="mcp", debug=True, log_file="/tmp/cli.log", level=None
        )

    def test_broken_config_still_sets_up_logging(self):
        with (
            patch(f"{MODULE}.load_unified_config", side_effect=ValueError("bad")),
            patch(f"{MODULE}.setup_logging") as setup,
        ):
            server_module._configure_logging(None, False)
        setup.assert_called_once()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.strategy is None
        assert args.insecure is False
        assert args.init_config is False

    def test_options(self):
        args = build_parser().parse_args(
            ["--strategy", "merge", "--records-dir", "docs/issues", "--debug"]
        )
        assert args.strategy == "merge"
        assert args.records_dir == "docs/issues"
        assert args.debug is True

    def test_rejects_unknown_strategy(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--strategy", "newest"])

    def test_version(self, capsys):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--version"])
        assert __version__ in capsys.readouterr().out


class TestRun:
    def test_init_config(self, monkeypatch, capsys):
        monkeypatch.setattr("sys.argv", ["issue-sync-mcp", "--init-config"])
        with patch(f"{MODULE}.ensure_config", return_value="/work/.issue_sync/config.yml"):
            run()
        assert "Config file: /work/.issue_sync/config.yml" in capsys.readouterr().err

    def test_overrides_passed_to_main(self, monkeypatch):
        monkeypatch.setattr(
            "sys.argv",
            ["issue-sync-mcp", "--strategy", "local_wins", "--insecure", "--log-file", "x.log"],
        )
        with (
            patch(f"{MODULE}.main", new=MagicMock(return_value="coro")) as main,
            patch(f"{MODULE}.asyncio.run") as asyncio_run,
        ):
            run()
        main.assert_called_once_with(
            config_overrides={"strategy": "local_wins", "insecure": True, "log_file": "x.log"}
        )
        asyncio_run.assert_called_once_with("coro")

    def test_config_error_exits_1(self, monkeypatch):
        monkeypatch.setattr("sys.argv", ["issue-sync-mcp"])
        with (
            patch(f"{MODULE}.main", new=MagicMock()),
            patch(f"{MODULE}.asyncio.run", side_effect=RuntimeError("Configuration error")),
        ):
            with pytest.raises(SystemExit) as exc_info:
                run()
        assert exc_info.value.code == 1

    def test_interrupt_exits_0(self, monkeypatch):
        monkeypatch.setattr("sys.argv", ["issue-sync-mcp"])
        with (
            patch(f"{MODULE}.main", new=MagicMock()),
            patch(f"{MODULE}.asyncio.run", side_effect=KeyboardInterrupt),
        ):
            with pytest.raises(SystemExit) as exc_info:
                run()
        assert exc_info.value.code == 0

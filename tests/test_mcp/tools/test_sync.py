"""Tests for the issue_sync, issue_sync_all and issue_sync_log MCP tools.

The handlers run against a real SyncEngine over a temporary record store
and in-memory remotes.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import mcp.types as types
import pytest

from issue_sync.errors import RunInProgressError
from issue_sync.mcp.tools.sync import (
    MAX_LOG_LIMIT,
    SYNC_TOOL_NAMES,
    SYNC_TOOLS,
    handle_sync_tool,
)

ISSUE = "WID-1"


def _text(result: types.CallToolResult) -> str:
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return content.text


@pytest.fixture
def jira(fake_remote):
    return fake_remote("jira", {"title": "Widget"})


@pytest.fixture
def engine(make_engine, jira, seed_issue):
    seed_issue(ISSUE, {"title": "Widget v2", "jira": "WID-1"}, base={"title": "Widget"})
    return make_engine({"jira": jira})


class TestToolDefinitions:
    def test_names(self):
        assert SYNC_TOOL_NAMES == {"issue_sync", "issue_sync_all", "issue_sync_log"}

    def test_strategy_enum_lists_every_strategy(self):
        tool = next(t for t in SYNC_TOOLS if t.name == "issue_sync")
        assert set(tool.inputSchema["properties"]["strategy"]["enum"]) == {
            "local_wins",
            "remote_wins",
            "merge",
            "manual",
            "interactive",
        }
        assert tool.inputSchema["required"] == ["issue_id"]

    def test_log_tool_is_read_only(self):
        tool = next(t for t in SYNC_TOOLS if t.name == "issue_sync_log")
        assert tool.annotations.readOnlyHint is True
        assert tool.inputSchema["properties"]["limit"]["maximum"] == MAX_LOG_LIMIT


# ---------------------------------------------------------------------------
# issue_sync
# ---------------------------------------------------------------------------


class TestIssueSync:
    async def test_applies_local_change(self, engine, jira):
        result = await handle_sync_tool("issue_sync", {"issue_id": ISSUE}, engine)

        assert result.isError is False
        assert "Sync of issue WID-1: SUCCESS" in _text(result)
        assert result.structuredContent["status"] == "success"
        assert result.structuredContent["exit_code"] == 0
        assert jira.applied == [{"title": "Widget v2"}]

    async def test_dry_run_writes_nothing(self, engine, jira, sync_log):
        result = await handle_sync_tool(
            "issue_sync", {"issue_id": ISSUE, "dry_run": True}, engine
        )

        text = _text(result)
        assert text.startswith("Dry run for issue WID-1")
        assert "would set title = Widget v2 on jira" in text
        assert result.structuredContent["dry_run"] is True
        assert jira.applied == []

    async def test_manual_defers_conflicts(self, make_engine, fake_remote, seed_issue):
        seed_issue("WID-2", {"title": "Local", "jira": "WID-2"}, base={"title": "Base"})
        engine = make_engine({"jira": fake_remote("jira", {"title": "Remote"})})

        result = await handle_sync_tool(
            "issue_sync", {"issue_id": "WID-2", "strategy": "manual"}, engine
        )

        assert result.isError is False
        assert result.structuredContent["status"] == "partial"
        assert result.structuredContent["exit_code"] == 3
        assert result.structuredContent["summary"]["skipped"] == 1

    async def test_force_overrides_strategy(self, make_engine, fake_remote, seed_issue):
        seed_issue("WID-2", {"title": "Local", "jira": "WID-2"}, base={"title": "Base"})
        jira = fake_remote("jira", {"title": "Remote"})
        engine = make_engine({"jira": jira})

        result = await handle_sync_tool(
            "issue_sync", {"issue_id": "WID-2", "strategy": "remote_wins", "force": True}, engine
        )

        assert result.structuredContent["force"] is True
        assert jira.fields["title"] == "Local"

    async def test_missing_record_is_failed_result(self, engine):
        result = await handle_sync_tool("issue_sync", {"issue_id": "WID-404"}, engine)

        assert result.isError is True
        assert result.structuredContent["status"] == "failed"
        assert result.structuredContent["exit_code"] == 5

    @pytest.mark.parametrize("args", [{}, {"issue_id": "  "}, None])
    async def test_issue_id_required(self, engine, args):
        result = await handle_sync_tool("issue_sync", args, engine)
        assert result.isError is True
        assert "Error (validation_error): issue_id is required" in _text(result)

    async def test_unknown_strategy(self, engine):
        result = await handle_sync_tool(
            "issue_sync", {"issue_id": ISSUE, "strategy": "newest"}, engine
        )
        assert result.isError is True
        assert "Unknown conflict strategy" in _text(result)

    async def test_sync_error_translated(self):
        engine = MagicMock()
        engine.sync.side_effect = RunInProgressError(ISSUE)
        result = await handle_sync_tool("issue_sync", {"issue_id": ISSUE}, engine)
        assert _text(result).startswith("Error (busy): ")

    async def test_unexpected_error_is_server_error(self):
        engine = MagicMock()
        engine.sync.side_effect = RuntimeError("disk on fire")
        result = await handle_sync_tool("issue_sync", {"issue_id": ISSUE}, engine)
        assert result.isError is True
        assert "Error (server_error): disk on fire" in _text(result)


# ---------------------------------------------------------------------------
# issue_sync_all
# ---------------------------------------------------------------------------


class TestIssueSyncAll:
    async def test_syncs_each_issue_once(self, engine, seed_issue, jira):
        seed_issue("WID-3", {"title": "Other"}, base={"title": "Other"})

        result = await handle_sync_tool(
            "issue_sync_all", {"issue_ids": [ISSUE, "WID-3", ISSUE, " "]}, engine
        )

        data = result.structuredContent
        assert data["total"] == 2
        assert list(data["results"]) == [ISSUE, "WID-3"]
        assert data["results"]["WID-3"]["status"] == "success"
        assert _text(result).startswith("Synced 2 issues: 2 success")
        assert len(jira.applied) == 1

    async def test_failed_issue_reported(self, engine):
        result = await handle_sync_tool(
            "issue_sync_all", {"issue_ids": [ISSUE, "WID-404"]}, engine
        )
        assert result.structuredContent["results"]["WID-404"]["status"] == "failed"
        assert "1 failed, 1 success" in _text(result)

    @pytest.mark.parametrize(
        "ids, message",
        [
            ([], "issue_ids must be a non-empty list"),
            ("WID-1", "issue_ids must be a non-empty list"),
            (["", "  "], "issue_ids contains only blank ids"),
        ],
    )
    async def test_validation(self, engine, ids, message):
        result = await handle_sync_tool("issue_sync_all", {"issue_ids": ids}, engine)
        assert result.isError is True
        assert message in _text(result)


# ---------------------------------------------------------------------------
# issue_sync_log
# ---------------------------------------------------------------------------


class TestIssueSyncLog:
    async def test_empty_log(self, engine):
        result = await handle_sync_tool("issue_sync_log", {}, engine)
        assert _text(result) == "No sync log entries found."
        assert result.structuredContent == {"count": 0, "entries": []}

    async def test_lists_runs(self, engine, seed_issue):
        seed_issue("WID-3", {"title": "Other"}, base={"title": "Other"})
        await handle_sync_tool("issue_sync", {"issue_id": ISSUE}, engine)
        await handle_sync_tool("issue_sync", {"issue_id": "WID-3"}, engine)

        result = await handle_sync_tool("issue_sync_log", {"issue_id": ISSUE}, engine)

        data = result.structuredContent
        assert data["count"] == 1
        [entry] = data["entries"]
        assert entry["issue_id"] == ISSUE
        assert entry["changes"][0]["field"] == "title"
        assert "WID-1" in _text(result)
        assert "fields: title" in _text(result)

    async def test_time_range(self, engine):
        await handle_sync_tool("issue_sync", {"issue_id": ISSUE}, engine)

        past = await handle_sync_tool(
            "issue_sync_log", {"since": "2000-01-01T00:00:00Z"}, engine
        )
        future = await handle_sync_tool(
            "issue_sync_log", {"since": "2999-01-01T00:00:00"}, engine
        )
        assert past.structuredContent["count"] == 1
        assert future.structuredContent["count"] == 0

    async def test_limit(self, engine):
        for _ in range(3):
            await handle_sync_tool("issue_sync", {"issue_id": ISSUE}, engine)
        result = await handle_sync_tool("issue_sync_log", {"limit": 2}, engine)
        assert result.structuredContent["count"] == 2

    @pytest.mark.parametrize(
        "args, message",
        [
            ({"since": "yesterday"}, "since must be an ISO 8601 timestamp"),
            (
                {"since": "2024-02-01T00:00:00Z", "until": "2024-01-01T00:00:00Z"},
                "since must not be later than until",
            ),
            ({"limit": 0}, f"limit must be between 1 and {MAX_LOG_LIMIT}"),
            ({"limit": "many"}, "limit must be an integer"),
        ],
    )
    async def test_validation(self, engine, args, message):
        result = await handle_sync_tool("issue_sync_log", args, engine)
        assert result.isError is True
        assert "Error (validation_error)" in _text(result)
        assert message in _text(result)


async def test_unknown_tool(engine):
    result = await handle_sync_tool("issue_delete", {}, engine)
    assert result.isError is True
    assert "Unknown sync tool: issue_delete" in _text(result)

"""Tests for building a SyncEngine from a Config."""

from __future__ import annotations

from issue_sync.config import Config
from issue_sync.config_schema import build_config
from issue_sync.remotes.github import GitHubClient
from issue_sync.remotes.jira import JiraClient
from issue_sync.sync.audit import JsonlSyncLog
from issue_sync.sync.factory import SYNC_LOG_NAME, build_engine, build_remotes
from issue_sync.sync.models import ResolutionStrategy


def _make_config(tmp_path, sections=None, **overrides) -> Config:
    values = {
        "github_repo": "acme/widgets",
        "github_token": "ghp_test",
        "jira_url": "https://acme.atlassian.net",
        "jira_email": "bot@acme.test",
        "jira_token": "jira-token",
        "records_dir": str(tmp_path / "issues"),
        "state_dir": str(tmp_path / "state"),
        "sections": build_config(sections or {}),
    }
    values.update(overrides)
    return Config(**values)


class TestBuildRemotes:
    def test_both_remotes(self, tmp_path):
        remotes = build_remotes(_make_config(tmp_path))
        assert list(remotes) == ["github", "jira"]
        assert isinstance(remotes["github"], GitHubClient)
        assert isinstance(remotes["jira"], JiraClient)

    def test_only_configured_remotes(self, tmp_path):
        config = _make_config(tmp_path, jira_url=None, jira_email=None, jira_token=None)
        assert list(build_remotes(config)) == ["github"]

    def test_remote_order(self, tmp_path):
        config = _make_config(tmp_path, {"sync": {"remote_order": ["jira"]}})
        assert list(build_remotes(config)) == ["jira", "github"]

    def test_retry_and_transport_settings(self, tmp_path):
        config = _make_config(
            tmp_path,
            {
                "retry": {"base_delay": 0.5, "connect_timeout": 3, "read_timeout": 20},
                "jira": {"progress_field": "customfield_10042"},
            },
            max_retries=1,
            insecure=True,
        )
        remotes = build_remotes(config)
        jira = remotes["jira"]
        assert jira.retry.max_retries == 1
        assert jira.retry.base_delay == 0.5
        assert jira.timeout == (3, 20)
        assert jira.verify is False
        assert "progress" in jira.scope
        assert remotes["github"].breaker is not jira.breaker


class TestBuildEngine:
    def test_wiring(self, tmp_path):
        config = _make_config(tmp_path, strategy="merge")
        engine = build_engine(config)

        assert engine.settings.default_strategy is ResolutionStrategy.MERGE
        assert engine.store.records_dir == tmp_path / "issues"
        assert isinstance(engine.sync_log, JsonlSyncLog)
        assert engine.sync_log.path == tmp_path / "state" / SYNC_LOG_NAME
        assert set(engine.remotes) == {"github", "jira"}

    def test_link_fields_excluded_from_diffing(self, tmp_path):
        config = _make_config(tmp_path, {"github": {"link_field": "gh_issue"}})
        engine = build_engine(config)
        assert engine.settings.link_field("github") == "gh_issue"
        assert {"gh_issue", "jira"} <= engine.rules.excluded

    def test_settings_from_sections(self, tmp_path):
        config = _make_config(
            tmp_path,
            {
                "sync": {
                    "remote_precedence": ["jira"],
                    "lock_mode": "reject",
                    "resolution_budget": 5,
                    "keep_backups": 2,
                }
            },
            fetch_timeout=12.0,
            max_parallel_runs=2,
        )
        engine = build_engine(config)
        settings = engine.settings
        assert settings.remote_precedence == ("jira",)
        assert settings.lock_mode == "reject"
        assert settings.fetch_timeout == 12.0
        assert settings.max_parallel_runs == 2
        assert settings.resolution_budget == 5
        assert engine.backups.keep == 2
        # two remotes, (10 + 60) seconds per attempt, 4 attempts each
        assert settings.call_timeout == 2 * 70.0 * 4

    def test_status_map_overrides(self, tmp_path):
        config = _make_config(tmp_path, {"jira": {"status_map": {"QA": "in-progress"}}})
        status = build_engine(config).rules.status
        assert status.to_local("jira", "QA") == "in-progress"
        assert status.to_remote("jira", "in-progress") == "QA"

    def test_local_only(self, tmp_path):
        config = Config(
            records_dir=str(tmp_path / "issues"), state_dir=str(tmp_path / "state")
        )
        engine = build_engine(config)
        assert engine.remotes == {}
        assert engine.settings.call_timeout == 0

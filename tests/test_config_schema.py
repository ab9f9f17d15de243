"""Tests for the unified config schema.

Covers every section model in config_schema.py (GitHubConfig, JiraConfig,
SyncConfig, RetryConfig, LoggingConfig), UnifiedConfig and the
build_config() factory.
"""

import pytest
from pydantic import ValidationError

from issue_sync.config_schema import (
    GitHubConfig,
    JiraConfig,
    LoggingConfig,
    RetryConfig,
    SyncConfig,
    UnifiedConfig,
    build_config,
)

# ---------------------------------------------------------------------------
# UnifiedConfig
# ---------------------------------------------------------------------------


class TestUnifiedConfig:
    def test_zero_config_defaults(self):
        config = UnifiedConfig()
        assert config.github.url == "https://api.github.com"
        assert config.github.repo is None
        assert config.jira.url is None
        assert config.sync.strategy == "manual"
        assert config.sync.remote_order == ["github", "jira"]
        assert config.sync.remote_precedence == []
        assert config.retry.max_retries == 3
        assert config.logging.level == "INFO"

    def test_frozen(self):
        config = UnifiedConfig()
        with pytest.raises(ValidationError):
            config.sync = SyncConfig()

    def test_full_config(self):
        config = UnifiedConfig(
            github=GitHubConfig(repo="acme/widgets", token="t", link_field="gh"),
            jira=JiraConfig(
                url="https://acme.atlassian.net",
                email="bot@acme.test",
                api_token="t",
                progress_field="customfield_10042",
                account_ids={"alice": "acc-1"},
            ),
            sync=SyncConfig(strategy="merge", lock_mode="reject"),
            logging=LoggingConfig(level="DEBUG", file="/tmp/issue-sync.log"),
        )
        assert config.github.link_field == "gh"
        assert config.jira.account_ids == {"alice": "acc-1"}
        assert config.sync.lock_mode == "reject"
        assert config.logging.file == "/tmp/issue-sync.log"


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class TestGitHubConfig:
    def test_default_status_labels(self):
        assert GitHubConfig().status_labels == {
            "in-progress": "in-progress",
            "blocked": "blocked",
        }

    def test_defaults_not_shared(self):
        first, second = GitHubConfig(), GitHubConfig()
        assert first.status_map is not second.status_map


class TestSyncConfig:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("local-wins", "local_wins"),
            ("Remote_Wins", "remote_wins"),
            ("merge", "merge"),
            ("interactive", "interactive"),
        ],
    )
    def test_strategy_normalized(self, raw, expected):
        assert SyncConfig(strategy=raw).strategy == expected

    def test_unknown_strategy(self):
        with pytest.raises(ValidationError, match="Unknown conflict strategy"):
            SyncConfig(strategy="newest")

    def test_lock_mode_values(self):
        assert SyncConfig(lock_mode="reject").lock_mode == "reject"
        with pytest.raises(ValidationError):
            SyncConfig(lock_mode="wait")

    @pytest.mark.parametrize(
        "field, value",
        [
            ("fetch_timeout", 0),
            ("fetch_timeout", 601),
            ("max_parallel_runs", 0),
            ("max_parallel_runs", 33),
            ("keep_backups", -1),
            ("resolution_budget", -1),
        ],
    )
    def test_bounds(self, field, value):
        with pytest.raises(ValidationError):
            SyncConfig(**{field: value})


class TestRetryConfig:
    def test_defaults(self):
        retry = RetryConfig()
        assert (retry.base_delay, retry.max_delay, retry.multiplier) == (1.0, 30.0, 2.0)
        assert retry.failure_threshold == 5
        assert retry.reset_timeout == 300.0

    @pytest.mark.parametrize(
        "field, value",
        [("max_retries", 11), ("multiplier", 0.5), ("jitter", 1.5), ("read_timeout", 0)],
    )
    def test_bounds(self, field, value):
        with pytest.raises(ValidationError):
            RetryConfig(**{field: value})


# ---------------------------------------------------------------------------
# build_config()
# ---------------------------------------------------------------------------


class TestBuildConfig:
    @pytest.mark.parametrize("raw", [{}, None])
    def test_empty(self, raw):
        assert build_config(raw) == UnifiedConfig()

    def test_partial_sections(self):
        config = build_config({"jira": {"url": "https://acme.atlassian.net"}})
        assert config.jira.url == "https://acme.atlassian.net"
        assert config.github == GitHubConfig()

    def test_nested_dicts_validated(self):
        with pytest.raises(ValidationError):
            build_config({"retry": {"max_retries": "many"}})

"""Unified configuration schema for issue_sync.

Defines Pydantic models for the YAML config structure with one section per
concern: the two remotes, the sync engine, retry/backoff and logging.

Usage:
    from issue_sync.config_schema import UnifiedConfig, build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from .sync.models import ResolutionStrategy

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class GitHubConfig(BaseModel):
    """GitHub connection and vocabulary settings.

    Connection fields are optional: ``GITHUB_*`` env vars can supply them
    at runtime instead.
    """

    url: str = Field(
        default="https://api.github.com", description="GitHub API root"
    )
    repo: str | None = Field(default=None, description="owner/name")
    token: str | None = Field(default=None, description="API token")
    link_field: str = Field(
        default="github",
        description="Local record field holding the GitHub issue number",
    )
    status_labels: dict[str, str] = Field(
        default_factory=lambda: {"in-progress": "in-progress", "blocked": "blocked"},
        description="Local status -> label used on open issues",
    )
    status_map: dict[str, str] = Field(
        default_factory=dict,
        description="Extra GitHub status -> local status entries",
    )

    model_config = {"frozen": True}


class JiraConfig(BaseModel):
    """Jira connection and vocabulary settings."""

    url: str | None = Field(default=None, description="Jira site URL")
    email: str | None = Field(default=None, description="Account email")
    api_token: str | None = Field(default=None, description="API token")
    link_field: str = Field(
        default="jira", description="Local record field holding the Jira key"
    )
    progress_field: str | None = Field(
        default=None, description="Custom field id storing progress"
    )
    account_ids: dict[str, str] = Field(
        default_factory=dict,
        description="Display name or login -> Jira account id",
    )
    status_map: dict[str, str] = Field(
        default_factory=dict,
        description="Extra Jira status -> local status entries",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Sync engine settings."""

    strategy: str = Field(
        default="manual", description="Default conflict strategy"
    )
    records_dir: str = Field(
        default="issues", description="Directory of local issue records"
    )
    state_dir: str = Field(
        default=".issue_sync/state",
        description="Base snapshots, backups and the sync log",
    )
    remote_order: list[str] = Field(
        default_factory=lambda: ["github", "jira"],
        description="Order remotes are fetched and written in",
    )
    remote_precedence: list[str] = Field(
        default_factory=list,
        description="Remote precedence when remotes disagree (default: remote_order)",
    )
    fetch_timeout: float = Field(default=30.0, gt=0, le=600)
    resolution_budget: float = Field(default=60.0, ge=0, le=3600)
    lock_mode: Literal["block", "reject"] = "block"
    max_parallel_runs: int = Field(default=4, ge=1, le=32)
    keep_backups: int = Field(default=10, ge=0, le=1000)
    log_max_bytes: int = Field(default=1_048_576, ge=0)
    log_backup_count: int = Field(default=5, ge=0, le=100)

    model_config = {"frozen": True}

    @field_validator("strategy")
    @classmethod
    def _check_strategy(cls, value: str) -> str:
        return ResolutionStrategy.parse(value).value


class RetryConfig(BaseModel):
    """Retry/backoff, circuit breaker and per-call timeouts for remotes."""

    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: float = Field(default=0.25, ge=0, le=1)
    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout: float = Field(default=300.0, ge=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    read_timeout: float = Field(default=60.0, gt=0)

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has defaults, so ``UnifiedConfig()`` (zero-config) is
    always valid.
    """

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    jira: JiraConfig = Field(default_factory=JiraConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.

    Raises:
        pydantic.ValidationError: If a section fails validation.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)

"""Build a ready-to-run ``SyncEngine`` from a validated ``Config``."""

from __future__ import annotations

import logging
from pathlib import Path

from ..config import Config
from ..remotes.base import HttpRemoteClient
from ..remotes.github import GitHubClient
from ..remotes.jira import JiraClient
from ..remotes.retry import CircuitBreaker, RetryPolicy
from .audit import JsonlSyncLog
from .backup import BackupManager
from .engine import SyncEngine, SyncSettings
from .fields import FieldRules, StatusMapping
from .models import ResolutionStrategy
from .store import FileRecordStore

logger = logging.getLogger(__name__)

SYNC_LOG_NAME = "sync-log.jsonl"


def build_remotes(config: Config) -> dict[str, HttpRemoteClient]:
    """Create a client for every configured remote, in ``remote_order``."""
    sections = config.sections
    retry = sections.retry
    policy = RetryPolicy(
        max_retries=config.max_retries,
        base_delay=retry.base_delay,
        max_delay=retry.max_delay,
        multiplier=retry.multiplier,
        jitter=retry.jitter,
    )
    common = {
        "timeout": (retry.connect_timeout, retry.read_timeout),
        "verify": not config.insecure,
        "retry": policy,
    }

    available: dict[str, HttpRemoteClient] = {}
    if config.github_enabled:
        available["github"] = GitHubClient(
            repo=config.github_repo,
            token=config.github_token,
            base_url=config.github_url,
            status_labels=sections.github.status_labels,
            breaker=CircuitBreaker(retry.failure_threshold, retry.reset_timeout),
            **common,
        )
    if config.jira_enabled:
        available["jira"] = JiraClient(
            base_url=config.jira_url,
            email=config.jira_email,
            token=config.jira_token,
            progress_field=sections.jira.progress_field,
            account_ids=sections.jira.account_ids,
            breaker=CircuitBreaker(retry.failure_threshold, retry.reset_timeout),
            **common,
        )

    order = [n for n in sections.sync.remote_order if n in available]
    order += [n for n in available if n not in order]
    return {name: available[name] for name in order}


def build_engine(config: Config) -> SyncEngine:
    """Wire store, remotes, backups and the sync log into a ``SyncEngine``."""
    sections = config.sections
    state_dir = Path(config.state_dir)
    remotes = build_remotes(config)

    call_timeout = sum(
        client.call_timeout * (config.max_retries + 1) for client in remotes.values()
    )
    settings = SyncSettings(
        default_strategy=ResolutionStrategy.parse(config.strategy),
        remote_precedence=tuple(sections.sync.remote_precedence),
        link_fields={
            "github": sections.github.link_field,
            "jira": sections.jira.link_field,
        },
        fetch_timeout=config.fetch_timeout,
        call_timeout=call_timeout,
        resolution_budget=sections.sync.resolution_budget,
        lock_mode=sections.sync.lock_mode,
        max_parallel_runs=config.max_parallel_runs,
    )
    rules = FieldRules(
        status_mapping=StatusMapping(
            {
                system: table
                for system, table in (
                    ("github", sections.github.status_map),
                    ("jira", sections.jira.status_map),
                )
                if table
            }
        )
    )
    engine = SyncEngine(
        store=FileRecordStore(Path(config.records_dir), state_dir),
        remotes=remotes,
        backups=BackupManager(state_dir, keep=sections.sync.keep_backups),
        sync_log=JsonlSyncLog(
            state_dir / SYNC_LOG_NAME,
            max_bytes=sections.sync.log_max_bytes,
            backup_count=sections.sync.log_backup_count,
        ),
        settings=settings,
        rules=rules,
    )
    logger.info(
        "Sync engine ready: remotes=%s, strategy=%s, records=%s",
        ", ".join(remotes) or "none",
        settings.default_strategy.value,
        config.records_dir,
    )
    return engine

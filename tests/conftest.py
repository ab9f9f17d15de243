"""Shared pytest fixtures for issue-sync tests."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Mapping

import pytest
from dotenv import load_dotenv

from issue_sync.sync.audit import MemorySyncLog
from issue_sync.sync.backup import BackupManager
from issue_sync.sync.engine import SyncEngine, SyncSettings
from issue_sync.sync.models import BASE, LOCAL, Snapshot, remote_origin
from issue_sync.sync.store import FileRecordStore

load_dotenv()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that call real GitHub/Jira APIs",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring live GitHub/Jira credentials"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# In-memory remote
# ---------------------------------------------------------------------------


class FakeRemote:
    """In-memory remote tracker speaking its own vocabulary.

    ``apply_errors`` is a queue: each ``apply`` call pops and raises the
    next exception, if any, before touching ``fields``.
    """

    def __init__(
        self,
        name: str,
        fields: Mapping[str, Any] | None = None,
        scope: frozenset[str] | None = None,
    ) -> None:
        self.name = name
        self.fields = dict(fields or {})
        self.scope = scope
        self.fetch_error: Exception | None = None
        self.fetch_gate: threading.Event | None = None
        self.apply_errors: list[Exception] = []
        self.fetched: list[str] = []
        self.applied: list[dict[str, Any]] = []

    def fetch(self, remote_key: str) -> Snapshot:
        self.fetched.append(remote_key)
        if self.fetch_gate is not None:
            self.fetch_gate.wait(5)
        if self.fetch_error is not None:
            raise self.fetch_error
        return Snapshot(
            origin=remote_origin(self.name), fields=dict(self.fields), scope=self.scope
        )

    def apply(self, remote_key: str, updates: Mapping[str, Any]) -> None:
        self.applied.append(dict(updates))
        if self.apply_errors:
            raise self.apply_errors.pop(0)
        self.fields.update(updates)


@pytest.fixture
def fake_remote():
    """Factory for ``FakeRemote`` instances."""
    return FakeRemote


# ---------------------------------------------------------------------------
# Stores and engines
# ---------------------------------------------------------------------------


@pytest.fixture
def records_dir(tmp_path) -> Path:
    path = tmp_path / "issues"
    path.mkdir()
    return path


@pytest.fixture
def state_dir(tmp_path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def store(records_dir, state_dir) -> FileRecordStore:
    return FileRecordStore(records_dir, state_dir)


@pytest.fixture
def seed_issue(store):
    """Write a local record and, optionally, its base snapshot."""

    def _seed(
        issue_id: str,
        local: Mapping[str, Any],
        base: Mapping[str, Any] | None = None,
    ) -> None:
        store.save_local(issue_id, Snapshot(origin=LOCAL, fields=dict(local)))
        if base is not None:
            store.save_base(issue_id, Snapshot(origin=BASE, fields=dict(base)))

    return _seed


@pytest.fixture
def sync_log() -> MemorySyncLog:
    return MemorySyncLog()


@pytest.fixture
def make_engine(store, state_dir, sync_log):
    """Build a ``SyncEngine`` over the tmp store and the given remotes."""

    def _make(remotes: Mapping[str, Any], **settings: Any) -> SyncEngine:
        return SyncEngine(
            store=store,
            remotes=remotes,
            backups=BackupManager(state_dir),
            sync_log=sync_log,
            settings=SyncSettings(**settings),
        )

    return _make

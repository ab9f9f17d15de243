"""Issue sync engine.

Public API for keeping one issue consistent across a local Markdown record,
a GitHub issue and a Jira issue.

Architecture
------------
Every run is a **three-way reconciliation** against a base snapshot, the
last state all systems agreed on.  A field that moved on one side only is
an auto-update; a field that moved on both sides to different values is a
conflict settled by the run's strategy.  Writes go to the local record
first, then to each remote in configuration order, behind a backup that
restores the local record if a write fails.

Modules:

- ``engine``    -- ``SyncEngine``: the per-issue state machine.
- ``detector``  -- ``detect`` and ``consolidate``: pure three-way diffing.
- ``resolver``  -- One resolver per ``ResolutionStrategy``.
- ``merger``    -- Text merge via ``merge3``, label union, max progress.
- ``fields``    -- Field kinds, defaults, status tables, normalization.
- ``models``    -- ``Snapshot``, ``Conflict``, ``ResolvedField``,
  ``SyncResult`` and the other data contracts.
- ``store``     -- ``FileRecordStore``: records and base snapshots on disk.
- ``backup``    -- ``BackupManager``: pre-write backups and rollback.
- ``audit``     -- ``JsonlSyncLog``/``MemorySyncLog``: one entry per run.
- ``locks``     -- ``IssueLocks``: one in-flight run per issue.
- ``reporter``  -- Human-readable and JSON renderings.
- ``factory``   -- ``build_engine``: wiring from a ``Config``.

Public exports
--------------
``SyncEngine``, ``SyncOptions``, ``SyncSettings``, ``ResolutionStrategy``,
``Choice``, ``Snapshot``, ``SyncResult``, ``FileRecordStore``,
``BackupManager``, ``JsonlSyncLog``, ``MemorySyncLog``,
``format_sync_result``, ``result_to_json``.

Usage example
-------------
::

    from pathlib import Path
    from issue_sync.remotes import GitHubClient
    from issue_sync.sync import (
        BackupManager, FileRecordStore, JsonlSyncLog, SyncEngine,
        SyncOptions, format_sync_result,
    )

    state = Path(".issue_sync/state")
    engine = SyncEngine(
        store=FileRecordStore(Path("issues"), state),
        remotes={"github": GitHubClient("acme/widgets", token)},
        backups=BackupManager(state),
        sync_log=JsonlSyncLog(state / "sync-log.jsonl"),
    )

    # Preview first
    preview = engine.sync("WID-12", SyncOptions(strategy="merge", dry_run=True))
    print(format_sync_result(preview))

    result = engine.sync("WID-12", SyncOptions(strategy="merge"))
    raise SystemExit(result.exit_code)
"""

from .audit import JsonlSyncLog, MemorySyncLog, SyncLogSink
from .backup import BackupManager
from .engine import SyncEngine, SyncOptions, SyncSettings
from .models import (
    Choice,
    Conflict,
    ResolutionStrategy,
    ResolvedField,
    RunState,
    Snapshot,
    SyncResult,
    SyncStatus,
)
from .reporter import format_sync_result, result_to_json
from .store import FileRecordStore, RecordStore

__all__ = [
    "BackupManager",
    "Choice",
    "Conflict",
    "FileRecordStore",
    "JsonlSyncLog",
    "MemorySyncLog",
    "RecordStore",
    "ResolutionStrategy",
    "ResolvedField",
    "RunState",
    "Snapshot",
    "SyncEngine",
    "SyncLogSink",
    "SyncOptions",
    "SyncResult",
    "SyncSettings",
    "SyncStatus",
    "format_sync_result",
    "result_to_json",
]

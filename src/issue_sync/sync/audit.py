"""Append-only sync log.

The engine writes exactly one ``SyncLogEntry`` per run to an injected
``SyncLogSink``.  Rotation and retention belong to the sink:

- ``JsonlSyncLog`` appends one JSON object per line and rotates by size
  the way ``logging.handlers.RotatingFileHandler`` does (``sync-log.jsonl``
  becomes ``sync-log.jsonl.1`` and so on).  Queries read the rotated files
  too, oldest first.
- ``MemorySyncLog`` keeps entries in a list.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from .models import SyncLogEntry

logger = logging.getLogger(__name__)


class SyncLogSink(Protocol):
    """Where the engine sends one audit entry per run.

    A request rejected because another run holds the issue lock is not a
    run and appends nothing; its busy ``SyncResult`` goes to the caller only.
    """

    def append(self, entry: SyncLogEntry) -> None:
        ...  # pragma: no cover

    def query(
        self,
        issue_id: str | None = None,
        since: datetime | str | None = None,
        until: datetime | str | None = None,
        limit: int | None = None,
    ) -> list[SyncLogEntry]:
        ...  # pragma: no cover


def _as_datetime(value: datetime | str) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _matches(
    entry: SyncLogEntry,
    issue_id: str | None,
    since: datetime | None,
    until: datetime | None,
) -> bool:
    if issue_id is not None and entry.issue_id != issue_id:
        return False
    if since is None and until is None:
        return True
    stamp = _as_datetime(entry.timestamp)
    if since is not None and stamp < since:
        return False
    if until is not None and stamp > until:
        return False
    return True


def _filter(
    entries: list[SyncLogEntry],
    issue_id: str | None,
    since: datetime | str | None,
    until: datetime | str | None,
    limit: int | None,
) -> list[SyncLogEntry]:
    since_dt = _as_datetime(since) if since is not None else None
    until_dt = _as_datetime(until) if until is not None else None
    selected = [e for e in entries if _matches(e, issue_id, since_dt, until_dt)]
    if limit is not None:
        selected = selected[-limit:] if limit > 0 else []
    return selected


class MemorySyncLog:
    """In-process sync log, mostly for embedding and tests."""

    def __init__(self) -> None:
        self.entries: list[SyncLogEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: SyncLogEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    def query(
        self,
        issue_id: str | None = None,
        since: datetime | str | None = None,
        until: datetime | str | None = None,
        limit: int | None = None,
    ) -> list[SyncLogEntry]:
        with self._lock:
            entries = list(self.entries)
        return _filter(entries, issue_id, since, until, limit)


class JsonlSyncLog:
    """JSON-lines sync log with size-based rotation.

    Args:
        path: Active log file.
        max_bytes: Rotate before a write would exceed this size.  ``0``
            disables rotation.
        backup_count: Rotated files kept (``path.1`` .. ``path.N``).
    """

    def __init__(
        self, path: Path, max_bytes: int = 1_048_576, backup_count: int = 5
    ) -> None:
        self.path = Path(path)
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self._lock = threading.Lock()

    def append(self, entry: SyncLogEntry) -> None:
        line = entry.model_dump_json() + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self._should_rotate(len(line.encode("utf-8"))):
                self._rotate()
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line)

    def query(
        self,
        issue_id: str | None = None,
        since: datetime | str | None = None,
        until: datetime | str | None = None,
        limit: int | None = None,
    ) -> list[SyncLogEntry]:
        """Return matching entries, oldest first.

        Args:
            issue_id: Only entries for this issue.
            since: Only entries at or after this time.
            until: Only entries at or before this time.
            limit: Keep only the newest *limit* matches.
        """
        with self._lock:
            entries = list(self._read_all())
        return _filter(entries, issue_id, since, until, limit)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _files_oldest_first(self) -> list[Path]:
        rotated = [
            self.path.with_name(f"{self.path.name}.{i}")
            for i in range(self.backup_count, 0, -1)
        ]
        return [p for p in [*rotated, self.path] if p.exists()]

    def _read_all(self):
        for path in self._files_oldest_first():
            with open(path, encoding="utf-8") as fh:
                for line_num, line in enumerate(fh, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield SyncLogEntry.model_validate(json.loads(line))
                    except ValueError:
                        logger.warning(
                            "Skipping unreadable sync log line %s:%d", path, line_num
                        )

    def _should_rotate(self, incoming: int) -> bool:
        if self.max_bytes <= 0 or not self.path.exists():
            return False
        return self.path.stat().st_size + incoming > self.max_bytes

    def _rotate(self) -> None:
        if self.backup_count <= 0:
            self.path.unlink(missing_ok=True)
            return
        for i in range(self.backup_count - 1, 0, -1):
            source = self.path.with_name(f"{self.path.name}.{i}")
            if source.exists():
                source.replace(self.path.with_name(f"{self.path.name}.{i + 1}"))
        self.path.replace(self.path.with_name(f"{self.path.name}.1"))
        logger.debug("Rotated sync log %s", self.path)

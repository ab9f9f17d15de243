"""Pre-write backups and rollback.

Before the first write of a run the engine calls ``BackupManager.take()``,
which persists the pre-sync local snapshot as
``<state_dir>/backups/<issue_id>/<run_id>.json``.  A committed run marks
its backup as committed (kept for audit, no longer authoritative); a
failed run calls ``restore()`` to put the Record Store back exactly as it
was.  Remote writes are never undone here.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .models import Backup, Snapshot
from .store import RecordStore, atomic_write_text, validate_issue_id

logger = logging.getLogger(__name__)


class BackupManager:
    """Persist, restore and prune per-run backups.

    Args:
        state_dir: Engine state directory; backups go under ``backups/``.
        keep: Committed backups retained per issue after pruning.
    """

    def __init__(self, state_dir: Path, keep: int = 10) -> None:
        self._root = Path(state_dir) / "backups"
        self.keep = keep

    def take(self, issue_id: str, run_id: str, snapshot: Snapshot) -> Backup:
        """Persist *snapshot* as the backup for this run."""
        backup = Backup(issue_id=issue_id, run_id=run_id, snapshot=snapshot)
        self._write(backup)
        logger.info("Backup taken for issue %s (run %s)", issue_id, run_id)
        return backup

    def mark_committed(self, backup: Backup) -> Backup:
        committed = backup.model_copy(update={"committed": True})
        self._write(committed)
        return committed

    def restore(self, backup: Backup, store: RecordStore) -> None:
        """Write the backed-up local snapshot back into *store*."""
        store.save_local(backup.issue_id, backup.snapshot)
        logger.warning(
            "Restored issue %s from backup of run %s",
            backup.issue_id,
            backup.run_id,
        )

    def load(self, issue_id: str, run_id: str) -> Backup | None:
        path = self._path(issue_id, run_id)
        if not path.exists():
            return None
        return Backup.model_validate_json(path.read_text(encoding="utf-8"))

    def history(self, issue_id: str) -> list[Backup]:
        """All backups for *issue_id*, oldest first."""
        directory = self._root / validate_issue_id(issue_id)
        if not directory.is_dir():
            return []
        backups = [
            Backup.model_validate_json(p.read_text(encoding="utf-8"))
            for p in directory.glob("*.json")
        ]
        return sorted(backups, key=lambda b: b.created_at)

    def prune(self, issue_id: str) -> int:
        """Delete committed backups beyond ``keep``; return how many went."""
        committed = [b for b in self.history(issue_id) if b.committed]
        stale = committed[: max(len(committed) - self.keep, 0)]
        for backup in stale:
            self._path(backup.issue_id, backup.run_id).unlink(missing_ok=True)
        if stale:
            logger.debug("Pruned %d old backups for issue %s", len(stale), issue_id)
        return len(stale)

    def _write(self, backup: Backup) -> None:
        atomic_write_text(
            self._path(backup.issue_id, backup.run_id),
            backup.model_dump_json(indent=2),
        )

    def _path(self, issue_id: str, run_id: str) -> Path:
        return self._root / validate_issue_id(issue_id) / f"{run_id}.json"

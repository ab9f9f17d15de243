"""File-backed Record Store.

Each issue lives in ``<records_dir>/<issue_id>.md``: YAML front matter for
the structured fields and the Markdown body for ``description``.  The
last-known-synced snapshot ("base") lives in
``<state_dir>/base/<issue_id>.json``.

Key design choices:

* **Atomic writes** -- ``atomic_write_text()`` writes to a temp file then
  calls ``os.replace()`` so readers never see partial data.
* **Snapshots in, snapshots out** -- the store speaks ``Snapshot`` at its
  boundary; front-matter parsing never leaks into the engine.
* ``last_synced_at`` on the record is the timestamp of the stored base.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Protocol

import yaml

from ..errors import RecordNotFoundError
from .models import BASE, IssueRecord, Snapshot

logger = logging.getLogger(__name__)

BODY_FIELD = "description"
_ISSUE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_FRONT_MATTER_RE = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)


class RecordStore(Protocol):
    """Boundary the engine uses for local records and base snapshots."""

    def load(self, issue_id: str) -> tuple[Snapshot, Snapshot]:
        """Return ``(local, base)`` for *issue_id*."""
        ...  # pragma: no cover

    def save_local(self, issue_id: str, snapshot: Snapshot) -> None:
        ...  # pragma: no cover

    def save_base(self, issue_id: str, snapshot: Snapshot) -> None:
        ...  # pragma: no cover


def validate_issue_id(issue_id: str) -> str:
    """Reject ids that could escape the records directory.

    Raises:
        ValueError: If *issue_id* is empty or contains path characters.
    """
    issue_id = str(issue_id).strip()
    if not _ISSUE_ID_RE.match(issue_id) or ".." in issue_id:
        raise ValueError(
            f"Invalid issue id '{issue_id}': use letters, digits, '.', '_' or '-'"
        )
    return issue_id


def atomic_write_text(target: Path, text: str) -> None:
    """Write *text* to *target* atomically, creating parent directories."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp_path, target)
    except BaseException:
        # Clean up temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def parse_record(text: str) -> dict[str, Any]:
    """Split a Markdown record into its field mapping.

    Front matter keys become fields; the body becomes ``description``.
    Text without front matter is treated as a bare description.

    Raises:
        ValueError: If the front matter is not a YAML mapping.
    """
    text = text.lstrip("\ufeff")
    match = _FRONT_MATTER_RE.match(text)
    if not match:
        return {BODY_FIELD: text.strip("\n")} if text.strip() else {}
    front = yaml.safe_load(match.group(1)) or {}
    if not isinstance(front, dict):
        raise ValueError("Record front matter must be a YAML mapping")
    fields = {str(k): v for k, v in front.items()}
    body = text[match.end() :].strip("\n")
    if body:
        fields[BODY_FIELD] = body
    return fields


def render_record(fields: dict[str, Any]) -> str:
    """Inverse of ``parse_record``."""
    front = {k: v for k, v in fields.items() if k != BODY_FIELD and v is not None}
    body = fields.get(BODY_FIELD) or ""
    dumped = yaml.safe_dump(
        front, sort_keys=False, allow_unicode=True, default_flow_style=False
    )
    text = f"---\n{dumped}---\n"
    if body:
        text += f"\n{body.rstrip()}\n"
    return text


class FileRecordStore:
    """Record Store backed by Markdown files and JSON base snapshots.

    Args:
        records_dir: Directory holding ``<issue_id>.md`` records.
        state_dir: Directory for engine state (``base/`` lives here).
    """

    def __init__(self, records_dir: Path, state_dir: Path) -> None:
        self.records_dir = Path(records_dir)
        self.state_dir = Path(state_dir)

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------

    def load(self, issue_id: str) -> tuple[Snapshot, Snapshot]:
        """Load the local and base snapshots for *issue_id*.

        Returns:
            ``(local, base)``.  A never-synced issue has an empty base.

        Raises:
            RecordNotFoundError: If no local record exists.
        """
        record = self.get(issue_id)
        return record.snapshot(), self._load_base(issue_id)

    def save_local(self, issue_id: str, snapshot: Snapshot) -> None:
        path = self._record_path(issue_id)
        atomic_write_text(path, render_record(dict(snapshot.fields)))
        logger.debug("Saved local record %s", path)

    def save_base(self, issue_id: str, snapshot: Snapshot) -> None:
        path = self._base_path(issue_id)
        payload = {
            "issue_id": issue_id,
            "taken_at": snapshot.taken_at,
            "fields": snapshot.fields,
        }
        atomic_write_text(path, json.dumps(payload, indent=2, default=str))
        logger.debug("Saved base snapshot %s", path)

    # ------------------------------------------------------------------
    # Record helpers
    # ------------------------------------------------------------------

    def get(self, issue_id: str) -> IssueRecord:
        """Return the full ``IssueRecord`` for *issue_id*."""
        path = self._record_path(issue_id)
        if not path.exists():
            raise RecordNotFoundError(f"No local record for issue {issue_id} at {path}")
        fields = parse_record(path.read_text(encoding="utf-8"))
        base = self._read_base_payload(issue_id)
        return IssueRecord(
            issue_id=issue_id,
            fields=fields,
            last_synced_at=base.get("taken_at") if base else None,
        )

    def list_issue_ids(self) -> list[str]:
        """Sorted ids of every record in ``records_dir``."""
        if not self.records_dir.is_dir():
            return []
        return sorted(
            p.stem for p in self.records_dir.glob("*.md") if _ISSUE_ID_RE.match(p.stem)
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load_base(self, issue_id: str) -> Snapshot:
        payload = self._read_base_payload(issue_id)
        if not payload:
            return Snapshot(origin=BASE, fields={})
        return Snapshot(
            origin=BASE,
            fields=payload.get("fields", {}),
            taken_at=payload.get("taken_at") or "",
        )

    def _read_base_payload(self, issue_id: str) -> dict | None:
        path = self._base_path(issue_id)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as fh:
            return json.load(fh)

    def _record_path(self, issue_id: str) -> Path:
        return self.records_dir / f"{validate_issue_id(issue_id)}.md"

    def _base_path(self, issue_id: str) -> Path:
        return self.state_dir / "base" / f"{validate_issue_id(issue_id)}.json"

"""Pydantic models for the issue sync engine.

Defines the data contracts shared by every sync module:

- ``Snapshot``: Immutable field mapping tagged with its origin.
- ``IssueRecord``: The canonical local record owned by the Record Store.
- ``FieldDiff`` / ``Conflict``: Per-field, per-remote three-way differences.
- ``RemoteDiff``: Detector output for one remote system.
- ``ResolvedField``: A field value chosen by detection or resolution.
- ``SyncError``: A recorded failure inside a run.
- ``SyncResult``: Outcome of one run for one issue id.
- ``Backup``: Pre-write copy of the local snapshot.
- ``SyncLogEntry``: One audit record per run.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..errors import IssueSyncError, RemoteError

BASE = "base"
LOCAL = "local"
REMOTE_PREFIX = "remote:"

EXIT_SUCCESS = 0
EXIT_CANCELLED = 2
EXIT_PARTIAL = 3
EXIT_FAILED = 5


def remote_origin(system: str) -> str:
    """Return the snapshot origin tag for a remote system."""
    return f"{REMOTE_PREFIX}{system}"


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


class ChangeOrigin(str, Enum):
    """Which side(s) changed a field since the base snapshot."""

    LOCAL = "local"
    REMOTE = "remote"
    BOTH = "both"


class ResolutionStrategy(str, Enum):
    """Run-level policy for turning conflicts into resolved values."""

    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MERGE = "merge"
    MANUAL = "manual"
    INTERACTIVE = "interactive"

    @classmethod
    def parse(cls, value: str | ResolutionStrategy) -> ResolutionStrategy:
        """Accept ``local_wins`` as well as ``local-wins`` spellings.

        Raises:
            ValueError: If *value* names no strategy.
        """
        if isinstance(value, cls):
            return value
        normalised = str(value).strip().lower().replace("-", "_")
        try:
            return cls(normalised)
        except ValueError:
            raise ValueError(
                f"Unknown conflict strategy: '{value}'. Valid strategies: {sorted(s.value for s in cls)}"
            ) from None


class RunState(str, Enum):
    """States of the per-issue sync state machine."""

    IDLE = "idle"
    FETCHING = "fetching"
    DETECTING = "detecting"
    RESOLVING = "resolving"
    APPLYING = "applying"
    COMMITTED = "committed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RunState.COMMITTED,
            RunState.PARTIAL,
            RunState.FAILED,
            RunState.CANCELLED,
        )


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class Choice(str, Enum):
    """Decisions a manual or interactive callback may return."""

    LOCAL = "local"
    REMOTE = "remote"
    SKIP = "skip"
    DEFER = "defer"


# ---------------------------------------------------------------------------
# Snapshots and records
# ---------------------------------------------------------------------------


class Snapshot(BaseModel):
    """Immutable copy of an issue's field mapping at a point in time.

    Attributes:
        origin: ``base``, ``local`` or ``remote:<system>``.
        fields: Field name to value mapping.
        taken_at: ISO 8601 timestamp the snapshot was taken.
        scope: Fields a remote system supports.  ``None`` means every
            field is in scope.
    """

    origin: str
    fields: dict[str, Any] = {}
    taken_at: str = Field(default_factory=utc_now)
    scope: frozenset[str] | None = None

    model_config = {"frozen": True}

    @property
    def system(self) -> str | None:
        """Remote system name for ``remote:*`` snapshots, else ``None``."""
        if self.origin.startswith(REMOTE_PREFIX):
            return self.origin[len(REMOTE_PREFIX) :]
        return None

    def get(self, field: str, default: Any = None) -> Any:
        return self.fields.get(field, default)

    def in_scope(self, field: str) -> bool:
        return self.scope is None or field in self.scope

    def with_fields(
        self, updates: dict[str, Any], origin: str | None = None
    ) -> Snapshot:
        """Return a new snapshot with *updates* applied on top."""
        merged = dict(self.fields)
        merged.update(updates)
        return Snapshot(
            origin=origin or self.origin,
            fields=merged,
            scope=self.scope,
        )


class IssueRecord(BaseModel):
    """Canonical local representation of an issue.

    Attributes:
        issue_id: Opaque local identifier.
        fields: Field name to value mapping (front matter plus body).
        last_synced_at: ISO 8601 timestamp of the last committed run.
    """

    issue_id: str
    fields: dict[str, Any] = {}
    last_synced_at: str | None = None

    model_config = {"frozen": True}

    def snapshot(self) -> Snapshot:
        return Snapshot(origin=LOCAL, fields=dict(self.fields))


# ---------------------------------------------------------------------------
# Diffs and resolutions
# ---------------------------------------------------------------------------


class FieldDiff(BaseModel):
    """A field that differs from base on at least one side.

    Values are normalized into the local vocabulary, with absent fields
    replaced by the field default.

    Attributes:
        field: Field name.
        system: Remote system the diff was computed against.
        base_value: Value in the base snapshot.
        local_value: Value in the local snapshot.
        remote_value: Value in the remote snapshot.
        origin: Which side(s) changed.
    """

    field: str
    system: str
    base_value: Any = None
    local_value: Any = None
    remote_value: Any = None
    origin: ChangeOrigin

    model_config = {"frozen": True}


class Conflict(FieldDiff):
    """A field changed on both sides to different values.

    Attributes:
        note: Why the conflict ended up skipped, when it did.
    """

    origin: ChangeOrigin = ChangeOrigin.BOTH
    note: str | None = None


class RemoteDiff(BaseModel):
    """Detector output for one remote system."""

    system: str
    auto_updates: list[FieldDiff] = []
    conflicts: list[Conflict] = []

    model_config = {"frozen": True}

    @property
    def is_empty(self) -> bool:
        return not self.auto_updates and not self.conflicts


class ResolvedField(BaseModel):
    """A single field value chosen for apply.

    Attributes:
        field: Field name.
        value: Chosen value in the local vocabulary.
        rationale: Why this value was chosen.
        source: Where the value came from (``local``, a remote name,
            ``merge`` or ``manual``).
        targets: Stores actually written with this value.
    """

    field: str
    value: Any = None
    rationale: str
    source: str = ""
    targets: list[str] = []

    model_config = {"frozen": True}


class SyncError(BaseModel):
    """A failure recorded during a run.

    Attributes:
        kind: ``transient``, ``permanent``, ``auth``, ``notfound``,
            ``local``, ``cancelled`` or ``busy``.
        message: Human-readable description.
        system: Remote system involved, or ``local`` for the Record Store.
        fields: Fields affected, when known.
        phase: Run state the failure happened in.
    """

    kind: str
    message: str
    system: str | None = None
    fields: list[str] = []
    phase: str | None = None

    model_config = {"frozen": True}

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        *,
        phase: RunState | None = None,
        system: str | None = None,
    ) -> SyncError:
        kind = exc.kind if isinstance(exc, IssueSyncError) else "permanent"
        fields: list[str] = []
        message = str(exc)
        if isinstance(exc, RemoteError):
            system = exc.system or system
            fields = list(exc.fields)
            message = exc.message
        return cls(
            kind=kind,
            message=message,
            system=system,
            fields=fields,
            phase=phase.value if phase else None,
        )


class SyncResult(BaseModel):
    """Outcome of one sync run for one issue id.

    Attributes:
        issue_id: Local issue identifier.
        run_id: Unique id of the run.
        status: ``success``, ``partial`` or ``failed``.
        final_state: Terminal state of the state machine.
        strategy: Strategy used for conflicts.
        force: Whether ``force`` overrode the strategy.
        dry_run: Whether writes were suppressed.
        applied: Fields written (or planned, for a dry run).
        skipped: Conflicts left unresolved this run.
        errors: Failures recorded during the run.
        warnings: Non-fatal notes, such as remote writes left in place
            after a rollback.
        needs_relink: Remotes whose linked issue no longer exists.
        started_at: ISO 8601 start timestamp.
        completed_at: ISO 8601 completion timestamp.
    """

    issue_id: str
    run_id: str
    status: SyncStatus
    final_state: RunState
    strategy: ResolutionStrategy
    force: bool = False
    dry_run: bool = False
    applied: list[ResolvedField] = []
    skipped: list[Conflict] = []
    errors: list[SyncError] = []
    warnings: list[str] = []
    needs_relink: list[str] = []
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    @property
    def exit_code(self) -> int:
        """Process exit code an automation caller should report."""
        if self.final_state == RunState.CANCELLED:
            return EXIT_CANCELLED
        if self.status == SyncStatus.SUCCESS:
            return EXIT_SUCCESS
        if self.status == SyncStatus.PARTIAL:
            return EXIT_PARTIAL
        return EXIT_FAILED

    @property
    def errored_fields(self) -> list[str]:
        """Fields named by any recorded error, in first-seen order."""
        seen: dict[str, None] = {}
        for error in self.errors:
            for name in error.fields:
                seen.setdefault(name, None)
        return list(seen)

    def summary(self) -> str:
        """Format a short human-readable summary of the run.

        Returns:
            Multi-line summary string with counts.
        """
        lines = [
            f"Sync of issue {self.issue_id}: {self.status.value}"
            + (" (dry run)" if self.dry_run else ""),
            f"  Strategy: {self.strategy.value}"
            + (" (forced local)" if self.force else ""),
            f"  Applied:  {len(self.applied)}",
            f"  Skipped:  {len(self.skipped)}",
            f"  Errors:   {len(self.errors)}",
        ]
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class Backup(BaseModel):
    """Pre-write copy of the local snapshot for one run."""

    issue_id: str
    run_id: str
    snapshot: Snapshot
    created_at: str = Field(default_factory=utc_now)
    committed: bool = False

    model_config = {"frozen": True}


class FieldChange(BaseModel):
    """Before/after values of one field, as recorded in the sync log."""

    field: str
    before: dict[str, Any] = {}
    after: Any = None
    rationale: str = ""

    model_config = {"frozen": True}


class SyncLogEntry(BaseModel):
    """One append-only audit record, written for every run."""

    run_id: str
    issue_id: str
    timestamp: str
    completed_at: str | None = None
    strategy: str
    force: bool = False
    dry_run: bool = False
    status: str
    final_state: str
    changes: list[FieldChange] = []
    skipped: list[str] = []
    errors: list[SyncError] = []
    warnings: list[str] = []

    model_config = {"frozen": True}

"""Sync orchestrator: one state machine run per issue id.

The ``SyncEngine`` ties together the record store, remote clients,
detector, resolvers, backups and the sync log.  For each run it:

1. Loads ``(local, base)`` from the record store and fetches every linked
   remote concurrently, bounded by ``fetch_timeout``.
2. Detects per-remote three-way differences and consolidates them into
   one plan per field.
3. Resolves conflicts with the run's strategy (``force`` substitutes
   ``local_wins``).
4. Takes a backup, writes the local record, then each remote in
   configuration order.
5. Commits the new base snapshot only when the run had no errors, or
   rolls the local record back when a write failed.
6. Appends exactly one ``SyncLogEntry`` and returns a ``SyncResult``.

Runs on the same issue id never overlap (``IssueLocks``).  Remote writes
are never undone; a rollback reports which remotes kept their writes.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Sequence

from ..errors import (
    AuthError,
    IssueSyncError,
    NotFoundError,
    PermanentRemoteError,
    RemoteError,
    RunInProgressError,
    SyncCancelled,
    TransientRemoteError,
)
from .audit import SyncLogSink
from .backup import BackupManager
from .detector import ChangePlan, consolidate, detect
from .fields import FieldRules
from .locks import IssueLocks
from .models import (
    BASE,
    LOCAL,
    Backup,
    Conflict,
    FieldChange,
    ResolutionStrategy,
    ResolvedField,
    RunState,
    Snapshot,
    SyncError,
    SyncLogEntry,
    SyncResult,
    SyncStatus,
    utc_now,
)
from .resolver import create_resolver
from .store import RecordStore

if TYPE_CHECKING:
    from ..remotes.base import RemoteClient

logger = logging.getLogger(__name__)

_STATUS_BY_STATE = {
    RunState.COMMITTED: SyncStatus.SUCCESS,
    RunState.PARTIAL: SyncStatus.PARTIAL,
    RunState.FAILED: SyncStatus.FAILED,
    RunState.CANCELLED: SyncStatus.FAILED,
}


@dataclass(frozen=True)
class SyncSettings:
    """Engine configuration passed in by the caller.

    Attributes:
        default_strategy: Strategy used when a run does not name one.
        remote_precedence: Remote names, highest precedence first, for
            fields several remotes changed.  Empty means configuration
            order.
        link_fields: Remote name to the local field holding its issue
            key.  Remotes not listed use their own name.
        fetch_timeout: Seconds to wait for all remote fetches.
        call_timeout: Worst-case seconds of one remote call.
        resolution_budget: Seconds allowed for resolution callbacks.
        lock_mode: ``block`` waits for an in-flight run on the same issue,
            ``reject`` fails at once.
        max_parallel_runs: Worker count for ``sync_all``.
    """

    default_strategy: ResolutionStrategy = ResolutionStrategy.MANUAL
    remote_precedence: tuple[str, ...] = ()
    link_fields: Mapping[str, str] = field(default_factory=dict)
    fetch_timeout: float = 30.0
    call_timeout: float = 70.0
    resolution_budget: float = 60.0
    lock_mode: str = "block"
    max_parallel_runs: int = 4

    @property
    def run_timeout(self) -> float:
        """Upper bound on one run: per-call timeouts plus the resolution budget."""
        return self.fetch_timeout + self.call_timeout + self.resolution_budget

    def link_field(self, system: str) -> str:
        return self.link_fields.get(system, system)


@dataclass
class SyncOptions:
    """Per-run inputs.

    Attributes:
        strategy: Conflict strategy; ``None`` uses the configured default.
        force: Resolve every conflict with ``local_wins`` and keep
            successful writes when a remote fails.
        dry_run: Stop after resolution and write nothing.
        callback: Decision callback for ``manual``/``interactive``.
        cancel: Set to cancel the run before it starts writing.
    """

    strategy: str | ResolutionStrategy | None = None
    force: bool = False
    dry_run: bool = False
    callback: Callable[..., Any] | None = None
    cancel: threading.Event | None = None


@dataclass
class _Run:
    """Mutable bookkeeping for one run; never leaves the engine."""

    issue_id: str
    run_id: str
    strategy: ResolutionStrategy
    options: SyncOptions
    started_at: str = field(default_factory=utc_now)
    state: RunState = RunState.IDLE
    local: Snapshot | None = None
    base: Snapshot | None = None
    keys: dict[str, str] = field(default_factory=dict)
    remotes: dict[str, Snapshot] = field(default_factory=dict)
    resolved: list[ResolvedField] = field(default_factory=list)
    skipped: list[Conflict] = field(default_factory=list)
    targets: dict[str, list[str]] = field(default_factory=dict)
    errors: list[SyncError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    needs_relink: list[str] = field(default_factory=list)
    backup: Backup | None = None


class SyncEngine:
    """Orchestrate sync runs between the record store and remote trackers.

    Args:
        store: Record store for local records and base snapshots.
        remotes: Remote name to client, in configuration order.
        backups: Backup manager used before the first write of a run.
        sync_log: Sink receiving one entry per run.
        settings: Engine settings; defaults when omitted.
        rules: Field rules; built from the link fields when omitted.
    """

    def __init__(
        self,
        store: RecordStore,
        remotes: Mapping[str, RemoteClient],
        backups: BackupManager,
        sync_log: SyncLogSink,
        settings: SyncSettings | None = None,
        rules: FieldRules | None = None,
    ) -> None:
        self.store = store
        self.remotes = dict(remotes)
        self.backups = backups
        self.sync_log = sync_log
        self.settings = settings or SyncSettings()
        link_fields = [self.settings.link_field(name) for name in self.remotes]
        if rules is None:
            rules = FieldRules(excluded=link_fields)
        else:
            rules = rules.with_excluded(link_fields)
        self.rules = rules
        self.locks = IssueLocks()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def sync(self, issue_id: str, options: SyncOptions | None = None) -> SyncResult:
        """Run one sync for *issue_id*.

        Args:
            issue_id: Local issue identifier.
            options: Per-run options.

        Returns:
            The ``SyncResult``; every terminal state produces one.

        Raises:
            ValueError: If ``options.strategy`` names no strategy.
        """
        options = options or SyncOptions()
        strategy = ResolutionStrategy.parse(
            options.strategy or self.settings.default_strategy
        )
        if options.force:
            strategy = ResolutionStrategy.LOCAL_WINS
        run = _Run(
            issue_id=issue_id,
            run_id=uuid.uuid4().hex,
            strategy=strategy,
            options=options,
        )
        block = self.settings.lock_mode != "reject"
        try:
            with self.locks.hold(
                issue_id, block=block, timeout=self.settings.run_timeout
            ):
                logger.info(
                    "Sync run %s started for issue %s (strategy=%s%s%s)",
                    run.run_id,
                    issue_id,
                    strategy.value,
                    ", force" if options.force else "",
                    ", dry run" if options.dry_run else "",
                )
                self._execute(run)
                return self._finish(run)
        except RunInProgressError as exc:
            logger.warning("%s", exc)
            return self._busy_result(run, exc)

    def sync_all(
        self, issue_ids: Iterable[str], options: SyncOptions | None = None
    ) -> dict[str, SyncResult]:
        """Sync several issues in parallel, each id at most once.

        Returns:
            Issue id to result, in first-seen order of *issue_ids*.
        """
        unique = list(dict.fromkeys(issue_ids))
        if not unique:
            return {}
        workers = max(1, min(self.settings.max_parallel_runs, len(unique)))
        results: dict[str, SyncResult] = {}
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="issue-sync-run"
        ) as pool:
            futures = {pool.submit(self.sync, i, options): i for i in unique}
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        return {i: results[i] for i in unique}

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _execute(self, run: _Run) -> None:
        try:
            self._check_cancel(run)
            self._transition(run, RunState.FETCHING)
            if not self._fetch(run):
                return

            self._check_cancel(run)
            self._transition(run, RunState.DETECTING)
            plan = self._detect(run)

            self._check_cancel(run)
            self._transition(run, RunState.RESOLVING)
            self._resolve(run, plan)

            self._check_cancel(run)
            if run.options.dry_run:
                self._plan(run)
                self._transition(run, self._outcome(run))
                return

            self._transition(run, RunState.APPLYING)
            self._apply(run)
        except SyncCancelled as exc:
            message = str(exc) or "run cancelled"
            run.errors.append(
                SyncError(kind="cancelled", message=message, phase=run.state.value)
            )
            logger.warning("Sync run %s cancelled: %s", run.run_id, message)
            self._transition(run, RunState.CANCELLED)

    def _transition(self, run: _Run, state: RunState) -> None:
        logger.debug(
            "Run %s (%s): %s -> %s",
            run.run_id,
            run.issue_id,
            run.state.value,
            state.value,
        )
        run.state = state

    def _check_cancel(self, run: _Run) -> None:
        cancel = run.options.cancel
        if cancel is not None and cancel.is_set():
            raise SyncCancelled(f"run cancelled after {run.state.value}")

    def _outcome(self, run: _Run) -> RunState:
        if run.errors or run.skipped:
            return RunState.PARTIAL
        return RunState.COMMITTED

    # ------------------------------------------------------------------
    # FETCHING
    # ------------------------------------------------------------------

    def _fetch(self, run: _Run) -> bool:
        """Load the local record and fetch linked remotes.

        Returns:
            ``False`` when the run has already failed.
        """
        try:
            run.local, run.base = self.store.load(run.issue_id)
        except (IssueSyncError, OSError, ValueError) as exc:
            logger.error("Cannot load issue %s: %s", run.issue_id, exc)
            run.errors.append(
                SyncError(
                    kind="local",
                    message=str(exc),
                    system=LOCAL,
                    phase=RunState.FETCHING.value,
                )
            )
            self._transition(run, RunState.FAILED)
            return False

        for name in self.remotes:
            link_field = self.settings.link_field(name)
            key = run.local.get(link_field)
            if key is None or str(key).strip() == "":
                run.warnings.append(
                    f"{name}: not linked (no '{link_field}' field), skipped"
                )
                continue
            run.keys[name] = str(key).strip()

        fetched, failures = self._fetch_remotes(run.keys)

        abort = False
        for name in run.keys:
            if name in fetched:
                run.remotes[name] = fetched[name]
                continue
            exc = failures[name]
            run.errors.append(
                SyncError.from_exception(exc, phase=RunState.FETCHING, system=name)
            )
            if isinstance(exc, NotFoundError):
                run.needs_relink.append(name)
                abort = True
            elif isinstance(exc, AuthError):
                abort = True

        if abort:
            logger.error(
                "Aborting sync of issue %s: %s",
                run.issue_id,
                "; ".join(e.message for e in run.errors),
            )
            self._transition(run, RunState.FAILED)
            return False
        if run.keys and not run.remotes:
            logger.error("No remote could be fetched for issue %s", run.issue_id)
            self._transition(run, RunState.FAILED)
            return False
        return True

    def _fetch_remotes(
        self, keys: Mapping[str, str]
    ) -> tuple[dict[str, Snapshot], dict[str, RemoteError]]:
        fetched: dict[str, Snapshot] = {}
        failures: dict[str, RemoteError] = {}
        if not keys:
            return fetched, failures

        timeout = self.settings.fetch_timeout
        pool = ThreadPoolExecutor(
            max_workers=len(keys), thread_name_prefix="issue-sync-fetch"
        )
        futures = {
            name: pool.submit(self.remotes[name].fetch, key)
            for name, key in keys.items()
        }
        try:
            done, _ = wait(futures.values(), timeout=timeout)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        for name, future in futures.items():
            if future not in done:
                logger.warning("Fetch from %s timed out after %ss", name, timeout)
                failures[name] = TransientRemoteError(
                    f"fetch timed out after {timeout}s", system=name
                )
                continue
            exc = future.exception()
            if exc is None:
                fetched[name] = future.result()
            elif isinstance(exc, RemoteError):
                logger.warning("Fetch from %s failed: %s", name, exc)
                failures[name] = exc
            else:
                logger.error("Unexpected error fetching from %s", name, exc_info=exc)
                failures[name] = PermanentRemoteError(str(exc), system=name)
        return fetched, failures

    # ------------------------------------------------------------------
    # DETECTING / RESOLVING
    # ------------------------------------------------------------------

    def _detect(self, run: _Run) -> ChangePlan:
        diffs = detect(run.base, run.local, run.remotes, self.rules)
        plan = consolidate(diffs, self.settings.remote_precedence, self.rules)
        run.warnings.extend(plan.notes)
        logger.debug(
            "Issue %s: %d auto-updates, %d conflicts",
            run.issue_id,
            len(plan.auto),
            len(plan.conflicts),
        )
        return plan

    def _resolve(self, run: _Run, plan: ChangePlan) -> None:
        resolver = create_resolver(run.strategy, run.options.callback, self.rules)
        resolved, skipped = resolver.resolve_all(plan.conflicts)
        run.resolved = sorted([*plan.auto, *resolved], key=lambda r: r.field)
        run.skipped = skipped
        for conflict in skipped:
            logger.info(
                "Conflict on %s against %s skipped: %s",
                conflict.field,
                conflict.system,
                conflict.note,
            )

    # ------------------------------------------------------------------
    # APPLYING
    # ------------------------------------------------------------------

    def _pending_writes(
        self, run: _Run
    ) -> tuple[dict[str, Any], dict[str, dict[str, Any]]]:
        """Split resolved values into the writes each store actually needs."""
        local_updates: dict[str, Any] = {}
        remote_updates: dict[str, dict[str, Any]] = {name: {} for name in run.remotes}
        for resolved in run.resolved:
            name, value = resolved.field, resolved.value
            current = self.rules.normalize(name, run.local.get(name))
            if not self.rules.equal(name, current, value):
                local_updates[name] = value
            for system, snapshot in run.remotes.items():
                if not snapshot.in_scope(name):
                    continue
                current = self.rules.normalize(name, snapshot.get(name), system)
                if not self.rules.equal(name, current, value):
                    remote_updates[system][name] = value
        return local_updates, remote_updates

    def _plan(self, run: _Run) -> None:
        local_updates, remote_updates = self._pending_writes(run)
        self._record_targets(run, LOCAL, local_updates)
        for system, updates in remote_updates.items():
            self._record_targets(run, system, updates)

    def _record_targets(self, run: _Run, target: str, names: Iterable[str]) -> None:
        for name in names:
            run.targets.setdefault(name, []).append(target)

    def _apply(self, run: _Run) -> None:
        local_updates, remote_updates = self._pending_writes(run)
        if not local_updates and not any(remote_updates.values()):
            logger.info("Issue %s already in sync; nothing to write", run.issue_id)
            self._commit(run)
            return

        try:
            run.backup = self.backups.take(run.issue_id, run.run_id, run.local)
        except OSError as exc:
            logger.error("Cannot back up issue %s: %s", run.issue_id, exc)
            run.errors.append(
                SyncError(
                    kind="local",
                    message=f"backup failed: {exc}",
                    system=LOCAL,
                    phase=RunState.APPLYING.value,
                )
            )
            self._transition(run, RunState.FAILED)
            return

        if local_updates:
            try:
                self.store.save_local(
                    run.issue_id, run.local.with_fields(local_updates)
                )
            except Exception as exc:
                logger.exception("Failed to write local record %s", run.issue_id)
                run.errors.append(
                    SyncError(
                        kind="local",
                        message=str(exc),
                        system=LOCAL,
                        fields=sorted(local_updates),
                        phase=RunState.APPLYING.value,
                    )
                )
                self._rollback(run, local_written=True, remote_written=[])
                return
            self._record_targets(run, LOCAL, local_updates)

        remote_written: list[str] = []
        for system, updates in remote_updates.items():
            if not updates:
                continue
            written, error = self._apply_remote(run, system, updates)
            if written:
                remote_written.append(system)
                self._record_targets(run, system, written)
            if error is None:
                continue

            run.errors.append(
                SyncError.from_exception(error, phase=RunState.APPLYING, system=system)
            )
            if isinstance(error, NotFoundError):
                run.needs_relink.append(system)
            if run.options.force and not isinstance(error, (AuthError, NotFoundError)):
                logger.warning(
                    "Write to %s failed; keeping other writes (force): %s",
                    system,
                    error,
                )
                continue
            self._rollback(
                run, local_written=bool(local_updates), remote_written=remote_written
            )
            return

        self._commit(run)

    def _apply_remote(
        self, run: _Run, system: str, updates: Mapping[str, Any]
    ) -> tuple[list[str], RemoteError | None]:
        """Write *updates* to one remote.

        A ``PermanentRemoteError`` naming fields drops those fields and
        re-sends the rest once.

        Returns:
            ``(fields written, fatal error or None)``.
        """
        pending = dict(updates)
        client = self.remotes[system]
        key = run.keys[system]
        for attempt in range(2):
            payload = self.rules.to_remote(system, pending)
            try:
                client.apply(key, payload)
                logger.info(
                    "Updated %s %s: %s", system, key, ", ".join(sorted(pending))
                )
                return sorted(pending), None
            except PermanentRemoteError as exc:
                rejected = [name for name in exc.fields if name in pending]
                if attempt > 0 or not rejected:
                    return [], exc
                logger.warning(
                    "%s rejected %s; re-sending remaining fields",
                    system,
                    ", ".join(rejected),
                )
                run.errors.append(
                    SyncError.from_exception(
                        exc, phase=RunState.APPLYING, system=system
                    ).model_copy(update={"fields": rejected})
                )
                for name in rejected:
                    pending.pop(name)
                if not pending:
                    return [], None
            except RemoteError as exc:
                return [], exc
            except Exception as exc:
                logger.exception("Unexpected error writing to %s", system)
                return [], PermanentRemoteError(str(exc), system=system)
        return [], None  # pragma: no cover

    def _rollback(
        self, run: _Run, local_written: bool, remote_written: Sequence[str]
    ) -> None:
        if local_written and run.backup is not None:
            try:
                self.backups.restore(run.backup, self.store)
            except Exception as exc:
                logger.exception("Rollback of issue %s failed", run.issue_id)
                run.errors.append(
                    SyncError(
                        kind="local",
                        message=f"rollback failed: {exc}",
                        system=LOCAL,
                        phase=RunState.APPLYING.value,
                    )
                )
            else:
                for targets in run.targets.values():
                    if LOCAL in targets:
                        targets.remove(LOCAL)
        for system in remote_written:
            run.warnings.append(
                f"{system}: writes from this run were not undone by the rollback"
            )
        self._transition(run, RunState.FAILED)

    def _commit(self, run: _Run) -> None:
        if not run.errors:
            try:
                self._save_base(run)
            except OSError as exc:
                logger.error("Cannot save base for issue %s: %s", run.issue_id, exc)
                run.errors.append(
                    SyncError(
                        kind="local",
                        message=f"base snapshot not saved: {exc}",
                        system=LOCAL,
                        phase=RunState.APPLYING.value,
                    )
                )
        else:
            logger.info(
                "Issue %s: base left unchanged after %d errors",
                run.issue_id,
                len(run.errors),
            )
        if run.backup is not None:
            run.backup = self.backups.mark_committed(run.backup)
            self.backups.prune(run.issue_id)
        self._transition(run, self._outcome(run))

    def _save_base(self, run: _Run) -> None:
        """Advance the base to the agreed post-apply values.

        Skipped fields keep their previous base value.
        """
        skipped = {c.field for c in run.skipped}
        post = run.local.with_fields({r.field: r.value for r in run.resolved})
        fields = dict(run.base.fields)
        for name, value in post.fields.items():
            if name in skipped or not self.rules.is_diffable(name):
                continue
            fields[name] = self.rules.normalize(name, value)
        if fields == run.base.fields:
            return
        self.store.save_base(run.issue_id, Snapshot(origin=BASE, fields=fields))

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _finish(self, run: _Run) -> SyncResult:
        completed_at = utc_now()
        applied = [
            r.model_copy(update={"targets": run.targets[r.field]})
            for r in run.resolved
            if run.targets.get(r.field)
        ]
        result = SyncResult(
            issue_id=run.issue_id,
            run_id=run.run_id,
            status=_STATUS_BY_STATE[run.state],
            final_state=run.state,
            strategy=run.strategy,
            force=run.options.force,
            dry_run=run.options.dry_run,
            applied=applied,
            skipped=run.skipped,
            errors=run.errors,
            warnings=run.warnings,
            needs_relink=run.needs_relink,
            started_at=run.started_at,
            completed_at=completed_at,
        )
        self._log_run(run, result)
        logger.info(
            "Sync run %s for issue %s finished: %s (%d applied, %d skipped, %d errors)",
            run.run_id,
            run.issue_id,
            run.state.value,
            len(applied),
            len(run.skipped),
            len(run.errors),
        )
        return result

    def _log_run(self, run: _Run, result: SyncResult) -> None:
        changes = []
        for resolved in run.resolved:
            before: dict[str, Any] = {}
            if run.local is not None:
                before[LOCAL] = run.local.get(resolved.field)
            for system, snapshot in run.remotes.items():
                before[system] = snapshot.get(resolved.field)
            changes.append(
                FieldChange(
                    field=resolved.field,
                    before=before,
                    after=resolved.value,
                    rationale=resolved.rationale,
                )
            )
        entry = SyncLogEntry(
            run_id=run.run_id,
            issue_id=run.issue_id,
            timestamp=run.started_at,
            completed_at=result.completed_at,
            strategy=run.strategy.value,
            force=run.options.force,
            dry_run=run.options.dry_run,
            status=result.status.value,
            final_state=result.final_state.value,
            changes=changes,
            skipped=[c.field for c in run.skipped],
            errors=run.errors,
            warnings=run.warnings,
        )
        try:
            self.sync_log.append(entry)
        except Exception:
            logger.exception("Failed to append sync log entry for run %s", run.run_id)

    def _busy_result(self, run: _Run, exc: RunInProgressError) -> SyncResult:
        return SyncResult(
            issue_id=run.issue_id,
            run_id=run.run_id,
            status=SyncStatus.FAILED,
            final_state=RunState.FAILED,
            strategy=run.strategy,
            force=run.options.force,
            dry_run=run.options.dry_run,
            errors=[SyncError(kind=exc.kind, message=str(exc))],
            started_at=run.started_at,
            completed_at=utc_now(),
        )

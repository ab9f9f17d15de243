"""Conflict resolution strategies for the sync engine.

One resolver class per ``ResolutionStrategy``:

- ``LocalWinsResolver``: Always picks the local value.
- ``RemoteWinsResolver``: Always picks the remote value.
- ``MergeResolver``: Field-type rule table (text merge, label union,
  maximum progress); enum-like fields fall back to the remote value.
- ``ManualResolver``: Hands the whole conflict list to a callback once per
  run and applies the returned decisions.
- ``InteractiveResolver``: Asks a callback about each conflict in turn,
  passing a rendered prompt with both values.

A resolver returns a ``ResolvedField`` for each conflict it settles and the
``Conflict`` itself (with a ``note``) for each one it skips or defers.  The
strategy is chosen once per run by ``create_resolver()``; there is no
per-field override.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Protocol, Union

from ..errors import ConflictDeferred
from .fields import FieldKind, FieldRules
from .merger import max_progress, merge_free_text, union_labels
from .models import Choice, Conflict, ResolutionStrategy, ResolvedField
from .reporter import format_conflict

logger = logging.getLogger(__name__)

Resolution = Union[ResolvedField, Conflict]
ManualCallback = Callable[[list[Conflict]], Any]
InteractiveCallback = Callable[[Conflict, str], Any]


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ConflictResolver(Protocol):
    """Protocol that all conflict resolvers must satisfy."""

    strategy: ResolutionStrategy

    def resolve_all(
        self, conflicts: list[Conflict]
    ) -> tuple[list[ResolvedField], list[Conflict]]:
        """Resolve every conflict of one run.

        Args:
            conflicts: Conflicts in field order.

        Returns:
            ``(resolved, skipped)``.
        """
        ...  # pragma: no cover


class _PerConflictResolver:
    """Shared ``resolve_all`` for resolvers that decide one conflict at a time."""

    strategy: ResolutionStrategy

    def resolve(self, conflict: Conflict) -> Resolution:
        raise NotImplementedError

    def resolve_all(
        self, conflicts: list[Conflict]
    ) -> tuple[list[ResolvedField], list[Conflict]]:
        resolved: list[ResolvedField] = []
        skipped: list[Conflict] = []
        for conflict in conflicts:
            outcome = self.resolve(conflict)
            if isinstance(outcome, ResolvedField):
                resolved.append(outcome)
            else:
                skipped.append(outcome)
        return resolved, skipped


def _local(conflict: Conflict, rationale: str) -> ResolvedField:
    return ResolvedField(
        field=conflict.field,
        value=conflict.local_value,
        rationale=rationale,
        source="local",
    )


def _remote(conflict: Conflict, rationale: str) -> ResolvedField:
    return ResolvedField(
        field=conflict.field,
        value=conflict.remote_value,
        rationale=rationale,
        source=conflict.system,
    )


def _skip(conflict: Conflict, note: str) -> Conflict:
    return conflict.model_copy(update={"note": note})


def _apply_decision(conflict: Conflict, decision: Any) -> Resolution:
    """Turn a callback's answer into a resolution or a skip."""
    if isinstance(decision, Choice):
        if decision is Choice.LOCAL:
            return _local(conflict, "manual: local value chosen")
        if decision is Choice.REMOTE:
            return _remote(conflict, f"manual: {conflict.system} value chosen")
        if decision is Choice.DEFER:
            return _skip(conflict, "deferred")
        return _skip(conflict, "skipped by user")
    return ResolvedField(
        field=conflict.field,
        value=decision,
        rationale="manual value",
        source="manual",
    )


# ---------------------------------------------------------------------------
# Simple resolvers
# ---------------------------------------------------------------------------


class LocalWinsResolver(_PerConflictResolver):
    """Always resolve conflicts in favour of the local value."""

    strategy = ResolutionStrategy.LOCAL_WINS

    def resolve(self, conflict: Conflict) -> Resolution:
        return _local(conflict, "local override")


class RemoteWinsResolver(_PerConflictResolver):
    """Always resolve conflicts in favour of the remote value."""

    strategy = ResolutionStrategy.REMOTE_WINS

    def resolve(self, conflict: Conflict) -> Resolution:
        return _remote(conflict, "remote override")


# ---------------------------------------------------------------------------
# Merge resolver
# ---------------------------------------------------------------------------


class MergeResolver(_PerConflictResolver):
    """Resolve by field type.

    * free text: clean three-way merge, else concatenation with an
      authorship delimiter;
    * labels: union;
    * progress: maximum;
    * everything else (status, priority, assignee, title): remote value,
      since two different enum values have no sound merge.
    """

    strategy = ResolutionStrategy.MERGE

    def __init__(self, rules: FieldRules | None = None) -> None:
        self.rules = rules or FieldRules()

    def resolve(self, conflict: Conflict) -> Resolution:
        kind = self.rules.kind(conflict.field)

        if kind is FieldKind.FREE_TEXT:
            merged, clean = merge_free_text(
                conflict.base_value,
                conflict.local_value,
                conflict.remote_value,
                conflict.system,
            )
            rationale = (
                "merge: clean three-way text merge"
                if clean
                else f"merge: concatenated local and {conflict.system} text"
            )
            return ResolvedField(
                field=conflict.field, value=merged, rationale=rationale, source="merge"
            )

        if kind is FieldKind.SET:
            return ResolvedField(
                field=conflict.field,
                value=union_labels(conflict.local_value, conflict.remote_value),
                rationale="merge: union of local and remote values",
                source="merge",
            )

        if kind is FieldKind.NUMERIC:
            local_value = conflict.local_value or 0
            remote_value = conflict.remote_value or 0
            value = max_progress(local_value, remote_value)
            return ResolvedField(
                field=conflict.field,
                value=value,
                rationale="merge: maximum of local and remote values",
                source="local" if value == local_value else conflict.system,
            )

        logger.info(
            "No merge rule for %s field '%s'; using %s value",
            kind.value,
            conflict.field,
            conflict.system,
        )
        return _remote(
            conflict,
            f"merge fallback: remote override (no merge rule for {kind.value} field)",
        )


# ---------------------------------------------------------------------------
# Callback resolvers
# ---------------------------------------------------------------------------


class ManualResolver:
    """Resolve a run's conflicts from one callback answer.

    The callback receives every conflict of the run and returns either a
    mapping ``{field: value | Choice}`` or a single ``Choice`` applied to
    all conflicts.  Fields missing from the mapping are skipped.  Without a
    callback every conflict is deferred.
    """

    strategy = ResolutionStrategy.MANUAL

    def __init__(self, callback: ManualCallback | None = None) -> None:
        self.callback = callback

    def resolve_all(
        self, conflicts: list[Conflict]
    ) -> tuple[list[ResolvedField], list[Conflict]]:
        if not conflicts:
            return [], []
        if self.callback is None:
            logger.info(
                "No manual resolution callback; deferring %d conflicts",
                len(conflicts),
            )
            return [], [_skip(c, "deferred: no resolution callback") for c in conflicts]

        try:
            answer = self.callback(list(conflicts))
        except ConflictDeferred:
            return [], [_skip(c, "deferred") for c in conflicts]

        resolved: list[ResolvedField] = []
        skipped: list[Conflict] = []
        for conflict in conflicts:
            if isinstance(answer, Choice):
                outcome = _apply_decision(conflict, answer)
            elif isinstance(answer, Mapping) and conflict.field in answer:
                outcome = _apply_decision(conflict, answer[conflict.field])
            else:
                outcome = _skip(conflict, "skipped by user")
            if isinstance(outcome, ResolvedField):
                resolved.append(outcome)
            else:
                skipped.append(outcome)
        return resolved, skipped


class InteractiveResolver(_PerConflictResolver):
    """Prompt once per conflict through a callback.

    The callback receives the conflict and a rendered prompt showing the
    base, local and remote values.  It returns a value or a ``Choice``, or
    raises ``ConflictDeferred``.  ``SyncCancelled`` propagates to the
    engine, which cancels the run before anything is written.
    """

    strategy = ResolutionStrategy.INTERACTIVE

    def __init__(self, callback: InteractiveCallback | None = None) -> None:
        self.callback = callback

    def resolve(self, conflict: Conflict) -> Resolution:
        if self.callback is None:
            return _skip(conflict, "deferred: no resolution callback")
        try:
            decision = self.callback(conflict, format_conflict(conflict))
        except ConflictDeferred:
            return _skip(conflict, "deferred")
        return _apply_decision(conflict, decision)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_STRATEGY_MAP: dict[ResolutionStrategy, type] = {
    ResolutionStrategy.LOCAL_WINS: LocalWinsResolver,
    ResolutionStrategy.REMOTE_WINS: RemoteWinsResolver,
    ResolutionStrategy.MERGE: MergeResolver,
    ResolutionStrategy.MANUAL: ManualResolver,
    ResolutionStrategy.INTERACTIVE: InteractiveResolver,
}


def create_resolver(
    strategy: str | ResolutionStrategy,
    callback: Callable[..., Any] | None = None,
    rules: FieldRules | None = None,
) -> ConflictResolver:
    """Create the conflict resolver for a run.

    Args:
        strategy: A ``ResolutionStrategy`` or its string form
            (``"local_wins"`` and ``"local-wins"`` are both accepted).
        callback: Decision callback for ``manual``/``interactive``.
        rules: Field rules for the ``merge`` strategy.

    Returns:
        A ``ConflictResolver`` implementation instance.

    Raises:
        ValueError: If the strategy string is not recognised.
    """
    parsed = ResolutionStrategy.parse(strategy)
    cls = _STRATEGY_MAP[parsed]
    if cls is MergeResolver:
        return MergeResolver(rules)
    if cls in (ManualResolver, InteractiveResolver):
        return cls(callback)
    return cls()

"""Three-way conflict detection.

``detect()`` compares the base snapshot with the local snapshot and each
remote snapshot, field by field, and partitions the differences per remote
into auto-updates (only one side moved, or both moved to the same value)
and conflicts (both sides moved to different values).

``consolidate()`` folds the per-remote partitions into one plan per field,
applying remote precedence when several remotes changed the same field.

Both functions are pure: inputs are never mutated and results depend only
on the arguments.
"""

from __future__ import annotations

import logging
from typing import Mapping, Sequence

from pydantic import BaseModel

from .fields import FieldRules
from .models import (
    ChangeOrigin,
    Conflict,
    FieldDiff,
    RemoteDiff,
    ResolvedField,
    Snapshot,
)

logger = logging.getLogger(__name__)


def detect(
    base: Snapshot,
    local: Snapshot,
    remotes: Mapping[str, Snapshot],
    rules: FieldRules | None = None,
) -> dict[str, RemoteDiff]:
    """Compute per-remote field differences against the base snapshot.

    Args:
        base: Last mutually agreed snapshot.
        local: Current local snapshot.
        remotes: Remote system name to current remote snapshot.
        rules: Field rules; the built-in rules when omitted.

    Returns:
        Remote system name to ``RemoteDiff``, in the order of *remotes*.
    """
    rules = rules or FieldRules()
    return {
        system: _detect_one(base, local, system, remote, rules)
        for system, remote in remotes.items()
    }


def _detect_one(
    base: Snapshot,
    local: Snapshot,
    system: str,
    remote: Snapshot,
    rules: FieldRules,
) -> RemoteDiff:
    names = set(base.fields) | set(local.fields) | set(remote.fields)
    auto_updates: list[FieldDiff] = []
    conflicts: list[Conflict] = []

    for name in sorted(names):
        if not rules.is_diffable(name) or not remote.in_scope(name):
            continue
        base_value = rules.normalize(name, base.get(name))
        local_value = rules.normalize(name, local.get(name))
        remote_value = rules.normalize(name, remote.get(name), system)

        local_changed = not rules.equal(name, local_value, base_value)
        remote_changed = not rules.equal(name, remote_value, base_value)
        if not local_changed and not remote_changed:
            continue

        values = {
            "field": name,
            "system": system,
            "base_value": base_value,
            "local_value": local_value,
            "remote_value": remote_value,
        }
        if local_changed and remote_changed:
            if rules.equal(name, local_value, remote_value):
                auto_updates.append(
                    FieldDiff(origin=ChangeOrigin.BOTH, **values)
                )
            else:
                conflicts.append(Conflict(**values))
        elif local_changed:
            auto_updates.append(FieldDiff(origin=ChangeOrigin.LOCAL, **values))
        else:
            auto_updates.append(FieldDiff(origin=ChangeOrigin.REMOTE, **values))

    logger.debug(
        "Detected %d auto-updates and %d conflicts against %s",
        len(auto_updates),
        len(conflicts),
        system,
    )
    return RemoteDiff(
        system=system, auto_updates=auto_updates, conflicts=conflicts
    )


# ---------------------------------------------------------------------------
# Consolidation across remotes
# ---------------------------------------------------------------------------


class ChangePlan(BaseModel):
    """Per-field plan built from every remote's diff.

    Attributes:
        auto: Fields resolved without a strategy.
        conflicts: At most one conflict per field, against the remote with
            the highest precedence among those that disagree with local.
        notes: Remote precedence decisions worth surfacing as warnings.
    """

    auto: list[ResolvedField] = []
    conflicts: list[Conflict] = []
    notes: list[str] = []

    model_config = {"frozen": True}

    @property
    def is_empty(self) -> bool:
        return not self.auto and not self.conflicts


def precedence_order(
    systems: Sequence[str], precedence: Sequence[str] | None
) -> list[str]:
    """Order *systems* by *precedence*; unlisted systems keep their order after."""
    ranked = [s for s in (precedence or ()) if s in systems]
    return ranked + [s for s in systems if s not in ranked]


def consolidate(
    diffs: Mapping[str, RemoteDiff],
    precedence: Sequence[str] | None = None,
    rules: FieldRules | None = None,
) -> ChangePlan:
    """Fold per-remote diffs into one decision per field.

    Args:
        diffs: Output of ``detect()``.
        precedence: Remote names, highest precedence first.  Defaults to
            the order of *diffs*.
        rules: Field rules used for value equality.

    Returns:
        A ``ChangePlan`` with auto-resolved fields and conflicts.
    """
    rules = rules or FieldRules()
    order = precedence_order(list(diffs), precedence)

    per_field: dict[str, list[FieldDiff]] = {}
    for system in order:
        remote_diff = diffs[system]
        for diff in [*remote_diff.auto_updates, *remote_diff.conflicts]:
            per_field.setdefault(diff.field, []).append(diff)

    auto: list[ResolvedField] = []
    conflicts: list[Conflict] = []
    notes: list[str] = []

    for name in sorted(per_field):
        entries = per_field[name]
        first = entries[0]
        local_changed = any(
            d.origin in (ChangeOrigin.LOCAL, ChangeOrigin.BOTH) for d in entries
        )
        remote_changed = [
            d for d in entries if d.origin in (ChangeOrigin.REMOTE, ChangeOrigin.BOTH)
        ]

        if not remote_changed:
            auto.append(
                ResolvedField(
                    field=name,
                    value=first.local_value,
                    rationale="local change",
                    source="local",
                )
            )
            continue

        if not local_changed:
            winner = remote_changed[0]
            losers = [
                d.system
                for d in remote_changed[1:]
                if not rules.equal(name, d.remote_value, winner.remote_value)
            ]
            rationale = f"remote change ({winner.system})"
            if losers:
                rationale = (
                    f"remote precedence: {winner.system} over {', '.join(losers)}"
                )
                notes.append(
                    f"{name}: {', '.join(losers)} disagreed with {winner.system}; "
                    f"{winner.system} value applied"
                )
            auto.append(
                ResolvedField(
                    field=name,
                    value=winner.remote_value,
                    rationale=rationale,
                    source=winner.system,
                )
            )
            continue

        differing = [
            d for d in remote_changed
            if not rules.equal(name, d.local_value, d.remote_value)
        ]
        if not differing:
            auto.append(
                ResolvedField(
                    field=name,
                    value=first.local_value,
                    rationale="converged",
                    source="local",
                )
            )
            continue

        chosen = differing[0]
        conflicts.append(
            Conflict(
                field=name,
                system=chosen.system,
                base_value=chosen.base_value,
                local_value=chosen.local_value,
                remote_value=chosen.remote_value,
            )
        )
        if len(differing) > 1:
            notes.append(
                f"{name}: conflict resolved against {chosen.system}; "
                f"{', '.join(d.system for d in differing[1:])} will be overwritten"
            )

    return ChangePlan(auto=auto, conflicts=conflicts, notes=notes)

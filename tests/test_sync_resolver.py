"""Tests for sync conflict resolver strategies."""

from __future__ import annotations

import pytest

from issue_sync.errors import ConflictDeferred, SyncCancelled
from issue_sync.sync.merger import MERGE_DELIMITER
from issue_sync.sync.models import Choice, Conflict, ResolutionStrategy, ResolvedField
from issue_sync.sync.resolver import (
    InteractiveResolver,
    LocalWinsResolver,
    ManualResolver,
    MergeResolver,
    RemoteWinsResolver,
    create_resolver,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_conflict(
    field: str = "title",
    *,
    base=None,
    local="local title",
    remote="remote title",
    system: str = "jira",
) -> Conflict:
    """Build a minimal Conflict for testing."""
    return Conflict(
        field=field,
        system=system,
        base_value=base,
        local_value=local,
        remote_value=remote,
    )


# ---------------------------------------------------------------------------
# Simple resolvers
# ---------------------------------------------------------------------------


class TestSimpleResolvers:
    def test_local_wins(self):
        resolved = LocalWinsResolver().resolve(_make_conflict())
        assert resolved.value == "local title"
        assert resolved.source == "local"

    def test_remote_wins(self):
        resolved = RemoteWinsResolver().resolve(_make_conflict())
        assert resolved.value == "remote title"
        assert resolved.source == "jira"

    def test_resolve_all_is_deterministic(self):
        conflicts = [_make_conflict("title"), _make_conflict("priority", local="High", remote="Low")]
        first = LocalWinsResolver().resolve_all(conflicts)
        second = LocalWinsResolver().resolve_all(conflicts)
        assert first == second
        assert [r.value for r in first[0]] == ["local title", "High"]


# ---------------------------------------------------------------------------
# MergeResolver
# ---------------------------------------------------------------------------


class TestMergeResolver:
    def test_clean_text_merge(self):
        conflict = _make_conflict(
            "description",
            base="aaa\nbbb\nccc\nddd\neee",
            local="aaa\nBBB\nccc\nddd\neee",
            remote="aaa\nbbb\nccc\nddd\nEEE",
        )
        resolved = MergeResolver().resolve(conflict)
        assert "BBB" in resolved.value
        assert "EEE" in resolved.value
        assert resolved.rationale == "merge: clean three-way text merge"

    def test_overlapping_text_is_concatenated(self):
        conflict = _make_conflict(
            "description",
            base="line 1\nline 2",
            local="line 1\nline 2 changed locally",
            remote="line 1\nline 2 changed remotely",
        )
        resolved = MergeResolver().resolve(conflict)
        delimiter = MERGE_DELIMITER.format(system="jira")
        assert resolved.value.index("changed locally") < resolved.value.index(delimiter)
        assert resolved.value.endswith("line 1\nline 2 changed remotely")
        assert "<<<<<<<" not in resolved.value

    def test_labels_union(self):
        conflict = _make_conflict("labels", base=["a"], local=["a", "ui"], remote=["api"])
        resolved = MergeResolver().resolve(conflict)
        assert resolved.value == ["a", "api", "ui"]

    def test_progress_max(self):
        conflict = _make_conflict("progress", base=10, local=40, remote=70)
        resolved = MergeResolver().resolve(conflict)
        assert resolved.value == 70
        assert resolved.source == "jira"

    def test_enum_falls_back_to_remote(self):
        conflict = _make_conflict("status", base="open", local="blocked", remote="completed")
        resolved = MergeResolver().resolve(conflict)
        assert resolved.value == "completed"
        assert "merge fallback" in resolved.rationale


# ---------------------------------------------------------------------------
# Callback resolvers
# ---------------------------------------------------------------------------


class TestManualResolver:
    def test_no_callback_defers_everything(self):
        resolved, skipped = ManualResolver().resolve_all([_make_conflict()])
        assert resolved == []
        assert skipped[0].note == "deferred: no resolution callback"

    def test_callback_called_once_with_all_conflicts(self):
        calls = []

        def decide(conflicts):
            calls.append([c.field for c in conflicts])
            return {"title": Choice.REMOTE, "priority": "Urgent"}

        resolved, skipped = ManualResolver(decide).resolve_all(
            [
                _make_conflict("title"),
                _make_conflict("priority", local="High", remote="Low"),
                _make_conflict("assignee", local="alice", remote="bob"),
            ]
        )

        assert calls == [["title", "priority", "assignee"]]
        assert [(r.field, r.value) for r in resolved] == [
            ("title", "remote title"),
            ("priority", "Urgent"),
        ]
        assert [c.field for c in skipped] == ["assignee"]

    def test_single_choice_applies_to_all(self):
        resolved, skipped = ManualResolver(lambda conflicts: Choice.LOCAL).resolve_all(
            [_make_conflict("title"), _make_conflict("priority")]
        )
        assert len(resolved) == 2
        assert skipped == []

    def test_callback_deferral(self):
        def defer(conflicts):
            raise ConflictDeferred()

        resolved, skipped = ManualResolver(defer).resolve_all([_make_conflict()])
        assert resolved == []
        assert skipped[0].note == "deferred"


class TestInteractiveResolver:
    def test_prompt_and_choice(self):
        prompts = []

        def ask(conflict, prompt):
            prompts.append(prompt)
            return Choice.LOCAL

        outcome = InteractiveResolver(ask).resolve(_make_conflict())
        assert isinstance(outcome, ResolvedField)
        assert outcome.value == "local title"
        assert "Conflict on 'title' (local vs jira)" in prompts[0]

    def test_skip_and_defer(self):
        answers = iter([Choice.SKIP, Choice.DEFER])
        resolver = InteractiveResolver(lambda c, p: next(answers))
        resolved, skipped = resolver.resolve_all([_make_conflict("title"), _make_conflict("priority")])
        assert resolved == []
        assert [c.note for c in skipped] == ["skipped by user", "deferred"]

    def test_cancel_propagates(self):
        def ask(conflict, prompt):
            raise SyncCancelled("quit")

        with pytest.raises(SyncCancelled):
            InteractiveResolver(ask).resolve_all([_make_conflict()])


# ---------------------------------------------------------------------------
# create_resolver()
# ---------------------------------------------------------------------------


class TestCreateResolver:
    @pytest.mark.parametrize(
        "name, cls",
        [
            ("local_wins", LocalWinsResolver),
            ("remote-wins", RemoteWinsResolver),
            ("merge", MergeResolver),
            ("manual", ManualResolver),
            (ResolutionStrategy.INTERACTIVE, InteractiveResolver),
        ],
    )
    def test_known_strategies(self, name, cls):
        assert isinstance(create_resolver(name), cls)

    def test_unknown_strategy(self):
        with pytest.raises(ValueError, match="Unknown conflict strategy"):
            create_resolver("coin_flip")

    def test_callback_passed_through(self):
        def callback(conflicts):
            return Choice.LOCAL

        resolver = create_resolver("manual", callback)
        assert resolver.callback is callback

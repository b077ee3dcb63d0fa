"""Tests for the workflow registry."""

import threading

import pytest

from phase_orchestrator.core.registry import WorkflowRegistry
from phase_orchestrator.data.models.phases import Phase
from phase_orchestrator.data.models.workflows import Blocker, BlockerSource, Outcome
from phase_orchestrator.db.base import drop_database
from phase_orchestrator.errors import (
    AlreadyExists,
    InvalidTransition,
    NotFound,
    StaleState,
    StorageFailure,
    TransitionBlocked,
)


def _lint_blocker(phase=Phase.APPLY):
    return Blocker(phase=phase, source=BlockerSource.GATE, name="lint", diagnostics=["E501"])


class TestCreateAndGet:
    """Registration and lookup."""

    def test_create_starts_in_init(self, registry):
        workflow = registry.create("42")

        assert workflow.id == "42"
        assert workflow.phase == Phase.INIT
        assert workflow.version == 0
        assert workflow.history == ()
        assert registry.exists("42")

    def test_create_twice_fails(self, registry):
        registry.create("42")
        with pytest.raises(AlreadyExists) as exc_info:
            registry.create("42")
        assert exc_info.value.exit_code == 2

    def test_get_unknown(self, registry):
        with pytest.raises(NotFound):
            registry.get("missing")
        assert not registry.exists("missing")

    def test_list_workflows_filters_by_phase(self, registry):
        registry.create("1")
        registry.create("2")
        registry.commit_transition("2", Phase.INIT, Phase.PLAN)

        assert [w.id for w in registry.list_workflows()] == ["1", "2"]
        assert [w.id for w in registry.list_workflows(phase=Phase.PLAN)] == ["2"]
        assert [w.id for w in registry.list_workflows(phase="INIT")] == ["1"]


class TestCommitTransition:
    """Atomic phase commits."""

    def test_commit_moves_phase_and_appends_history(self, registry):
        registry.create("42")

        workflow = registry.commit_transition(
            "42", Phase.INIT, Phase.PLAN, artifacts={"spec": "docs/specs/ISSUE-042.mdx"}, agent="spec"
        )

        assert workflow.phase == Phase.PLAN
        assert workflow.version == 1
        assert workflow.artifacts == {"spec": "docs/specs/ISSUE-042.mdx"}
        assert len(workflow.history) == 1
        entry = workflow.history[0]
        assert entry.phase == Phase.PLAN
        assert entry.outcome == Outcome.COMPLETED
        assert entry.agent == "spec"
        assert entry.sequence == 1
        assert entry.exited_at is not None

    def test_artifacts_accumulate(self, registry):
        registry.create("42")
        registry.commit_transition("42", Phase.INIT, Phase.PLAN, artifacts={"spec": "s.mdx"})
        workflow = registry.commit_transition("42", Phase.PLAN, Phase.APPLY, artifacts={"diff": "d"})

        assert workflow.artifacts == {"spec": "s.mdx", "diff": "d"}
        assert workflow.history[1].artifacts == {"diff": "d"}

    def test_skipping_a_phase_is_invalid(self, registry):
        registry.create("42")
        with pytest.raises(InvalidTransition):
            registry.commit_transition("42", Phase.INIT, Phase.APPLY)
        assert registry.get("42").phase == Phase.INIT

    def test_going_backwards_is_invalid(self, registry):
        registry.create("42")
        registry.commit_transition("42", Phase.INIT, Phase.PLAN)
        with pytest.raises(InvalidTransition):
            registry.commit_transition("42", Phase.PLAN, Phase.INIT)

    def test_stale_from_phase(self, registry):
        registry.create("42")
        registry.commit_transition("42", Phase.INIT, Phase.PLAN)

        with pytest.raises(StaleState) as exc_info:
            registry.commit_transition("42", Phase.INIT, Phase.PLAN)

        assert exc_info.value.expected == "INIT"
        assert exc_info.value.actual == "PLAN"
        assert len(registry.get("42").history) == 1

    def test_unknown_workflow(self, registry):
        with pytest.raises(NotFound):
            registry.commit_transition("nope", Phase.INIT, Phase.PLAN)

    def test_failed_records_failed_outcome(self, registry):
        registry.create("42")
        workflow = registry.commit_transition("42", Phase.INIT, Phase.FAILED, reason="boom")

        assert workflow.phase == Phase.FAILED
        assert workflow.history[-1].outcome == Outcome.FAILED
        assert workflow.history[-1].reason == "boom"

    def test_nothing_leaves_failed(self, registry):
        registry.create("42")
        registry.commit_transition("42", Phase.INIT, Phase.FAILED)
        with pytest.raises(InvalidTransition):
            registry.commit_transition("42", Phase.FAILED, Phase.PLAN)

    def test_walks_to_done(self, registry):
        registry.create("42")
        path = [Phase.INIT, Phase.PLAN, Phase.APPLY, Phase.TEST, Phase.PR, Phase.MERGE, Phase.DONE]
        for current, nxt in zip(path, path[1:]):
            registry.commit_transition("42", current, nxt)

        workflow = registry.get("42")
        assert workflow.phase == Phase.DONE
        assert [e.phase for e in workflow.history] == path[1:]


class TestBlockers:
    """Blockers recorded against a target phase."""

    def test_blocker_prevents_commit(self, registry):
        registry.create("42")
        registry.commit_transition("42", Phase.INIT, Phase.PLAN)
        registry.replace_blockers("42", Phase.PLAN, Phase.APPLY, BlockerSource.GATE, [_lint_blocker()])

        with pytest.raises(TransitionBlocked) as exc_info:
            registry.commit_transition("42", Phase.PLAN, Phase.APPLY)

        assert "gate:lint" in exc_info.value.message
        assert registry.get("42").phase == Phase.PLAN

    def test_blockers_for_other_phases_do_not_block(self, registry):
        registry.create("42")
        registry.replace_blockers("42", Phase.INIT, Phase.APPLY, BlockerSource.GATE, [_lint_blocker()])

        workflow = registry.commit_transition("42", Phase.INIT, Phase.PLAN)

        assert workflow.phase == Phase.PLAN
        assert workflow.blockers == ()

    def test_failed_allowed_while_blocked_and_keeps_blockers(self, registry):
        registry.create("42")
        registry.commit_transition("42", Phase.INIT, Phase.PLAN)
        registry.replace_blockers("42", Phase.PLAN, Phase.APPLY, BlockerSource.GATE, [_lint_blocker()])

        workflow = registry.commit_transition("42", Phase.PLAN, Phase.FAILED)

        assert workflow.phase == Phase.FAILED
        assert [b.name for b in workflow.blockers] == ["lint"]

    def test_clearing_unblocks(self, registry):
        registry.create("42")
        registry.commit_transition("42", Phase.INIT, Phase.PLAN)
        registry.replace_blockers("42", Phase.PLAN, Phase.APPLY, BlockerSource.GATE, [_lint_blocker()])

        registry.clear_blockers("42", Phase.PLAN, Phase.APPLY, BlockerSource.GATE)
        workflow = registry.commit_transition("42", Phase.PLAN, Phase.APPLY)

        assert workflow.phase == Phase.APPLY

    def test_clearing_only_touches_one_source(self, registry):
        registry.create("42")
        handoff = Blocker(phase=Phase.PLAN, source=BlockerSource.HANDOFF, name="handoff")
        registry.replace_blockers("42", Phase.INIT, Phase.PLAN, BlockerSource.HANDOFF, [handoff])
        registry.replace_blockers("42", Phase.INIT, Phase.PLAN, BlockerSource.GATE, [_lint_blocker(Phase.PLAN)])

        workflow = registry.clear_blockers("42", Phase.INIT, Phase.PLAN, BlockerSource.GATE)

        assert [b.source for b in workflow.blockers] == [BlockerSource.HANDOFF]

    def test_noop_clear_does_not_write(self, registry):
        registry.create("42")

        workflow = registry.clear_blockers("42", Phase.INIT, Phase.PLAN, BlockerSource.GATE)

        assert workflow.version == 0


class TestRecordAttempt:
    """History for attempts that did not change the phase."""

    def test_rejection_appends_history_and_keeps_phase(self, registry):
        registry.create("42")
        registry.commit_transition("42", Phase.INIT, Phase.PLAN)

        workflow = registry.record_attempt(
            "42",
            Phase.PLAN,
            Phase.APPLY,
            Outcome.REJECTED,
            reason="quality gates failed: lint",
            agent="impl",
            artifacts={"diff": "d"},
            source=BlockerSource.GATE,
            blockers=[_lint_blocker()],
        )

        assert workflow.phase == Phase.PLAN
        assert workflow.artifacts == {}
        entry = workflow.history[-1]
        assert entry.phase == Phase.APPLY
        assert entry.outcome == Outcome.REJECTED
        assert entry.artifacts == {"diff": "d"}
        assert [b.name for b in workflow.blockers_for(Phase.APPLY)] == ["lint"]

    def test_completed_outcome_rejected(self, registry):
        registry.create("42")
        with pytest.raises(ValueError):
            registry.record_attempt("42", Phase.INIT, Phase.PLAN, Outcome.COMPLETED)

    def test_stale_attempt(self, registry):
        registry.create("42")
        with pytest.raises(StaleState):
            registry.record_attempt("42", Phase.PLAN, Phase.APPLY, Outcome.CANCELLED)


class TestHistoryExport:
    def test_export_is_ordered(self, registry):
        registry.create("42")
        registry.commit_transition("42", Phase.INIT, Phase.PLAN)
        registry.record_attempt("42", Phase.PLAN, Phase.APPLY, Outcome.REJECTED, reason="lint")
        registry.commit_transition("42", Phase.PLAN, Phase.APPLY)

        rows = registry.export_history("42")

        assert [r["sequence"] for r in rows] == [1, 2, 3]
        assert [r["outcome"] for r in rows] == ["completed", "rejected", "completed"]
        assert all(r["workflow_id"] == "42" for r in rows)
        assert all(len(r["id"]) == 26 for r in rows)

    def test_export_all(self, registry):
        registry.create("1")
        registry.create("2")
        registry.commit_transition("1", Phase.INIT, Phase.PLAN)
        registry.commit_transition("2", Phase.INIT, Phase.PLAN)

        assert {r["workflow_id"] for r in registry.export_history()} == {"1", "2"}

    def test_export_unknown(self, registry):
        with pytest.raises(NotFound):
            registry.export_history("nope")

    def test_versions_and_sequences_increase(self, registry):
        registry.create("42")
        versions = []
        for current, nxt in [(Phase.INIT, Phase.PLAN), (Phase.PLAN, Phase.APPLY), (Phase.APPLY, Phase.TEST)]:
            registry.record_attempt("42", current, nxt, Outcome.REJECTED)
            versions.append(registry.commit_transition("42", current, nxt).version)

        history = registry.history("42")
        sequences = [e.sequence for e in history]
        assert sequences == sorted(set(sequences))
        assert versions == sorted(set(versions))


class TestDurability:
    """File-backed registries."""

    def test_state_survives_reopen(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'orchestrator.db'}"
        first = WorkflowRegistry.from_url(url)
        first.create("42")
        first.commit_transition("42", Phase.INIT, Phase.PLAN, artifacts={"spec": "s.mdx"})

        reopened = WorkflowRegistry.from_url(url)
        workflow = reopened.get("42")

        assert workflow.phase == Phase.PLAN
        assert workflow.artifacts == {"spec": "s.mdx"}
        assert len(workflow.history) == 1

    def test_concurrent_commits_exactly_one_wins(self, file_registry):
        file_registry.create("42")
        barrier = threading.Barrier(4)
        outcomes = []

        def commit():
            barrier.wait()
            try:
                file_registry.commit_transition("42", Phase.INIT, Phase.PLAN)
                outcomes.append("ok")
            except StaleState:
                outcomes.append("stale")

        threads = [threading.Thread(target=commit) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["ok", "stale", "stale", "stale"]
        workflow = file_registry.get("42")
        assert workflow.phase == Phase.PLAN
        assert len(workflow.history) == 1

    def test_storage_errors_are_wrapped(self, registry):
        registry.create("42")
        drop_database(registry._session_factory.kw["bind"])

        with pytest.raises(StorageFailure) as exc_info:
            registry.get("42")
        assert exc_info.value.exit_code == 3

"""Tests for the orchestrator controller."""

import asyncio

import pytest

from phase_orchestrator.agents.base import AgentStatus
from phase_orchestrator.core.event_bus import EventBus
from phase_orchestrator.core.orchestrator import CANCEL_FAIL, AdvanceResult
from phase_orchestrator.data.models.events import EventTypes
from phase_orchestrator.data.models.phases import Phase
from phase_orchestrator.data.models.workflows import BlockerSource, Outcome
from phase_orchestrator.errors import (
    AgentReportedFailure,
    AgentRunnerFailure,
    GateFailure,
    HandoffRejection,
    InvalidTransition,
    NotFound,
    StaleState,
    UnexpectedToken,
)
from phase_orchestrator.gates.framework import GateResult

TOKENS = ["APPROVE PLAN", "APPLY", "TEST", "PR", "MERGE"]


def _gate(passed, diagnostics=()):
    def check(artifacts, context):
        return GateResult("ignored", passed, list(diagnostics))

    return check


async def _wait_for_calls(agent, count):
    while len(agent.calls) < count:
        await asyncio.sleep(0)


class TestAdvance:
    """Happy paths and token handling."""

    @pytest.mark.asyncio
    async def test_plan_then_apply(self, controller, registry, events):
        registry.create("42")

        result = await controller.advance("42", "APPROVE PLAN")

        assert isinstance(result, AdvanceResult)
        assert result.workflow.phase == Phase.PLAN
        assert result.workflow.artifacts == {"spec": "docs/specs/ISSUE-42.mdx"}
        assert result.certificate.sequence == 1

        result = await controller.advance("42", "APPLY")

        assert result.workflow.phase == Phase.APPLY
        assert result.workflow.artifacts["diff"] == "patch-1"
        assert registry.get("42").phase == Phase.APPLY

    @pytest.mark.asyncio
    async def test_first_token_creates_the_workflow(self, controller, registry, events):
        await controller.advance("42", "approve plan")

        assert registry.get("42").phase == Phase.PLAN
        assert [e.topic for e in events] == [
            EventTypes.WORKFLOW_CREATED,
            EventTypes.PHASE_STARTED,
            EventTypes.HANDOFF_READY,
            EventTypes.GATE_PASSED,
            EventTypes.PHASE_COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_full_run_reaches_done(self, controller, registry, events):
        for token in TOKENS:
            result = await controller.advance("42", token)

        workflow = registry.get("42")
        assert result.workflow.phase == Phase.DONE
        assert workflow.phase == Phase.DONE
        assert [e.phase for e in workflow.history] == [
            Phase.PLAN,
            Phase.APPLY,
            Phase.TEST,
            Phase.PR,
            Phase.MERGE,
            Phase.DONE,
        ]
        assert all(e.outcome == Outcome.COMPLETED for e in workflow.history)
        assert workflow.artifacts["mergeCommit"] == "abc1234"
        assert events[-1].topic == EventTypes.WORKFLOW_TERMINATED

    @pytest.mark.asyncio
    async def test_agents_see_committed_artifacts(self, controller, stub_agents):
        await controller.advance("42", "APPROVE PLAN")
        await controller.advance("42", "APPLY")

        invocation = stub_agents[Phase.APPLY].calls[0]
        assert invocation.artifacts == {"spec": "docs/specs/ISSUE-42.mdx"}
        assert invocation.phase == Phase.APPLY
        assert invocation.issue.number == "42"
        assert [e.phase for e in invocation.history] == [Phase.PLAN]

    @pytest.mark.asyncio
    async def test_out_of_order_token(self, controller, registry):
        await controller.advance("42", "APPROVE PLAN")

        with pytest.raises(UnexpectedToken) as exc_info:
            await controller.advance("42", "TEST")

        assert exc_info.value.expected == "APPLY"
        workflow = registry.get("42")
        assert workflow.phase == Phase.PLAN
        assert len(workflow.history) == 1

    @pytest.mark.asyncio
    async def test_repeating_a_committed_token(self, controller):
        await controller.advance("42", "APPROVE PLAN")

        with pytest.raises(UnexpectedToken):
            await controller.advance("42", "APPROVE PLAN")

    @pytest.mark.asyncio
    async def test_unknown_token(self, controller):
        with pytest.raises(UnexpectedToken):
            await controller.advance("42", "SHIP IT")

    @pytest.mark.asyncio
    async def test_later_token_needs_existing_workflow(self, controller, registry):
        with pytest.raises(NotFound):
            await controller.advance("42", "APPLY")
        assert not registry.exists("42")

    @pytest.mark.asyncio
    async def test_terminal_workflow_cannot_advance(self, controller):
        for token in TOKENS:
            await controller.advance("42", token)

        with pytest.raises(InvalidTransition):
            await controller.advance("42", "MERGE")

    def test_unknown_cancel_policy(self, make_controller):
        with pytest.raises(ValueError):
            make_controller(cancel_policy="ignore")


class TestConcurrency:
    """Racing advances on one workflow."""

    @pytest.mark.asyncio
    async def test_second_concurrent_apply_is_stale(self, controller, registry, stub_agents):
        registry.create("42")
        await controller.advance("42", "APPROVE PLAN")
        impl = stub_agents[Phase.APPLY]
        impl.hold = asyncio.Event()

        first = asyncio.create_task(controller.advance("42", "APPLY"))
        second = asyncio.create_task(controller.advance("42", "APPLY"))
        await _wait_for_calls(impl, 2)
        impl.hold.set()
        results = await asyncio.gather(first, second, return_exceptions=True)

        committed = [r for r in results if isinstance(r, AdvanceResult)]
        stale = [r for r in results if isinstance(r, StaleState)]
        assert len(committed) == 1
        assert len(stale) == 1
        workflow = registry.get("42")
        assert workflow.phase == Phase.APPLY
        assert [e.phase for e in workflow.history] == [Phase.PLAN, Phase.APPLY]

    @pytest.mark.asyncio
    async def test_latest_certificate_is_the_one_committed(self, controller, registry, bus):
        await controller.advance("42", "APPROVE PLAN")

        def redeclare(event):
            if event.phase == Phase.APPLY and event.payload["sequence"] == 1:
                controller.handoff.declare_ready(event.workflow_id, "impl", Phase.APPLY, {"diff": "patch-2"})

        bus.subscribe(EventTypes.HANDOFF_READY, redeclare)

        result = await controller.advance("42", "APPLY")

        assert result.certificate.sequence == 2
        assert registry.get("42").artifacts["diff"] == "patch-2"
        assert controller.handoff.current("42", Phase.APPLY) is None


class TestRejections:
    """Attempts that leave the phase unchanged."""

    @pytest.mark.asyncio
    async def test_gates_are_all_or_nothing(self, controller, registry, events):
        await controller.advance("42", "APPROVE PLAN")
        controller.gates.register_gate(Phase.APPLY, "typecheck", _gate(True))
        controller.gates.register_gate(Phase.APPLY, "lint", _gate(False, ["src/trend.ts:3 no-unused-vars"]))

        with pytest.raises(GateFailure) as exc_info:
            await controller.advance("42", "APPLY")

        assert [r.name for r in exc_info.value.results] == ["typecheck", "lint"]
        assert exc_info.value.exit_code == 1
        workflow = registry.get("42")
        assert workflow.phase == Phase.PLAN
        assert "diff" not in workflow.artifacts
        assert workflow.history[-1].outcome == Outcome.REJECTED
        assert workflow.history[-1].artifacts == {"diff": "patch-1"}
        assert [(b.source, b.name) for b in workflow.blockers] == [(BlockerSource.GATE, "lint")]
        assert EventTypes.GATE_FAILED in [e.topic for e in events]

    @pytest.mark.asyncio
    async def test_fixed_gate_lets_the_retry_commit(self, controller, registry):
        await controller.advance("42", "APPROVE PLAN")
        controller.gates.register_gate(Phase.APPLY, "lint", _gate(False))
        with pytest.raises(GateFailure):
            await controller.advance("42", "APPLY")

        controller.gates.register_gate(Phase.APPLY, "lint", _gate(True))
        result = await controller.advance("42", "APPLY")

        assert result.workflow.phase == Phase.APPLY
        assert result.workflow.blockers == ()
        outcomes = [e.outcome for e in result.workflow.history]
        assert outcomes == [Outcome.COMPLETED, Outcome.REJECTED, Outcome.COMPLETED]

    @pytest.mark.asyncio
    async def test_gates_see_the_produced_artifacts(self, controller):
        seen = {}

        def check(artifacts, context):
            seen.update(artifacts)
            return GateResult("spec_present", True)

        controller.gates.register_gate(Phase.PLAN, "spec_present", check)

        await controller.advance("42", "APPROVE PLAN")

        assert seen == {"spec": "docs/specs/ISSUE-42.mdx"}

    @pytest.mark.asyncio
    async def test_agent_failure_is_retryable(self, controller, registry, stub_agents, events):
        await controller.advance("42", "APPROVE PLAN")
        impl = stub_agents[Phase.APPLY]
        impl.status = AgentStatus.FAILURE
        impl.diagnostics = ["tests still failing"]

        with pytest.raises(AgentReportedFailure):
            await controller.advance("42", "APPLY")

        workflow = registry.get("42")
        assert workflow.phase == Phase.PLAN
        assert workflow.history[-1].outcome == Outcome.REJECTED
        assert workflow.blockers[0].source == BlockerSource.AGENT
        assert workflow.blockers[0].diagnostics == ["tests still failing"]
        assert EventTypes.AGENT_FAILED in [e.topic for e in events]

        impl.status = AgentStatus.SUCCESS
        result = await controller.advance("42", "APPLY")
        assert result.workflow.phase == Phase.APPLY

    @pytest.mark.asyncio
    async def test_missing_artifact_rejects_handoff(self, controller, registry, stub_agents, events):
        await controller.advance("42", "APPROVE PLAN")
        stub_agents[Phase.APPLY].produced = {}

        with pytest.raises(HandoffRejection) as exc_info:
            await controller.advance("42", "APPLY")

        assert exc_info.value.missing == ["diff"]
        workflow = registry.get("42")
        assert workflow.phase == Phase.PLAN
        assert workflow.blockers[0].source == BlockerSource.HANDOFF
        assert workflow.blockers[0].diagnostics == ["missing artifact: diff"]
        assert EventTypes.HANDOFF_REJECTED in [e.topic for e in events]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_advance(self, controller, bus, registry):
        def broken(event):
            raise RuntimeError("dashboard is down")

        bus.subscribe(EventBus.WILDCARD, broken)

        result = await controller.advance("42", "APPROVE PLAN")

        assert result.workflow.phase == Phase.PLAN
        assert bus.failed_deliveries > 0


class TestFailures:
    """Paths that end the workflow."""

    @pytest.mark.asyncio
    async def test_agent_crash_fails_the_workflow(self, controller, registry, stub_agents, events):
        await controller.advance("42", "APPROVE PLAN")
        stub_agents[Phase.APPLY].error = RuntimeError("segfault in codegen")

        with pytest.raises(AgentRunnerFailure) as exc_info:
            await controller.advance("42", "APPLY")

        assert exc_info.value.context["phase"] == "APPLY"
        assert exc_info.value.context["artifacts"] == {"spec": "docs/specs/ISSUE-42.mdx"}
        workflow = registry.get("42")
        assert workflow.phase == Phase.FAILED
        assert workflow.history[-1].outcome == Outcome.FAILED
        assert "segfault in codegen" in workflow.history[-1].reason
        assert events[-1].topic == EventTypes.WORKFLOW_TERMINATED

        with pytest.raises(InvalidTransition):
            await controller.advance("42", "APPLY")

    @pytest.mark.asyncio
    async def test_runner_failure_keeps_its_message(self, controller, registry, stub_agents):
        stub_agents[Phase.PLAN].error = AgentRunnerFailure("Command not found: gh")

        with pytest.raises(AgentRunnerFailure, match="Command not found: gh"):
            await controller.advance("42", "APPROVE PLAN")

        assert registry.get("42").phase == Phase.FAILED

    @pytest.mark.asyncio
    async def test_abort(self, controller, registry, events):
        await controller.advance("42", "APPROVE PLAN")

        workflow = controller.abort("42", "requirements changed")

        assert workflow.phase == Phase.FAILED
        assert workflow.history[-1].agent == "operator"
        assert workflow.history[-1].reason == "requirements changed"
        assert events[-1].topic == EventTypes.WORKFLOW_TERMINATED
        with pytest.raises(InvalidTransition):
            controller.abort("42", "again")


class TestCancellation:
    """An advance cancelled while its agent runs."""

    @pytest.mark.asyncio
    async def test_retry_policy_records_attempt(self, controller, registry, stub_agents, events):
        await controller.advance("42", "APPROVE PLAN")
        impl = stub_agents[Phase.APPLY]
        impl.hold = asyncio.Event()

        task = asyncio.create_task(controller.advance("42", "APPLY"))
        await _wait_for_calls(impl, 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        workflow = registry.get("42")
        assert workflow.phase == Phase.PLAN
        assert workflow.history[-1].outcome == Outcome.CANCELLED
        assert events[-1].topic == EventTypes.PHASE_CANCELLED

        impl.hold = None
        result = await controller.advance("42", "APPLY")
        assert result.workflow.phase == Phase.APPLY

    @pytest.mark.asyncio
    async def test_fail_policy_fails_the_workflow(self, make_controller, registry, stub_agents, events):
        controller = make_controller(cancel_policy=CANCEL_FAIL)
        await controller.advance("42", "APPROVE PLAN")
        impl = stub_agents[Phase.APPLY]
        impl.hold = asyncio.Event()

        task = asyncio.create_task(controller.advance("42", "APPLY"))
        await _wait_for_calls(impl, 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        workflow = registry.get("42")
        assert workflow.phase == Phase.FAILED
        assert workflow.history[-1].outcome == Outcome.CANCELLED
        assert events[-1].topic == EventTypes.WORKFLOW_TERMINATED


class TestReport:
    @pytest.mark.asyncio
    async def test_report_for_finished_workflow(self, controller):
        for token in TOKENS:
            await controller.advance("42", token)

        report = controller.report("42")

        assert report["status"] == "SUCCESS"
        assert report["current_phase"] == "DONE"
        assert report["next_token"] is None
        assert report["issue"]["number"] == "42"
        assert len(report["history"]) == 6
        assert report["duration"].endswith("s")

    @pytest.mark.asyncio
    async def test_report_in_progress(self, controller):
        await controller.advance("42", "APPROVE PLAN")

        report = controller.report("42")

        assert report["status"] == "IN_PROGRESS"
        assert report["next_token"] == "APPLY"

    def test_status_unknown(self, controller):
        with pytest.raises(NotFound):
            controller.status("nope")

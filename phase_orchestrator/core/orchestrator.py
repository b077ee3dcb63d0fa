"""
Orchestrator controller: turns operator tokens into committed phases.

One ``advance`` call moves one workflow one phase forward:

    read state -> agent -> handoff certificate -> quality gates -> commit

Every call ends in exactly one of: a committed transition, a committed
FAILED, or a rejection recorded in history with the phase unchanged.
The controller holds no lock while an agent runs; concurrent callers on
the same workflow are sorted out by the registry's optimistic check at
commit time.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from ..agents.base import AgentInvocation, AgentResult, AgentRunner
from ..agents.registry import AgentRegistry
from ..data.models.events import Event, EventTypes
from ..data.models.phases import Phase, phase_for_token, token_for_phase
from ..data.models.workflows import Blocker, BlockerSource, Outcome, Workflow
from ..errors import (
    AgentReportedFailure,
    AgentRunnerFailure,
    AlreadyExists,
    GateFailure,
    HandoffRejection,
    InvalidTransition,
    NotFound,
    OrchestratorError,
    UnexpectedToken,
)
from ..gates.framework import GateContext, GateResult, QualityGateFramework, blockers_from, verdict
from ..issues import IssueContext, minimal_issue
from ..storage import create_trace_store
from .event_bus import EventBus
from .handoff import HandoffCertificate, HandoffService, Rejection
from .registry import WorkflowRegistry

logger = structlog.get_logger()

CANCEL_RETRY = "retry"
CANCEL_FAIL = "fail"

IssueLoader = Callable[[str], IssueContext]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AdvanceResult:
    """A committed phase advance."""

    workflow: Workflow
    phase: Phase
    agent: str
    certificate: HandoffCertificate
    gate_results: List[GateResult] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow.id,
            "committed_phase": self.phase.value,
            "phase": self.workflow.phase.value,
            "next_token": self.workflow.next_token,
            "agent": self.agent,
            "artifacts": dict(self.workflow.artifacts),
            "certificate": self.certificate.to_dict(),
            "gates": [r.to_dict() for r in self.gate_results],
            "diagnostics": list(self.diagnostics),
        }


class OrchestratorController:
    """Drives workflows through PLAN, APPLY, TEST, PR and MERGE."""

    def __init__(
        self,
        registry: WorkflowRegistry,
        bus: EventBus,
        gates: QualityGateFramework,
        handoff: HandoffService,
        agents: AgentRegistry,
        *,
        trace_uri: str,
        work_dir: Path = Path("."),
        env: Optional[Mapping[str, str]] = None,
        issue_loader: Optional[IssueLoader] = None,
        cancel_policy: str = CANCEL_RETRY,
        gate_timeout_seconds: int = 900,
    ):
        if cancel_policy not in (CANCEL_RETRY, CANCEL_FAIL):
            raise ValueError(f"Unknown cancel policy: {cancel_policy}")
        self.registry = registry
        self.bus = bus
        self.gates = gates
        self.handoff = handoff
        self.agents = agents
        self.trace_uri = trace_uri
        self.work_dir = Path(work_dir)
        self.env = dict(env or {})
        self.issue_loader = issue_loader or minimal_issue
        self.cancel_policy = cancel_policy
        self.gate_timeout_seconds = gate_timeout_seconds

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def advance(self, workflow_id: str, token: str) -> AdvanceResult:
        """Advance ``workflow_id`` into the phase named by ``token``.

        Raises:
            UnexpectedToken: token is unknown or not the next phase
            NotFound: no workflow and the token is not the first one
            InvalidTransition: the workflow is terminal
            AgentReportedFailure: the agent returned FAILURE (retry later)
            HandoffRejection: required artifacts are missing
            GateFailure: at least one gate failed
            AgentRunnerFailure: the agent crashed; FAILED was committed
            StaleState: another caller advanced the workflow first
        """
        target = phase_for_token(token)
        log = logger.bind(workflow_id=workflow_id, phase=target.value)

        workflow = self._load_or_create(workflow_id, target)
        if workflow.is_terminal:
            raise InvalidTransition(
                f"Workflow '{workflow_id}' is {workflow.phase}; terminal workflows cannot be "
                "advanced, start a new workflow instead",
                context={"phase": workflow.phase.value},
            )
        if workflow.next_phase != target:
            raise UnexpectedToken(token, expected=workflow.next_token)

        runner = self.agents.runner_for(target)
        started_at = _utcnow()
        log.info("phase_started", agent=runner.name, from_phase=workflow.phase.value)
        self._publish(
            EventTypes.PHASE_STARTED,
            workflow_id,
            target,
            {"from_phase": workflow.phase.value, "token": token_for_phase(target), "agent": runner.name},
        )

        try:
            return await self._run_phase(workflow, target, runner, started_at)
        except asyncio.CancelledError:
            self._record_cancellation(workflow, target, runner, started_at)
            raise

    def abort(self, workflow_id: str, reason: str) -> Workflow:
        """Commit FAILED on operator request."""
        workflow = self.registry.get(workflow_id)
        if workflow.is_terminal:
            raise InvalidTransition(
                f"Workflow '{workflow_id}' is already {workflow.phase}",
                context={"phase": workflow.phase.value},
            )
        workflow = self.registry.commit_transition(
            workflow_id, workflow.phase, Phase.FAILED, reason=reason, agent="operator"
        )
        logger.info("workflow_aborted", workflow_id=workflow_id, reason=reason)
        self._publish(EventTypes.WORKFLOW_TERMINATED, workflow_id, Phase.FAILED, {"reason": reason})
        return workflow

    def status(self, workflow_id: str) -> Workflow:
        return self.registry.get(workflow_id)

    def report(self, workflow_id: str) -> Dict[str, Any]:
        """Execution report: issue, history, current phase, duration, status."""
        workflow = self.registry.get(workflow_id)
        history = list(workflow.history)
        duration = 0
        if history:
            start = history[0].entered_at
            end = history[-1].exited_at or history[-1].entered_at
            duration = max(0, round((end - start).total_seconds()))

        if workflow.phase == Phase.DONE:
            status = "SUCCESS"
        elif workflow.phase == Phase.FAILED:
            status = "FAILED"
        else:
            status = "IN_PROGRESS"

        return {
            "issue": self.issue_loader(workflow_id).to_dict(),
            "history": [entry.model_dump(mode="json") for entry in history],
            "current_phase": workflow.phase.value,
            "next_token": workflow.next_token,
            "artifacts": dict(workflow.artifacts),
            "blockers": [b.model_dump(mode="json") for b in workflow.blockers],
            "duration": f"{duration}s",
            "status": status,
        }

    # ------------------------------------------------------------------
    # Phase pipeline
    # ------------------------------------------------------------------

    async def _run_phase(
        self,
        workflow: Workflow,
        target: Phase,
        runner: AgentRunner,
        started_at: datetime,
    ) -> AdvanceResult:
        workflow_id = workflow.id
        from_phase = workflow.phase
        log = logger.bind(workflow_id=workflow_id, phase=target.value, agent=runner.name)

        result = await self._invoke_agent(workflow, target, runner, started_at)

        if not result.succeeded:
            self.registry.record_attempt(
                workflow_id,
                from_phase,
                target,
                Outcome.REJECTED,
                reason=f"agent {runner.name} reported failure",
                agent=runner.name,
                entered_at=started_at,
                artifacts=result.produced_artifacts,
                source=BlockerSource.AGENT,
                blockers=[
                    Blocker(
                        phase=target,
                        source=BlockerSource.AGENT,
                        name=runner.name,
                        diagnostics=result.diagnostics,
                    )
                ],
            )
            log.info("agent_reported_failure", diagnostics=result.diagnostics)
            self._publish(
                EventTypes.AGENT_FAILED,
                workflow_id,
                target,
                {"agent": runner.name, "diagnostics": list(result.diagnostics)},
            )
            raise AgentReportedFailure(
                f"Agent {runner.name} reported failure for {target}; fix the cause and "
                f"re-issue {token_for_phase(target)}",
                context={"phase": target.value, "agent": runner.name, "diagnostics": result.diagnostics},
            )
        self.registry.clear_blockers(workflow_id, from_phase, target, BlockerSource.AGENT)

        certificate = self._certify(workflow, target, runner, result, started_at)

        candidate = workflow.with_artifacts(certificate.artifacts)
        context = GateContext(
            workflow_id=workflow_id,
            phase=target,
            work_dir=self.work_dir,
            env=self.env,
            timeout_seconds=self.gate_timeout_seconds,
        )
        results = await asyncio.to_thread(self.gates.run_gates, target, candidate, context)
        if not verdict(results):
            failed = [r.name for r in results if not r.passed]
            self.registry.record_attempt(
                workflow_id,
                from_phase,
                target,
                Outcome.REJECTED,
                reason=f"quality gates failed: {', '.join(failed)}",
                agent=runner.name,
                entered_at=started_at,
                artifacts=certificate.artifacts,
                source=BlockerSource.GATE,
                blockers=blockers_from(target, results),
            )
            log.info("gates_failed", failed=failed)
            self._publish(
                EventTypes.GATE_FAILED,
                workflow_id,
                target,
                {"results": [r.to_dict() for r in results]},
            )
            raise GateFailure(workflow_id, target.value, results)
        self.registry.clear_blockers(workflow_id, from_phase, target, BlockerSource.GATE)
        self._publish(
            EventTypes.GATE_PASSED,
            workflow_id,
            target,
            {"results": [r.to_dict() for r in results]},
        )

        committed = self.registry.commit_transition(
            workflow_id,
            from_phase,
            target,
            Outcome.COMPLETED,
            certificate.artifacts,
            agent=runner.name,
            entered_at=started_at,
        )
        self.handoff.withdraw(workflow_id, target)
        log.info("phase_completed", version=committed.version)
        self._publish(
            EventTypes.PHASE_COMPLETED,
            workflow_id,
            target,
            {
                "from_phase": from_phase.value,
                "artifacts": dict(certificate.artifacts),
                "certificate_sequence": certificate.sequence,
            },
        )

        if target == Phase.MERGE:
            committed = self.registry.commit_transition(
                workflow_id, Phase.MERGE, Phase.DONE, Outcome.COMPLETED, reason="merged"
            )
            log.info("workflow_done")
            self._publish(EventTypes.WORKFLOW_TERMINATED, workflow_id, Phase.DONE, {"final_phase": "DONE"})

        return AdvanceResult(
            workflow=committed,
            phase=target,
            agent=runner.name,
            certificate=certificate,
            gate_results=results,
            diagnostics=list(result.diagnostics),
        )

    async def _invoke_agent(
        self,
        workflow: Workflow,
        target: Phase,
        runner: AgentRunner,
        started_at: datetime,
    ) -> AgentResult:
        invocation = AgentInvocation(
            workflow_id=workflow.id,
            phase=target,
            artifacts=dict(workflow.artifacts),
            work_dir=self.work_dir,
            trace=create_trace_store(self.trace_uri, workflow.id),
            issue=self.issue_loader(workflow.id),
            history=workflow.history,
            env=self.env,
        )
        try:
            return await runner.run(invocation)
        except AgentRunnerFailure as exc:
            self._fail(workflow, target, runner, started_at, exc.message)
            exc.context.setdefault("phase", target.value)
            exc.context.setdefault("agent", runner.name)
            exc.context.setdefault("artifacts", dict(workflow.artifacts))
            raise
        except Exception as exc:
            message = f"Agent {runner.name} crashed during {target}: {type(exc).__name__}: {exc}"
            self._fail(workflow, target, runner, started_at, message)
            raise AgentRunnerFailure(
                message,
                context={"phase": target.value, "agent": runner.name, "artifacts": dict(workflow.artifacts)},
            ) from exc

    def _certify(
        self,
        workflow: Workflow,
        target: Phase,
        runner: AgentRunner,
        result: AgentResult,
        started_at: datetime,
    ) -> HandoffCertificate:
        """Declare the handoff and return the latest valid certificate."""
        decision = self.handoff.declare_ready(workflow.id, runner.name, target, result.produced_artifacts)

        if isinstance(decision, Rejection):
            self._reject_handoff(workflow, target, runner, started_at, result, decision.missing, decision.reason)

        # A later declaration for the same phase supersedes this one
        certificate = self.handoff.current(workflow.id, target)
        if certificate is None:
            self._reject_handoff(
                workflow, target, runner, started_at, result, [], "handoff certificate was withdrawn"
            )
        if not self.handoff.verify(certificate):
            self._reject_handoff(
                workflow, target, runner, started_at, result, [], "handoff certificate signature is invalid"
            )

        self.registry.clear_blockers(workflow.id, workflow.phase, target, BlockerSource.HANDOFF)
        return certificate

    def _reject_handoff(
        self,
        workflow: Workflow,
        target: Phase,
        runner: AgentRunner,
        started_at: datetime,
        result: AgentResult,
        missing: List[str],
        reason: str,
    ) -> None:
        self.registry.record_attempt(
            workflow.id,
            workflow.phase,
            target,
            Outcome.REJECTED,
            reason=reason,
            agent=runner.name,
            entered_at=started_at,
            artifacts=result.produced_artifacts,
            source=BlockerSource.HANDOFF,
            blockers=[
                Blocker(
                    phase=target,
                    source=BlockerSource.HANDOFF,
                    name="handoff",
                    diagnostics=[f"missing artifact: {kind}" for kind in missing] or [reason],
                )
            ],
        )
        logger.info("handoff_blocked", workflow_id=workflow.id, phase=target.value, missing=missing)
        raise HandoffRejection(workflow.id, target.value, missing, reason)

    # ------------------------------------------------------------------
    # Terminal paths
    # ------------------------------------------------------------------

    def _fail(self, workflow: Workflow, target: Phase, runner: AgentRunner, started_at: datetime, reason: str) -> None:
        self.registry.commit_transition(
            workflow.id,
            workflow.phase,
            Phase.FAILED,
            reason=reason,
            agent=runner.name,
            entered_at=started_at,
        )
        logger.error("agent_runner_failed", workflow_id=workflow.id, phase=target.value, reason=reason)
        self._publish(
            EventTypes.WORKFLOW_TERMINATED,
            workflow.id,
            Phase.FAILED,
            {"reason": reason, "failed_phase": target.value, "agent": runner.name},
        )

    def _record_cancellation(
        self, workflow: Workflow, target: Phase, runner: AgentRunner, started_at: datetime
    ) -> None:
        reason = f"{target} cancelled"
        log = logger.bind(workflow_id=workflow.id, phase=target.value, policy=self.cancel_policy)
        try:
            if self.cancel_policy == CANCEL_FAIL:
                self.registry.commit_transition(
                    workflow.id,
                    workflow.phase,
                    Phase.FAILED,
                    Outcome.CANCELLED,
                    reason=reason,
                    agent=runner.name,
                    entered_at=started_at,
                )
                self._publish(
                    EventTypes.WORKFLOW_TERMINATED,
                    workflow.id,
                    Phase.FAILED,
                    {"reason": reason, "failed_phase": target.value},
                )
            else:
                self.registry.record_attempt(
                    workflow.id,
                    workflow.phase,
                    target,
                    Outcome.CANCELLED,
                    reason=reason,
                    agent=runner.name,
                    entered_at=started_at,
                )
                self._publish(EventTypes.PHASE_CANCELLED, workflow.id, target, {"reason": reason})
        except OrchestratorError as exc:
            # e.g. the workflow already moved on; the cancellation still propagates
            log.warning("cancellation_not_recorded", error=exc.message)
            return
        log.info("phase_cancelled")

    # ------------------------------------------------------------------

    def _load_or_create(self, workflow_id: str, target: Phase) -> Workflow:
        try:
            return self.registry.get(workflow_id)
        except NotFound:
            if target != Phase.PLAN:
                raise
        try:
            workflow = self.registry.create(workflow_id)
        except AlreadyExists:
            return self.registry.get(workflow_id)
        self._publish(EventTypes.WORKFLOW_CREATED, workflow_id, Phase.INIT, {})
        return workflow

    def _publish(self, topic: str, workflow_id: str, phase: Optional[Phase], payload: Dict[str, Any]) -> None:
        self.bus.publish(Event(topic=topic, workflow_id=workflow_id, phase=phase, payload=payload))

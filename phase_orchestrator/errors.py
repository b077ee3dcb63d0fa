"""
Error taxonomy for the orchestrator.

Every error carries a stable ``code`` for programmatic handling, a
``message`` fit for direct operator display and the CLI ``exit_code``
it maps to:

- usage/state errors (exit 2): AlreadyExists, NotFound, StaleState,
  InvalidTransition, TransitionBlocked, UnexpectedToken
- rejections (exit 1): GateFailure, HandoffRejection,
  AgentReportedFailure, AgentRunnerFailure
- infrastructure (exit 3): StorageFailure, ConfigurationError
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from .data.models.workflows import Blocker
    from .gates.framework import GateResult


class OrchestratorError(Exception):
    """
    Base class for all orchestrator errors.

    Attributes:
        code: Stable error code for programmatic handling
        message: Human-readable error description
        context: Extra structured detail (phase, artifacts, ...)
    """

    code = "ORCHESTRATOR_ERROR"
    exit_code = 3

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        if code is not None:
            self.code = code
        self.message = message
        self.context = context or {}
        super().__init__(f"{self.code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        data: Dict[str, Any] = {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
        }
        if self.context:
            data["context"] = self.context
        return data


class UsageError(OrchestratorError):
    """Operator or state error. Never retried automatically."""

    code = "USAGE_ERROR"
    exit_code = 2


class AlreadyExists(UsageError):
    code = "ALREADY_EXISTS"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id}' already exists")


class NotFound(UsageError):
    code = "NOT_FOUND"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id}' not found")


class StaleState(UsageError):
    """The stored phase moved on since the caller read it."""

    code = "STALE_STATE"

    def __init__(self, workflow_id: str, expected: str, actual: str):
        self.workflow_id = workflow_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Workflow '{workflow_id}' is in phase {actual}, expected {expected}. "
            "Re-read the workflow and retry.",
            context={"expected_phase": expected, "actual_phase": actual},
        )


class InvalidTransition(UsageError):
    code = "INVALID_TRANSITION"


class TransitionBlocked(InvalidTransition):
    """Unresolved blockers prevent the transition."""

    code = "TRANSITION_BLOCKED"

    def __init__(self, workflow_id: str, phase: str, blockers: Sequence["Blocker"]):
        self.workflow_id = workflow_id
        self.phase = phase
        self.blockers = list(blockers)
        names = ", ".join(f"{b.source.value}:{b.name}" for b in self.blockers)
        super().__init__(
            f"Workflow '{workflow_id}' cannot enter {phase}; unresolved blockers: {names}",
            context={"blockers": [b.model_dump(mode="json") for b in self.blockers]},
        )


class UnexpectedToken(UsageError):
    code = "UNEXPECTED_TOKEN"

    def __init__(self, token: str, expected: Optional[str] = None):
        self.token = token
        self.expected = expected
        if expected:
            message = f"Token '{token}' does not match the next phase; expected '{expected}'"
        else:
            message = f"Token '{token}' is not a phase-advance token"
        super().__init__(message, context={"token": token, "expected": expected})


class GateFailure(OrchestratorError):
    """One or more quality gates failed for the target phase."""

    code = "GATE_FAILURE"
    exit_code = 1

    def __init__(self, workflow_id: str, phase: str, results: Sequence["GateResult"]):
        self.workflow_id = workflow_id
        self.phase = phase
        self.results = list(results)
        failed = [r.name for r in self.results if not r.passed]
        super().__init__(
            f"Quality gates failed for {phase}: {', '.join(failed)}",
            context={
                "phase": phase,
                "results": [r.to_dict() for r in self.results],
            },
        )


class HandoffRejection(OrchestratorError):
    """Required artifacts for the target phase are missing."""

    code = "HANDOFF_REJECTED"
    exit_code = 1

    def __init__(self, workflow_id: str, phase: str, missing: List[str], reason: Optional[str] = None):
        self.workflow_id = workflow_id
        self.phase = phase
        self.missing = list(missing)
        super().__init__(
            reason or f"Handoff to {phase} rejected; missing artifacts: {', '.join(self.missing)}",
            context={"phase": phase, "missing": self.missing},
        )


class AgentReportedFailure(OrchestratorError):
    """The agent finished but reported FAILURE. Retry by re-issuing the token."""

    code = "AGENT_REPORTED_FAILURE"
    exit_code = 1


class AgentRunnerFailure(OrchestratorError):
    """Unrecoverable agent error. The workflow has been moved to FAILED."""

    code = "AGENT_RUNNER_FAILURE"
    exit_code = 1


class StorageFailure(OrchestratorError):
    code = "STORAGE_FAILURE"
    exit_code = 3


class ConfigurationError(OrchestratorError):
    code = "CONFIGURATION_ERROR"
    exit_code = 3

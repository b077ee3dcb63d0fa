"""
Agent runner interface.

A runner does the work of one phase. It receives an ``AgentInvocation``
(a copy of the workflow's artifacts plus where to work) and returns an
``AgentResult``. Returning FAILURE means "try again later"; raising
means the run cannot continue and the workflow is failed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog

from ..data.models.phases import Phase
from ..data.models.workflows import HistoryEntry
from ..issues import IssueContext, minimal_issue
from ..storage import TraceStore

logger = structlog.get_logger()


class AgentStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass(frozen=True)
class AgentInvocation:
    """Everything a runner may read. Runners never see the live workflow."""

    workflow_id: str
    phase: Phase
    artifacts: Dict[str, str]
    work_dir: Path
    trace: TraceStore
    issue: Optional[IssueContext] = None
    history: Tuple[HistoryEntry, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def issue_context(self) -> IssueContext:
        return self.issue or minimal_issue(self.workflow_id)

    def with_artifacts(self, produced: Mapping[str, str]) -> "AgentInvocation":
        """Copy with ``produced`` merged over the current artifacts."""
        return replace(self, artifacts={**self.artifacts, **produced})

    def command_env(self) -> Dict[str, str]:
        """Extra environment exported to every command a runner starts."""
        return {
            **self.env,
            "ORCHESTRATOR_WORKFLOW_ID": self.workflow_id,
            "ORCHESTRATOR_PHASE": self.phase.value,
            "ORCHESTRATOR_ISSUE": self.issue_context.number,
        }


@dataclass
class AgentResult:
    """What a runner reports back."""

    status: AgentStatus
    produced_artifacts: Dict[str, str] = field(default_factory=dict)
    diagnostics: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == AgentStatus.SUCCESS

    @classmethod
    def success(cls, produced: Optional[Dict[str, str]] = None, diagnostics: Optional[List[str]] = None) -> "AgentResult":
        return cls(AgentStatus.SUCCESS, dict(produced or {}), list(diagnostics or []))

    @classmethod
    def failure(cls, *diagnostics: str, produced: Optional[Dict[str, str]] = None) -> "AgentResult":
        return cls(AgentStatus.FAILURE, dict(produced or {}), list(diagnostics))


class AgentRunner(ABC):
    """Abstract base class for phase agents."""

    name: str = "agent"

    def __init__(self, name: Optional[str] = None):
        if name:
            self.name = name
        self.logger = logger.bind(agent=self.name)

    @abstractmethod
    async def run(self, invocation: AgentInvocation) -> AgentResult:
        """Do the phase's work.

        Raises:
            AgentRunnerFailure: the work cannot be completed at all
        """
        pass

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "type": type(self).__name__}


class SequentialRunner(AgentRunner):
    """Runs several agents in order as one phase runner.

    Each member sees the artifacts produced by the ones before it. The
    first FAILURE stops the sequence.
    """

    def __init__(self, *runners: AgentRunner, name: Optional[str] = None):
        if not runners:
            raise ValueError("SequentialRunner needs at least one runner")
        self.runners = list(runners)
        super().__init__(name or "+".join(r.name for r in self.runners))

    async def run(self, invocation: AgentInvocation) -> AgentResult:
        produced: Dict[str, str] = {}
        diagnostics: List[str] = []
        for runner in self.runners:
            result = await runner.run(invocation.with_artifacts(produced))
            diagnostics.extend(f"{runner.name}: {d}" for d in result.diagnostics)
            produced.update(result.produced_artifacts)
            if not result.succeeded:
                self.logger.info("sequence_stopped", failed_runner=runner.name)
                return AgentResult(AgentStatus.FAILURE, produced, diagnostics)
        return AgentResult(AgentStatus.SUCCESS, produced, diagnostics)

    def describe(self) -> Dict[str, Any]:
        return {**super().describe(), "runners": [r.describe() for r in self.runners]}

"""Test configuration and fixtures."""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from phase_orchestrator.agents.base import AgentInvocation, AgentResult, AgentRunner, AgentStatus
from phase_orchestrator.agents.registry import AgentRegistry
from phase_orchestrator.core.event_bus import EventBus
from phase_orchestrator.core.handoff import HandoffService
from phase_orchestrator.core.orchestrator import OrchestratorController
from phase_orchestrator.core.registry import WorkflowRegistry
from phase_orchestrator.data.models.events import Event
from phase_orchestrator.data.models.phases import Phase
from phase_orchestrator.gates.framework import QualityGateFramework
from phase_orchestrator.storage import FileTraceStore

SECRET = "test-secret"

DEFAULT_PRODUCED: Dict[Phase, Dict[str, str]] = {
    Phase.PLAN: {"spec": "docs/specs/ISSUE-42.mdx"},
    Phase.APPLY: {"diff": "patch-1"},
    Phase.TEST: {"testReport": "reports/test.json", "qaReport": "reports/qa.json"},
    Phase.PR: {"branch": "fix/42", "prUrl": "https://github.com/acme/app/pull/7"},
    Phase.MERGE: {"mergeCommit": "abc1234"},
}


class StubAgent(AgentRunner):
    """Agent whose outcome is set by the test.

    Set ``hold`` to an ``asyncio.Event`` to park the agent until the test
    releases it.
    """

    def __init__(
        self,
        name: str,
        produced: Optional[Dict[str, str]] = None,
        status: AgentStatus = AgentStatus.SUCCESS,
        error: Optional[BaseException] = None,
        diagnostics: Optional[List[str]] = None,
    ):
        super().__init__(name)
        self.produced = dict(produced or {})
        self.status = status
        self.error = error
        self.diagnostics = list(diagnostics or [])
        self.hold: Optional[asyncio.Event] = None
        self.calls: List[AgentInvocation] = []

    async def run(self, invocation: AgentInvocation) -> AgentResult:
        self.calls.append(invocation)
        if self.hold is not None:
            await self.hold.wait()
        if self.error is not None:
            raise self.error
        return AgentResult(self.status, dict(self.produced), list(self.diagnostics))


@pytest.fixture
def registry() -> WorkflowRegistry:
    """Fresh in-memory registry for each test."""
    return WorkflowRegistry.from_url("sqlite:///:memory:")


@pytest.fixture
def file_registry(tmp_path: Path) -> WorkflowRegistry:
    """Registry backed by a SQLite file, for restart and thread tests."""
    return WorkflowRegistry.from_url(f"sqlite:///{tmp_path / 'state' / 'orchestrator.db'}")


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(bus: EventBus) -> List[Event]:
    """Every event published on ``bus``."""
    received: List[Event] = []
    bus.subscribe(EventBus.WILDCARD, received.append)
    return received


@pytest.fixture
def trace(tmp_path: Path) -> FileTraceStore:
    return FileTraceStore(tmp_path / "traces" / "42")


@pytest.fixture
def stub_agents() -> Dict[Phase, StubAgent]:
    return {
        Phase.PLAN: StubAgent("spec", DEFAULT_PRODUCED[Phase.PLAN]),
        Phase.APPLY: StubAgent("impl", DEFAULT_PRODUCED[Phase.APPLY]),
        Phase.TEST: StubAgent("qa", DEFAULT_PRODUCED[Phase.TEST]),
        Phase.PR: StubAgent("release", DEFAULT_PRODUCED[Phase.PR]),
        Phase.MERGE: StubAgent("release", DEFAULT_PRODUCED[Phase.MERGE]),
    }


@pytest.fixture
def make_controller(registry, bus, stub_agents, tmp_path):
    """Build a controller over stub agents and an empty gate table."""

    def factory(**kwargs) -> OrchestratorController:
        agents = AgentRegistry()
        for phase, agent in stub_agents.items():
            agents.register(phase, agent)
        options = {
            "trace_uri": (tmp_path / "traces").as_uri(),
            "work_dir": tmp_path,
        }
        options.update(kwargs)
        return OrchestratorController(
            registry,
            bus,
            QualityGateFramework(),
            HandoffService(registry, bus, SECRET),
            agents,
            **options,
        )

    return factory


@pytest.fixture
def controller(make_controller) -> OrchestratorController:
    return make_controller()

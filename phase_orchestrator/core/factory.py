"""
Wiring: builds the controller and its collaborators from settings.
"""

from __future__ import annotations

from functools import partial
from typing import Optional

from ..agents.implementations import build_default_agents
from ..agents.registry import AgentRegistry
from ..config import Settings, get_settings
from ..errors import ConfigurationError
from ..gates.builtin import register_default_gates
from ..gates.framework import QualityGateFramework
from ..issues import load_issue
from ..storage import TraceRecorder
from .event_bus import EventBus
from .handoff import HandoffService
from .orchestrator import CANCEL_FAIL, CANCEL_RETRY, OrchestratorController
from .registry import WorkflowRegistry


def build_registry(settings: Optional[Settings] = None) -> WorkflowRegistry:
    settings = settings or get_settings()
    return WorkflowRegistry.from_url(settings.resolved_database_url())


def build_controller(
    settings: Optional[Settings] = None,
    registry: Optional[WorkflowRegistry] = None,
    bus: Optional[EventBus] = None,
    gates: Optional[QualityGateFramework] = None,
    agents: Optional[AgentRegistry] = None,
) -> OrchestratorController:
    """Assemble a controller. Any collaborator passed in is used as-is."""
    settings = settings or get_settings()
    if settings.cancel_policy not in (CANCEL_RETRY, CANCEL_FAIL):
        raise ConfigurationError(
            f"cancel_policy must be '{CANCEL_RETRY}' or '{CANCEL_FAIL}', got '{settings.cancel_policy}'"
        )
    if not settings.secret_key:
        raise ConfigurationError("secret_key must not be empty")

    registry = registry or build_registry(settings)
    bus = bus or EventBus()
    bus.subscribe(EventBus.WILDCARD, TraceRecorder(settings.trace_root_uri()))

    if gates is None:
        gates = register_default_gates(QualityGateFramework(), settings)
    if agents is None:
        gate_names = [f"{phase}: {name}" for phase, names in gates.registered().items() for name in names]
        agents = build_default_agents(settings, quality_gates=gate_names)

    backlog = settings.work_dir / settings.backlog_path
    return OrchestratorController(
        registry=registry,
        bus=bus,
        gates=gates,
        handoff=HandoffService(registry, bus, settings.secret_key),
        agents=agents,
        trace_uri=settings.trace_root_uri(),
        work_dir=settings.work_dir,
        issue_loader=partial(load_issue, backlog_path=backlog),
        cancel_policy=settings.cancel_policy,
        gate_timeout_seconds=settings.gate_timeout_seconds,
    )

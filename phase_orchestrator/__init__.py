"""
Phase Orchestrator

Drives a software change through PLAN, APPLY, TEST, PR and MERGE by
coordinating phase agents, quality gates and certified handoffs over a
durable workflow registry.
"""

import importlib.metadata

__version__ = importlib.metadata.version("phase-orchestrator")

from .core.event_bus import EventBus
from .core.handoff import HandoffCertificate, HandoffService, Rejection
from .core.orchestrator import AdvanceResult, OrchestratorController
from .core.registry import WorkflowRegistry
from .data.models import Event, EventTypes, Phase, Workflow
from .gates.framework import GateResult, QualityGateFramework

__all__ = [
    "AdvanceResult",
    "Event",
    "EventBus",
    "EventTypes",
    "GateResult",
    "HandoffCertificate",
    "HandoffService",
    "OrchestratorController",
    "Phase",
    "QualityGateFramework",
    "Rejection",
    "Workflow",
    "WorkflowRegistry",
]

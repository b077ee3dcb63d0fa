"""
Core orchestration: registry, event bus, handoff and the controller.
"""

from .event_bus import EventBus, Subscription
from .handoff import REQUIRED_ARTIFACTS, HandoffCertificate, HandoffService, Rejection
from .orchestrator import AdvanceResult, OrchestratorController
from .registry import WorkflowRegistry

__all__ = [
    "AdvanceResult",
    "EventBus",
    "HandoffCertificate",
    "HandoffService",
    "OrchestratorController",
    "REQUIRED_ARTIFACTS",
    "Rejection",
    "Subscription",
    "WorkflowRegistry",
]

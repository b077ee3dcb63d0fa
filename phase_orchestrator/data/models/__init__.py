"""Data models for phases, workflows and events."""

from .events import Event, EventTypes
from .phases import PHASE_ORDER, PHASE_TOKENS, Phase
from .workflows import (
    ArtifactKinds,
    Blocker,
    BlockerSource,
    HistoryEntry,
    Outcome,
    Workflow,
    workflow_id_for_issue,
)

__all__ = [
    "ArtifactKinds",
    "Blocker",
    "BlockerSource",
    "Event",
    "EventTypes",
    "HistoryEntry",
    "Outcome",
    "PHASE_ORDER",
    "PHASE_TOKENS",
    "Phase",
    "Workflow",
    "workflow_id_for_issue",
]

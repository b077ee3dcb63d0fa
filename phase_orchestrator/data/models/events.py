"""
Event models for the phase orchestrator.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .phases import Phase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Event:
    """
    Immutable notification published on the event bus.

    Events are fire-and-forget. The bus keeps no copy, so a listener that
    subscribes after an event was published never sees it; the workflow
    history is the authoritative record.
    """

    topic: str
    workflow_id: str
    phase: Optional[Phase] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the event to a dictionary."""
        return {
            "id": self.id,
            "topic": self.topic,
            "workflow_id": self.workflow_id,
            "phase": self.phase.value if self.phase else None,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        """Create an event from a dictionary."""
        return cls(
            topic=data["topic"],
            workflow_id=data["workflow_id"],
            phase=Phase(data["phase"]) if data.get("phase") else None,
            payload=data.get("payload") or {},
            timestamp=datetime.fromisoformat(data["timestamp"]),
            id=data["id"],
        )

    def __str__(self) -> str:
        phase = self.phase.value if self.phase else "-"
        return f"Event(id={self.id[:8]}, topic={self.topic}, workflow={self.workflow_id}, phase={phase})"


class EventTypes:
    """Topics published by the orchestrator."""

    WORKFLOW_CREATED = "workflow.created"
    WORKFLOW_TERMINATED = "workflow.terminated"

    PHASE_STARTED = "phase.started"
    PHASE_COMPLETED = "phase.completed"
    PHASE_CANCELLED = "phase.cancelled"

    AGENT_FAILED = "agent.failed"

    GATE_FAILED = "gate.failed"
    GATE_PASSED = "gate.passed"

    HANDOFF_READY = "handoff.ready"
    HANDOFF_REJECTED = "handoff.rejected"

"""
Phase agents for the orchestrator.
"""

from .base import (
    AgentInvocation,
    AgentResult,
    AgentRunner,
    AgentStatus,
    SequentialRunner,
)
from .registry import AgentRegistry

__all__ = [
    "AgentInvocation",
    "AgentResult",
    "AgentRunner",
    "AgentStatus",
    "AgentRegistry",
    "SequentialRunner",
]

"""
Phase-to-runner table, resolved once at startup.
"""

from __future__ import annotations

from typing import Dict

from ..data.models.phases import PHASE_TOKENS, Phase
from ..errors import ConfigurationError
from .base import AgentRunner


class AgentRegistry:
    """One runner per advanceable phase."""

    def __init__(self) -> None:
        self._runners: Dict[Phase, AgentRunner] = {}

    def register(self, phase: Phase, runner: AgentRunner) -> None:
        phase = Phase(phase)
        if phase not in PHASE_TOKENS:
            raise ValueError(f"No agent can be registered for {phase}")
        self._runners[phase] = runner

    def runner_for(self, phase: Phase) -> AgentRunner:
        try:
            return self._runners[Phase(phase)]
        except KeyError:
            raise ConfigurationError(f"No agent runner registered for phase {phase}") from None

    def __contains__(self, phase: object) -> bool:
        return phase in self._runners

    def describe(self) -> Dict[str, Dict]:
        return {phase.value: runner.describe() for phase, runner in self._runners.items()}

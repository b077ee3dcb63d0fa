"""
Phase state machine for the orchestrator.

    INIT -> PLAN -> APPLY -> TEST -> PR -> MERGE -> DONE

FAILED is reachable from every non-terminal phase. DONE and FAILED are
terminal.
"""

import re
from enum import Enum
from typing import Dict, Optional

from ...errors import UnexpectedToken


class Phase(str, Enum):
    """Workflow phases. ``phase`` names the last committed phase."""

    INIT = "INIT"
    PLAN = "PLAN"
    APPLY = "APPLY"
    TEST = "TEST"
    PR = "PR"
    MERGE = "MERGE"
    DONE = "DONE"
    FAILED = "FAILED"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


PHASE_ORDER = (
    Phase.INIT,
    Phase.PLAN,
    Phase.APPLY,
    Phase.TEST,
    Phase.PR,
    Phase.MERGE,
    Phase.DONE,
)

TERMINAL_PHASES = frozenset({Phase.DONE, Phase.FAILED})

# Operator-facing spelling of each phase the operator can advance into.
PHASE_TOKENS: Dict[Phase, str] = {
    Phase.PLAN: "APPROVE PLAN",
    Phase.APPLY: "APPLY",
    Phase.TEST: "TEST",
    Phase.PR: "PR",
    Phase.MERGE: "MERGE",
}

_TOKEN_ALIASES: Dict[str, Phase] = {
    **{token: phase for phase, token in PHASE_TOKENS.items()},
    "PLAN": Phase.PLAN,
}


def successor(phase: Phase) -> Optional[Phase]:
    """Return the phase immediately after ``phase``, or None if terminal."""
    if phase.is_terminal:
        return None
    index = PHASE_ORDER.index(phase)
    return PHASE_ORDER[index + 1]


def is_valid_transition(from_phase: Phase, to_phase: Phase) -> bool:
    """Only the immediate successor, or FAILED from a non-terminal phase."""
    if from_phase.is_terminal:
        return False
    if to_phase == Phase.FAILED:
        return True
    return successor(from_phase) == to_phase


def normalize_token(token: str) -> str:
    return re.sub(r"\s+", " ", token.strip()).upper()


def phase_for_token(token: str) -> Phase:
    """Resolve an operator token to its target phase.

    Raises:
        UnexpectedToken: if the token names no phase
    """
    phase = _TOKEN_ALIASES.get(normalize_token(token))
    if phase is None:
        raise UnexpectedToken(token)
    return phase


def token_for_phase(phase: Phase) -> Optional[str]:
    return PHASE_TOKENS.get(phase)


def next_token(phase: Phase) -> Optional[str]:
    """Token the operator must issue next, or None once nothing is left."""
    nxt = successor(phase)
    if nxt is None:
        return None
    return token_for_phase(nxt)

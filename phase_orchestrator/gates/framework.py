"""
Quality gate framework.

A gate is a named check bound to a phase. ``run_gates`` evaluates every
gate registered for the target phase and the transition is allowed only
if all of them pass; there is no partial credit. A check that raises is
reported as a failed result, so one broken check can neither abort the
run nor hide the results of the others.

Verdict logic:
- PASS: every gate passed (or no gate is registered for the phase)
- FAIL: at least one gate failed
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..data.models.phases import Phase
from ..data.models.workflows import Blocker, BlockerSource, Workflow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateResult:
    """Result of evaluating one gate."""

    name: str
    passed: bool
    diagnostics: List[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "diagnostics": list(self.diagnostics),
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class GateContext:
    """Where a check runs and how long it may take."""

    workflow_id: str
    phase: Phase
    work_dir: Path = Path(".")
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: int = 900


CheckFn = Callable[[Dict[str, str], GateContext], GateResult]


class QualityGateFramework:
    """Registry of named checks per phase."""

    def __init__(self) -> None:
        self._gates: Dict[Phase, Dict[str, CheckFn]] = {}
        self._lock = threading.Lock()

    def register_gate(self, phase: Phase, name: str, check: CheckFn) -> None:
        """Register ``check`` under ``(phase, name)``.

        Registering an existing key replaces the previous check.
        """
        phase = Phase(phase)
        with self._lock:
            gates = self._gates.setdefault(phase, {})
            if name in gates:
                logger.info(f"Replacing gate {phase}:{name}")
            gates[name] = check

    def unregister_gate(self, phase: Phase, name: str) -> bool:
        with self._lock:
            return self._gates.get(Phase(phase), {}).pop(name, None) is not None

    def gates_for(self, phase: Phase) -> List[str]:
        with self._lock:
            return list(self._gates.get(Phase(phase), {}))

    def registered(self) -> Dict[Phase, List[str]]:
        with self._lock:
            return {phase: list(gates) for phase, gates in self._gates.items() if gates}

    def run_gates(
        self,
        phase: Phase,
        workflow: Workflow,
        context: Optional[GateContext] = None,
    ) -> List[GateResult]:
        """Evaluate every gate for ``phase`` against ``workflow.artifacts``.

        Checks run sequentially in registration order. Always returns one
        result per registered gate.
        """
        phase = Phase(phase)
        with self._lock:
            gates: List[Tuple[str, CheckFn]] = list(self._gates.get(phase, {}).items())
        if context is None:
            context = GateContext(workflow_id=workflow.id, phase=phase)

        artifacts = dict(workflow.artifacts)
        results: List[GateResult] = []
        for name, check in gates:
            started = time.monotonic()
            try:
                result = check(dict(artifacts), context)
                if not isinstance(result, GateResult):
                    result = GateResult(name, False, [f"check returned {result!r} instead of a GateResult"])
            except Exception as exc:
                logger.exception(f"Gate {phase}:{name} raised")
                result = GateResult(name, False, [f"check raised {type(exc).__name__}: {exc}"])
            elapsed = int((time.monotonic() - started) * 1000)
            # Results are keyed by the registered name, whatever the check reports
            result = GateResult(name, result.passed, list(result.diagnostics), elapsed)
            status = "passed" if result.passed else "failed"
            logger.info(f"Gate {phase}:{name} {status} in {elapsed}ms")
            results.append(result)
        return results


def verdict(results: Sequence[GateResult]) -> bool:
    """All-or-nothing: True only if every gate passed."""
    return all(r.passed for r in results)


def blockers_from(phase: Phase, results: Sequence[GateResult]) -> List[Blocker]:
    """Blockers for each failed gate."""
    return [
        Blocker(
            phase=Phase(phase),
            source=BlockerSource.GATE,
            name=r.name,
            diagnostics=list(r.diagnostics),
        )
        for r in results
        if not r.passed
    ]

"""
Quality gates: named pass/fail checks bound to phases.
"""

from .builtin import (
    artifact_present,
    command_check,
    file_artifact_exists,
    register_default_gates,
    report_passed,
    resolve_artifact_path,
)
from .framework import (
    CheckFn,
    GateContext,
    GateResult,
    QualityGateFramework,
    blockers_from,
    verdict,
)

__all__ = [
    "CheckFn",
    "GateContext",
    "GateResult",
    "QualityGateFramework",
    "blockers_from",
    "verdict",
    "artifact_present",
    "command_check",
    "file_artifact_exists",
    "register_default_gates",
    "report_passed",
    "resolve_artifact_path",
]

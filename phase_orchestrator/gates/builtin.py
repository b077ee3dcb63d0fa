"""
Built-in gate checks and the default gate table.

Each factory returns a ``CheckFn``. Checks read only the artifacts and
the ``GateContext`` they are given, so tests can register them against
a temporary directory without touching real tooling.
"""

from __future__ import annotations

import json
import os
import shlex
import subprocess
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

from ..config import Settings
from ..data.models.phases import Phase
from ..data.models.workflows import ArtifactKinds
from .framework import CheckFn, GateContext, GateResult, QualityGateFramework

# Output kept per failed command, from the tail
MAX_DIAGNOSTIC_LINES = 40


def resolve_artifact_path(ref: str, work_dir: Path) -> Path:
    """Turn an artifact reference into a filesystem path.

    Accepts ``file://`` URIs, absolute paths and paths relative to
    ``work_dir``.
    """
    parsed = urlparse(ref)
    if parsed.scheme == "file":
        return Path(url2pathname(parsed.path))
    path = Path(ref)
    if path.is_absolute():
        return path
    return Path(work_dir) / path


def artifact_present(kind: str) -> CheckFn:
    """Pass when the ``kind`` artifact has a non-empty reference."""

    def check(artifacts: Dict[str, str], context: GateContext) -> GateResult:
        ref = artifacts.get(kind)
        if ref:
            return GateResult(f"{kind}_present", True)
        return GateResult(f"{kind}_present", False, [f"artifact '{kind}' is missing"])

    return check


def file_artifact_exists(kind: str) -> CheckFn:
    """Pass when the ``kind`` artifact points at an existing file."""

    def check(artifacts: Dict[str, str], context: GateContext) -> GateResult:
        name = f"{kind}_present"
        ref = artifacts.get(kind)
        if not ref:
            return GateResult(name, False, [f"artifact '{kind}' is missing"])
        path = resolve_artifact_path(ref, context.work_dir)
        if not path.is_file():
            return GateResult(name, False, [f"{kind} file not found: {path}"])
        return GateResult(name, True)

    return check


def command_check(name: str, command: str) -> CheckFn:
    """Run ``command`` in the work dir; pass on exit status 0."""
    argv = shlex.split(command)

    def check(artifacts: Dict[str, str], context: GateContext) -> GateResult:
        env = {**os.environ, **context.env}
        try:
            proc = subprocess.run(
                argv,
                cwd=context.work_dir,
                env=env,
                capture_output=True,
                text=True,
                timeout=context.timeout_seconds,
            )
        except FileNotFoundError:
            return GateResult(name, False, [f"command not found: {argv[0]}"])
        except subprocess.TimeoutExpired:
            return GateResult(
                name, False, [f"'{command}' timed out after {context.timeout_seconds}s"]
            )

        if proc.returncode == 0:
            return GateResult(name, True)

        output = (proc.stdout or "") + (proc.stderr or "")
        lines = [line for line in output.splitlines() if line.strip()]
        diagnostics = [f"'{command}' exited with status {proc.returncode}"]
        diagnostics.extend(lines[-MAX_DIAGNOSTIC_LINES:])
        return GateResult(name, False, diagnostics)

    return check


def report_passed(name: str, kind: str) -> CheckFn:
    """Pass when the JSON report behind ``kind`` has ``"passed": true``."""

    def check(artifacts: Dict[str, str], context: GateContext) -> GateResult:
        ref = artifacts.get(kind)
        if not ref:
            return GateResult(name, False, [f"artifact '{kind}' is missing"])
        path = resolve_artifact_path(ref, context.work_dir)
        try:
            report = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return GateResult(name, False, [f"{kind} not found: {path}"])
        except json.JSONDecodeError as exc:
            return GateResult(name, False, [f"{kind} is not valid JSON: {exc}"])

        if report.get("passed") is True:
            return GateResult(name, True)
        diagnostics = [f"{kind} reports failure"]
        diagnostics.extend(str(d) for d in report.get("diagnostics", []))
        return GateResult(name, False, diagnostics)

    return check


def register_default_gates(
    framework: QualityGateFramework,
    settings: Optional[Settings] = None,
) -> QualityGateFramework:
    """Install the standard gate table. Empty command settings are skipped."""
    if settings is None:
        from ..config import get_settings

        settings = get_settings()

    framework.register_gate(Phase.PLAN, "spec_present", file_artifact_exists(ArtifactKinds.SPEC))

    if settings.gate_typecheck_command:
        framework.register_gate(
            Phase.APPLY, "typecheck", command_check("typecheck", settings.gate_typecheck_command)
        )
    if settings.gate_lint_command:
        framework.register_gate(Phase.APPLY, "lint", command_check("lint", settings.gate_lint_command))

    framework.register_gate(Phase.TEST, "tests", report_passed("tests", ArtifactKinds.TEST_REPORT))
    framework.register_gate(
        Phase.TEST, "security_scan", report_passed("security_scan", ArtifactKinds.SECURITY_REPORT)
    )
    if settings.gate_accessibility_command:
        framework.register_gate(
            Phase.TEST,
            "accessibility",
            command_check("accessibility", settings.gate_accessibility_command),
        )

    if settings.gate_build_command:
        framework.register_gate(Phase.PR, "build", command_check("build", settings.gate_build_command))
    framework.register_gate(Phase.PR, "pr_url_present", artifact_present(ArtifactKinds.PR_URL))

    framework.register_gate(Phase.MERGE, "pr_url_present", artifact_present(ArtifactKinds.PR_URL))
    return framework

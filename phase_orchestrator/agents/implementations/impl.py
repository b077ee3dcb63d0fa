"""
APPLY agents: test scaffolding, then the implementation diff.
"""

from __future__ import annotations

import hashlib
from typing import Optional

from ...data.models.workflows import ArtifactKinds
from ..base import AgentInvocation, AgentResult, AgentRunner
from .commands import run_command


class TestsAgent(AgentRunner):
    """Produces ``testPlan``.

    With a command configured it runs it first (typically a generator
    that writes the failing tests). The plan itself is written to the
    trace folder.
    """

    __test__ = False

    name = "tests"

    def __init__(self, command: str = "", timeout_seconds: Optional[float] = None, name: Optional[str] = None):
        super().__init__(name)
        self.command = command
        self.timeout_seconds = timeout_seconds

    async def run(self, invocation: AgentInvocation) -> AgentResult:
        log = self.logger.bind(workflow_id=invocation.workflow_id)
        diagnostics = []
        if self.command:
            output = await run_command(
                self.command, invocation.work_dir, invocation.command_env(), self.timeout_seconds
            )
            if not output.ok:
                log.info("tests_command_failed", returncode=output.returncode)
                return AgentResult.failure(
                    f"'{self.command}' exited with status {output.returncode}", *output.tail()
                )
            diagnostics.append(f"ran '{self.command}'")

        issue = invocation.issue_context
        spec = invocation.artifacts.get(ArtifactKinds.SPEC, "(none)")
        plan = "\n".join(
            [
                f"# Test plan for #{issue.number}",
                "",
                f"Spec: {spec}",
                "",
                "Tests must fail before the change and pass after it.",
                "",
            ]
        )
        ref = invocation.trace.write_text("artifacts/test-plan.md", plan)
        log.info("test_plan_written", ref=ref)
        return AgentResult.success({ArtifactKinds.TEST_PLAN: ref}, diagnostics)


class ImplAgent(AgentRunner):
    """Runs the implementation command and captures the working-tree diff.

    An empty diff is a FAILURE: APPLY with no change has nothing to hand
    off.
    """

    name = "impl"

    def __init__(
        self,
        command: str = "",
        diff_command: str = "git diff HEAD",
        timeout_seconds: Optional[float] = None,
        name: Optional[str] = None,
    ):
        super().__init__(name)
        self.command = command
        self.diff_command = diff_command
        self.timeout_seconds = timeout_seconds

    async def run(self, invocation: AgentInvocation) -> AgentResult:
        log = self.logger.bind(workflow_id=invocation.workflow_id)
        env = invocation.command_env()

        if self.command:
            output = await run_command(self.command, invocation.work_dir, env, self.timeout_seconds)
            if not output.ok:
                log.info("impl_command_failed", returncode=output.returncode)
                return AgentResult.failure(
                    f"'{self.command}' exited with status {output.returncode}", *output.tail()
                )

        diff = await run_command(self.diff_command, invocation.work_dir, env, self.timeout_seconds)
        if not diff.ok:
            return AgentResult.failure(
                f"'{self.diff_command}' exited with status {diff.returncode}", *diff.tail()
            )
        if not diff.stdout.strip():
            return AgentResult.failure("working tree has no changes to hand off")

        digest = hashlib.sha256(diff.stdout.encode("utf-8")).hexdigest()
        ref = invocation.trace.write_text("artifacts/changes.diff", diff.stdout)
        changed = sum(1 for line in diff.stdout.splitlines() if line.startswith("diff --git"))
        log.info("diff_captured", ref=ref, files_changed=changed, sha256=digest[:12])
        return AgentResult.success(
            {ArtifactKinds.DIFF: ref},
            [f"{changed} file(s) changed, sha256 {digest[:12]}"],
        )

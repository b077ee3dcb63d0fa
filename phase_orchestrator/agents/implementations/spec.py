"""
Spec agent: turns the issue into a specification document for PLAN.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

from ...data.models.workflows import ArtifactKinds
from ...issues import IssueContext
from ..base import AgentInvocation, AgentResult, AgentRunner

DEFAULT_TEST_MATRIX = {"unit": 3, "integration": 2, "e2e": 1}


class SpecAgent(AgentRunner):
    """Writes ``<spec_dir>/ISSUE-<nnn>.mdx`` and produces ``spec``.

    A spec that already exists is kept as-is, so operator edits survive
    a re-run of PLAN.
    """

    name = "spec"

    def __init__(
        self,
        spec_dir: Path = Path("docs/specs"),
        quality_gates: Sequence[str] = (),
        commands: Sequence[str] = (),
        name: Optional[str] = None,
    ):
        super().__init__(name)
        self.spec_dir = Path(spec_dir)
        self.quality_gates = list(quality_gates)
        self.commands = list(commands)

    def spec_path(self, issue: IssueContext) -> Path:
        return self.spec_dir / f"ISSUE-{issue.padded}.mdx"

    async def run(self, invocation: AgentInvocation) -> AgentResult:
        issue = invocation.issue_context
        relative = self.spec_path(issue)
        target = invocation.work_dir / relative
        log = self.logger.bind(workflow_id=invocation.workflow_id, spec=str(relative))

        if target.exists():
            log.info("spec_kept")
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(self.render(issue), encoding="utf-8")
            log.info("spec_written")

        return AgentResult.success({ArtifactKinds.SPEC: relative.as_posix()})

    def render(self, issue: IssueContext) -> str:
        lines: List[str] = [
            "---",
            f"issue: {issue.number}",
            f"priority: {issue.priority}",
            f"labels: [{', '.join(issue.labels)}]",
            "---",
            "",
            f"# #{issue.number} - {issue.title}",
            "",
            "## Problem",
            "",
            issue.body.strip() or "_No description provided._",
            "",
            "## Files to modify",
            "",
        ]
        lines.extend(f"- `{path}`" for path in issue.files)
        if not issue.files:
            lines.append("_Identify during planning._")
        lines.extend(["", "## Test matrix", ""])
        lines.extend(f"- {kind}: {count}" for kind, count in DEFAULT_TEST_MATRIX.items())
        if self.quality_gates:
            lines.extend(["", "## Quality gates", ""])
            lines.extend(f"- {gate}" for gate in self.quality_gates)
        if self.commands:
            lines.extend(["", "## Commands", "", "```bash"])
            lines.extend(self.commands)
            lines.append("```")
        lines.append("")
        return "\n".join(lines)

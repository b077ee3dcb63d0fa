"""
PR and MERGE agents: pull request creation, change summary and merge.
"""

from __future__ import annotations

import re
from typing import List, Optional

from ...data.models.workflows import ArtifactKinds
from ..base import AgentInvocation, AgentResult, AgentRunner
from .commands import render_command, run_command

_URL = re.compile(r"https?://\S+")

CREATE_PR = "create-pr"
MERGE = "merge"


class ReleaseAgent(AgentRunner):
    """Branch/PR creation (``create-pr``) or merge and cleanup (``merge``).

    Commands may use ``{branch}`` and ``{pr_url}`` placeholders, filled
    from the workflow's artifacts.
    """

    name = "release"

    def __init__(
        self,
        mode: str = CREATE_PR,
        pr_command: str = "gh pr create --fill",
        branch_command: str = "git rev-parse --abbrev-ref HEAD",
        merge_command: str = "gh pr merge {pr_url} --squash --delete-branch",
        head_command: str = "git rev-parse HEAD",
        timeout_seconds: Optional[float] = None,
        name: Optional[str] = None,
    ):
        if mode not in (CREATE_PR, MERGE):
            raise ValueError(f"Unknown release mode: {mode}")
        super().__init__(name)
        self.mode = mode
        self.pr_command = pr_command
        self.branch_command = branch_command
        self.merge_command = merge_command
        self.head_command = head_command
        self.timeout_seconds = timeout_seconds

    async def run(self, invocation: AgentInvocation) -> AgentResult:
        if self.mode == CREATE_PR:
            return await self._create_pr(invocation)
        return await self._merge(invocation)

    async def _create_pr(self, invocation: AgentInvocation) -> AgentResult:
        log = self.logger.bind(workflow_id=invocation.workflow_id, mode=self.mode)
        env = invocation.command_env()

        branch = await run_command(self.branch_command, invocation.work_dir, env, self.timeout_seconds)
        if not branch.ok or not branch.stdout.strip():
            return AgentResult.failure("could not determine the current branch", *branch.tail())
        branch_name = branch.stdout.strip().splitlines()[-1]

        command = render_command(self.pr_command, branch=branch_name)
        pr = await run_command(command, invocation.work_dir, env, self.timeout_seconds)
        if not pr.ok:
            return AgentResult.failure(f"'{command}' exited with status {pr.returncode}", *pr.tail())

        urls = _URL.findall(pr.stdout)
        if not urls:
            return AgentResult.failure(f"'{command}' printed no pull request URL", *pr.tail())

        log.info("pull_request_created", branch=branch_name, pr_url=urls[-1])
        return AgentResult.success({ArtifactKinds.BRANCH: branch_name, ArtifactKinds.PR_URL: urls[-1]})

    async def _merge(self, invocation: AgentInvocation) -> AgentResult:
        log = self.logger.bind(workflow_id=invocation.workflow_id, mode=self.mode)
        env = invocation.command_env()
        pr_url = invocation.artifacts.get(ArtifactKinds.PR_URL, "")
        if not pr_url:
            return AgentResult.failure("no pull request to merge")

        command = render_command(
            self.merge_command,
            pr_url=pr_url,
            branch=invocation.artifacts.get(ArtifactKinds.BRANCH, ""),
        )
        merged = await run_command(command, invocation.work_dir, env, self.timeout_seconds)
        if not merged.ok:
            return AgentResult.failure(f"'{command}' exited with status {merged.returncode}", *merged.tail())

        head = await run_command(self.head_command, invocation.work_dir, env, self.timeout_seconds)
        if not head.ok or not head.stdout.strip():
            return AgentResult.failure("could not read the merge commit", *head.tail())
        commit = head.stdout.strip().splitlines()[-1]

        log.info("pull_request_merged", pr_url=pr_url, commit=commit)
        return AgentResult.success({ArtifactKinds.MERGE_COMMIT: commit})


class DocsAgent(AgentRunner):
    """Writes a change summary from the workflow history; produces ``docs``."""

    name = "docs"

    async def run(self, invocation: AgentInvocation) -> AgentResult:
        issue = invocation.issue_context
        lines: List[str] = [f"# Changes for #{issue.number} - {issue.title}", "", "## Phases", ""]
        for entry in invocation.history:
            reason = f" ({entry.reason})" if entry.reason else ""
            lines.append(
                f"- {entry.exited_at or entry.entered_at:%Y-%m-%d %H:%M} "
                f"{entry.phase.value}: {entry.outcome.value}{reason}"
            )
        lines.extend(["", "## Artifacts", ""])
        lines.extend(f"- {kind}: {ref}" for kind, ref in sorted(invocation.artifacts.items()))
        lines.append("")

        ref = invocation.trace.write_text("artifacts/CHANGES.md", "\n".join(lines))
        self.logger.info("change_summary_written", workflow_id=invocation.workflow_id, ref=ref)
        return AgentResult.success({ArtifactKinds.DOCS: ref})

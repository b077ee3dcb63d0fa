"""
Concrete phase agents and the default phase table.
"""

from ...config import Settings
from ...data.models.phases import Phase
from ..base import SequentialRunner
from ..registry import AgentRegistry
from .checks import QAAgent, SecurityAgent
from .commands import CommandOutput, render_command, run_command
from .impl import ImplAgent, TestsAgent
from .release import CREATE_PR, MERGE, DocsAgent, ReleaseAgent
from .spec import SpecAgent


def build_default_agents(settings: Settings, quality_gates=()) -> AgentRegistry:
    """PLAN: spec; APPLY: tests, impl; TEST: qa, sec; PR: release; MERGE: docs, release."""
    timeout = settings.agent_timeout_seconds
    commands = [
        c
        for c in (
            settings.gate_typecheck_command,
            settings.gate_lint_command,
            settings.qa_command,
            settings.gate_build_command,
            settings.pr_command,
        )
        if c
    ]

    def release(mode: str) -> ReleaseAgent:
        return ReleaseAgent(
            mode=mode,
            pr_command=settings.pr_command,
            branch_command=settings.branch_command,
            merge_command=settings.merge_command,
            head_command=settings.head_command,
            timeout_seconds=timeout,
        )

    agents = AgentRegistry()
    agents.register(
        Phase.PLAN,
        SpecAgent(spec_dir=settings.spec_dir, quality_gates=quality_gates, commands=commands),
    )
    agents.register(
        Phase.APPLY,
        SequentialRunner(
            TestsAgent(settings.tests_command, timeout),
            ImplAgent(settings.impl_command, settings.diff_command, timeout),
        ),
    )
    agents.register(
        Phase.TEST,
        SequentialRunner(
            QAAgent(settings.qa_command, timeout),
            SecurityAgent(settings.security_command, timeout),
        ),
    )
    agents.register(Phase.PR, release(CREATE_PR))
    agents.register(Phase.MERGE, SequentialRunner(DocsAgent(), release(MERGE)))
    return agents


__all__ = [
    "build_default_agents",
    "CommandOutput",
    "render_command",
    "run_command",
    "SpecAgent",
    "TestsAgent",
    "ImplAgent",
    "QAAgent",
    "SecurityAgent",
    "ReleaseAgent",
    "DocsAgent",
    "CREATE_PR",
    "MERGE",
]

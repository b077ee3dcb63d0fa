"""
Async subprocess helper shared by the command-driven agents.
"""

from __future__ import annotations

import asyncio
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional

from ...errors import AgentRunnerFailure

# Lines of output kept in diagnostics and reports
OUTPUT_TAIL_LINES = 40


@dataclass
class CommandOutput:
    command: str
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, lines: int = OUTPUT_TAIL_LINES) -> List[str]:
        combined = [line for line in (self.stdout + self.stderr).splitlines() if line.strip()]
        return combined[-lines:]


def render_command(command: str, **values: str) -> str:
    """Substitute ``{name}`` placeholders, leaving other braces alone."""
    for key, value in values.items():
        command = command.replace("{" + key + "}", shlex.quote(value))
    return command


async def run_command(
    command: str,
    work_dir: Path,
    env: Optional[Mapping[str, str]] = None,
    timeout_seconds: Optional[float] = None,
) -> CommandOutput:
    """Run ``command`` without a shell and capture its output.

    A non-zero exit is returned, not raised; callers decide whether that
    is a FAILURE.

    Raises:
        AgentRunnerFailure: the executable is missing or the timeout hit
    """
    argv = shlex.split(command)
    if not argv:
        raise AgentRunnerFailure("Empty command", context={"command": command})

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(work_dir),
            env={**os.environ, **(env or {})},
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise AgentRunnerFailure(
            f"Command not found: {argv[0]}", context={"command": command}
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise AgentRunnerFailure(
            f"'{command}' timed out after {timeout_seconds}s",
            context={"command": command, "timeout_seconds": timeout_seconds},
        ) from None
    except asyncio.CancelledError:
        proc.kill()
        await asyncio.shield(proc.wait())
        raise

    return CommandOutput(
        command=command,
        returncode=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )

"""
Workflow models for the phase orchestrator.

A ``Workflow`` is an immutable snapshot of one issue's progress. The
registry hands out fresh snapshots; nothing outside the registry can
change stored state.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .phases import Phase, next_token, successor


class Outcome(str, Enum):
    """How an attempt at a phase ended."""

    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BlockerSource(str, Enum):
    GATE = "gate"
    HANDOFF = "handoff"
    AGENT = "agent"


class ArtifactKinds:
    """Artifact kinds exchanged between agents."""

    SPEC = "spec"
    TEST_PLAN = "testPlan"
    DIFF = "diff"
    TEST_REPORT = "testReport"
    QA_REPORT = "qaReport"
    SECURITY_REPORT = "securityReport"
    BRANCH = "branch"
    PR_URL = "prUrl"
    DOCS = "docs"
    MERGE_COMMIT = "mergeCommit"


class Blocker(BaseModel):
    """An unresolved failure that prevents entering ``phase``."""

    model_config = ConfigDict(frozen=True)

    phase: Phase
    source: BlockerSource
    name: str
    diagnostics: List[str] = Field(default_factory=list)


class HistoryEntry(BaseModel):
    """One append-only audit record."""

    model_config = ConfigDict(frozen=True)

    id: str
    sequence: int
    phase: Phase
    entered_at: datetime
    exited_at: Optional[datetime] = None
    outcome: Outcome
    reason: Optional[str] = None
    agent: Optional[str] = None
    artifacts: Dict[str, str] = Field(default_factory=dict)


class Workflow(BaseModel):
    """Snapshot of a workflow as last committed."""

    model_config = ConfigDict(frozen=True)

    id: str
    phase: Phase = Phase.INIT
    version: int = 0
    history: Tuple[HistoryEntry, ...] = ()
    artifacts: Dict[str, str] = Field(default_factory=dict)
    blockers: Tuple[Blocker, ...] = ()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def next_phase(self) -> Optional[Phase]:
        return successor(self.phase)

    @property
    def next_token(self) -> Optional[str]:
        return next_token(self.phase)

    def blockers_for(self, phase: Phase) -> List[Blocker]:
        return [b for b in self.blockers if b.phase == phase]

    def with_artifacts(self, artifacts: Dict[str, str]) -> "Workflow":
        """Copy with ``artifacts`` merged over the committed ones."""
        return self.model_copy(update={"artifacts": {**self.artifacts, **artifacts}})

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["next_token"] = self.next_token
        return data


_ISSUE_NUMBER = re.compile(r"^#?0*(\d+)$")


def workflow_id_for_issue(issue: str) -> str:
    """Derive the workflow id from an issue reference.

    Examples:
        "#042" -> "42"
        "42" -> "42"
        "feature-x" -> "feature-x"
    """
    raw = str(issue).strip()
    match = _ISSUE_NUMBER.match(raw)
    if match:
        return str(int(match.group(1)))
    if not raw:
        raise ValueError("Issue reference must not be empty")
    # The id names the trace folder and the spec file
    if "/" in raw or "\\" in raw or ".." in raw:
        raise ValueError(f"Issue reference must not contain path separators or '..': {raw!r}")
    return raw

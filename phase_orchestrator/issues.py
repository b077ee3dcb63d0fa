"""
Issue intake from the local backlog file.

The backlog is YAML with a top-level ``issues`` list:

    issues:
      - title: "Fix dashboard trend percentage (#42)"
        body: "..."
        labels: [bug, dashboard]
        priority: P1
        files: [src/app/api/stats/route.ts]
        notes: "tracked as issue-042"
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = "P2"


@dataclass(frozen=True)
class IssueContext:
    """What the agents know about the issue being worked on."""

    number: str
    title: str
    body: str = ""
    labels: List[str] = field(default_factory=list)
    priority: str = DEFAULT_PRIORITY
    files: List[str] = field(default_factory=list)

    @property
    def padded(self) -> str:
        """Zero-padded number used in file names (``42`` -> ``042``)."""
        return self.number.zfill(3) if self.number.isdigit() else self.number

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "body": self.body,
            "labels": list(self.labels),
            "priority": self.priority,
            "files": list(self.files),
        }


def minimal_issue(number: str) -> IssueContext:
    return IssueContext(number=str(number), title=f"Issue #{number}")


def _matches(entry: Dict[str, Any], number: str) -> bool:
    title = str(entry.get("title") or "")
    notes = str(entry.get("notes") or "")
    padded = number.zfill(3) if number.isdigit() else number
    # "#4" must not match "#42"
    in_title = re.search(rf"#0*{re.escape(number)}(?!\d)", title) is not None
    return in_title or f"issue-{padded}" in notes


def load_issue(number: str, backlog_path: Optional[Union[str, Path]] = None) -> IssueContext:
    """Look ``number`` up in the backlog.

    A missing backlog, an unreadable one or an unknown issue all yield a
    minimal context, so intake never blocks a phase.
    """
    number = str(number)
    if backlog_path is None:
        return minimal_issue(number)

    path = Path(backlog_path)
    if not path.is_file():
        logger.debug(f"No backlog at {path}")
        return minimal_issue(number)

    try:
        backlog = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        logger.warning(f"Could not parse backlog {path}: {exc}")
        return minimal_issue(number)

    entries = backlog.get("issues") if isinstance(backlog, dict) else None
    for entry in entries or []:
        if isinstance(entry, dict) and _matches(entry, number):
            return IssueContext(
                number=number,
                title=str(entry.get("title") or f"Issue #{number}"),
                body=str(entry.get("body") or ""),
                labels=[str(label) for label in entry.get("labels") or []],
                priority=str(entry.get("priority") or DEFAULT_PRIORITY),
                files=[str(f) for f in entry.get("files") or []],
            )

    logger.info(f"Issue #{number} not found in {path}")
    return minimal_issue(number)

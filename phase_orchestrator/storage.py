"""
Trace storage for workflow runs.

Every workflow gets a trace folder addressed by URI:

    <state_dir>/traces/{workflow_id}/
    ├── events.jsonl        # Every bus event for the workflow
    └── artifacts/          # Reports, diffs and summaries written by agents

Storage is treated as a URI, not a path, so another scheme can be added
without touching the agents.
"""
from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict
from urllib.parse import urlparse
from urllib.request import url2pathname

from .data.models.events import Event


class TraceStore(ABC):
    """Abstract base class for trace storage."""

    @abstractmethod
    def write_text(self, path: str, content: str) -> str:
        """Write text within the trace folder and return its reference."""
        pass

    @abstractmethod
    def write_json(self, path: str, data: Dict[str, Any]) -> str:
        """Write JSON within the trace folder and return its reference."""
        pass

    @abstractmethod
    def append_line(self, path: str, line: str) -> None:
        """Append a line to a file (for logs)."""
        pass

    @abstractmethod
    def append_event(self, event: Dict[str, Any]) -> None:
        """Append a structured event to events.jsonl."""
        pass

    @abstractmethod
    def get_uri(self) -> str:
        """Get the full URI of this trace store."""
        pass


class FileTraceStore(TraceStore):
    """Local filesystem trace store (file:// URIs)."""

    def __init__(self, base_path: Path):
        self.base_path = base_path
        self._lock = threading.Lock()
        self.base_path.mkdir(parents=True, exist_ok=True)
        (self.base_path / "artifacts").mkdir(exist_ok=True)

    def _target(self, path: str) -> Path:
        full_path = self.base_path / path
        full_path.parent.mkdir(parents=True, exist_ok=True)
        return full_path

    def write_text(self, path: str, content: str) -> str:
        full_path = self._target(path)
        full_path.write_text(content, encoding="utf-8")
        return full_path.as_uri()

    def write_json(self, path: str, data: Dict[str, Any]) -> str:
        full_path = self._target(path)
        full_path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        return full_path.as_uri()

    def append_line(self, path: str, line: str) -> None:
        full_path = self._target(path)
        with self._lock:
            with open(full_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def append_event(self, event: Dict[str, Any]) -> None:
        if "timestamp" not in event:
            event["timestamp"] = datetime.now(timezone.utc).isoformat()
        self.append_line("events.jsonl", json.dumps(event, default=str))

    def get_uri(self) -> str:
        return self.base_path.as_uri()


def create_trace_store(uri: str, workflow_id: str) -> TraceStore:
    """Create the trace store for one workflow under base ``uri``.

    Args:
        uri: Base URI (e.g., "file:///srv/orchestrator/traces")
        workflow_id: Workflow whose trace folder to open

    Raises:
        ValueError: If URI scheme is not supported
    """
    parsed = urlparse(uri)

    if parsed.scheme == "file":
        return FileTraceStore(Path(url2pathname(parsed.path)) / workflow_id)

    raise ValueError(f"Unsupported storage scheme: {parsed.scheme}. Supported: file://")


class TraceRecorder:
    """Bus subscriber that appends every event to its workflow's trace.

    Subscribe it to ``EventBus.WILDCARD``.
    """

    def __init__(self, base_uri: str):
        self.base_uri = base_uri
        self._stores: Dict[str, TraceStore] = {}
        self._lock = threading.Lock()

    def store_for(self, workflow_id: str) -> TraceStore:
        with self._lock:
            store = self._stores.get(workflow_id)
            if store is None:
                store = self._stores[workflow_id] = create_trace_store(self.base_uri, workflow_id)
            return store

    def __call__(self, event: Event) -> None:
        self.store_for(event.workflow_id).append_event(event.to_dict())

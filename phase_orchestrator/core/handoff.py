"""
Handoff service: certifies that an agent left everything the next phase needs.

``declare_ready`` checks the produced artifacts, together with what the
workflow already holds, against the required-artifact table. It returns
a signed ``HandoffCertificate`` or a ``Rejection`` naming what is
missing. Agents may declare again after a retry; only the latest
certificate per ``(workflow_id, to_phase)`` is kept.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import structlog

from ..data.models.events import Event, EventTypes
from ..data.models.phases import Phase
from ..data.models.workflows import ArtifactKinds
from .event_bus import EventBus
from .registry import WorkflowRegistry

logger = structlog.get_logger()

REQUIRED_ARTIFACTS: Dict[Phase, Tuple[str, ...]] = {
    Phase.PLAN: (ArtifactKinds.SPEC,),
    Phase.APPLY: (ArtifactKinds.DIFF,),
    Phase.TEST: (ArtifactKinds.TEST_REPORT, ArtifactKinds.QA_REPORT),
    Phase.PR: (ArtifactKinds.DIFF, ArtifactKinds.PR_URL),
    Phase.MERGE: (ArtifactKinds.PR_URL,),
}


@dataclass(frozen=True)
class HandoffCertificate:
    """Proof that ``from_agent`` satisfied the contract for ``to_phase``."""

    workflow_id: str
    from_agent: str
    to_phase: Phase
    artifacts: Dict[str, str]
    required_artifacts_present: bool
    sequence: int
    issued_at: datetime
    signature: str = ""

    def signing_payload(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "from_agent": self.from_agent,
            "to_phase": self.to_phase.value,
            "artifacts": dict(self.artifacts),
            "required_artifacts_present": self.required_artifacts_present,
            "sequence": self.sequence,
            "issued_at": self.issued_at.isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {**self.signing_payload(), "signature": self.signature}


@dataclass(frozen=True)
class Rejection:
    """Handoff refused because required artifacts are absent."""

    workflow_id: str
    from_agent: str
    to_phase: Phase
    missing: List[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return f"Handoff from {self.from_agent} to {self.to_phase} is missing: {', '.join(self.missing)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "from_agent": self.from_agent,
            "to_phase": self.to_phase.value,
            "missing": list(self.missing),
            "reason": self.reason,
        }


class HandoffService:
    """Issues and verifies handoff certificates."""

    def __init__(
        self,
        registry: WorkflowRegistry,
        bus: EventBus,
        secret: str,
        required: Optional[Mapping[Phase, Iterable[str]]] = None,
    ):
        if not secret:
            raise ValueError("A non-empty secret is required to sign certificates")
        self._registry = registry
        self._bus = bus
        self._secret = secret.encode("utf-8")
        table = REQUIRED_ARTIFACTS if required is None else required
        self._required: Dict[Phase, Tuple[str, ...]] = {Phase(p): tuple(kinds) for p, kinds in table.items()}
        self._latest: Dict[Tuple[str, Phase], HandoffCertificate] = {}
        self._sequences: Dict[Tuple[str, Phase], int] = {}
        self._lock = threading.Lock()

    def required_for(self, phase: Phase) -> Tuple[str, ...]:
        return self._required.get(Phase(phase), ())

    def declare_ready(
        self,
        workflow_id: str,
        from_agent: str,
        to_phase: Phase,
        produced_artifacts: Mapping[str, str],
    ) -> Union[HandoffCertificate, Rejection]:
        """Certify the handoff, or reject it naming the missing artifacts.

        A rejection also withdraws any earlier certificate for the pair,
        so a stale certificate is never honored after a failed retry.
        """
        to_phase = Phase(to_phase)
        key = (workflow_id, to_phase)
        log = logger.bind(workflow_id=workflow_id, phase=to_phase.value, agent=from_agent)

        workflow = self._registry.get(workflow_id)
        produced = {k: v for k, v in produced_artifacts.items() if v}
        available = {**workflow.artifacts, **produced}
        missing = [kind for kind in self.required_for(to_phase) if not available.get(kind)]

        if missing:
            rejection = Rejection(workflow_id, from_agent, to_phase, missing)
            with self._lock:
                self._latest.pop(key, None)
            log.info("handoff_rejected", missing=missing)
            self._bus.publish(
                Event(
                    topic=EventTypes.HANDOFF_REJECTED,
                    workflow_id=workflow_id,
                    phase=to_phase,
                    payload=rejection.to_dict(),
                )
            )
            return rejection

        with self._lock:
            sequence = self._sequences.get(key, 0) + 1
            self._sequences[key] = sequence
            unsigned = HandoffCertificate(
                workflow_id=workflow_id,
                from_agent=from_agent,
                to_phase=to_phase,
                artifacts=produced,
                required_artifacts_present=True,
                sequence=sequence,
                issued_at=datetime.now(timezone.utc),
            )
            certificate = replace(unsigned, signature=self._sign(unsigned))
            self._latest[key] = certificate

        log.info("handoff_ready", sequence=sequence, artifacts=sorted(produced))
        self._bus.publish(
            Event(
                topic=EventTypes.HANDOFF_READY,
                workflow_id=workflow_id,
                phase=to_phase,
                payload=certificate.to_dict(),
            )
        )
        return certificate

    def current(self, workflow_id: str, to_phase: Phase) -> Optional[HandoffCertificate]:
        """The most recent certificate for the pair, if any."""
        with self._lock:
            return self._latest.get((workflow_id, Phase(to_phase)))

    def withdraw(self, workflow_id: str, to_phase: Phase) -> bool:
        """Discard the current certificate; used once it has been committed."""
        with self._lock:
            return self._latest.pop((workflow_id, Phase(to_phase)), None) is not None

    def verify(self, certificate: HandoffCertificate) -> bool:
        return hmac.compare_digest(certificate.signature, self._sign(certificate))

    def _sign(self, certificate: HandoffCertificate) -> str:
        canonical = json.dumps(certificate.signing_payload(), sort_keys=True, separators=(",", ":"))
        return hmac.new(self._secret, canonical.encode("utf-8"), hashlib.sha256).hexdigest()

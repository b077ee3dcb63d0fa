"""
Workflow registry: the durable state machine.

The registry owns every ``Workflow`` record. All writes go through
``_write``, which re-reads the row inside one transaction, checks the
caller's expected phase and applies a conditional UPDATE keyed on
``phase`` and ``version`` before appending history rows. The call only
returns once the transaction is committed, and reads always go to
storage, so a restart can never observe a phase older than the last
committed transition.

``StaleState`` and ``AlreadyExists`` are reported, never retried here;
retry policy belongs to the controller.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from ulid import ULID

from ..data.models.phases import Phase, is_valid_transition
from ..data.models.workflows import (
    Blocker,
    BlockerSource,
    HistoryEntry,
    Outcome,
    Workflow,
)
from ..db.base import create_db_engine, get_session_factory, init_database
from ..db.models import WorkflowHistoryModel, WorkflowModel
from ..errors import (
    AlreadyExists,
    InvalidTransition,
    NotFound,
    StaleState,
    StorageFailure,
    TransitionBlocked,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_ulid() -> str:
    """Generate a ULID for history entries."""
    return str(ULID())


@dataclass
class _Change:
    """What a single write does to the stored record."""

    phase: Optional[Phase] = None
    artifacts: Optional[Dict[str, str]] = None
    blockers: Optional[List[Blocker]] = None
    entries: List[Dict[str, Any]] = field(default_factory=list)


class WorkflowRegistry:
    """Single-writer store for workflows with optimistic concurrency.

    Usage:
        registry = WorkflowRegistry.from_url("sqlite:///./orchestrator.db")
        wf = registry.create("42")
        wf = registry.commit_transition("42", Phase.INIT, Phase.PLAN, artifacts={"spec": "..."})
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str, create_tables: bool = True) -> "WorkflowRegistry":
        engine = create_db_engine(database_url)
        if create_tables:
            init_database(engine)
        return cls(get_session_factory(engine))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(f"Storage error: {exc}")
            raise StorageFailure(f"Storage error: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def exists(self, workflow_id: str) -> bool:
        with self._session() as session:
            return session.get(WorkflowModel, workflow_id) is not None

    def get(self, workflow_id: str) -> Workflow:
        """Return the committed workflow.

        Raises:
            NotFound: if the id is not registered
        """
        with self._session() as session:
            model = session.get(WorkflowModel, workflow_id)
            if model is None:
                raise NotFound(workflow_id)
            return self._snapshot(session, model)

    def list_workflows(self, phase: Optional[Union[Phase, str]] = None) -> List[Workflow]:
        with self._session() as session:
            query = select(WorkflowModel).order_by(WorkflowModel.created_at, WorkflowModel.id)
            if phase is not None:
                query = query.where(WorkflowModel.phase == Phase(phase).value)
            return [self._snapshot(session, m) for m in session.scalars(query).all()]

    def history(self, workflow_id: str) -> List[HistoryEntry]:
        """Append-only audit trail, ordered by commit."""
        return list(self.get(workflow_id).history)

    def export_history(self, workflow_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """History rows as plain dicts, independent of the live phase pointer."""
        with self._session() as session:
            if workflow_id is not None and session.get(WorkflowModel, workflow_id) is None:
                raise NotFound(workflow_id)
            query = select(WorkflowHistoryModel).order_by(
                WorkflowHistoryModel.workflow_id, WorkflowHistoryModel.sequence
            )
            if workflow_id is not None:
                query = query.where(WorkflowHistoryModel.workflow_id == workflow_id)
            return [row.to_dict() for row in session.scalars(query).all()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, workflow_id: str) -> Workflow:
        """Register a new workflow in INIT.

        Raises:
            AlreadyExists: if the id is taken; resuming is never implied
        """
        now = _utcnow()
        with self._session() as session:
            if session.get(WorkflowModel, workflow_id) is not None:
                raise AlreadyExists(workflow_id)
            model = WorkflowModel(
                id=workflow_id,
                phase=Phase.INIT.value,
                version=0,
                artifacts={},
                blockers=[],
                created_at=now,
                updated_at=now,
            )
            session.add(model)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise AlreadyExists(workflow_id)
            logger.info(f"Created workflow {workflow_id}")
            return self._snapshot(session, model)

    def commit_transition(
        self,
        workflow_id: str,
        from_phase: Union[Phase, str],
        to_phase: Union[Phase, str],
        outcome: Optional[Union[Outcome, str]] = None,
        artifacts: Optional[Dict[str, str]] = None,
        *,
        reason: Optional[str] = None,
        agent: Optional[str] = None,
        entered_at: Optional[datetime] = None,
    ) -> Workflow:
        """Atomically move ``workflow_id`` from ``from_phase`` to ``to_phase``.

        Appends a history entry, merges ``artifacts`` and updates the
        phase. Entering FAILED keeps the blockers as the explanation;
        any other transition requires (and then leaves) none.

        Raises:
            InvalidTransition: ``to_phase`` is not the successor (or FAILED)
            TransitionBlocked: blockers are recorded for ``to_phase``
            StaleState: the stored phase is no longer ``from_phase``
            NotFound: unknown workflow
        """
        from_phase = Phase(from_phase)
        to_phase = Phase(to_phase)
        if not is_valid_transition(from_phase, to_phase):
            raise InvalidTransition(
                f"Transition {from_phase} -> {to_phase} is not allowed",
                context={"from_phase": from_phase.value, "to_phase": to_phase.value},
            )

        if outcome is None:
            outcome = Outcome.FAILED if to_phase == Phase.FAILED else Outcome.COMPLETED
        outcome = Outcome(outcome)
        produced = dict(artifacts or {})
        now = _utcnow()

        def mutate(current: Workflow) -> _Change:
            blockers = current.blockers_for(to_phase)
            if to_phase != Phase.FAILED and blockers:
                raise TransitionBlocked(workflow_id, to_phase.value, blockers)
            return _Change(
                phase=to_phase,
                artifacts={**current.artifacts, **produced},
                blockers=list(current.blockers) if to_phase == Phase.FAILED else [],
                entries=[
                    {
                        "phase": to_phase,
                        "entered_at": entered_at or now,
                        "exited_at": now,
                        "outcome": outcome,
                        "reason": reason,
                        "agent": agent,
                        "artifacts": produced,
                    }
                ],
            )

        workflow = self._write(workflow_id, from_phase, mutate)
        logger.info(f"Workflow {workflow_id}: {from_phase} -> {to_phase} ({outcome.value})")
        return workflow

    def replace_blockers(
        self,
        workflow_id: str,
        expected_phase: Union[Phase, str],
        target_phase: Union[Phase, str],
        source: Union[BlockerSource, str],
        blockers: Sequence[Blocker],
    ) -> Workflow:
        """Swap the ``source`` blockers for ``target_phase``.

        An empty ``blockers`` clears them; no write happens when nothing
        would change.
        """
        target_phase = Phase(target_phase)
        source = BlockerSource(source)

        def mutate(current: Workflow) -> Optional[_Change]:
            kept = [b for b in current.blockers if not (b.phase == target_phase and b.source == source)]
            updated = kept + list(blockers)
            if updated == list(current.blockers):
                return None
            return _Change(blockers=updated)

        return self._write(workflow_id, Phase(expected_phase), mutate)

    def clear_blockers(
        self,
        workflow_id: str,
        expected_phase: Union[Phase, str],
        target_phase: Union[Phase, str],
        source: Union[BlockerSource, str],
    ) -> Workflow:
        return self.replace_blockers(workflow_id, expected_phase, target_phase, source, [])

    def record_attempt(
        self,
        workflow_id: str,
        expected_phase: Union[Phase, str],
        target_phase: Union[Phase, str],
        outcome: Union[Outcome, str],
        *,
        reason: Optional[str] = None,
        agent: Optional[str] = None,
        entered_at: Optional[datetime] = None,
        artifacts: Optional[Dict[str, str]] = None,
        source: Optional[Union[BlockerSource, str]] = None,
        blockers: Sequence[Blocker] = (),
    ) -> Workflow:
        """Append a history entry for an attempt that did not change the phase.

        When ``source`` is given, that source's blockers for
        ``target_phase`` are replaced by ``blockers`` in the same write.
        """
        target_phase = Phase(target_phase)
        outcome = Outcome(outcome)
        if outcome in (Outcome.COMPLETED, Outcome.FAILED):
            raise ValueError("Completed and failed outcomes go through commit_transition")
        now = _utcnow()

        def mutate(current: Workflow) -> _Change:
            change = _Change(
                entries=[
                    {
                        "phase": target_phase,
                        "entered_at": entered_at or now,
                        "exited_at": now,
                        "outcome": outcome,
                        "reason": reason,
                        "agent": agent,
                        "artifacts": dict(artifacts or {}),
                    }
                ]
            )
            if source is not None:
                src = BlockerSource(source)
                kept = [b for b in current.blockers if not (b.phase == target_phase and b.source == src)]
                change.blockers = kept + list(blockers)
            return change

        return self._write(workflow_id, Phase(expected_phase), mutate)

    def _write(
        self,
        workflow_id: str,
        expected_phase: Phase,
        mutate: Callable[[Workflow], Optional[_Change]],
    ) -> Workflow:
        """The one commit path every mutation goes through."""
        with self._session() as session:
            model = session.get(WorkflowModel, workflow_id)
            if model is None:
                raise NotFound(workflow_id)
            current = self._snapshot(session, model)
            if current.phase != expected_phase:
                raise StaleState(workflow_id, expected_phase.value, current.phase.value)

            change = mutate(current)
            if change is None:
                return current

            now = _utcnow()
            values: Dict[str, Any] = {"version": current.version + 1, "updated_at": now}
            if change.phase is not None:
                values["phase"] = change.phase.value
            if change.artifacts is not None:
                values["artifacts"] = dict(change.artifacts)
            if change.blockers is not None:
                values["blockers"] = [b.model_dump(mode="json") for b in change.blockers]

            result = session.execute(
                update(WorkflowModel)
                .where(
                    WorkflowModel.id == workflow_id,
                    WorkflowModel.phase == expected_phase.value,
                    WorkflowModel.version == current.version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                actual = session.scalar(select(WorkflowModel.phase).where(WorkflowModel.id == workflow_id))
                raise StaleState(workflow_id, expected_phase.value, actual or "unknown")

            if change.entries:
                sequence = session.scalar(
                    select(func.coalesce(func.max(WorkflowHistoryModel.sequence), 0)).where(
                        WorkflowHistoryModel.workflow_id == workflow_id
                    )
                )
                for offset, entry in enumerate(change.entries, start=1):
                    session.add(
                        WorkflowHistoryModel(
                            id=generate_ulid(),
                            workflow_id=workflow_id,
                            sequence=sequence + offset,
                            phase=Phase(entry["phase"]).value,
                            entered_at=entry["entered_at"],
                            exited_at=entry["exited_at"],
                            outcome=Outcome(entry["outcome"]).value,
                            reason=entry["reason"],
                            agent=entry["agent"],
                            artifacts=entry["artifacts"],
                        )
                    )

            session.commit()
            session.expire_all()
            return self._snapshot(session, session.get(WorkflowModel, workflow_id))

    # ------------------------------------------------------------------

    @staticmethod
    def _snapshot(session: Session, model: WorkflowModel) -> Workflow:
        rows = session.scalars(
            select(WorkflowHistoryModel)
            .where(WorkflowHistoryModel.workflow_id == model.id)
            .order_by(WorkflowHistoryModel.sequence)
        ).all()
        return Workflow(
            id=model.id,
            phase=Phase(model.phase),
            version=model.version,
            history=tuple(
                HistoryEntry(
                    id=row.id,
                    sequence=row.sequence,
                    phase=Phase(row.phase),
                    entered_at=row.entered_at,
                    exited_at=row.exited_at,
                    outcome=Outcome(row.outcome),
                    reason=row.reason,
                    agent=row.agent,
                    artifacts=dict(row.artifacts or {}),
                )
                for row in rows
            ),
            artifacts=dict(model.artifacts or {}),
            blockers=tuple(Blocker.model_validate(b) for b in (model.blockers or [])),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

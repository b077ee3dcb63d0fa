"""
SQLAlchemy models for the workflow registry.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .base import Base


class WorkflowModel(Base):
    """One durable record per workflow id: the live phase pointer."""

    __tablename__ = "workflows"

    id = Column(String(128), primary_key=True)
    phase = Column(String(16), nullable=False, default="INIT", index=True)

    # Bumped on every write; part of the optimistic lock
    version = Column(Integer, nullable=False, default=0)

    artifacts = Column(JSON, nullable=False, default=dict)
    blockers = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    history = relationship(
        "WorkflowHistoryModel",
        back_populates="workflow",
        order_by="WorkflowHistoryModel.sequence",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "phase": self.phase,
            "version": self.version,
            "artifacts": self.artifacts,
            "blockers": self.blockers,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class WorkflowHistoryModel(Base):
    """Append-only audit log; rows are never updated or deleted."""

    __tablename__ = "workflow_history"

    # ULID, sortable by creation
    id = Column(String(26), primary_key=True)
    workflow_id = Column(
        String(128), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False
    )
    sequence = Column(Integer, nullable=False)

    phase = Column(String(16), nullable=False)
    entered_at = Column(DateTime(timezone=True), nullable=False)
    exited_at = Column(DateTime(timezone=True), nullable=True)
    outcome = Column(String(16), nullable=False, index=True)
    reason = Column(Text, nullable=True)
    agent = Column(String(64), nullable=True)
    artifacts = Column(JSON, nullable=False, default=dict)

    workflow = relationship("WorkflowModel", back_populates="history")

    __table_args__ = (
        UniqueConstraint("workflow_id", "sequence", name="uq_workflow_history_sequence"),
        Index("ix_workflow_history_workflow", "workflow_id", "sequence"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "sequence": self.sequence,
            "phase": self.phase,
            "entered_at": self.entered_at.isoformat() if self.entered_at else None,
            "exited_at": self.exited_at.isoformat() if self.exited_at else None,
            "outcome": self.outcome,
            "reason": self.reason,
            "agent": self.agent,
            "artifacts": self.artifacts,
        }

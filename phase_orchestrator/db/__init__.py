"""
Database package for the phase orchestrator.
"""

from .base import Base, create_db_engine, get_engine, get_session_factory, init_database
from .models import WorkflowHistoryModel, WorkflowModel

__all__ = [
    "Base",
    "create_db_engine",
    "get_engine",
    "get_session_factory",
    "init_database",
    "WorkflowModel",
    "WorkflowHistoryModel",
]

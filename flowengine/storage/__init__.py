"""Storage layer for the workflow engine."""

from .repository import ChangeSet, WorkflowRepository, InMemoryRepository
from .sql_repository import SqlAlchemyRepository, DatabaseAuditSink
from .database import Base, create_database_engine, create_session_factory, create_tables

__all__ = [
    "ChangeSet",
    "WorkflowRepository",
    "InMemoryRepository",
    "SqlAlchemyRepository",
    "DatabaseAuditSink",
    "Base",
    "create_database_engine",
    "create_session_factory",
    "create_tables",
]

"""SQLAlchemy database models for the workflow engine."""

from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, Float, ForeignKey, Index
from .database import Base


def _now():
    return datetime.now(timezone.utc)


class DefinitionModel(Base):
    """One version of a workflow definition; statistics live in their own columns."""
    __tablename__ = "workflow_definitions"

    id = Column(String, primary_key=True)
    version = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False)
    created_by = Column(String, nullable=False)
    document = Column(JSON, nullable=False)  # definition without statistics
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    total_instances = Column(Integer, nullable=False, default=0)
    active_instances = Column(Integer, nullable=False, default=0)
    completed_instances = Column(Integer, nullable=False, default=0)
    failed_instances = Column(Integer, nullable=False, default=0)
    cancelled_instances = Column(Integer, nullable=False, default=0)
    timed_out_instances = Column(Integer, nullable=False, default=0)
    duration_total_seconds = Column(Float, nullable=False, default=0.0)
    duration_samples = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime)


class InstanceModel(Base):
    """A workflow instance document plus the columns used for filtering and version checks."""
    __tablename__ = "workflow_instances"

    id = Column(String, primary_key=True)
    definition_id = Column(String, nullable=False, index=True)
    definition_version = Column(Integer, nullable=False)
    status = Column(String, nullable=False, index=True)
    priority = Column(String, nullable=False)
    initiated_by = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    version = Column(Integer, nullable=False)
    document = Column(JSON, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)


class ApprovalModel(Base):
    __tablename__ = "approval_requests"

    id = Column(String, primary_key=True)
    instance_id = Column(String, ForeignKey("workflow_instances.id"), nullable=False, index=True)
    node_id = Column(String, nullable=False)
    status = Column(String, nullable=False)
    document = Column(JSON, nullable=False)


class JoinModel(Base):
    __tablename__ = "branch_joins"

    id = Column(String, primary_key=True)
    instance_id = Column(String, ForeignKey("workflow_instances.id"), nullable=False, index=True)
    parallel_node_id = Column(String, nullable=False)
    document = Column(JSON, nullable=False)


class HistoryModel(Base):
    """Append-only audit copy of execution history entries."""
    __tablename__ = "workflow_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(String, nullable=False)
    seq = Column(Integer, nullable=False)
    node_id = Column(String)
    action = Column(String, nullable=False)
    actor = Column(String, nullable=False)
    token = Column(String)
    status = Column(String, nullable=False)
    timestamp = Column(DateTime, default=_now)
    details = Column(JSON)
    message = Column(Text)

    __table_args__ = (Index("ix_workflow_history_instance_seq", "instance_id", "seq"),)

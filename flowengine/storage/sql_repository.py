"""SQLAlchemy implementation of the workflow repository."""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import (
    STATISTIC_COUNTERS, ApprovalRequest, BranchJoinRecord, HistoryEntry,
    Statistics, TERMINAL_STATUSES, WorkflowDefinition, WorkflowInstance
)
from ..models.queries import InstanceFilters
from ..core.collaborators import AuditSink
from ..core.exceptions import ConcurrentModification, StorageError
from ..core.logging import get_logger
from .models import ApprovalModel, DefinitionModel, HistoryModel, InstanceModel, JoinModel
from .repository import ChangeSet, WorkflowRepository

logger = get_logger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class SqlAlchemyRepository(WorkflowRepository):
    """Stores each aggregate as a JSON document plus indexed scalar columns.

    Instance commits are a conditional ``UPDATE ... WHERE version = expected``
    in the same transaction as the approval and join record writes.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        logger.info("SqlAlchemyRepository initialized")

    def _session(self) -> Session:
        return self._session_factory()

    # Definitions

    def save_definition(self, definition: WorkflowDefinition) -> None:
        db = self._session()
        try:
            row = db.get(DefinitionModel, (definition.id, definition.version))
            document = definition.model_dump(mode="json", exclude={"statistics"})
            if row is None:
                row = DefinitionModel(
                    id=definition.id,
                    version=definition.version,
                    created_at=_naive(definition.created_at),
                )
                db.add(row)
            row.name = definition.name
            row.status = definition.status.value
            row.created_by = definition.created_by
            row.document = document
            row.updated_at = _naive(definition.updated_at)
            db.commit()
            logger.debug(f"Saved definition {definition.id} v{definition.version}")
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to save definition: {str(e)}", operation="save_definition",
                               table="workflow_definitions")
        finally:
            db.close()

    def get_definition(self, definition_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        db = self._session()
        try:
            query = select(DefinitionModel).where(DefinitionModel.id == definition_id)
            if version is None:
                query = query.order_by(DefinitionModel.version.desc()).limit(1)
            else:
                query = query.where(DefinitionModel.version == version)
            row = db.execute(query).scalars().first()
            return self._to_definition(row) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load definition: {str(e)}", operation="get_definition",
                               table="workflow_definitions")
        finally:
            db.close()

    def list_definition_versions(self, definition_id: str) -> List[WorkflowDefinition]:
        db = self._session()
        try:
            rows = db.execute(
                select(DefinitionModel)
                .where(DefinitionModel.id == definition_id)
                .order_by(DefinitionModel.version)
            ).scalars().all()
            return [self._to_definition(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list definition versions: {str(e)}",
                               operation="list_definition_versions", table="workflow_definitions")
        finally:
            db.close()

    def list_definitions(self) -> List[WorkflowDefinition]:
        db = self._session()
        try:
            rows = db.execute(select(DefinitionModel)).scalars().all()
            latest: Dict[str, DefinitionModel] = {}
            for row in rows:
                if row.id not in latest or latest[row.id].version < row.version:
                    latest[row.id] = row
            definitions = [self._to_definition(row) for row in latest.values()]
            return sorted(definitions, key=lambda d: d.created_at)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list definitions: {str(e)}", operation="list_definitions",
                               table="workflow_definitions")
        finally:
            db.close()

    def increment_statistics(
        self,
        definition_id: str,
        version: int,
        deltas: Dict[str, float],
        last_used_at: Optional[datetime] = None
    ) -> None:
        values = {}
        for counter, delta in deltas.items():
            if counter not in STATISTIC_COUNTERS:
                raise StorageError(f"Unknown statistic counter: {counter}", operation="increment_statistics")
            column = getattr(DefinitionModel, counter)
            values[column] = column + delta
        if last_used_at is not None:
            values[DefinitionModel.last_used_at] = _naive(last_used_at)
        if not values:
            return

        db = self._session()
        try:
            result = db.execute(
                update(DefinitionModel)
                .where(DefinitionModel.id == definition_id, DefinitionModel.version == version)
                .values(values)
            )
            if result.rowcount != 1:
                raise StorageError(
                    f"Definition {definition_id} v{version} not found",
                    operation="increment_statistics",
                    table="workflow_definitions"
                )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to update statistics: {str(e)}", operation="increment_statistics",
                               table="workflow_definitions")
        except StorageError:
            db.rollback()
            raise
        finally:
            db.close()

    # Instances

    def insert_instance(self, changes: ChangeSet) -> None:
        db = self._session()
        try:
            db.add(InstanceModel(id=changes.instance.id, **self._instance_columns(changes.instance)))
            db.flush()
            self._write_records(db, changes)
            db.commit()
            logger.debug(f"Inserted instance {changes.instance.id}")
        except IntegrityError as e:
            db.rollback()
            raise StorageError(f"Instance {changes.instance.id} already exists: {str(e)}",
                               operation="insert_instance", table="workflow_instances")
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to insert instance: {str(e)}", operation="insert_instance",
                               table="workflow_instances")
        finally:
            db.close()

    def commit(self, changes: ChangeSet, expected_version: int) -> None:
        instance_id = changes.instance.id
        db = self._session()
        try:
            result = db.execute(
                update(InstanceModel)
                .where(InstanceModel.id == instance_id, InstanceModel.version == expected_version)
                .values(**self._instance_columns(changes.instance))
            )
            if result.rowcount != 1:
                actual = db.execute(
                    select(InstanceModel.version).where(InstanceModel.id == instance_id)
                ).scalar_one_or_none()
                db.rollback()
                raise ConcurrentModification(instance_id, expected_version=expected_version, actual_version=actual)

            self._write_records(db, changes)
            db.commit()
            logger.debug(f"Committed instance {instance_id} at version {changes.instance.version}")
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to commit instance: {str(e)}", operation="commit",
                               table="workflow_instances")
        finally:
            db.close()

    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        db = self._session()
        try:
            row = db.get(InstanceModel, instance_id)
            return self._to_instance(row) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load instance: {str(e)}", operation="get_instance",
                               table="workflow_instances")
        finally:
            db.close()

    def find_instances(self, filters: Optional[InstanceFilters] = None) -> List[WorkflowInstance]:
        query = select(InstanceModel)
        if filters is not None:
            if filters.definition_id:
                query = query.where(InstanceModel.definition_id == filters.definition_id)
            if filters.status:
                query = query.where(InstanceModel.status == filters.status.value)
            if filters.initiated_by:
                query = query.where(InstanceModel.initiated_by == filters.initiated_by)
            if filters.priority:
                query = query.where(InstanceModel.priority == filters.priority.value)

        db = self._session()
        try:
            return [self._to_instance(row) for row in db.execute(query).scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to query instances: {str(e)}", operation="find_instances",
                               table="workflow_instances")
        finally:
            db.close()

    def list_open_instances(self) -> List[WorkflowInstance]:
        terminal = [status.value for status in TERMINAL_STATUSES]
        db = self._session()
        try:
            rows = db.execute(
                select(InstanceModel).where(InstanceModel.status.not_in(terminal))
            ).scalars().all()
            return [self._to_instance(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list open instances: {str(e)}", operation="list_open_instances",
                               table="workflow_instances")
        finally:
            db.close()

    # Coordination records

    def get_approval(self, approval_id: str) -> Optional[ApprovalRequest]:
        db = self._session()
        try:
            row = db.get(ApprovalModel, approval_id)
            return ApprovalRequest.model_validate(row.document) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load approval: {str(e)}", operation="get_approval",
                               table="approval_requests")
        finally:
            db.close()

    def list_approvals(self, instance_id: str) -> List[ApprovalRequest]:
        db = self._session()
        try:
            rows = db.execute(
                select(ApprovalModel).where(ApprovalModel.instance_id == instance_id)
            ).scalars().all()
            return [ApprovalRequest.model_validate(row.document) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list approvals: {str(e)}", operation="list_approvals",
                               table="approval_requests")
        finally:
            db.close()

    def list_joins(self, instance_id: str) -> List[BranchJoinRecord]:
        db = self._session()
        try:
            rows = db.execute(
                select(JoinModel).where(JoinModel.instance_id == instance_id)
            ).scalars().all()
            return [BranchJoinRecord.model_validate(row.document) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list joins: {str(e)}", operation="list_joins", table="branch_joins")
        finally:
            db.close()

    # Helpers

    @staticmethod
    def _instance_columns(instance: WorkflowInstance) -> Dict[str, object]:
        return {
            "definition_id": instance.definition_id,
            "definition_version": instance.definition_version,
            "status": instance.status.value,
            "priority": instance.priority.value,
            "initiated_by": instance.initiated_by,
            "title": instance.title,
            "version": instance.version,
            "document": instance.model_dump(mode="json"),
            "started_at": _naive(instance.started_at),
            "completed_at": _naive(instance.completed_at),
        }

    @staticmethod
    def _write_records(db: Session, changes: ChangeSet) -> None:
        for approval in changes.approvals:
            db.merge(ApprovalModel(
                id=approval.id,
                instance_id=approval.instance_id,
                node_id=approval.node_id,
                status=approval.status.value,
                document=approval.model_dump(mode="json"),
            ))
        if changes.deleted_approvals:
            db.execute(delete(ApprovalModel).where(ApprovalModel.id.in_(changes.deleted_approvals)))
        for join in changes.joins:
            db.merge(JoinModel(
                id=join.id,
                instance_id=join.instance_id,
                parallel_node_id=join.parallel_node_id,
                document=join.model_dump(mode="json"),
            ))
        if changes.deleted_joins:
            db.execute(delete(JoinModel).where(JoinModel.id.in_(changes.deleted_joins)))

    @staticmethod
    def _to_definition(row: DefinitionModel) -> WorkflowDefinition:
        definition = WorkflowDefinition.model_validate(row.document)
        definition.statistics = Statistics(
            total_instances=row.total_instances,
            active_instances=row.active_instances,
            completed_instances=row.completed_instances,
            failed_instances=row.failed_instances,
            cancelled_instances=row.cancelled_instances,
            timed_out_instances=row.timed_out_instances,
            duration_total_seconds=row.duration_total_seconds,
            duration_samples=row.duration_samples,
            last_used_at=_aware(row.last_used_at),
        )
        return definition

    @staticmethod
    def _to_instance(row: InstanceModel) -> WorkflowInstance:
        return WorkflowInstance.model_validate(row.document)


class DatabaseAuditSink(AuditSink):
    """Writes history entries to the ``workflow_history`` table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record(self, instance: WorkflowInstance, entry: HistoryEntry) -> None:
        db = self._session_factory()
        try:
            db.add(HistoryModel(
                instance_id=instance.id,
                seq=entry.seq,
                node_id=entry.node_id,
                action=entry.action.value,
                actor=entry.actor,
                token=entry.token,
                status=entry.status.value,
                timestamp=_naive(entry.timestamp),
                details=entry.model_dump(mode="json")["details"],
                message=entry.details.get("comment"),
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to write history entry: {str(e)}", operation="record",
                               table="workflow_history")
        finally:
            db.close()

    def for_instance(self, instance_id: str) -> List[Dict[str, object]]:
        db = self._session_factory()
        try:
            rows = db.execute(
                select(HistoryModel)
                .where(HistoryModel.instance_id == instance_id)
                .order_by(HistoryModel.seq)
            ).scalars().all()
            return [
                {
                    "instance_id": row.instance_id,
                    "seq": row.seq,
                    "node_id": row.node_id,
                    "action": row.action,
                    "actor": row.actor,
                    "token": row.token,
                    "status": row.status,
                    "timestamp": _aware(row.timestamp),
                    "details": row.details or {},
                }
                for row in rows
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read history: {str(e)}", operation="for_instance",
                               table="workflow_history")
        finally:
            db.close()

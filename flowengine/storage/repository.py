"""Persistence port for definitions, instances, approval requests and join records."""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from ..models.core import (
    STATISTIC_COUNTERS, ApprovalRequest, BranchJoinRecord,
    TERMINAL_STATUSES, WorkflowDefinition, WorkflowInstance
)
from ..models.queries import InstanceFilters
from ..core.exceptions import ConcurrentModification, StorageError
from ..core.logging import get_logger

logger = get_logger(__name__)


class ChangeSet:
    """Everything one engine step writes, committed atomically.

    ``instance.version`` already holds the new version; the repository
    checks the stored version against ``expected_version``.
    """

    def __init__(
        self,
        instance: WorkflowInstance,
        approvals: Optional[Iterable[ApprovalRequest]] = None,
        deleted_approvals: Optional[Iterable[str]] = None,
        joins: Optional[Iterable[BranchJoinRecord]] = None,
        deleted_joins: Optional[Iterable[str]] = None
    ):
        self.instance = instance
        self.approvals = list(approvals or [])
        self.deleted_approvals = list(deleted_approvals or [])
        self.joins = list(joins or [])
        self.deleted_joins = list(deleted_joins or [])


class WorkflowRepository(ABC):
    """Storage used by the engine; implementations must make ``commit`` atomic."""

    # Definitions

    @abstractmethod
    def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace one definition version (statistics excluded)."""

    @abstractmethod
    def get_definition(self, definition_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        """Return the given version, or the highest version when ``version`` is None."""

    @abstractmethod
    def list_definition_versions(self, definition_id: str) -> List[WorkflowDefinition]:
        """All versions of a definition, oldest first."""

    @abstractmethod
    def list_definitions(self) -> List[WorkflowDefinition]:
        """The highest version of every definition."""

    @abstractmethod
    def increment_statistics(
        self,
        definition_id: str,
        version: int,
        deltas: Dict[str, float],
        last_used_at: Optional[datetime] = None
    ) -> None:
        """Atomically add ``deltas`` to the statistic counters of one definition version."""

    # Instances

    @abstractmethod
    def insert_instance(self, changes: ChangeSet) -> None:
        """Create a new instance (version 1) together with its records."""

    @abstractmethod
    def commit(self, changes: ChangeSet, expected_version: int) -> None:
        """
        Write an instance and its records if the stored version is still ``expected_version``.

        Raises:
            ConcurrentModification: If the stored version differs
        """

    @abstractmethod
    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        pass

    @abstractmethod
    def find_instances(self, filters: Optional[InstanceFilters] = None) -> List[WorkflowInstance]:
        """Instances matching the scalar filters; other filters are applied by the caller."""

    @abstractmethod
    def list_open_instances(self) -> List[WorkflowInstance]:
        """All instances that are not in a terminal status."""

    # Coordination records

    @abstractmethod
    def get_approval(self, approval_id: str) -> Optional[ApprovalRequest]:
        pass

    @abstractmethod
    def list_approvals(self, instance_id: str) -> List[ApprovalRequest]:
        pass

    @abstractmethod
    def list_joins(self, instance_id: str) -> List[BranchJoinRecord]:
        pass


def scalar_filter_match(instance: WorkflowInstance, filters: Optional[InstanceFilters]) -> bool:
    """The subset of filters that storage backends can apply on indexed columns."""
    if filters is None:
        return True
    if filters.definition_id and instance.definition_id != filters.definition_id:
        return False
    if filters.status and instance.status != filters.status:
        return False
    if filters.initiated_by and instance.initiated_by != filters.initiated_by:
        return False
    if filters.priority and instance.priority != filters.priority:
        return False
    return True


class InMemoryRepository(WorkflowRepository):
    """Thread-safe repository keeping deep copies of every document."""

    def __init__(self):
        self._definitions: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._approvals: Dict[str, ApprovalRequest] = {}
        self._joins: Dict[str, BranchJoinRecord] = {}
        self._lock = threading.RLock()

    def save_definition(self, definition: WorkflowDefinition) -> None:
        key = (definition.id, definition.version)
        with self._lock:
            stored = definition.model_copy(deep=True)
            if key in self._definitions:
                stored.statistics = self._definitions[key].statistics.model_copy()
            self._definitions[key] = stored

    def get_definition(self, definition_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        with self._lock:
            if version is None:
                versions = self.list_definition_versions(definition_id)
                return versions[-1] if versions else None
            definition = self._definitions.get((definition_id, version))
            return definition.model_copy(deep=True) if definition else None

    def list_definition_versions(self, definition_id: str) -> List[WorkflowDefinition]:
        with self._lock:
            versions = [d for (d_id, _), d in self._definitions.items() if d_id == definition_id]
            return [d.model_copy(deep=True) for d in sorted(versions, key=lambda d: d.version)]

    def list_definitions(self) -> List[WorkflowDefinition]:
        with self._lock:
            latest: Dict[str, WorkflowDefinition] = {}
            for (definition_id, version), definition in self._definitions.items():
                if definition_id not in latest or latest[definition_id].version < version:
                    latest[definition_id] = definition
            return [d.model_copy(deep=True) for d in sorted(latest.values(), key=lambda d: d.created_at)]

    def increment_statistics(
        self,
        definition_id: str,
        version: int,
        deltas: Dict[str, float],
        last_used_at: Optional[datetime] = None
    ) -> None:
        with self._lock:
            definition = self._definitions.get((definition_id, version))
            if definition is None:
                raise StorageError(f"Definition {definition_id} v{version} not found", operation="increment_statistics")
            statistics = definition.statistics
            for counter, delta in deltas.items():
                if counter not in STATISTIC_COUNTERS:
                    raise StorageError(f"Unknown statistic counter: {counter}", operation="increment_statistics")
                setattr(statistics, counter, getattr(statistics, counter) + delta)
            if last_used_at is not None:
                statistics.last_used_at = last_used_at

    def insert_instance(self, changes: ChangeSet) -> None:
        with self._lock:
            if changes.instance.id in self._instances:
                raise StorageError(f"Instance {changes.instance.id} already exists", operation="insert_instance")
            self._write(changes)

    def commit(self, changes: ChangeSet, expected_version: int) -> None:
        instance_id = changes.instance.id
        with self._lock:
            stored = self._instances.get(instance_id)
            actual = stored.version if stored else None
            if actual != expected_version:
                raise ConcurrentModification(instance_id, expected_version=expected_version, actual_version=actual)
            self._write(changes)

    def _write(self, changes: ChangeSet) -> None:
        self._instances[changes.instance.id] = changes.instance.model_copy(deep=True)
        for approval in changes.approvals:
            self._approvals[approval.id] = approval.model_copy(deep=True)
        for approval_id in changes.deleted_approvals:
            self._approvals.pop(approval_id, None)
        for join in changes.joins:
            self._joins[join.id] = join.model_copy(deep=True)
        for join_id in changes.deleted_joins:
            self._joins.pop(join_id, None)

    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        with self._lock:
            instance = self._instances.get(instance_id)
            return instance.model_copy(deep=True) if instance else None

    def find_instances(self, filters: Optional[InstanceFilters] = None) -> List[WorkflowInstance]:
        with self._lock:
            return [
                instance.model_copy(deep=True) for instance in self._instances.values()
                if scalar_filter_match(instance, filters)
            ]

    def list_open_instances(self) -> List[WorkflowInstance]:
        with self._lock:
            return [
                instance.model_copy(deep=True) for instance in self._instances.values()
                if instance.status not in TERMINAL_STATUSES
            ]

    def get_approval(self, approval_id: str) -> Optional[ApprovalRequest]:
        with self._lock:
            approval = self._approvals.get(approval_id)
            return approval.model_copy(deep=True) if approval else None

    def list_approvals(self, instance_id: str) -> List[ApprovalRequest]:
        with self._lock:
            return [a.model_copy(deep=True) for a in self._approvals.values() if a.instance_id == instance_id]

    def list_joins(self, instance_id: str) -> List[BranchJoinRecord]:
        with self._lock:
            return [j.model_copy(deep=True) for j in self._joins.values() if j.instance_id == instance_id]

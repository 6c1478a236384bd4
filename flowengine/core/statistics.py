"""Post-commit bookkeeping: audit entries and definition statistics."""

from datetime import datetime
from typing import Callable, Dict, Iterable

from ..models.core import HistoryEntry, InstanceStatus, WorkflowInstance
from ..storage.repository import WorkflowRepository
from .collaborators import AuditSink
from .exceptions import WorkflowEngineError
from .logging import get_logger

logger = get_logger(__name__)

_FINISHED_COUNTERS = {
    InstanceStatus.COMPLETED: "completed_instances",
    InstanceStatus.FAILED: "failed_instances",
    InstanceStatus.CANCELLED: "cancelled_instances",
    InstanceStatus.TIMED_OUT: "timed_out_instances",
}


class ExecutionRecorder:
    """Writes the side records of a committed step.

    Runs after the instance commit; a failure here is logged and never
    rolls back or fails the step.
    """

    def __init__(self, repository: WorkflowRepository, audit_sink: AuditSink, clock: Callable[[], datetime]):
        self.repository = repository
        self.audit_sink = audit_sink
        self.clock = clock

    def record_entries(self, instance: WorkflowInstance, entries: Iterable[HistoryEntry]) -> None:
        for entry in entries:
            try:
                self.audit_sink.record(instance, entry)
            except Exception as e:
                logger.error(f"Audit sink failed for instance {instance.id} entry {entry.seq}: {e}")

    def instance_started(self, instance: WorkflowInstance) -> None:
        self._increment(
            instance,
            {"total_instances": 1, "active_instances": 1},
            last_used=True
        )

    def instance_finished(self, instance: WorkflowInstance) -> None:
        counter = _FINISHED_COUNTERS.get(instance.status)
        if counter is None:
            return
        deltas: Dict[str, float] = {"active_instances": -1, counter: 1}
        if instance.status == InstanceStatus.COMPLETED and instance.completed_at:
            duration = (instance.completed_at - instance.started_at).total_seconds()
            deltas["duration_total_seconds"] = max(duration, 0.0)
            deltas["duration_samples"] = 1
        self._increment(instance, deltas)

    def _increment(self, instance: WorkflowInstance, deltas: Dict[str, float], last_used: bool = False) -> None:
        try:
            self.repository.increment_statistics(
                instance.definition_id,
                instance.definition_version,
                deltas,
                last_used_at=self.clock() if last_used else None
            )
        except WorkflowEngineError as e:
            logger.error(f"Failed to update statistics for {instance.definition_id}: {e.message}")

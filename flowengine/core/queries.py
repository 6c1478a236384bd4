"""Instance listing: filtering, sorting, pagination and aggregate statistics."""

from typing import Any, List, Optional, Tuple

from ..models.core import PRIORITY_RANK, InstanceStatus, WorkflowInstance
from ..models.queries import (
    InstanceFilters, InstancePage, InstanceSort, InstanceStatistics, PageRequest,
    Pagination, SortField, SortOrder
)
from ..storage.repository import WorkflowRepository
from .logging import get_logger
from .permissions import AccessPolicy, Actor, Permission

logger = get_logger(__name__)


class InstanceQueryService:
    """Read side for instance lists.

    Storage pre-filters on indexed scalar columns; assignee, date range,
    search and visibility are applied here.
    """

    def __init__(self, repository: WorkflowRepository, policy: AccessPolicy):
        self.repository = repository
        self.policy = policy

    def list_instances(
        self,
        actor: Actor,
        filters: Optional[InstanceFilters] = None,
        sort: Optional[InstanceSort] = None,
        page: Optional[PageRequest] = None
    ) -> InstancePage:
        filters = filters or InstanceFilters()
        sort = sort or InstanceSort()
        page = page or PageRequest()

        matches = [
            instance for instance in self.repository.find_instances(filters)
            if self._matches(instance, filters)
            and self.policy.can(actor, Permission.VIEW_INSTANCE, instance)
        ]
        matches = self.sort_instances(matches, sort)
        window = matches[page.offset:page.offset + page.limit]

        logger.debug(f"Instance query by {actor.id}: {len(matches)} match(es), returning {len(window)}")
        return InstancePage(
            instances=window,
            pagination=Pagination.build(page, len(matches)),
            statistics=self.summarize(matches),
        )

    @staticmethod
    def _matches(instance: WorkflowInstance, filters: InstanceFilters) -> bool:
        if filters.assigned_to:
            assignees = set(instance.assigned_to)
            for task in instance.open_tasks.values():
                assignees.update(task.assigned_to)
            if filters.assigned_to not in assignees:
                return False
        if filters.started_after and instance.started_at < filters.started_after:
            return False
        if filters.started_before and instance.started_at > filters.started_before:
            return False
        if filters.search:
            needle = filters.search.strip().lower()
            haystack = " ".join(
                text for text in (instance.title, instance.description, instance.definition_name) if text
            ).lower()
            if needle not in haystack:
                return False
        return True

    @staticmethod
    def sort_instances(instances: List[WorkflowInstance], sort: InstanceSort) -> List[WorkflowInstance]:
        """Sort by one field; instances without a value sort last in either order."""
        def value(instance: WorkflowInstance) -> Any:
            if sort.field == SortField.PRIORITY:
                return PRIORITY_RANK[instance.priority]
            if sort.field == SortField.STATUS:
                return instance.status.value
            if sort.field == SortField.TITLE:
                return instance.title.lower()
            return getattr(instance, sort.field.value)

        present: List[Tuple[Any, WorkflowInstance]] = []
        missing: List[WorkflowInstance] = []
        for instance in instances:
            key = value(instance)
            if key is None:
                missing.append(instance)
            else:
                present.append((key, instance))

        present.sort(key=lambda pair: pair[0], reverse=sort.order == SortOrder.DESC)
        return [instance for _, instance in present] + missing

    @staticmethod
    def summarize(instances: List[WorkflowInstance]) -> InstanceStatistics:
        statistics = InstanceStatistics(total=len(instances))
        durations = []
        for instance in instances:
            counter = instance.status.value
            setattr(statistics, counter, getattr(statistics, counter) + 1)
            if instance.status == InstanceStatus.COMPLETED and instance.completed_at:
                durations.append((instance.completed_at - instance.started_at).total_seconds())
        if durations:
            statistics.average_duration_seconds = sum(durations) / len(durations)
        return statistics

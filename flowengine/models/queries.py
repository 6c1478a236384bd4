"""Models for instance listing: filters, sorting, pagination and aggregates."""

import math
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from .core import InstanceStatus, Priority, WorkflowInstance


class InstanceFilters(BaseModel):
    """Optional filters; unset fields do not restrict the result."""
    definition_id: Optional[str] = None
    status: Optional[InstanceStatus] = None
    initiated_by: Optional[str] = None
    assigned_to: Optional[str] = None
    priority: Optional[Priority] = None
    started_after: Optional[datetime] = None
    started_before: Optional[datetime] = None
    search: Optional[str] = Field(None, description="Case-insensitive match on title, description and workflow name")

    @model_validator(mode='after')
    def validate_date_range(self):
        if self.started_after and self.started_before and self.started_after > self.started_before:
            raise ValueError("started_after must not be later than started_before")
        return self


class SortField(str, Enum):
    STARTED_AT = "started_at"
    LAST_ACTIVITY_AT = "last_activity_at"
    COMPLETED_AT = "completed_at"
    TITLE = "title"
    PRIORITY = "priority"
    STATUS = "status"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class InstanceSort(BaseModel):
    field: SortField = SortField.STARTED_AT
    order: SortOrder = SortOrder.DESC


class PageRequest(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: PageRequest, total: int) -> 'Pagination':
        pages = math.ceil(total / page.limit) if total else 0
        return cls(
            page=page.page,
            limit=page.limit,
            total=total,
            pages=pages,
            has_next=page.page < pages,
            has_prev=page.page > 1,
        )


class InstanceStatistics(BaseModel):
    """Aggregates over every instance matching a query, not just the page."""
    total: int = 0
    running: int = 0
    waiting_approval: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    timed_out: int = 0
    average_duration_seconds: Optional[float] = None


class InstancePage(BaseModel):
    instances: List[WorkflowInstance]
    pagination: Pagination
    statistics: InstanceStatistics

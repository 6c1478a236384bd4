"""Interfaces of the external services the engine calls, with default implementations.

The embedding application supplies real task, notification, integration,
audit and directory services; the defaults here keep the engine usable on
its own and in tests.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests
from pydantic import BaseModel, Field

from ..models.core import HistoryEntry, IntegrationKind, Priority, WorkflowInstance
from .logging import get_logger, log_with_context

logger = get_logger(__name__)


class TaskSpec(BaseModel):
    """Everything the task service needs to create a task for a task node."""
    instance_id: str
    definition_id: str
    node_id: str
    title: str
    description: Optional[str] = None
    assigned_to: List[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    due_at: Optional[datetime] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class TaskService(ABC):
    @abstractmethod
    def create_task(self, spec: TaskSpec) -> str:
        """Create a task and return its id."""

    @abstractmethod
    def reassign_task(self, task_id: str, assigned_to: List[str]) -> None:
        """Hand an open task to different assignees."""


class InMemoryTaskService(TaskService):
    def __init__(self):
        self.tasks: Dict[str, TaskSpec] = {}
        self._lock = threading.Lock()

    def create_task(self, spec: TaskSpec) -> str:
        task_id = f"task-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self.tasks[task_id] = spec.model_copy(deep=True)
        logger.debug(f"Created task {task_id} for node {spec.node_id} of instance {spec.instance_id}")
        return task_id

    def reassign_task(self, task_id: str, assigned_to: List[str]) -> None:
        with self._lock:
            if task_id not in self.tasks:
                raise KeyError(task_id)
            self.tasks[task_id].assigned_to = list(assigned_to)


class NotificationService(ABC):
    @abstractmethod
    def send(self, notification_type: str, recipients: List[str], payload: Dict[str, Any]) -> None:
        """Deliver a notification; raising signals a failed delivery."""


class LoggingNotificationService(NotificationService):
    """Logs notifications and keeps the most recent ones in memory."""

    def __init__(self, keep: int = 1000):
        self.sent: List[Dict[str, Any]] = []
        self._keep = keep
        self._lock = threading.Lock()

    def send(self, notification_type: str, recipients: List[str], payload: Dict[str, Any]) -> None:
        logger.info(f"Notification '{notification_type}' to {len(recipients)} recipient(s)")
        with self._lock:
            self.sent.append({"type": notification_type, "recipients": list(recipients), "payload": dict(payload)})
            if len(self.sent) > self._keep:
                del self.sent[:len(self.sent) - self._keep]


class IntegrationResult(BaseModel):
    success: bool
    reason: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class IntegrationService(ABC):
    @abstractmethod
    def invoke(self, kind: IntegrationKind, config: Dict[str, Any], context: Dict[str, Any]) -> IntegrationResult:
        """Call an external system; failures are reported in the result."""


IntegrationHandler = Callable[[Dict[str, Any], Dict[str, Any]], IntegrationResult]


class HttpIntegrationService(IntegrationService):
    """Webhook and API integrations over HTTP; other kinds go to registered handlers.

    Integration config keys: ``url`` (required), ``method``, ``headers``,
    ``payload`` and ``timeout``.
    """

    def __init__(self, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self._session = session or requests.Session()
        self._handlers: Dict[IntegrationKind, IntegrationHandler] = {}

    def register(self, kind: IntegrationKind, handler: IntegrationHandler) -> None:
        self._handlers[kind] = handler

    def invoke(self, kind: IntegrationKind, config: Dict[str, Any], context: Dict[str, Any]) -> IntegrationResult:
        if kind in self._handlers:
            return self._handlers[kind](config, context)
        if kind in (IntegrationKind.WEBHOOK, IntegrationKind.API):
            return self._call_http(kind, config, context)
        return IntegrationResult(success=False, reason=f"No handler registered for integration type '{kind.value}'")

    def _call_http(self, kind: IntegrationKind, config: Dict[str, Any], context: Dict[str, Any]) -> IntegrationResult:
        url = config.get("url")
        if not url:
            return IntegrationResult(success=False, reason="Integration config is missing 'url'")

        method = str(config.get("method", "POST" if kind == IntegrationKind.WEBHOOK else "GET")).upper()
        body = {"workflow": context, "payload": config.get("payload", {})}

        try:
            response = self._session.request(
                method,
                url,
                json=body if method not in ("GET", "DELETE") else None,
                params=config.get("params"),
                headers=config.get("headers"),
                timeout=config.get("timeout", self.timeout),
            )
        except requests.RequestException as e:
            logger.warning(f"{kind.value} call to {url} failed: {e}")
            return IntegrationResult(success=False, reason=str(e))

        if not response.ok:
            return IntegrationResult(
                success=False,
                reason=f"{method} {url} returned HTTP {response.status_code}",
                data={"status_code": response.status_code},
            )

        data: Dict[str, Any] = {"status_code": response.status_code}
        try:
            data["body"] = response.json()
        except ValueError:
            data["body"] = response.text
        return IntegrationResult(success=True, data=data)


class AuditSink(ABC):
    @abstractmethod
    def record(self, instance: WorkflowInstance, entry: HistoryEntry) -> None:
        """Store one appended history entry outside the instance document."""


class LoggingAuditSink(AuditSink):
    """Writes each history entry as an INFO line with the entry fields attached for structured output."""

    def __init__(self, audit_logger: Optional[logging.Logger] = None):
        self.logger = audit_logger or get_logger("flowengine.audit")

    def record(self, instance: WorkflowInstance, entry: HistoryEntry) -> None:
        log_with_context(
            self.logger, logging.INFO,
            f"[audit] instance={instance.id} seq={entry.seq} action={entry.action.value} actor={entry.actor}",
            instance_id=instance.id,
            seq=entry.seq,
            node_id=entry.node_id,
            token=entry.token,
            action=entry.action.value,
            actor=entry.actor,
            status=entry.status.value
        )


class InMemoryAuditSink(AuditSink):
    def __init__(self):
        self.entries: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def record(self, instance: WorkflowInstance, entry: HistoryEntry) -> None:
        with self._lock:
            self.entries.append({"instance_id": instance.id, **entry.model_dump()})

    def for_instance(self, instance_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [entry for entry in self.entries if entry["instance_id"] == instance_id]


class Directory(ABC):
    @abstractmethod
    def resolve(self, references: List[str], instance: WorkflowInstance) -> List[str]:
        """Turn approver/recipient references into actor ids."""


class StaticDirectory(Directory):
    """Resolves ``initiator``, ``assignee`` and configured groups; other references are ids.

    Groups are written ``group:<name>``.
    """

    def __init__(self, groups: Optional[Dict[str, List[str]]] = None):
        self.groups = dict(groups or {})

    def resolve(self, references: List[str], instance: WorkflowInstance) -> List[str]:
        resolved: List[str] = []
        for reference in references:
            if reference == "initiator":
                members = [instance.initiated_by]
            elif reference == "assignee":
                members = list(instance.assigned_to)
            elif reference.startswith("group:"):
                members = self.groups.get(reference[len("group:"):], [])
            else:
                members = [reference]
            for member in members:
                if member not in resolved:
                    resolved.append(member)
        return resolved

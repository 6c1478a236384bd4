"""Shared helpers for building workflow definitions in tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from flowengine.core.collaborators import IntegrationResult, IntegrationService
from flowengine.models.core import IntegrationKind


class FixedClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedIntegrationService(IntegrationService):
    """Returns queued results (or raises queued exceptions) in order, then succeeds."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.script: List[Any] = []

    def invoke(self, kind: IntegrationKind, config: Dict[str, Any], context: Dict[str, Any]) -> IntegrationResult:
        self.calls.append({"kind": kind, "config": config, "context": context})
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return IntegrationResult(success=True, data={"ok": True})


def node(node_id: str, node_type: str, rules: Optional[List[Dict[str, Any]]] = None, **config) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "config": config, "rules": rules or []}


def edge(source: str, target: str, condition: Optional[str] = None) -> Dict[str, Any]:
    return {"id": f"{source}->{target}", "source": source, "target": target, "condition": condition}


def draft(nodes, edges, name: str = "Test workflow", **settings) -> Dict[str, Any]:
    return {
        "name": name,
        "description": "Workflow used in tests",
        "nodes": nodes,
        "edges": edges,
        "settings": settings,
        "permissions": {"can_start": ["*"], "can_view": ["*"]},
    }


TASK_WORKFLOW = draft(
    [node("start", "start"), node("review", "task", title="Review request"), node("done", "end")],
    [edge("start", "review"), edge("review", "done")],
    name="Task workflow",
)

APPROVAL_WORKFLOW = draft(
    [
        node("start", "start"),
        node("approve", "approval", approvers=["group:managers"], approvalType="any"),
        node("approved", "end"),
        node("rejected", "end"),
    ],
    [edge("start", "approve"), edge("approve", "approved", "approved"), edge("approve", "rejected", "rejected")],
    name="Approval workflow",
)

PARALLEL_WORKFLOW = draft(
    [
        node("start", "start"),
        node("split", "parallel", mergeNode="join"),
        node("left", "task", title="Left"),
        node("right", "task", title="Right"),
        node("join", "merge"),
        node("done", "end"),
    ],
    [
        edge("start", "split"),
        edge("split", "left"),
        edge("split", "right"),
        edge("left", "join"),
        edge("right", "join"),
        edge("join", "done"),
    ],
    name="Parallel workflow",
)

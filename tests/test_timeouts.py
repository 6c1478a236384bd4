"""Tests for the periodic sweep: instance timeouts, approval expiry and escalation."""

from datetime import timedelta

import pytest

from flowengine.core.permissions import Actor
from flowengine.models.core import ApprovalStatus, HistoryAction, InstanceStatus
from tests.workflow_fixtures import draft, edge, node


def gated_workflow(extra_edges=(), **approval_config):
    nodes = [
        node("start", "start"),
        node("approve", "approval", approvers=["mgr1"], dueInMinutes=30, **approval_config),
        node("approved", "end"),
        node("rejected", "end"),
        node("lapsed", "end"),
    ]
    edges = [edge("start", "approve"), edge("approve", "approved", "approved"),
             edge("approve", "rejected", "rejected")]
    edges += list(extra_edges)
    if not extra_edges:
        nodes.pop()
    return draft(nodes, edges, name="Gated")


class TestInstanceTimeout:
    def test_overdue_instance_times_out(self, engine, system, publish, requester, clock, notifications):
        definition = publish(dict(draft(
            [node("start", "start"), node("review", "task"), node("done", "end")],
            [edge("start", "review"), edge("review", "done")],
            timeoutMinutes=60,
        )))
        instance = engine.start_instance(requester, definition.id, "x")

        clock.advance(minutes=59)
        assert engine.expire_overdue()["timed_out"] == []

        clock.advance(minutes=2)
        summary = engine.expire_overdue()
        assert summary["timed_out"] == [instance.id]

        instance = engine.get_instance(requester, instance.id)
        assert instance.status == InstanceStatus.TIMED_OUT
        assert instance.open_tasks == {}
        last = instance.history[-1]
        assert (last.action, last.actor) == (HistoryAction.TIMED_OUT, "system")
        assert notifications.sent[-1]["type"] == "workflow_timed_out"

        statistics = system.repository.get_definition(definition.id).statistics
        assert statistics.timed_out_instances == 1
        assert statistics.active_instances == 0

        # terminal instances are skipped on the next sweep
        clock.advance(days=1)
        assert engine.expire_overdue()["timed_out"] == []


class TestApprovalExpiry:
    """Overdue approvals resolve as expired or escalate."""

    def test_expired_approval_follows_rejected_route(self, engine, publish, requester, clock):
        definition = publish(gated_workflow())
        instance = engine.start_instance(requester, definition.id, "x")
        approval_id = next(iter(instance.pending_approvals.values()))

        clock.advance(minutes=29)
        assert engine.expire_overdue()["expired"] == []

        clock.advance(minutes=2)
        assert engine.expire_overdue()["expired"] == [approval_id]

        instance = engine.get_instance(requester, instance.id)
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.history[-1].node_id == "rejected"
        expired = next(e for e in instance.history if e.action == HistoryAction.APPROVAL_EXPIRED)
        assert expired.details["error"]["exception_type"] == "ApprovalTimeout"
        assert engine.get_approval(approval_id).status == ApprovalStatus.EXPIRED

    def test_expired_label_takes_precedence(self, engine, publish, requester, clock):
        definition = publish(gated_workflow(extra_edges=[edge("approve", "lapsed", "expired")]))
        instance = engine.start_instance(requester, definition.id, "x")

        clock.advance(hours=1)
        engine.expire_overdue()
        assert engine.get_instance(requester, instance.id).history[-1].node_id == "lapsed"

    def test_escalation_adds_approvers(self, engine, system, publish, requester, clock, notifications):
        definition = publish(gated_workflow(onExpiry="escalate", escalateTo=["group:finance"]))
        instance = engine.start_instance(requester, definition.id, "x")
        approval_id = next(iter(instance.pending_approvals.values()))

        clock.advance(minutes=31)
        summary = engine.expire_overdue()
        assert summary["escalated"] == [approval_id]

        request = engine.get_approval(approval_id)
        assert request.approvers == ["mgr1", "fin1", "fin2", "fin3"]
        assert request.escalations == 1
        assert request.due_at == clock.now + timedelta(minutes=system.config.approval_escalation_minutes)
        assert notifications.sent[-1]["type"] == "approval_escalated"
        assert notifications.sent[-1]["recipients"] == request.approvers

        instance = engine.get_instance(requester, instance.id)
        assert instance.status == InstanceStatus.WAITING_APPROVAL
        assert instance.history[-1].action == HistoryAction.APPROVAL_ESCALATED

        # not due again until the new deadline
        assert engine.expire_overdue()["escalated"] == []
        instance = engine.submit_action(Actor(id="fin3"), instance.id, "approve", "approve")
        assert instance.history[-1].node_id == "approved"

    def test_escalation_without_targets_expires(self, engine, publish, requester, clock):
        definition = publish(gated_workflow(onExpiry="escalate"))
        instance = engine.start_instance(requester, definition.id, "x")

        clock.advance(minutes=31)
        summary = engine.expire_overdue()
        assert summary["escalated"] == []
        assert len(summary["expired"]) == 1
        assert engine.get_instance(requester, instance.id).status == InstanceStatus.COMPLETED

    @pytest.mark.parametrize("policy", ["reject", "escalate"])
    def test_definition_level_policy(self, engine, publish, requester, clock, policy):
        payload = gated_workflow(escalateTo=["mgr2"])
        payload["settings"] = {"approvalExpiryPolicy": policy}
        definition = publish(payload)
        engine.start_instance(requester, definition.id, "x")

        clock.advance(minutes=31)
        summary = engine.expire_overdue()
        bucket = "escalated" if policy == "escalate" else "expired"
        assert len(summary[bucket]) == 1

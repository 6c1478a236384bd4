"""Approval Coordinator: multi-approver decisions for approval nodes."""

import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from ..models.core import (
    ApprovalConfig, ApprovalRequest, ApprovalResponse, ApprovalStatus, ApprovalType,
    Decision, Node, WorkflowInstance
)
from .exceptions import InvalidActionForState, NodeExecutionError, PermissionDenied
from .logging import get_logger

logger = get_logger(__name__)


class ApprovalCoordinator:
    """Opens approval requests and resolves them exactly once.

    The coordinator only mutates the request it is given; persisting it is
    the engine's job, under the instance's optimistic version check, which is
    what keeps concurrent responses from resolving a request twice.
    """

    def open_request(
        self,
        instance: WorkflowInstance,
        node: Node,
        token: str,
        config: ApprovalConfig,
        approvers: List[str],
        now: datetime
    ) -> ApprovalRequest:
        if not approvers:
            raise NodeExecutionError(
                f"Approval node '{node.id}' has no approvers after resolution",
                node_id=node.id,
                instance_id=instance.id
            )

        due_at = now + timedelta(minutes=config.due_in_minutes) if config.due_in_minutes else None
        request = ApprovalRequest(
            id=str(uuid.uuid4()),
            instance_id=instance.id,
            node_id=node.id,
            token=token,
            title=config.title or f"Approval: {node.name}",
            description=config.description,
            approvers=approvers,
            approval_type=config.approval_type,
            min_approvals=config.min_approvals,
            reject_on_first=config.reject_on_first,
            requested_at=now,
            due_at=due_at,
        )
        logger.info(
            f"Opened {request.approval_type.value} approval {request.id} at node {node.id} "
            f"for {len(approvers)} approver(s)"
        )
        return request

    def record_response(
        self,
        request: ApprovalRequest,
        approver: str,
        decision: Decision,
        comment: Optional[str],
        now: datetime
    ) -> ApprovalStatus:
        """
        Record one approver's decision.

        Returns:
            ApprovalStatus.PENDING while undecided, otherwise the resolution

        Raises:
            PermissionDenied: If the approver is not eligible
            InvalidActionForState: If the request is resolved or the approver already responded
        """
        if not request.is_pending:
            raise InvalidActionForState(
                f"Approval {request.id} is already {request.status.value}",
                instance_id=request.instance_id,
                node_id=request.node_id,
                status=request.status.value
            )
        if not request.is_eligible(approver):
            raise PermissionDenied(
                f"'{approver}' is not an eligible approver for approval {request.id}",
                actor_id=approver,
                action=decision.value
            )
        if request.has_responded(approver):
            raise InvalidActionForState(
                f"'{approver}' has already responded to approval {request.id}",
                instance_id=request.instance_id,
                node_id=request.node_id
            )

        request.responses.append(
            ApprovalResponse(approver=approver, decision=decision, comment=comment, timestamp=now)
        )
        outcome = self.evaluate(request)
        if outcome != ApprovalStatus.PENDING:
            request.status = outcome
            request.resolved_at = now
            logger.info(f"Approval {request.id} resolved {outcome.value}")
        return outcome

    def evaluate(self, request: ApprovalRequest) -> ApprovalStatus:
        """Apply the approval type's resolution rule to the recorded responses."""
        eligible = len(request.approvers)
        approvals = request.count(Decision.APPROVE)
        rejections = request.count(Decision.REJECT)
        responded = approvals + rejections

        if request.approval_type == ApprovalType.ANY:
            threshold = min(request.min_approvals, eligible)
            if approvals >= threshold:
                return ApprovalStatus.APPROVED
            if rejections and request.reject_on_first:
                return ApprovalStatus.REJECTED
            if approvals + (eligible - responded) < threshold:
                return ApprovalStatus.REJECTED
            return ApprovalStatus.PENDING

        if request.approval_type == ApprovalType.ALL:
            if rejections:
                return ApprovalStatus.REJECTED
            if approvals >= eligible:
                return ApprovalStatus.APPROVED
            return ApprovalStatus.PENDING

        # majority: decide once more than half of the eligible approvers responded
        if responded * 2 <= eligible:
            return ApprovalStatus.PENDING
        if approvals > rejections:
            return ApprovalStatus.APPROVED
        if rejections > approvals:
            return ApprovalStatus.REJECTED
        return ApprovalStatus.REJECTED if responded >= eligible else ApprovalStatus.PENDING

    def reassign(self, request: ApprovalRequest, approvers: List[str]) -> List[str]:
        """Replace the approvers who have not responded yet; returns the new approver list."""
        self._require_pending(request)
        if not approvers:
            raise InvalidActionForState("Reassignment needs at least one approver", instance_id=request.instance_id)

        kept = [approver for approver in request.approvers if request.has_responded(approver)]
        request.approvers = kept + [approver for approver in approvers if approver not in kept]
        return request.approvers

    def escalate(self, request: ApprovalRequest, escalate_to: List[str], due_at: datetime) -> List[str]:
        """Widen the approver list after expiry and push the due date out."""
        self._require_pending(request)
        added = [approver for approver in escalate_to if approver not in request.approvers]
        request.approvers.extend(added)
        request.due_at = due_at
        request.escalations += 1
        logger.info(f"Escalated approval {request.id} to {added or 'existing approvers'}")
        return added

    def expire(self, request: ApprovalRequest, now: datetime) -> ApprovalStatus:
        self._require_pending(request)
        request.status = ApprovalStatus.EXPIRED
        request.resolved_at = now
        logger.info(f"Approval {request.id} expired")
        return request.status

    @staticmethod
    def _require_pending(request: ApprovalRequest) -> None:
        if not request.is_pending:
            raise InvalidActionForState(
                f"Approval {request.id} is already {request.status.value}",
                instance_id=request.instance_id,
                node_id=request.node_id,
                status=request.status.value
            )

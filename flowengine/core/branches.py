"""Branch/Join Coordinator: fan-out at parallel nodes and the join barrier at merges."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from ..models.core import BranchJoinRecord, JoinFailurePolicy, Node, WorkflowDefinition, WorkflowInstance
from .exceptions import NodeExecutionError
from .logging import get_logger

logger = get_logger(__name__)


class JoinOutcome(str, Enum):
    WAITING = "waiting"
    RELEASED = "released"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class BranchJoinCoordinator:
    """Creates join records and counts branch arrivals.

    A record releases exactly once, when every expected branch token has
    settled and none failed. Arrivals are idempotent per token. Records are
    persisted by the engine together with the instance, so each arrival is a
    compare-and-increment on the instance version.
    """

    def fan_out(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        node: Node,
        parent_token: str,
        now: datetime
    ) -> BranchJoinRecord:
        edges = definition.outgoing(node.id)
        if not edges:
            raise NodeExecutionError(
                f"Parallel node '{node.id}' has no outgoing edges",
                node_id=node.id,
                instance_id=instance.id
            )

        expected: Dict[str, str] = {}
        for index, edge in enumerate(edges, start=1):
            expected[f"{node.id}.{index}-{uuid.uuid4().hex[:8]}"] = edge.target

        record = BranchJoinRecord(
            id=str(uuid.uuid4()),
            instance_id=instance.id,
            parallel_node_id=node.id,
            parent_token=parent_token,
            merge_node_id=node.parsed_config().merge_node,
            expected=expected,
            failure_policy=instance.settings.join_failure_policy,
            created_at=now,
        )
        logger.info(f"Parallel node {node.id} fanned out into {len(expected)} branch(es), join {record.id}")
        return record

    def accepts(self, record: BranchJoinRecord, merge_node_id: str) -> bool:
        """Whether a merge node is the barrier for this record."""
        return record.merge_node_id is None or record.merge_node_id == merge_node_id

    def arrive(self, record: BranchJoinRecord, token: str, merge_node_id: str) -> JoinOutcome:
        self._require_expected(record, token)
        if token in record.arrived or token in record.failed:
            logger.debug(f"Duplicate arrival of branch {token} at join {record.id}")
            return JoinOutcome.DUPLICATE

        if record.merge_node_id is None:
            record.merge_node_id = merge_node_id
        record.arrived.append(token)
        return self._settle(record)

    def branch_failed(self, record: BranchJoinRecord, token: str) -> JoinOutcome:
        self._require_expected(record, token)
        if token in record.arrived or token in record.failed:
            return JoinOutcome.DUPLICATE

        record.failed.append(token)
        if record.failure_policy == JoinFailurePolicy.FAIL_FAST:
            return JoinOutcome.FAILED
        return self._settle(record)

    @staticmethod
    def find_record(records: Dict[str, BranchJoinRecord], token: str) -> Optional[BranchJoinRecord]:
        for record in records.values():
            if token in record.expected:
                return record
        return None

    def _settle(self, record: BranchJoinRecord) -> JoinOutcome:
        if not record.settled:
            logger.debug(
                f"Join {record.id}: {len(record.arrived)} arrived, {len(record.failed)} failed "
                f"of {len(record.expected)}"
            )
            return JoinOutcome.WAITING
        if record.failed:
            logger.info(f"Join {record.id} settled with {len(record.failed)} failed branch(es)")
            return JoinOutcome.FAILED
        logger.info(f"Join {record.id} released")
        return JoinOutcome.RELEASED

    @staticmethod
    def _require_expected(record: BranchJoinRecord, token: str) -> None:
        if token not in record.expected:
            raise NodeExecutionError(
                f"Branch token '{token}' does not belong to join '{record.id}'",
                instance_id=record.instance_id
            )

"""Node handlers: one strategy per node kind.

Each handler receives the engine, the step context, the node and the token
positioned on it, performs the node's side effects and returns a
:class:`Transition` telling the engine how the token moves. Handlers never
append history themselves; the engine records the transition.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from ..models.core import (
    BranchJoinRecord, HistoryAction, Node, NodeKind, OpenTask, RuleAction
)
from .branches import BranchJoinCoordinator, JoinOutcome
from .collaborators import TaskSpec
from .conditions import build_scope, evaluate, select_edge
from .error_recovery import RetryConfig, execute_with_retry
from .exceptions import (
    ConditionEvaluationError, IntegrationFailure, NoMatchingEdge, NodeExecutionError
)
from .logging import get_logger

if TYPE_CHECKING:
    from .execution_engine import ExecutionContext, ExecutionEngine

logger = get_logger(__name__)


class TransitionKind(str, Enum):
    ADVANCE = "advance"          # move the token to ``target``
    SUSPEND = "suspend"          # token stays on the node waiting for an action
    FORK = "fork"                # token is replaced by the branch tokens of ``record``
    WAIT = "wait"                # branch token arrived at a join that is still open
    RELEASE = "release"          # join released; parent token continues at ``target``
    JOIN_FAILED = "join_failed"  # last branch settled on a join with failures
    COMPLETE = "complete"        # instance completed
    DUPLICATE = "duplicate"      # repeated arrival, nothing to do


@dataclass
class Transition:
    kind: TransitionKind
    action: Optional[HistoryAction] = None
    target: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    record: Optional[BranchJoinRecord] = None


NodeHandler = Callable[['ExecutionEngine', 'ExecutionContext', Node, str], Transition]


def resolve_next(ctx: 'ExecutionContext', node: Node) -> str:
    """
    Target of a node's default exit.

    Declarative rules are tried in order first; otherwise the first
    unlabeled outgoing edge wins, falling back to the first edge.

    Raises:
        NoMatchingEdge: If the node has no outgoing edge
        NodeExecutionError: If a ``fail`` rule matches
    """
    instance = ctx.instance
    if node.rules:
        scope = build_scope(instance.variables, instance.context)
        for rule in node.rules:
            if not evaluate(rule.condition, scope):
                continue
            if rule.action == RuleAction.GOTO:
                logger.debug(f"Rule '{rule.condition}' on node {node.id} routes to {rule.target}")
                return rule.target
            raise NodeExecutionError(
                rule.message or f"Rule '{rule.condition}' failed node '{node.id}'",
                node_id=node.id,
                instance_id=instance.id
            )

    edges = ctx.definition.outgoing(node.id)
    if not edges:
        raise NoMatchingEdge(node.id)
    for edge in edges:
        if edge.route_label is None:
            return edge.target
    return edges[0].target


def handle_start(engine: 'ExecutionEngine', ctx: 'ExecutionContext', node: Node, token: str) -> Transition:
    # No history entry: the first node entered after start records START.
    return Transition(TransitionKind.ADVANCE, target=resolve_next(ctx, node))


def handle_task(engine: 'ExecutionEngine', ctx: 'ExecutionContext', node: Node, token: str) -> Transition:
    instance = ctx.instance
    config = node.parsed_config()
    references = config.assigned_to or list(instance.assigned_to)
    assignees = engine.directory.resolve(references, instance) if references else []
    due_at = ctx.now + timedelta(minutes=config.due_in_minutes) if config.due_in_minutes else None

    task_id = engine.task_service.create_task(TaskSpec(
        instance_id=instance.id,
        definition_id=instance.definition_id,
        node_id=node.id,
        title=config.title or f"Task: {node.name}",
        description=config.description or node.description,
        assigned_to=assignees,
        priority=config.priority or instance.priority,
        due_at=due_at,
        context={"title": instance.title, "variables": dict(instance.variables)},
    ))
    instance.open_tasks[token] = OpenTask(task_id=task_id, node_id=node.id, assigned_to=assignees)
    logger.info(f"Task {task_id} created for node {node.id} of instance {instance.id}")
    return Transition(
        TransitionKind.SUSPEND,
        action=HistoryAction.TASK_CREATED,
        details={"task_id": task_id, "assigned_to": assignees},
    )


def handle_approval(engine: 'ExecutionEngine', ctx: 'ExecutionContext', node: Node, token: str) -> Transition:
    instance = ctx.instance
    config = node.parsed_config()
    approvers = engine.directory.resolve(config.approvers, instance)
    request = engine.approvals.open_request(instance, node, token, config, approvers, ctx.now)

    ctx.put_approval(request)
    instance.pending_approvals[token] = request.id
    ctx.notify("approval_requested", approvers, {
        "instance_id": instance.id,
        "approval_id": request.id,
        "node_id": node.id,
        "title": request.title,
        "due_at": request.due_at.isoformat() if request.due_at else None,
    })
    return Transition(
        TransitionKind.SUSPEND,
        action=HistoryAction.APPROVAL_REQUESTED,
        details={
            "approval_id": request.id,
            "approvers": approvers,
            "approval_type": request.approval_type.value,
        },
    )


def handle_condition(engine: 'ExecutionEngine', ctx: 'ExecutionContext', node: Node, token: str) -> Transition:
    instance = ctx.instance
    expression = node.parsed_config().condition
    try:
        result = evaluate(expression, build_scope(instance.variables, instance.context))
        edge = select_edge(ctx.definition.outgoing(node.id), result, node.id)
    except (ConditionEvaluationError, NoMatchingEdge) as e:
        e.add_details(expression=expression, variables=dict(instance.variables))
        raise

    return Transition(
        TransitionKind.ADVANCE,
        action=HistoryAction.CONDITION_EVALUATED,
        target=edge.target,
        details={"expression": expression, "result": result, "edge_id": edge.id},
    )


def handle_parallel(engine: 'ExecutionEngine', ctx: 'ExecutionContext', node: Node, token: str) -> Transition:
    instance = ctx.instance
    if not instance.settings.allow_parallel:
        raise NodeExecutionError(
            f"Parallel node '{node.id}' is not allowed by this instance's settings",
            node_id=node.id,
            instance_id=instance.id
        )
    record = engine.branches.fan_out(instance, ctx.definition, node, token, ctx.now)
    ctx.put_join(record)
    return Transition(
        TransitionKind.FORK,
        action=HistoryAction.PARALLEL_STARTED,
        details={"join_id": record.id, "branches": dict(record.expected)},
        record=record,
    )


def handle_merge(engine: 'ExecutionEngine', ctx: 'ExecutionContext', node: Node, token: str) -> Transition:
    record = BranchJoinCoordinator.find_record(ctx.joins, token)
    if record is None or not engine.branches.accepts(record, node.id):
        return Transition(TransitionKind.ADVANCE, action=HistoryAction.MERGE_PASSED, target=resolve_next(ctx, node))

    outcome = engine.branches.arrive(record, token, node.id)
    details = {"join_id": record.id, "arrived": len(record.arrived), "expected": len(record.expected)}

    if outcome == JoinOutcome.DUPLICATE:
        return Transition(TransitionKind.DUPLICATE, record=record)

    ctx.put_join(record)
    if outcome == JoinOutcome.WAITING:
        return Transition(TransitionKind.WAIT, action=HistoryAction.BRANCH_ARRIVED, details=details, record=record)
    if outcome == JoinOutcome.FAILED:
        return Transition(TransitionKind.JOIN_FAILED, action=HistoryAction.BRANCH_ARRIVED, details=details,
                          record=record)
    return Transition(
        TransitionKind.RELEASE,
        action=HistoryAction.JOIN_RELEASED,
        target=resolve_next(ctx, node),
        details=details,
        record=record,
    )


def handle_notification(engine: 'ExecutionEngine', ctx: 'ExecutionContext', node: Node, token: str) -> Transition:
    instance = ctx.instance
    sent = 0
    failed = 0
    for spec in node.parsed_config().notifications:
        recipients = engine.directory.resolve(spec.recipients, instance)
        payload = {
            "instance_id": instance.id,
            "title": instance.title,
            "node_id": node.id,
            "message": spec.message,
            **spec.payload,
        }
        try:
            engine.notification_service.send(spec.type, recipients, payload)
            sent += 1
        except Exception as e:
            if spec.required:
                raise NodeExecutionError(
                    f"Required notification '{spec.type}' failed: {e}",
                    node_id=node.id,
                    instance_id=instance.id
                )
            failed += 1
            logger.warning(f"Notification '{spec.type}' from node {node.id} failed: {e}")

    return Transition(
        TransitionKind.ADVANCE,
        action=HistoryAction.NOTIFICATION_SENT,
        target=resolve_next(ctx, node),
        details={"sent": sent, "failed": failed},
    )


def handle_integration(engine: 'ExecutionEngine', ctx: 'ExecutionContext', node: Node, token: str) -> Transition:
    instance = ctx.instance
    settings = instance.settings
    retry_config = RetryConfig(
        max_attempts=settings.max_retries + 1 if settings.retry_on_failure else 1,
        base_delay=engine.config.integration_retry_base_delay,
        max_delay=engine.config.integration_retry_max_delay,
        retryable_exceptions=[IntegrationFailure],
        sleep=engine.sleep
    )
    context = {
        "instance_id": instance.id,
        "definition_id": instance.definition_id,
        "node_id": node.id,
        "title": instance.title,
        "context": dict(instance.context),
        "variables": dict(instance.variables),
    }

    results = []
    for spec in node.parsed_config().integrations:
        name = spec.name or spec.type.value

        def invoke(spec=spec, name=name):
            try:
                result = engine.integration_service.invoke(spec.type, spec.config, context)
            except Exception as e:
                raise IntegrationFailure(f"Integration '{name}' raised: {e}", kind=spec.type.value, node_id=node.id) from e
            if not result.success:
                raise IntegrationFailure(
                    f"Integration '{name}' failed: {result.reason or 'no reason given'}",
                    kind=spec.type.value,
                    node_id=node.id
                )
            return result

        result = execute_with_retry(invoke, retry_config, operation=f"integration:{node.id}:{name}")
        results.append({"type": spec.type.value, "name": name, "data": result.data})

    return Transition(
        TransitionKind.ADVANCE,
        action=HistoryAction.INTEGRATION_EXECUTED,
        target=resolve_next(ctx, node),
        details={"integrations": results},
    )


def handle_end(engine: 'ExecutionEngine', ctx: 'ExecutionContext', node: Node, token: str) -> Transition:
    return Transition(TransitionKind.COMPLETE, action=HistoryAction.WORKFLOW_COMPLETED)


NODE_HANDLERS: Dict[NodeKind, NodeHandler] = {
    NodeKind.START: handle_start,
    NodeKind.TASK: handle_task,
    NodeKind.APPROVAL: handle_approval,
    NodeKind.CONDITION: handle_condition,
    NodeKind.PARALLEL: handle_parallel,
    NodeKind.MERGE: handle_merge,
    NodeKind.NOTIFICATION: handle_notification,
    NodeKind.INTEGRATION: handle_integration,
    NodeKind.END: handle_end,
}

_missing = set(NodeKind) - set(NODE_HANDLERS)
if _missing:
    raise RuntimeError(f"No handler registered for node kinds: {sorted(kind.value for kind in _missing)}")

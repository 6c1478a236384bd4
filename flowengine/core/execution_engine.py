"""Execution Engine: drives workflow instances through their node handlers."""

import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from ..config import EngineConfig
from ..models.core import (
    ROOT_TOKEN, ActionType, ApprovalRequest, ApprovalStatus, BranchJoinRecord, Decision,
    DefinitionStatus, ExpiryPolicy, HistoryAction, HistoryEntry, InstanceStatus, JoinFailurePolicy, Node, NodeKind,
    Priority, Settings, WorkflowDefinition, WorkflowInstance, utc_now
)
from ..models.queries import InstanceFilters, InstancePage, InstanceSort, PageRequest
from ..storage.repository import ChangeSet, WorkflowRepository
from .approvals import ApprovalCoordinator
from .branches import BranchJoinCoordinator, JoinOutcome
from .collaborators import Directory, IntegrationService, NotificationService, TaskService
from .error_recovery import RetryConfig, execute_with_retry
from .exceptions import (
    ApprovalTimeout, ConcurrentModification, DefinitionInvalid, InstanceNotFound,
    InvalidActionForState, JoinFailed, NoMatchingEdge, NodeExecutionError, NodeNotFound,
    WorkflowEngineError, WorkflowNotActive, WorkflowNotFound
)
from .handlers import NODE_HANDLERS, Transition, TransitionKind, resolve_next
from .logging import get_logger, set_logging_context, clear_logging_context
from .permissions import SYSTEM_ACTOR, AccessPolicy, Actor, Permission
from .queries import InstanceQueryService
from .scheduler import BranchScheduler, InlineBranchScheduler
from .statistics import ExecutionRecorder

logger = get_logger(__name__)

APPROVED_LABELS = frozenset({"approved", "approve", "true", "yes"})
REJECTED_LABELS = frozenset({"rejected", "reject", "false", "no"})
EXPIRED_LABELS = frozenset({"expired", "timeout"})


class ExecutionContext:
    """Working copy of one instance for a single read-modify-write step."""

    def __init__(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        approvals: Dict[str, ApprovalRequest],
        joins: Dict[str, BranchJoinRecord],
        actor_id: str,
        now: datetime,
        loaded_version: int,
        new_instance: bool = False
    ):
        self.instance = instance
        self.definition = definition
        self.approvals = approvals
        self.joins = joins
        self.actor_id = actor_id
        self.now = now
        self.loaded_version = loaded_version
        self.new_instance = new_instance
        self.first_entry_pending = new_instance

        self.changed_approvals: Set[str] = set()
        self.deleted_approvals: Set[str] = set()
        self.changed_joins: Set[str] = set()
        self.deleted_joins: Set[str] = set()
        self.entries: List[HistoryEntry] = []
        self.notifications: List[Tuple[str, List[str], Dict[str, Any]]] = []
        self.scheduled: List[str] = []
        self.finished = False

    def put_approval(self, request: ApprovalRequest) -> None:
        self.approvals[request.id] = request
        self.changed_approvals.add(request.id)
        self.deleted_approvals.discard(request.id)

    def drop_approval(self, approval_id: str) -> None:
        self.approvals.pop(approval_id, None)
        self.changed_approvals.discard(approval_id)
        self.deleted_approvals.add(approval_id)

    def put_join(self, record: BranchJoinRecord) -> None:
        self.joins[record.id] = record
        self.changed_joins.add(record.id)
        self.deleted_joins.discard(record.id)

    def drop_join(self, join_id: str) -> None:
        self.joins.pop(join_id, None)
        self.changed_joins.discard(join_id)
        self.deleted_joins.add(join_id)

    def notify(self, notification_type: str, recipients: List[str], payload: Dict[str, Any]) -> None:
        """Queue a notification to be sent once the step is committed."""
        if recipients:
            self.notifications.append((notification_type, list(recipients), payload))

    def change_set(self) -> ChangeSet:
        return ChangeSet(
            instance=self.instance,
            approvals=[self.approvals[a_id] for a_id in sorted(self.changed_approvals)],
            deleted_approvals=sorted(self.deleted_approvals),
            joins=[self.joins[j_id] for j_id in sorted(self.changed_joins)],
            deleted_joins=sorted(self.deleted_joins),
        )


class ExecutionEngine:
    """Engine for executing workflow instances with approvals, parallel branches and joins.

    Every public operation is a read-modify-write of one instance committed
    with the version it read. Side effects that must not be repeated
    (audit entries, statistics, lifecycle notifications, branch scheduling)
    run only after the commit succeeded.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        task_service: TaskService,
        notification_service: NotificationService,
        integration_service: IntegrationService,
        directory: Directory,
        recorder: ExecutionRecorder,
        policy: Optional[AccessPolicy] = None,
        scheduler: Optional[BranchScheduler] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """Initialize the execution engine.

        Args:
            repository: Storage for definitions, instances and coordination records
            task_service: Creates tasks for task nodes
            notification_service: Delivers notifications
            integration_service: Calls external systems for integration nodes
            directory: Resolves approver, assignee and recipient references
            recorder: Audit and statistics bookkeeping after each commit
            policy: Capability checks, defaults to :class:`AccessPolicy`
            scheduler: Dispatcher for parallel branches, defaults to inline execution
            config: Engine settings, defaults to ``EngineConfig()``
            clock: Source of the current UTC time
            sleep: Used between retries
        """
        self.repository = repository
        self.task_service = task_service
        self.notification_service = notification_service
        self.integration_service = integration_service
        self.directory = directory
        self.recorder = recorder
        self.policy = policy or AccessPolicy()
        self.scheduler = scheduler or InlineBranchScheduler()
        self.config = config or EngineConfig()
        self.clock = clock or utc_now
        self.sleep = sleep or time.sleep

        self.approvals = ApprovalCoordinator()
        self.branches = BranchJoinCoordinator()
        self.queries = InstanceQueryService(repository, self.policy)

        self._definition_cache: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._instance_locks: Dict[str, threading.RLock] = {}
        self._lock_manager = threading.RLock()

        logger.info(f"ExecutionEngine initialized with scheduler={type(self.scheduler).__name__}")

    # Public operations

    def start_instance(
        self,
        actor: Actor,
        definition_id: str,
        title: str,
        context: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
        assigned_to: Optional[List[str]] = None,
        priority: Priority = Priority.MEDIUM,
        due_date: Optional[datetime] = None,
        description: Optional[str] = None,
        settings: Optional[Union[Settings, Dict[str, Any]]] = None
    ) -> WorkflowInstance:
        """
        Start an instance of the latest published version of a definition.

        The root token is driven inline until it first suspends, forks or
        finishes; the new instance is then inserted with version 1.

        Raises:
            WorkflowNotFound: If the definition does not exist
            WorkflowNotActive: If no version is published
            PermissionDenied: If the actor may not start it
        """
        definition = self._resolve_published(definition_id)
        self.policy.require(actor, Permission.START_INSTANCE, definition)

        start = definition.start_node()
        if start is None:
            raise DefinitionInvalid(["Workflow must have exactly one start node"], definition_name=definition.name)

        now = self.clock()
        permissions = definition.permissions.model_copy(deep=True)
        if definition.created_by not in permissions.can_manage:
            permissions.can_manage.append(definition.created_by)

        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            definition_id=definition.id,
            definition_version=definition.version,
            definition_name=definition.name,
            title=(title or "").strip() or definition.name,
            description=description,
            context=dict(context or {}),
            variables=dict(variables or {}),
            priority=priority,
            due_date=due_date,
            active={ROOT_TOKEN: start.id},
            initiated_by=actor.id,
            assigned_to=list(assigned_to or []),
            settings=self._effective_settings(definition, settings),
            permissions=permissions,
            started_at=now,
            last_activity_at=now,
            version=1,
        )
        ctx = ExecutionContext(instance, definition, {}, {}, actor.id, now, loaded_version=0, new_instance=True)
        if instance.settings.notifications.on_start:
            ctx.notify("workflow_started", self._stakeholders(instance), self._lifecycle_payload(instance))

        set_logging_context(instance_id=instance.id, definition_id=definition.id, operation="start_instance")
        try:
            with self._get_instance_lock(instance.id):
                self._drive(ctx, ROOT_TOKEN)
                self.repository.insert_instance(ctx.change_set())
            logger.info(
                f"Started instance {instance.id} of {definition.id} v{definition.version}: "
                f"status={instance.status.value} active={instance.active_nodes}"
            )
        finally:
            clear_logging_context()

        self._after_commit(ctx)
        return instance

    def submit_action(
        self,
        actor: Actor,
        instance_id: str,
        node_id: Optional[str],
        action: Union[ActionType, str],
        comment: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        assign_to: Optional[Union[str, List[str]]] = None,
        expected_version: Optional[int] = None
    ) -> WorkflowInstance:
        """
        Apply an external action to an instance.

        Args:
            actor: The caller
            instance_id: Target instance
            node_id: Node the action refers to; optional for cancel and timeout
            action: approve, reject, complete, skip, reassign, cancel or timeout
            comment: Free-text comment stored in history
            variables: Merged into the instance variables before acting
            assign_to: New assignees for reassign
            expected_version: Version the caller read; a mismatch is a conflict

        Returns:
            The updated instance as committed by this action

        Raises:
            InstanceNotFound, NodeNotFound, PermissionDenied,
            InvalidActionForState, ConcurrentModification
        """
        try:
            action = ActionType(action)
        except ValueError:
            raise InvalidActionForState(f"Unknown action '{action}'", instance_id=instance_id, node_id=node_id)

        set_logging_context(instance_id=instance_id, operation=f"submit_action:{action.value}")
        try:
            with self._get_instance_lock(instance_id):
                ctx = self._load(instance_id, actor.id)
                instance = ctx.instance

                if expected_version is not None and expected_version != ctx.loaded_version:
                    raise ConcurrentModification(
                        instance_id, expected_version=expected_version, actual_version=ctx.loaded_version
                    )
                if instance.is_terminal:
                    raise InvalidActionForState(
                        f"Instance {instance_id} is {instance.status.value}; no further actions are accepted",
                        instance_id=instance_id,
                        node_id=node_id,
                        status=instance.status.value
                    )

                if action in (ActionType.CANCEL, ActionType.TIMEOUT):
                    self._terminate(ctx, actor, node_id, action, comment)
                else:
                    node = self._require_node(ctx, node_id)
                    if not instance.tokens_at(node.id):
                        raise InvalidActionForState(
                            f"Instance {instance_id} is not waiting at node '{node.id}'",
                            instance_id=instance_id,
                            node_id=node.id,
                            status=instance.status.value
                        )
                    if action in (ActionType.APPROVE, ActionType.REJECT):
                        self._respond(ctx, actor, node, action, comment, variables)
                    elif action in (ActionType.COMPLETE, ActionType.SKIP):
                        self._complete_task(ctx, actor, node, action, comment, variables)
                    else:
                        self._reassign(ctx, actor, node, comment, variables, assign_to)

                self._commit(ctx)
            logger.info(
                f"Action {action.value} by {actor.id} on instance {instance_id}: "
                f"status={ctx.instance.status.value} version={ctx.instance.version}"
            )
        finally:
            clear_logging_context()

        self._after_commit(ctx)
        return ctx.instance

    def advance(self, instance_id: str) -> WorkflowInstance:
        """
        Re-drive every pending token of an instance and return its stored state.

        With a thread pool scheduler the returned instance may still have
        branches in flight; the inline scheduler has finished them all.
        """
        instance = self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        if self._dispatch_pending(instance) == 0:
            return instance
        return self.repository.get_instance(instance_id)

    def resume_pending(self) -> int:
        """Re-dispatch pending tokens of every open instance, e.g. after a restart."""
        scheduled = 0
        for instance in self.repository.list_open_instances():
            if instance.pending_tokens:
                scheduled += self._dispatch_pending(instance)
        if scheduled:
            logger.info(f"Resumed {scheduled} pending branch(es)")
        return scheduled

    def _dispatch_pending(self, instance: WorkflowInstance) -> int:
        if instance.is_terminal:
            return 0
        tokens = list(instance.pending_tokens)
        for token in tokens:
            self.scheduler.schedule(self._run_branch, instance.id, token)
        return len(tokens)

    def advance_branch(self, instance_id: str, token: str) -> bool:
        """
        Drive one pending branch token, retrying when another step won the version race.

        Returns:
            False if the token was no longer pending (duplicate dispatch)
        """
        retry_config = RetryConfig(
            max_attempts=self.config.commit_retry_attempts,
            base_delay=self.config.commit_retry_base_delay,
            max_delay=1.0,
            retryable_exceptions=[ConcurrentModification],
            sleep=self.sleep
        )
        return execute_with_retry(self._advance_branch_once, retry_config, instance_id, token,
                                  operation="advance_branch")

    def expire_overdue(self, now: Optional[datetime] = None) -> Dict[str, List[Any]]:
        """
        Periodic sweep for instance timeouts and overdue approvals.

        Returns:
            Ids grouped as ``timed_out`` (instances), ``escalated`` and
            ``expired`` (approvals), plus per-instance ``errors``
        """
        now = now or self.clock()
        summary: Dict[str, List[Any]] = {"timed_out": [], "escalated": [], "expired": [], "errors": []}

        for instance in self.repository.list_open_instances():
            try:
                deadline = instance.started_at + timedelta(minutes=instance.settings.timeout_minutes)
                if now >= deadline:
                    self.submit_action(SYSTEM_ACTOR, instance.id, None, ActionType.TIMEOUT,
                                       comment=f"Timed out after {instance.settings.timeout_minutes} minutes")
                    summary["timed_out"].append(instance.id)
                    continue

                for approval in self.repository.list_approvals(instance.id):
                    if approval.is_pending and approval.due_at is not None and approval.due_at <= now:
                        outcome = self._expire_approval(instance.id, approval.id, now)
                        if outcome:
                            summary[outcome].append(approval.id)
            except WorkflowEngineError as e:
                logger.error(f"Timeout sweep failed for instance {instance.id}: {e.message}")
                summary["errors"].append({"instance_id": instance.id, "error": e.to_dict()})

        if summary["timed_out"] or summary["escalated"] or summary["expired"]:
            logger.info(
                f"Timeout sweep: {len(summary['timed_out'])} timed out, "
                f"{len(summary['escalated'])} escalated, {len(summary['expired'])} expired"
            )
        return summary

    def get_instance(self, actor: Actor, instance_id: str) -> WorkflowInstance:
        instance = self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        self.policy.require(actor, Permission.VIEW_INSTANCE, instance)
        return instance

    def list_instances(
        self,
        actor: Actor,
        filters: Optional[InstanceFilters] = None,
        sort: Optional[InstanceSort] = None,
        page: Optional[PageRequest] = None
    ) -> InstancePage:
        return self.queries.list_instances(actor, filters, sort, page)

    def get_approval(self, approval_id: str) -> Optional[ApprovalRequest]:
        return self.repository.get_approval(approval_id)

    def shutdown(self) -> None:
        """Stop the branch scheduler, waiting for running branches."""
        logger.info("Shutting down ExecutionEngine")
        self.scheduler.shutdown(wait=True)

    # Driving tokens

    def _drive(self, ctx: ExecutionContext, token: str) -> None:
        """Run handlers for ``token`` until it suspends, forks, waits, fails or the instance ends."""
        instance = ctx.instance
        steps = 0
        while token in instance.active and not instance.is_terminal:
            node_id = instance.active[token]
            steps += 1
            if steps > self.config.max_steps_per_advance:
                self._fail_token(ctx, token, NodeExecutionError(
                    f"Token '{token}' exceeded {self.config.max_steps_per_advance} automatic steps",
                    node_id=node_id,
                    instance_id=instance.id
                ), node_id)
                return

            node = ctx.definition.node(node_id)
            if node is None:
                self._fail_token(ctx, token, NodeNotFound(node_id, definition_id=instance.definition_id), node_id)
                return

            try:
                transition = NODE_HANDLERS[node.type](self, ctx, node, token)
            except WorkflowEngineError as e:
                e.add_context(instance_id=instance.id, node_id=node.id)
                logger.warning(f"Node {node.id} ({node.type.value}) failed on token {token}: {e.message}")
                self._fail_token(ctx, token, e, node.id)
                return
            except Exception as e:
                logger.error(f"Unexpected error in node {node.id} ({node.type.value}): {str(e)}", exc_info=True)
                self._fail_token(ctx, token, NodeExecutionError(
                    f"Node '{node.id}' failed: {str(e)}",
                    node_id=node.id,
                    instance_id=instance.id
                ), node.id)
                return

            next_token = self._apply(ctx, node, token, transition)
            if next_token is None:
                return
            token = next_token

    def _apply(self, ctx: ExecutionContext, node: Node, token: str, transition: Transition) -> Optional[str]:
        """Record a handler's transition; returns the token to keep driving, if any."""
        instance = ctx.instance
        kind = transition.kind

        if kind == TransitionKind.ADVANCE:
            if transition.action is None:
                instance.active[token] = transition.target
            else:
                self._record(ctx, node.id, transition.action, token, transition.details,
                             activate={token: transition.target})
            return token

        if kind == TransitionKind.SUSPEND:
            self._record(ctx, node.id, transition.action, token, transition.details, activate={token: node.id})
            return None

        if kind == TransitionKind.FORK:
            record = transition.record
            self._record(ctx, node.id, transition.action, token, transition.details,
                         activate=dict(record.expected), deactivate=[token])
            instance.pending_tokens.extend(record.expected)
            ctx.scheduled.extend(record.expected)
            return None

        if kind == TransitionKind.WAIT:
            self._record(ctx, node.id, transition.action, token, transition.details, deactivate=[token])
            return None

        if kind == TransitionKind.RELEASE:
            record = transition.record
            self._record(ctx, node.id, transition.action, token, transition.details,
                         activate={record.parent_token: transition.target}, deactivate=[token])
            ctx.drop_join(record.id)
            return record.parent_token

        if kind == TransitionKind.JOIN_FAILED:
            record = transition.record
            self._record(ctx, node.id, transition.action, token, transition.details, deactivate=[token])
            ctx.drop_join(record.id)
            self._fail_token(ctx, record.parent_token, JoinFailed(record.id, list(record.failed), node_id=node.id),
                             node.id)
            return None

        if kind == TransitionKind.COMPLETE:
            self._record(ctx, node.id, transition.action, token, transition.details,
                         status=InstanceStatus.COMPLETED)
            self._discard_in_flight(ctx)
            ctx.finished = True
            if instance.settings.notifications.on_complete:
                ctx.notify("workflow_completed", self._stakeholders(instance), self._lifecycle_payload(instance))
            return None

        logger.debug(f"Ignoring duplicate arrival of token {token} at node {node.id}")
        return None

    def _fail_token(self, ctx: ExecutionContext, token: str, error: WorkflowEngineError, node_id: Optional[str]) -> None:
        """Fail a token: the whole instance, or only the branch under a wait_all join."""
        record = BranchJoinCoordinator.find_record(ctx.joins, token)
        if record is None or record.failure_policy == JoinFailurePolicy.FAIL_FAST:
            self._fail_instance(ctx, token, error, node_id)
            return

        outcome = self.branches.branch_failed(record, token)
        if outcome == JoinOutcome.DUPLICATE:
            return
        ctx.put_join(record)
        self._drop_token_waits(ctx, token)
        self._record(ctx, node_id, HistoryAction.BRANCH_FAILED, token,
                     {"join_id": record.id, "error": error.to_dict()}, deactivate=[token])
        if outcome == JoinOutcome.FAILED:
            ctx.drop_join(record.id)
            self._fail_token(ctx, record.parent_token,
                             JoinFailed(record.id, list(record.failed), node_id=record.merge_node_id),
                             record.merge_node_id or record.parallel_node_id)

    def _fail_instance(self, ctx: ExecutionContext, token: str, error: WorkflowEngineError,
                       node_id: Optional[str]) -> None:
        instance = ctx.instance
        instance.error = error.to_dict()
        self._record(ctx, node_id, HistoryAction.NODE_FAILED, token, {"error": instance.error},
                     status=InstanceStatus.FAILED)
        self._discard_in_flight(ctx)
        ctx.finished = True
        logger.error(f"Instance {instance.id} failed at node {node_id}: {error.message}")
        if instance.settings.notifications.on_failure:
            payload = self._lifecycle_payload(instance)
            payload["error"] = error.message
            ctx.notify("workflow_failed", self._stakeholders(instance), payload)

    # Actions

    def _respond(self, ctx: ExecutionContext, actor: Actor, node: Node, action: ActionType,
                 comment: Optional[str], variables: Optional[Dict[str, Any]]) -> None:
        instance = ctx.instance
        if node.type != NodeKind.APPROVAL:
            raise InvalidActionForState(
                f"Node '{node.id}' is a {node.type.value} node and does not accept {action.value}",
                instance_id=instance.id,
                node_id=node.id
            )

        token, request = self._pending_request(ctx, node, actor.id)
        self.policy.require(actor, Permission.RESPOND_TO_APPROVAL, request)
        self._merge_variables(ctx, variables)

        decision = Decision.APPROVE if action == ActionType.APPROVE else Decision.REJECT
        outcome = self.approvals.record_response(request, actor.id, decision, comment, ctx.now)
        ctx.put_approval(request)
        self._record(ctx, node.id, HistoryAction(action.value.upper()), token, {
            "approval_id": request.id,
            "comment": comment,
            "outcome": outcome.value,
        }, activate={token: node.id})

        if outcome != ApprovalStatus.PENDING:
            self._route_resolved_approval(ctx, node, token, request, HistoryAction.APPROVAL_RESOLVED)

    def _complete_task(self, ctx: ExecutionContext, actor: Actor, node: Node, action: ActionType,
                       comment: Optional[str], variables: Optional[Dict[str, Any]]) -> None:
        instance = ctx.instance
        if node.type != NodeKind.TASK:
            raise InvalidActionForState(
                f"Node '{node.id}' is a {node.type.value} node and does not accept {action.value}",
                instance_id=instance.id,
                node_id=node.id
            )
        token = next((t for t in instance.tokens_at(node.id) if t in instance.open_tasks), None)
        if token is None:
            raise InvalidActionForState(f"No open task at node '{node.id}'", instance_id=instance.id, node_id=node.id)

        self.policy.require(actor, Permission.ACT_ON_INSTANCE, instance)
        self._merge_variables(ctx, variables)
        task = instance.open_tasks.pop(token)

        history_action = HistoryAction.COMPLETE if action == ActionType.COMPLETE else HistoryAction.SKIP
        details = {"task_id": task.task_id, "comment": comment}
        try:
            target = resolve_next(ctx, node)
        except WorkflowEngineError as e:
            self._record(ctx, node.id, history_action, token, details, activate={token: node.id})
            self._fail_token(ctx, token, e, node.id)
            return

        self._record(ctx, node.id, history_action, token, details, activate={token: target})
        self._drive(ctx, token)

    def _reassign(self, ctx: ExecutionContext, actor: Actor, node: Node, comment: Optional[str],
                  variables: Optional[Dict[str, Any]], assign_to: Optional[Union[str, List[str]]]) -> None:
        instance = ctx.instance
        if not assign_to:
            raise InvalidActionForState("Reassign requires at least one assignee", instance_id=instance.id,
                                        node_id=node.id)
        references = [assign_to] if isinstance(assign_to, str) else list(assign_to)

        self.policy.require(actor, Permission.ACT_ON_INSTANCE, instance)
        assignees = self.directory.resolve(references, instance)
        details: Dict[str, Any] = {"assigned_to": assignees, "comment": comment}

        token = None
        if node.type == NodeKind.TASK:
            token = next((t for t in instance.tokens_at(node.id) if t in instance.open_tasks), None)
            if token is not None:
                task = instance.open_tasks[token]
                self.task_service.reassign_task(task.task_id, assignees)
                task.assigned_to = assignees
                details["task_id"] = task.task_id
        elif node.type == NodeKind.APPROVAL:
            token = next((t for t in instance.tokens_at(node.id) if t in instance.pending_approvals), None)
            if token is not None:
                request = ctx.approvals[instance.pending_approvals[token]]
                details["approvers"] = self.approvals.reassign(request, assignees)
                details["approval_id"] = request.id
                ctx.put_approval(request)
                ctx.notify("approval_requested", assignees, {
                    "instance_id": instance.id,
                    "approval_id": request.id,
                    "node_id": node.id,
                    "title": request.title,
                })
        if token is None:
            raise InvalidActionForState(
                f"Node '{node.id}' has no open task or approval to reassign",
                instance_id=instance.id,
                node_id=node.id
            )

        self._merge_variables(ctx, variables)
        instance.assigned_to = assignees
        self._record(ctx, node.id, HistoryAction.REASSIGN, token, details, activate={token: node.id})

    def _terminate(self, ctx: ExecutionContext, actor: Actor, node_id: Optional[str], action: ActionType,
                   comment: Optional[str]) -> None:
        instance = ctx.instance
        if node_id is not None:
            self._require_node(ctx, node_id)

        if action == ActionType.CANCEL:
            self.policy.require(actor, Permission.CANCEL_INSTANCE, instance)
            history_action, status = HistoryAction.CANCELLED, InstanceStatus.CANCELLED
        else:
            self.policy.require(actor, Permission.TIMEOUT_INSTANCE, instance)
            history_action, status = HistoryAction.TIMED_OUT, InstanceStatus.TIMED_OUT

        discarded = {
            "approvals": sorted(instance.pending_approvals.values()),
            "joins": sorted(ctx.joins),
            "tasks": sorted(task.task_id for task in instance.open_tasks.values()),
        }
        self._record(ctx, node_id, history_action, None, {"comment": comment, "discarded": discarded},
                     status=status)
        self._discard_in_flight(ctx)
        ctx.finished = True

        if status == InstanceStatus.TIMED_OUT and instance.settings.notifications.on_timeout:
            ctx.notify("workflow_timed_out", self._stakeholders(instance), self._lifecycle_payload(instance))

    def _expire_approval(self, instance_id: str, approval_id: str, now: datetime) -> Optional[str]:
        """Escalate or expire one overdue approval; returns the summary bucket or None if nothing changed."""
        with self._get_instance_lock(instance_id):
            ctx = self._load(instance_id, SYSTEM_ACTOR.id, now=now)
            instance = ctx.instance
            request = ctx.approvals.get(approval_id)
            if instance.is_terminal or request is None or not request.is_pending:
                return None
            if instance.pending_approvals.get(request.token) != request.id:
                return None
            node = self._require_node(ctx, request.node_id)
            config = node.parsed_config()
            policy = config.on_expiry or instance.settings.approval_expiry_policy
            escalate_to = self.directory.resolve(config.escalate_to, instance) if config.escalate_to else []

            if policy == ExpiryPolicy.ESCALATE and escalate_to:
                due_at = now + timedelta(minutes=self.config.approval_escalation_minutes)
                added = self.approvals.escalate(request, escalate_to, due_at)
                ctx.put_approval(request)
                self._record(ctx, node.id, HistoryAction.APPROVAL_ESCALATED, request.token, {
                    "approval_id": request.id,
                    "added_approvers": added,
                    "due_at": due_at.isoformat(),
                }, activate={request.token: node.id})
                ctx.notify("approval_escalated", request.approvers, {
                    "instance_id": instance.id,
                    "approval_id": request.id,
                    "node_id": node.id,
                    "title": request.title,
                })
                bucket = "escalated"
            else:
                self.approvals.expire(request, now)
                ctx.put_approval(request)
                self._route_resolved_approval(ctx, node, request.token, request, HistoryAction.APPROVAL_EXPIRED,
                                              error=ApprovalTimeout(request.id, node_id=node.id))
                bucket = "expired"

            self._commit(ctx)
        self._after_commit(ctx)
        return bucket

    def _route_resolved_approval(self, ctx: ExecutionContext, node: Node, token: str, request: ApprovalRequest,
                                 history_action: HistoryAction, error: Optional[WorkflowEngineError] = None) -> None:
        instance = ctx.instance
        instance.pending_approvals.pop(token, None)
        details: Dict[str, Any] = {"approval_id": request.id, "outcome": request.status.value}
        if error is not None:
            details["error"] = error.to_dict()

        try:
            target = self._approval_route(ctx.definition, node, request.status)
        except WorkflowEngineError as e:
            self._record(ctx, node.id, history_action, token, details, activate={token: node.id})
            self._fail_token(ctx, token, e, node.id)
            return

        self._record(ctx, node.id, history_action, token, details, activate={token: target})
        self._drive(ctx, token)

    @staticmethod
    def _approval_route(definition: WorkflowDefinition, node: Node, status: ApprovalStatus) -> str:
        """
        Target for a resolved approval.

        Approved follows an approved/true edge, else the first unlabeled edge;
        rejected follows a rejected/false edge; expired follows an expired
        edge, else the rejected route.
        """
        edges = definition.outgoing(node.id)

        def labeled(labels):
            return next((edge for edge in edges if edge.route_label in labels), None)

        if status == ApprovalStatus.APPROVED:
            edge = labeled(APPROVED_LABELS) or next((e for e in edges if e.route_label is None), None)
        elif status == ApprovalStatus.REJECTED:
            edge = labeled(REJECTED_LABELS)
        else:
            edge = labeled(EXPIRED_LABELS) or labeled(REJECTED_LABELS)

        if edge is None:
            raise NoMatchingEdge(node.id, outcome=status.value)
        return edge.target

    # Branches

    def _run_branch(self, instance_id: str, token: str) -> None:
        """Scheduler entry point for one branch token."""
        try:
            self.advance_branch(instance_id, token)
        except WorkflowEngineError as e:
            logger.error(f"Branch {token} of instance {instance_id} could not advance: {e.message}")

    def _advance_branch_once(self, instance_id: str, token: str) -> bool:
        set_logging_context(instance_id=instance_id, token=token, operation="advance_branch")
        try:
            with self._get_instance_lock(instance_id):
                ctx = self._load(instance_id, SYSTEM_ACTOR.id)
                instance = ctx.instance
                if instance.is_terminal or token not in instance.pending_tokens:
                    logger.debug(f"Branch {token} of instance {instance_id} is no longer pending")
                    return False
                instance.pending_tokens.remove(token)
                self._drive(ctx, token)
                self._commit(ctx)
        finally:
            clear_logging_context()

        self._after_commit(ctx)
        return True

    # Bookkeeping

    def _record(
        self,
        ctx: ExecutionContext,
        node_id: Optional[str],
        action: HistoryAction,
        token: Optional[str],
        details: Optional[Dict[str, Any]] = None,
        activate: Optional[Dict[str, str]] = None,
        deactivate: Optional[List[str]] = None,
        status: Optional[InstanceStatus] = None
    ) -> HistoryEntry:
        """Append one history entry and fold it into the instance."""
        instance = ctx.instance
        details = dict(details or {})

        if ctx.first_entry_pending:
            ctx.first_entry_pending = False
            if status is None:
                details["event"] = action.value
                action = HistoryAction.START

        if status is None:
            status = InstanceStatus.WAITING_APPROVAL if instance.pending_approvals else InstanceStatus.RUNNING

        entry = HistoryEntry(
            seq=len(instance.history) + 1,
            node_id=node_id,
            action=action,
            timestamp=ctx.now,
            actor=ctx.actor_id,
            token=token,
            details=details,
            activate=dict(activate or {}),
            deactivate=list(deactivate or []),
            status=status,
        )
        instance.append(entry)
        ctx.entries.append(entry)
        return entry

    def _discard_in_flight(self, ctx: ExecutionContext) -> None:
        """Drop pending approvals, join records, branch tokens and open tasks of a finished instance."""
        instance = ctx.instance
        for approval_id in list(instance.pending_approvals.values()):
            ctx.drop_approval(approval_id)
        for join_id in list(ctx.joins):
            ctx.drop_join(join_id)
        instance.pending_approvals.clear()
        instance.pending_tokens.clear()
        instance.open_tasks.clear()

    @staticmethod
    def _drop_token_waits(ctx: ExecutionContext, token: str) -> None:
        instance = ctx.instance
        approval_id = instance.pending_approvals.pop(token, None)
        if approval_id:
            ctx.drop_approval(approval_id)
        instance.open_tasks.pop(token, None)
        if token in instance.pending_tokens:
            instance.pending_tokens.remove(token)

    def _commit(self, ctx: ExecutionContext) -> None:
        ctx.instance.version = ctx.loaded_version + 1
        self.repository.commit(ctx.change_set(), expected_version=ctx.loaded_version)

    def _after_commit(self, ctx: ExecutionContext) -> None:
        instance = ctx.instance
        self.recorder.record_entries(instance, ctx.entries)
        if ctx.new_instance:
            self.recorder.instance_started(instance)
        if ctx.finished:
            self.recorder.instance_finished(instance)
            self._cleanup_instance_lock(instance.id)

        for notification_type, recipients, payload in ctx.notifications:
            try:
                self.notification_service.send(notification_type, recipients, payload)
            except Exception as e:
                logger.warning(f"Notification '{notification_type}' for instance {instance.id} failed: {e}")

        for token in ctx.scheduled:
            self.scheduler.schedule(self._run_branch, instance.id, token)

    def _load(self, instance_id: str, actor_id: str, now: Optional[datetime] = None) -> ExecutionContext:
        instance = self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        definition = self._get_definition(instance.definition_id, instance.definition_version)
        approvals = {approval.id: approval for approval in self.repository.list_approvals(instance_id)}
        joins = {join.id: join for join in self.repository.list_joins(instance_id)}
        return ExecutionContext(
            instance, definition, approvals, joins, actor_id,
            now or self.clock(), loaded_version=instance.version
        )

    def _get_definition(self, definition_id: str, version: int) -> WorkflowDefinition:
        key = (definition_id, version)
        definition = self._definition_cache.get(key)
        if definition is None:
            definition = self.repository.get_definition(definition_id, version)
            if definition is None:
                raise WorkflowNotFound(definition_id, version=version)
            if definition.status != DefinitionStatus.DRAFT:
                self._definition_cache[key] = definition
        return definition

    def _resolve_published(self, definition_id: str) -> WorkflowDefinition:
        versions = self.repository.list_definition_versions(definition_id)
        if not versions:
            raise WorkflowNotFound(definition_id)
        published = [d for d in versions if d.status == DefinitionStatus.PUBLISHED]
        if not published:
            raise WorkflowNotActive(definition_id, status=versions[-1].status.value)
        return published[-1]

    def _pending_request(self, ctx: ExecutionContext, node: Node, actor_id: str) -> Tuple[str, ApprovalRequest]:
        """The pending request at ``node``, preferring one the actor can still answer."""
        instance = ctx.instance
        candidates = []
        for token in instance.tokens_at(node.id):
            approval_id = instance.pending_approvals.get(token)
            request = ctx.approvals.get(approval_id) if approval_id else None
            if request is not None and request.is_pending:
                candidates.append((token, request))
        if not candidates:
            raise InvalidActionForState(
                f"No pending approval at node '{node.id}'",
                instance_id=instance.id,
                node_id=node.id,
                status=instance.status.value
            )
        for token, request in candidates:
            if request.is_eligible(actor_id) and not request.has_responded(actor_id):
                return token, request
        return candidates[0]

    @staticmethod
    def _require_node(ctx: ExecutionContext, node_id: Optional[str]) -> Node:
        node = ctx.definition.node(node_id) if node_id else None
        if node is None:
            raise NodeNotFound(node_id or "", definition_id=ctx.definition.id)
        return node

    @staticmethod
    def _merge_variables(ctx: ExecutionContext, variables: Optional[Dict[str, Any]]) -> None:
        if variables:
            ctx.instance.variables.update(variables)

    @staticmethod
    def _effective_settings(definition: WorkflowDefinition,
                            overrides: Optional[Union[Settings, Dict[str, Any]]]) -> Settings:
        if overrides is None:
            return definition.settings.model_copy(deep=True)
        if not isinstance(overrides, Settings):
            overrides = Settings.model_validate(overrides)
        merged = definition.settings.model_dump(by_alias=True)
        merged.update(overrides.model_dump(by_alias=True, exclude_unset=True))
        return Settings.model_validate(merged)

    @staticmethod
    def _stakeholders(instance: WorkflowInstance) -> List[str]:
        recipients = [instance.initiated_by]
        recipients.extend(a for a in instance.assigned_to if a not in recipients)
        return recipients

    @staticmethod
    def _lifecycle_payload(instance: WorkflowInstance) -> Dict[str, Any]:
        return {
            "instance_id": instance.id,
            "definition_id": instance.definition_id,
            "title": instance.title,
            "status": instance.status.value,
        }

    def _get_instance_lock(self, instance_id: str) -> threading.RLock:
        """Per-instance lock serializing mutations within this process."""
        with self._lock_manager:
            if instance_id not in self._instance_locks:
                self._instance_locks[instance_id] = threading.RLock()
            return self._instance_locks[instance_id]

    def _cleanup_instance_lock(self, instance_id: str) -> None:
        with self._lock_manager:
            self._instance_locks.pop(instance_id, None)

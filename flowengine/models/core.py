"""Core Pydantic models for workflow definitions, instances and coordination records."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


ROOT_TOKEN = "root"

_NODE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NodeKind(str, Enum):
    """The closed set of node types a definition may contain."""
    START = "start"
    TASK = "task"
    APPROVAL = "approval"
    CONDITION = "condition"
    PARALLEL = "parallel"
    MERGE = "merge"
    NOTIFICATION = "notification"
    INTEGRATION = "integration"
    END = "end"


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class InstanceStatus(str, Enum):
    """Lifecycle status of a workflow instance."""
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    InstanceStatus.COMPLETED,
    InstanceStatus.FAILED,
    InstanceStatus.CANCELLED,
    InstanceStatus.TIMED_OUT,
})


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2, Priority.URGENT: 3}


class ActionType(str, Enum):
    """Actions an external actor can submit against an instance."""
    APPROVE = "approve"
    REJECT = "reject"
    COMPLETE = "complete"
    SKIP = "skip"
    REASSIGN = "reassign"
    CANCEL = "cancel"
    TIMEOUT = "timeout"


class HistoryAction(str, Enum):
    """Labels recorded in the execution history."""
    START = "START"
    TASK_CREATED = "TASK_CREATED"
    APPROVAL_REQUESTED = "APPROVAL_REQUESTED"
    CONDITION_EVALUATED = "CONDITION_EVALUATED"
    PARALLEL_STARTED = "PARALLEL_STARTED"
    BRANCH_ARRIVED = "BRANCH_ARRIVED"
    BRANCH_FAILED = "BRANCH_FAILED"
    JOIN_RELEASED = "JOIN_RELEASED"
    MERGE_PASSED = "MERGE_PASSED"
    NOTIFICATION_SENT = "NOTIFICATION_SENT"
    INTEGRATION_EXECUTED = "INTEGRATION_EXECUTED"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"
    NODE_FAILED = "NODE_FAILED"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    COMPLETE = "COMPLETE"
    SKIP = "SKIP"
    REASSIGN = "REASSIGN"
    APPROVAL_RESOLVED = "APPROVAL_RESOLVED"
    APPROVAL_ESCALATED = "APPROVAL_ESCALATED"
    APPROVAL_EXPIRED = "APPROVAL_EXPIRED"
    CANCELLED = "CANCELLED"
    TIMED_OUT = "TIMED_OUT"


class ApprovalType(str, Enum):
    ANY = "any"
    ALL = "all"
    MAJORITY = "majority"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class JoinFailurePolicy(str, Enum):
    """What a join does when one of its branches fails permanently."""
    FAIL_FAST = "fail_fast"
    WAIT_ALL = "wait_all"


class ExpiryPolicy(str, Enum):
    """What happens to an approval gate that outlives its due date."""
    REJECT = "reject"
    ESCALATE = "escalate"


class IntegrationKind(str, Enum):
    WEBHOOK = "webhook"
    API = "api"
    EMAIL = "email"
    CUSTOM = "custom"


class RuleAction(str, Enum):
    GOTO = "goto"
    FAIL = "fail"


class ValidationResult(BaseModel):
    """Result of graph validation."""
    is_valid: bool = Field(..., description="Whether the definition is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


# Node configuration. Each node kind carries only its own config shape; keys
# may be written in camelCase (as authoring tools send them) or snake_case.

class NodeConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class StartConfig(NodeConfig):
    pass


class MergeConfig(NodeConfig):
    pass


class EndConfig(NodeConfig):
    pass


class TaskConfig(NodeConfig):
    title: Optional[str] = Field(None, description="Task title, defaults to 'Task: <node name>'")
    description: Optional[str] = None
    assigned_to: List[str] = Field(default_factory=list, description="Assignee references, defaults to the instance assignees")
    due_in_minutes: Optional[int] = Field(None, ge=1)
    priority: Optional[Priority] = None


class ApprovalConfig(NodeConfig):
    title: Optional[str] = None
    description: Optional[str] = None
    approvers: List[str] = Field(default_factory=list, description="Approver references resolved through the directory")
    approval_type: ApprovalType = ApprovalType.ANY
    min_approvals: int = Field(1, ge=1)
    reject_on_first: bool = Field(True, description="For 'any' approvals, a single rejection is terminal")
    due_in_minutes: Optional[int] = Field(None, ge=1)
    on_expiry: Optional[ExpiryPolicy] = Field(None, description="Overrides the definition's expiry policy")
    escalate_to: List[str] = Field(default_factory=list)


class ConditionConfig(NodeConfig):
    condition: str = Field("", description="Restricted boolean expression over instance variables")


class ParallelConfig(NodeConfig):
    merge_node: Optional[str] = Field(None, description="Explicit merge node paired with this fan-out")


class NotificationSpec(NodeConfig):
    type: str = "info"
    recipients: List[str] = Field(default_factory=list)
    message: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)
    required: bool = Field(False, description="A failed send fails the node instead of being logged")


class NotificationConfig(NodeConfig):
    notifications: List[NotificationSpec] = Field(default_factory=list)


class IntegrationSpec(NodeConfig):
    type: IntegrationKind
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class IntegrationConfig(NodeConfig):
    integrations: List[IntegrationSpec] = Field(default_factory=list)


NODE_CONFIG_MODELS: Dict[NodeKind, Type[NodeConfig]] = {
    NodeKind.START: StartConfig,
    NodeKind.TASK: TaskConfig,
    NodeKind.APPROVAL: ApprovalConfig,
    NodeKind.CONDITION: ConditionConfig,
    NodeKind.PARALLEL: ParallelConfig,
    NodeKind.MERGE: MergeConfig,
    NodeKind.NOTIFICATION: NotificationConfig,
    NodeKind.INTEGRATION: IntegrationConfig,
    NodeKind.END: EndConfig,
}


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class Rule(BaseModel):
    """Declarative rule evaluated before a node's default outgoing edge."""
    condition: str = Field(..., description="Expression evaluated against instance variables")
    action: RuleAction = RuleAction.GOTO
    target: Optional[str] = Field(None, description="Target node for 'goto' rules")
    message: Optional[str] = Field(None, description="Failure message for 'fail' rules")

    @model_validator(mode='after')
    def validate_target(self):
        if self.action == RuleAction.GOTO and not self.target:
            raise ValueError("A 'goto' rule requires a target")
        return self


class Node(BaseModel):
    """A typed step in a workflow graph."""
    id: str = Field(..., description="Unique identifier for the node")
    type: NodeKind = Field(..., description="Node kind")
    name: str = Field("", description="Display name")
    description: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict, description="Kind-specific configuration")
    position: Position = Field(default_factory=Position, description="Layout position, ignored by the engine")
    rules: List[Rule] = Field(default_factory=list)

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not _NODE_ID_PATTERN.match(id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, underscores, and hyphens")
        return id_value.strip()

    @model_validator(mode='after')
    def validate_config(self):
        self.parsed_config()
        if not self.name:
            self.name = self.id
        return self

    def parsed_config(self) -> NodeConfig:
        """Return the config parsed into the model for this node's kind."""
        return NODE_CONFIG_MODELS[self.type].model_validate(self.config)


class Edge(BaseModel):
    """Directed arc between two nodes."""
    id: str = Field(..., description="Edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    condition: Optional[str] = Field(None, description="Routing label matched against a node's outcome")
    label: Optional[str] = Field(None, description="Display label")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @model_validator(mode='after')
    def validate_edge(self):
        if self.source == self.target:
            raise ValueError("Self-referencing edges are not allowed")
        return self

    @property
    def route_label(self) -> Optional[str]:
        """Normalised routing label: the condition, else the display label."""
        label = self.condition if self.condition else self.label
        if label is None or not label.strip():
            return None
        return label.strip().lower()


class NotificationToggles(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    on_start: bool = True
    on_complete: bool = True
    on_timeout: bool = True
    on_failure: bool = True


class Settings(BaseModel):
    """Execution settings of a definition, optionally overridden per instance."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    # Authoring metadata kept for the embedding application; the engine stores them but never acts on them
    auto_start: bool = Field(False, description="Hint for callers that instances start without user input")
    allow_parallel: bool = True
    require_approval: bool = Field(False, description="Hint for authoring tools that an approval step is expected")
    timeout_minutes: int = Field(1440, ge=1, le=10080)
    retry_on_failure: bool = True
    max_retries: int = Field(3, ge=0, le=10)
    notifications: NotificationToggles = Field(default_factory=NotificationToggles)
    join_failure_policy: JoinFailurePolicy = JoinFailurePolicy.FAIL_FAST
    approval_expiry_policy: ExpiryPolicy = ExpiryPolicy.REJECT


class Permissions(BaseModel):
    """Actor ids allowed per capability; '*' grants everyone."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    can_start: List[str] = Field(default_factory=list)
    can_view: List[str] = Field(default_factory=list)
    can_edit: List[str] = Field(default_factory=list)
    can_manage: List[str] = Field(default_factory=list)


class Statistics(BaseModel):
    """Aggregate counters maintained by atomic increments only."""
    total_instances: int = 0
    active_instances: int = 0
    completed_instances: int = 0
    failed_instances: int = 0
    cancelled_instances: int = 0
    timed_out_instances: int = 0
    duration_total_seconds: float = 0.0
    duration_samples: int = 0
    last_used_at: Optional[datetime] = None

    @property
    def average_duration_seconds(self) -> Optional[float]:
        if not self.duration_samples:
            return None
        return self.duration_total_seconds / self.duration_samples


STATISTIC_COUNTERS = (
    "total_instances",
    "active_instances",
    "completed_instances",
    "failed_instances",
    "cancelled_instances",
    "timed_out_instances",
    "duration_total_seconds",
    "duration_samples",
)


class AuditRecord(BaseModel):
    """One entry of a definition's own audit trail."""
    action: str
    actor: str
    timestamp: datetime = Field(default_factory=utc_now)
    details: Dict[str, Any] = Field(default_factory=dict)


class DefinitionDraft(BaseModel):
    """Authoring payload for creating or updating a definition."""
    name: str = Field(..., description="Name of the workflow")
    description: str = Field("", description="Description of the workflow")
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    nodes: List[Node] = Field(..., description="Nodes of the graph")
    edges: List[Edge] = Field(default_factory=list, description="Edges connecting nodes")
    settings: Settings = Field(default_factory=Settings)
    permissions: Permissions = Field(default_factory=Permissions)

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes


class WorkflowDefinition(DefinitionDraft):
    """A versioned workflow template; immutable once published."""
    id: str = Field(..., description="Definition identifier, shared by all versions")
    version: int = Field(1, ge=1)
    status: DefinitionStatus = DefinitionStatus.DRAFT
    statistics: Statistics = Field(default_factory=Statistics)
    created_by: str = Field(..., description="Author actor id")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    published_at: Optional[datetime] = None
    audit_trail: List[AuditRecord] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == DefinitionStatus.PUBLISHED

    def node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def nodes_of(self, kind: NodeKind) -> List[Node]:
        return [node for node in self.nodes if node.type == kind]

    def start_node(self) -> Optional[Node]:
        starts = self.nodes_of(NodeKind.START)
        return starts[0] if len(starts) == 1 else None

    def outgoing(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]


class HistoryEntry(BaseModel):
    """One append-only record of the execution history.

    ``activate`` maps tokens to the node they occupy after the entry and
    ``deactivate`` lists tokens that leave the graph; folding the entries in
    order yields the instance's status and active node set.
    """
    seq: int = Field(..., ge=1)
    node_id: Optional[str] = None
    action: HistoryAction
    timestamp: datetime = Field(default_factory=utc_now)
    actor: str
    token: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    activate: Dict[str, str] = Field(default_factory=dict)
    deactivate: List[str] = Field(default_factory=list)
    status: InstanceStatus


class OpenTask(BaseModel):
    """A task created for a token suspended at a task node."""
    task_id: str
    node_id: str
    assigned_to: List[str] = Field(default_factory=list)


class InstanceProjection(BaseModel):
    """State derived by folding the execution history."""
    status: InstanceStatus = InstanceStatus.RUNNING
    active: Dict[str, str] = Field(default_factory=dict)
    last_activity_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WorkflowInstance(BaseModel):
    """One execution of a definition."""
    id: str
    definition_id: str
    definition_version: int
    definition_name: str = ""
    title: str
    description: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    due_date: Optional[datetime] = None
    status: InstanceStatus = InstanceStatus.RUNNING
    active: Dict[str, str] = Field(default_factory=dict, description="Token to node id")
    pending_tokens: List[str] = Field(default_factory=list, description="Positioned tokens awaiting a branch task")
    open_tasks: Dict[str, OpenTask] = Field(default_factory=dict, description="Token to open task")
    pending_approvals: Dict[str, str] = Field(default_factory=dict, description="Token to approval request id")
    history: List[HistoryEntry] = Field(default_factory=list)
    initiated_by: str
    assigned_to: List[str] = Field(default_factory=list)
    settings: Settings = Field(default_factory=Settings)
    permissions: Permissions = Field(default_factory=Permissions)
    started_at: datetime = Field(default_factory=utc_now)
    last_activity_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None
    version: int = Field(0, ge=0)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def active_nodes(self) -> List[str]:
        return sorted(set(self.active.values()))

    def tokens_at(self, node_id: str) -> List[str]:
        return [token for token, position in self.active.items() if position == node_id]

    def is_participant(self, actor_id: str) -> bool:
        if actor_id == self.initiated_by or actor_id in self.assigned_to:
            return True
        return any(actor_id in task.assigned_to for task in self.open_tasks.values())

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        """Append an entry and fold it into the live projection."""
        self.history.append(entry)
        projection = InstanceProjection(
            status=self.status,
            active=self.active,
            last_activity_at=self.last_activity_at,
            completed_at=self.completed_at,
        )
        apply_entry(projection, entry)
        self.status = projection.status
        self.active = projection.active
        self.last_activity_at = projection.last_activity_at
        self.completed_at = projection.completed_at
        return entry

    def projection(self) -> InstanceProjection:
        return InstanceProjection(
            status=self.status,
            active=dict(self.active),
            last_activity_at=self.last_activity_at,
            completed_at=self.completed_at,
        )


def apply_entry(projection: InstanceProjection, entry: HistoryEntry) -> InstanceProjection:
    """Fold one history entry into a projection, in place."""
    for token in entry.deactivate:
        projection.active.pop(token, None)
    projection.active.update(entry.activate)
    projection.status = entry.status
    projection.last_activity_at = entry.timestamp
    if entry.status in TERMINAL_STATUSES:
        projection.active.clear()
        projection.completed_at = entry.timestamp
    return projection


def replay(entries: List[HistoryEntry]) -> InstanceProjection:
    """Rebuild status and active node set from the execution history alone."""
    projection = InstanceProjection()
    for entry in entries:
        apply_entry(projection, entry)
    return projection


class ApprovalResponse(BaseModel):
    approver: str
    decision: Decision
    comment: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class ApprovalRequest(BaseModel):
    """An outstanding decision gate for an approval node."""
    id: str
    instance_id: str
    node_id: str
    token: str
    title: str = ""
    description: Optional[str] = None
    approvers: List[str]
    approval_type: ApprovalType = ApprovalType.ANY
    min_approvals: int = Field(1, ge=1)
    reject_on_first: bool = True
    responses: List[ApprovalResponse] = Field(default_factory=list)
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: datetime = Field(default_factory=utc_now)
    due_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    escalations: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    def is_eligible(self, approver: str) -> bool:
        return approver in self.approvers

    def has_responded(self, approver: str) -> bool:
        return any(response.approver == approver for response in self.responses)

    def count(self, decision: Decision) -> int:
        return sum(1 for response in self.responses if response.decision == decision)


class BranchJoinRecord(BaseModel):
    """Durable join barrier for one parallel fan-out."""
    id: str
    instance_id: str
    parallel_node_id: str
    parent_token: str
    merge_node_id: Optional[str] = None
    expected: Dict[str, str] = Field(..., description="Branch token to first node of the branch")
    arrived: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    failure_policy: JoinFailurePolicy = JoinFailurePolicy.FAIL_FAST
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def settled(self) -> bool:
        return len(set(self.arrived) | set(self.failed)) == len(self.expected)

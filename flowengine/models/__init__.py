"""Data models for the workflow engine."""

from .core import (
    ROOT_TOKEN,
    NodeKind,
    DefinitionStatus,
    InstanceStatus,
    Priority,
    ActionType,
    HistoryAction,
    ApprovalType,
    ApprovalStatus,
    Decision,
    JoinFailurePolicy,
    ExpiryPolicy,
    IntegrationKind,
    RuleAction,
    ValidationResult,
    Node,
    Edge,
    Rule,
    Settings,
    Permissions,
    Statistics,
    DefinitionDraft,
    WorkflowDefinition,
    HistoryEntry,
    WorkflowInstance,
    ApprovalRequest,
    ApprovalResponse,
    BranchJoinRecord,
    apply_entry,
    replay,
)
from .queries import (
    InstanceFilters,
    InstanceSort,
    SortField,
    SortOrder,
    PageRequest,
    Pagination,
    InstanceStatistics,
    InstancePage,
)

__all__ = [
    "ROOT_TOKEN",
    "NodeKind",
    "DefinitionStatus",
    "InstanceStatus",
    "Priority",
    "ActionType",
    "HistoryAction",
    "ApprovalType",
    "ApprovalStatus",
    "Decision",
    "JoinFailurePolicy",
    "ExpiryPolicy",
    "IntegrationKind",
    "RuleAction",
    "ValidationResult",
    "Node",
    "Edge",
    "Rule",
    "Settings",
    "Permissions",
    "Statistics",
    "DefinitionDraft",
    "WorkflowDefinition",
    "HistoryEntry",
    "WorkflowInstance",
    "ApprovalRequest",
    "ApprovalResponse",
    "BranchJoinRecord",
    "apply_entry",
    "replay",
    "InstanceFilters",
    "InstanceSort",
    "SortField",
    "SortOrder",
    "PageRequest",
    "Pagination",
    "InstanceStatistics",
    "InstancePage",
]

"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    DefinitionInvalid,
    WorkflowNotFound,
    WorkflowNotActive,
    InstanceNotFound,
    NodeNotFound,
    PermissionDenied,
    InvalidActionForState,
    ConditionEvaluationError,
    NoMatchingEdge,
    NodeExecutionError,
    IntegrationFailure,
    JoinFailed,
    ApprovalTimeout,
    ConcurrentModification,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .permissions import AccessPolicy, Actor, Permission, SYSTEM_ACTOR
from .graph_validator import GraphValidator

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "DefinitionInvalid",
    "WorkflowNotFound",
    "WorkflowNotActive",
    "InstanceNotFound",
    "NodeNotFound",
    "PermissionDenied",
    "InvalidActionForState",
    "ConditionEvaluationError",
    "NoMatchingEdge",
    "NodeExecutionError",
    "IntegrationFailure",
    "JoinFailed",
    "ApprovalTimeout",
    "ConcurrentModification",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "AccessPolicy",
    "Actor",
    "Permission",
    "SYSTEM_ACTOR",
    "GraphValidator",
]

"""Custom exceptions for the workflow engine with detailed error information."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    SECURITY = "security"
    BUSINESS_LOGIC = "business_logic"
    CONCURRENCY = "concurrency"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for history entries and logging."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when a workflow graph fails structural validation."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        definition_name: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if definition_name:
            self.add_context(definition_name=definition_name)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class DefinitionInvalid(GraphValidationError):
    """Raised when a definition is rejected; carries every structural problem found."""

    def __init__(self, reasons: List[str], definition_name: Optional[str] = None, **kwargs):
        message = f"Workflow definition is invalid: {'; '.join(reasons)}"
        super().__init__(message, validation_errors=reasons, definition_name=definition_name, **kwargs)

    @property
    def reasons(self) -> List[str]:
        return self.validation_errors


class WorkflowNotFound(WorkflowEngineError):
    """Raised when a workflow definition does not exist."""

    def __init__(self, definition_id: str, version: Optional[int] = None, **kwargs):
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(
            f"Workflow definition '{definition_id}'{suffix} not found",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        self.add_context(definition_id=definition_id)


class WorkflowNotActive(WorkflowEngineError):
    """Raised when starting a definition that has no published version."""

    def __init__(self, definition_id: str, status: Optional[str] = None, **kwargs):
        super().__init__(
            f"Workflow definition '{definition_id}' is not active",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        self.add_context(definition_id=definition_id)
        if status:
            self.add_details(status=status)


class InstanceNotFound(WorkflowEngineError):
    """Raised when a workflow instance does not exist."""

    def __init__(self, instance_id: str, **kwargs):
        super().__init__(
            f"Workflow instance '{instance_id}' not found",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        self.add_context(instance_id=instance_id)


class NodeNotFound(WorkflowEngineError):
    """Raised when an action references a node missing from the definition."""

    def __init__(self, node_id: str, definition_id: Optional[str] = None, **kwargs):
        super().__init__(
            f"Node '{node_id}' not found",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        self.add_context(node_id=node_id)
        if definition_id:
            self.add_context(definition_id=definition_id)


class PermissionDenied(WorkflowEngineError):
    """Raised when an actor lacks the capability for an action."""

    def __init__(self, message: str, actor_id: Optional[str] = None, action: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.SECURITY,
            **kwargs
        )
        if actor_id:
            self.add_context(actor_id=actor_id)
        if action:
            self.add_context(action=action)


class InvalidActionForState(WorkflowEngineError):
    """Raised when an action is not currently awaited by the instance or node."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        node_id: Optional[str] = None,
        status: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        if instance_id:
            self.add_context(instance_id=instance_id)
        if node_id:
            self.add_context(node_id=node_id)
        if status:
            self.add_details(status=status)


class ConditionEvaluationError(WorkflowEngineError):
    """Raised when a condition expression cannot be parsed or evaluated."""

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        self.expression = expression
        if expression is not None:
            self.add_details(expression=expression)


class NoMatchingEdge(WorkflowEngineError):
    """Raised when no outgoing edge matches the routing outcome of a node."""

    def __init__(self, node_id: str, outcome: Any = None, **kwargs):
        super().__init__(
            f"No outgoing edge of node '{node_id}' matches outcome {outcome!r}",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        self.add_context(node_id=node_id)
        self.add_details(outcome=outcome)


class NodeExecutionError(WorkflowEngineError):
    """Raised when a node handler cannot complete."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        super().__init__(message, **kwargs)
        if node_id:
            self.add_context(node_id=node_id)
        if instance_id:
            self.add_context(instance_id=instance_id)


class IntegrationFailure(NodeExecutionError):
    """Raised when an external integration call reports failure."""

    def __init__(self, message: str, kind: Optional[str] = None, node_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            node_id=node_id,
            category=ErrorCategory.NETWORK,
            recoverable=True,
            **kwargs
        )
        if kind:
            self.add_details(integration=kind)


class JoinFailed(NodeExecutionError):
    """Raised when a join barrier settles with at least one failed branch."""

    def __init__(self, join_id: str, failed_tokens: List[str], node_id: Optional[str] = None, **kwargs):
        super().__init__(
            f"Join '{join_id}' failed: {len(failed_tokens)} branch(es) failed",
            node_id=node_id,
            **kwargs
        )
        self.add_details(join_id=join_id, failed_branches=failed_tokens)


class ApprovalTimeout(WorkflowEngineError):
    """Raised when an approval gate outlives its due date."""

    def __init__(self, approval_id: str, node_id: Optional[str] = None, **kwargs):
        super().__init__(
            f"Approval request '{approval_id}' expired",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        self.add_context(approval_id=approval_id)
        if node_id:
            self.add_context(node_id=node_id)


class ConcurrentModification(WorkflowEngineError):
    """Raised when a write loses the optimistic-concurrency race."""

    def __init__(
        self,
        instance_id: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            f"Workflow instance '{instance_id}' was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONCURRENCY,
            recoverable=True,
            retry_after=0,
            **kwargs
        )
        self.add_context(instance_id=instance_id)
        self.add_details(expected_version=expected_version, actual_version=actual_version)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


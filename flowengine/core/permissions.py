"""Centralised capability checks: ``can(actor, action, resource)``."""

from enum import Enum
from typing import Dict, FrozenSet, List, Union

from pydantic import BaseModel, Field

from ..models.core import ApprovalRequest, WorkflowDefinition, WorkflowInstance
from .exceptions import PermissionDenied
from .logging import get_logger

logger = get_logger(__name__)

WILDCARD = "*"


class Capability(str, Enum):
    """Global capabilities granted through roles."""
    MANAGE_ALL_WORKFLOWS = "manage_all_workflows"
    SYSTEM = "system"


ROLE_CAPABILITIES: Dict[str, FrozenSet[Capability]] = {
    "admin": frozenset({Capability.MANAGE_ALL_WORKFLOWS}),
    "workflow_admin": frozenset({Capability.MANAGE_ALL_WORKFLOWS}),
    "system": frozenset({Capability.MANAGE_ALL_WORKFLOWS, Capability.SYSTEM}),
}


class Actor(BaseModel):
    """The authenticated caller, as supplied by the embedding application."""
    id: str = Field(..., description="Actor identifier")
    roles: List[str] = Field(default_factory=list)
    capabilities: List[Capability] = Field(default_factory=list, description="Capabilities granted directly")

    def has(self, capability: Capability) -> bool:
        if capability in self.capabilities:
            return True
        return any(capability in ROLE_CAPABILITIES.get(role, frozenset()) for role in self.roles)


SYSTEM_ACTOR = Actor(id="system", roles=["system"])


class Permission(str, Enum):
    """Actions checked by the access policy."""
    VIEW_DEFINITION = "view_definition"
    EDIT_DEFINITION = "edit_definition"
    MANAGE_DEFINITION = "manage_definition"
    START_INSTANCE = "start_instance"
    VIEW_INSTANCE = "view_instance"
    ACT_ON_INSTANCE = "act_on_instance"
    CANCEL_INSTANCE = "cancel_instance"
    TIMEOUT_INSTANCE = "timeout_instance"
    RESPOND_TO_APPROVAL = "respond_to_approval"


Resource = Union[WorkflowDefinition, WorkflowInstance, ApprovalRequest]


def _listed(actor_id: str, allowed: List[str]) -> bool:
    return WILDCARD in allowed or actor_id in allowed


class AccessPolicy:
    """Single place where authorization decisions are made."""

    def can(self, actor: Actor, action: Permission, resource: Resource) -> bool:
        if action == Permission.TIMEOUT_INSTANCE:
            return actor.has(Capability.SYSTEM)

        if action == Permission.RESPOND_TO_APPROVAL:
            return isinstance(resource, ApprovalRequest) and resource.is_eligible(actor.id)

        if actor.has(Capability.MANAGE_ALL_WORKFLOWS):
            return True

        if isinstance(resource, WorkflowDefinition):
            return self._can_on_definition(actor, action, resource)
        if isinstance(resource, WorkflowInstance):
            return self._can_on_instance(actor, action, resource)
        return False

    def require(self, actor: Actor, action: Permission, resource: Resource) -> None:
        """Raise PermissionDenied unless ``can`` allows the action."""
        if not self.can(actor, action, resource):
            resource_id = getattr(resource, "id", None)
            logger.info(f"Permission denied: actor={actor.id} action={action.value} resource={resource_id}")
            raise PermissionDenied(
                f"Actor '{actor.id}' may not {action.value.replace('_', ' ')} '{resource_id}'",
                actor_id=actor.id,
                action=action.value
            )

    def _can_on_definition(self, actor: Actor, action: Permission, definition: WorkflowDefinition) -> bool:
        permissions = definition.permissions
        is_owner = actor.id == definition.created_by
        manages = is_owner or _listed(actor.id, permissions.can_manage)

        if action == Permission.MANAGE_DEFINITION:
            return manages
        if action == Permission.EDIT_DEFINITION:
            return manages or _listed(actor.id, permissions.can_edit)
        if action == Permission.START_INSTANCE:
            return manages or _listed(actor.id, permissions.can_start)
        if action == Permission.VIEW_DEFINITION:
            return (
                manages
                or _listed(actor.id, permissions.can_view)
                or _listed(actor.id, permissions.can_edit)
                or _listed(actor.id, permissions.can_start)
            )
        return False

    def _can_on_instance(self, actor: Actor, action: Permission, instance: WorkflowInstance) -> bool:
        manages = _listed(actor.id, instance.permissions.can_manage)

        if action == Permission.VIEW_INSTANCE:
            return manages or instance.is_participant(actor.id)
        if action == Permission.ACT_ON_INSTANCE:
            return manages or instance.is_participant(actor.id)
        if action == Permission.CANCEL_INSTANCE:
            return manages or actor.id == instance.initiated_by
        return False

"""Graph Manager for workflow definition handling."""

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from ..models.core import (
    AuditRecord, DefinitionDraft, DefinitionStatus, Statistics, ValidationResult,
    WorkflowDefinition, utc_now
)
from ..storage.repository import WorkflowRepository
from .exceptions import InvalidActionForState, WorkflowNotFound
from .graph_validator import GraphValidator
from .logging import get_logger
from .permissions import AccessPolicy, Actor, Permission

logger = get_logger(__name__)


class DefinitionManager:
    """Manages workflow definitions through draft, published and archived versions.

    Drafts are validated on every write and may be edited in place. A
    published version is immutable; changes go into a new draft version
    derived from it.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        validator: Optional[GraphValidator] = None,
        policy: Optional[AccessPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.validator = validator or GraphValidator()
        self.policy = policy or AccessPolicy()
        self.clock = clock or utc_now

    def create_definition(self, actor: Actor, draft: Union[DefinitionDraft, Dict[str, Any]]) -> WorkflowDefinition:
        """
        Create version 1 of a new definition as a draft.

        Args:
            actor: Author; becomes ``created_by`` and may manage the definition
            draft: Authoring payload

        Returns:
            WorkflowDefinition: The stored draft

        Raises:
            DefinitionInvalid: If graph validation fails
        """
        draft = self._as_draft(draft)
        logger.info(f"Creating new definition: {draft.name}")
        result = self.validator.ensure_valid(draft)

        now = self.clock()
        definition = WorkflowDefinition(
            **draft.model_dump(),
            id=str(uuid.uuid4()),
            version=1,
            status=DefinitionStatus.DRAFT,
            created_by=actor.id,
            created_at=now,
            updated_at=now,
        )
        self._audit(definition, "created", actor, warnings=result.warnings)
        self.repository.save_definition(definition)

        logger.info(f"Successfully created definition '{definition.name}' with ID: {definition.id}")
        return definition

    def update_definition(
        self,
        actor: Actor,
        definition_id: str,
        draft: Union[DefinitionDraft, Dict[str, Any]]
    ) -> WorkflowDefinition:
        """Replace the content of the latest version, which must still be a draft."""
        draft = self._as_draft(draft)
        definition = self._latest(definition_id)
        self.policy.require(actor, Permission.EDIT_DEFINITION, definition)
        self._require_status(definition, DefinitionStatus.DRAFT, "edited")

        result = self.validator.ensure_valid(draft)
        updated = WorkflowDefinition.model_validate({**definition.model_dump(), **draft.model_dump()})
        updated.updated_at = self.clock()
        self._audit(updated, "updated", actor, warnings=result.warnings)
        self.repository.save_definition(updated)

        logger.info(f"Updated draft {definition_id} v{updated.version}")
        return updated

    def publish_definition(self, actor: Actor, definition_id: str) -> WorkflowDefinition:
        """
        Publish the latest draft version.

        Older published versions are archived; instances already running on
        them keep executing against the version they started with.
        """
        definition = self._latest(definition_id)
        self.policy.require(actor, Permission.MANAGE_DEFINITION, definition)
        self._require_status(definition, DefinitionStatus.DRAFT, "published")
        self.validator.ensure_valid(definition)

        now = self.clock()
        for previous in self.repository.list_definition_versions(definition_id):
            if previous.status == DefinitionStatus.PUBLISHED:
                previous.status = DefinitionStatus.ARCHIVED
                previous.updated_at = now
                self._audit(previous, "archived", actor, superseded_by=definition.version)
                self.repository.save_definition(previous)

        definition.status = DefinitionStatus.PUBLISHED
        definition.published_at = now
        definition.updated_at = now
        self._audit(definition, "published", actor)
        self.repository.save_definition(definition)

        logger.info(f"Published definition {definition_id} v{definition.version}")
        return definition

    def archive_definition(self, actor: Actor, definition_id: str) -> WorkflowDefinition:
        """Archive the latest version so no new instances can start from it."""
        definition = self._latest(definition_id)
        self.policy.require(actor, Permission.MANAGE_DEFINITION, definition)
        if definition.status == DefinitionStatus.ARCHIVED:
            return definition

        definition.status = DefinitionStatus.ARCHIVED
        definition.updated_at = self.clock()
        self._audit(definition, "archived", actor)
        self.repository.save_definition(definition)

        logger.info(f"Archived definition {definition_id} v{definition.version}")
        return definition

    def create_new_version(self, actor: Actor, definition_id: str) -> WorkflowDefinition:
        """Derive a new draft version from the latest version."""
        definition = self._latest(definition_id)
        self.policy.require(actor, Permission.EDIT_DEFINITION, definition)
        if definition.status == DefinitionStatus.DRAFT:
            raise InvalidActionForState(
                f"Definition {definition_id} v{definition.version} is still a draft; edit it instead",
                status=definition.status.value
            )

        now = self.clock()
        new_version = definition.model_copy(deep=True)
        new_version.version = definition.version + 1
        new_version.status = DefinitionStatus.DRAFT
        new_version.statistics = Statistics()
        new_version.published_at = None
        new_version.created_at = now
        new_version.updated_at = now
        new_version.audit_trail = []
        self._audit(new_version, "version_created", actor, derived_from=definition.version)
        self.repository.save_definition(new_version)

        logger.info(f"Created draft v{new_version.version} of definition {definition_id}")
        return new_version

    def get_definition(self, actor: Actor, definition_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        definition = self.repository.get_definition(definition_id, version)
        if definition is None:
            raise WorkflowNotFound(definition_id, version=version)
        self.policy.require(actor, Permission.VIEW_DEFINITION, definition)
        return definition

    def list_definitions(self, actor: Actor, status: Optional[DefinitionStatus] = None) -> List[WorkflowDefinition]:
        """Latest version of every definition the actor may view."""
        return [
            definition for definition in self.repository.list_definitions()
            if (status is None or definition.status == status)
            and self.policy.can(actor, Permission.VIEW_DEFINITION, definition)
        ]

    def validate_definition(self, draft: Union[DefinitionDraft, Dict[str, Any]]) -> ValidationResult:
        return self.validator.validate(self._as_draft(draft))

    def _latest(self, definition_id: str) -> WorkflowDefinition:
        definition = self.repository.get_definition(definition_id)
        if definition is None:
            raise WorkflowNotFound(definition_id)
        return definition

    @staticmethod
    def _as_draft(draft: Union[DefinitionDraft, Dict[str, Any]]) -> DefinitionDraft:
        if isinstance(draft, WorkflowDefinition):
            return DefinitionDraft.model_validate(draft.model_dump(include=set(DefinitionDraft.model_fields)))
        if isinstance(draft, DefinitionDraft):
            return draft
        return DefinitionDraft.model_validate(draft)

    @staticmethod
    def _require_status(definition: WorkflowDefinition, status: DefinitionStatus, verb: str) -> None:
        if definition.status != status:
            raise InvalidActionForState(
                f"Definition {definition.id} v{definition.version} is {definition.status.value} "
                f"and cannot be {verb}",
                status=definition.status.value
            )

    def _audit(self, definition: WorkflowDefinition, action: str, actor: Actor, **details) -> None:
        definition.audit_trail.append(AuditRecord(
            action=action,
            actor=actor.id,
            timestamp=self.clock(),
            details={"version": definition.version, **details},
        ))

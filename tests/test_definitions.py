"""Tests for the definition lifecycle and access policy."""

import pytest

from flowengine.core.exceptions import (
    DefinitionInvalid, InvalidActionForState, PermissionDenied, WorkflowNotActive, WorkflowNotFound
)
from flowengine.core.permissions import SYSTEM_ACTOR, AccessPolicy, Actor, Capability, Permission
from flowengine.models.core import (
    ApprovalRequest, DefinitionStatus, InstanceStatus, OpenTask, WorkflowDefinition, WorkflowInstance
)
from tests.workflow_fixtures import TASK_WORKFLOW, draft, edge, node

EDITOR = Actor(id="editor")


@pytest.fixture
def definitions(system):
    return system.definitions


class TestDefinitionLifecycle:
    """Test cases for DefinitionManager."""

    def test_create_starts_as_draft(self, definitions, author):
        definition = definitions.create_definition(author, TASK_WORKFLOW)

        assert definition.status == DefinitionStatus.DRAFT
        assert definition.version == 1
        assert definition.created_by == "author"
        assert [record.action for record in definition.audit_trail] == ["created"]

    def test_invalid_draft_is_rejected(self, definitions, author):
        with pytest.raises(DefinitionInvalid) as exc_info:
            definitions.create_definition(author, draft([node("start", "start")], []))
        assert "Definition must have at least one end node" in exc_info.value.reasons

    def test_update_draft(self, definitions, author):
        definition = definitions.create_definition(author, TASK_WORKFLOW)
        renamed = dict(TASK_WORKFLOW, name="Renamed", description="v1 edit")

        updated = definitions.update_definition(author, definition.id, renamed)
        assert updated.name == "Renamed"
        assert updated.id == definition.id
        assert updated.created_by == "author"
        assert definitions.get_definition(author, definition.id).name == "Renamed"

    def test_publish_then_immutable(self, definitions, author):
        definition = definitions.create_definition(author, TASK_WORKFLOW)
        published = definitions.publish_definition(author, definition.id)

        assert published.status == DefinitionStatus.PUBLISHED
        assert published.published_at is not None
        with pytest.raises(InvalidActionForState):
            definitions.update_definition(author, definition.id, TASK_WORKFLOW)
        with pytest.raises(InvalidActionForState):
            definitions.publish_definition(author, definition.id)

    def test_new_version_archives_previous_on_publish(self, definitions, author, engine, requester):
        definition = definitions.create_definition(author, TASK_WORKFLOW)
        definitions.publish_definition(author, definition.id)
        running = engine.start_instance(requester, definition.id, "on v1")

        draft_v2 = definitions.create_new_version(author, definition.id)
        assert (draft_v2.version, draft_v2.status) == (2, DefinitionStatus.DRAFT)
        assert draft_v2.statistics.total_instances == 0
        with pytest.raises(InvalidActionForState):
            definitions.create_new_version(author, definition.id)

        definitions.update_definition(author, definition.id, dict(TASK_WORKFLOW, name="Task workflow v2"))
        definitions.publish_definition(author, definition.id)

        v1 = definitions.get_definition(author, definition.id, version=1)
        assert v1.status == DefinitionStatus.ARCHIVED
        assert v1.audit_trail[-1].action == "archived"
        assert v1.statistics.total_instances == 1

        # the running instance keeps its version; new ones use v2
        finished = engine.submit_action(requester, running.id, "review", "complete")
        assert finished.status == InstanceStatus.COMPLETED
        assert finished.definition_version == 1
        assert engine.start_instance(requester, definition.id, "on v2").definition_version == 2

    def test_archive_blocks_new_instances(self, definitions, author, engine, requester):
        definition = definitions.create_definition(author, TASK_WORKFLOW)
        definitions.publish_definition(author, definition.id)
        archived = definitions.archive_definition(author, definition.id)

        assert archived.status == DefinitionStatus.ARCHIVED
        with pytest.raises(WorkflowNotActive):
            engine.start_instance(requester, definition.id, "x")

    def test_get_and_list(self, definitions, author):
        definition = definitions.create_definition(author, TASK_WORKFLOW)
        private = definitions.create_definition(author, dict(TASK_WORKFLOW, permissions={}))

        with pytest.raises(WorkflowNotFound):
            definitions.get_definition(author, "missing")
        with pytest.raises(PermissionDenied):
            definitions.get_definition(Actor(id="stranger"), private.id)

        visible = {d.id for d in definitions.list_definitions(Actor(id="stranger"))}
        assert visible == {definition.id}
        assert {d.id for d in definitions.list_definitions(author, status=DefinitionStatus.DRAFT)} == {
            definition.id, private.id
        }

    def test_only_managers_publish(self, definitions, author):
        payload = dict(TASK_WORKFLOW, permissions={"canEdit": ["editor"]})
        definition = definitions.create_definition(author, payload)

        definitions.update_definition(EDITOR, definition.id, payload)
        with pytest.raises(PermissionDenied):
            definitions.publish_definition(EDITOR, definition.id)
        with pytest.raises(PermissionDenied):
            definitions.update_definition(Actor(id="stranger"), definition.id, payload)

    def test_authoring_flags_are_stored_only(self, definitions, author, admin, engine, requester):
        """autoStart and requireApproval round-trip but do not change execution."""
        payload = dict(TASK_WORKFLOW, settings={"autoStart": True, "requireApproval": True})
        definition = definitions.create_definition(author, payload)
        published = definitions.publish_definition(author, definition.id)

        assert published.settings.auto_start is True
        assert published.settings.require_approval is True
        assert engine.list_instances(admin).instances == []

        instance = engine.start_instance(requester, definition.id, "x")
        finished = engine.submit_action(requester, instance.id, "review", "complete")
        assert finished.status == InstanceStatus.COMPLETED
        assert finished.pending_approvals == {}

    def test_validate_definition_reports_without_raising(self, definitions):
        result = definitions.validate_definition(draft(
            [node("start", "start"), node("done", "end"), node("island", "task")],
            [edge("start", "done")],
        ))
        assert not result.is_valid
        assert any("island" in error for error in result.errors)


class TestAccessPolicy:
    """Direct checks of AccessPolicy decisions."""

    @pytest.fixture
    def policy(self):
        return AccessPolicy()

    @pytest.fixture
    def definition(self):
        return WorkflowDefinition.model_validate({
            **TASK_WORKFLOW, "id": "def-1", "created_by": "owner",
            "permissions": {"canStart": ["starter"], "canView": ["viewer"]},
        })

    @pytest.fixture
    def instance(self):
        return WorkflowInstance(
            id="inst-1", definition_id="def-1", definition_version=1, title="x", initiated_by="starter",
            assigned_to=["helper"], permissions={"can_manage": ["owner"]},
            open_tasks={"root": OpenTask(task_id="t1", node_id="review", assigned_to=["worker"])},
        )

    def test_definition_permissions(self, policy, definition):
        assert policy.can(Actor(id="owner"), Permission.MANAGE_DEFINITION, definition)
        assert policy.can(Actor(id="starter"), Permission.START_INSTANCE, definition)
        assert policy.can(Actor(id="starter"), Permission.VIEW_DEFINITION, definition)
        assert policy.can(Actor(id="viewer"), Permission.VIEW_DEFINITION, definition)
        assert not policy.can(Actor(id="viewer"), Permission.START_INSTANCE, definition)
        assert not policy.can(Actor(id="starter"), Permission.EDIT_DEFINITION, definition)

    def test_instance_permissions(self, policy, instance):
        for actor_id in ("starter", "helper", "worker", "owner"):
            assert policy.can(Actor(id=actor_id), Permission.ACT_ON_INSTANCE, instance)
        assert not policy.can(Actor(id="stranger"), Permission.VIEW_INSTANCE, instance)
        assert policy.can(Actor(id="starter"), Permission.CANCEL_INSTANCE, instance)
        assert not policy.can(Actor(id="worker"), Permission.CANCEL_INSTANCE, instance)

    def test_roles_and_system_actor(self, policy, instance):
        admin = Actor(id="root", roles=["admin"])
        assert policy.can(admin, Permission.CANCEL_INSTANCE, instance)
        assert not policy.can(admin, Permission.TIMEOUT_INSTANCE, instance)
        assert policy.can(SYSTEM_ACTOR, Permission.TIMEOUT_INSTANCE, instance)
        assert policy.can(Actor(id="svc", capabilities=[Capability.SYSTEM]), Permission.TIMEOUT_INSTANCE, instance)

    def test_approval_responses_need_eligibility(self, policy):
        request = ApprovalRequest(id="a1", instance_id="i1", node_id="n", token="root", approvers=["mgr1"])
        assert policy.can(Actor(id="mgr1"), Permission.RESPOND_TO_APPROVAL, request)
        assert not policy.can(Actor(id="root", roles=["admin"]), Permission.RESPOND_TO_APPROVAL, request)

    def test_require_raises(self, policy, instance):
        with pytest.raises(PermissionDenied) as exc_info:
            policy.require(Actor(id="stranger"), Permission.VIEW_INSTANCE, instance)
        assert exc_info.value.context["actor_id"] == "stranger"

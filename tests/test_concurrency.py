"""Concurrency tests: optimistic versioning, threaded branches and racing approvers."""

import threading

import pytest

from flowengine.config import get_testing_config
from flowengine.core.exceptions import ConcurrentModification
from flowengine.core.permissions import Actor
from flowengine.core.scheduler import BranchScheduler, InlineBranchScheduler, ThreadPoolBranchScheduler
from flowengine.factory import create_workflow_system
from flowengine.models.core import ApprovalStatus, HistoryAction, InstanceStatus, replay
from flowengine.storage.repository import ChangeSet, InMemoryRepository
from tests.workflow_fixtures import PARALLEL_WORKFLOW, draft, edge, node


class FlakyRepository(InMemoryRepository):
    """Rejects the first ``conflicts`` commits as if another writer got there first."""

    def __init__(self, conflicts: int = 0):
        super().__init__()
        self.conflicts = conflicts
        self.rejected = 0

    def commit(self, changes, expected_version):
        if self.rejected < self.conflicts:
            self.rejected += 1
            raise ConcurrentModification(changes.instance.id, expected_version=expected_version,
                                         actual_version=expected_version + 1)
        super().commit(changes, expected_version)


def wide_fan_out(branches: int):
    """Parallel node whose branches are notification steps feeding one merge."""
    names = [f"b{index}" for index in range(branches)]
    nodes = [node("start", "start"), node("split", "parallel", mergeNode="join")]
    nodes += [node(name, "notification", notifications=[{"type": "info", "recipients": ["initiator"]}])
              for name in names]
    nodes += [node("join", "merge"), node("done", "end")]
    edges = [edge("start", "split"), edge("join", "done")]
    for name in names:
        edges += [edge("split", name), edge(name, "join")]
    return draft(nodes, edges, name="Wide fan-out")


@pytest.fixture
def threaded_system(notifications, tasks, audit, integrations, directory, clock):
    scheduler = ThreadPoolBranchScheduler(max_workers=4)
    system = create_workflow_system(
        config=get_testing_config(),
        task_service=tasks,
        notification_service=notifications,
        integration_service=integrations,
        audit_sink=audit,
        directory=directory,
        scheduler=scheduler,
        clock=clock,
        sleep=lambda seconds: None
    )
    yield system, scheduler
    system.shutdown()


def publish_with(system, payload):
    author = Actor(id="author")
    definition = system.definitions.create_definition(author, payload)
    return system.definitions.publish_definition(author, definition.id)


class HeldScheduler(BranchScheduler):
    """Keeps scheduled branches without running them, as if the process stopped."""

    def __init__(self):
        self.held = []

    def schedule(self, task, instance_id, token):
        self.held.append((instance_id, token))


def system_on(repository, scheduler, notifications, tasks, directory, clock):
    return create_workflow_system(
        config=get_testing_config(), repository=repository, scheduler=scheduler,
        task_service=tasks, notification_service=notifications, directory=directory,
        clock=clock, sleep=lambda seconds: None
    )


class TestOptimisticVersioning:
    """Stale writers are rejected instead of overwriting newer state."""

    def test_expected_version_mismatch(self, engine, task_workflow, requester):
        instance = engine.start_instance(requester, task_workflow.id, "x")
        with pytest.raises(ConcurrentModification) as exc_info:
            engine.submit_action(requester, instance.id, "review", "complete", expected_version=7)
        assert exc_info.value.details["actual_version"] == 1

        instance = engine.submit_action(requester, instance.id, "review", "complete", expected_version=1)
        assert instance.version == 2

    def test_stale_commit_is_rejected(self, engine, system, task_workflow, requester):
        instance = engine.start_instance(requester, task_workflow.id, "x")
        stale = system.repository.get_instance(instance.id)
        engine.submit_action(requester, instance.id, None, "cancel")

        stale.version = 2
        stale.title = "lost update"
        with pytest.raises(ConcurrentModification):
            system.repository.commit(ChangeSet(stale), expected_version=1)
        assert system.repository.get_instance(instance.id).status == InstanceStatus.CANCELLED

    def test_branch_step_retries_lost_race(self, notifications, directory, clock):
        repository = FlakyRepository(conflicts=2)
        system = create_workflow_system(
            config=get_testing_config(),
            repository=repository,
            notification_service=notifications,
            directory=directory,
            clock=clock,
            sleep=lambda seconds: None
        )
        definition = publish_with(system, PARALLEL_WORKFLOW)
        requester = Actor(id="requester")

        instance = system.engine.start_instance(requester, definition.id, "x")
        instance = system.engine.get_instance(requester, instance.id)

        assert repository.rejected == 2
        assert instance.active_nodes == ["left", "right"]
        assert instance.pending_tokens == []


class TestThreadedBranches:
    """Branches dispatched to a thread pool."""

    def test_branches_run_on_pool(self, threaded_system, requester):
        system, scheduler = threaded_system
        definition = publish_with(system, PARALLEL_WORKFLOW)

        instance = system.engine.start_instance(requester, definition.id, "x")
        scheduler.wait_idle()
        instance = system.engine.get_instance(requester, instance.id)
        assert instance.active_nodes == ["left", "right"]

        results = []

        def complete(node_id):
            results.append(system.engine.submit_action(requester, instance.id, node_id, "complete"))

        workers = [threading.Thread(target=complete, args=(node_id,)) for node_id in ("left", "right")]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        final = system.engine.get_instance(requester, instance.id)
        assert final.status == InstanceStatus.COMPLETED
        assert [e.action for e in final.history].count(HistoryAction.JOIN_RELEASED) == 1
        assert len(results) == 2

    def test_wide_fan_out_joins_once(self, threaded_system, requester):
        system, scheduler = threaded_system
        definition = publish_with(system, wide_fan_out(8))

        instance = system.engine.start_instance(requester, definition.id, "x")
        scheduler.wait_idle()
        instance = system.engine.get_instance(requester, instance.id)

        actions = [entry.action for entry in instance.history]
        assert instance.status == InstanceStatus.COMPLETED
        assert actions.count(HistoryAction.JOIN_RELEASED) == 1
        assert actions.count(HistoryAction.BRANCH_ARRIVED) == 7
        assert actions.count(HistoryAction.WORKFLOW_COMPLETED) == 1
        assert [entry.seq for entry in instance.history] == list(range(1, len(instance.history) + 1))
        assert replay(instance.history).status == InstanceStatus.COMPLETED
        assert system.repository.list_joins(instance.id) == []

    def test_duplicate_dispatch_after_completion(self, threaded_system, requester):
        system, scheduler = threaded_system
        definition = publish_with(system, wide_fan_out(3))
        instance = system.engine.start_instance(requester, definition.id, "x")
        scheduler.wait_idle()

        for token in instance.pending_tokens:
            assert system.engine.advance_branch(instance.id, token) is False


class TestRacingApprovers:
    def test_concurrent_responses_resolve_once(self, publish, engine, requester):
        approvers = [f"a{index}" for index in range(6)]
        definition = publish(draft(
            [
                node("start", "start"),
                node("approve", "approval", approvers=approvers, approvalType="all"),
                node("done", "end"),
                node("stop", "end"),
            ],
            [edge("start", "approve"), edge("approve", "done", "approved"), edge("approve", "stop", "rejected")],
        ))
        instance = engine.start_instance(requester, definition.id, "x")
        approval_id = next(iter(instance.pending_approvals.values()))
        barrier = threading.Barrier(len(approvers))

        def respond(approver):
            barrier.wait()
            engine.submit_action(Actor(id=approver), instance.id, "approve", "approve")

        workers = [threading.Thread(target=respond, args=(approver,)) for approver in approvers]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        final = engine.get_instance(requester, instance.id)
        request = engine.get_approval(approval_id)
        assert final.status == InstanceStatus.COMPLETED
        assert request.status == ApprovalStatus.APPROVED
        assert sorted(response.approver for response in request.responses) == approvers
        assert [e.action for e in final.history].count(HistoryAction.APPROVAL_RESOLVED) == 1


class TestThreadPoolScheduler:
    """wait_idle semantics of the thread pool scheduler."""

    def test_wait_idle_times_out_while_a_branch_is_blocked(self):
        scheduler = ThreadPoolBranchScheduler(max_workers=2)
        release = threading.Event()
        finished = []

        def branch(instance_id, token):
            release.wait(5)
            finished.append(token)

        try:
            scheduler.schedule(branch, "inst-1", "t1")
            with pytest.raises(TimeoutError):
                scheduler.wait_idle(timeout=0.05)

            release.set()
            scheduler.wait_idle(timeout=5)
            assert finished == ["t1"]
        finally:
            release.set()
            scheduler.shutdown()

    def test_wait_idle_follows_branches_scheduled_meanwhile(self):
        scheduler = ThreadPoolBranchScheduler(max_workers=2)
        seen = []

        def branch(instance_id, token):
            seen.append(token)
            if token == "t1":
                scheduler.schedule(branch, instance_id, "t2")

        try:
            scheduler.schedule(branch, "inst-1", "t1")
            scheduler.wait_idle(timeout=5)
            assert sorted(seen) == ["t1", "t2"]
        finally:
            scheduler.shutdown()


class TestResumeAfterRestart:
    """Pending branch tokens are durable and can be driven by a fresh engine."""

    def _stopped_instance(self, repository, notifications, tasks, directory, clock):
        held = HeldScheduler()
        before = system_on(repository, held, notifications, tasks, directory, clock)
        definition = publish_with(before, wide_fan_out(2))
        instance = before.engine.start_instance(Actor(id="requester"), definition.id, "Interrupted")
        assert len(held.held) == 2
        return instance

    def test_advance_drives_pending_tokens(self, notifications, tasks, directory, clock):
        repository = InMemoryRepository()
        instance = self._stopped_instance(repository, notifications, tasks, directory, clock)
        stored = repository.get_instance(instance.id)
        assert len(stored.pending_tokens) == 2
        assert stored.status == InstanceStatus.RUNNING

        after = system_on(repository, InlineBranchScheduler(), notifications, tasks, directory, clock)
        resumed = after.engine.advance(instance.id)

        assert resumed.status == InstanceStatus.COMPLETED
        assert resumed.pending_tokens == []
        assert [e.action for e in resumed.history].count(HistoryAction.JOIN_RELEASED) == 1
        # nothing left to drive
        assert after.engine.advance(instance.id).version == resumed.version

    def test_resume_pending_counts_dispatched_tokens(self, notifications, tasks, directory, clock):
        repository = InMemoryRepository()
        instance = self._stopped_instance(repository, notifications, tasks, directory, clock)

        after = system_on(repository, InlineBranchScheduler(), notifications, tasks, directory, clock)
        assert after.engine.resume_pending() == 2
        assert repository.get_instance(instance.id).status == InstanceStatus.COMPLETED
        assert after.engine.resume_pending() == 0

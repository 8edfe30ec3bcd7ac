"""Tests for the data-export workflow engine lifecycle."""

import threading
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import OTHER_PROJECT, PROJECT, UNREACHABLE_DB, FakeResolver
from src.api_errors import (
    AuthorizationError,
    ConflictError,
    ErrorCode,
    ExportGovernanceError,
    ExternalServiceError,
    NotFoundError,
    PartialFailureError,
    ValidationError,
)
from src.data_export import (
    ExportStatus,
    StepState,
    WorkflowEngine,
    WorkflowStatus,
)


@pytest.fixture
def two_step(resolver):
    resolver.plan = [("approve", ["alice"]), ("approve", ["bob"])]
    return resolver


def _create(engine, task_uids, requester="carol", name="monthly sales"):
    return engine.create_workflow(requester, PROJECT, name, "export for finance", task_uids)


# ── Creation ─────────────────────────────────────────────────────────


class TestCreateWorkflow:
    def test_initial_state(self, engine, register):
        t1, t2 = register(), register()
        uid = _create(engine, [t1, t2])

        wf = engine.get_workflow(PROJECT, uid)
        assert wf.status == WorkflowStatus.WAIT_FOR_AUDIT
        assert wf.current_step_number == 1
        assert wf.version == 1
        assert wf.task_uids == [t1, t2]
        assert [s.state for s in wf.steps] == [StepState.INIT]
        assert wf.steps[0].assignees == frozenset({"alice"})
        assert wf.status_changed_at == wf.create_time

    def test_claims_tasks(self, engine, registry, register):
        t1 = register()
        uid = _create(engine, [t1])
        assert registry.get_tasks([t1])[0].claimed_by_workflow_uid == uid

    def test_empty_task_list(self, engine):
        with pytest.raises(ValidationError):
            _create(engine, [])

    def test_duplicate_tasks(self, engine, register):
        t1 = register()
        with pytest.raises(ValidationError):
            _create(engine, [t1, t1])

    def test_blank_name(self, engine, register):
        with pytest.raises(ValidationError) as exc_info:
            engine.create_workflow("carol", PROJECT, "   ", "", [register()])
        assert exc_info.value.error_code == ErrorCode.MISSING_REQUIRED_FIELD

    def test_unknown_task(self, engine, register):
        with pytest.raises(ValidationError) as exc_info:
            _create(engine, [register(), "nope"])
        assert exc_info.value.error_code == ErrorCode.UNKNOWN_TASK

    def test_task_from_other_project(self, engine, register):
        foreign = register(project_uid=OTHER_PROJECT)
        with pytest.raises(ValidationError):
            _create(engine, [foreign])

    def test_task_already_claimed(self, engine, register):
        t1 = register()
        _create(engine, [t1])
        with pytest.raises(ConflictError) as exc_info:
            _create(engine, [t1])
        assert exc_info.value.error_code == ErrorCode.TASK_ALREADY_CLAIMED

    def test_empty_plan_rejected(self, engine, resolver, register):
        resolver.plan = []
        with pytest.raises(ValidationError) as exc_info:
            _create(engine, [register()])
        assert exc_info.value.error_code == ErrorCode.EMPTY_ASSIGNEES

    def test_step_without_assignees_rejected(self, engine, resolver, registry, register):
        resolver.plan = [("approve", ["alice"]), ("approve", [])]
        t1 = register()
        with pytest.raises(ValidationError) as exc_info:
            _create(engine, [t1])
        assert exc_info.value.error_code == ErrorCode.EMPTY_ASSIGNEES
        assert registry.get_tasks([t1])[0].claimed_by_workflow_uid is None

    def test_resolver_failure_is_external(self, engine, resolver, register):
        def boom(project_uid, action_kind):
            raise TimeoutError("iam unreachable")

        resolver.resolve_approval_steps = boom
        with pytest.raises(ExternalServiceError):
            _create(engine, [register()])

    def test_assignees_frozen_at_creation(self, engine, resolver, register):
        uid = _create(engine, [register()])
        resolver.plan = [("approve", ["zed"])]
        wf = engine.get_workflow(PROJECT, uid)
        assert wf.steps[0].assignees == frozenset({"alice"})
        assert resolver.resolve_calls == 1

    def test_released_init_task_can_be_reclaimed(self, engine, register):
        t1 = register()
        first = _create(engine, [t1])
        engine.cancel(first, "carol")
        second = _create(engine, [t1])
        assert second != first


# ── Approval ─────────────────────────────────────────────────────────


class TestApprove:
    def test_scenario_single_step(self, engine, register):
        uid = _create(engine, [register()])
        wf = engine.approve(uid, "alice")
        assert wf.status == WorkflowStatus.WAIT_FOR_EXECUTION

        with pytest.raises(ConflictError):
            engine.approve(uid, "bob")

    def test_scenario_non_assignee_rejected(self, engine, register):
        uid = _create(engine, [register()])
        with pytest.raises(AuthorizationError):
            engine.approve(uid, "bob")
        wf = engine.get_workflow(PROJECT, uid)
        assert wf.status == WorkflowStatus.WAIT_FOR_AUDIT
        assert wf.version == 1

    def test_scenario_two_steps(self, engine, two_step, register):
        uid = _create(engine, [register()])

        wf = engine.approve(uid, "alice")
        assert wf.current_step_number == 2
        assert wf.status == WorkflowStatus.WAIT_FOR_AUDIT

        wf = engine.approve(uid, "bob")
        assert wf.status == WorkflowStatus.WAIT_FOR_EXECUTION
        assert wf.current_step_number == 2
        assert [s.state for s in wf.steps] == [StepState.APPROVED, StepState.APPROVED]

    def test_pointer_advances_by_one(self, engine, resolver, register):
        resolver.plan = [("approve", ["a"]), ("approve", ["b"]), ("approve", ["c"])]
        uid = _create(engine, [register()])
        pointers = [engine.get_workflow(PROJECT, uid).current_step_number]
        for approver in ("a", "b"):
            pointers.append(engine.approve(uid, approver).current_step_number)
        assert pointers == [1, 2, 3]

    def test_intermediate_approval_keeps_status_changed_at(self, engine, two_step, register, clock):
        uid = _create(engine, [register()])
        created = engine.get_workflow(PROJECT, uid).status_changed_at
        clock.advance(hours=1)
        wf = engine.approve(uid, "alice")
        assert wf.status_changed_at == created
        clock.advance(hours=1)
        wf = engine.approve(uid, "bob")
        assert wf.status_changed_at == created + timedelta(hours=2)

    def test_step_records_operator(self, engine, register, clock):
        uid = _create(engine, [register()])
        engine.approve(uid, "alice")
        step = engine.get_workflow(PROJECT, uid).steps[0]
        assert step.operation_user_uid == "alice"
        assert step.operation_time == clock.now

    def test_admin_may_approve(self, engine, resolver, register):
        resolver.admins.add("root")
        uid = _create(engine, [register()])
        assert engine.approve(uid, "root").status == WorkflowStatus.WAIT_FOR_EXECUTION

    def test_replayed_step_is_conflict(self, engine, two_step, register):
        uid = _create(engine, [register()])
        engine.approve(uid, "alice", step_number=1)
        before = engine.get_workflow(PROJECT, uid)

        with pytest.raises(ConflictError):
            engine.approve(uid, "alice", step_number=1)
        with pytest.raises(ConflictError):
            engine.reject(uid, "alice", "late", step_number=1)
        assert engine.get_workflow(PROJECT, uid) == before

    def test_version_increments(self, engine, two_step, register):
        uid = _create(engine, [register()])
        assert engine.approve(uid, "alice").version == 2
        assert engine.approve(uid, "bob").version == 3

    def test_unknown_workflow(self, engine):
        with pytest.raises(NotFoundError) as exc_info:
            engine.approve("missing", "alice")
        assert exc_info.value.error_code == ErrorCode.WORKFLOW_NOT_FOUND

    def test_concurrent_approvals_one_wins(self, engine, resolver, register):
        resolver.plan = [("approve", ["alice", "dave"]), ("approve", ["bob"])]
        uid = _create(engine, [register()])
        barrier = threading.Barrier(2)
        results = []

        def approve(actor):
            barrier.wait()
            try:
                engine.approve(uid, actor)
                results.append("ok")
            except (ConflictError, AuthorizationError):
                results.append("lost")

        threads = [threading.Thread(target=approve, args=(a,)) for a in ("alice", "dave")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        wf = engine.get_workflow(PROJECT, uid)
        assert results.count("ok") >= 1
        assert wf.current_step_number == 2
        assert wf.version == 2
        assert wf.steps[1].state == StepState.INIT


# ── Reject / cancel ──────────────────────────────────────────────────


class TestRejectAndCancel:
    def test_reject(self, engine, two_step, registry, register):
        t1 = register()
        uid = _create(engine, [t1])
        wf = engine.reject(uid, "alice", "too broad")
        assert wf.status == WorkflowStatus.REJECTED
        assert wf.steps[0].state == StepState.REJECTED
        assert wf.steps[0].reason == "too broad"
        assert wf.steps[1].state == StepState.INIT
        assert wf.steps[1].operation_user_uid is None
        assert registry.get_tasks([t1])[0].claimed_by_workflow_uid is None

    def test_reject_requires_reason(self, engine, register):
        uid = _create(engine, [register()])
        with pytest.raises(ValidationError):
            engine.reject(uid, "alice", "")

    def test_reject_by_non_assignee(self, engine, register):
        uid = _create(engine, [register()])
        with pytest.raises(AuthorizationError):
            engine.reject(uid, "mallory", "no")

    def test_scenario_cancel_then_approve(self, engine, register, clock):
        uid = _create(engine, [register()])
        wf = engine.cancel(uid, "carol")
        assert wf.status == WorkflowStatus.CANCELED
        step = wf.steps[0]
        assert step.state == StepState.INIT
        assert step.operation_user_uid == "carol"
        assert step.operation_time == clock.now

        with pytest.raises(ConflictError):
            engine.approve(uid, "alice")

    def test_cancel_after_approval_keeps_approver(self, engine, register):
        uid = _create(engine, [register()])
        engine.approve(uid, "alice")
        wf = engine.cancel(uid, "carol")
        assert wf.status == WorkflowStatus.CANCELED
        assert wf.steps[0].operation_user_uid == "alice"
        assert wf.steps[0].state == StepState.APPROVED

    def test_cancel_by_stranger(self, engine, register):
        uid = _create(engine, [register()])
        with pytest.raises(AuthorizationError):
            engine.cancel(uid, "alice")

    def test_cancel_by_admin(self, engine, resolver, register):
        resolver.admins.add("root")
        uid = _create(engine, [register()])
        assert engine.cancel(uid, "root").status == WorkflowStatus.CANCELED

    def test_terminal_rejects_everything(self, engine, register):
        uid = _create(engine, [register()])
        engine.reject(uid, "alice", "no")
        before = engine.get_workflow(PROJECT, uid)

        with pytest.raises(ConflictError):
            engine.approve(uid, "alice")
        with pytest.raises(ConflictError):
            engine.reject(uid, "alice", "again")
        with pytest.raises(ConflictError):
            engine.cancel(uid, "carol")
        with pytest.raises(ConflictError):
            engine.execute(uid, "carol")
        assert engine.get_workflow(PROJECT, uid) == before


# ── Execution ────────────────────────────────────────────────────────


class TestExecute:
    def test_all_succeed(self, engine, registry, register, artifact_store):
        t1, t2 = register(), register()
        uid = _create(engine, [t1, t2])
        engine.approve(uid, "alice")

        report = engine.execute(uid, "carol")
        assert report.status == WorkflowStatus.FINISHED
        assert sorted(report.succeeded) == sorted([t1, t2])
        report.raise_for_failures()

        wf = engine.get_workflow(PROJECT, uid)
        assert wf.status == WorkflowStatus.FINISHED
        for task in registry.get_tasks([t1, t2]):
            assert task.export_status == ExportStatus.SUCCESS
            assert task.export_file_name == f"monthly sales-{task.uid}.zip"
            assert task.export_start_time is not None
            assert task.export_end_time is not None
            assert task.claimed_by_workflow_uid is None
            assert artifact_store.exists(task.uid)

    def test_scenario_partial_failure(self, engine, registry, register):
        t1 = register()
        t2 = register(db_service_uid=UNREACHABLE_DB)
        uid = _create(engine, [t1, t2])
        engine.approve(uid, "alice")

        report = engine.execute(uid, "carol")
        assert report.status == WorkflowStatus.EXEC_FAILED
        assert engine.get_workflow(PROJECT, uid).status == WorkflowStatus.EXEC_FAILED

        task1, task2 = registry.get_tasks([t1, t2])
        assert task1.export_status == ExportStatus.SUCCESS
        assert task2.export_status == ExportStatus.FAILED
        assert task2.error_message

        assert registry.get_artifact(t1, "carol")
        with pytest.raises(PartialFailureError) as exc_info:
            report.raise_for_failures()
        assert list(exc_info.value.failed) == [t2]
        assert exc_info.value.succeeded == [t1]

    def test_requires_wait_for_execution(self, engine, register):
        uid = _create(engine, [register()])
        with pytest.raises(ConflictError):
            engine.execute(uid, "carol")

    def test_executor_must_be_creator_or_admin(self, engine, register):
        uid = _create(engine, [register()])
        engine.approve(uid, "alice")
        with pytest.raises(AuthorizationError):
            engine.execute(uid, "alice")
        assert engine.get_workflow(PROJECT, uid).status == WorkflowStatus.WAIT_FOR_EXECUTION

    def test_execute_twice(self, engine, register):
        uid = _create(engine, [register()])
        engine.approve(uid, "alice")
        engine.execute(uid, "carol")
        with pytest.raises(ConflictError):
            engine.execute(uid, "carol")

    def test_exported_task_cannot_be_reused(self, engine, register):
        t1 = register()
        uid = _create(engine, [t1])
        engine.approve(uid, "alice")
        engine.execute(uid, "carol")
        with pytest.raises(ConflictError):
            _create(engine, [t1])

    def test_export_crash_marks_all_failed(self, engine, registry, register):
        t1 = register()
        uid = _create(engine, [t1])
        engine.approve(uid, "alice")

        def crash(task_uids, file_name_prefix=None):
            raise RuntimeError("pool exploded")

        registry.export_all = crash
        report = engine.execute(uid, "carol")
        assert report.status == WorkflowStatus.EXEC_FAILED
        assert "pool exploded" in report.failed[t1]
        assert registry.get_tasks([t1])[0].export_status == ExportStatus.FAILED


class TestOutcomeCommitFailures:
    """Storage errors while recording execution outcomes."""

    @staticmethod
    def _fail_outcome_commits(monkeypatch, repository, times):
        real_commit = repository.commit_transition
        failures = []

        def commit(workflow, **kwargs):
            if kwargs["expected_status"] == WorkflowStatus.EXECUTING and len(failures) < times:
                failures.append(workflow.status)
                raise OperationalError("UPDATE data_export_workflows", {}, Exception("database is locked"))
            return real_commit(workflow, **kwargs)

        monkeypatch.setattr(repository, "commit_transition", commit)
        return failures

    def test_single_failure_is_retried(self, monkeypatch, engine, registry, repository, register):
        t1 = register()
        uid = _create(engine, [t1])
        engine.approve(uid, "alice")
        failures = self._fail_outcome_commits(monkeypatch, repository, times=1)

        report = engine.execute(uid, "carol")
        assert len(failures) == 1
        assert report.status == WorkflowStatus.FINISHED
        assert engine.get_workflow(PROJECT, uid).status == WorkflowStatus.FINISHED
        task = registry.get_tasks([t1])[0]
        assert task.export_status == ExportStatus.SUCCESS
        assert task.claimed_by_workflow_uid is None

    def test_exhausted_retries_record_exec_failed(
        self, monkeypatch, engine, registry, repository, register, config
    ):
        t1, t2 = register(), register()
        uid = _create(engine, [t1, t2])
        engine.approve(uid, "alice")
        failures = self._fail_outcome_commits(monkeypatch, repository, times=config.commit_retry_attempts)

        report = engine.execute(uid, "carol")
        assert len(failures) == config.commit_retry_attempts
        assert report.status == WorkflowStatus.EXEC_FAILED
        assert sorted(report.failed) == sorted([t1, t2])

        wf = engine.get_workflow(PROJECT, uid)
        assert wf.status == WorkflowStatus.EXEC_FAILED
        for task in registry.get_tasks([t1, t2]):
            assert task.export_status == ExportStatus.FAILED
            assert task.export_file_name is None
            assert task.error_message == "export outcome could not be recorded"
            assert task.claimed_by_workflow_uid is None

    def test_unrecordable_outcome_raises_database_error(self, monkeypatch, engine, repository, register):
        uid = _create(engine, [register()])
        engine.approve(uid, "alice")
        self._fail_outcome_commits(monkeypatch, repository, times=100)

        with pytest.raises(ExportGovernanceError) as exc_info:
            engine.execute(uid, "carol")
        assert exc_info.value.error_code == ErrorCode.DATABASE_ERROR


# ── Queries ──────────────────────────────────────────────────────────


class TestQueries:
    def test_get_workflow_wrong_project(self, engine, register):
        uid = _create(engine, [register()])
        with pytest.raises(NotFoundError):
            engine.get_workflow(OTHER_PROJECT, uid)

    def test_list_newest_first_with_pagination(self, engine, register, clock):
        uids = []
        for i in range(3):
            uids.append(_create(engine, [register()], name=f"wf {i}"))
            clock.advance(minutes=1)

        rows, total = engine.list_workflows(PROJECT, page=1, page_size=2)
        assert total == 3
        assert [r.uid for r in rows] == [uids[2], uids[1]]

        rows, _ = engine.list_workflows(PROJECT, page=2, page_size=2)
        assert [r.uid for r in rows] == [uids[0]]

    def test_list_filters(self, engine, two_step, register, clock):
        a = _create(engine, [register()], name="Quarterly revenue")
        clock.advance(hours=1)
        b = _create(engine, [register(db_service_uid=UNREACHABLE_DB)], requester="erin", name="churn")
        engine.approve(b, "alice")

        assert [r.uid for r in engine.list_workflows(PROJECT, keyword="REVENUE")[0]] == [a]
        assert [r.uid for r in engine.list_workflows(PROJECT, creator_uid="erin")[0]] == [b]
        assert [r.uid for r in engine.list_workflows(PROJECT, assignee_uid="bob")[0]] == [b]
        assert [r.uid for r in engine.list_workflows(PROJECT, assignee_uid="alice")[0]] == [a]
        assert [r.uid for r in engine.list_workflows(PROJECT, db_service_uid=UNREACHABLE_DB)[0]] == [b]
        assert [r.uid for r in engine.list_workflows(PROJECT, status="wait_for_audit")[0]] == [b, a]

        rows, total = engine.list_workflows(PROJECT, created_to=clock.now - timedelta(minutes=30))
        assert total == 1 and rows[0].uid == a

    def test_summary_has_current_assignees(self, engine, two_step, register):
        uid = _create(engine, [register()])
        engine.approve(uid, "alice")
        row = engine.list_workflows(PROJECT)[0][0]
        assert row.current_step_number == 2
        assert row.current_step_assignees == frozenset({"bob"})

    def test_viewer_visibility(self, engine, resolver, register):
        resolver.admins.add("root")
        uid = _create(engine, [register()])

        assert engine.list_workflows(PROJECT, viewer_uid="carol")[1] == 1
        assert engine.list_workflows(PROJECT, viewer_uid="alice")[1] == 1
        assert engine.list_workflows(PROJECT, viewer_uid="root")[1] == 1
        assert engine.list_workflows(PROJECT, viewer_uid="mallory") == ([], 0)
        assert engine.list_workflows(OTHER_PROJECT, viewer_uid="carol") == ([], 0)
        assert uid

    def test_bad_pagination(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            engine.list_workflows(PROJECT, page=0)
        assert exc_info.value.error_code == ErrorCode.INVALID_PAGINATION

    def test_bad_status_filter(self, engine):
        with pytest.raises(ValidationError):
            engine.list_workflows(PROJECT, status="pending")

    def test_inverted_time_range(self, engine, clock):
        with pytest.raises(ValidationError) as exc_info:
            engine.list_workflows(PROJECT, created_from=clock.now, created_to=clock.now - timedelta(days=1))
        assert exc_info.value.error_code == ErrorCode.INVALID_DATE_RANGE


# ── Notifications ────────────────────────────────────────────────────


class TestTransitionNotifications:
    def test_recipients_follow_transitions(self, engine, two_step, dispatcher, notifier, register):
        uid = _create(engine, [register()])
        engine.approve(uid, "alice")
        engine.approve(uid, "bob")
        engine.cancel(uid, "carol")
        dispatcher.shutdown(wait=True)

        recipients = [m[2] for m in notifier.messages]
        assert recipients == [["alice"], ["bob"], ["carol"], ["carol"]]

    def test_engine_without_dispatcher(self, repository, registry, config, clock, register):
        engine = WorkflowEngine(repository, registry, FakeResolver(), config=config, now_fn=clock)
        uid = engine.create_workflow("carol", PROJECT, "quiet", "", [register()])
        assert engine.approve(uid, "alice").status == WorkflowStatus.WAIT_FOR_EXECUTION

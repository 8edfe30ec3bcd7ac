"""Tests for the workflow status graph."""

import pytest

from src.api_errors import ConflictError, ErrorCode
from src.data_export import (
    State,
    StateMachine,
    TERMINAL_STATUSES,
    Transition,
    WORKFLOW_STATE_MACHINE,
    WorkflowStatus,
    build_workflow_state_machine,
)


# ── Graph definition ──


class TestWorkflowGraph:
    def test_definition_is_valid(self):
        assert WORKFLOW_STATE_MACHINE.validate_workflow() == []

    def test_every_status_is_a_state(self):
        assert set(WORKFLOW_STATE_MACHINE.states) == set(WorkflowStatus)

    def test_terminal_states_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert WORKFLOW_STATE_MACHINE.is_terminal(status)
            assert WORKFLOW_STATE_MACHINE.get_available_transitions(status) == []

    def test_executing_is_not_cancelable(self):
        assert not WORKFLOW_STATE_MACHINE.can_transition(
            WorkflowStatus.EXECUTING, WorkflowStatus.CANCELED
        )
        assert not WORKFLOW_STATE_MACHINE.can_transition(
            WorkflowStatus.EXECUTING, WorkflowStatus.EXPIRED
        )

    def test_reject_only_while_waiting_for_audit(self):
        assert WORKFLOW_STATE_MACHINE.can_transition(
            WorkflowStatus.WAIT_FOR_AUDIT, WorkflowStatus.REJECTED
        )
        assert not WORKFLOW_STATE_MACHINE.can_transition(
            WorkflowStatus.WAIT_FOR_EXECUTION, WorkflowStatus.REJECTED
        )

    def test_execution_outcomes(self):
        targets = {
            t.to_state
            for t in WORKFLOW_STATE_MACHINE.get_available_transitions(WorkflowStatus.EXECUTING)
        }
        assert targets == {WorkflowStatus.FINISHED, WorkflowStatus.EXEC_FAILED}

    def test_allowed_transitions_mirror_edges(self):
        state = WORKFLOW_STATE_MACHINE.states[WorkflowStatus.WAIT_FOR_EXECUTION]
        assert set(state.allowed_transitions) == {
            WorkflowStatus.EXECUTING,
            WorkflowStatus.CANCELED,
            WorkflowStatus.EXPIRED,
        }

    def test_builder_returns_fresh_machine(self):
        assert build_workflow_state_machine() is not WORKFLOW_STATE_MACHINE


# ── Transition checks ──


class TestRequireTransition:
    def test_allowed_edge_passes(self):
        WORKFLOW_STATE_MACHINE.require_transition(
            WorkflowStatus.WAIT_FOR_EXECUTION, WorkflowStatus.EXECUTING
        )

    def test_disallowed_edge_raises(self):
        with pytest.raises(ConflictError) as exc_info:
            WORKFLOW_STATE_MACHINE.require_transition(
                WorkflowStatus.FINISHED, WorkflowStatus.EXECUTING, workflow_uid="wf-1"
            )
        err = exc_info.value
        assert err.error_code == ErrorCode.INVALID_STATE_TRANSITION
        assert err.status_code == 409
        assert err.details == [{
            "workflow_uid": "wf-1",
            "current_status": "finished",
            "target_status": "executing",
        }]


class TestValidation:
    def test_empty_machine(self):
        assert StateMachine().validate_workflow() == ["No states defined"]

    def test_terminal_with_exit_is_flagged(self):
        machine = StateMachine()
        machine.add_state(State(name=WorkflowStatus.FINISHED, is_terminal=True))
        machine.add_state(State(name=WorkflowStatus.EXECUTING))
        machine.add_transition(Transition(WorkflowStatus.FINISHED, WorkflowStatus.EXECUTING))
        errors = machine.validate_workflow()
        assert any("Terminal state has outgoing transition" in e for e in errors)

    def test_unknown_target_and_no_terminal(self):
        machine = StateMachine()
        machine.add_state(State(name=WorkflowStatus.WAIT_FOR_AUDIT))
        machine.add_transition(Transition(WorkflowStatus.WAIT_FOR_AUDIT, WorkflowStatus.REJECTED))
        errors = machine.validate_workflow()
        assert "Transition references unknown target state: rejected" in errors
        assert "No terminal state defined" in errors

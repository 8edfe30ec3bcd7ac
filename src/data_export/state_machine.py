"""Data-Export Workflow Engine - State Machine.

Declarative status graph for data-export workflows:

    wait_for_audit --approve(last step)--> wait_for_execution
    wait_for_execution --execute--> executing
    executing --> finished | exec_failed
    wait_for_audit --reject--> rejected
    wait_for_audit | wait_for_execution --cancel | expire--> canceled | expired
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from src.api_errors import ConflictError, ErrorCode
from .config import TERMINAL_STATUSES, WorkflowStatus


@dataclass
class State:
    """A single state in the workflow state machine."""

    name: WorkflowStatus
    allowed_transitions: List[WorkflowStatus] = field(default_factory=list)
    is_terminal: bool = False


@dataclass
class Transition:
    """A transition between two states."""

    from_state: WorkflowStatus
    to_state: WorkflowStatus
    label: str = ""


class StateMachine:
    """Status graph with transition checks."""

    def __init__(self, name: str = "default"):
        self.name = name
        self.states: Dict[WorkflowStatus, State] = {}
        self.transitions: List[Transition] = []

    def add_state(self, state: State) -> None:
        """Register a state in the machine."""
        self.states[state.name] = state

    def add_transition(self, transition: Transition) -> None:
        """Register a transition between states."""
        self.transitions.append(transition)
        if transition.from_state in self.states:
            src = self.states[transition.from_state]
            if transition.to_state not in src.allowed_transitions:
                src.allowed_transitions.append(transition.to_state)

    def can_transition(self, current: WorkflowStatus, target: WorkflowStatus) -> bool:
        return any(
            t.from_state == current and t.to_state == target for t in self.transitions
        )

    def require_transition(
        self,
        current: WorkflowStatus,
        target: WorkflowStatus,
        workflow_uid: Optional[str] = None,
    ) -> None:
        """Raise ConflictError unless *current* -> *target* is a declared edge."""
        if self.can_transition(current, target):
            return
        raise ConflictError(
            f"Cannot move workflow from '{current.value}' to '{target.value}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details=[{
                "workflow_uid": workflow_uid,
                "current_status": current.value,
                "target_status": target.value,
            }],
        )

    def get_available_transitions(self, current: WorkflowStatus) -> List[Transition]:
        """Return transitions available from *current* state."""
        return [t for t in self.transitions if t.from_state == current]

    def is_terminal(self, status: WorkflowStatus) -> bool:
        state = self.states.get(status)
        return bool(state and state.is_terminal)

    def validate_workflow(self) -> List[str]:
        """Validate the graph definition. Returns a list of error strings."""
        errors: List[str] = []

        if not self.states:
            errors.append("No states defined")
            return errors

        for trans in self.transitions:
            if trans.from_state not in self.states:
                errors.append(f"Transition references unknown source state: {trans.from_state.value}")
            if trans.to_state not in self.states:
                errors.append(f"Transition references unknown target state: {trans.to_state.value}")
            source = self.states.get(trans.from_state)
            if source is not None and source.is_terminal:
                errors.append(f"Terminal state has outgoing transition: {trans.from_state.value}")

        if not any(s.is_terminal for s in self.states.values()):
            errors.append("No terminal state defined")

        return errors


_EDGES: Iterable[tuple] = (
    (WorkflowStatus.WAIT_FOR_AUDIT, WorkflowStatus.WAIT_FOR_EXECUTION, "approve"),
    (WorkflowStatus.WAIT_FOR_AUDIT, WorkflowStatus.REJECTED, "reject"),
    (WorkflowStatus.WAIT_FOR_AUDIT, WorkflowStatus.CANCELED, "cancel"),
    (WorkflowStatus.WAIT_FOR_AUDIT, WorkflowStatus.EXPIRED, "expire"),
    (WorkflowStatus.WAIT_FOR_EXECUTION, WorkflowStatus.EXECUTING, "execute"),
    (WorkflowStatus.WAIT_FOR_EXECUTION, WorkflowStatus.CANCELED, "cancel"),
    (WorkflowStatus.WAIT_FOR_EXECUTION, WorkflowStatus.EXPIRED, "expire"),
    (WorkflowStatus.EXECUTING, WorkflowStatus.FINISHED, "all tasks succeeded"),
    (WorkflowStatus.EXECUTING, WorkflowStatus.EXEC_FAILED, "a task failed"),
)


def build_workflow_state_machine() -> StateMachine:
    """Build the data-export workflow status graph."""
    machine = StateMachine(name="data_export")
    for status in WorkflowStatus:
        machine.add_state(State(name=status, is_terminal=status in TERMINAL_STATUSES))
    for from_state, to_state, label in _EDGES:
        machine.add_transition(Transition(from_state=from_state, to_state=to_state, label=label))
    return machine


WORKFLOW_STATE_MACHINE = build_workflow_state_machine()

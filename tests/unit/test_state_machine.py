"""
Unit tests for the state machine.
"""

from workflow_engine.domain.enums import ExecutionStatus
from workflow_engine.domain.state_machine import ExecutionStateMachine


class TestExecutionStateMachine:
    """Tests for ExecutionStateMachine."""

    def test_valid_transition_pending_to_queued(self):
        """Test PENDING → QUEUED transition."""
        assert ExecutionStateMachine.can_transition(
            ExecutionStatus.PENDING,
            ExecutionStatus.QUEUED,
        )

    def test_valid_transition_queued_to_running(self):
        """Test QUEUED → RUNNING transition."""
        assert ExecutionStateMachine.can_transition(
            ExecutionStatus.QUEUED,
            ExecutionStatus.RUNNING,
        )

    def test_valid_transition_running_to_completed(self):
        """Test RUNNING → COMPLETED transition."""
        assert ExecutionStateMachine.can_transition(
            ExecutionStatus.RUNNING,
            ExecutionStatus.COMPLETED,
        )

    def test_valid_transition_pending_to_failed(self):
        """Test PENDING → FAILED transition (job could not be enqueued)."""
        assert ExecutionStateMachine.can_transition(
            ExecutionStatus.PENDING,
            ExecutionStatus.FAILED,
        )

    def test_valid_transition_to_cancelled(self):
        """Test cancellation from every non-terminal state."""
        for state in (ExecutionStatus.PENDING, ExecutionStatus.QUEUED, ExecutionStatus.RUNNING):
            assert ExecutionStateMachine.can_transition(state, ExecutionStatus.CANCELLED)

    def test_terminal_states_have_no_exits(self):
        """Test that nothing leaves COMPLETED, FAILED or CANCELLED."""
        for terminal in ExecutionStateMachine.TERMINAL_STATES:
            for target in ExecutionStatus:
                assert not ExecutionStateMachine.can_transition(terminal, target)

    def test_invalid_transition_queued_to_completed(self):
        """Test QUEUED → COMPLETED is rejected."""
        assert not ExecutionStateMachine.can_transition(
            ExecutionStatus.QUEUED,
            ExecutionStatus.COMPLETED,
        )

    def test_failed_cannot_restart(self):
        """Test that a failed execution is never moved back to running."""
        assert not ExecutionStateMachine.can_transition(
            ExecutionStatus.FAILED,
            ExecutionStatus.RUNNING,
        )

    def test_is_terminal(self):
        """Test terminal state detection."""
        assert ExecutionStateMachine.is_terminal(ExecutionStatus.COMPLETED)
        assert ExecutionStateMachine.is_terminal(ExecutionStatus.FAILED)
        assert ExecutionStateMachine.is_terminal(ExecutionStatus.CANCELLED)
        assert not ExecutionStateMachine.is_terminal(ExecutionStatus.RUNNING)
        assert not ExecutionStateMachine.is_terminal(ExecutionStatus.QUEUED)

    def test_can_retry(self):
        """Test retry eligibility."""
        assert ExecutionStateMachine.can_retry(ExecutionStatus.FAILED)
        assert ExecutionStateMachine.can_retry(ExecutionStatus.CANCELLED)
        assert not ExecutionStateMachine.can_retry(ExecutionStatus.COMPLETED)
        assert not ExecutionStateMachine.can_retry(ExecutionStatus.RUNNING)

    def test_can_cancel(self):
        """Test cancel eligibility."""
        assert ExecutionStateMachine.can_cancel(ExecutionStatus.QUEUED)
        assert ExecutionStateMachine.can_cancel(ExecutionStatus.RUNNING)
        assert not ExecutionStateMachine.can_cancel(ExecutionStatus.COMPLETED)


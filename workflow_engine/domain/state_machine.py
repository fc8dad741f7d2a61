"""
State machine for the workflow execution lifecycle.

Enforces valid status transitions. Stores apply the same rules as
conditional writes, so a transition that lost a race simply does not happen.
"""

from typing import Dict, FrozenSet

from .enums import ExecutionStatus


class ExecutionStateMachine:
    """
    State machine for execution status transitions.

    Valid transitions:
    - PENDING → QUEUED: Job accepted by a work queue
    - PENDING → FAILED: Job could not be enqueued
    - PENDING | QUEUED → RUNNING: A worker picked the job up
    - RUNNING → COMPLETED: All steps processed, or stopped early
    - PENDING | QUEUED | RUNNING → FAILED: Step, driver or system failure
    - PENDING | QUEUED | RUNNING → CANCELLED: Explicit cancel request

    COMPLETED, FAILED and CANCELLED are terminal. FAILED and CANCELLED
    executions are retried by creating a new execution, never by moving the
    old record out of its terminal state.
    """

    TRANSITIONS: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
        ExecutionStatus.PENDING: frozenset({
            ExecutionStatus.QUEUED,
            ExecutionStatus.RUNNING,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }),
        ExecutionStatus.QUEUED: frozenset({
            ExecutionStatus.RUNNING,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }),
        ExecutionStatus.RUNNING: frozenset({
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }),
        ExecutionStatus.COMPLETED: frozenset(),
        ExecutionStatus.FAILED: frozenset(),
        ExecutionStatus.CANCELLED: frozenset(),
    }

    TERMINAL_STATES: FrozenSet[ExecutionStatus] = frozenset({
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    })

    RETRYABLE_STATES: FrozenSet[ExecutionStatus] = frozenset({
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    })

    CANCELLABLE_STATES: FrozenSet[ExecutionStatus] = frozenset({
        ExecutionStatus.PENDING,
        ExecutionStatus.QUEUED,
        ExecutionStatus.RUNNING,
    })

    STARTABLE_STATES: FrozenSet[ExecutionStatus] = frozenset({
        ExecutionStatus.PENDING,
        ExecutionStatus.QUEUED,
    })

    @classmethod
    def can_transition(
        cls,
        from_state: ExecutionStatus,
        to_state: ExecutionStatus,
    ) -> bool:
        """Check if a transition is valid."""
        return to_state in cls.TRANSITIONS.get(from_state, frozenset())

    @classmethod
    def is_terminal(cls, state: ExecutionStatus) -> bool:
        """Check if a state is terminal (no further transitions possible)."""
        return state in cls.TERMINAL_STATES

    @classmethod
    def can_retry(cls, state: ExecutionStatus) -> bool:
        """Check if an execution in this state can be retried."""
        return state in cls.RETRYABLE_STATES

    @classmethod
    def can_cancel(cls, state: ExecutionStatus) -> bool:
        """Check if an execution in this state can be cancelled."""
        return state in cls.CANCELLABLE_STATES


"""
Domain enums for workflow execution.

These enums define the possible states for executions, step error policies,
log levels and circuit breakers. The state machine enforces valid
transitions between execution states.
"""

from enum import Enum


class ExecutionStatus(str, Enum):
    """
    Status of a workflow execution.

    State machine transitions:
    PENDING → QUEUED → RUNNING → COMPLETED (success path)
    PENDING → QUEUED → RUNNING → FAILED (step or driver failure)
    PENDING → FAILED (job could not be enqueued)
    PENDING | QUEUED | RUNNING → CANCELLED (explicit cancel request)

    - PENDING: Execution record created, job not yet enqueued
    - QUEUED: Job is waiting in a work queue
    - RUNNING: A worker is driving the step loop
    - COMPLETED: Every step was processed (or execution was stopped early)
    - FAILED: A step error was not absorbed, or the system interrupted it
    - CANCELLED: Execution was cancelled on request
    """
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OnErrorPolicy(str, Enum):
    """
    What the driver does when a step's processor fails.

    - FAIL: Mark the execution failed (default)
    - CONTINUE: Log a warning and run the next step
    - SKIP: Log a warning and skip past the failed step
    """
    FAIL = "fail"
    CONTINUE = "continue"
    SKIP = "skip"


class LogLevel(str, Enum):
    """Log levels for execution log entries."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class CircuitState(str, Enum):
    """
    State of a circuit breaker.

    - CLOSED: Calls pass through
    - OPEN: Calls are rejected until the cooldown elapses
    - HALF_OPEN: One trial call decides whether to close or re-open
    """
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

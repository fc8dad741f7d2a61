"""
Store interface for workflows, executions and execution logs.

Every status write is conditional on the execution's current status, so the
store is the single arbiter of the execution state machine: a write that
lost a race returns None/False instead of clobbering a terminal state.
"""

import functools
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from uuid import UUID

from workflow_engine.core import CircuitBreaker
from workflow_engine.domain import (
    Execution,
    ExecutionLogEntry,
    ExecutionStatus,
    LogLevel,
    WorkflowDefinition,
)


def guarded(method):
    """Run a store method through the store's ``database`` circuit breaker."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        return self.breaker.execute(lambda: method(self, *args, **kwargs))

    return wrapper


class ExecutionStore(ABC):
    """Persistence for workflow definitions, executions and their logs."""

    def __init__(self, breaker: Optional[CircuitBreaker] = None):
        self.breaker = breaker or CircuitBreaker("database", threshold=3, timeout=30.0)

    # ------------------------------------------------------------------
    # Lifecycle

    @abstractmethod
    def ensure_indexes(self) -> None:
        """Create tables and indexes if they do not exist."""

    @abstractmethod
    def health_check(self) -> bool:
        """Check whether the backing store is reachable."""

    def close(self) -> None:
        """Release resources held by the store."""

    # ------------------------------------------------------------------
    # Workflows

    @abstractmethod
    def create_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        pass

    @abstractmethod
    def get_workflow(self, workflow_id: UUID) -> Optional[WorkflowDefinition]:
        pass

    @abstractmethod
    def update_workflow(self, workflow: WorkflowDefinition) -> Optional[WorkflowDefinition]:
        """Replace a stored definition. Returns None if it does not exist."""

    @abstractmethod
    def delete_workflow(self, workflow_id: UUID) -> bool:
        pass

    @abstractmethod
    def list_workflows(
        self,
        enabled: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkflowDefinition]:
        pass

    @abstractmethod
    def record_workflow_execution(self, workflow_id: UUID) -> None:
        """Increment ``execution_count`` and stamp ``last_execution``."""

    # ------------------------------------------------------------------
    # Executions

    @abstractmethod
    def create_execution(self, execution: Execution) -> Execution:
        pass

    @abstractmethod
    def get_execution(self, execution_id: UUID) -> Optional[Execution]:
        pass

    @abstractmethod
    def list_executions(
        self,
        workflow_id: Optional[UUID] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Execution]:
        """Executions newest first, optionally filtered."""

    @abstractmethod
    def find_executions_by_status(self, status: ExecutionStatus) -> List[Execution]:
        pass

    @abstractmethod
    def count_active_executions(self, workflow_id: UUID) -> int:
        """Number of pending, queued or running executions of a workflow."""

    @abstractmethod
    def mark_queued(self, execution_id: UUID, queue_name: str, job_id: str) -> bool:
        """Record the routing and move pending → queued.

        The routing is stored even when the execution already left pending;
        only the status change is conditional.
        """

    @abstractmethod
    def mark_running(self, execution_id: UUID) -> Optional[Execution]:
        """pending | queued → running. Returns the updated record or None."""

    @abstractmethod
    def save_checkpoint(
        self,
        execution_id: UUID,
        current_step: int,
        context: Dict[str, Any],
    ) -> bool:
        """Persist progress while running. False if no longer running."""

    @abstractmethod
    def mark_completed(self, execution_id: UUID, final_context: Dict[str, Any]) -> bool:
        """running → completed. False if no longer running."""

    @abstractmethod
    def mark_failed(self, execution_id: UUID, error: str) -> bool:
        """Any non-terminal status → failed, with error and finished_at in one write."""

    @abstractmethod
    def mark_cancelled(self, execution_id: UUID, cancelled_by: str) -> Optional[Execution]:
        """pending | queued | running → cancelled. Returns the updated record or None."""

    # ------------------------------------------------------------------
    # Logs

    @abstractmethod
    def append_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        pass

    @abstractmethod
    def get_logs(
        self,
        execution_id: UUID,
        level: Optional[LogLevel] = None,
        step: Optional[int] = None,
        limit: int = 100,
    ) -> List[ExecutionLogEntry]:
        """The newest ``limit`` matching entries, in chronological order."""

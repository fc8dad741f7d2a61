"""In-memory implementation of the execution store."""

import copy
import threading
from typing import Dict, List, Optional
from uuid import UUID

from workflow_engine.domain import (
    Execution,
    ExecutionLogEntry,
    ExecutionStateMachine,
    ExecutionStatus,
    WorkflowDefinition,
    utcnow,
)

from .base import ExecutionStore, guarded


class InMemoryExecutionStore(ExecutionStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self, breaker=None):
        super().__init__(breaker)
        self._lock = threading.Lock()
        self._workflows: Dict[UUID, WorkflowDefinition] = {}
        self._executions: Dict[UUID, Execution] = {}
        self._logs: Dict[UUID, List[ExecutionLogEntry]] = {}

    def ensure_indexes(self) -> None:
        return None

    def health_check(self) -> bool:
        return True

    # ------------------------------------------------------------------
    @guarded
    def create_workflow(self, workflow):
        with self._lock:
            self._workflows[workflow.id] = copy.deepcopy(workflow)
            return copy.deepcopy(workflow)

    @guarded
    def get_workflow(self, workflow_id):
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            return copy.deepcopy(workflow) if workflow else None

    @guarded
    def update_workflow(self, workflow):
        with self._lock:
            if workflow.id not in self._workflows:
                return None
            self._workflows[workflow.id] = copy.deepcopy(workflow)
            return copy.deepcopy(workflow)

    @guarded
    def delete_workflow(self, workflow_id):
        with self._lock:
            return self._workflows.pop(workflow_id, None) is not None

    @guarded
    def list_workflows(self, enabled=None, limit=100, offset=0):
        with self._lock:
            workflows = [
                w for w in self._workflows.values()
                if enabled is None or w.enabled == enabled
            ]
        workflows.sort(key=lambda w: w.created_at, reverse=True)
        return [copy.deepcopy(w) for w in workflows[offset:offset + limit]]

    @guarded
    def record_workflow_execution(self, workflow_id):
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow:
                workflow.execution_count += 1
                workflow.last_execution = utcnow()

    # ------------------------------------------------------------------
    @guarded
    def create_execution(self, execution):
        with self._lock:
            self._executions[execution.id] = copy.deepcopy(execution)
            self._logs.setdefault(execution.id, [])
            return copy.deepcopy(execution)

    @guarded
    def get_execution(self, execution_id):
        with self._lock:
            execution = self._executions.get(execution_id)
            return copy.deepcopy(execution) if execution else None

    @guarded
    def list_executions(self, workflow_id=None, status=None, limit=100, offset=0):
        with self._lock:
            executions = [
                e for e in self._executions.values()
                if (workflow_id is None or e.workflow_id == workflow_id)
                and (status is None or e.status == status)
            ]
        executions.sort(key=lambda e: e.started_at, reverse=True)
        return [copy.deepcopy(e) for e in executions[offset:offset + limit]]

    @guarded
    def find_executions_by_status(self, status):
        with self._lock:
            return [
                copy.deepcopy(e) for e in self._executions.values() if e.status == status
            ]

    @guarded
    def count_active_executions(self, workflow_id):
        with self._lock:
            return sum(
                1 for e in self._executions.values()
                if e.workflow_id == workflow_id
                and e.status in ExecutionStateMachine.CANCELLABLE_STATES
            )

    # ------------------------------------------------------------------
    def _transition(self, execution_id: UUID, to_state: ExecutionStatus) -> Optional[Execution]:
        """Apply a conditional status change. Caller holds the lock."""
        execution = self._executions.get(execution_id)
        if execution is None:
            return None
        if not ExecutionStateMachine.can_transition(execution.status, to_state):
            return None
        execution.status = to_state
        execution.updated_at = utcnow()
        return execution

    @guarded
    def mark_queued(self, execution_id, queue_name, job_id):
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                return False
            execution.queue_name = queue_name
            execution.job_id = job_id
            execution.updated_at = utcnow()
            if execution.status != ExecutionStatus.PENDING:
                return False
            execution.status = ExecutionStatus.QUEUED
            return True

    @guarded
    def mark_running(self, execution_id):
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status not in ExecutionStateMachine.STARTABLE_STATES:
                return None
            self._transition(execution_id, ExecutionStatus.RUNNING)
            return copy.deepcopy(execution)

    @guarded
    def save_checkpoint(self, execution_id, current_step, context):
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status != ExecutionStatus.RUNNING:
                return False
            execution.current_step = max(execution.current_step, current_step)
            execution.context = copy.deepcopy(context)
            execution.updated_at = utcnow()
            return True

    @guarded
    def mark_completed(self, execution_id, final_context):
        with self._lock:
            execution = self._transition(execution_id, ExecutionStatus.COMPLETED)
            if execution is None:
                return False
            execution.context = copy.deepcopy(final_context)
            execution.final_context = copy.deepcopy(final_context)
            execution.finished_at = execution.updated_at
            return True

    @guarded
    def mark_failed(self, execution_id, error):
        with self._lock:
            execution = self._transition(execution_id, ExecutionStatus.FAILED)
            if execution is None:
                return False
            execution.error = error
            execution.finished_at = execution.updated_at
            return True

    @guarded
    def mark_cancelled(self, execution_id, cancelled_by):
        with self._lock:
            execution = self._transition(execution_id, ExecutionStatus.CANCELLED)
            if execution is None:
                return None
            execution.cancelled_at = execution.updated_at
            execution.cancelled_by = cancelled_by
            execution.finished_at = execution.updated_at
            return copy.deepcopy(execution)

    # ------------------------------------------------------------------
    @guarded
    def append_log(self, entry):
        with self._lock:
            self._logs.setdefault(entry.execution_id, []).append(copy.deepcopy(entry))
            return entry

    @guarded
    def get_logs(self, execution_id, level=None, step=None, limit=100):
        with self._lock:
            entries = [
                e for e in self._logs.get(execution_id, [])
                if (level is None or e.level == level)
                and (step is None or e.step == step)
            ]
        entries = entries[-limit:] if limit else entries
        return [copy.deepcopy(e) for e in entries]

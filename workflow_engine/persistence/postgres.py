"""
PostgreSQL implementation of the execution store.

Handles all SQL queries and row mapping. Status changes are single
conditional UPDATE statements, so concurrent writers (a driver checkpointing
while a cancel lands) are serialized by the database.
"""

import json
import logging
from typing import Any, List, Optional
from uuid import UUID

from psycopg2.extras import Json

from workflow_engine.domain import (
    CircuitState,
    Execution,
    ExecutionLogEntry,
    ExecutionStatus,
    LogLevel,
    StepSpec,
    WorkflowDefinition,
    utcnow,
)

from .base import ExecutionStore, guarded
from .database import Database

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS workflows (
    id UUID PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    version INTEGER NOT NULL DEFAULT 1,
    steps JSONB NOT NULL,
    tags JSONB NOT NULL DEFAULT '[]',
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    execution_count INTEGER NOT NULL DEFAULT 0,
    last_execution TIMESTAMPTZ,
    created_by VARCHAR(255) NOT NULL DEFAULT 'system',
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS workflow_executions (
    id UUID PRIMARY KEY,
    workflow_id UUID NOT NULL,
    workflow_name VARCHAR(255) NOT NULL,
    workflow_version INTEGER NOT NULL,
    status VARCHAR(20) NOT NULL,
    current_step INTEGER NOT NULL DEFAULT 0,
    context JSONB NOT NULL DEFAULT '{}',
    input JSONB NOT NULL DEFAULT '{}',
    priority INTEGER NOT NULL DEFAULT 5,
    started_by VARCHAR(255) NOT NULL DEFAULT 'system',
    started_at TIMESTAMPTZ NOT NULL,
    finished_at TIMESTAMPTZ,
    cancelled_at TIMESTAMPTZ,
    cancelled_by VARCHAR(255),
    error TEXT,
    final_context JSONB,
    retry_of UUID,
    retry_count INTEGER NOT NULL DEFAULT 0,
    queue_name VARCHAR(50),
    job_id VARCHAR(64),
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS execution_logs (
    id UUID PRIMARY KEY,
    execution_id UUID NOT NULL,
    level VARCHAR(10) NOT NULL,
    message TEXT NOT NULL,
    step INTEGER,
    data JSONB NOT NULL DEFAULT '{}',
    timestamp TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_workflows_name ON workflows (name);
CREATE INDEX IF NOT EXISTS idx_workflows_enabled ON workflows (enabled);
CREATE INDEX IF NOT EXISTS idx_workflows_created_at ON workflows (created_at DESC);
CREATE INDEX IF NOT EXISTS idx_executions_workflow_status ON workflow_executions (workflow_id, status);
CREATE INDEX IF NOT EXISTS idx_executions_started_at ON workflow_executions (started_at DESC);
CREATE INDEX IF NOT EXISTS idx_executions_status_started_at ON workflow_executions (status, started_at DESC);
CREATE INDEX IF NOT EXISTS idx_logs_execution_timestamp ON execution_logs (execution_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_logs_level_timestamp ON execution_logs (level, timestamp DESC);
"""

_NON_TERMINAL = ("pending", "queued", "running")


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _uuid(value: Any) -> Optional[UUID]:
    if value is None:
        return None
    return value if isinstance(value, UUID) else UUID(str(value))


class PostgresExecutionStore(ExecutionStore):
    """Execution store backed by PostgreSQL via psycopg2."""

    def __init__(self, db: Database, breaker=None):
        super().__init__(breaker)
        self.db = db

    @guarded
    def ensure_indexes(self) -> None:
        logger.info("Ensuring database schema and indexes")
        self.db.execute_script(SCHEMA)

    def health_check(self) -> bool:
        """Ping the database unless the breaker already reports it down."""
        if self.breaker.state == CircuitState.OPEN:
            return False
        return self.db.health_check()

    def close(self) -> None:
        self.db.close()

    # ------------------------------------------------------------------
    # Workflows

    @guarded
    def create_workflow(self, workflow):
        query = """
            INSERT INTO workflows
            (id, name, description, version, steps, tags, enabled, execution_count,
             last_execution, created_by, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
        """
        params = (
            str(workflow.id),
            workflow.name,
            workflow.description,
            workflow.version,
            Json([step.to_dict() for step in workflow.steps]),
            Json(list(workflow.tags)),
            workflow.enabled,
            workflow.execution_count,
            workflow.last_execution,
            workflow.created_by,
            workflow.created_at,
            workflow.updated_at,
        )
        row = self.db.execute_one(query, params)
        return self._row_to_workflow(row)

    @guarded
    def get_workflow(self, workflow_id):
        row = self.db.execute_one("SELECT * FROM workflows WHERE id = %s", (str(workflow_id),))
        return self._row_to_workflow(row) if row else None

    @guarded
    def update_workflow(self, workflow):
        query = """
            UPDATE workflows
            SET name = %s, description = %s, version = %s, steps = %s, tags = %s,
                enabled = %s, updated_at = %s
            WHERE id = %s
            RETURNING *
        """
        params = (
            workflow.name,
            workflow.description,
            workflow.version,
            Json([step.to_dict() for step in workflow.steps]),
            Json(list(workflow.tags)),
            workflow.enabled,
            workflow.updated_at,
            str(workflow.id),
        )
        row = self.db.execute_one(query, params)
        return self._row_to_workflow(row) if row else None

    @guarded
    def delete_workflow(self, workflow_id):
        row = self.db.execute_one(
            "DELETE FROM workflows WHERE id = %s RETURNING id", (str(workflow_id),)
        )
        return row is not None

    @guarded
    def list_workflows(self, enabled=None, limit=100, offset=0):
        if enabled is not None:
            query = """
                SELECT * FROM workflows
                WHERE enabled = %s
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
            """
            rows = self.db.execute(query, (enabled, limit, offset))
        else:
            query = """
                SELECT * FROM workflows
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
            """
            rows = self.db.execute(query, (limit, offset))
        return [self._row_to_workflow(row) for row in rows]

    @guarded
    def record_workflow_execution(self, workflow_id):
        query = """
            UPDATE workflows
            SET execution_count = execution_count + 1, last_execution = %s
            WHERE id = %s
        """
        self.db.execute(query, (utcnow(), str(workflow_id)))

    # ------------------------------------------------------------------
    # Executions

    @guarded
    def create_execution(self, execution):
        query = """
            INSERT INTO workflow_executions
            (id, workflow_id, workflow_name, workflow_version, status, current_step,
             context, input, priority, started_by, started_at, retry_of, retry_count,
             queue_name, job_id, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
        """
        params = (
            str(execution.id),
            str(execution.workflow_id),
            execution.workflow_name,
            execution.workflow_version,
            execution.status.value,
            execution.current_step,
            Json(execution.context),
            Json(execution.input),
            execution.priority,
            execution.started_by,
            execution.started_at,
            str(execution.retry_of) if execution.retry_of else None,
            execution.retry_count,
            execution.queue_name,
            execution.job_id,
            execution.updated_at,
        )
        row = self.db.execute_one(query, params)
        return self._row_to_execution(row)

    @guarded
    def get_execution(self, execution_id):
        row = self.db.execute_one(
            "SELECT * FROM workflow_executions WHERE id = %s", (str(execution_id),)
        )
        return self._row_to_execution(row) if row else None

    @guarded
    def list_executions(self, workflow_id=None, status=None, limit=100, offset=0):
        conditions = []
        params = []

        if workflow_id:
            conditions.append("workflow_id = %s")
            params.append(str(workflow_id))

        if status:
            conditions.append("status = %s")
            params.append(status.value)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT * FROM workflow_executions
            {where_clause}
            ORDER BY started_at DESC
            LIMIT %s OFFSET %s
        """
        params.extend([limit, offset])

        rows = self.db.execute(query, tuple(params))
        return [self._row_to_execution(row) for row in rows]

    @guarded
    def find_executions_by_status(self, status):
        rows = self.db.execute(
            "SELECT * FROM workflow_executions WHERE status = %s ORDER BY started_at",
            (status.value,),
        )
        return [self._row_to_execution(row) for row in rows]

    @guarded
    def count_active_executions(self, workflow_id):
        row = self.db.execute_one(
            """
            SELECT COUNT(*) AS active FROM workflow_executions
            WHERE workflow_id = %s AND status IN %s
            """,
            (str(workflow_id), _NON_TERMINAL),
        )
        return int(row["active"]) if row else 0

    @guarded
    def mark_queued(self, execution_id, queue_name, job_id):
        query = """
            UPDATE workflow_executions
            SET queue_name = %s, job_id = %s, updated_at = %s,
                status = CASE WHEN status = 'pending' THEN 'queued' ELSE status END
            WHERE id = %s
            RETURNING status
        """
        row = self.db.execute_one(query, (queue_name, job_id, utcnow(), str(execution_id)))
        return row is not None and row["status"] == ExecutionStatus.QUEUED.value

    @guarded
    def mark_running(self, execution_id):
        query = """
            UPDATE workflow_executions
            SET status = 'running', updated_at = %s
            WHERE id = %s AND status IN ('pending', 'queued')
            RETURNING *
        """
        row = self.db.execute_one(query, (utcnow(), str(execution_id)))
        return self._row_to_execution(row) if row else None

    @guarded
    def save_checkpoint(self, execution_id, current_step, context):
        query = """
            UPDATE workflow_executions
            SET current_step = GREATEST(current_step, %s), context = %s, updated_at = %s
            WHERE id = %s AND status = 'running'
            RETURNING id
        """
        row = self.db.execute_one(
            query, (current_step, Json(context), utcnow(), str(execution_id))
        )
        return row is not None

    @guarded
    def mark_completed(self, execution_id, final_context):
        now = utcnow()
        query = """
            UPDATE workflow_executions
            SET status = 'completed', context = %s, final_context = %s,
                finished_at = %s, updated_at = %s
            WHERE id = %s AND status = 'running'
            RETURNING id
        """
        row = self.db.execute_one(
            query, (Json(final_context), Json(final_context), now, now, str(execution_id))
        )
        return row is not None

    @guarded
    def mark_failed(self, execution_id, error):
        now = utcnow()
        query = """
            UPDATE workflow_executions
            SET status = 'failed', error = %s, finished_at = %s, updated_at = %s
            WHERE id = %s AND status IN %s
            RETURNING id
        """
        row = self.db.execute_one(query, (error, now, now, str(execution_id), _NON_TERMINAL))
        return row is not None

    @guarded
    def mark_cancelled(self, execution_id, cancelled_by):
        now = utcnow()
        query = """
            UPDATE workflow_executions
            SET status = 'cancelled', cancelled_at = %s, cancelled_by = %s,
                finished_at = %s, updated_at = %s
            WHERE id = %s AND status IN %s
            RETURNING *
        """
        row = self.db.execute_one(
            query, (now, cancelled_by, now, now, str(execution_id), _NON_TERMINAL)
        )
        return self._row_to_execution(row) if row else None

    # ------------------------------------------------------------------
    # Logs

    @guarded
    def append_log(self, entry):
        query = """
            INSERT INTO execution_logs (id, execution_id, level, message, step, data, timestamp)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        params = (
            str(entry.id),
            str(entry.execution_id),
            entry.level.value,
            entry.message,
            entry.step,
            Json(entry.data),
            entry.timestamp,
        )
        self.db.execute(query, params)
        return entry

    @guarded
    def get_logs(self, execution_id, level=None, step=None, limit=100):
        conditions = ["execution_id = %s"]
        params: List[Any] = [str(execution_id)]

        if level:
            conditions.append("level = %s")
            params.append(level.value)

        if step is not None:
            conditions.append("step = %s")
            params.append(step)

        params.append(limit)
        query = f"""
            SELECT * FROM (
                SELECT * FROM execution_logs
                WHERE {' AND '.join(conditions)}
                ORDER BY timestamp DESC
                LIMIT %s
            ) newest
            ORDER BY timestamp ASC
        """
        rows = self.db.execute(query, tuple(params))
        return [self._row_to_log(row) for row in rows]

    # ------------------------------------------------------------------
    # Row mapping

    def _row_to_workflow(self, row: dict) -> WorkflowDefinition:
        """Convert database row to WorkflowDefinition entity."""
        steps = _load_json(row.get("steps"), [])
        return WorkflowDefinition(
            id=_uuid(row["id"]),
            name=row["name"],
            description=row.get("description") or "",
            version=row["version"],
            steps=[StepSpec.from_dict(step) for step in steps],
            tags=_load_json(row.get("tags"), []),
            enabled=row["enabled"],
            execution_count=row.get("execution_count") or 0,
            last_execution=row.get("last_execution"),
            created_by=row.get("created_by") or "system",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_execution(self, row: dict) -> Execution:
        """Convert database row to Execution entity."""
        return Execution(
            id=_uuid(row["id"]),
            workflow_id=_uuid(row["workflow_id"]),
            workflow_name=row["workflow_name"],
            workflow_version=row["workflow_version"],
            status=ExecutionStatus(row["status"]),
            current_step=row["current_step"],
            context=_load_json(row.get("context"), {}),
            input=_load_json(row.get("input"), {}),
            priority=row["priority"],
            started_by=row["started_by"],
            started_at=row["started_at"],
            finished_at=row.get("finished_at"),
            cancelled_at=row.get("cancelled_at"),
            cancelled_by=row.get("cancelled_by"),
            error=row.get("error"),
            final_context=_load_json(row.get("final_context"), None),
            retry_of=_uuid(row.get("retry_of")),
            retry_count=row.get("retry_count") or 0,
            queue_name=row.get("queue_name"),
            job_id=row.get("job_id"),
            updated_at=row["updated_at"],
        )

    def _row_to_log(self, row: dict) -> ExecutionLogEntry:
        """Convert database row to ExecutionLogEntry entity."""
        return ExecutionLogEntry(
            id=_uuid(row["id"]),
            execution_id=_uuid(row["execution_id"]),
            level=LogLevel(row["level"]),
            message=row["message"],
            step=row.get("step"),
            data=_load_json(row.get("data"), {}),
            timestamp=row["timestamp"],
        )

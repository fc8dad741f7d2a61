"""
Unit tests for the PostgreSQL execution store.

The database is mocked; these tests check the statements issued and the row
mapping, not PostgreSQL itself.
"""

import pytest
from datetime import datetime, timezone
from uuid import uuid4

from workflow_engine.domain import (
    CircuitOpenError,
    CircuitState,
    Execution,
    ExecutionStatus,
    LogLevel,
    OnErrorPolicy,
    StepSpec,
    WorkflowDefinition,
)
from workflow_engine.persistence import PostgresExecutionStore


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _execution_row(**overrides):
    row = {
        "id": str(uuid4()),
        "workflow_id": str(uuid4()),
        "workflow_name": "wf",
        "workflow_version": 2,
        "status": "running",
        "current_step": 1,
        "context": {"a": 1},
        "input": {"a": 1},
        "priority": 5,
        "started_by": "api",
        "started_at": NOW,
        "finished_at": None,
        "cancelled_at": None,
        "cancelled_by": None,
        "error": None,
        "final_context": None,
        "retry_of": None,
        "retry_count": 0,
        "queue_name": "content",
        "job_id": "job-1",
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class TestPostgresExecutionStore:
    """Tests for PostgresExecutionStore."""

    @pytest.fixture
    def pg_store(self, mock_db):
        return PostgresExecutionStore(mock_db)

    def test_ensure_indexes_runs_schema(self, pg_store, mock_db):
        """Test that the schema is applied in one transaction."""
        pg_store.ensure_indexes()

        sql = mock_db.execute_script.call_args[0][0]
        assert "CREATE TABLE IF NOT EXISTS workflow_executions" in sql
        assert "idx_logs_execution_timestamp" in sql

    def test_get_workflow_maps_row(self, pg_store, mock_db):
        """Test workflow row mapping, including JSON columns as text."""
        workflow_id = uuid4()
        mock_db.execute_one.return_value = {
            "id": str(workflow_id),
            "name": "wf",
            "description": "",
            "version": 3,
            "steps": '[{"type": "delay", "config": {"delay": 5}, "on_error": "skip"}]',
            "tags": ["content"],
            "enabled": True,
            "execution_count": 4,
            "last_execution": None,
            "created_by": "api",
            "created_at": NOW,
            "updated_at": NOW,
        }

        workflow = pg_store.get_workflow(workflow_id)

        assert workflow.id == workflow_id
        assert workflow.version == 3
        assert workflow.steps[0].on_error == OnErrorPolicy.SKIP
        assert workflow.steps[0].config == {"delay": 5}
        assert workflow.tags == ["content"]

    def test_get_missing_workflow(self, pg_store, mock_db):
        """Test that a missing row maps to None."""
        mock_db.execute_one.return_value = None

        assert pg_store.get_workflow(uuid4()) is None

    def test_create_execution(self, pg_store, mock_db):
        """Test inserting an execution."""
        workflow = WorkflowDefinition.create(name="wf", steps=[StepSpec("delay")])
        execution = Execution.create(workflow, input={"a": 1})
        mock_db.execute_one.return_value = _execution_row(
            id=str(execution.id), status="pending", current_step=0
        )

        created = pg_store.create_execution(execution)

        assert created.id == execution.id
        assert created.status == ExecutionStatus.PENDING
        query = mock_db.execute_one.call_args[0][0]
        assert "INSERT INTO workflow_executions" in query

    def test_mark_running_is_conditional(self, pg_store, mock_db):
        """Test that starting only matches pending or queued rows."""
        mock_db.execute_one.return_value = None

        assert pg_store.mark_running(uuid4()) is None

        query = mock_db.execute_one.call_args[0][0]
        assert "status IN ('pending', 'queued')" in query

    def test_save_checkpoint_is_monotonic(self, pg_store, mock_db):
        """Test that the checkpoint never rewinds current_step."""
        mock_db.execute_one.return_value = {"id": "x"}

        assert pg_store.save_checkpoint(uuid4(), 2, {"k": "v"}) is True

        query, params = mock_db.execute_one.call_args[0]
        assert "GREATEST(current_step, %s)" in query
        assert "status = 'running'" in query
        assert params[0] == 2

    def test_save_checkpoint_after_cancel(self, pg_store, mock_db):
        """Test that no matching row means the execution left running."""
        mock_db.execute_one.return_value = None

        assert pg_store.save_checkpoint(uuid4(), 2, {}) is False

    def test_mark_queued(self, pg_store, mock_db):
        """Test that routing is stored and the status only moves from pending."""
        mock_db.execute_one.return_value = {"status": "running"}

        assert pg_store.mark_queued(uuid4(), "content", "job-1") is False

        query = mock_db.execute_one.call_args[0][0]
        assert "CASE WHEN status = 'pending'" in query

    def test_mark_failed_only_non_terminal(self, pg_store, mock_db):
        """Test that failing never overwrites a terminal state."""
        mock_db.execute_one.return_value = {"id": "x"}

        assert pg_store.mark_failed(uuid4(), "boom") is True

        params = mock_db.execute_one.call_args[0][1]
        assert params[0] == "boom"
        assert params[-1] == ("pending", "queued", "running")

    def test_mark_cancelled_returns_record(self, pg_store, mock_db):
        """Test the cancelled record is mapped."""
        mock_db.execute_one.return_value = _execution_row(
            status="cancelled", cancelled_by="alice", cancelled_at=NOW, finished_at=NOW
        )

        cancelled = pg_store.mark_cancelled(uuid4(), "alice")

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.cancelled_by == "alice"

    def test_get_logs_keeps_newest(self, pg_store, mock_db):
        """Test the newest-then-chronological log query."""
        execution_id = uuid4()
        mock_db.execute.return_value = [{
            "id": str(uuid4()),
            "execution_id": str(execution_id),
            "level": "error",
            "message": "bad",
            "step": 1,
            "data": None,
            "timestamp": NOW,
        }]

        logs = pg_store.get_logs(execution_id, level=LogLevel.ERROR, step=1, limit=10)

        query, params = mock_db.execute.call_args[0]
        assert "ORDER BY timestamp DESC" in query
        assert "ORDER BY timestamp ASC" in query
        assert params == (str(execution_id), "error", 1, 10)
        assert logs[0].level == LogLevel.ERROR
        assert logs[0].data == {}

    def test_count_active_executions(self, pg_store, mock_db):
        """Test counting in-flight executions."""
        mock_db.execute_one.return_value = {"active": 2}

        assert pg_store.count_active_executions(uuid4()) == 2

    def test_health_check(self, pg_store, mock_db):
        """Test that health is delegated to the database."""
        assert pg_store.health_check() is True

    def test_ensure_indexes_counts_against_breaker(self, pg_store, mock_db):
        """Test that schema failures trip the database breaker."""
        mock_db.execute_script.side_effect = RuntimeError("connection refused")

        for _ in range(3):
            with pytest.raises(RuntimeError):
                pg_store.ensure_indexes()

        with pytest.raises(CircuitOpenError):
            pg_store.ensure_indexes()
        assert mock_db.execute_script.call_count == 3

    def test_health_check_reports_open_breaker_without_pinging(self, pg_store, mock_db):
        """Test that an open breaker reads as unhealthy and skips the ping."""
        mock_db.execute_one.side_effect = RuntimeError("connection refused")
        for _ in range(3):
            with pytest.raises(RuntimeError):
                pg_store.get_workflow(uuid4())
        assert pg_store.breaker.state == CircuitState.OPEN

        assert pg_store.health_check() is False
        mock_db.health_check.assert_not_called()

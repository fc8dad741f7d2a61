"""
Unit tests for domain entities.
"""

import pytest
from uuid import uuid4

from workflow_engine.domain import (
    Execution,
    ExecutionLogEntry,
    ExecutionStatus,
    LogLevel,
    OnErrorPolicy,
    StepSpec,
    WorkflowDefinition,
)


class TestStepSpec:
    """Tests for StepSpec."""

    def test_from_dict_defaults(self):
        """Test that a bare step fails on error with empty config."""
        step = StepSpec.from_dict({"type": "fetch_news"})

        assert step.type == "fetch_news"
        assert step.config == {}
        assert step.on_error == OnErrorPolicy.FAIL
        assert step.label == "fetch_news"

    def test_from_dict_accepts_camel_case_on_error(self):
        """Test the onError alias."""
        step = StepSpec.from_dict({"type": "delay", "config": {"delay": 5}, "onError": "skip"})

        assert step.on_error == OnErrorPolicy.SKIP
        assert step.config == {"delay": 5}

    def test_from_dict_invalid_policy(self):
        """Test that an unknown policy is rejected."""
        with pytest.raises(ValueError):
            StepSpec.from_dict({"type": "delay", "on_error": "explode"})

    def test_to_dict_includes_name_only_when_set(self):
        """Test step serialization."""
        assert "name" not in StepSpec("delay").to_dict()

        named = StepSpec("delay", {"delay": 1}, OnErrorPolicy.CONTINUE, name="pause")
        assert named.to_dict() == {
            "type": "delay",
            "config": {"delay": 1},
            "on_error": "continue",
            "name": "pause",
        }
        assert named.label == "pause"


class TestWorkflowDefinition:
    """Tests for WorkflowDefinition entity."""

    def test_create_workflow(self):
        """Test workflow factory method."""
        workflow = WorkflowDefinition.create(
            name="daily_content",
            steps=[StepSpec("fetch_news")],
            description="Test description",
            tags=["content"],
        )

        assert workflow.id is not None
        assert workflow.name == "daily_content"
        assert workflow.version == 1
        assert workflow.enabled is True
        assert workflow.execution_count == 0
        assert workflow.last_execution is None
        assert workflow.created_at == workflow.updated_at

    def test_to_dict(self):
        """Test workflow serialization."""
        workflow = WorkflowDefinition.create(name="wf", steps=[StepSpec("delay")])

        data = workflow.to_dict()

        assert data["id"] == str(workflow.id)
        assert data["steps"] == [{"type": "delay", "config": {}, "on_error": "fail"}]
        assert data["last_execution"] is None
        assert data["tags"] == []


class TestExecution:
    """Tests for Execution entity."""

    def test_create_execution(self):
        """Test execution factory snapshots the workflow."""
        workflow = WorkflowDefinition.create(name="wf", steps=[StepSpec("delay")])
        workflow.version = 4

        execution = Execution.create(workflow, input={"key": "value"}, priority=8)

        assert execution.status == ExecutionStatus.PENDING
        assert execution.workflow_id == workflow.id
        assert execution.workflow_name == "wf"
        assert execution.workflow_version == 4
        assert execution.input == {"key": "value"}
        assert execution.context == {}
        assert execution.current_step == 0
        assert execution.priority == 8
        assert execution.retry_of is None

    def test_is_terminal(self):
        """Test terminal state detection."""
        workflow = WorkflowDefinition.create(name="wf", steps=[StepSpec("delay")])
        execution = Execution.create(workflow)

        assert not execution.is_terminal

        for status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED):
            execution.status = status
            assert execution.is_terminal

    def test_to_dict_retry_fields(self):
        """Test that retry lineage is serialized."""
        workflow = WorkflowDefinition.create(name="wf", steps=[StepSpec("delay")])
        original_id = uuid4()
        execution = Execution.create(workflow, retry_of=original_id, retry_count=2)

        data = execution.to_dict()

        assert data["retry_of"] == str(original_id)
        assert data["retry_count"] == 2
        assert data["status"] == "pending"
        assert data["finished_at"] is None


class TestExecutionLogEntry:
    """Tests for ExecutionLogEntry."""

    def test_create_entry(self):
        """Test log entry factory method."""
        execution_id = uuid4()

        entry = ExecutionLogEntry.create(execution_id, LogLevel.WARN, "careful", step=2)

        assert entry.execution_id == execution_id
        assert entry.level == LogLevel.WARN
        assert entry.step == 2
        assert entry.data == {}
        assert entry.to_dict()["level"] == "warn"

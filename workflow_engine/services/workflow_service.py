"""
Workflow service for managing workflow definitions.

Handles CRUD operations for workflows. Definitions are validated by the
engine against the processor registry before they are stored.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from workflow_engine.domain import (
    InvalidStateError,
    NotFoundError,
    StepSpec,
    ValidationError,
    WorkflowDefinition,
    utcnow,
)
from workflow_engine.persistence import ExecutionStore

from .engine import WorkflowEngine

logger = logging.getLogger(__name__)


class WorkflowService:
    """
    Service for managing workflow definitions.

    Provides business logic for creating, updating, and managing workflows.
    """

    def __init__(self, store: ExecutionStore, engine: WorkflowEngine):
        self.store = store
        self.engine = engine

    def create_workflow(self, data: Mapping[str, Any], created_by: str = "system") -> WorkflowDefinition:
        """
        Create a new workflow definition at version 1.

        ``data`` is the JSON form: name, steps, and optionally description,
        tags and enabled.
        """
        name = self._validate(data)
        workflow = WorkflowDefinition.create(
            name=name,
            steps=[StepSpec.from_dict(step) for step in data["steps"]],
            description=data.get("description") or "",
            tags=self._tags(data.get("tags")),
            enabled=bool(data.get("enabled", True)),
            created_by=created_by,
        )

        logger.info(f"Creating workflow: {name}")
        return self.store.create_workflow(workflow)

    def update_workflow(self, workflow_id: UUID, data: Mapping[str, Any]) -> WorkflowDefinition:
        """
        Update a workflow definition and bump its version.

        Fields missing from ``data`` keep their current value. Executions
        already started keep the name and version they snapshotted.
        """
        workflow = self.get_workflow(workflow_id)

        merged: Dict[str, Any] = {
            "name": data.get("name", workflow.name),
            "steps": data.get("steps", [step.to_dict() for step in workflow.steps]),
        }
        name = self._validate(merged)

        workflow.name = name
        workflow.steps = [StepSpec.from_dict(step) for step in merged["steps"]]
        if "description" in data:
            workflow.description = data.get("description") or ""
        if "tags" in data:
            workflow.tags = self._tags(data.get("tags"))
        if "enabled" in data:
            workflow.enabled = bool(data["enabled"])
        workflow.version += 1
        workflow.updated_at = utcnow()

        logger.info(f"Updating workflow {workflow_id} to version {workflow.version}")
        updated = self.store.update_workflow(workflow)
        if updated is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return updated

    def get_workflow(self, workflow_id: UUID) -> WorkflowDefinition:
        """Get a workflow by ID."""
        workflow = self.store.get_workflow(workflow_id)

        if not workflow:
            raise NotFoundError(f"Workflow {workflow_id} not found")

        return workflow

    def list_workflows(
        self,
        enabled: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkflowDefinition]:
        """List workflows with optional filtering."""
        return self.store.list_workflows(enabled=enabled, limit=limit, offset=offset)

    def delete_workflow(self, workflow_id: UUID) -> None:
        """Delete a workflow that has no executions in flight."""
        self.get_workflow(workflow_id)

        active = self.store.count_active_executions(workflow_id)
        if active:
            raise InvalidStateError(
                f"Cannot delete workflow {workflow_id} with {active} active executions"
            )

        logger.info(f"Deleting workflow {workflow_id}")
        if not self.store.delete_workflow(workflow_id):
            raise NotFoundError(f"Workflow {workflow_id} not found")

    def set_enabled(self, workflow_id: UUID, enabled: bool) -> WorkflowDefinition:
        """Enable or disable execution of a workflow without a version bump."""
        workflow = self.get_workflow(workflow_id)
        workflow.enabled = enabled
        workflow.updated_at = utcnow()

        logger.info(f"{'Enabling' if enabled else 'Disabling'} workflow {workflow_id}")
        updated = self.store.update_workflow(workflow)
        if updated is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return updated

    def _validate(self, data: Mapping[str, Any]) -> str:
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Workflow name is required", ["name is required"])

        result = self.engine.validate_workflow(data)
        if not result.valid:
            raise ValidationError("Invalid workflow definition", result.errors)

        return name.strip()

    @staticmethod
    def _tags(raw: Any) -> List[str]:
        if raw is None:
            return []
        if not isinstance(raw, list) or not all(isinstance(tag, str) for tag in raw):
            raise ValidationError("Invalid tags", ["tags must be a list of strings"])
        return list(dict.fromkeys(raw))

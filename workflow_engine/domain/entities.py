"""
Domain entities for workflow execution.

These are the core domain objects that represent workflow definitions, their
steps, executions, and execution logs. They are independent of any
persistence mechanism.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID, uuid4

from .enums import ExecutionStatus, LogLevel, OnErrorPolicy


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class StepSpec:
    """
    A single typed step of a workflow definition.

    The engine never interprets ``config``; only the processor registered for
    ``type`` does.
    """
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    on_error: OnErrorPolicy = OnErrorPolicy.FAIL
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StepSpec":
        """Build a step from its JSON form. Accepts ``onError`` as an alias."""
        on_error = data.get("on_error", data.get("onError")) or OnErrorPolicy.FAIL.value
        return cls(
            type=data["type"],
            config=dict(data.get("config") or {}),
            on_error=OnErrorPolicy(on_error),
            name=data.get("name"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "config": self.config,
            "on_error": self.on_error.value,
        }
        if self.name:
            data["name"] = self.name
        return data

    @property
    def label(self) -> str:
        return self.name or self.type


@dataclass
class WorkflowDefinition:
    """
    A named, versioned, ordered sequence of steps plus routing metadata.

    Multiple executions can be created from a single definition. Each
    execution snapshots the name and version it was started with.
    """
    id: UUID
    name: str
    steps: List[StepSpec]
    description: str = ""
    version: int = 1
    tags: List[str] = field(default_factory=list)
    enabled: bool = True
    execution_count: int = 0
    last_execution: Optional[datetime] = None
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        name: str,
        steps: List[StepSpec],
        description: str = "",
        tags: Optional[List[str]] = None,
        enabled: bool = True,
        created_by: str = "system",
    ) -> "WorkflowDefinition":
        """Factory method to create a new workflow at version 1."""
        now = utcnow()
        return cls(
            id=uuid4(),
            name=name,
            steps=list(steps),
            description=description,
            version=1,
            tags=list(tags or []),
            enabled=enabled,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "steps": [step.to_dict() for step in self.steps],
            "tags": list(self.tags),
            "enabled": self.enabled,
            "execution_count": self.execution_count,
            "last_execution": _isoformat(self.last_execution),
            "created_by": self.created_by,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


@dataclass
class Execution:
    """
    One run of a workflow.

    ``current_step`` is the index of the next unexecuted step and only ever
    grows; it is the checkpoint a resumed driver starts from.
    """
    id: UUID
    workflow_id: UUID
    workflow_name: str
    workflow_version: int
    status: ExecutionStatus
    current_step: int = 0
    context: Dict[str, Any] = field(default_factory=dict)
    input: Dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    started_by: str = "system"
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    error: Optional[str] = None
    final_context: Optional[Dict[str, Any]] = None
    retry_of: Optional[UUID] = None
    retry_count: int = 0
    queue_name: Optional[str] = None
    job_id: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        workflow: WorkflowDefinition,
        input: Optional[Dict[str, Any]] = None,
        priority: int = 5,
        started_by: str = "system",
        retry_of: Optional[UUID] = None,
        retry_count: int = 0,
    ) -> "Execution":
        """Factory method to create a new PENDING execution of ``workflow``."""
        now = utcnow()
        return cls(
            id=uuid4(),
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            workflow_version=workflow.version,
            status=ExecutionStatus.PENDING,
            input=dict(input or {}),
            priority=priority,
            started_by=started_by,
            started_at=now,
            retry_of=retry_of,
            retry_count=retry_count,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        """Check if execution is in a terminal state."""
        return self.status in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "workflow_id": str(self.workflow_id),
            "workflow_name": self.workflow_name,
            "workflow_version": self.workflow_version,
            "status": self.status.value,
            "current_step": self.current_step,
            "context": self.context,
            "input": self.input,
            "priority": self.priority,
            "started_by": self.started_by,
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
            "cancelled_at": _isoformat(self.cancelled_at),
            "cancelled_by": self.cancelled_by,
            "error": self.error,
            "final_context": self.final_context,
            "retry_of": str(self.retry_of) if self.retry_of else None,
            "retry_count": self.retry_count,
            "queue_name": self.queue_name,
            "job_id": self.job_id,
            "updated_at": _isoformat(self.updated_at),
        }


@dataclass
class ExecutionLogEntry:
    """
    An append-only diagnostic record for one execution.

    ``step`` is the zero-based index of the step the entry is about, or None
    for execution-level entries.
    """
    id: UUID
    execution_id: UUID
    level: LogLevel
    message: str
    step: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        execution_id: UUID,
        level: LogLevel,
        message: str,
        step: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> "ExecutionLogEntry":
        """Factory method to create a new log entry."""
        return cls(
            id=uuid4(),
            execution_id=execution_id,
            level=level,
            message=message,
            step=step,
            data=data or {},
            timestamp=utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "execution_id": str(self.execution_id),
            "level": self.level.value,
            "message": self.message,
            "step": self.step,
            "data": self.data,
            "timestamp": _isoformat(self.timestamp),
        }

# Domain models
from .enums import ExecutionStatus, OnErrorPolicy, LogLevel, CircuitState
from .entities import StepSpec, WorkflowDefinition, Execution, ExecutionLogEntry, utcnow
from .outcomes import ContextPatch, SkipToStep, StopExecution, StepOutcome
from .state_machine import ExecutionStateMachine
from .errors import (
    EngineError,
    ValidationError,
    NotFoundError,
    InvalidStateError,
    ServiceUnavailableError,
    CircuitOpenError,
    ProcessorError,
    ExecutionInterruptedError,
)

__all__ = [
    "ExecutionStatus",
    "OnErrorPolicy",
    "LogLevel",
    "CircuitState",
    "StepSpec",
    "WorkflowDefinition",
    "Execution",
    "ExecutionLogEntry",
    "utcnow",
    "ContextPatch",
    "SkipToStep",
    "StopExecution",
    "StepOutcome",
    "ExecutionStateMachine",
    "EngineError",
    "ValidationError",
    "NotFoundError",
    "InvalidStateError",
    "ServiceUnavailableError",
    "CircuitOpenError",
    "ProcessorError",
    "ExecutionInterruptedError",
]

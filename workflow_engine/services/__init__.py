# Service layer
from .processors import StepProcessor, StepProcessorRegistry, create_default_registry
from .engine import WorkflowEngine, ValidationResult, create_engine
from .workflow_service import WorkflowService

__all__ = [
    "StepProcessor",
    "StepProcessorRegistry",
    "create_default_registry",
    "WorkflowEngine",
    "ValidationResult",
    "create_engine",
    "WorkflowService",
]

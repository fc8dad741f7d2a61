"""
Error taxonomy for the workflow engine.

Every error the engine raises to its callers derives from EngineError, so a
transport layer can map the whole taxonomy to responses in one place.
"""

from typing import List, Optional


class EngineError(Exception):
    """Base exception for workflow engine errors."""
    pass


class ValidationError(EngineError):
    """Raised when a workflow definition or request argument is invalid."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = list(errors or [])
        super().__init__(message)


class NotFoundError(EngineError):
    """Raised when a workflow or execution does not exist."""
    pass


class InvalidStateError(EngineError):
    """Raised when an operation is illegal for the current execution status."""
    pass


class ServiceUnavailableError(EngineError):
    """Raised when a dependency is unavailable; callers may retry later."""
    pass


class CircuitOpenError(ServiceUnavailableError):
    """Raised when a circuit breaker rejects a call without attempting it."""

    def __init__(self, breaker_name: str, retry_after: Optional[float] = None):
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{breaker_name}' is OPEN")


class ProcessorError(EngineError):
    """Raised when a step processor fails."""

    def __init__(
        self,
        step_type: str,
        message: str,
        cause: Optional[BaseException] = None,
    ):
        self.step_type = step_type
        self.cause = cause
        super().__init__(message)


class ExecutionInterruptedError(EngineError):
    """Raised when a restart or shutdown forces an execution to fail."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)

# Persistence layer
from typing import Optional

from workflow_engine.config import Config
from workflow_engine.core import CircuitBreaker

from .base import ExecutionStore
from .database import Database
from .inmemory import InMemoryExecutionStore
from .postgres import PostgresExecutionStore


def create_store(config: Config, breaker: Optional[CircuitBreaker] = None) -> ExecutionStore:
    """Build the store selected by ``STORE_BACKEND``, guarded by a ``database`` breaker."""
    breaker = breaker or CircuitBreaker(
        "database",
        threshold=config.DB_BREAKER_THRESHOLD,
        timeout=config.DB_BREAKER_TIMEOUT,
    )
    if config.STORE_BACKEND == "memory":
        return InMemoryExecutionStore(breaker=breaker)
    if config.STORE_BACKEND == "postgres":
        db = Database(config=config)
        return PostgresExecutionStore(db, breaker=breaker)
    raise ValueError(f"Unknown STORE_BACKEND: {config.STORE_BACKEND}")


__all__ = [
    "ExecutionStore",
    "Database",
    "InMemoryExecutionStore",
    "PostgresExecutionStore",
    "create_store",
]

# Resilience primitives
from .circuit_breaker import CircuitBreaker, CircuitBreakerState

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerState",
]

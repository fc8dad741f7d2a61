"""
Step outcomes: the control signal a processor hands back to the driver.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Union


@dataclass(frozen=True)
class ContextPatch:
    """Merge ``patch`` into the execution context and run the next step."""
    patch: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SkipToStep:
    """Continue at step ``index`` (zero-based, forward only)."""
    index: int
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StopExecution:
    """Halt the step loop without error; the execution completes."""
    context: Dict[str, Any] = field(default_factory=dict)


StepOutcome = Union[ContextPatch, SkipToStep, StopExecution]

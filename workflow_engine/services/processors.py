"""
Step processors and their registry.

A processor implements the side effect of one step type. It is any callable
``(step, context, execution) -> StepOutcome | dict | None``; class-based
processors derive from StepProcessor to also validate their config when a
workflow is defined. The registry allows dynamic registration and lookup by
step type, and turns every processor failure into a ProcessorError.
"""

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import requests

from workflow_engine.domain import (
    ContextPatch,
    Execution,
    ProcessorError,
    SkipToStep,
    StepSpec,
    StopExecution,
)
from workflow_engine.domain.outcomes import StepOutcome

from . import conditions

logger = logging.getLogger(__name__)

ProcessorResult = Union[StepOutcome, Mapping[str, Any], None]
ProcessorFn = Callable[[StepSpec, Dict[str, Any], Execution], ProcessorResult]


class StepProcessor(ABC):
    """
    Base class for class-based step processors.

    Subclasses implement ``process``; ``validate_config`` is consulted when a
    workflow definition is validated and returns a list of problems.
    """

    @abstractmethod
    def process(
        self,
        step: StepSpec,
        context: Dict[str, Any],
        execution: Execution,
    ) -> ProcessorResult:
        """
        Run the step.

        Args:
            step: The step being executed, including its config
            context: Snapshot of the execution context (do not mutate)
            execution: The execution record the step belongs to

        Returns:
            A StepOutcome, a mapping merged into the context, or None

        Raises:
            Exception: On any failure
        """
        pass

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        """Validate step configuration. Override in subclasses."""
        return []

    def validate_placement(self, config: Dict[str, Any], index: int, total: int) -> List[str]:
        """Problems with the step at zero-based ``index`` in a workflow of ``total`` steps."""
        return []

    def __call__(self, step, context, execution):
        return self.process(step, context, execution)


class StepProcessorRegistry:
    """
    Registry for step processors.

    Allows dynamic registration and lookup of processors by step type.
    """

    def __init__(self):
        self._processors: Dict[str, ProcessorFn] = {}

    def register(self, step_type: str, processor: ProcessorFn) -> None:
        """Register (or replace) the processor for a step type."""
        if not step_type or not isinstance(step_type, str):
            raise ValueError("step type must be a non-empty string")
        if not callable(processor):
            raise TypeError(f"processor for '{step_type}' is not callable")
        replaced = step_type in self._processors
        self._processors[step_type] = processor
        logger.info(
            f"{'Replaced' if replaced else 'Registered'} processor for step type: {step_type}"
        )

    def has(self, step_type: str) -> bool:
        return step_type in self._processors

    def get(self, step_type: str) -> Optional[ProcessorFn]:
        """Get the processor for a step type."""
        return self._processors.get(step_type)

    def list_types(self) -> List[str]:
        """List all registered step types."""
        return sorted(self._processors)

    def validate_config(
        self,
        step_type: str,
        config: Dict[str, Any],
        index: Optional[int] = None,
        total: Optional[int] = None,
    ) -> List[str]:
        """
        Processor-specific config problems for a step, if it has a validator.

        With ``index`` and ``total`` the step's position in its workflow is
        checked too.
        """
        processor = self._processors.get(step_type)
        if not isinstance(processor, StepProcessor):
            return []
        problems = list(processor.validate_config(config))
        if index is not None and total is not None:
            problems.extend(processor.validate_placement(config, index, total))
        return problems

    def invoke(
        self,
        step_type: str,
        step: StepSpec,
        context: Dict[str, Any],
        execution: Execution,
    ) -> StepOutcome:
        """
        Run the processor for ``step_type`` and normalize its result.

        Raises ProcessorError for an unknown type, for any exception raised by
        the processor, and for a return value that is not an outcome.
        """
        processor = self._processors.get(step_type)
        if processor is None:
            raise ProcessorError(step_type, f"Unknown step type: {step_type}")

        try:
            result = processor(step, dict(context), execution)
        except ProcessorError:
            raise
        except Exception as e:
            raise ProcessorError(step_type, str(e) or type(e).__name__, cause=e) from e

        return self._normalize(step_type, result)

    @staticmethod
    def _normalize(step_type: str, result: ProcessorResult) -> StepOutcome:
        if result is None:
            return ContextPatch({})
        if isinstance(result, (ContextPatch, SkipToStep, StopExecution)):
            return result
        if isinstance(result, Mapping):
            return ContextPatch(dict(result))
        raise ProcessorError(
            step_type,
            f"Processor for '{step_type}' returned unsupported result {type(result).__name__}",
        )


# ============================================
# BUILT-IN PROCESSORS
# ============================================

class MarkerProcessor(StepProcessor):
    """
    Placeholder action that records a flag in the context.

    Used for the content, user, analytics and payment step types until a real
    integration is registered in its place.
    """

    def __init__(self, flag: str, description: str):
        self.flag = flag
        self.description = description

    def process(self, step, context, execution):
        logger.debug(f"[{execution.id}] {self.description}")
        return ContextPatch({self.flag: True})


MARKER_STEP_TYPES = {
    # Content steps
    "fetch_news": ("news_fetched", "Fetching news"),
    "format_content": ("content_formatted", "Formatting content"),
    "post_to_channel": ("posted", "Posting to channel"),
    "send_notification": ("notification_sent", "Sending notification"),
    # User steps
    "create_user": ("user_created", "Creating user"),
    "update_subscription": ("subscription_updated", "Updating subscription"),
    "send_welcome": ("welcome_sent", "Sending welcome message"),
    # Analytics steps
    "track_event": ("event_tracked", "Tracking event"),
    "generate_report": ("report_generated", "Generating report"),
    # Payment steps
    "process_payment": ("payment_processed", "Processing payment"),
    "update_subscription_status": ("subscription_status_updated", "Updating subscription status"),
}


class DelayProcessor(StepProcessor):
    """
    Sleep for a fixed time.

    Config schema:
    {
        "delay": 1000   # milliseconds
    }
    """

    DEFAULT_DELAY_MS = 1000

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._sleep = sleep

    def process(self, step, context, execution):
        delay = step.config.get("delay", self.DEFAULT_DELAY_MS)
        logger.debug(f"[{execution.id}] Delaying for {delay}ms")
        self._sleep(delay / 1000.0)
        return ContextPatch({"delayed": True})

    def validate_config(self, config):
        delay = config.get("delay", self.DEFAULT_DELAY_MS)
        if isinstance(delay, bool) or not isinstance(delay, (int, float)) or delay < 0:
            return ["delay must be a non-negative number of milliseconds"]
        return []


class WebhookProcessor(StepProcessor):
    """
    Call an HTTP endpoint.

    Config schema:
    {
        "url": "https://api.example.com/endpoint",
        "method": "GET" | "POST" | "PUT" | "PATCH" | "DELETE",
        "headers": {"key": "value"},
        "body": {...} | null,
        "timeout": 30,
        "expected_status": [200, 201, 204],
        "result_key": "webhook_response"
    }
    """

    METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
    PLACEHOLDER = re.compile(r"\{(\w+)\}")

    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session or requests.Session()

    def process(self, step, context, execution):
        config = step.config
        url = config["url"]
        method = config.get("method", "POST").upper()
        expected_status = config.get("expected_status", [200, 201, 202, 204])
        result_key = config.get("result_key", "webhook_response")

        url = self.render_url(url, context)

        logger.info(f"[{execution.id}] Calling webhook {method} {url}")

        response = self._session.request(
            method=method,
            url=url,
            headers=config.get("headers", {}),
            json=config.get("body"),
            timeout=config.get("timeout", 30),
        )

        if response.status_code not in expected_status:
            raise ProcessorError(
                "webhook",
                f"Webhook returned status {response.status_code}: {response.text[:200]}",
            )

        try:
            response_data = response.json()
        except (json.JSONDecodeError, ValueError):
            response_data = {"text": response.text}

        return ContextPatch({
            "webhook_called": True,
            result_key: {
                "status_code": response.status_code,
                "body": response_data,
            },
        })

    def render_url(self, url: str, context: Dict[str, Any]) -> str:
        """
        Fill ``{key}`` placeholders from top-level context keys.

        Values are URL-quoted. Only plain keys are looked up; nothing in the
        template can reach attributes or items of a context value.
        """
        def substitute(match):
            key = match.group(1)
            if key not in context:
                raise KeyError(f"url placeholder '{key}' is not in the context")
            return requests.utils.quote(str(context[key]), safe="")

        return self.PLACEHOLDER.sub(substitute, url)

    def validate_config(self, config):
        problems = []
        url = config.get("url")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            problems.append("url must be an http(s) URL")
        method = config.get("method", "POST")
        if not isinstance(method, str) or method.upper() not in self.METHODS:
            problems.append(f"method must be one of {', '.join(self.METHODS)}")
        return problems


class ConditionProcessor(StepProcessor):
    """
    Branch on a condition over the execution context.

    Config schema:
    {
        "condition": {"path": "user.plan", "op": "eq", "value": "pro"},
        "on_true": 3 | "stop",      # optional
        "on_false": 5 | "stop"      # optional
    }

    A numeric target jumps forward to that zero-based step index; "stop"
    completes the execution. Without a target for the result, the result is
    recorded as ``condition_result``.
    """

    STOP = "stop"

    def process(self, step, context, execution):
        node = conditions.parse(step.config.get("condition"))
        result = conditions.evaluate(node, context)
        logger.debug(f"[{execution.id}] Condition result: {result}")

        patch = {"condition_evaluated": True, "condition_result": result}
        target = step.config.get("on_true" if result else "on_false")

        if target is None:
            return ContextPatch(patch)
        if target == self.STOP:
            return StopExecution(patch)
        return SkipToStep(int(target), patch)

    def validate_config(self, config):
        if "condition" not in config:
            return ["condition is required"]
        problems = conditions.check(config["condition"])
        for key in ("on_true", "on_false"):
            target = config.get(key)
            if target is None or target == self.STOP:
                continue
            if isinstance(target, bool) or not isinstance(target, int) or target < 0:
                problems.append(f"{key} must be a step index or 'stop'")
        return problems

    def validate_placement(self, config, index, total):
        problems = []
        for key in ("on_true", "on_false"):
            target = config.get(key)
            if isinstance(target, bool) or not isinstance(target, int) or target < 0:
                continue
            if not index < target <= total:
                problems.append(
                    f"{key} target {target} must be after this step and at most {total}"
                )
        return problems


def create_default_registry(
    sleep: Callable[[float], None] = time.sleep,
    session: Optional[requests.Session] = None,
) -> StepProcessorRegistry:
    """Create a registry with all built-in processors."""
    registry = StepProcessorRegistry()

    for step_type, (flag, description) in MARKER_STEP_TYPES.items():
        registry.register(step_type, MarkerProcessor(flag, description))

    registry.register("delay", DelayProcessor(sleep=sleep))
    registry.register("webhook", WebhookProcessor(session=session))
    registry.register("condition", ConditionProcessor())

    logger.info(f"Registered {len(registry.list_types())} step processors")
    return registry


__all__ = [
    "StepProcessor",
    "StepProcessorRegistry",
    "MarkerProcessor",
    "DelayProcessor",
    "WebhookProcessor",
    "ConditionProcessor",
    "create_default_registry",
]

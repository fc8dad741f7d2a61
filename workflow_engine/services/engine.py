"""
Workflow engine - the core execution engine.

Creates executions, routes them onto work queues, drives their steps through
the processor registry, and tracks their state in the store. The store is the
source of truth for execution status; the engine only keeps lightweight
handles for the executions this process knows about.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple, Union
from uuid import UUID, uuid4

from workflow_engine.config import Config, get_config
from workflow_engine.core import CircuitBreaker
from workflow_engine.domain import (
    ContextPatch,
    Execution,
    ExecutionInterruptedError,
    ExecutionLogEntry,
    ExecutionStateMachine,
    ExecutionStatus,
    InvalidStateError,
    LogLevel,
    NotFoundError,
    OnErrorPolicy,
    ProcessorError,
    ServiceUnavailableError,
    SkipToStep,
    StepSpec,
    StopExecution,
    ValidationError,
    WorkflowDefinition,
    utcnow,
)
from workflow_engine.persistence import ExecutionStore
from workflow_engine.worker.consumer import QueueConsumer
from workflow_engine.worker.queue import QueueJob, QueueRouter

from .processors import StepProcessorRegistry

logger = logging.getLogger(__name__)

EVENTS = (
    "execution_queued",
    "execution_completed",
    "execution_failed",
    "execution_cancelled",
)

RESTART_REASON = "System restart during execution"
SHUTDOWN_REASON = "System shutdown"

# Kinds of step problem, each reported once with every step that has it
STEP_RULES = (
    ("object", "Step is not an object"),
    ("type", "Unknown step type"),
    ("config", "Missing config"),
    ("config_object", "Config must be an object"),
    ("on_error", "Invalid on_error"),
)


@dataclass
class ValidationResult:
    """Outcome of validating a workflow definition."""
    valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


@dataclass
class ExecutionHandle:
    """Where an execution's job lives, and whether this process is running it."""
    queue_name: Optional[str]
    job_id: Optional[str]
    running: bool = False
    queued: bool = False


class HealthMonitor:
    """
    Execution outcome counters with a rolling failure rate.

    Totals cover the life of the process; the failure rate only looks at
    outcomes inside the trailing ``window`` seconds.
    """

    def __init__(self, window: float, threshold: float, clock: Callable[[], float] = time.time):
        self.window = window
        self.threshold = threshold
        self._clock = clock
        self._lock = threading.Lock()
        self._samples: Deque[Tuple[float, bool]] = deque()
        self.executions = 0
        self.failures = 0
        self.last_health_check: Optional[str] = None

    def record(self, failed: bool) -> None:
        with self._lock:
            self.executions += 1
            if failed:
                self.failures += 1
            self._samples.append((self._clock(), failed))
            self._trim()

    def _trim(self) -> None:
        cutoff = self._clock() - self.window
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def failure_rate(self) -> float:
        with self._lock:
            self._trim()
            if not self._samples:
                return 0.0
            return sum(1 for _, failed in self._samples if failed) / len(self._samples)

    def check(self) -> Dict[str, Any]:
        """Take one health sample, warning when the failure rate is too high."""
        rate = self.failure_rate()
        with self._lock:
            self.last_health_check = utcnow().isoformat()
        if rate > self.threshold:
            logger.warning(
                f"High failure rate detected: {rate:.1%} over the last "
                f"{self.window:.0f}s ({self.failures} failures / {self.executions} executions)"
            )
        return self.snapshot()

    def snapshot(self) -> Dict[str, Any]:
        rate = self.failure_rate()
        with self._lock:
            return {
                "executions": self.executions,
                "failures": self.failures,
                "failure_rate": rate,
                "last_health_check": self.last_health_check,
            }


class WorkflowEngine:
    """
    Core workflow execution engine.

    Responsibilities:
    - Validate workflow definitions against the processor registry
    - Create executions and hand them to the work queues
    - Drive each execution's steps in order, checkpointing after every step
    - Cancel, retry and force-fail executions
    - Report health and queue depth

    Safe to call from request threads and queue consumer threads at once. No
    lock is ever held while a step processor runs.
    """

    def __init__(
        self,
        store: ExecutionStore,
        queues: QueueRouter,
        registry: StepProcessorRegistry,
        config: Optional[Config] = None,
        workflow_breaker: Optional[CircuitBreaker] = None,
    ):
        self.store = store
        self.queues = queues
        self.registry = registry
        self.config = config or get_config()
        self.workflow_breaker = workflow_breaker or CircuitBreaker(
            "workflow",
            threshold=self.config.WORKFLOW_BREAKER_THRESHOLD,
            timeout=self.config.WORKFLOW_BREAKER_TIMEOUT,
        )
        self.health = HealthMonitor(
            window=self.config.HEALTH_WINDOW_SECONDS,
            threshold=self.config.HEALTH_FAILURE_RATE_THRESHOLD,
        )

        self._active: Dict[UUID, ExecutionHandle] = {}
        self._active_lock = threading.Lock()
        self._listeners: Dict[str, List[Callable[[Dict[str, Any]], None]]] = {
            event: [] for event in EVENTS
        }
        self._accepting = True
        self._stop_event = threading.Event()
        self._consumers: List[QueueConsumer] = []
        self._health_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle

    def initialize(self, start_consumers: bool = True) -> None:
        """
        Prepare the engine to run.

        Ensures the store schema, fails executions interrupted by a previous
        process, releases jobs that process left active, then starts the
        queue consumers and the health monitor.
        """
        logger.info("Initializing workflow engine")
        self.store.ensure_indexes()
        self.resume_interrupted_executions()
        self.queues.release_orphaned_jobs()

        if start_consumers:
            self.start_consumers()
            self._start_health_monitor()

        logger.info(
            f"Workflow engine initialized with {len(self.registry.list_types())} step types"
        )

    def resume_interrupted_executions(self) -> int:
        """
        Fail every execution left running by a previous process.

        Steps are not assumed to be idempotent, so a half-finished execution
        is never resumed across a restart; it is failed and can be retried.
        """
        interrupted = self.store.find_executions_by_status(ExecutionStatus.RUNNING)
        for execution in interrupted:
            self._force_fail(execution.id, ExecutionInterruptedError(RESTART_REASON))

        if interrupted:
            logger.warning(f"Marked {len(interrupted)} interrupted executions as failed")
        return len(interrupted)

    def start_consumers(self) -> None:
        """Start ``WORKER_CONCURRENCY`` consumer threads per queue."""
        if self._consumers:
            return
        for queue_name in self.queues.queue_names:
            for n in range(self.config.WORKER_CONCURRENCY):
                consumer = QueueConsumer(
                    queues=self.queues,
                    queue_name=queue_name,
                    handler=self.process_job,
                    on_exhausted=self._job_exhausted,
                    poll_interval=self.config.WORKER_POLL_INTERVAL,
                    defer_delay=self.config.WORKER_DEFER_DELAY,
                    name=f"{queue_name}-consumer-{n}",
                )
                consumer.start()
                self._consumers.append(consumer)
        logger.info(f"Started {len(self._consumers)} queue consumers")

    def _start_health_monitor(self) -> None:
        def loop():
            while not self._stop_event.wait(self.config.HEALTH_CHECK_INTERVAL):
                self.check_health()

        self._health_thread = threading.Thread(target=loop, name="health-monitor", daemon=True)
        self._health_thread.start()

    def shutdown(self, grace_period: Optional[float] = None) -> None:
        """
        Stop the engine.

        Stops accepting work and stops the consumers, waits up to
        ``grace_period`` seconds for running executions to finish, then
        force-fails what is left: executions this process is driving, and
        queued executions whose job it can still take off the queue. A job
        already taken by another worker is left to that worker.
        """
        if grace_period is None:
            grace_period = self.config.SHUTDOWN_GRACE_PERIOD

        logger.info("Shutting down workflow engine...")
        self._accepting = False
        self._stop_event.set()
        for consumer in self._consumers:
            consumer.stop()

        deadline = time.monotonic() + grace_period
        while self._running_count() > 0 and time.monotonic() < deadline:
            logger.info(f"Waiting for {self._running_count()} running executions to finish...")
            time.sleep(min(0.5, max(deadline - time.monotonic(), 0.0)))

        with self._active_lock:
            remaining = list(self._active.items())

        for execution_id, handle in remaining:
            if not handle.running and not (
                handle.queue_name
                and handle.job_id
                and self._remove_job(handle.queue_name, handle.job_id)
            ):
                self._discard_handle(execution_id)
                continue
            self._force_fail(execution_id, ExecutionInterruptedError(SHUTDOWN_REASON))
            self._discard_handle(execution_id)

        for consumer in self._consumers:
            consumer.join(timeout=1.0)
        self._consumers = []

        self.queues.close()
        logger.info("Workflow engine shutdown complete")

    @property
    def accepting_work(self) -> bool:
        return self._accepting

    # ------------------------------------------------------------------
    # Events

    def on(self, event: str, callback: Callable[[Dict[str, Any]], None]) -> None:
        """Subscribe to a lifecycle event."""
        if event not in self._listeners:
            raise ValueError(f"Unknown event '{event}'; expected one of {EVENTS}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(payload)
            except Exception:
                logger.exception(f"Listener for {event} raised")

    # ------------------------------------------------------------------
    # Validation

    def validate_workflow(
        self,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
    ) -> ValidationResult:
        """
        Check a workflow definition against the processor registry.

        Accepts a WorkflowDefinition or its raw JSON form. Returns every
        violation, one error per kind of problem naming each step that has it,
        followed by processor-specific config problems, one error each.
        """
        if isinstance(definition, WorkflowDefinition):
            steps: Any = [step.to_dict() for step in definition.steps]
        else:
            steps = definition.get("steps")

        if steps is None or (isinstance(steps, list) and not steps):
            return ValidationResult(False, ["Workflow must have at least one step"])
        if not isinstance(steps, list):
            return ValidationResult(False, ["Workflow steps must be a list"])

        offenders: Dict[str, List[str]] = {rule: [] for rule, _ in STEP_RULES}
        config_problems: List[str] = []
        for index, raw in enumerate(steps):
            self._check_step(index, raw, len(steps), offenders, config_problems)

        errors = [
            f"{label} at {', '.join(offenders[rule])}"
            for rule, label in STEP_RULES
            if offenders[rule]
        ]
        errors.extend(config_problems)
        return ValidationResult(not errors, errors)

    def _check_step(
        self,
        index: int,
        raw: Any,
        total: int,
        offenders: Dict[str, List[str]],
        config_problems: List[str],
    ) -> None:
        where = f"step {index + 1}"
        if not isinstance(raw, Mapping):
            offenders["object"].append(where)
            return

        step_type = raw.get("type")
        known_type = isinstance(step_type, str) and self.registry.has(step_type)
        if not step_type:
            offenders["type"].append(f"{where} (missing)")
        elif not known_type:
            offenders["type"].append(f"{where} ({step_type!r})")

        config = raw.get("config")
        if config is None:
            offenders["config"].append(where)
        elif not isinstance(config, Mapping):
            offenders["config_object"].append(where)
        elif known_type:
            for problem in self.registry.validate_config(step_type, dict(config), index, total):
                config_problems.append(f"Invalid config at {where}: {problem}")

        on_error = raw.get("on_error", raw.get("onError"))
        if on_error is not None and on_error not in {p.value for p in OnErrorPolicy}:
            offenders["on_error"].append(f"{where} ({on_error!r})")

    # ------------------------------------------------------------------
    # Submission

    def execute_workflow(
        self,
        workflow: WorkflowDefinition,
        execution_data: Optional[Mapping[str, Any]] = None,
    ) -> Execution:
        """
        Create an execution of ``workflow`` and queue it.

        ``execution_data`` may carry ``input``, ``priority`` and
        ``started_by``. If the job cannot be queued the execution is marked
        failed and the queue error is re-raised.
        """
        data = dict(execution_data or {})
        return self._submit(
            workflow,
            input=data.get("input") or {},
            priority=data.get("priority", self.config.DEFAULT_PRIORITY),
            started_by=data.get("started_by") or "system",
        )

    def retry_execution(self, execution_id: UUID, started_by: str = "system") -> Execution:
        """Start a new execution repeating a failed or cancelled one."""
        original = self.get_execution(execution_id)
        if not ExecutionStateMachine.can_retry(original.status):
            raise InvalidStateError(
                f"Cannot retry execution in status {original.status.value}"
            )

        workflow = self.store.get_workflow(original.workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {original.workflow_id} not found")

        execution = self._submit(
            workflow,
            input=original.input,
            priority=original.priority,
            started_by=started_by,
            retry_of=original.id,
            retry_count=original.retry_count + 1,
        )
        self._log(
            original.id,
            LogLevel.INFO,
            f"Retried as execution {execution.id}",
            data={"retry_execution_id": str(execution.id)},
        )
        return execution

    def _submit(
        self,
        workflow: WorkflowDefinition,
        input: Mapping[str, Any],
        priority: Any,
        started_by: str,
        retry_of: Optional[UUID] = None,
        retry_count: int = 0,
    ) -> Execution:
        if not self._accepting:
            raise ServiceUnavailableError("Workflow engine is shutting down")
        if not workflow.enabled:
            raise InvalidStateError(f"Workflow {workflow.id} is disabled")
        if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 10:
            raise ValidationError("Invalid priority", [f"priority must be an integer 1-10, got {priority!r}"])
        if not isinstance(input, Mapping):
            raise ValidationError("Invalid input", ["input must be an object"])

        execution = Execution.create(
            workflow,
            input=dict(input),
            priority=priority,
            started_by=started_by,
            retry_of=retry_of,
            retry_count=retry_count,
        )
        execution = self.store.create_execution(execution)

        queue_name = self.queues.route(workflow)
        job_id = uuid4().hex
        # Register before enqueueing so a fast consumer and a cancel both see it
        handle = ExecutionHandle(queue_name, job_id)
        with self._active_lock:
            self._active[execution.id] = handle

        try:
            self.store.record_workflow_execution(workflow.id)
            self.queues.enqueue(queue_name, execution.id, workflow.id, priority, job_id=job_id)
        except Exception as e:
            self._discard_handle(execution.id)
            error = f"Failed to queue execution: {e}"
            logger.error(f"Execution {execution.id}: {error}")
            if self._fail_quietly(execution.id, error):
                self._log(execution.id, LogLevel.ERROR, error)
                self._emit("execution_failed", self._event(execution, error=error))
            raise

        with self._active_lock:
            handle.queued = True
        self.store.mark_queued(execution.id, queue_name, job_id)
        self._log(
            execution.id,
            LogLevel.INFO,
            "Workflow execution queued",
            data={"queue": queue_name, "job_id": job_id, "priority": priority},
        )
        logger.info(
            f"Execution {execution.id} of workflow {workflow.id} queued on {queue_name} (job {job_id})"
        )
        self._emit("execution_queued", self._event(execution, queue=queue_name, job_id=job_id))

        return self.store.get_execution(execution.id) or execution

    # ------------------------------------------------------------------
    # Cancellation

    def cancel_execution(self, execution_id: UUID, cancelled_by: str = "system") -> Execution:
        """
        Cancel a pending, queued or running execution.

        Removes the job if it has not been picked up yet and records the
        cancellation. A running driver stops at its next checkpoint.
        """
        execution = self.get_execution(execution_id)
        if not ExecutionStateMachine.can_cancel(execution.status):
            raise InvalidStateError(
                f"Cannot cancel execution in status {execution.status.value}"
            )

        with self._active_lock:
            handle = self._active.get(execution_id)

        queue_name = handle.queue_name if handle else execution.queue_name
        job_id = handle.job_id if handle else execution.job_id
        if queue_name and job_id:
            self._remove_job(queue_name, job_id)

        cancelled = self.store.mark_cancelled(execution_id, cancelled_by)
        if cancelled is None:
            current = self.get_execution(execution_id)
            raise InvalidStateError(
                f"Cannot cancel execution in status {current.status.value}"
            )

        if handle and not handle.running:
            self._discard_handle(execution_id)

        self._log(
            execution_id,
            LogLevel.INFO,
            f"Execution cancelled by {cancelled_by}",
            data={"cancelled_by": cancelled_by},
        )
        logger.info(f"Execution {execution_id} cancelled by {cancelled_by}")
        self._emit("execution_cancelled", self._event(cancelled, cancelled_by=cancelled_by))
        return cancelled

    def _remove_job(self, queue_name: str, job_id: str) -> bool:
        try:
            return self.queues.remove(queue_name, job_id)
        except Exception as e:
            # The status write still stops the job when it is delivered
            logger.warning(f"Could not remove job {job_id} from {queue_name}: {e}")
            return False

    # ------------------------------------------------------------------
    # Queries

    def get_execution(self, execution_id: UUID) -> Execution:
        execution = self.store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    def list_executions(
        self,
        workflow_id: Optional[UUID] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Execution]:
        return self.store.list_executions(
            workflow_id=workflow_id, status=status, limit=limit, offset=offset
        )

    def get_execution_logs(
        self,
        execution_id: UUID,
        level: Optional[Union[LogLevel, str]] = None,
        step: Optional[int] = None,
        limit: int = 100,
    ) -> List[ExecutionLogEntry]:
        """Log entries of an execution in chronological order, newest ``limit`` kept."""
        self.get_execution(execution_id)
        if isinstance(level, str):
            try:
                level = LogLevel(level)
            except ValueError:
                raise ValidationError("Invalid log level", [f"unknown level '{level}'"])
        limit = max(1, min(int(limit), 1000))
        return self.store.get_logs(execution_id, level=level, step=step, limit=limit)

    # ------------------------------------------------------------------
    # Execution driver

    def process_job(self, job: QueueJob) -> None:
        """Run the execution a dequeued job refers to."""
        logger.info(
            f"Processing job {job.id} (execution: {job.execution_id}, attempt: {job.attempt})"
        )
        self.run_execution(
            UUID(job.execution_id),
            UUID(job.workflow_id),
            attempt=job.attempt,
            redelivered=job.redelivered,
        )

    def _job_exhausted(self, job: QueueJob, error: BaseException) -> None:
        """
        Last delivery of a job failed; make sure its execution does not linger.

        If the failure cannot be recorded because the store is unavailable,
        the job is deferred instead of dropped, so a later delivery either
        finishes the execution or records the failure.
        """
        execution_id = UUID(job.execution_id)
        message = f"Execution abandoned after {job.attempt} attempts: {error}"
        try:
            failed = self.store.mark_failed(execution_id, message)
        except Exception as e:
            retry_after = getattr(e, "retry_after", None)
            delay = retry_after if retry_after is not None else self.config.DB_BREAKER_TIMEOUT
            logger.error(
                f"Could not fail execution {execution_id} ({e}), deferring job {job.id} for {delay:.1f}s"
            )
            self.queues.defer(job, delay, str(e))
            return

        if failed:
            self._log(execution_id, LogLevel.ERROR, message)
            self.health.record(failed=True)
            self._emit("execution_failed", {"execution_id": str(execution_id), "error": message})
        self._discard_handle(execution_id)

    def run_execution(
        self,
        execution_id: UUID,
        workflow_id: UUID,
        attempt: int = 1,
        redelivered: Optional[bool] = None,
    ) -> Optional[Execution]:
        """
        Drive one execution through its steps.

        Guarded by the ``workflow`` circuit breaker. Terminal executions are
        left alone; a running execution is only re-entered on a redelivered
        job, resuming from its checkpoint; ``redelivered`` defaults to
        ``attempt > 1``. Step failures end up on the execution record;
        unexpected driver errors are recorded and re-raised so the job is
        retried.
        """
        if redelivered is None:
            redelivered = attempt > 1
        return self.workflow_breaker.execute(
            lambda: self._drive(execution_id, workflow_id, attempt, redelivered)
        )

    def _drive(
        self, execution_id: UUID, workflow_id: UUID, attempt: int, redelivered: bool
    ) -> Optional[Execution]:
        execution = self.store.get_execution(execution_id)
        if execution is None:
            logger.warning(f"Execution {execution_id} not found, dropping job")
            return None

        if execution.is_terminal:
            logger.info(f"Execution {execution_id} is {execution.status.value}, skipping")
            self._discard_handle(execution_id)
            return execution

        resumed = False
        if execution.status == ExecutionStatus.RUNNING:
            if not redelivered:
                logger.warning(f"Execution {execution_id} is already running, skipping duplicate job")
                return execution
            resumed = True
        else:
            started = self.store.mark_running(execution_id)
            if started is None:
                # Cancelled, or taken by another consumer, since the read
                return self.store.get_execution(execution_id)
            execution = started

        self._mark_handle_running(execution)

        try:
            workflow = self.store.get_workflow(workflow_id)
            if workflow is None:
                self._finish_failed(execution, f"Workflow {workflow_id} not found")
                return self.store.get_execution(execution_id)

            if resumed:
                self._log(
                    execution_id,
                    LogLevel.WARN,
                    f"Execution resumed from step {execution.current_step + 1} (attempt {attempt})",
                )
            else:
                self._log(execution_id, LogLevel.INFO, "Execution started")

            status = self._run_steps(execution, workflow.steps)
        except Exception as e:
            logger.exception(f"Unexpected error in execution {execution_id}")
            error = f"Unexpected error: {e}"
            if self._fail_quietly(execution_id, error):
                self._log(execution_id, LogLevel.ERROR, f"Execution failed: {error}")
                self.health.record(failed=True)
                self._emit("execution_failed", self._event(execution, error=error))
            raise
        finally:
            self._discard_handle(execution_id)

        final = self.store.get_execution(execution_id)
        if status == ExecutionStatus.COMPLETED:
            self.health.record(failed=False)
            self._emit(
                "execution_completed",
                self._event(execution, context=final.final_context if final else None),
            )
        return final

    def _run_steps(self, execution: Execution, steps: List[StepSpec]) -> ExecutionStatus:
        """
        The step loop.

        Every checkpoint and the final completion write only succeed while
        the execution is still running; when one does not, the execution was
        cancelled or failed elsewhere and the loop stops.
        """
        execution_id = execution.id
        total = len(steps)
        context: Dict[str, Any] = {**execution.input, **execution.context}
        index = execution.current_step

        while index < total:
            step = steps[index]
            self._log(
                execution_id,
                LogLevel.INFO,
                f"Starting step {index + 1}: {step.label}",
                step=index,
                data={"type": step.type},
            )

            try:
                outcome = self.registry.invoke(step.type, step, context, execution)
                if isinstance(outcome, SkipToStep) and not index < outcome.index <= total:
                    raise ProcessorError(
                        step.type,
                        f"Invalid skip target {outcome.index} from step {index} "
                        f"(must be after it and at most {total})",
                    )
            except ProcessorError as e:
                self._log(
                    execution_id,
                    LogLevel.ERROR,
                    f"Step {index + 1} failed: {e}",
                    step=index,
                    data={"type": step.type, "error": str(e)},
                )

                if step.on_error == OnErrorPolicy.FAIL:
                    error = f"Step {index + 1} ({step.label}) failed: {e}"
                    if not self._finish_failed(execution, error):
                        return self._stopped(execution_id)
                    logger.warning(f"Execution {execution_id} failed: {error}")
                    return ExecutionStatus.FAILED

                if step.on_error == OnErrorPolicy.CONTINUE:
                    message = "Continuing despite step failure"
                else:
                    message = "Skipping to next step due to failure"
                self._log(execution_id, LogLevel.WARN, message, step=index)

                index += 1
                if not self.store.save_checkpoint(execution_id, index, context):
                    return self._stopped(execution_id)
                continue

            stop = False
            if isinstance(outcome, ContextPatch):
                context.update(outcome.patch)
                next_index = index + 1
            elif isinstance(outcome, SkipToStep):
                context.update(outcome.context)
                next_index = outcome.index
            else:
                context.update(outcome.context)
                next_index = index + 1
                stop = True

            if not self.store.save_checkpoint(execution_id, next_index, context):
                return self._stopped(execution_id)

            self._log(
                execution_id,
                LogLevel.INFO,
                f"Completed step {index + 1}: {step.label}",
                step=index,
            )

            if stop:
                self._log(execution_id, LogLevel.INFO, f"Execution stopped by step {index + 1}")
                break

            if next_index != index + 1:
                self._log(
                    execution_id,
                    LogLevel.DEBUG,
                    f"Skipping to step {next_index + 1}",
                    step=index,
                    data={"target": next_index},
                )
            index = next_index

        if not self.store.mark_completed(execution_id, context):
            return self._stopped(execution_id)

        self._log(execution_id, LogLevel.INFO, "Execution completed successfully")
        logger.info(f"Execution {execution_id} completed")
        return ExecutionStatus.COMPLETED

    def _stopped(self, execution_id: UUID) -> ExecutionStatus:
        """The execution left ``running`` under the driver; report where it went."""
        current = self.store.get_execution(execution_id)
        status = current.status if current else ExecutionStatus.CANCELLED
        logger.info(f"Execution {execution_id} is {status.value}, stopping driver")
        return status

    def _finish_failed(self, execution: Execution, error: str) -> bool:
        """Record a step-level failure. False if the execution already left running."""
        if not self.store.mark_failed(execution.id, error):
            return False
        self._log(execution.id, LogLevel.ERROR, f"Execution failed: {error}")
        self.health.record(failed=True)
        self._emit("execution_failed", self._event(execution, error=error))
        return True

    def _force_fail(self, execution_id: UUID, reason: ExecutionInterruptedError) -> None:
        if self._fail_quietly(execution_id, str(reason)):
            self._log(
                execution_id,
                LogLevel.ERROR,
                f"Execution failed: {reason}",
                data={"reason": reason.reason},
            )
            self.health.record(failed=True)
            self._emit("execution_failed", {"execution_id": str(execution_id), "error": str(reason)})

    def _fail_quietly(self, execution_id: UUID, error: str) -> bool:
        """Mark failed without letting a store error escape."""
        try:
            return self.store.mark_failed(execution_id, error)
        except Exception as e:
            logger.error(f"Failed to mark execution {execution_id} as failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Handles

    def _mark_handle_running(self, execution: Execution) -> None:
        with self._active_lock:
            handle = self._active.get(execution.id)
            if handle is None:
                handle = ExecutionHandle(execution.queue_name, execution.job_id)
                self._active[execution.id] = handle
            handle.running = True

    def _discard_handle(self, execution_id: UUID) -> None:
        with self._active_lock:
            self._active.pop(execution_id, None)

    def _prune_handles(self) -> int:
        """
        Forget queued executions whose job another worker has taken.

        Such an execution is that worker's to drive. Cancelling it falls back
        to the routing stored on the record.
        """
        with self._active_lock:
            idle = [
                (execution_id, handle)
                for execution_id, handle in self._active.items()
                if handle.queued and not handle.running
            ]

        pruned = 0
        for execution_id, handle in idle:
            try:
                if self.queues.is_pending(handle.queue_name, handle.job_id):
                    continue
            except Exception as e:
                logger.warning(f"Could not check job {handle.job_id} on {handle.queue_name}: {e}")
                continue
            with self._active_lock:
                if self._active.get(execution_id) is handle and not handle.running:
                    del self._active[execution_id]
                    pruned += 1

        if pruned:
            logger.debug(f"Dropped {pruned} handles for jobs taken by other workers")
        return pruned

    def _running_count(self) -> int:
        with self._active_lock:
            return sum(1 for handle in self._active.values() if handle.running)

    def _log(
        self,
        execution_id: UUID,
        level: LogLevel,
        message: str,
        step: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an execution log entry. A failed write never stops the caller."""
        entry = ExecutionLogEntry.create(
            execution_id=execution_id,
            level=level,
            message=message,
            step=step,
            data=data,
        )
        try:
            self.store.append_log(entry)
        except Exception as e:
            logger.error(f"Failed to log for execution {execution_id} ({message}): {e}")

    @staticmethod
    def _event(execution: Execution, **extra: Any) -> Dict[str, Any]:
        payload = {
            "execution_id": str(execution.id),
            "workflow_id": str(execution.workflow_id),
        }
        payload.update(extra)
        return payload

    # ------------------------------------------------------------------
    # Status

    def get_status(self) -> Dict[str, Any]:
        with self._active_lock:
            active = len(self._active)
            running = sum(1 for handle in self._active.values() if handle.running)

        health = self.health.snapshot()
        return {
            "accepting_work": self._accepting,
            "active_executions": active,
            "running_executions": running,
            "health_stats": health,
            "queue_stats": self.queues.all_stats(),
            "circuit_breakers": {
                "database": self.store.breaker.get_state().to_dict(),
                "workflow": self.workflow_breaker.get_state().to_dict(),
            },
            "consumers": len(self._consumers),
            "last_health_check": health["last_health_check"],
        }

    def check_health(self) -> Dict[str, Any]:
        """Take one health-monitor sample and drop handles for jobs taken elsewhere."""
        self._prune_handles()
        snapshot = self.health.check()
        logger.debug(
            f"Health check: {self._running_count()} running executions, "
            f"failure rate {snapshot['failure_rate']:.1%}"
        )
        return snapshot


def create_engine(config: Optional[Config] = None, redis_client=None) -> WorkflowEngine:
    """Build an engine with the configured store, queues and built-in processors."""
    from workflow_engine.persistence import create_store

    from .processors import create_default_registry

    config = config or get_config()
    return WorkflowEngine(
        store=create_store(config),
        queues=QueueRouter.from_config(config, client=redis_client),
        registry=create_default_registry(),
        config=config,
    )

"""
Queue consumers.

Each consumer is a daemon thread polling one named queue and handing every
job it takes to a handler. The consumer owns job acknowledgement: a handler
that returns completes the job, a handler that raises fails it, which either
schedules a backoff retry or dead-letters the job. A handler that raises
ServiceUnavailableError never got to run, so its job is deferred without
using up an attempt.
"""

import logging
import threading
from typing import Callable, Optional

from workflow_engine.domain import ServiceUnavailableError

from .queue import QueueJob, QueueRouter

logger = logging.getLogger(__name__)


class QueueConsumer:
    """
    Background consumer for one work queue.

    Features:
    - Cooperative stop (the job in hand is always finished first)
    - Automatic retry handling through the queue's backoff policy
    - A callback when a job has used up all of its attempts
    - Deferral, not failure, while a dependency is unavailable
    """

    def __init__(
        self,
        queues: QueueRouter,
        queue_name: str,
        handler: Callable[[QueueJob], None],
        on_exhausted: Optional[Callable[[QueueJob, BaseException], None]] = None,
        poll_interval: float = 1.0,
        name: Optional[str] = None,
        defer_delay: float = 5.0,
    ):
        self.queues = queues
        self.queue_name = queue_name
        self.handler = handler
        self.on_exhausted = on_exhausted
        self.poll_interval = poll_interval
        self.name = name or f"{queue_name}-consumer"
        self.defer_delay = defer_delay

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._current_job: Optional[QueueJob] = None
        self.processed = 0
        self.failed = 0
        self.deferred = 0

    def start(self) -> None:
        """Start the consumer thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self.run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Ask the consumer to stop after the job in hand."""
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        """Main processing loop."""
        logger.info(f"Consumer {self.name} started on queue {self.queue_name}")

        while not self._stop_event.is_set():
            try:
                if not self.process_one():
                    self._stop_event.wait(self.poll_interval)
            except Exception as e:
                logger.exception(f"Error in consumer {self.name} loop: {e}")
                self._stop_event.wait(max(self.poll_interval, 1.0))

        logger.info(f"Consumer {self.name} stopped")

    def process_one(self) -> bool:
        """
        Process a single job from the queue.

        Returns True if a job was taken, False if the queue was empty.
        """
        job = self.queues.dequeue(self.queue_name)
        if job is None:
            return False

        self._current_job = job
        try:
            self.handler(job)
        except ServiceUnavailableError as e:
            self.deferred += 1
            retry_after = getattr(e, "retry_after", None)
            delay = max(retry_after if retry_after is not None else self.defer_delay, self.poll_interval)
            self.queues.defer(job, delay, str(e))
            return True
        except Exception as e:
            self.failed += 1
            logger.exception(f"Job {job.id} failed on attempt {job.attempt}: {e}")
            if not self.queues.fail(job, str(e)) and self.on_exhausted is not None:
                self.on_exhausted(job, e)
            return True
        finally:
            self._current_job = None

        self.queues.complete(job)
        self.processed += 1
        return True

    def get_stats(self) -> dict:
        """Get consumer statistics."""
        job = self._current_job
        return {
            "name": self.name,
            "queue": self.queue_name,
            "running": self.is_alive,
            "processed": self.processed,
            "failed": self.failed,
            "deferred": self.deferred,
            "current_job": job.id if job else None,
        }

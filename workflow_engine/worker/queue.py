"""
Redis-backed work queues for workflow executions.

Each named queue keeps its jobs in a handful of Redis keys:

    {prefix}:{queue}:waiting    sorted set, ready jobs by priority then FIFO
    {prefix}:{queue}:delayed    sorted set, backoff retries by ready time
    {prefix}:{queue}:jobs       hash, job id -> job JSON
    {prefix}:{queue}:active     hash, job id -> dequeue time
    {prefix}:{queue}:completed  sorted set, finished job ids (trimmed)
    {prefix}:{queue}:failed     sorted set, dead-lettered job ids (trimmed)

Delivery is at-least-once: a job stays in ``active`` until it is completed or
failed, and jobs orphaned there by a crash are released on startup.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence
from uuid import UUID, uuid4

import redis

from workflow_engine.domain import WorkflowDefinition

logger = logging.getLogger(__name__)

QUEUE_NAMES = ("content", "user", "payment", "analytics")
DEFAULT_QUEUE = "content"

# Scores sort ascending; the priority band dominates the millisecond timestamp.
_PRIORITY_BAND = 10 ** 13


@dataclass
class QueueJob:
    """
    A unit of work referencing one execution.

    Contains metadata for tracking delivery attempts.
    """
    id: str
    queue: str
    execution_id: str
    workflow_id: str
    priority: int = 5
    attempt: int = 1
    max_attempts: int = 3
    created_at: float = field(default_factory=time.time)
    last_error: Optional[str] = None
    deferrals: int = 0

    def to_json(self) -> str:
        """Serialize job to JSON."""
        return json.dumps({
            "id": self.id,
            "queue": self.queue,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "priority": self.priority,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at,
            "last_error": self.last_error,
            "deferrals": self.deferrals,
        })

    @classmethod
    def from_json(cls, data: str) -> "QueueJob":
        """Deserialize job from JSON."""
        obj = json.loads(data)
        return cls(
            id=obj["id"],
            queue=obj["queue"],
            execution_id=obj["execution_id"],
            workflow_id=obj["workflow_id"],
            priority=obj.get("priority", 5),
            attempt=obj.get("attempt", 1),
            max_attempts=obj.get("max_attempts", 3),
            created_at=obj.get("created_at", time.time()),
            last_error=obj.get("last_error"),
            deferrals=obj.get("deferrals", 0),
        )

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    @property
    def redelivered(self) -> bool:
        """Whether an earlier delivery of this job may already have started it."""
        return self.attempt > 1 or self.deferrals > 0


class QueueRouter:
    """
    Routes executions to named queues and moves jobs through them.

    Features:
    - Tag and name based queue selection
    - Priority ordering (higher priority first, FIFO within a priority)
    - Exponential backoff retries up to ``attempts`` deliveries
    - Dead-lettering of exhausted jobs, deferral while a dependency is down
    - Bounded completed/failed history
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "workflows",
        queue_names: Sequence[str] = QUEUE_NAMES,
        attempts: int = 3,
        backoff: float = 2.0,
        history_limit: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.queue_names = tuple(queue_names)
        self.attempts = attempts
        self.backoff = backoff
        self.history_limit = history_limit
        self._clock = clock
        self._redis: Optional[redis.Redis] = client

    @classmethod
    def from_config(cls, config, client: Optional[redis.Redis] = None) -> "QueueRouter":
        return cls(
            client=client,
            redis_url=config.REDIS_URL,
            prefix=config.QUEUE_PREFIX,
            attempts=config.JOB_ATTEMPTS,
            backoff=config.JOB_BACKOFF_DELAY,
            history_limit=config.QUEUE_HISTORY_LIMIT,
        )

    @property
    def redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            self._redis.close()
            self._redis = None

    def _key(self, queue: str, kind: str) -> str:
        return f"{self.prefix}:{queue}:{kind}"

    def _check_queue(self, queue: str) -> None:
        if queue not in self.queue_names:
            raise ValueError(f"Queue {queue} not found")

    def _waiting_score(self, priority: int) -> float:
        return (10 - priority) * _PRIORITY_BAND + int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # Routing

    def route(self, workflow: WorkflowDefinition) -> str:
        """
        Pick the queue for a workflow.

        The first queue named by one of the workflow's tags wins; failing
        that, the first queue whose name appears in the workflow name.
        """
        tags = {tag.lower() for tag in workflow.tags}
        for queue in self.queue_names:
            if queue in tags:
                return queue

        name = workflow.name.lower()
        for queue in self.queue_names:
            if queue in name:
                return queue

        return DEFAULT_QUEUE if DEFAULT_QUEUE in self.queue_names else self.queue_names[0]

    # ------------------------------------------------------------------
    # Producer side

    def enqueue(
        self,
        queue: str,
        execution_id: UUID,
        workflow_id: UUID,
        priority: int = 5,
        job_id: Optional[str] = None,
    ) -> QueueJob:
        """Add a job for ``execution_id`` to ``queue``."""
        self._check_queue(queue)
        if not 1 <= priority <= 10:
            raise ValueError(f"priority must be between 1 and 10, got {priority}")

        job = QueueJob(
            id=job_id or uuid4().hex,
            queue=queue,
            execution_id=str(execution_id),
            workflow_id=str(workflow_id),
            priority=priority,
            max_attempts=self.attempts,
            created_at=self._clock(),
        )

        pipe = self.redis.pipeline()
        pipe.hset(self._key(queue, "jobs"), job.id, job.to_json())
        pipe.zadd(self._key(queue, "waiting"), {job.id: self._waiting_score(priority)})
        pipe.execute()

        logger.info(f"Enqueued job {job.id} on {queue} for execution {execution_id}")
        return job

    def remove(self, queue: str, job_id: str) -> bool:
        """
        Remove a job that has not been picked up yet.

        Returns False when the job is unknown or already being processed.
        """
        self._check_queue(queue)
        removed = self.redis.zrem(self._key(queue, "waiting"), job_id)
        removed += self.redis.zrem(self._key(queue, "delayed"), job_id)
        if not removed:
            return False
        self.redis.hdel(self._key(queue, "jobs"), job_id)
        logger.info(f"Removed job {job_id} from {queue}")
        return True

    def is_pending(self, queue: str, job_id: str) -> bool:
        """True while the job is waiting or delayed, i.e. nobody has taken it."""
        self._check_queue(queue)
        pipe = self.redis.pipeline()
        pipe.zscore(self._key(queue, "waiting"), job_id)
        pipe.zscore(self._key(queue, "delayed"), job_id)
        waiting, delayed = pipe.execute()
        return waiting is not None or delayed is not None

    # ------------------------------------------------------------------
    # Consumer side

    def dequeue(self, queue: str) -> Optional[QueueJob]:
        """
        Take the highest priority ready job from ``queue``.

        Returns None if no job is ready. The job is tracked as active until
        ``complete`` or ``fail`` is called for it.
        """
        self._check_queue(queue)
        self._promote_delayed(queue)

        while True:
            popped = self.redis.zpopmin(self._key(queue, "waiting"), 1)
            if not popped:
                return None

            job_id = popped[0][0]
            data = self.redis.hget(self._key(queue, "jobs"), job_id)
            if data is None:
                # Removed between the pop and the lookup
                continue

            self.redis.hset(self._key(queue, "active"), job_id, self._clock())
            job = QueueJob.from_json(data)
            logger.debug(f"Dequeued job {job.id} from {queue} (attempt {job.attempt})")
            return job

    def complete(self, job: QueueJob) -> None:
        """Acknowledge successful processing of a job."""
        now = self._clock()
        pipe = self.redis.pipeline()
        pipe.hdel(self._key(job.queue, "active"), job.id)
        pipe.hdel(self._key(job.queue, "jobs"), job.id)
        pipe.zadd(self._key(job.queue, "completed"), {job.id: now})
        pipe.zremrangebyrank(self._key(job.queue, "completed"), 0, -(self.history_limit + 1))
        pipe.execute()
        logger.debug(f"Completed job {job.id} on {job.queue}")

    def fail(self, job: QueueJob, error: str) -> bool:
        """
        Record a failed delivery.

        Schedules a retry with exponential backoff and returns True, or
        dead-letters the job and returns False once attempts are exhausted.
        """
        now = self._clock()
        job.last_error = error

        if not job.exhausted:
            delay = self.backoff * (2 ** (job.attempt - 1))
            job.attempt += 1
            pipe = self.redis.pipeline()
            pipe.hdel(self._key(job.queue, "active"), job.id)
            pipe.hset(self._key(job.queue, "jobs"), job.id, job.to_json())
            pipe.zadd(self._key(job.queue, "delayed"), {job.id: now + delay})
            pipe.execute()
            logger.warning(
                f"Job {job.id} failed, retrying in {delay:.1f}s "
                f"(attempt {job.attempt}/{job.max_attempts}): {error}"
            )
            return True

        pipe = self.redis.pipeline()
        pipe.hdel(self._key(job.queue, "active"), job.id)
        pipe.hdel(self._key(job.queue, "jobs"), job.id)
        pipe.zadd(self._key(job.queue, "failed"), {job.id: now})
        pipe.zremrangebyrank(self._key(job.queue, "failed"), 0, -(self.history_limit + 1))
        pipe.execute()
        logger.error(f"Job {job.id} failed after {job.attempt} attempts: {error}")
        return False

    def defer(self, job: QueueJob, delay: float, error: Optional[str] = None) -> None:
        """
        Put a job back for later without using up an attempt.

        For deliveries that could not run at all because a dependency was
        unavailable. Works on active and dead-lettered jobs alike.
        """
        if error is not None:
            job.last_error = error
        job.deferrals += 1
        pipe = self.redis.pipeline()
        pipe.hdel(self._key(job.queue, "active"), job.id)
        pipe.zrem(self._key(job.queue, "failed"), job.id)
        pipe.hset(self._key(job.queue, "jobs"), job.id, job.to_json())
        pipe.zadd(self._key(job.queue, "delayed"), {job.id: self._clock() + delay})
        pipe.execute()
        logger.warning(f"Job {job.id} deferred for {delay:.1f}s: {error}")

    def release_orphaned_jobs(self) -> int:
        """
        Put jobs left in ``active`` by a dead process back on their queue.

        Released jobs count as a redelivery. Returns the number released.
        """
        released = 0
        for queue in self.queue_names:
            active = self.redis.hgetall(self._key(queue, "active"))
            for job_id in active:
                self.redis.hdel(self._key(queue, "active"), job_id)
                data = self.redis.hget(self._key(queue, "jobs"), job_id)
                if data is None:
                    continue
                job = QueueJob.from_json(data)
                job.attempt += 1
                pipe = self.redis.pipeline()
                pipe.hset(self._key(queue, "jobs"), job.id, job.to_json())
                pipe.zadd(self._key(queue, "waiting"), {job.id: self._waiting_score(job.priority)})
                pipe.execute()
                released += 1

        if released:
            logger.warning(f"Released {released} orphaned jobs")
        return released

    def _promote_delayed(self, queue: str) -> int:
        """Move delayed jobs whose backoff has elapsed to the waiting set."""
        delayed_key = self._key(queue, "delayed")
        ready = self.redis.zrangebyscore(delayed_key, 0, self._clock())

        promoted = 0
        for job_id in ready:
            # Only the consumer that wins the removal promotes the job
            if not self.redis.zrem(delayed_key, job_id):
                continue
            data = self.redis.hget(self._key(queue, "jobs"), job_id)
            if data is None:
                continue
            priority = QueueJob.from_json(data).priority
            self.redis.zadd(self._key(queue, "waiting"), {job_id: self._waiting_score(priority)})
            promoted += 1

        return promoted

    # ------------------------------------------------------------------
    # Introspection

    def stats(self, queue: str) -> Dict[str, int]:
        """Depth of each job set for one queue."""
        self._check_queue(queue)
        pipe = self.redis.pipeline()
        pipe.zcard(self._key(queue, "waiting"))
        pipe.hlen(self._key(queue, "active"))
        pipe.zcard(self._key(queue, "completed"))
        pipe.zcard(self._key(queue, "failed"))
        pipe.zcard(self._key(queue, "delayed"))
        waiting, active, completed, failed, delayed = pipe.execute()
        return {
            "waiting": waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
        }

    def all_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {}
        for queue in self.queue_names:
            try:
                stats[queue] = self.stats(queue)
            except redis.RedisError as e:
                logger.error(f"Failed to read stats for queue {queue}: {e}")
                stats[queue] = {"error": str(e)}
        return stats

    def health_check(self) -> bool:
        """Check if Redis is accessible."""
        try:
            return bool(self.redis.ping())
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False

"""
Unit tests for the Redis work queues.
"""

import pytest
from uuid import uuid4

from workflow_engine.domain import (
    CircuitOpenError,
    ServiceUnavailableError,
    StepSpec,
    WorkflowDefinition,
)
from workflow_engine.worker import QueueConsumer, QueueJob, QueueRouter


class FakeClock:
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def router(mock_redis, clock):
    return QueueRouter(client=mock_redis, prefix="wf_test", backoff=2.0, clock=clock)


def _workflow(name="wf", tags=None):
    return WorkflowDefinition.create(name=name, steps=[StepSpec("delay")], tags=tags)


class TestQueueJob:
    """Tests for QueueJob serialization."""

    def test_json_round_trip_keeps_attempts(self):
        """Test that delivery metadata survives serialization."""
        job = QueueJob(id="j1", queue="content", execution_id="e", workflow_id="w",
                       priority=7, attempt=2, last_error="boom")

        restored = QueueJob.from_json(job.to_json())

        assert restored == job

    def test_exhausted(self):
        """Test attempt exhaustion."""
        assert not QueueJob("j", "content", "e", "w", attempt=2, max_attempts=3).exhausted
        assert QueueJob("j", "content", "e", "w", attempt=3, max_attempts=3).exhausted

    def test_redelivered(self):
        """Test that a retried or deferred job counts as a redelivery."""
        assert not QueueJob("j", "content", "e", "w").redelivered
        assert QueueJob("j", "content", "e", "w", attempt=2).redelivered
        assert QueueJob("j", "content", "e", "w", deferrals=1).redelivered


class TestRouting:
    """Tests for queue selection."""

    def test_tag_wins(self, router):
        """Test that a queue tag routes the workflow."""
        assert router.route(_workflow("daily_content", tags=["Payment"])) == "payment"

    def test_name_match(self, router):
        """Test routing by queue name inside the workflow name."""
        assert router.route(_workflow("nightly_analytics_rollup")) == "analytics"
        assert router.route(_workflow("user_onboarding")) == "user"

    def test_default_queue(self, router):
        """Test the fallback queue."""
        assert router.route(_workflow("something_else", tags=["misc"])) == "content"


class TestQueueRouter:
    """Tests for QueueRouter job movement."""

    def test_enqueue_and_dequeue(self, router):
        """Test the basic job lifecycle."""
        execution_id = uuid4()
        job = router.enqueue("content", execution_id, uuid4(), priority=5)

        taken = router.dequeue("content")

        assert taken.id == job.id
        assert taken.execution_id == str(execution_id)
        assert router.stats("content")["active"] == 1
        assert router.dequeue("content") is None

    def test_priority_order(self, router, clock):
        """Test that higher priority jobs are taken first, FIFO within a priority."""
        low = router.enqueue("content", uuid4(), uuid4(), priority=2)
        clock.now += 1
        high_first = router.enqueue("content", uuid4(), uuid4(), priority=9)
        clock.now += 1
        high_second = router.enqueue("content", uuid4(), uuid4(), priority=9)

        order = [router.dequeue("content").id for _ in range(3)]

        assert order == [high_first.id, high_second.id, low.id]

    def test_enqueue_validation(self, router):
        """Test unknown queues and out-of-range priorities."""
        with pytest.raises(ValueError, match="not found"):
            router.enqueue("nope", uuid4(), uuid4())
        with pytest.raises(ValueError, match="priority"):
            router.enqueue("content", uuid4(), uuid4(), priority=11)

    def test_enqueue_with_job_id(self, router):
        """Test caller-supplied job ids."""
        router.enqueue("user", uuid4(), uuid4(), job_id="fixed-id")

        assert router.is_pending("user", "fixed-id") is True

    def test_remove_waiting_job(self, router):
        """Test removing a job before it is picked up."""
        job = router.enqueue("content", uuid4(), uuid4())

        assert router.remove("content", job.id) is True
        assert router.is_pending("content", job.id) is False
        assert router.dequeue("content") is None

    def test_remove_active_job(self, router):
        """Test that an active job cannot be removed."""
        job = router.enqueue("content", uuid4(), uuid4())
        router.dequeue("content")

        assert router.remove("content", job.id) is False

    def test_complete(self, router):
        """Test acknowledging a job."""
        router.enqueue("content", uuid4(), uuid4())
        job = router.dequeue("content")

        router.complete(job)

        stats = router.stats("content")
        assert stats["active"] == 0
        assert stats["completed"] == 1

    def test_fail_schedules_backoff_retry(self, router, clock):
        """Test exponential backoff between attempts."""
        router.enqueue("content", uuid4(), uuid4())
        job = router.dequeue("content")

        assert router.fail(job, "boom") is True
        assert router.stats("content")["delayed"] == 1

        clock.now += 1.9
        assert router.dequeue("content") is None

        clock.now += 0.2
        retried = router.dequeue("content")
        assert retried.attempt == 2
        assert retried.last_error == "boom"

        assert router.fail(retried, "boom again") is True
        clock.now += 3.9
        assert router.dequeue("content") is None
        clock.now += 0.2
        assert router.dequeue("content").attempt == 3

    def test_fail_dead_letters_exhausted_job(self, router):
        """Test that the last attempt goes to the failed set."""
        router.enqueue("content", uuid4(), uuid4())
        job = router.dequeue("content")
        job.attempt = job.max_attempts

        assert router.fail(job, "final") is False

        stats = router.stats("content")
        assert stats["failed"] == 1
        assert stats["active"] == 0
        assert stats["delayed"] == 0

    def test_release_orphaned_jobs(self, router):
        """Test that jobs left active are put back as a redelivery."""
        job = router.enqueue("payment", uuid4(), uuid4())
        router.dequeue("payment")

        assert router.release_orphaned_jobs() == 1

        redelivered = router.dequeue("payment")
        assert redelivered.id == job.id
        assert redelivered.attempt == 2

    def test_history_is_trimmed(self, mock_redis, clock):
        """Test the completed history limit."""
        router = QueueRouter(client=mock_redis, prefix="wf_trim", history_limit=2, clock=clock)
        for _ in range(4):
            router.enqueue("content", uuid4(), uuid4())
            clock.now += 1
            router.complete(router.dequeue("content"))

        assert router.stats("content")["completed"] == 2

    def test_all_stats(self, router):
        """Test per-queue stats."""
        router.enqueue("analytics", uuid4(), uuid4())

        stats = router.all_stats()

        assert set(stats) == {"content", "user", "payment", "analytics"}
        assert stats["analytics"]["waiting"] == 1


    def test_is_pending(self, router, clock):
        """Test that only waiting and delayed jobs are pending."""
        job = router.enqueue("content", uuid4(), uuid4())
        assert router.is_pending("content", job.id) is True

        taken = router.dequeue("content")
        assert router.is_pending("content", job.id) is False

        router.fail(taken, "boom")
        assert router.is_pending("content", job.id) is True

    def test_defer_keeps_attempt(self, router, clock):
        """Test that a deferred job comes back later with the same attempt."""
        router.enqueue("content", uuid4(), uuid4())
        job = router.dequeue("content")

        router.defer(job, 10.0, "database unavailable")

        assert router.stats("content")["active"] == 0
        assert router.dequeue("content") is None
        clock.now += 10.1
        again = router.dequeue("content")
        assert again.id == job.id
        assert again.attempt == 1
        assert again.deferrals == 1
        assert again.last_error == "database unavailable"

    def test_defer_revives_dead_lettered_job(self, router, clock):
        """Test that an exhausted job can be deferred out of the failed set."""
        router.enqueue("content", uuid4(), uuid4())
        job = router.dequeue("content")
        job.attempt = job.max_attempts
        router.fail(job, "final")

        router.defer(job, 1.0)

        assert router.stats("content")["failed"] == 0
        clock.now += 1.1
        assert router.dequeue("content").id == job.id

    def test_health_check(self, router):
        """Test Redis ping."""
        assert router.health_check() is True


class TestQueueConsumer:
    """Tests for QueueConsumer."""

    def test_process_one_completes_job(self, router):
        """Test that a successful handler completes the job."""
        router.enqueue("content", uuid4(), uuid4())
        handled = []
        consumer = QueueConsumer(router, "content", handler=handled.append)

        assert consumer.process_one() is True
        assert len(handled) == 1
        assert consumer.processed == 1
        assert router.stats("content")["completed"] == 1

    def test_process_one_empty_queue(self, router):
        """Test polling an empty queue."""
        consumer = QueueConsumer(router, "content", handler=lambda job: None)

        assert consumer.process_one() is False

    def test_failed_handler_retries(self, router):
        """Test that a raising handler schedules a retry."""
        router.enqueue("content", uuid4(), uuid4())

        def fail(job):
            raise RuntimeError("boom")

        exhausted = []
        consumer = QueueConsumer(router, "content", handler=fail,
                                 on_exhausted=lambda job, e: exhausted.append(job))

        consumer.process_one()

        assert consumer.failed == 1
        assert router.stats("content")["delayed"] == 1
        assert exhausted == []

    def test_exhausted_callback(self, mock_redis):
        """Test that the last failed attempt reaches the exhausted callback."""
        router = QueueRouter(client=mock_redis, prefix="wf_once", attempts=1)
        router.enqueue("content", uuid4(), uuid4())

        def fail(job):
            raise RuntimeError("boom")

        exhausted = []
        consumer = QueueConsumer(router, "content", handler=fail,
                                 on_exhausted=lambda job, e: exhausted.append((job, str(e))))

        consumer.process_one()

        assert len(exhausted) == 1
        assert exhausted[0][1] == "boom"
        assert router.stats("content")["failed"] == 1


    def test_unavailable_dependency_defers_job(self, router, clock):
        """Test that a handler blocked by an open breaker does not use up an attempt."""
        router.enqueue("content", uuid4(), uuid4())

        def blocked(job):
            raise CircuitOpenError("database", retry_after=12.0)

        exhausted = []
        consumer = QueueConsumer(router, "content", handler=blocked,
                                 on_exhausted=lambda job, e: exhausted.append(job))

        consumer.process_one()

        assert consumer.deferred == 1
        assert consumer.failed == 0
        assert exhausted == []
        clock.now += 11.9
        assert router.dequeue("content") is None
        clock.now += 0.2
        job = router.dequeue("content")
        assert job.attempt == 1
        assert job.redelivered

    def test_defer_delay_without_retry_hint(self, router, clock):
        """Test the default deferral delay for other unavailable dependencies."""
        router.enqueue("content", uuid4(), uuid4())

        def unavailable(job):
            raise ServiceUnavailableError("redis down")

        consumer = QueueConsumer(router, "content", handler=unavailable, defer_delay=3.0)

        consumer.process_one()

        clock.now += 2.9
        assert router.dequeue("content") is None
        clock.now += 0.2
        assert router.dequeue("content") is not None

    def test_get_stats(self, router):
        """Test consumer statistics."""
        consumer = QueueConsumer(router, "user", handler=lambda job: None, name="user-0")

        stats = consumer.get_stats()

        assert stats["name"] == "user-0"
        assert stats["queue"] == "user"
        assert stats["running"] is False
        assert stats["current_job"] is None

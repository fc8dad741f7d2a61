"""
Test configuration and fixtures.

Provides common fixtures for unit and integration tests.
"""

import pytest
from unittest.mock import MagicMock
from uuid import uuid4

import fakeredis

from workflow_engine.config import TestConfig
from workflow_engine.core import CircuitBreaker
from workflow_engine.domain import StepSpec, WorkflowDefinition
from workflow_engine.persistence import InMemoryExecutionStore
from workflow_engine.services import WorkflowEngine, WorkflowService, create_default_registry
from workflow_engine.worker import QueueConsumer, QueueRouter


@pytest.fixture
def config():
    """Test configuration: in-memory store, no backoff delay."""
    return TestConfig()


@pytest.fixture
def mock_db():
    """Create a mock database for unit tests."""
    db = MagicMock()
    db.health_check.return_value = True
    return db


@pytest.fixture
def mock_redis():
    """Create a fake Redis client for unit tests."""
    client = fakeredis.FakeRedis(decode_responses=True)
    client.flushall()
    return client


@pytest.fixture
def store():
    """In-memory execution store with its own database breaker."""
    return InMemoryExecutionStore(CircuitBreaker("database", threshold=3, timeout=30.0))


@pytest.fixture
def queues(mock_redis, config):
    """Queue router on fake Redis."""
    return QueueRouter.from_config(config, client=mock_redis)


@pytest.fixture
def sleeps():
    """Records the delays requested by delay steps instead of sleeping."""
    return []


@pytest.fixture
def registry(sleeps):
    """Registry with the built-in processors and a non-blocking delay."""
    return create_default_registry(sleep=sleeps.append, session=MagicMock())


@pytest.fixture
def engine(store, queues, registry, config):
    """Initialized engine without background consumers.

    Tests drive jobs themselves through ``drain``.
    """
    engine = WorkflowEngine(store, queues, registry, config=config)
    engine.initialize(start_consumers=False)
    return engine


@pytest.fixture
def workflow_service(store, engine):
    return WorkflowService(store, engine)


@pytest.fixture
def drain(engine, queues):
    """Run every ready job on every queue through queue consumers, synchronously."""
    consumers = [
        QueueConsumer(
            queues,
            queue_name,
            handler=engine.process_job,
            on_exhausted=engine._job_exhausted,
        )
        for queue_name in queues.queue_names
    ]

    def run(max_jobs=50):
        processed = 0
        for consumer in consumers:
            while processed < max_jobs and consumer.process_one():
                processed += 1
        return processed

    return run


@pytest.fixture
def sample_workflow_data():
    """Sample workflow definition in its JSON form."""
    return {
        "name": "daily_content",
        "description": "Fetch, format and post the daily digest",
        "steps": [
            {"type": "fetch_news", "config": {}},
            {"type": "format_content", "config": {}},
            {"type": "post_to_channel", "config": {}, "on_error": "continue"},
        ],
        "tags": ["content"],
    }


@pytest.fixture
def make_workflow(store):
    """Persist a workflow built from step dicts."""

    def make(steps, name="test-workflow", tags=None, enabled=True):
        workflow = WorkflowDefinition.create(
            name=name,
            steps=[StepSpec.from_dict(step) for step in steps],
            tags=tags,
            enabled=enabled,
        )
        return store.create_workflow(workflow)

    return make


@pytest.fixture
def workflow_id():
    """Generate a test workflow ID."""
    return uuid4()


@pytest.fixture
def execution_id():
    """Generate a test execution ID."""
    return uuid4()


# ============================================
# API Test Fixtures
# ============================================

@pytest.fixture
def app(config, engine):
    """Create Flask test application around the test engine."""
    from workflow_engine.api import create_app

    app = create_app(config, engine=engine)
    app.config["TESTING"] = True
    yield app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()

"""
Standalone worker process: the engine and its queue consumers, no HTTP.
"""

import logging
import signal
import threading

from workflow_engine.config import get_config
from workflow_engine.services.engine import create_engine

logger = logging.getLogger(__name__)


def run_worker() -> None:
    """Entry point for running the worker."""
    config = get_config()
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)

    engine = create_engine(config)
    stopped = threading.Event()

    def handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        stopped.set()

    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGINT, handler)

    engine.initialize(start_consumers=True)
    logger.info("Worker started, waiting for jobs...")

    stopped.wait()
    engine.shutdown()
    engine.store.close()
    logger.info("Worker stopped")


if __name__ == "__main__":
    run_worker()

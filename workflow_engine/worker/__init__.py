# Worker layer
from .queue import QueueJob, QueueRouter, QUEUE_NAMES
from .consumer import QueueConsumer

__all__ = [
    "QueueJob",
    "QueueRouter",
    "QUEUE_NAMES",
    "QueueConsumer",
]

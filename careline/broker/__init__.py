from .base import DeadLetter, Delivery, EnqueueOptions, LaneStats, QueueBroker
from .memory import MemoryQueueBroker

__all__ = [
    "DeadLetter",
    "Delivery",
    "EnqueueOptions",
    "LaneStats",
    "MemoryQueueBroker",
    "PostgresQueueBroker",
    "QueueBroker",
]


def __getattr__(name: str):
    if name == "PostgresQueueBroker":
        from .postgres import PostgresQueueBroker as _PostgresQueueBroker
        return _PostgresQueueBroker
    raise AttributeError(name)

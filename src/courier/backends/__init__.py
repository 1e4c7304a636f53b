"""
Transport Backends

In-memory transport for tests and development, RabbitMQ transport via aio-pika.
"""

from .memory import ExchangeType, InMemoryAckHandle, InMemoryTransport, topic_matches
from .rabbitmq import RabbitMQAckHandle, RabbitMQTransport, map_broker_error

__all__ = [
    "ExchangeType",
    "InMemoryAckHandle",
    "InMemoryTransport",
    "RabbitMQAckHandle",
    "RabbitMQTransport",
    "map_broker_error",
    "topic_matches",
]

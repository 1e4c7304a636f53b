"""
Transport Abstractions

Broker-facing interface the event bus drives. A transport moves envelopes to
and from a broker and settles deliveries; it knows nothing about event types,
handlers or pipelines.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .core import AckAction, Envelope

logger = logging.getLogger(__name__)


class AckHandle(ABC):
    """Settles a single delivery with the broker."""

    @abstractmethod
    async def ack(self) -> None:
        """Acknowledge the delivery."""

    @abstractmethod
    async def reject(self, requeue: bool = False) -> None:
        """Reject the delivery, optionally returning it to the queue."""

    async def apply(self, action: AckAction) -> None:
        """Translate an ``AckAction`` into a broker call."""
        if action.is_ack:
            await self.ack()
        else:
            await self.reject(requeue=action.requeue)


DeliveryCallback = Callable[[Envelope, AckHandle], Awaitable[None]]


@dataclass
class Binding:
    """Active consumer of one queue/routing key pair."""

    queue: str
    routing_key: str
    exchange: str = ""
    binding_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Transport-private state (consumer tags, tasks)
    state: dict[str, Any] = field(default_factory=dict)


class Transport(ABC):
    """Abstract broker transport."""

    def __init__(self):
        self._connected = False

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the broker."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the broker, stopping every binding."""

    @abstractmethod
    async def publish(self, envelope: Envelope) -> None:
        """
        Hand an envelope to the broker.

        Raises:
            TransientBrokerFailure: Connection dropped, channel closed or timed out
            PermanentBrokerFailure: Broker refused the message
        """

    @abstractmethod
    async def bind(self, queue: str, routing_key: str, on_delivery: DeliveryCallback) -> Binding:
        """Declare and bind ``queue`` to ``routing_key`` and start consuming it."""

    @abstractmethod
    async def unbind(self, binding: Binding) -> None:
        """Stop consuming. New deliveries stop; settlement of in-flight ones still works."""

    @property
    def is_connected(self) -> bool:
        """Check if transport is connected."""
        return self._connected

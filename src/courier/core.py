"""
Core Event Bus Abstractions

Provides the wire unit (envelope), acknowledgment actions, subscriptions and
per-delivery context that the rest of the bus is built on.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class AckKind(Enum):
    """Acknowledgment outcomes understood by every transport."""

    ACK = "ack"
    REJECT = "reject"


@dataclass(frozen=True)
class AckAction:
    """Decision telling the broker how a delivery ended."""

    kind: AckKind
    requeue: bool = False

    @classmethod
    def ack(cls) -> "AckAction":
        return cls(AckKind.ACK)

    @classmethod
    def reject(cls, requeue: bool = False) -> "AckAction":
        return cls(AckKind.REJECT, requeue=requeue)

    @property
    def is_ack(self) -> bool:
        return self.kind is AckKind.ACK

    def __str__(self) -> str:
        if self.is_ack:
            return "ack"
        return f"reject(requeue={self.requeue})"


@dataclass
class EnvelopeHeaders:
    """Envelope headers container."""

    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str | None = None
    timestamp: float = field(default_factory=time.time)
    content_type: str = "application/json"
    event_type: str | None = None

    # Custom headers
    custom: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert headers to dictionary."""
        return {
            "message_id": self.message_id,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp,
            "content_type": self.content_type,
            "event_type": self.event_type,
            "custom": dict(self.custom),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EnvelopeHeaders":
        """Create headers from dictionary."""
        headers = cls()
        headers.message_id = data.get("message_id") or headers.message_id
        headers.correlation_id = data.get("correlation_id")
        headers.timestamp = data.get("timestamp", headers.timestamp)
        headers.content_type = data.get("content_type", headers.content_type)
        headers.event_type = data.get("event_type")
        headers.custom = dict(data.get("custom") or {})
        return headers


@dataclass
class Envelope:
    """
    One message on the wire.

    ``delivery_token`` is owned by the transport that produced the envelope
    and is only meaningful while that delivery is being processed.
    """

    body: bytes
    routing_key: str
    exchange: str = ""
    queue: str | None = None
    headers: EnvelopeHeaders = field(default_factory=EnvelopeHeaders)
    delivery_token: Any = None
    redelivered: bool = False

    @property
    def message_id(self) -> str:
        return self.headers.message_id


@dataclass(frozen=True)
class Subscription:
    """Binding of a queue and routing key to an event type and its handler."""

    queue: str
    routing_key: str
    event_type: type
    handler_type: type
    subscription_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def key(self) -> tuple[str, str]:
        return (self.queue, self.routing_key)


@dataclass(frozen=True)
class SubscriptionHandle:
    """Opaque token returned by ``EventBus.subscribe``."""

    subscription_id: str
    queue: str
    routing_key: str


@dataclass
class MessageContext:
    """Per-delivery state shared by pipeline stages and the handler."""

    envelope: Envelope
    event: Any
    subscription: Subscription
    items: dict[str, Any] = field(default_factory=dict)
    received_at: float = field(default_factory=time.time)
    handled: bool = False

    @property
    def message_id(self) -> str:
        return self.envelope.message_id

    @property
    def routing_key(self) -> str:
        return self.envelope.routing_key

    def elapsed(self) -> float:
        """Seconds since the delivery was received."""
        return time.time() - self.received_at


class PublishErrorKind(Enum):
    """Why a publish did not reach the broker."""

    TYPE_CONSTRAINT = "type_constraint"
    SERIALIZATION_FAILED = "serialization_failed"
    BROKER_UNAVAILABLE = "broker_unavailable"


@dataclass
class PublishResult:
    """Outcome of ``EventBus.publish``."""

    ok: bool
    envelope: Envelope | None = None
    error: Exception | None = None
    kind: PublishErrorKind | None = None
    attempts: int = 0

    @classmethod
    def success(cls, envelope: Envelope, attempts: int) -> "PublishResult":
        return cls(ok=True, envelope=envelope, attempts=attempts)

    @classmethod
    def failure(
        cls,
        kind: PublishErrorKind,
        error: Exception,
        envelope: Envelope | None = None,
        attempts: int = 0,
    ) -> "PublishResult":
        return cls(ok=False, envelope=envelope, error=error, kind=kind, attempts=attempts)

    def raise_for_error(self) -> None:
        """Raise the captured error, if any."""
        if self.error is not None:
            raise self.error

    def __bool__(self) -> bool:
        return self.ok

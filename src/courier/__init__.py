"""
Courier: broker-agnostic typed publish/subscribe.

Provides:
- Typed event publishing with bounded retry on transient broker failures
- Queue subscriptions dispatching to one handler per event type
- An ordered receive pipeline run before every handler
- Pluggable failure routing deciding ack, reject or requeue
- In-memory and RabbitMQ transports

Usage Examples:

1. Publish and subscribe:
```python
from pydantic import BaseModel

from courier import EventBus, EventHandler
from courier.backends import InMemoryTransport


class BaseEvent(BaseModel):
    pass


class OrderCreated(BaseEvent):
    order_id: str


class OrderCreatedHandler(EventHandler[OrderCreated]):
    async def handle(self, event, context):
        print(f"Order {event.order_id} created")


bus = EventBus(BaseEvent, InMemoryTransport())
bus.registry.discover([OrderCreatedHandler])

async with bus:
    await bus.subscribe(OrderCreated, queue="orders", routing_key="orders.created")
    result = await bus.publish(OrderCreated(order_id="42"), "orders.created")
    result.raise_for_error()
```

2. Receive pipeline and failure routing:
```python
from courier import EventBusOptions, ReceivePipeline, requeue_once
from courier.stages import DeduplicationStage, LoggingStage, TimeoutStage

pipeline = ReceivePipeline([LoggingStage(), DeduplicationStage(), TimeoutStage(10.0)])
options = EventBusOptions(retry_count=5, failure_handler=requeue_once)
bus = EventBus(BaseEvent, transport, pipeline=pipeline, options=options)
```
"""

from .bus import EventBus
from .config import EventBusOptions
from .core import (
    AckAction,
    AckKind,
    Envelope,
    EnvelopeHeaders,
    MessageContext,
    PublishErrorKind,
    PublishResult,
    Subscription,
    SubscriptionHandle,
)
from .dispatch import Dispatcher, SettleOnceGuard
from .exceptions import (
    ConfigurationError,
    CourierError,
    HandlerResolutionFailure,
    InvalidPipelineUsage,
    PermanentBrokerFailure,
    PipelineFrozen,
    RetriesExhausted,
    SerializationFailure,
    SubscriptionConflict,
    TransientBrokerFailure,
    TypeConstraintViolation,
)
from .failure import (
    FailureHandler,
    reject_without_requeue,
    requeue_for,
    requeue_on_failure,
    requeue_once,
)
from .pipeline import FunctionStage, PipelineStage, ReceivePipeline
from .registry import EventHandler, HandlerRegistration, HandlerRegistry
from .retry import (
    BackoffKind,
    BackoffStrategy,
    ConstantBackoff,
    ExponentialBackoff,
    LinearBackoff,
    RetryPolicy,
)
from .serialization import Codec, CompressionType, JSONCodec, create_json_codec
from .transport import AckHandle, Binding, Transport

__all__ = [
    # Bus
    "EventBus",
    "EventBusOptions",

    # Core types
    "AckAction",
    "AckKind",
    "Envelope",
    "EnvelopeHeaders",
    "MessageContext",
    "PublishErrorKind",
    "PublishResult",
    "Subscription",
    "SubscriptionHandle",

    # Dispatch and failure routing
    "Dispatcher",
    "FailureHandler",
    "SettleOnceGuard",
    "reject_without_requeue",
    "requeue_for",
    "requeue_on_failure",
    "requeue_once",

    # Exceptions
    "ConfigurationError",
    "CourierError",
    "HandlerResolutionFailure",
    "InvalidPipelineUsage",
    "PermanentBrokerFailure",
    "PipelineFrozen",
    "RetriesExhausted",
    "SerializationFailure",
    "SubscriptionConflict",
    "TransientBrokerFailure",
    "TypeConstraintViolation",

    # Pipeline
    "FunctionStage",
    "PipelineStage",
    "ReceivePipeline",

    # Handlers
    "EventHandler",
    "HandlerRegistration",
    "HandlerRegistry",

    # Retry
    "BackoffKind",
    "BackoffStrategy",
    "ConstantBackoff",
    "ExponentialBackoff",
    "LinearBackoff",
    "RetryPolicy",

    # Serialization
    "Codec",
    "CompressionType",
    "JSONCodec",
    "create_json_codec",

    # Transport
    "AckHandle",
    "Binding",
    "Transport",
]

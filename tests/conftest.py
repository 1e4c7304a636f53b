"""
Global pytest configuration and fixtures for courier testing.

Shared event types, handlers and bus fixtures used across the unit tests.
"""

import uuid
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from pydantic import BaseModel

from courier import EventBus, EventBusOptions, EventHandler, ReceivePipeline
from courier.core import Envelope, MessageContext, Subscription
from courier.backends import InMemoryTransport


class BaseEvent(BaseModel):
    """Root of the test event hierarchy."""


class OrderCreated(BaseEvent):
    order_id: str
    amount: float = 0.0


class OrderShipped(BaseEvent):
    order_id: str


class CustomEvent(BaseEvent):
    name: str


class UnrelatedEvent(BaseModel):
    value: int


class RecordingHandler(EventHandler[OrderCreated]):
    """Collects every handled event in a class-level list."""

    handled: list[Any] = []
    disposed = 0

    async def handle(self, event, context):
        RecordingHandler.handled.append(event)

    async def dispose(self):
        RecordingHandler.disposed += 1


class FailingHandler(EventHandler[OrderShipped]):
    calls = 0

    async def handle(self, event, context):
        FailingHandler.calls += 1
        raise RuntimeError("handler exploded")


class CustomEventHandler(EventHandler[CustomEvent]):
    handled: list[Any] = []

    async def handle(self, event, context):
        CustomEventHandler.handled.append(event)


@pytest.fixture(autouse=True)
def reset_handlers():
    """Reset class-level handler state between tests."""
    RecordingHandler.handled = []
    RecordingHandler.disposed = 0
    FailingHandler.calls = 0
    CustomEventHandler.handled = []
    yield


@pytest.fixture
def test_queue() -> str:
    """Generate a unique queue name."""
    return f"queue-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def fast_options() -> EventBusOptions:
    """Options with zero backoff and a short grace period."""
    return EventBusOptions(
        retry_count=2,
        backoff_strategy="constant",
        backoff_base_delay=0.0,
        shutdown_grace_period=0.2,
    )


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def pipeline() -> ReceivePipeline:
    return ReceivePipeline()


@pytest_asyncio.fixture
async def make_bus(transport, fast_options):
    """Factory for started in-memory buses; stops them at teardown."""
    created: list[EventBus] = []

    async def _make(
        pipeline: ReceivePipeline | None = None, **option_overrides: Any
    ) -> EventBus:
        options = fast_options.with_overrides(**option_overrides) if option_overrides else fast_options
        event_bus = EventBus(BaseEvent, transport, pipeline=pipeline, options=options)
        event_bus.registry.discover([RecordingHandler, FailingHandler, CustomEventHandler])
        await event_bus.start()
        created.append(event_bus)
        return event_bus

    yield _make

    for event_bus in created:
        await event_bus.stop()


@pytest_asyncio.fixture
async def bus(make_bus, pipeline) -> AsyncGenerator[EventBus, None]:
    """Started in-memory bus for ``BaseEvent``."""
    yield await make_bus(pipeline)


@pytest.fixture
def config_file(tmp_path: Path):
    """Write a YAML file and return its path."""

    def _write(content: str) -> Path:
        path = tmp_path / "courier.yaml"
        path.write_text(content)
        return path

    return _write


def make_context(event=None, queue: str = "orders", routing_key: str = "orders.created") -> MessageContext:
    """Build a delivery context for pipeline and stage tests."""
    subscription = Subscription(
        queue=queue, routing_key=routing_key, event_type=OrderCreated, handler_type=RecordingHandler
    )
    envelope = Envelope(body=b"{}", routing_key=routing_key, queue=queue)
    return MessageContext(
        envelope=envelope, event=event or OrderCreated(order_id="1"), subscription=subscription
    )

"""
Event Bus

Typed publish/subscribe facade over a broker transport. Publishing encodes
an event and hands it to the transport under a bounded retry policy;
subscribing binds a queue and dispatches every delivery through the receive
pipeline to the event's handler.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from .core import (
    Envelope,
    EnvelopeHeaders,
    PublishErrorKind,
    PublishResult,
    Subscription,
    SubscriptionHandle,
)
from .config import EventBusOptions
from .dispatch import Dispatcher
from .exceptions import (
    HandlerResolutionFailure,
    RetriesExhausted,
    SubscriptionConflict,
    TypeConstraintViolation,
)
from .pipeline import ReceivePipeline
from .registry import HandlerRegistry
from .retry import RetryPolicy
from .serialization import Codec, JSONCodec
from .transport import AckHandle, Binding, Transport

TBase = TypeVar("TBase")
logger = logging.getLogger(__name__)


def _type_name(event_type: type) -> str:
    return f"{event_type.__module__}.{event_type.__qualname__}"


@dataclass
class _ActiveSubscription:
    subscription: Subscription
    binding: Binding | None = None
    in_flight: set[asyncio.Task] = field(default_factory=set)
    closing: bool = False

    @property
    def handle(self) -> SubscriptionHandle:
        return SubscriptionHandle(
            subscription_id=self.subscription.subscription_id,
            queue=self.subscription.queue,
            routing_key=self.subscription.routing_key,
        )


class EventBus(Generic[TBase]):
    """
    Broker-agnostic typed event bus.

    Every published event must be an instance of ``base_event_type``. One
    receive pipeline and one handler registry serve all subscriptions.

    Example::

        bus = EventBus(BaseEvent, InMemoryTransport())
        bus.registry.discover([OrderCreatedHandler])

        async with bus:
            await bus.subscribe(OrderCreated, queue="orders", routing_key="orders.created")
            result = await bus.publish(OrderCreated(order_id="42"), "orders.created")
    """

    def __init__(
        self,
        base_event_type: type[TBase],
        transport: Transport,
        *,
        codec: Codec | None = None,
        registry: HandlerRegistry | None = None,
        pipeline: ReceivePipeline | None = None,
        options: EventBusOptions | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.base_event_type = base_event_type
        self.transport = transport
        self.codec = codec or JSONCodec()
        self.registry = registry or HandlerRegistry()
        self.pipeline = pipeline or ReceivePipeline()
        self.options = options or EventBusOptions()
        self.retry_policy = retry_policy or self.options.build_retry_policy()

        self._dispatcher = Dispatcher(
            self.codec, self.pipeline, self.registry, self.options.failure_handler
        )
        self._active: dict[tuple[str, str], _ActiveSubscription] = {}
        self._by_id: dict[str, _ActiveSubscription] = {}
        self._draining: dict[str, _ActiveSubscription] = {}
        self._started = False
        self._start_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._started

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        """Currently active subscriptions."""
        return tuple(active.subscription for active in self._active.values())

    async def start(self) -> None:
        """Connect the transport and freeze the receive pipeline."""
        async with self._start_lock:
            if self._started:
                return

            await self.retry_policy.execute(self.transport.connect)
            self.pipeline.freeze()
            self._started = True
            logger.info("Event bus started with %d pipeline stages", len(self.pipeline))

    async def stop(self) -> None:
        """Unsubscribe everything, then disconnect the transport."""
        if not self._started:
            return

        handles = [active.handle for active in list(self._active.values())]
        if handles:
            await asyncio.gather(*(self.unsubscribe(handle) for handle in handles))

        await self.transport.disconnect()
        self._started = False
        logger.info("Event bus stopped")

    async def __aenter__(self) -> "EventBus[TBase]":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def publish(
        self, event: TBase, routing_key: str, exchange: str | None = None
    ) -> PublishResult:
        """
        Publish an event.

        Never raises for publish failures; inspect the returned result or call
        ``raise_for_error()`` on it.
        """
        event_type = type(event)
        if not isinstance(event, self.base_event_type):
            error = TypeConstraintViolation(event_type, self.base_event_type)
            logger.warning("Refusing to publish %s: %s", event_type.__qualname__, error)
            return PublishResult.failure(PublishErrorKind.TYPE_CONSTRAINT, error)

        try:
            body = self.codec.encode(event)
        except Exception as e:
            logger.error("Failed to encode %s: %s", event_type.__qualname__, e)
            return PublishResult.failure(PublishErrorKind.SERIALIZATION_FAILED, e)

        envelope = Envelope(
            body=body,
            routing_key=routing_key,
            exchange=self.options.publish_exchange if exchange is None else exchange,
            headers=EnvelopeHeaders(
                content_type=self.options.content_type,
                event_type=_type_name(event_type),
            ),
        )

        attempts = 0

        def on_attempt(attempt: int) -> None:
            nonlocal attempts
            attempts = attempt

        try:
            await self.retry_policy.execute(
                functools.partial(self.transport.publish, envelope), on_attempt
            )
        except Exception as e:
            error = e.last_error if isinstance(e, RetriesExhausted) else e
            logger.error(
                "Failed to publish %s to '%s' after %d attempts: %s",
                envelope.message_id,
                routing_key,
                attempts,
                error,
            )
            return PublishResult.failure(
                PublishErrorKind.BROKER_UNAVAILABLE, e, envelope, attempts
            )

        logger.debug(
            "Published %s (%s) with key '%s' in %d attempts",
            envelope.message_id,
            event_type.__qualname__,
            routing_key,
            attempts,
        )
        return PublishResult.success(envelope, attempts)

    async def subscribe(
        self,
        event_type: type,
        handler_type: type | None = None,
        *,
        queue: str,
        routing_key: str,
    ) -> SubscriptionHandle:
        """
        Start consuming ``queue`` bound to ``routing_key`` as ``event_type``.

        Raises:
            SubscriptionConflict: The queue/routing key pair is already subscribed
            HandlerResolutionFailure: No unique handler for ``event_type``
            TypeConstraintViolation: ``event_type`` is outside the bus base type
            RetriesExhausted: The broker stayed unavailable while binding
        """
        key = (queue, routing_key)
        if key in self._active:
            raise SubscriptionConflict(queue, routing_key)

        if not (isinstance(event_type, type) and issubclass(event_type, self.base_event_type)):
            raise TypeConstraintViolation(event_type, self.base_event_type)

        registered_here = None
        if handler_type is not None and event_type not in self.registry:
            registered_here = self.registry.register(event_type, handler_type)

        try:
            registration = self.registry.resolve(event_type)
            if handler_type is not None and registration.handler_type is not handler_type:
                raise HandlerResolutionFailure(
                    event_type, [registration.handler_type, handler_type]
                )
        except HandlerResolutionFailure:
            if registered_here is not None:
                self.registry.unregister(event_type, handler_type)
            raise

        subscription = Subscription(
            queue=queue,
            routing_key=routing_key,
            event_type=event_type,
            handler_type=registration.handler_type,
        )
        active = _ActiveSubscription(subscription)
        self._active[key] = active

        try:
            await self.start()
            callback = functools.partial(self._on_delivery, active)
            active.binding = await self.retry_policy.execute(
                functools.partial(self.transport.bind, queue, routing_key, callback)
            )
        except BaseException:
            self._active.pop(key, None)
            if registered_here is not None:
                self.registry.unregister(event_type, handler_type)
            raise

        self._by_id[subscription.subscription_id] = active
        logger.info(
            "Subscribed %s to queue '%s' with key '%s'",
            registration.handler_type.__qualname__,
            queue,
            routing_key,
        )
        return active.handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """
        Stop a subscription.

        In-flight deliveries get ``shutdown_grace_period`` seconds to finish;
        the rest are cancelled and requeued. Unknown or already removed
        handles are ignored.
        """
        active = self._by_id.pop(handle.subscription_id, None)
        if active is None:
            return

        self._active.pop(active.subscription.key, None)
        self._draining[handle.subscription_id] = active
        active.closing = True

        try:
            if active.binding is not None:
                await self.transport.unbind(active.binding)

            pending = set(active.in_flight)
            if pending:
                _, pending = await asyncio.wait(pending, timeout=self.options.shutdown_grace_period)
            if pending:
                logger.warning(
                    "Cancelling %d deliveries on '%s' after grace period",
                    len(pending),
                    handle.queue,
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        finally:
            self._draining.pop(handle.subscription_id, None)

        logger.info("Unsubscribed queue '%s' key '%s'", handle.queue, handle.routing_key)

    async def _on_delivery(
        self, active: _ActiveSubscription, envelope: Envelope, ack_handle: AckHandle
    ) -> None:
        if active.closing:
            logger.debug("Subscription closing, requeueing %s", envelope.message_id)
            await ack_handle.reject(requeue=True)
            return

        task = asyncio.create_task(
            self._dispatcher.dispatch(active.subscription, envelope, ack_handle)
        )
        active.in_flight.add(task)
        task.add_done_callback(active.in_flight.discard)

        try:
            await task
        except asyncio.CancelledError:
            if task.cancelled() and active.closing:
                return
            raise

    def stats(self) -> dict[str, Any]:
        """Snapshot of bus state."""
        return {
            "running": self._started,
            "subscriptions": len(self._active),
            "in_flight": sum(
                len(active.in_flight)
                for active in [*self._active.values(), *self._draining.values()]
            ),
            "draining": len(self._draining),
            "pipeline_stages": [stage.name for stage in self.pipeline.stages],
        }

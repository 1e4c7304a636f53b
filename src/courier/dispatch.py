"""
Message Dispatch

Runs one delivery end to end: decode, receive pipeline, handler, failure
routing and settlement. Every delivery is settled exactly once.
"""

import asyncio
import inspect
import logging

from .core import AckAction, Envelope, MessageContext, Subscription
from .failure import DEFAULT_FAILURE_HANDLER, FailureHandler
from .pipeline import ReceivePipeline
from .registry import HandlerRegistry
from .serialization import Codec
from .transport import AckHandle

logger = logging.getLogger(__name__)


class SettleOnceGuard:
    """Wraps an ``AckHandle`` so only the first settlement reaches the broker."""

    def __init__(self, handle: AckHandle):
        self._handle = handle
        self._action: AckAction | None = None

    @property
    def settled(self) -> bool:
        return self._action is not None

    @property
    def action(self) -> AckAction | None:
        return self._action

    async def settle(self, action: AckAction) -> bool:
        """Apply ``action``; returns False if the delivery was already settled."""
        if self._action is not None:
            logger.warning(
                "Ignoring %s, delivery already settled with %s", action, self._action
            )
            return False

        self._action = action
        await self._handle.apply(action)
        return True


class Dispatcher:
    """Per-delivery processing shared by every subscription of a bus."""

    def __init__(
        self,
        codec: Codec,
        pipeline: ReceivePipeline,
        registry: HandlerRegistry,
        failure_handler: FailureHandler | None = None,
    ):
        self.codec = codec
        self.pipeline = pipeline
        self.registry = registry
        self.failure_handler = failure_handler or DEFAULT_FAILURE_HANDLER

    async def dispatch(
        self, subscription: Subscription, envelope: Envelope, ack_handle: AckHandle
    ) -> AckAction:
        """
        Process ``envelope`` for ``subscription`` and settle it.

        A cancelled delivery is settled with ``reject(requeue=True)`` before
        the cancellation propagates.
        """
        guard = SettleOnceGuard(ack_handle)
        try:
            action = await self._process(subscription, envelope)
        except asyncio.CancelledError:
            logger.warning("Delivery of message %s cancelled, requeueing", envelope.message_id)
            await self._settle(guard, AckAction.reject(requeue=True), envelope)
            raise

        await self._settle(guard, action, envelope)
        return action

    async def _settle(self, guard: SettleOnceGuard, action: AckAction, envelope: Envelope) -> None:
        try:
            await guard.settle(action)
        except Exception as e:
            logger.error(
                "Failed to settle message %s with %s: %s",
                envelope.message_id,
                action,
                e,
                exc_info=True,
            )
        else:
            logger.debug("Message %s settled with %s", envelope.message_id, action)

    async def _process(self, subscription: Subscription, envelope: Envelope) -> AckAction:
        try:
            event = self.codec.decode(envelope.body, subscription.event_type)
        except Exception as e:
            logger.error(
                "Cannot decode message %s as %s, rejecting: %s",
                envelope.message_id,
                subscription.event_type.__qualname__,
                e,
            )
            return AckAction.reject(requeue=False)

        context = MessageContext(envelope=envelope, event=event, subscription=subscription)
        try:
            await self.pipeline.execute(context, self._invoke_handler)
        except Exception as e:
            logger.error(
                "Processing of message %s on '%s' failed: %s",
                envelope.message_id,
                subscription.queue,
                e,
                exc_info=True,
            )
            return await self._route_failure(e, envelope)

        return AckAction.ack()

    async def _invoke_handler(self, context: MessageContext) -> None:
        registration = self.registry.resolve(context.subscription.event_type)
        async with self.registry.acquire(registration) as handler:
            await handler.handle(context.event, context)
        context.handled = True

    async def _route_failure(self, error: Exception, envelope: Envelope) -> AckAction:
        try:
            action = self.failure_handler(error, envelope)
            if inspect.isawaitable(action):
                action = await action
            if not isinstance(action, AckAction):
                raise TypeError(f"Failure handler returned {action!r}, expected AckAction")
        except Exception as e:
            logger.error(
                "Failure handler raised for message %s, rejecting: %s",
                envelope.message_id,
                e,
                exc_info=True,
            )
            return AckAction.reject(requeue=False)

        return action
